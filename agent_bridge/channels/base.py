"""
渠道抽象层基类

定义旁路通知的统一消息接口,屏蔽不同IM平台的API差异。
进度消息需要"发送 → 编辑 → 删除"同一条消息,因此接口围绕消息句柄设计。

设计原则:
1. 尽力而为: 适配器不向调用方抛出平台错误,统一返回 ChannelResponse
2. 抽象接口: 子类实现平台特定逻辑
3. 配置检测: 自动判断平台是否已配置
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ChannelType(str, Enum):
    """渠道类型枚举"""
    TELEGRAM = "telegram"


class ChannelResponse(BaseModel):
    """渠道响应模型"""
    success: bool = Field(..., description="操作是否成功")
    message_id: Optional[str] = Field(None, description="平台消息句柄(发送成功时返回)")
    data: Optional[Dict[str, Any]] = Field(None, description="响应数据")
    error: Optional[str] = Field(None, description="错误信息")


class BaseChannelAdapter(ABC):
    """
    渠道适配器抽象基类

    适配器负责:
    1. 消息收发: 发送、编辑、删除一条平台消息
    2. 配置检测: 检查平台所需配置是否存在
    3. 错误隔离: 平台错误只记录日志并转换为失败的 ChannelResponse
    """

    def __init__(self, channel_type: ChannelType):
        """
        初始化适配器

        Args:
            channel_type: 渠道类型枚举
        """
        self.channel_type = channel_type
        self.channel_name = channel_type.value

    @abstractmethod
    async def send_message(self, target: str, content: str, **kwargs) -> ChannelResponse:
        """
        发送消息到IM平台

        Args:
            target: 目标会话ID(平台特定ID)
            content: 消息内容
            **kwargs: 平台特定参数

        Returns:
            ChannelResponse: 发送结果,成功时带 message_id
        """
        pass

    @abstractmethod
    async def edit_message(self, target: str, message_id: str, content: str) -> ChannelResponse:
        """
        编辑已发送的消息

        Args:
            target: 目标会话ID
            message_id: send_message 返回的消息句柄
            content: 新的消息内容

        Returns:
            ChannelResponse: 编辑结果
        """
        pass

    @abstractmethod
    async def delete_message(self, target: str, message_id: str) -> ChannelResponse:
        """
        删除已发送的消息

        Args:
            target: 目标会话ID
            message_id: send_message 返回的消息句柄

        Returns:
            ChannelResponse: 删除结果
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """
        检查渠道是否已配置必要的凭据

        Returns:
            bool: 是否已配置
        """
        pass

    async def close(self) -> None:
        """释放连接等资源(可选)"""
        return None

    def __repr__(self) -> str:
        configured = "configured" if self.is_configured() else "not configured"
        return f"<{self.__class__.__name__} channel={self.channel_name} status={configured}>"


class ChannelNotConfiguredError(Exception):
    """渠道未配置异常"""
    pass
