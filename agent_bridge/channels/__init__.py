"""
渠道适配器模块

提供旁路通知的统一消息接口:
- Telegram (进度消息: 发送/编辑/删除)
- OpenClaw oc-tool (一次性告警)

使用方式:
    from agent_bridge.channels.telegram import TelegramAdapter

    adapter = TelegramAdapter(bot_token="...")
    if adapter.is_configured():
        resp = await adapter.send_message(chat_id, "⏳ 處理中...")
        if resp.success:
            await adapter.delete_message(chat_id, resp.message_id)
"""

from agent_bridge.channels.base import (
    # 抽象基类
    BaseChannelAdapter,

    # 数据模型
    ChannelResponse,

    # 枚举类型
    ChannelType,

    # 异常类
    ChannelNotConfiguredError,
)

__all__ = [
    # 抽象基类
    "BaseChannelAdapter",

    # 数据模型
    "ChannelResponse",

    # 枚举类型
    "ChannelType",

    # 异常类
    "ChannelNotConfiguredError",
]
