"""
Telegram 渠道适配器

实现BaseChannelAdapter接口,用于旁路进度消息:
1. 发送(sendMessage,静默通知)
2. 编辑(editMessageText)
3. 删除(deleteMessage)

所有平台错误在此层记录日志并转换为失败的 ChannelResponse,不向调用方抛出。
"""

import logging
from typing import Optional

import httpx

from agent_bridge.channels.base import (
    BaseChannelAdapter,
    ChannelResponse,
    ChannelType,
    ChannelNotConfiguredError,
)
from agent_bridge.channels.telegram.client import (
    TelegramClient,
    TelegramAPIError,
    load_bot_token_from_openclaw,
)

logger = logging.getLogger(__name__)


class TelegramAdapter(BaseChannelAdapter):
    """Telegram 渠道适配器"""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_base: str = "https://api.telegram.org",
        request_timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        初始化适配器

        Args:
            bot_token: Bot Token(为空则视为未配置)
            api_base: API基础URL
            request_timeout: 请求超时时间(秒)
            http_client: 外部传入的 httpx 客户端(测试注入)
        """
        super().__init__(ChannelType.TELEGRAM)
        self.bot_token = bot_token
        self.api_base = api_base
        self.request_timeout = request_timeout
        self._http_client = http_client

        # 初始化API客户端(延迟到真正需要时)
        self._client: Optional[TelegramClient] = None

    @classmethod
    def from_settings(cls, settings) -> "TelegramAdapter":
        """根据 Settings 创建适配器(token 缺失时回退到 OpenClaw 配置)"""
        token = settings.TELEGRAM_BOT_TOKEN
        if not token:
            token = load_bot_token_from_openclaw(settings.openclaw_config_path)
        return cls(
            bot_token=token,
            api_base=settings.TELEGRAM_API_BASE,
            request_timeout=settings.TELEGRAM_REQUEST_TIMEOUT,
        )

    @property
    def client(self) -> TelegramClient:
        """获取API客户端(懒加载)"""
        if self._client is None:
            if not self.is_configured():
                raise ChannelNotConfiguredError(
                    f"{self.channel_name} is not configured. "
                    "Please set TELEGRAM_BOT_TOKEN or channels.telegram.botToken in openclaw.json"
                )

            self._client = TelegramClient(
                bot_token=self.bot_token,
                api_base=self.api_base,
                request_timeout=self.request_timeout,
                http_client=self._http_client
            )
            logger.info("Telegram API client initialized")

        return self._client

    def is_configured(self) -> bool:
        """检查是否已配置"""
        return bool(self.bot_token)

    async def send_message(self, target: str, content: str, **kwargs) -> ChannelResponse:
        """发送消息(默认静默通知)"""
        try:
            message_id = await self.client.send_message(
                target,
                content,
                disable_notification=kwargs.get("disable_notification", True)
            )
            logger.debug(f"[Telegram] Sent message #{message_id} to {target}")
            return ChannelResponse(success=True, message_id=str(message_id))
        except (TelegramAPIError, httpx.HTTPError, ChannelNotConfiguredError) as e:
            logger.error(f"[Telegram] sendMessage error: {e}")
            return ChannelResponse(success=False, error=str(e))

    async def edit_message(self, target: str, message_id: str, content: str) -> ChannelResponse:
        """编辑消息"""
        try:
            await self.client.edit_message_text(target, int(message_id), content)
            return ChannelResponse(success=True, message_id=message_id)
        except (TelegramAPIError, httpx.HTTPError, ChannelNotConfiguredError) as e:
            logger.error(f"[Telegram] editMessageText error: {e}")
            return ChannelResponse(success=False, message_id=message_id, error=str(e))

    async def delete_message(self, target: str, message_id: str) -> ChannelResponse:
        """删除消息"""
        try:
            await self.client.delete_message(target, int(message_id))
            return ChannelResponse(success=True, message_id=message_id)
        except (TelegramAPIError, httpx.HTTPError, ChannelNotConfiguredError) as e:
            logger.error(f"[Telegram] deleteMessage error: {e}")
            return ChannelResponse(success=False, message_id=message_id, error=str(e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
