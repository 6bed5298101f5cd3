"""
Telegram Bot API 客户端

封装 Bot API 调用,负责:
1. Bot Token 读取(环境变量或 OpenClaw 配置文件)
2. 发送 / 编辑 / 删除消息
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class TelegramAPIError(Exception):
    """Telegram Bot API 错误"""

    def __init__(self, method: str, description: str, error_code: Optional[int] = None):
        self.method = method
        self.description = description
        self.error_code = error_code
        super().__init__(f"Telegram API {method} failed ({error_code}): {description}")


def load_bot_token_from_openclaw(config_path: Path) -> Optional[str]:
    """
    从 OpenClaw 配置文件读取 bot token

    Args:
        config_path: openclaw.json 路径

    Returns:
        channels.telegram.botToken,读取失败返回 None
    """
    try:
        config = json.loads(Path(config_path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read bot token from {config_path}: {e}")
        return None

    token = ((config.get("channels") or {}).get("telegram") or {}).get("botToken")
    return token or None


class TelegramClient:
    """Telegram Bot API 客户端"""

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        request_timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        初始化客户端

        Args:
            bot_token: Bot Token
            api_base: API基础URL
            request_timeout: 请求超时时间(秒)
            http_client: 外部传入的 httpx 客户端(测试注入)
        """
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.request_timeout = request_timeout
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def http(self) -> httpx.AsyncClient:
        """获取 httpx 客户端(懒加载)"""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.request_timeout)
        return self._http

    async def call(self, method: str, params: Dict[str, Any]) -> Any:
        """
        调用 Bot API

        Args:
            method: API 方法名
            params: 请求参数

        Returns:
            响应中的 result 字段

        Raises:
            TelegramAPIError: 返回 ok=false
            httpx.HTTPError: 网络错误
        """
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        response = await self.http.post(url, json=params)

        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise TelegramAPIError(method, f"non-JSON response (HTTP {response.status_code})")

        if not data.get("ok"):
            raise TelegramAPIError(
                method,
                data.get("description", "Unknown error"),
                data.get("error_code")
            )
        return data.get("result")

    async def send_message(self, chat_id: str, text: str, disable_notification: bool = True) -> int:
        """发送文本消息,返回 message_id"""
        result = await self.call("sendMessage", {
            "chat_id": chat_id,
            "text": text,
            "disable_notification": disable_notification,
        })
        return result["message_id"]

    async def edit_message_text(self, chat_id: str, message_id: int, text: str) -> None:
        """编辑文本消息"""
        await self.call("editMessageText", {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
        })

    async def delete_message(self, chat_id: str, message_id: int) -> None:
        """删除消息"""
        await self.call("deleteMessage", {
            "chat_id": chat_id,
            "message_id": message_id,
        })

    async def close(self) -> None:
        """关闭自己创建的 httpx 客户端"""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
