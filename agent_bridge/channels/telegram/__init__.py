"""Telegram 渠道"""

from agent_bridge.channels.telegram.client import (
    TelegramClient,
    TelegramAPIError,
    load_bot_token_from_openclaw,
)
from agent_bridge.channels.telegram.adapter import TelegramAdapter

__all__ = [
    "TelegramClient",
    "TelegramAPIError",
    "TelegramAdapter",
    "load_bot_token_from_openclaw",
]
