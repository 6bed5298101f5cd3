"""
Storage Layer - 会话存储层
负责会话映射的持久化存储（JSON 文件 / Redis）
"""

from .base import SessionStorage, ConversationSession
from .json_storage import JsonFileSessionStorage
from .redis_storage import RedisSessionStorage

__all__ = [
    "SessionStorage",
    "ConversationSession",
    "JsonFileSessionStorage",
    "RedisSessionStorage",
]
