"""
Storage Base - 存储层抽象接口
定义会话映射的持久化接口，支持多种存储后端（JSON 文件、Redis）
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ConversationSession:
    """
    会话记录数据结构

    表示 conversation_id → claude_session_id 的映射关系，
    claude_session_id 创建后不再改变
    """
    conversation_id: str                                   # 外部会话 ID（请求中的 user 字段）
    claude_session_id: str                                 # CLI 的 session_id
    created_at: float = field(default_factory=time.time)   # 秒级时间戳
    last_used_at: float = field(default_factory=time.time)
    model: str = "sonnet"                                  # 最近一次使用的模型
    message_count: int = 0                                 # 复用次数

    def is_expired(self, ttl_seconds: int, now: Optional[float] = None) -> bool:
        """
        检查会话是否过期

        Args:
            ttl_seconds: 超时时间（秒）
            now: 当前时间戳（默认 time.time()）

        Returns:
            是否过期
        """
        current = time.time() if now is None else now
        return (current - self.last_used_at) > ttl_seconds

    def touch(self, now: float) -> None:
        """刷新最后使用时间（不回退）"""
        self.last_used_at = max(self.last_used_at, now)

    def to_dict(self) -> dict:
        """
        转换为字典（用于序列化）

        字段名与时间单位（毫秒）沿用会话文件的既有格式

        Returns:
            会话信息字典
        """
        return {
            "conversationId": self.conversation_id,
            "claudeSessionId": self.claude_session_id,
            "createdAt": int(self.created_at * 1000),
            "lastUsedAt": int(self.last_used_at * 1000),
            "model": self.model,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, conversation_id: str, data: Dict[str, Any]) -> "ConversationSession":
        """
        从字典恢复会话记录

        Args:
            conversation_id: 文档中的键
            data: 序列化的会话信息

        Raises:
            ValueError: 缺少 claudeSessionId 或字段类型错误
        """
        claude_session_id = data.get("claudeSessionId")
        if not isinstance(claude_session_id, str) or not claude_session_id:
            raise ValueError(f"会话 {conversation_id} 缺少 claudeSessionId")

        now_ms = time.time() * 1000
        created_at = float(data.get("createdAt") or now_ms) / 1000
        last_used_at = float(data.get("lastUsedAt") or created_at * 1000) / 1000

        return cls(
            conversation_id=data.get("conversationId") or conversation_id,
            claude_session_id=claude_session_id,
            created_at=created_at,
            last_used_at=last_used_at,
            model=data.get("model") or "sonnet",
            message_count=int(data.get("messageCount") or 0),
        )


class SessionStorage(ABC):
    """
    会话存储抽象接口

    整个映射作为一个文档读写（每次变更整体重写），实现：
    - JsonFileSessionStorage: 本地 JSON 文件（默认）
    - RedisSessionStorage: Redis Hash
    """

    async def connect(self) -> None:
        """建立连接（文件存储无需连接）"""
        return None

    @abstractmethod
    async def load_all(self) -> Dict[str, ConversationSession]:
        """
        读取全部会话

        Returns:
            conversation_id -> ConversationSession 的映射

        Raises:
            Exception: 存储不可读或内容损坏，由调用方决定如何降级
        """
        pass

    @abstractmethod
    async def save_all(self, sessions: Dict[str, ConversationSession]) -> None:
        """
        整体保存全部会话

        Args:
            sessions: conversation_id -> ConversationSession 的映射
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        关闭存储连接
        """
        pass
