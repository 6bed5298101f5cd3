"""
Redis Storage - 基于 Redis 的会话存储实现
整个映射保存在一个 Hash 中：field = conversation_id，value = 会话 JSON
"""

import json
import logging
from typing import Optional, Dict

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

from .base import SessionStorage, ConversationSession

logger = logging.getLogger(__name__)


class RedisSessionStorage(SessionStorage):
    """
    基于 Redis 的会话存储

    特性：
    - 多实例共享同一份会话映射
    - 整体重写在 MULTI/EXEC 事务中完成，读方不会看到半写状态
    - 连接池管理
    """

    def __init__(
        self,
        redis_url: str = "redis://127.0.0.1:6379/0",
        key: str = "agent_bridge:sessions",
        max_connections: int = 10,
        username: Optional[str] = None,
        password: Optional[str] = None
    ):
        """
        初始化 Redis 存储

        Args:
            redis_url: Redis 连接 URL
            key: 保存会话映射的 Hash key
            max_connections: 最大连接数
            username: Redis ACL 用户名（可选）
            password: Redis 密码（可选）
        """
        self.redis_url = redis_url
        self.key = key
        self.max_connections = max_connections
        self.username = username
        self.password = password
        self.redis: Optional[aioredis.Redis] = None
        self._connected = False

        auth_status = "启用" if password else "未启用"
        logger.info(
            "初始化 RedisSessionStorage: %s, key=%s, 认证%s",
            redis_url,
            key,
            auth_status
        )

    async def connect(self) -> None:
        """建立 Redis 连接"""
        if self._connected and self.redis:
            return

        try:
            connection_kwargs = {
                "encoding": "utf-8",
                "decode_responses": True,
                "max_connections": self.max_connections
            }
            if self.username:
                connection_kwargs["username"] = self.username
            if self.password:
                connection_kwargs["password"] = self.password

            self.redis = aioredis.from_url(
                self.redis_url,
                **connection_kwargs
            )
            # 测试连接
            await self.redis.ping()
            self._connected = True
            logger.info("✅ Redis 连接成功")
        except RedisConnectionError as e:
            logger.error(f"❌ Redis 连接失败: {e}")
            self._connected = False
            raise
        except Exception as e:
            logger.error(f"❌ Redis 初始化失败: {e}")
            self._connected = False
            raise

    async def load_all(self) -> Dict[str, ConversationSession]:
        """读取整个会话 Hash"""
        if not self._connected or not self.redis:
            raise RuntimeError("Redis 未连接")

        try:
            data = await self.redis.hgetall(self.key)
        except RedisError as e:
            logger.error(f"Redis 读取失败: {e}")
            raise

        sessions: Dict[str, ConversationSession] = {}
        for conversation_id, raw in data.items():
            try:
                sessions[conversation_id] = ConversationSession.from_dict(
                    conversation_id, json.loads(raw)
                )
            except (TypeError, ValueError) as e:
                logger.warning(f"跳过损坏的会话记录 {conversation_id}: {e}")

        logger.debug(f"从 Redis 加载了 {len(sessions)} 个会话")
        return sessions

    async def save_all(self, sessions: Dict[str, ConversationSession]) -> None:
        """在一个事务中删除并重建会话 Hash"""
        if not self._connected or not self.redis:
            raise RuntimeError("Redis 未连接")

        mapping = {
            conversation_id: json.dumps(session.to_dict(), ensure_ascii=False)
            for conversation_id, session in sessions.items()
        }

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(self.key)
                if mapping:
                    pipe.hset(self.key, mapping=mapping)
                await pipe.execute()
            logger.debug(f"保存 {len(mapping)} 个会话到 Redis")
        except RedisError as e:
            logger.error(f"Redis 写入失败: {e}")
            raise

    async def close(self) -> None:
        """关闭 Redis 连接"""
        if self.redis:
            await self.redis.aclose()
            self._connected = False
            logger.info("Redis 连接已关闭")
