"""
Session Manager - 会话映射管理器
负责 conversation_id → CLI session_id 的映射、TTL 过期清理和持久化
内存映射是权威数据，持久化为后台异步写入，失败只记录不抛出
"""
import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..storage.base import SessionStorage, ConversationSession

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 24 * 60 * 60
DEFAULT_CLEANUP_INTERVAL = 60 * 60


@dataclass
class SaveResult:
    """
    一次持久化的结果

    Attributes:
        ok: 是否保存成功
        count: 写入的会话数量
        saved_at: 完成时间戳
        error: 失败原因
    """
    ok: bool
    count: int
    saved_at: float
    error: Optional[str] = None


class SessionManager:
    """
    会话映射管理器

    职责：
    1. 获取或创建 conversation_id 对应的 CLI session_id
    2. 记录会话复用（lastUsedAt / messageCount）
    3. resume 失败时删除映射，下次请求重新开始
    4. 定期清理超过 TTL 的会话
    5. 每次变更后整体持久化到存储后端（后台执行，按变更顺序写入快照）

    并发说明：同一 conversation_id 的并发请求不做互斥，后写者覆盖先写者。
    """

    def __init__(
        self,
        storage: SessionStorage,
        ttl_seconds: int = DEFAULT_SESSION_TTL,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.time
    ):
        """
        初始化会话管理器

        Args:
            storage: 会话存储后端
            ttl_seconds: 会话过期时间（秒）
            cleanup_interval: 清理任务间隔（秒）
            clock: 时间源（测试可注入）
        """
        self.storage = storage
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock

        self.sessions: Dict[str, ConversationSession] = {}
        self.loaded = False

        # 持久化状态
        self._dirty = False
        self._save_task: Optional[asyncio.Task] = None
        self.last_save_result: Optional[SaveResult] = None

        self.cleanup_task: Optional[asyncio.Task] = None
        self._cleanup_running = False

        logger.info(f"会话管理器已初始化 (TTL={ttl_seconds}s)")

    async def initialize(self) -> None:
        """连接存储并加载会话；存储缺失或损坏时从空映射开始"""
        if self.loaded:
            return

        try:
            await self.storage.connect()
            self.sessions = await self.storage.load_all()
            logger.info(f"✅ 已加载 {len(self.sessions)} 个会话")
        except Exception as e:
            logger.warning(f"⚠️  会话存储加载失败，从空映射开始: {e}")
            self.sessions = {}

        self.loaded = True

    # ===== 映射操作 =====

    def get_or_create(self, conversation_id: str, model: str = "sonnet") -> str:
        """
        获取或创建会话的 CLI session_id

        Args:
            conversation_id: 外部会话 ID
            model: 本次请求使用的模型

        Returns:
            claude_session_id
        """
        now = self._clock()
        existing = self.sessions.get(conversation_id)
        if existing:
            existing.touch(now)
            existing.model = model
            self._schedule_save()
            return existing.claude_session_id

        session = ConversationSession(
            conversation_id=conversation_id,
            claude_session_id=str(uuid.uuid4()),
            created_at=now,
            last_used_at=now,
            model=model,
        )
        self.sessions[conversation_id] = session
        logger.info(f"创建会话: {conversation_id} -> {session.claude_session_id}")
        self._schedule_save()
        return session.claude_session_id

    def get(self, conversation_id: str) -> Optional[ConversationSession]:
        """
        获取会话（不刷新活跃时间）

        Args:
            conversation_id: 外部会话 ID

        Returns:
            会话记录，如果不存在返回 None
        """
        return self.sessions.get(conversation_id)

    def mark_resumed(self, conversation_id: str) -> Optional[ConversationSession]:
        """
        记录一次会话复用：刷新 lastUsedAt，messageCount + 1

        Args:
            conversation_id: 外部会话 ID

        Returns:
            更新后的会话记录，如果不存在返回 None
        """
        session = self.sessions.get(conversation_id)
        if session is None:
            return None

        session.touch(self._clock())
        session.message_count += 1
        self._schedule_save()
        return session

    def delete(self, conversation_id: str) -> bool:
        """
        删除会话

        Args:
            conversation_id: 外部会话 ID

        Returns:
            是否成功删除
        """
        session = self.sessions.pop(conversation_id, None)
        if session is None:
            logger.debug(f"会话不存在: {conversation_id}")
            return False

        logger.info(f"删除会话: {conversation_id} -> {session.claude_session_id}")
        self._schedule_save()
        return True

    def cleanup(self) -> int:
        """
        清理过期会话

        Returns:
            清理的会话数量
        """
        now = self._clock()
        expired = [
            conversation_id
            for conversation_id, session in self.sessions.items()
            if session.is_expired(self.ttl_seconds, now)
        ]

        for conversation_id in expired:
            del self.sessions[conversation_id]

        if expired:
            logger.info(f"已清理 {len(expired)} 个过期会话")
            self._schedule_save()

        return len(expired)

    def get_statistics(self) -> dict:
        """
        获取会话统计信息

        Returns:
            统计信息字典
        """
        total = len(self.sessions)
        messages = sum(s.message_count for s in self.sessions.values())
        last_save = self.last_save_result

        return {
            "total_sessions": total,
            "total_resumed_messages": messages,
            "cleanup_running": self._cleanup_running,
            "last_save_ok": last_save.ok if last_save else None,
            "last_save_error": last_save.error if last_save else None,
        }

    # ===== 持久化 =====

    def _schedule_save(self) -> None:
        """标记映射已变更，并在后台启动写入（已有写入任务时由其接续）"""
        self._dirty = True

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有运行中的事件循环，等待下一次 flush()
            return

        if self._save_task is None or self._save_task.done():
            self._save_task = loop.create_task(self._save_worker())

    async def _save_worker(self) -> None:
        """循环写入最新快照，直到没有新的变更"""
        while self._dirty:
            self._dirty = False
            snapshot = {
                conversation_id: dataclasses.replace(session)
                for conversation_id, session in self.sessions.items()
            }
            try:
                await self.storage.save_all(snapshot)
                self.last_save_result = SaveResult(
                    ok=True, count=len(snapshot), saved_at=self._clock()
                )
            except Exception as e:
                self.last_save_result = SaveResult(
                    ok=False, count=len(snapshot), saved_at=self._clock(), error=str(e)
                )
                logger.error(f"[SessionManager] 保存失败: {e}")

    async def flush(self) -> Optional[SaveResult]:
        """
        等待所有待写入的变更落盘

        Returns:
            最近一次保存结果
        """
        if self._save_task is not None and not self._save_task.done():
            await self._save_task
        if self._dirty:
            await self._save_worker()
        return self.last_save_result

    # ===== 后台清理 =====

    async def start_cleanup_task(self):
        """启动会话清理任务（后台运行）"""
        if self._cleanup_running:
            logger.warning("清理任务已在运行")
            return

        self._cleanup_running = True
        self.cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("会话清理任务已启动")

    async def stop_cleanup_task(self):
        """停止会话清理任务"""
        if self.cleanup_task:
            self._cleanup_running = False
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass
            self.cleanup_task = None
            logger.info("会话清理任务已停止")

    async def _cleanup_loop(self):
        """会话清理循环"""
        while self._cleanup_running:
            try:
                await asyncio.sleep(self.cleanup_interval)
                self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"会话清理失败: {e}")

    async def close(self) -> None:
        """停止清理任务，写完待保存的变更并关闭存储"""
        await self.stop_cleanup_task()
        await self.flush()
        await self.storage.close()

    async def __aenter__(self):
        """支持 async with 语法"""
        await self.initialize()
        await self.start_cleanup_task()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """支持 async with 语法"""
        await self.close()


__all__ = [
    "SaveResult",
    "SessionManager",
]
