"""
Progress Reporter - 旁路进度消息

CLI 调用工具（Bash、WebSearch、Read 等）时，在旁路渠道维护一条进度消息：
第一次发送，之后编辑同一条消息，最终回答就绪或请求被放弃时删除。

节流采用尾沿合并：两次发送/编辑之间至少间隔 min_interval；窗口内的多次上报
合并为窗口结束时的一次刷新，保证最后一次上报一定被送达。

节流状态机（FlushThrottle）：
    IDLE ──窗口外上报──▶ FLUSHED
    IDLE/FLUSHED ──窗口内上报──▶ PENDING ──安排定时器──▶ SCHEDULED
    SCHEDULED ──窗口内上报──▶ SCHEDULED（合并）
    SCHEDULED ──定时器触发──▶ FLUSHED
    任意状态 ──terminate()──▶ 终止（此后所有上报被忽略）
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from ..channels.base import BaseChannelAdapter

logger = logging.getLogger(__name__)

# 工具名 → 进度标签（未列出的工具直接显示原名）
TOOL_LABELS = {
    "Bash": "執行命令",
    "Read": "讀取檔案",
    "Write": "寫入檔案",
    "Edit": "編輯檔案",
    "Grep": "搜尋內容",
    "Glob": "搜尋檔案",
    "WebSearch": "搜尋網頁",
    "WebFetch": "讀取網頁",
    "TodoRead": "讀取待辦",
    "TodoWrite": "更新待辦",
}

IN_PROGRESS_MARKER = "⏳"
EMPTY_PROGRESS_TEXT = f"{IN_PROGRESS_MARKER} 處理中..."


class ThrottleState(str, Enum):
    """节流状态"""
    IDLE = "idle"            # 尚未刷新过
    PENDING = "pending"      # 窗口内有待发送的标签，定时器尚未安排
    SCHEDULED = "scheduled"  # 定时器已安排，等待窗口结束
    FLUSHED = "flushed"      # 最近一次动作是刷新


class ThrottleAction(str, Enum):
    """一次上报/定时器触发后的动作"""
    FLUSH_NOW = "flush_now"
    SCHEDULE = "schedule"
    COALESCE = "coalesce"
    IGNORE = "ignore"


@dataclass
class ThrottleDecision:
    action: ThrottleAction
    delay: float = 0.0


class FlushThrottle:
    """
    尾沿节流状态机（纯逻辑，不涉及定时器和 I/O）

    调用方根据返回的动作执行刷新或安排定时器，然后回调 mark_scheduled() /
    mark_flushed() 推进状态。
    """

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self.state = ThrottleState.IDLE
        self.last_flush_at: Optional[float] = None
        self.pending_label: Optional[str] = None
        self.terminated = False

    def on_report(self, label: str, now: float) -> ThrottleDecision:
        """
        处理一次上报

        Args:
            label: 最新标签
            now: 当前时间

        Returns:
            ThrottleDecision
        """
        if self.terminated:
            return ThrottleDecision(ThrottleAction.IGNORE)

        if self.state in (ThrottleState.PENDING, ThrottleState.SCHEDULED):
            self.pending_label = label
            return ThrottleDecision(ThrottleAction.COALESCE)

        if self.last_flush_at is None:
            return ThrottleDecision(ThrottleAction.FLUSH_NOW)

        elapsed = now - self.last_flush_at
        if elapsed >= self.min_interval:
            return ThrottleDecision(ThrottleAction.FLUSH_NOW)

        self.pending_label = label
        self.state = ThrottleState.PENDING
        return ThrottleDecision(ThrottleAction.SCHEDULE, delay=self.min_interval - elapsed)

    def mark_scheduled(self) -> None:
        """定时器已安排：PENDING → SCHEDULED"""
        if self.state == ThrottleState.PENDING:
            self.state = ThrottleState.SCHEDULED

    def on_timer(self, now: float) -> ThrottleDecision:
        """定时器触发"""
        if self.terminated or self.state != ThrottleState.SCHEDULED:
            return ThrottleDecision(ThrottleAction.IGNORE)
        return ThrottleDecision(ThrottleAction.FLUSH_NOW)

    def mark_flushed(self, now: float) -> None:
        """刷新开始：记录时间并清除待发送标签"""
        self.last_flush_at = now
        self.pending_label = None
        self.state = ThrottleState.FLUSHED

    def terminate(self) -> None:
        self.terminated = True
        self.pending_label = None


class ProgressReporter:
    """
    单个请求的进度消息（每个请求一个实例）

    report() 是同步的，不会阻塞调用方；发送/编辑/删除都在后台任务中执行，
    并按顺序串行化，避免"创建"和"编辑"交错。
    """

    def __init__(
        self,
        channel: Optional[BaseChannelAdapter],
        target: Optional[str],
        min_interval: float = 3.0,
        history_limit: int = 6,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        初始化进度上报器

        Args:
            channel: 旁路渠道适配器（None 表示禁用）
            target: 渠道内的目标会话ID（None 表示禁用）
            min_interval: 两次刷新之间的最小间隔（秒）
            history_limit: 最多显示的标签行数
            clock: 时间源
        """
        self.channel = channel
        self.target = target
        self.history_limit = history_limit
        self._clock = clock

        self.enabled = bool(channel is not None and target and channel.is_configured())
        self.history: List[str] = []
        self.message_id: Optional[str] = None
        self.throttle = FlushThrottle(min_interval)
        self.flush_count = 0
        self.delete_count = 0

        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._cleanup_started = False

    @property
    def terminated(self) -> bool:
        return self.throttle.terminated

    @staticmethod
    def label_for(tool_name: str) -> str:
        return TOOL_LABELS.get(tool_name, tool_name)

    def render_text(self) -> str:
        """
        生成进度消息文本，例如：
            ⏳ 搜尋網頁...
                 執行命令...
        """
        if not self.history:
            return EMPTY_PROGRESS_TEXT
        lines = []
        for i, label in enumerate(self.history):
            if i == 0:
                lines.append(f"{IN_PROGRESS_MARKER} {label}...")
            else:
                lines.append(f"     {label}...")
        return "\n".join(lines)

    def report(self, tool_name: str) -> None:
        """
        上报一次工具调用

        Args:
            tool_name: CLI 工具名
        """
        if self.terminated or not self.enabled:
            return

        label = self.label_for(tool_name)
        if self.history and self.history[-1] == label:
            return

        self.history.append(label)
        if len(self.history) > self.history_limit:
            self.history = self.history[-self.history_limit:]

        now = self._clock()
        decision = self.throttle.on_report(label, now)

        if decision.action == ThrottleAction.FLUSH_NOW:
            self.throttle.mark_flushed(now)
            self._spawn(self._flush())
        elif decision.action == ThrottleAction.SCHEDULE:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(decision.delay, self._on_timer)
            self.throttle.mark_scheduled()

    def _on_timer(self) -> None:
        self._timer = None
        now = self._clock()
        decision = self.throttle.on_timer(now)
        if decision.action == ThrottleAction.FLUSH_NOW:
            self.throttle.mark_flushed(now)
            self._spawn(self._flush())

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _flush(self) -> None:
        """发送或编辑进度消息"""
        async with self._flush_lock:
            if self.terminated:
                return

            text = self.render_text()
            try:
                if self.message_id is None:
                    resp = await self.channel.send_message(self.target, text)
                    if resp.success:
                        self.message_id = resp.message_id
                        logger.info(f"[ProgressReporter] Sent progress message #{self.message_id}")
                else:
                    await self.channel.edit_message(self.target, self.message_id, text)
                    logger.debug(
                        f"[ProgressReporter] Updated progress message #{self.message_id}: {self.history[-1]}"
                    )
                self.flush_count += 1
            except Exception as e:
                logger.error(f"[ProgressReporter] Flush failed: {e}")

    async def cleanup(self) -> None:
        """
        终止上报并删除进度消息（可重复调用，最多删除一次）
        """
        if self._cleanup_started:
            return
        self._cleanup_started = True

        self.throttle.terminate()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        # 等待进行中的发送，避免刚创建的消息成为孤儿
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if self.message_id is not None and self.channel is not None:
            message_id = self.message_id
            self.message_id = None
            try:
                await self.channel.delete_message(self.target, message_id)
                self.delete_count += 1
                logger.info(f"[ProgressReporter] Deleted progress message #{message_id}")
            except Exception as e:
                logger.error(f"[ProgressReporter] Delete failed: {e}")


__all__ = [
    "TOOL_LABELS",
    "ThrottleState",
    "ThrottleAction",
    "ThrottleDecision",
    "FlushThrottle",
    "ProgressReporter",
]
