"""
OpenClaw 告警通知

通过 oc-tool 命令行发送一次性告警(例如任务超时被终止)。
子进程以脱离方式启动,调用方不等待结果;后台任务负责回收子进程,
TELEGRAM_NOTIFY_ID 未配置时静默跳过。
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional, Set, Union

logger = logging.getLogger(__name__)


class OpenClawNotifier:
    """oc-tool 告警发送器"""

    def __init__(
        self,
        tool_path: Union[str, Path],
        target_id: Optional[str],
        channel: str = "telegram"
    ):
        """
        初始化告警发送器

        Args:
            tool_path: oc-tool 可执行文件路径
            target_id: 目标会话ID(为空则禁用)
            channel: OpenClaw 渠道名
        """
        self.tool_path = Path(tool_path)
        self.target_id = target_id
        self.channel = channel
        self._reapers: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "OpenClawNotifier":
        return cls(
            tool_path=settings.notify_tool_path,
            target_id=settings.TELEGRAM_NOTIFY_ID,
        )

    def is_configured(self) -> bool:
        return bool(self.target_id)

    def build_command(self, message: str) -> list:
        payload = {
            "channel": self.channel,
            "target": f"{self.channel}:{self.target_id}",
            "message": message,
        }
        return [
            str(self.tool_path),
            "message",
            "send",
            json.dumps(payload, ensure_ascii=False),
        ]

    async def notify(self, message: str) -> bool:
        """
        发送告警(只等待 oc-tool 启动,不等待其结束)

        Args:
            message: 告警文本

        Returns:
            是否成功启动 oc-tool
        """
        if not self.is_configured():
            logger.info("[OpenClawNotifier] Skipped, TELEGRAM_NOTIFY_ID not set")
            return False

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(message),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=dict(os.environ),
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"[OpenClawNotifier] Failed to launch {self.tool_path}: {e}")
            return False

        task = asyncio.create_task(self._reap(process), name=f"oc-tool-{process.pid}")
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

        logger.info(f"[OpenClawNotifier] Alert sent to {self.channel}:{self.target_id}")
        return True

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if returncode != 0:
            logger.warning(f"[OpenClawNotifier] oc-tool exited with code {returncode}")

    @property
    def pending(self) -> int:
        """尚未退出的 oc-tool 子进程数"""
        return len(self._reapers)

    async def aclose(self, timeout: float = 5.0) -> None:
        """等待未退出的 oc-tool 子进程(超时后放弃等待)"""
        if not self._reapers:
            return
        done, not_done = await asyncio.wait(list(self._reapers), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
