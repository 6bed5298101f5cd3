"""
CLI 子进程管理

每个请求启动一次 CLI（--output-format stream-json），逐行解析 stdout 为 StreamEvent，
通过队列按输出顺序交给消费者。

设计要点：
1. 活动超时看门狗：每收到一行输出就重置计时；空闲超过 idle_timeout 即终止子进程，
   只限制"卡住"，不限制总时长（长时间工具调用会持续产生输出）
2. resume 失败单独发出 RESUME_FAILED 事件，调用方据此删除会话映射
3. 每个请求最多一个终止事件（RESULT / ERROR），PROCESS_EXIT 永远是最后一个事件
4. kill() 幂等；async with 退出时一定终止子进程并回收后台任务

使用方式：
    async with CLISubprocess(cli_path="claude") as proc:
        await proc.start(prompt, SubprocessOptions(model="sonnet"))
        async for event in proc.events():
            ...
"""

import asyncio
import json
import logging
import os
import re
import signal
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence

from ..models.stream_event import StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

# stderr 中表示 resume 的会话不存在
RESUME_FAILURE_PATTERN = re.compile(
    r"no conversation found|session\b.*\bnot found|invalid session",
    re.IGNORECASE
)

_STDERR_TAIL_LINES = 20
_PREVIEW_CHARS = 200


class CLISpawnError(Exception):
    """CLI 子进程启动失败"""
    pass


@dataclass
class SubprocessOptions:
    """
    子进程启动参数

    Attributes:
        model: CLI 模型别名（opus / sonnet / haiku）
        system_prompt: 追加的系统提示词
        session_id: 新会话使用的 session_id
        resume_session_id: 要恢复的 session_id（与 session_id 互斥）
    """
    model: str = "sonnet"
    system_prompt: Optional[str] = None
    session_id: Optional[str] = None
    resume_session_id: Optional[str] = None


class CLISubprocess:
    """
    单次 CLI 调用的监管者

    关键特性：
    - stdout 逐行解析，格式错误的行记录后跳过
    - 活动超时看门狗
    - resume 失败检测
    - 可取消：kill() / close() / async with
    """

    def __init__(
        self,
        cli_path: str = "claude",
        idle_timeout: Optional[float] = 300.0,
        skip_permissions: bool = True,
        max_line_bytes: int = 16 * 1024 * 1024,
        extra_args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None
    ):
        """
        初始化子进程监管者

        Args:
            cli_path: CLI 可执行文件
            idle_timeout: 无输出超时（秒），None 或 <=0 表示不限制
            skip_permissions: 是否追加 --dangerously-skip-permissions
            max_line_bytes: stdout 单行最大字节数
            extra_args: 追加到命令行末尾的参数
            env: 子进程环境变量（默认继承当前进程）
        """
        self.cli_path = cli_path
        self.idle_timeout = idle_timeout
        self.skip_permissions = skip_permissions
        self.max_line_bytes = max_line_bytes
        self.extra_args = list(extra_args)
        self.env = env

        self._process: Optional[asyncio.subprocess.Process] = None
        self._options: Optional[SubprocessOptions] = None
        self._queue: "asyncio.Queue[StreamEvent]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._watchdog_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        self._last_activity = 0.0
        self._terminal_emitted = False
        self._resume_failed_emitted = False
        self._killed = False
        self.timed_out = False

    @classmethod
    def from_settings(cls, settings) -> "CLISubprocess":
        """根据 Settings 创建实例"""
        return cls(
            cli_path=settings.CLI_PATH,
            idle_timeout=settings.CLI_IDLE_TIMEOUT,
            skip_permissions=settings.CLI_SKIP_PERMISSIONS,
            max_line_bytes=settings.CLI_MAX_LINE_BYTES,
            extra_args=settings.CLI_EXTRA_ARGS,
        )

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    def build_command(self, options: SubprocessOptions) -> List[str]:
        """
        构造 CLI 命令行（prompt 通过 stdin 传入）

        Args:
            options: 启动参数

        Returns:
            argv 列表
        """
        cmd = [
            self.cli_path,
            "--print",
            "--output-format", "stream-json",
            "--verbose",
            "--include-partial-messages",
            "--model", options.model,
        ]
        if self.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if options.system_prompt:
            cmd.extend(["--append-system-prompt", options.system_prompt])
        if options.session_id:
            cmd.extend(["--session-id", options.session_id])
        elif options.resume_session_id:
            cmd.extend(["--resume", options.resume_session_id])
        cmd.extend(self.extra_args)
        return cmd

    async def start(self, prompt: str, options: SubprocessOptions) -> None:
        """
        启动 CLI 子进程

        Args:
            prompt: 写入 stdin 的提示词
            options: 启动参数

        Raises:
            ValueError: 同时指定了 session_id 和 resume_session_id
            RuntimeError: 重复启动
            CLISpawnError: 可执行文件不存在或无法启动
        """
        if self._process is not None:
            raise RuntimeError("CLI subprocess already started")
        if options.session_id and options.resume_session_id:
            raise ValueError("session_id and resume_session_id are mutually exclusive")

        self._options = options
        cmd = self.build_command(options)

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.max_line_bytes,
                env=self.env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            logger.error(f"CLI not found: {self.cli_path}")
            raise CLISpawnError(f"CLI executable not found: {self.cli_path}") from e
        except OSError as e:
            logger.error(f"Failed to spawn CLI: {e}")
            raise CLISpawnError(f"Failed to start CLI: {e}") from e

        mode = "resume" if options.resume_session_id else "new"
        logger.info(
            f"CLI started (pid={self._process.pid}, model={options.model}, "
            f"session={options.resume_session_id or options.session_id or '-'}, mode={mode})"
        )

        self._touch()
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._tasks = [
            asyncio.create_task(self._feed_stdin(prompt)),
            self._stderr_task,
            asyncio.create_task(self._pump_stdout()),
        ]
        if self.idle_timeout and self.idle_timeout > 0:
            self._watchdog_task = asyncio.create_task(self._watchdog())
            self._tasks.append(self._watchdog_task)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        按输出顺序产出事件，PROCESS_EXIT 之后结束

        Yields:
            StreamEvent
        """
        if self._process is None:
            raise RuntimeError("CLI subprocess not started")

        while True:
            event = await self._queue.get()
            yield event
            if event.type == StreamEventType.PROCESS_EXIT:
                return

    def kill(self) -> None:
        """终止子进程（及其进程组），可重复调用"""
        if self._process is None or self._process.returncode is not None or self._killed:
            return

        self._killed = True
        try:
            if hasattr(os, "killpg"):
                os.killpg(self._process.pid, signal.SIGKILL)
            else:
                self._process.kill()
            logger.info(f"CLI killed (pid={self._process.pid})")
        except ProcessLookupError:
            pass

    async def close(self) -> None:
        """终止子进程并回收后台任务"""
        self.kill()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._process is not None and self._process.returncode is None:
            try:
                await self._process.wait()
            except ProcessLookupError:
                pass

    async def __aenter__(self):
        """支持 async with 语法"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """支持 async with 语法"""
        await self.close()

    # ===== 内部实现 =====

    def _touch(self) -> None:
        """记录一次输出活动（重置看门狗）"""
        self._last_activity = asyncio.get_running_loop().time()

    def _emit(self, event: StreamEvent) -> None:
        """放入事件队列，保证至多一个终止事件"""
        if event.is_terminal:
            if self._terminal_emitted:
                logger.debug(f"Dropping extra terminal event: {event.type.value}")
                return
            self._terminal_emitted = True
        elif event.type == StreamEventType.RESUME_FAILED:
            if self._resume_failed_emitted:
                return
            self._resume_failed_emitted = True
        self._queue.put_nowait(event)

    def _resume_requested(self) -> bool:
        return bool(self._options and self._options.resume_session_id)

    async def _feed_stdin(self, prompt: str) -> None:
        """写入提示词并关闭 stdin"""
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            stdin.write(prompt.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"CLI closed stdin early: {e}")
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _read_stderr(self) -> None:
        """收集 stderr 尾部，检测 resume 失败"""
        stderr = self._process.stderr
        if stderr is None:
            return
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                self._touch()
                continue
            if not line:
                break
            self._touch()
            text = line.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            self._stderr_tail.append(text)
            logger.debug(f"[CLI stderr] {text[:_PREVIEW_CHARS]}")
            if self._resume_requested() and RESUME_FAILURE_PATTERN.search(text):
                logger.warning(f"CLI reported resume failure: {text[:_PREVIEW_CHARS]}")
                self._emit(StreamEvent.resume_failed(text))

    def _parse_line(self, line: bytes) -> Optional[StreamEvent]:
        """解析一行 stdout；格式错误时记录并返回 None"""
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return None

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Malformed JSON from CLI stdout, skipping: {text[:_PREVIEW_CHARS]}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Unexpected non-object line from CLI stdout, skipping: {text[:_PREVIEW_CHARS]}")
            return None

        return StreamEvent.from_cli_message(data)

    async def _pump_stdout(self) -> None:
        """读取 stdout 直到 EOF，然后等待进程退出并发出 PROCESS_EXIT"""
        stdout = self._process.stdout
        try:
            while stdout is not None:
                try:
                    line = await stdout.readline()
                except ValueError:
                    # 单行超过 limit，StreamReader 已丢弃该行
                    logger.warning(f"CLI stdout line exceeded {self.max_line_bytes} bytes, skipping")
                    self._touch()
                    continue
                if not line:
                    break
                self._touch()

                event = self._parse_line(line)
                if event is None:
                    continue

                if (
                    event.type == StreamEventType.RESULT
                    and event.is_error
                    and self._resume_requested()
                    and RESUME_FAILURE_PATTERN.search(event.text or "")
                ):
                    self._emit(StreamEvent.resume_failed(event.text))
                    self._emit(StreamEvent.error(event.text))
                    continue

                self._emit(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading CLI stdout: {e}", exc_info=True)
            self._emit(StreamEvent.error(f"Failed to read CLI output: {e}"))
            self.kill()

        # stderr 先读完，保证 RESUME_FAILED 排在终止事件之前
        if self._stderr_task is not None:
            await asyncio.gather(self._stderr_task, return_exceptions=True)

        code = await self._process.wait()
        if self._watchdog_task is not None and not self._watchdog_task.done():
            self._watchdog_task.cancel()

        if not self._terminal_emitted and code != 0:
            stderr_preview = "\n".join(list(self._stderr_tail)[-5:])
            message = f"CLI exited with code {code} without a result"
            if stderr_preview:
                message += f": {stderr_preview}"
            logger.error(message)
            self._emit(StreamEvent.error(message))

        logger.info(f"CLI exited (pid={self._process.pid}, code={code})")
        self._queue.put_nowait(StreamEvent.process_exit(code))

    async def _watchdog(self) -> None:
        """活动超时看门狗"""
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._last_activity + self.idle_timeout - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        if self._process is None or self._process.returncode is not None:
            return

        self.timed_out = True
        message = f"CLI timed out after {self.idle_timeout:g}s without output"
        logger.warning(f"{message} (pid={self._process.pid}), killing")
        if not self._terminal_emitted:
            self._emit(StreamEvent.error(message, timed_out=True))
        self.kill()


__all__ = [
    "CLISpawnError",
    "SubprocessOptions",
    "CLISubprocess",
    "RESUME_FAILURE_PATTERN",
]
