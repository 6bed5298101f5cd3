"""
Chat Completion Service - 单个请求的编排

请求 → 会话查找/创建 → 启动 CLI（新会话 / resume）→ 事件流
    → TurnAggregator 还原最后一轮 → 流式 SSE 或非流式 JSON

同时把工具调用事件转给 ProgressReporter（旁路，不影响主响应），
超时错误额外通过 OpenClawNotifier 告警。
"""

import asyncio
import logging
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional, Set

from ..api.streaming_utils import (
    SSE_DONE_MARKER,
    SSE_OK_COMMENT,
    completion_chunks,
    create_completion_response,
    sse_error_event,
)
from ..channels.openclaw import OpenClawNotifier
from ..models.openai import ChatCompletionRequest
from ..models.stream_event import StreamEvent, StreamEventType
from .cli_subprocess import CLISpawnError, CLISubprocess, SubprocessOptions
from .openai_adapter import CLIInput, build_cli_input, extract_model
from .progress_reporter import ProgressReporter
from .session_manager import SessionManager
from .turn_aggregator import CompletionResult, TurnAggregator

logger = logging.getLogger(__name__)

TIMEOUT_ALERT_PREFIX = "⚠️ 任務超時被終止："


class ChatCompletionError(Exception):
    """请求失败（携带 HTTP 状态码与 OpenAI 错误类型）"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_type: str = "server_error",
        code: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.code = code
        super().__init__(message)


@dataclass
class PreparedRequest:
    """
    已完成会话决策的请求

    Attributes:
        request_id: 24 位十六进制请求ID
        conversation_id: 外部会话ID（request.user）
        cli_input: CLI 输入
        options: 子进程启动参数
        resuming: 是否恢复已有会话
    """
    request_id: str
    conversation_id: Optional[str]
    cli_input: CLIInput
    options: SubprocessOptions
    resuming: bool = False


def new_request_id() -> str:
    return uuid.uuid4().hex[:24]


class ChatCompletionService:
    """
    编排会话、CLI 子进程、轮次聚合与进度通知

    依赖通过构造函数注入，便于测试替换子进程与旁路渠道。
    """

    def __init__(
        self,
        session_manager: SessionManager,
        subprocess_factory: Callable[[], CLISubprocess],
        progress_factory: Optional[Callable[[], ProgressReporter]] = None,
        notifier: Optional[OpenClawNotifier] = None,
        default_model: str = "sonnet",
        exit_grace: float = 10.0
    ):
        """
        初始化服务

        Args:
            session_manager: 会话管理器
            subprocess_factory: 每个请求创建一个 CLISubprocess
            progress_factory: 每个请求创建一个 ProgressReporter（None 表示禁用）
            notifier: 超时告警发送器
            default_model: 默认 CLI 模型别名
            exit_grace: 收到 result 后等待 CLI 自行退出的秒数
        """
        self.session_manager = session_manager
        self.subprocess_factory = subprocess_factory
        self.progress_factory = progress_factory or (lambda: ProgressReporter(None, None))
        self.notifier = notifier
        self.default_model = default_model
        self.exit_grace = exit_grace
        self._background_tasks: Set[asyncio.Task] = set()

    # ===== 请求准备 =====

    @staticmethod
    def validate(request: ChatCompletionRequest) -> None:
        """
        校验请求

        Raises:
            ChatCompletionError: messages 缺失或为空（400）
        """
        if not request.messages:
            raise ChatCompletionError(
                "messages is required and must be a non-empty array",
                status_code=400,
                error_type="invalid_request_error",
                code="invalid_messages",
            )

    def prepare(self, request: ChatCompletionRequest, request_id: Optional[str] = None) -> PreparedRequest:
        """
        会话决策：有映射则 resume，否则创建新的 CLI session_id

        Args:
            request: OpenAI 请求（已校验）
            request_id: 请求ID（默认自动生成）

        Returns:
            PreparedRequest
        """
        request_id = request_id or new_request_id()
        conversation_id = request.user
        session_id = None
        resume_session_id = None

        if conversation_id:
            existing = self.session_manager.get(conversation_id)
            if existing:
                self.session_manager.mark_resumed(conversation_id)
                resume_session_id = existing.claude_session_id
                logger.info(
                    f"[Session] Resuming: {conversation_id} -> {resume_session_id} "
                    f"(msg #{existing.message_count})"
                )
            else:
                session_id = self.session_manager.get_or_create(
                    conversation_id,
                    extract_model(request.model, self.default_model)
                )
                logger.info(f"[Session] New: {conversation_id} -> {session_id}")

        resuming = resume_session_id is not None
        cli_input = build_cli_input(request, resuming, self.default_model)
        options = SubprocessOptions(
            model=cli_input.model,
            system_prompt=cli_input.system_prompt,
            session_id=session_id,
            resume_session_id=resume_session_id,
        )
        return PreparedRequest(
            request_id=request_id,
            conversation_id=conversation_id,
            cli_input=cli_input,
            options=options,
            resuming=resuming,
        )

    # ===== 执行 =====

    async def complete(self, prepared: PreparedRequest) -> Dict:
        """
        非流式：等待最终回答与进程退出

        Returns:
            chat.completion 响应

        Raises:
            ChatCompletionError: CLI 启动失败、超时、异常退出或 resume 失败
        """
        result: Optional[CompletionResult] = None
        execution = self._execute(prepared)
        try:
            async for item in execution:
                result = item
        finally:
            await execution.aclose()
        return create_completion_response(prepared.request_id, result)

    async def stream(self, prepared: PreparedRequest) -> AsyncIterator[str]:
        """
        流式：先写出 :ok 注释，结果就绪后重放最后一轮的增量

        Yields:
            SSE 格式的事件字符串
        """
        yield SSE_OK_COMMENT

        execution = self._execute(prepared, detach_after_result=True)
        try:
            async for result in execution:
                for chunk in completion_chunks(prepared.request_id, result):
                    yield chunk
        except ChatCompletionError as e:
            logger.error(f"[{prepared.request_id}] Streaming error: {e.message}")
            yield sse_error_event(e.message)
            yield SSE_DONE_MARKER
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"[{prepared.request_id}] Client disconnected, stopping CLI")
            raise
        finally:
            await execution.aclose()

    async def _execute(
        self,
        prepared: PreparedRequest,
        detach_after_result: bool = False
    ) -> AsyncIterator[CompletionResult]:
        """
        运行一次 CLI：产出一次最终回答，然后等待进程退出

        进度消息清理总是在后台任务中进行，不阻塞回答。

        Args:
            prepared: 已准备的请求
            detach_after_result: 为 True 时，产出回答后立即把子进程交给后台任务
                （等待退出 / 超时终止），生成器随即结束

        Yields:
            CompletionResult（恰好一次）

        Raises:
            ChatCompletionError: 未得到最终回答
        """
        progress = self.progress_factory()
        aggregator = TurnAggregator()
        cleanup_task = None
        try:
            async with AsyncExitStack() as stack:
                proc = await stack.enter_async_context(self.subprocess_factory())
                try:
                    await proc.start(prepared.cli_input.prompt, prepared.options)
                except CLISpawnError as e:
                    raise ChatCompletionError(str(e)) from e

                events = proc.events()
                exit_code = None
                async for event in events:
                    if event.type == StreamEventType.CONTENT_BLOCK_START:
                        if event.tool_name:
                            logger.info(f"[{prepared.request_id}] Tool call: {event.tool_name}")
                            progress.report(event.tool_name)

                    elif event.type == StreamEventType.RESUME_FAILED:
                        self._invalidate_session(prepared)

                    elif event.type == StreamEventType.ERROR:
                        await self._on_error(prepared, event)
                        raise ChatCompletionError(event.message or "CLI error")

                    elif event.type == StreamEventType.PROCESS_EXIT:
                        exit_code = event.exit_code

                    else:
                        result = aggregator.feed(event)
                        if result is not None:
                            cleanup_task = self._cleanup_progress(prepared, progress)
                            if detach_after_result:
                                self._spawn_background(
                                    self._finish_detached(prepared, stack.pop_all(), events),
                                    f"cli-exit-{prepared.request_id}"
                                )
                                yield result
                                return
                            yield result
                            await self._wait_for_exit(prepared, events)
                            return

                raise ChatCompletionError(f"CLI exited with code {exit_code} without response")
        finally:
            if cleanup_task is None:
                self._cleanup_progress(prepared, progress)

    async def _finish_detached(
        self,
        prepared: PreparedRequest,
        stack: AsyncExitStack,
        events: AsyncIterator[StreamEvent]
    ) -> None:
        """后台：响应已结束，接管子进程上下文，等待退出后回收"""
        async with stack:
            await self._wait_for_exit(prepared, events)

    def _cleanup_progress(self, prepared: PreparedRequest, progress: ProgressReporter) -> asyncio.Task:
        """进度消息删除可能很慢（Telegram 超时），放到后台，不阻塞回答"""
        return self._spawn_background(progress.cleanup(), f"progress-cleanup-{prepared.request_id}")

    def _spawn_background(self, coro, name: str) -> asyncio.Task:
        """启动旁路后台任务（保留引用直到完成）"""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    async def drain_background(self, timeout: Optional[float] = None) -> None:
        """
        等待所有后台任务（进度清理、子进程回收）结束，关闭时调用

        Args:
            timeout: 最长等待秒数，超时后取消剩余任务
        """
        if not self._background_tasks:
            return
        pending = list(self._background_tasks)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} background task(s) on shutdown")
            await asyncio.gather(*not_done, return_exceptions=True)

    async def _wait_for_exit(self, prepared: PreparedRequest, events: AsyncIterator[StreamEvent]) -> None:
        """结果已返回，给 CLI 留出保存会话的时间，超时后由 async with 终止"""
        async def drain():
            async for event in events:
                if event.type == StreamEventType.PROCESS_EXIT:
                    logger.debug(f"[{prepared.request_id}] CLI exited with code {event.exit_code}")

        try:
            await asyncio.wait_for(drain(), timeout=self.exit_grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"[{prepared.request_id}] CLI still running {self.exit_grace:g}s after result, killing"
            )

    def _invalidate_session(self, prepared: PreparedRequest) -> None:
        """resume 失败：删除映射，下一次请求重新开始"""
        logger.warning(f"[Session] Resume failed, invalidating: {prepared.conversation_id}")
        if prepared.conversation_id:
            self.session_manager.delete(prepared.conversation_id)

    async def _on_error(self, prepared: PreparedRequest, event: StreamEvent) -> None:
        logger.error(f"[{prepared.request_id}] CLI error: {event.message}")
        if event.timed_out and self.notifier is not None:
            await self.notifier.notify(f"{TIMEOUT_ALERT_PREFIX}{event.message}")


__all__ = [
    "ChatCompletionError",
    "ChatCompletionService",
    "PreparedRequest",
    "new_request_id",
    "TIMEOUT_ALERT_PREFIX",
]
