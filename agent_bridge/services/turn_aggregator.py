"""
Turn Aggregator - 按轮次聚合 CLI 输出

CLI 在一次调用内可能运行多轮（例如先规划工具调用，再给出最终回答）。
只有最后一轮的文本才是给用户的回复：

    message_start       → 轮次 +1，清空缓冲（上一轮内容丢弃，只记日志）
    content_block_delta → 追加到当前轮缓冲，不立即输出
    result              → 当前轮缓冲即最终回答

没有任何 message_start 就收到 result 时视为合法：使用已收到的增量文本，
若没有增量则使用 result 事件自带的文本。
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..models.stream_event import StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "claude-sonnet-4"


@dataclass
class CompletionResult:
    """
    最终回答

    Attributes:
        fragments: 最后一轮的增量文本（流式返回时逐个重放）
        model: 模型名（未归一化）
        prompt_tokens: 输入 token 数
        completion_tokens: 输出 token 数
        turn_count: 本次调用的轮次数
    """
    fragments: List[str] = field(default_factory=list)
    model: str = DEFAULT_MODEL_NAME
    prompt_tokens: int = 0
    completion_tokens: int = 0
    turn_count: int = 0

    @property
    def content(self) -> str:
        return "".join(self.fragments)


class TurnAggregator:
    """
    轮次聚合器（每个请求一个实例）

    同一时刻只有一个活动缓冲；result 到达后状态冻结，之后的事件被忽略。
    """

    def __init__(self, default_model: str = DEFAULT_MODEL_NAME):
        self.default_model = default_model
        self.turn_count = 0
        self.buffer: List[str] = []
        self.model: Optional[str] = None
        self.result: Optional[CompletionResult] = None

    @property
    def completed(self) -> bool:
        return self.result is not None

    def feed(self, event: StreamEvent) -> Optional[CompletionResult]:
        """
        处理一个事件

        Args:
            event: CLI 事件

        Returns:
            收到 RESULT 时返回最终回答，否则返回 None
        """
        if self.completed:
            return None

        if event.type == StreamEventType.MESSAGE_START:
            self.turn_count += 1
            if self.buffer:
                discarded = "".join(self.buffer)
                logger.info(
                    f"[TurnAggregator] New turn #{self.turn_count}, discarding "
                    f"{len(self.buffer)} buffered deltas from previous turn: \"{discarded[:200]}\""
                )
            self.buffer = []

        elif event.type == StreamEventType.CONTENT_BLOCK_DELTA:
            if event.text:
                self.buffer.append(event.text)

        elif event.type == StreamEventType.ASSISTANT_MESSAGE:
            if event.model:
                self.model = event.model

        elif event.type == StreamEventType.RESULT:
            return self._finalize(event)

        return None

    def _finalize(self, event: StreamEvent) -> CompletionResult:
        fragments = list(self.buffer)
        if self.turn_count == 0 and not fragments and event.text:
            fragments = [event.text]

        model = self.model
        if not model and event.model_usage:
            model = event.model_usage[0]

        self.result = CompletionResult(
            fragments=fragments,
            model=model or self.default_model,
            prompt_tokens=event.input_tokens,
            completion_tokens=event.output_tokens,
            turn_count=self.turn_count,
        )
        self.buffer = []
        logger.info(
            f"[TurnAggregator] Final turn #{self.turn_count}: {len(fragments)} deltas, "
            f"{len(self.result.content)} chars"
        )
        return self.result


__all__ = [
    "CompletionResult",
    "TurnAggregator",
    "DEFAULT_MODEL_NAME",
]
