"""
CLI stream event data structures

The wrapped CLI writes one JSON object per stdout line. This module turns those
objects into typed StreamEvent values that the rest of the bridge consumes.

Event order:
    (message_start → content_block_start* → content_block_delta*)+ → result → process_exit

error / resume_failed may appear at any point; process_exit is always last.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


class StreamEventType(str, Enum):
    """
    Stream event type enumeration

    Types:
        MESSAGE_START: a new turn begins; previously buffered text is stale
        CONTENT_BLOCK_START: a content block opens (tool_name set for tool_use blocks)
        CONTENT_BLOCK_DELTA: incremental assistant text
        ASSISTANT_MESSAGE: a complete assistant message, carries the model name
        RESULT: terminal success event with usage
        ERROR: terminal failure (spawn, timeout, abnormal exit)
        RESUME_FAILED: the requested resume session is unknown to the CLI
        PROCESS_EXIT: the child exited; always the final event
    """
    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    ASSISTANT_MESSAGE = "assistant_message"
    RESULT = "result"
    ERROR = "error"
    RESUME_FAILED = "resume_failed"
    PROCESS_EXIT = "process_exit"


@dataclass(frozen=True)
class StreamEvent:
    """
    A single typed event produced by the CLI subprocess

    Only the fields relevant to the event type are populated.

    Attributes:
        type: Event type
        tool_name: Tool name (CONTENT_BLOCK_START with a tool_use block)
        text: Delta text (CONTENT_BLOCK_DELTA) or final result text (RESULT)
        model: Model name (ASSISTANT_MESSAGE)
        message: Error message (ERROR / RESUME_FAILED)
        timed_out: Whether the ERROR was raised by the activity watchdog
        exit_code: Process exit code (PROCESS_EXIT)
        input_tokens: Prompt tokens reported by RESULT
        output_tokens: Completion tokens reported by RESULT
        model_usage: Model names listed in RESULT.modelUsage
        is_error: RESULT.is_error flag
        session_id: CLI session id reported by RESULT
    """
    type: StreamEventType
    tool_name: Optional[str] = None
    text: str = ""
    model: Optional[str] = None
    message: Optional[str] = None
    timed_out: bool = False
    exit_code: Optional[int] = None
    input_tokens: int = 0
    output_tokens: int = 0
    model_usage: Tuple[str, ...] = field(default_factory=tuple)
    is_error: bool = False
    session_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """RESULT 与 ERROR 结束一次请求"""
        return self.type in (StreamEventType.RESULT, StreamEventType.ERROR)

    @classmethod
    def message_start(cls) -> "StreamEvent":
        return cls(type=StreamEventType.MESSAGE_START)

    @classmethod
    def content_block_start(cls, tool_name: Optional[str] = None) -> "StreamEvent":
        return cls(type=StreamEventType.CONTENT_BLOCK_START, tool_name=tool_name)

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(type=StreamEventType.CONTENT_BLOCK_DELTA, text=text)

    @classmethod
    def assistant(cls, model: Optional[str]) -> "StreamEvent":
        return cls(type=StreamEventType.ASSISTANT_MESSAGE, model=model)

    @classmethod
    def result(
        cls,
        text: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
        model_usage: Tuple[str, ...] = (),
        is_error: bool = False,
        session_id: Optional[str] = None,
    ) -> "StreamEvent":
        return cls(
            type=StreamEventType.RESULT,
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model_usage=tuple(model_usage),
            is_error=is_error,
            session_id=session_id,
        )

    @classmethod
    def error(cls, message: str, timed_out: bool = False) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, message=message, timed_out=timed_out)

    @classmethod
    def resume_failed(cls, message: str) -> "StreamEvent":
        return cls(type=StreamEventType.RESUME_FAILED, message=message)

    @classmethod
    def process_exit(cls, exit_code: Optional[int]) -> "StreamEvent":
        return cls(type=StreamEventType.PROCESS_EXIT, exit_code=exit_code)

    @classmethod
    def from_cli_message(cls, data: Dict[str, Any]) -> Optional["StreamEvent"]:
        """
        Convert one decoded CLI stdout object into a StreamEvent

        Args:
            data: Decoded JSON object

        Returns:
            StreamEvent, or None for message types the bridge does not use
            (system init, user tool results, unknown types)
        """
        msg_type = data.get("type")

        if msg_type == "assistant":
            message = data.get("message") or {}
            model = message.get("model") if isinstance(message, dict) else None
            return cls.assistant(model)

        if msg_type == "result":
            usage = data.get("usage") or {}
            model_usage = data.get("modelUsage") or {}
            text = data.get("result")
            return cls.result(
                text=text if isinstance(text, str) else "",
                input_tokens=_as_int(usage.get("input_tokens")),
                output_tokens=_as_int(usage.get("output_tokens")),
                model_usage=tuple(model_usage.keys()) if isinstance(model_usage, dict) else (),
                is_error=bool(data.get("is_error", False)),
                session_id=data.get("session_id"),
            )

        if msg_type != "stream_event":
            return None

        event = data.get("event")
        if not isinstance(event, dict):
            return None
        event_type = event.get("type")

        if event_type == "message_start":
            return cls.message_start()

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            tool_name = None
            if isinstance(block, dict) and block.get("type") == "tool_use":
                tool_name = block.get("name") or None
            return cls.content_block_start(tool_name)

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            text = delta.get("text") if isinstance(delta, dict) else None
            # input_json_delta / thinking_delta 不含 text，不属于回复正文
            if not isinstance(text, str) or not text:
                return None
            return cls.delta(text)

        return None


def _as_int(value: Any) -> int:
    """usage 字段缺失或非数字时按 0 计"""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
