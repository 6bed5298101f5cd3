"""
OpenAI 请求 → CLI 输入

- system / developer 消息合并为系统提示词
- 新会话发送完整对话（单条用户消息原样发送，多条渲染为 User:/Assistant: 块）
- 恢复会话只发送最后一条用户消息（上下文已保存在 CLI 会话中）
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..models.openai import ChatCompletionRequest, ChatMessage

logger = logging.getLogger(__name__)

MODEL_ALIASES = ("opus", "sonnet", "haiku")
SYSTEM_ROLES = ("system", "developer")


@dataclass
class CLIInput:
    """传给 CLI 子进程的输入"""
    prompt: str
    system_prompt: Optional[str]
    model: str


def extract_model(requested: Optional[str], default: str = "sonnet") -> str:
    """
    将请求中的模型名映射为 CLI 模型别名

    Args:
        requested: 请求的模型名，例如 "claude-code-cli/claude-opus-4"
        default: 无法识别时使用的别名

    Returns:
        opus / sonnet / haiku 之一（或 default）
    """
    if not requested:
        return default
    name = requested.rsplit("/", 1)[-1].lower()
    for alias in MODEL_ALIASES:
        if alias in name:
            return alias
    return default


def normalize_model_name(model: Optional[str]) -> str:
    """
    统一对外展示的模型名
    例如 "claude-sonnet-4-5-20250929" → "claude-sonnet-4"
    """
    if not model:
        return "claude-sonnet-4"
    for alias in MODEL_ALIASES:
        if alias in model:
            return f"claude-{alias}-4"
    return model


def _render_transcript(messages: List[ChatMessage]) -> str:
    blocks = []
    for message in messages:
        text = message.text()
        if not text:
            continue
        if message.role == "assistant":
            blocks.append(f"Assistant: {text}")
        else:
            blocks.append(f"User: {text}")
    return "\n\n".join(blocks)


def build_cli_input(
    request: ChatCompletionRequest,
    resuming: bool,
    default_model: str = "sonnet"
) -> CLIInput:
    """
    构造 CLI 输入

    Args:
        request: OpenAI 请求
        resuming: 是否恢复已有 CLI 会话
        default_model: 默认模型别名

    Returns:
        CLIInput
    """
    messages = request.messages or []

    system_parts = [m.text() for m in messages if m.role in SYSTEM_ROLES]
    system_prompt = "\n\n".join(p for p in system_parts if p) or None

    conversation = [m for m in messages if m.role not in SYSTEM_ROLES]

    if resuming:
        user_messages = [m for m in conversation if m.role == "user"]
        last = user_messages[-1] if user_messages else (conversation[-1] if conversation else None)
        prompt = last.text() if last else ""
    elif len(conversation) == 1 and conversation[0].role == "user":
        prompt = conversation[0].text()
    else:
        prompt = _render_transcript(conversation)

    return CLIInput(
        prompt=prompt,
        system_prompt=system_prompt,
        model=extract_model(request.model, default_model),
    )


__all__ = [
    "CLIInput",
    "extract_model",
    "normalize_model_name",
    "build_cli_input",
]
