"""
SSE 流式响应工具函数
OpenAI chat.completion / chat.completion.chunk 报文构造
"""
import json
import logging
import time
from typing import AsyncGenerator, Dict, Optional

from fastapi.responses import StreamingResponse

from ..services.openai_adapter import normalize_model_name
from ..services.turn_aggregator import CompletionResult

logger = logging.getLogger(__name__)

# 标准 SSE 响应头
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no"  # 禁用 nginx 缓冲
}

# 首次写出的注释行，强制刷新响应头，避免客户端连接超时
SSE_OK_COMMENT = ":ok\n\n"
SSE_DONE_MARKER = "data: [DONE]\n\n"


def format_sse_event(data: dict) -> str:
    """
    格式化 SSE 事件

    Args:
        data: 要发送的数据字典

    Returns:
        SSE 格式的字符串
    """
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def create_sse_response(
    generator: AsyncGenerator,
    request_id: Optional[str] = None
) -> StreamingResponse:
    """
    创建标准 SSE 响应

    Args:
        generator: 异步事件生成器
        request_id: 请求ID（写入 X-Request-Id 头）

    Returns:
        StreamingResponse 对象
    """
    headers = dict(SSE_HEADERS)
    if request_id:
        headers["X-Request-Id"] = request_id
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers=headers
    )


def error_body(message: str, error_type: str = "server_error", code: Optional[str] = None) -> Dict:
    """OpenAI 错误信封"""
    return {
        "error": {
            "message": message,
            "type": error_type,
            "code": code,
        }
    }


def sse_error_event(message: str) -> str:
    """生成错误 SSE 事件"""
    return format_sse_event(error_body(message))


def create_chunk(request_id: str, model: str, text: str, first: bool = False) -> Dict:
    """
    生成增量 chunk

    Args:
        request_id: 请求ID
        model: 模型名（已归一化）
        text: 增量文本
        first: 是否为第一个 chunk（携带 role）
    """
    delta = {"content": text}
    if first:
        delta = {"role": "assistant", "content": text}
    return {
        "id": f"chatcmpl-{request_id}",
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": None,
            }
        ],
    }


def create_done_chunk(request_id: str, model: Optional[str]) -> Dict:
    """生成结束 chunk（finish_reason=stop）"""
    return {
        "id": f"chatcmpl-{request_id}",
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": normalize_model_name(model),
        "choices": [
            {
                "index": 0,
                "delta": {},
                "finish_reason": "stop",
            }
        ],
    }


def completion_chunks(request_id: str, result: CompletionResult):
    """
    将最终回答重放为 SSE 事件序列：增量 chunk → 结束 chunk → [DONE]

    Yields:
        SSE 格式的事件字符串
    """
    model = normalize_model_name(result.model)
    for i, text in enumerate(result.fragments):
        yield format_sse_event(create_chunk(request_id, model, text, first=(i == 0)))
    yield format_sse_event(create_done_chunk(request_id, model))
    yield SSE_DONE_MARKER


def create_completion_response(request_id: str, result: CompletionResult) -> Dict:
    """
    生成非流式 chat.completion 响应

    Args:
        request_id: 请求ID
        result: 最终回答

    Returns:
        OpenAI chat.completion 对象
    """
    return {
        "id": f"chatcmpl-{request_id}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": normalize_model_name(result.model),
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": result.content,
                },
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": result.prompt_tokens,
            "completion_tokens": result.completion_tokens,
            "total_tokens": result.prompt_tokens + result.completion_tokens,
        },
    }
