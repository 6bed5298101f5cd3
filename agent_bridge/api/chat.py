"""
OpenAI 兼容接口
- POST /v1/chat/completions（stream=true 时返回 SSE）
- GET  /v1/models
"""
import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..models.openai import ChatCompletionRequest
from ..services.chat_service import ChatCompletionService, new_request_id
from .streaming_utils import create_sse_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["openai"])

AVAILABLE_MODELS = ("claude-opus-4", "claude-sonnet-4", "claude-haiku-4")


def get_chat_service(request: Request) -> ChatCompletionService:
    """从 app.state 获取编排服务（在 lifespan 中创建）"""
    return request.app.state.chat_service


@router.post("/chat/completions")
async def chat_completions(
    body: ChatCompletionRequest,
    service: ChatCompletionService = Depends(get_chat_service)
):
    """
    聊天补全

    校验失败返回 400（不启动子进程）；
    stream=true 时立即建立 SSE 连接，结果就绪后一次性重放最后一轮的内容。
    """
    request_id = new_request_id()
    service.validate(body)
    prepared = service.prepare(body, request_id)

    logger.info(
        f"[{request_id}] chat completion (model={prepared.cli_input.model}, "
        f"stream={body.stream}, conversation={prepared.conversation_id or '-'})"
    )

    if body.stream:
        return create_sse_response(service.stream(prepared), request_id=request_id)

    response = await service.complete(prepared)
    return JSONResponse(content=response, headers={"X-Request-Id": request_id})


@router.get("/models")
async def list_models():
    """可用模型列表"""
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "owned_by": "anthropic",
                "created": created,
            }
            for model_id in AVAILABLE_MODELS
        ],
    }
