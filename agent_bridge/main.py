"""
Main application entry point for Agent Bridge - OpenAI-compatible API for a CLI agent.
"""
# ⚠️ 必须在导入任何模块之前先加载 .env
# 这样 CLI 子进程也能继承其中的认证信息
from dotenv import load_dotenv

load_dotenv()

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_bridge import __version__
from agent_bridge.api.streaming_utils import error_body
from agent_bridge.channels.openclaw import OpenClawNotifier
from agent_bridge.channels.telegram import TelegramAdapter
from agent_bridge.config.settings import Settings, settings as default_settings
from agent_bridge.services.chat_service import ChatCompletionError, ChatCompletionService
from agent_bridge.services.cli_subprocess import CLISubprocess
from agent_bridge.services.progress_reporter import ProgressReporter
from agent_bridge.services.session_manager import SessionManager
from agent_bridge.storage import JsonFileSessionStorage, RedisSessionStorage, SessionStorage

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """配置日志（控制台 + 可选的文件）"""
    handlers = [logging.StreamHandler()]
    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def build_session_storage(settings: Settings) -> SessionStorage:
    """根据 SESSION_BACKEND 创建会话存储后端"""
    if settings.SESSION_BACKEND == "redis":
        if settings.REDIS_PASSWORD:
            logger.info(
                "Redis 认证已启用（用户名: %s）",
                settings.REDIS_USERNAME or "<default>"
            )
        return RedisSessionStorage(
            redis_url=settings.REDIS_URL,
            key=settings.REDIS_SESSION_KEY,
            username=settings.REDIS_USERNAME,
            password=settings.REDIS_PASSWORD
        )
    return JsonFileSessionStorage(Path(settings.SESSION_FILE).expanduser())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        settings: 配置（默认使用全局 settings）

    Returns:
        FastAPI 实例
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("Starting Agent Bridge...")

        session_manager = SessionManager(
            storage=build_session_storage(settings),
            ttl_seconds=settings.SESSION_TTL,
            cleanup_interval=settings.SESSION_CLEANUP_INTERVAL
        )
        await session_manager.initialize()
        await session_manager.start_cleanup_task()

        telegram = TelegramAdapter.from_settings(settings)
        if settings.TELEGRAM_NOTIFY_ID and telegram.is_configured():
            logger.info(f"✅ Telegram 进度通知已启用: {settings.TELEGRAM_NOTIFY_ID}")
        else:
            logger.info("Telegram 进度通知未启用")

        def progress_factory() -> ProgressReporter:
            return ProgressReporter(
                channel=telegram,
                target=settings.TELEGRAM_NOTIFY_ID,
                min_interval=settings.PROGRESS_MIN_INTERVAL,
                history_limit=settings.PROGRESS_HISTORY_LIMIT
            )

        notifier = OpenClawNotifier.from_settings(settings)
        chat_service = ChatCompletionService(
            session_manager=session_manager,
            subprocess_factory=lambda: CLISubprocess.from_settings(settings),
            progress_factory=progress_factory,
            notifier=notifier,
            default_model=settings.DEFAULT_MODEL
        )
        app.state.session_manager = session_manager
        app.state.chat_service = chat_service

        logger.info(f"Application startup complete (CLI: {settings.CLI_PATH})")

        yield

        logger.info("Shutting down...")
        # 等待后台的进度清理与 CLI 回收
        await chat_service.drain_background(timeout=chat_service.exit_grace)
        await notifier.aclose()
        await session_manager.close()
        await telegram.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Agent Bridge",
        version=__version__,
        description="OpenAI-compatible chat API backed by a stream-json CLI agent",
        lifespan=lifespan
    )

    # 配置CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册路由
    from agent_bridge.api.chat import router as chat_router

    app.include_router(chat_router)

    @app.exception_handler(ChatCompletionError)
    async def chat_completion_error_handler(request: Request, exc: ChatCompletionError):
        if exc.status_code >= 500:
            logger.error(f"Chat completion failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.error_type, exc.code)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if any("messages" in err.get("loc", ()) for err in errors):
            message = "messages is required and must be a non-empty array"
            code = "invalid_messages"
        else:
            message = "; ".join(err.get("msg", "") for err in errors) or "Invalid request"
            code = "invalid_request"
        return JSONResponse(
            status_code=400,
            content=error_body(message, "invalid_request_error", code)
        )

    # 全局异常处理
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Global exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_body(str(exc))
        )

    # 健康检查端点
    @app.get("/health")
    async def health_check():
        """系统健康检查端点"""
        return {
            "status": "ok",
            "provider": "claude-code-cli",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


setup_logging(default_settings)

app = create_app()


def run() -> None:
    """命令行入口: agent-bridge"""
    import uvicorn
    uvicorn.run(
        app,
        host=default_settings.HOST,
        port=default_settings.PORT,
        log_level=default_settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    run()
