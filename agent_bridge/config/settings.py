"""
Application settings and configuration management.
"""
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings
from pydantic import model_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # 服务配置
    HOST: str = "0.0.0.0"
    PORT: int = 3456
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"  # 为空则只输出到控制台

    # CORS配置
    ALLOWED_ORIGINS: list = ["*"]

    # CLI 子进程配置
    CLI_PATH: str = "claude"
    CLI_IDLE_TIMEOUT: float = 300.0  # 无输出超过该秒数则终止子进程
    CLI_SKIP_PERMISSIONS: bool = True
    CLI_MAX_LINE_BYTES: int = 16 * 1024 * 1024  # 单行 JSON 上限 16MB
    CLI_EXTRA_ARGS: List[str] = []
    DEFAULT_MODEL: str = "sonnet"

    # 会话配置
    SESSION_BACKEND: str = "file"  # file / redis
    SESSION_FILE: str = str(Path.home() / ".claude-code-cli-sessions.json")
    SESSION_TTL: int = 86400  # 24小时
    SESSION_CLEANUP_INTERVAL: int = 3600  # 每小时清理一次

    # Redis 配置（SESSION_BACKEND=redis 时使用）
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[str] = None
    REDIS_SESSION_KEY: str = "agent_bridge:sessions"

    # Telegram 进度通知配置（可选，未配置 TELEGRAM_NOTIFY_ID 时禁用）
    TELEGRAM_NOTIFY_ID: Optional[str] = None
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_REQUEST_TIMEOUT: float = 10.0

    # OpenClaw 配置（bot token 回退来源 + oc-tool 告警）
    OPENCLAW_HOME: str = str(Path.home() / ".openclaw")
    NOTIFY_TOOL_PATH: Optional[str] = None

    # 进度消息节流
    PROGRESS_MIN_INTERVAL: float = 3.0
    PROGRESS_HISTORY_LIMIT: int = 6

    @model_validator(mode='after')
    def validate_session_backend(self):
        """验证会话存储后端配置"""
        if self.SESSION_BACKEND not in ("file", "redis"):
            raise ValueError(
                f"SESSION_BACKEND 必须是 file 或 redis，当前为: {self.SESSION_BACKEND}"
            )
        return self

    @property
    def openclaw_config_path(self) -> Path:
        """OpenClaw 配置文件路径"""
        return Path(self.OPENCLAW_HOME) / "openclaw.json"

    @property
    def notify_tool_path(self) -> Path:
        """oc-tool 可执行文件路径"""
        if self.NOTIFY_TOOL_PATH:
            return Path(self.NOTIFY_TOOL_PATH)
        return Path(self.OPENCLAW_HOME) / "bin" / "oc-tool"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# 创建全局settings实例
settings = Settings()
