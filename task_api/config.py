"""設定とロギング。

環境変数（および .env）から Settings を読み込む。
DATABASE_URL が未設定ならインメモリストアで動作する。
"""

import logging
import sys
from enum import Enum

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SQLITE_PREFIX = "sqlite://"


class Environment(str, Enum):
    """実行環境。"""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """アプリケーション設定。"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"
    service_name: str = "tasks-api"

    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)

    # 例: sqlite:///data/tasks.db
    database_url: str | None = None
    statement_timeout_ms: int = Field(default=5000, gt=0)

    @field_validator("database_url", mode="after")
    @classmethod
    def check_database_url(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        parse_database_url(v)
        return v

    @field_validator("log_level", mode="after")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Invalid LOG_LEVEL: {v!r}")
        return level

    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


def parse_database_url(url: str) -> str:
    """DATABASE_URL から SQLite のデータベースパスを取り出す。

    sqlite:///relative/path.db → relative/path.db
    sqlite:////abs/path.db     → /abs/path.db
    sqlite:// または sqlite:///:memory: → :memory:

    Raises:
        ValueError: sqlite:// で始まらない場合
    """
    if not url.startswith(_SQLITE_PREFIX):
        raise ValueError('DATABASE_URL must start with "sqlite://"')
    rest = url[len(_SQLITE_PREFIX):]
    if rest in ("", "/", "/:memory:"):
        return ":memory:"
    if not rest.startswith("/"):
        raise ValueError(f"Invalid DATABASE_URL: {url!r}")
    return rest[1:]


def configure_structlog(settings: Settings) -> None:
    """structlog を初期化する。

    開発環境はコンソール表示、それ以外は JSON 1行ログ。
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        stream=sys.stdout,
        format="%(message)s",
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.environment == Environment.DEVELOPMENT:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
