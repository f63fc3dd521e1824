"""DI用ファクトリ関数とバックエンド選択。

task_api/ 直下に配置することで、api/ から store/ への
直接依存を避けつつ、FastAPI の Depends() で注入できる。
"""

import structlog

from task_api.config import Settings, parse_database_url
from task_api.interfaces.task_repository import Task, TaskRepositoryInterface

logger = structlog.get_logger(__name__)

# DATABASE_URL 未設定時のデモデータ
SEED_TASKS = (
    Task(id=1, title="Buy milk", done=False),
    Task(id=2, title="Walk dog", done=True),
)

_settings: Settings | None = None
_task_repository: TaskRepositoryInterface | None = None


def get_settings() -> Settings:
    """Settingsのシングルトンインスタンスを返す。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def create_task_repository(settings: Settings) -> TaskRepositoryInterface:
    """設定に応じてリポジトリ実装を1つ生成する。

    DATABASE_URL があれば SQLite、なければインメモリ。
    """
    if settings.database_url:
        from task_api.store.sqlite import SqliteTaskRepository, connect, ensure_schema

        db_path = parse_database_url(settings.database_url)
        conn = connect(db_path, statement_timeout_ms=settings.statement_timeout_ms)
        try:
            ensure_schema(conn)
        except Exception:
            conn.close()
            logger.exception("Failed to initialize SQLite repository", db_path=db_path)
            raise
        logger.info("Using SqliteTaskRepository", db_path=db_path)
        return SqliteTaskRepository(conn)

    from task_api.store.memory import InMemoryTaskRepository

    logger.info("Using InMemoryTaskRepository")
    return InMemoryTaskRepository(SEED_TASKS)


def get_task_repository() -> TaskRepositoryInterface:
    """TaskRepositoryのシングルトンインスタンスを返す。"""
    global _task_repository
    if _task_repository is None:
        _task_repository = create_task_repository(get_settings())
    return _task_repository


def close_task_repository() -> None:
    """リポジトリを解放する（シャットダウン時）。"""
    global _task_repository
    if _task_repository is not None:
        _task_repository.close()
        _task_repository = None


def _reset_all() -> None:
    """全シングルトンをリセットする（テスト用）。"""
    global _settings
    close_task_repository()
    _settings = None
