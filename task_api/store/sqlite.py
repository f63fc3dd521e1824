"""リポジトリ層のSQLite実装。

TaskRepositoryInterfaceに準拠したSQLite実装を提供する。
値は全てバインドパラメータで渡す。SQL文字列に埋め込むのは
SORT_COLUMNS のホワイトリストにある列名と SQL キーワードのみ。
"""

from __future__ import annotations

import sqlite3
import time

import structlog

from task_api.interfaces.task_repository import (
    MAX_SQL_INTEGER,
    Task,
    TaskPage,
    TaskQuery,
    TaskRepositoryInterface,
    is_utf8_encodable,
    validate_task_fields,
)

logger = structlog.get_logger(__name__)

# スキーマ定義（プロビジョニングは ensure_schema() の呼び出し側の責務）
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    id    INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    done  BOOLEAN NOT NULL DEFAULT 0
);
"""

# APIのソートキー → SQL列名（呼び出し側の文字列をそのままSQLに入れない）
SORT_COLUMNS = {
    "id": "id",
    "title": "title",
    "done": "done",
}

# progress handler を呼ぶ間隔（SQLite VM 命令数）
_PROGRESS_STEPS = 1000


def escape_like(text: str) -> str:
    r"""LIKE のワイルドカードをエスケープする。

    \ を先に処理すること。ESCAPE '\' と組み合わせて使う。
    """
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def connect(db_path: str, statement_timeout_ms: int | None = None) -> sqlite3.Connection:
    """データベース接続を取得する。

    Args:
        db_path: SQLiteデータベースファイルのパス（":memory:" 可）
        statement_timeout_ms: 1文あたりの実行時間上限。超過した文は中断され
            sqlite3.OperationalError が送出される。None なら無制限。

    Returns:
        sqlite3.Connection
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    if statement_timeout_ms is not None:
        _install_statement_timeout(conn, statement_timeout_ms)
    return conn


def _install_statement_timeout(conn: sqlite3.Connection, timeout_ms: int) -> None:
    """文ごとの実行時間上限を progress handler で設定する。

    trace callback で文の開始時刻を記録し、progress handler が
    上限超過を検出したら非ゼロを返して実行を中断させる。
    """
    budget = timeout_ms / 1000
    started = [time.monotonic()]

    def _on_statement(_sql: str) -> None:
        started[0] = time.monotonic()

    def _on_progress() -> int:
        return 1 if time.monotonic() - started[0] > budget else 0

    conn.set_trace_callback(_on_statement)
    conn.set_progress_handler(_on_progress, _PROGRESS_STEPS)


def ensure_schema(conn: sqlite3.Connection) -> None:
    """tasks テーブルがなければ作成する。"""
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def _to_task(row) -> Task:
    return Task(id=row[0], title=row[1], done=bool(row[2]))


def _in_integer_range(value: int) -> bool:
    """SQLite の INTEGER としてバインドできるか。"""
    return -MAX_SQL_INTEGER - 1 <= value <= MAX_SQL_INTEGER


class SqliteTaskRepository(TaskRepositoryInterface):
    """SQLiteによるリポジトリ層実装。

    接続は呼び出し側から受け取る（スキーマは作成済みであること）。
    更新系は1文1トランザクションで、失敗時はロールバックして例外を伝播する。
    """

    storage_mode = "sqlite"

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def list(self, query: TaskQuery) -> TaskPage:
        """一覧を1回のクエリで取得する。

        件数はウィンドウ関数で LIMIT/OFFSET 適用前に数える。
        1行のアンカーに LEFT JOIN するので、OFFSET が末尾を超えても
        total を含む行が必ず1行返る（ページと件数が同一スナップショットになる）。
        """
        # 保存済みの title は全て UTF-8 で表現できる
        if query.search and not is_utf8_encodable(query.search):
            return TaskPage(items=[], total=0)

        conditions = []
        params: list = []

        if query.done is not None:
            conditions.append("done = ?")
            params.append(query.done)

        if query.search:
            conditions.append("title LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(query.search)}%")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        sort_col = SORT_COLUMNS.get(query.sort, "id")
        sort_dir = "DESC" if query.order == "desc" else "ASC"
        # 同値はorderに関わらず id 昇順
        if sort_col == "id":
            order_by = f"ORDER BY id {sort_dir}"
        else:
            order_by = f"ORDER BY {sort_col} {sort_dir}, id ASC"

        sql = f"""
            WITH matched AS (
                SELECT id, title, done, COUNT(*) OVER () AS total
                FROM tasks
                {where}
            ),
            page AS (
                SELECT id, title, done
                FROM matched
                {order_by}
                LIMIT ? OFFSET ?
            )
            SELECT page.id, page.title, page.done, counted.total
            FROM (SELECT COALESCE(MAX(total), 0) AS total FROM matched) AS counted
            LEFT JOIN page ON 1 = 1
            {order_by}
        """
        # INTEGER の上限に丸める
        params.extend(
            [min(query.limit, MAX_SQL_INTEGER), min(query.offset, MAX_SQL_INTEGER)]
        )

        rows = self._conn.execute(sql, params).fetchall()

        total = rows[0][3] if rows else 0
        items = [_to_task(row) for row in rows if row[0] is not None]
        return TaskPage(items=items, total=total)

    def get_by_id(self, task_id: int) -> Task | None:
        if not _in_integer_range(task_id):
            return None
        row = self._conn.execute(
            "SELECT id, title, done FROM tasks WHERE id = ?",
            (task_id,),
        ).fetchone()
        return _to_task(row) if row else None

    def create(self, title: str, done: bool) -> Task:
        validate_task_fields(title, done)
        # with conn: 正常終了で commit、例外時は rollback して再送出
        with self._conn:
            row = self._conn.execute(
                "INSERT INTO tasks (title, done) VALUES (?, ?) RETURNING id, title, done",
                (title, done),
            ).fetchall()[0]
        logger.debug("Task created", task_id=row[0])
        return _to_task(row)

    def update(self, task_id: int, title: str, done: bool) -> Task | None:
        validate_task_fields(title, done)
        if not _in_integer_range(task_id):
            return None
        with self._conn:
            rows = self._conn.execute(
                """
                UPDATE tasks SET title = ?, done = ?
                WHERE id = ?
                RETURNING id, title, done
                """,
                (title, done, task_id),
            ).fetchall()
        return _to_task(rows[0]) if rows else None

    def delete(self, task_id: int) -> bool:
        if not _in_integer_range(task_id):
            return False
        with self._conn:
            cursor = self._conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cursor.rowcount > 0

    def ping(self) -> None:
        self._conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self._conn.close()
