"""FastAPIアプリケーション。

/v1/tasks の CRUD API。レスポンスは全て JSend 形式
（success / fail / error）で返す。
"""

import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Annotated

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, StrictBool, StrictStr, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_api.config import configure_structlog
from task_api.dependencies import (
    close_task_repository,
    get_settings,
    get_task_repository,
)
from task_api.interfaces.task_repository import (
    MAX_SQL_INTEGER,
    SORT_FIELDS,
    SORT_ORDERS,
    Task,
    TaskQuery,
    TaskRepositoryInterface,
    is_utf8_encodable,
)

configure_structlog(get_settings())
logger = structlog.get_logger(__name__)

RepoDep = Annotated[TaskRepositoryInterface, Depends(get_task_repository)]

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

# ログに出さないヘッダー
REDACTED_HEADERS = frozenset({"authorization", "x-api-key", "cookie"})

PAYLOAD_FIELD_MESSAGES = {
    "title": 'Field "title" must be a non-empty string.',
    "done": 'Field "done" must be a boolean.',
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にリポジトリを生成し、終了時に解放する。"""
    settings = get_settings()
    repository = get_task_repository()
    logger.info(
        "Tasks API starting up",
        environment=settings.environment.value,
        storage=repository.storage_mode,
    )

    yield

    logger.info("Tasks API shutting down")
    close_task_repository()
    logger.info("Graceful shutdown complete")


app = FastAPI(
    title="Tasks API",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------- Pydantic モデル ----------


class TaskPayload(BaseModel):
    """POST / PUT /v1/tasks のリクエストボディ。"""

    title: StrictStr
    done: StrictBool

    @field_validator("title", mode="after")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        if not is_utf8_encodable(v):
            raise ValueError("title must be valid UTF-8 text")
        return v


class TaskResponse(BaseModel):
    """1件のタスクレスポンス。"""

    id: int
    title: str
    done: bool


# ---------- ヘルパー ----------


def _success(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"status": "success", "data": data}
    )


def _fail(status_code: int, message: str, details: dict | None = None) -> JSONResponse:
    payload = {"status": "fail", "code": status_code, "message": message}
    if details is not None:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"status": "error", "message": message}
    )


def _to_task_response(task: Task) -> dict:
    return TaskResponse(id=task.id, title=task.title, done=task.done).model_dump()


def _redact_headers(headers) -> dict:
    """ログ出力用にヘッダーを小文字化し、機密ヘッダーを除去する。"""
    return {
        key.lower(): value
        for key, value in headers.items()
        if key.lower() not in REDACTED_HEADERS
    }


def _parse_non_negative_int(value: str | None, default: int) -> int | None:
    if value is None:
        return default
    if not value.isascii() or not value.isdigit():
        return None
    return int(value)


def _parse_bool(value: str | None) -> bool | None:
    """クエリ文字列 true / false を bool に変換する。不正値は ValueError。"""
    if value is None:
        return None
    if value == "true":
        return True
    if value == "false":
        return False
    raise ValueError(value)


def parse_task_id(task_id: str) -> int:
    """パスパラメータの id を正の整数として解釈する。"""
    if not task_id.isascii() or not task_id.isdigit():
        raise HTTPException(status_code=400, detail="Invalid task id.")
    parsed = int(task_id)
    if not 0 < parsed <= MAX_SQL_INTEGER:
        raise HTTPException(status_code=400, detail="Invalid task id.")
    return parsed


TaskIdDep = Annotated[int, Depends(parse_task_id)]


def parse_list_query(
    limit: str | None = None,
    offset: str | None = None,
    done: str | None = None,
    q: str | None = None,
    sort: str | None = None,
    order: str | None = None,
) -> TaskQuery:
    """一覧のクエリパラメータを TaskQuery に正規化する。"""
    parsed_limit = _parse_non_negative_int(limit, DEFAULT_LIMIT)
    if parsed_limit is None:
        raise HTTPException(
            status_code=400,
            detail='Query parameter "limit" must be a non-negative integer.',
        )
    parsed_offset = _parse_non_negative_int(offset, 0)
    if parsed_offset is None or parsed_offset > MAX_SQL_INTEGER:
        raise HTTPException(
            status_code=400,
            detail='Query parameter "offset" must be a non-negative integer.',
        )
    try:
        parsed_done = _parse_bool(done)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail='Query parameter "done" must be "true" or "false".',
        ) from None
    sort = "id" if sort is None else sort
    if sort not in SORT_FIELDS:
        raise HTTPException(
            status_code=400,
            detail='Query parameter "sort" must be one of: id, title, done.',
        )
    order = "asc" if order is None else order.lower()
    if order not in SORT_ORDERS:
        raise HTTPException(
            status_code=400,
            detail='Query parameter "order" must be "asc" or "desc".',
        )

    search = q.strip() if q is not None else ""
    return TaskQuery(
        limit=min(parsed_limit, MAX_LIMIT),
        offset=parsed_offset,
        done=parsed_done,
        search=search or None,
        sort=sort,
        order=order,
    )


ListQueryDep = Annotated[TaskQuery, Depends(parse_list_query)]


# ---------- ミドルウェア・例外ハンドラ ----------


@app.middleware("http")
async def request_context(request: Request, call_next):
    """リクエストIDを採番し、ログのコンテキストに載せる。

    ハンドラで捕捉されなかった例外はここで 500 の JSend error に変換する。
    """
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            "Unhandled error",
            method=request.method,
            url=str(request.url),
            headers=_redact_headers(request.headers),
        )
        response = _error(500, "Internal server error")

    response.headers["X-Request-ID"] = request_id
    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
    )
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """HTTPException を JSend fail に変換する。

    未定義ルートとメソッド違い（405）はどちらも 404 "Not found" にする。
    """
    if exc.status_code == 405 or (exc.status_code == 404 and exc.detail == "Not Found"):
        return _fail(404, "Not found")
    return _fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """リクエストボディの検証エラーを JSend fail に変換する。"""
    details = {}
    for error in exc.errors():
        loc = error.get("loc", ())
        if error.get("type") == "json_invalid" or len(loc) < 2 or loc[0] != "body":
            return _fail(400, "Request body must be a JSON object.")
        field = str(loc[1])
        details[field] = PAYLOAD_FIELD_MESSAGES.get(field, error.get("msg", "Invalid value."))
    return _fail(400, "Invalid task payload.", details)


# ---------- エンドポイント ----------


@app.get("/")
async def root():
    """サービス情報。"""
    return _success(
        {
            "service": get_settings().service_name,
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )


@app.get("/health")
async def health_check(repo: RepoDep):
    """ヘルスチェック。ストレージに疎通できなければ 503。"""
    try:
        repo.ping()
    except Exception:
        logger.exception("Health check failed: database unavailable")
        return _error(503, "Service unavailable")

    return _success(
        {
            "service": get_settings().service_name,
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "db": {"status": "ok", "mode": repo.storage_mode},
        }
    )


@app.get("/v1/tasks")
async def list_tasks(query: ListQueryDep, repo: RepoDep):
    """タスク一覧を取得する。"""
    page = repo.list(query)
    returned = len(page.items)
    return _success(
        {
            "items": [_to_task_response(t) for t in page.items],
            "page": {
                "limit": query.limit,
                "offset": query.offset,
                "total": page.total,
                "returned": returned,
                "hasMore": query.offset + returned < page.total,
            },
            # 未指定のフィルタはキーごと省く
            "filters": {
                key: value
                for key, value in (("done", query.done), ("q", query.search))
                if value is not None
            },
            "sort": {"field": query.sort, "order": query.order},
        }
    )


@app.get("/v1/tasks/{task_id}")
async def get_task(task_id: TaskIdDep, repo: RepoDep):
    """タスクを1件取得する。未登録なら 404。"""
    task = repo.get_by_id(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found.")
    return _success(_to_task_response(task))


@app.post("/v1/tasks")
async def create_task(body: TaskPayload, repo: RepoDep):
    """タスクを作成する。"""
    task = repo.create(body.title, body.done)
    logger.info("Task created", task_id=task.id)
    return _success(_to_task_response(task), status_code=201)


@app.put("/v1/tasks/{task_id}")
async def update_task(task_id: TaskIdDep, body: TaskPayload, repo: RepoDep):
    """タスクを上書き更新する。未登録なら 404（新規作成はしない）。"""
    task = repo.update(task_id, body.title, body.done)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found.")
    return _success(_to_task_response(task))


@app.delete("/v1/tasks/{task_id}")
async def delete_task(task_id: TaskIdDep, repo: RepoDep):
    """タスクを削除する。未登録なら 404。"""
    if not repo.delete(task_id):
        raise HTTPException(status_code=404, detail="Task not found.")
    logger.info("Task deleted", task_id=task_id)
    return _success({"deleted": True})


def run() -> None:
    """uvicorn でサーバーを起動する。"""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
