"""リポジトリ層のインメモリ実装。

プロセス内のリストで保持する揮発性ストア。テストとデモ用。
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

import structlog

from task_api.interfaces.task_repository import (
    SORT_FIELDS,
    Task,
    TaskPage,
    TaskQuery,
    TaskRepositoryInterface,
)

logger = structlog.get_logger(__name__)


class InMemoryTaskRepository(TaskRepositoryInterface):
    """インメモリによるリポジトリ層実装。

    全操作をロックで直列化する。複数リクエストから同時に呼ばれても
    1回の操作が途中で他の操作と混ざることはない。
    """

    storage_mode = "memory"

    def __init__(self, seed: Iterable[Task] = ()):
        """初期化。

        Args:
            seed: 初期データ（id は呼び出し側で一意にしておくこと）
        """
        self._tasks: list[Task] = list(seed)
        self._next_id = max((t.id for t in self._tasks), default=0) + 1
        self._lock = threading.Lock()

    def list(self, query: TaskQuery) -> TaskPage:
        with self._lock:
            filtered = self._tasks
            if query.done is not None:
                filtered = [t for t in filtered if t.done is query.done]
            if query.search:
                needle = query.search.lower()
                filtered = [t for t in filtered if needle in t.title.lower()]

            ordered = _sort_tasks(filtered, query.sort, query.order)
            items = ordered[query.offset : query.offset + query.limit]
            return TaskPage(items=items, total=len(ordered))

    def get_by_id(self, task_id: int) -> Task | None:
        with self._lock:
            return self._find(task_id)

    def create(self, title: str, done: bool) -> Task:
        with self._lock:
            task = Task(id=self._next_id, title=title, done=done)
            self._tasks.append(task)
            # 削除後も id を再利用しない
            self._next_id += 1
            logger.debug("Task created", task_id=task.id)
            return task

    def update(self, task_id: int, title: str, done: bool) -> Task | None:
        with self._lock:
            for index, task in enumerate(self._tasks):
                if task.id == task_id:
                    updated = Task(id=task_id, title=title, done=done)
                    self._tasks[index] = updated
                    return updated
            return None

    def delete(self, task_id: int) -> bool:
        with self._lock:
            before = len(self._tasks)
            self._tasks = [t for t in self._tasks if t.id != task_id]
            return len(self._tasks) != before

    def _find(self, task_id: int) -> Task | None:
        return next((t for t in self._tasks if t.id == task_id), None)


def _sort_tasks(tasks: list[Task], sort: str, order: str) -> list[Task]:
    """sort フィールドで並べ、同値は id 昇順で並べる。

    安定ソートを2段で適用する: まず id 昇順、次に主キーで
    (desc なら reverse=True)。Python のソートは安定なので、
    reverse 指定時も同値要素の相対順序（id 昇順）は保たれる。
    """
    field = sort if sort in SORT_FIELDS else "id"
    by_id = sorted(tasks, key=lambda t: t.id)
    return sorted(by_id, key=lambda t: getattr(t, field), reverse=order == "desc")
