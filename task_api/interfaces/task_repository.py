"""リポジトリ層の抽象インターフェース（境界①）。

タスクの永続化と一覧検索を担う。
インメモリ実装とリレーショナル実装は同一の契約に従い、
ソート・フィルタ・ページングの結果が観測上一致しなければならない。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# ソート可能なフィールド（API層の入力検証もこれを参照する）
SORT_FIELDS = ("id", "title", "done")
SORT_ORDERS = ("asc", "desc")

# SQLite の INTEGER に収まる最大値。id と offset / limit の上限
MAX_SQL_INTEGER = 2**63 - 1


def is_utf8_encodable(text: str) -> bool:
    """孤立サロゲートを含む文字列は UTF-8 にエンコードできない。"""
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def validate_task_fields(title: str, done: bool) -> None:
    """タスクの不変条件を検証する。

    Raises:
        ValueError: title が空白のみ・UTF-8 で表現できない、
            または done が bool でない場合
    """
    if not isinstance(title, str) or not title.strip():
        raise ValueError("title must be a non-empty string")
    if not is_utf8_encodable(title):
        raise ValueError("title must be valid UTF-8 text")
    if not isinstance(done, bool):
        raise ValueError("done must be a bool")


@dataclass(frozen=True)
class Task:
    """タスク（ドメインモデル）。"""

    id: int
    title: str
    done: bool

    def __post_init__(self):
        validate_task_fields(self.title, self.done)


@dataclass(frozen=True)
class TaskQuery:
    """一覧検索の正規化済みクエリ。

    limit の上限チェックは呼び出し側の責務。リポジトリは値を信頼する。
    done と search は None のときフィルタしない。search は空文字も未指定扱い。
    """

    limit: int
    offset: int = 0
    done: bool | None = None
    search: str | None = None
    sort: str = "id"
    order: str = "asc"


@dataclass(frozen=True)
class TaskPage:
    """一覧検索の結果。

    total はページング適用前の一致件数。
    """

    items: list[Task] = field(default_factory=list)
    total: int = 0


class TaskRepositoryInterface(ABC):
    """リポジトリ層の抽象インターフェース。

    並び順は sort フィールドの order 方向。主キーが同値の行は
    order に関わらず id 昇順で並べる（ページングの安定性を保証する）。
    存在しない id は例外ではなく None / False で表す。
    ストレージ障害は例外として呼び出し側へ伝播させる。
    """

    # ヘルスチェックで表示するバックエンド名
    storage_mode: str = ""

    @abstractmethod
    def list(self, query: TaskQuery) -> TaskPage:
        """フィルタ・ソート・ページングを適用した一覧を返す。"""
        ...

    @abstractmethod
    def get_by_id(self, task_id: int) -> Task | None:
        """タスクを取得する。存在しない場合は None。"""
        ...

    @abstractmethod
    def create(self, title: str, done: bool) -> Task:
        """タスクを作成する。id はバックエンドが採番する。"""
        ...

    @abstractmethod
    def update(self, task_id: int, title: str, done: bool) -> Task | None:
        """title と done を上書きする。存在しない場合は None（行は作らない）。"""
        ...

    @abstractmethod
    def delete(self, task_id: int) -> bool:
        """タスクを削除する。

        Returns:
            削除が発生したかどうか
        """
        ...

    def ping(self) -> None:
        """ストレージの疎通を確認する。失敗時は例外を送出する。"""

    def close(self) -> None:
        """保持しているリソースを解放する。"""
