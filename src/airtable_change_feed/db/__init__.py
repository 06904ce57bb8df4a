"""psycopg2 helpers for the PostgreSQL subscription store."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Sequence

import psycopg2
from psycopg2 import Error, OperationalError, sql
from psycopg2.extras import Json, RealDictCursor

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from airtable_change_feed.config import Settings


class _DictRowSentinel:
    """Marker selecting dictionary rows for ``Connection.execute``."""


dict_row = _DictRowSentinel()


class QueryResult:
    """Rows fetched eagerly from a finished statement."""

    def __init__(self, rows: Sequence[Any]) -> None:
        self._rows: List[Any] = list(rows)
        self._index = 0

    def fetchone(self) -> Optional[Any]:
        if self._index >= len(self._rows):
            return None
        row = self._rows[self._index]
        self._index += 1
        return row

    def fetchall(self) -> List[Any]:
        remaining = self._rows[self._index :]
        self._index = len(self._rows)
        return remaining

    def __iter__(self) -> Iterator[Any]:
        return iter(self.fetchall())


class Connection(psycopg2.extensions.connection):
    """Autocommit connection with one-shot ``execute`` and explicit transactions.

    Session-level state such as advisory locks survives between statements
    because every statement outside ``transaction()`` commits on its own.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.autocommit = True
        self.row_factory: Optional[_DictRowSentinel] = None

    def execute(self, query: Any, params: Optional[Sequence[Any]] = None) -> QueryResult:
        cursor_factory = RealDictCursor if self.row_factory is dict_row else None
        with self.cursor(cursor_factory=cursor_factory) as cur:
            cur.execute(query, params)
            rows = cur.fetchall() if cur.description is not None else []
        return QueryResult(rows)

    @contextmanager
    def transaction(self) -> Iterator["Connection"]:
        """Run the block as one transaction; nested blocks join the outer one."""
        if not self.autocommit:
            yield self
            return
        self.autocommit = False
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()
        finally:
            self.autocommit = True


def connect(*args, **kwargs) -> Connection:
    kwargs.setdefault("connection_factory", Connection)
    return psycopg2.connect(*args, **kwargs)


def connect_from_settings(settings: "Settings") -> Connection:
    """Open a connection using the ``PG*`` values from service settings."""

    return connect(
        host=settings.db_host,
        port=settings.db_port,
        dbname=settings.db_name,
        user=settings.db_user,
        password=settings.db_password,
    )


__all__ = [
    "Connection",
    "Error",
    "Json",
    "OperationalError",
    "QueryResult",
    "connect",
    "connect_from_settings",
    "dict_row",
    "sql",
]
