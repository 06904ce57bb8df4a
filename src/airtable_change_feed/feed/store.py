"""Durable storage for subscription records with per-subscription locking."""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any, ContextManager, Dict, Iterator, Optional, Protocol

from ..db import Connection, Json, connect_from_settings, dict_row, sql
from .models import Subscription

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from ..config import Settings

logger = logging.getLogger(__name__)


class SubscriptionStore(Protocol):
    """Persistence backend holding one subscription record per trigger instance."""

    def load(self, instance_id: str) -> Optional[Subscription]: ...

    def save(self, instance_id: str, subscription: Subscription) -> None: ...

    def advance_cursor(self, instance_id: str, cursor: int) -> Optional[Subscription]: ...

    def clear(self, instance_id: str) -> None: ...

    def lock(self, instance_id: str) -> ContextManager[None]: ...


class _KeyedLocks:
    """Hands out one exclusive lock per instance id."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
        with lock:
            yield


class InMemorySubscriptionStore:
    """Volatile store keeping subscription records in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._records: Dict[str, Subscription] = {}
        self._instance_locks = _KeyedLocks()

    def load(self, instance_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._records.get(instance_id)

    def save(self, instance_id: str, subscription: Subscription) -> None:
        with self._lock:
            self._records[instance_id] = subscription

    def advance_cursor(self, instance_id: str, cursor: int) -> Optional[Subscription]:
        with self._lock:
            current = self._records.get(instance_id)
            if current is None or cursor <= current.last_cursor:
                return None
            updated = current.advanced_to(cursor)
            self._records[instance_id] = updated
            return updated

    def clear(self, instance_id: str) -> None:
        with self._lock:
            self._records.pop(instance_id, None)

    def lock(self, instance_id: str) -> ContextManager[None]:
        return self._instance_locks.hold(instance_id)


class FileSubscriptionStore:
    """Subscription records kept in one JSON file that several processes may share.

    Every operation re-reads the file while holding an ``flock`` on the
    ``<name>.lock`` sidecar, so a CLI invocation never writes over a newer
    record left by another one. ``lock()`` takes a second, per-instance
    sidecar for the whole critical section.
    """

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._mutex = self._path.with_name(f"{self._path.name}.lock")
        self._instance_locks = _KeyedLocks()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create store directory %s: %s",
                self._path.parent,
                exc,
            )

    def load(self, instance_id: str) -> Optional[Subscription]:
        with _flocked(self._mutex, fcntl.LOCK_SH):
            record = self._read().get(instance_id)
        return None if record is None else Subscription.from_record(record)

    def save(self, instance_id: str, subscription: Subscription) -> None:
        with _flocked(self._mutex, fcntl.LOCK_EX):
            records = self._read()
            records[instance_id] = subscription.to_record()
            self._replace(records)

    def advance_cursor(self, instance_id: str, cursor: int) -> Optional[Subscription]:
        with _flocked(self._mutex, fcntl.LOCK_EX):
            records = self._read()
            record = records.get(instance_id)
            if record is None:
                return None
            current = Subscription.from_record(record)
            if cursor <= current.last_cursor:
                return None
            updated = current.advanced_to(cursor)
            records[instance_id] = updated.to_record()
            self._replace(records)
        return updated

    def clear(self, instance_id: str) -> None:
        with _flocked(self._mutex, fcntl.LOCK_EX):
            records = self._read()
            if records.pop(instance_id, None) is not None:
                self._replace(records)

    @contextmanager
    def lock(self, instance_id: str) -> Iterator[None]:
        digest = hashlib.sha1(instance_id.encode("utf-8")).hexdigest()[:16]
        sidecar = self._path.with_name(f"{self._path.name}.{digest}.lock")
        with self._instance_locks.hold(instance_id), _flocked(sidecar, fcntl.LOCK_EX):
            yield

    def _read(self) -> Dict[str, Dict[str, Any]]:
        try:
            with self._path.open(encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("unreadable subscription file %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("subscription file %s is not a JSON object; ignoring", self._path)
            return {}
        return {
            key: value
            for key, value in data.items()
            if isinstance(key, str) and isinstance(value, dict)
        }

    def _replace(self, records: Dict[str, Dict[str, Any]]) -> None:
        tmp = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            delete=False,
        )
        try:
            with tmp:
                json.dump(records, tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(tmp.name, self._path)
        except OSError as exc:
            logger.error("failed to persist subscription file %s: %s", self._path, exc)
            raise
        finally:
            Path(tmp.name).unlink(missing_ok=True)


@contextmanager
def _flocked(path: Path, operation: int) -> Iterator[None]:
    """Hold an advisory ``flock`` on ``path`` (created if missing)."""
    with path.open("a") as handle:
        fcntl.flock(handle.fileno(), operation)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class PostgresSubscriptionStore:
    """Store backed by a PostgreSQL table; locks use session advisory locks."""

    def __init__(self, conn: Connection, *, schema: str = "airtable_feed") -> None:
        self.conn = conn
        self.conn.row_factory = dict_row
        self._schema = schema
        self._table = sql.SQL("{}.{}").format(
            sql.Identifier(schema), sql.Identifier("subscriptions")
        )

    def ensure_schema(self) -> None:
        with self.conn.transaction():
            self.conn.execute(
                sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(
                    sql.Identifier(self._schema)
                )
            )
            self.conn.execute(
                sql.SQL(
                    """
                    CREATE TABLE IF NOT EXISTS {} (
                        instance_id TEXT PRIMARY KEY,
                        record JSONB NOT NULL,
                        last_cursor BIGINT NOT NULL DEFAULT 0,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                ).format(self._table)
            )

    def load(self, instance_id: str) -> Optional[Subscription]:
        row = self.conn.execute(
            sql.SQL("SELECT record, last_cursor FROM {} WHERE instance_id = %s").format(
                self._table
            ),
            (instance_id,),
        ).fetchone()
        if not row:
            return None
        record = dict(row["record"])
        record["last_cursor"] = int(row["last_cursor"])
        return Subscription.from_record(record)

    def save(self, instance_id: str, subscription: Subscription) -> None:
        with self.conn.transaction():
            self.conn.execute(
                sql.SQL(
                    """
                    INSERT INTO {} (instance_id, record, last_cursor)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (instance_id) DO UPDATE
                       SET record = EXCLUDED.record,
                           last_cursor = EXCLUDED.last_cursor,
                           updated_at = now()
                    """
                ).format(self._table),
                (instance_id, Json(subscription.to_record()), subscription.last_cursor),
            )

    def advance_cursor(self, instance_id: str, cursor: int) -> Optional[Subscription]:
        with self.conn.transaction():
            row = self.conn.execute(
                sql.SQL(
                    """
                    UPDATE {}
                       SET last_cursor = %s,
                           record = jsonb_set(record, '{{last_cursor}}', to_jsonb(%s::bigint)),
                           updated_at = now()
                     WHERE instance_id = %s
                       AND last_cursor < %s
                    RETURNING record, last_cursor
                    """
                ).format(self._table),
                (cursor, cursor, instance_id, cursor),
            ).fetchone()
        if not row:
            return None
        record = dict(row["record"])
        record["last_cursor"] = int(row["last_cursor"])
        return Subscription.from_record(record)

    def clear(self, instance_id: str) -> None:
        with self.conn.transaction():
            self.conn.execute(
                sql.SQL("DELETE FROM {} WHERE instance_id = %s").format(self._table),
                (instance_id,),
            )

    @contextmanager
    def lock(self, instance_id: str) -> Iterator[None]:
        self.conn.execute("SELECT pg_advisory_lock(hashtext(%s))", (instance_id,))
        try:
            yield
        finally:
            self.conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (instance_id,))


def build_store(
    settings: "Settings", *, conn: Optional[Connection] = None
) -> SubscriptionStore:
    """Construct the configured store backend."""
    if settings.store_backend == "memory":
        return InMemorySubscriptionStore()
    if settings.store_backend == "postgres":
        if conn is None:
            conn = connect_from_settings(settings)
        store = PostgresSubscriptionStore(conn, schema=settings.db_schema)
        store.ensure_schema()
        return store
    return FileSubscriptionStore(settings.store_path, fsync=settings.store_fsync)


__all__ = [
    "FileSubscriptionStore",
    "InMemorySubscriptionStore",
    "PostgresSubscriptionStore",
    "SubscriptionStore",
    "build_store",
]
