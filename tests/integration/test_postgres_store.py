import os
import threading
import time
import uuid

import pytest

from airtable_change_feed.db import OperationalError, connect, sql
from airtable_change_feed.feed.models import Subscription
from airtable_change_feed.feed.store import PostgresSubscriptionStore


pytestmark = pytest.mark.integration


def _conninfo():
    return {
        "host": os.getenv("PGHOST", "localhost"),
        "port": int(os.getenv("PGPORT", "5432")),
        "user": os.getenv("PGUSER", "postgres"),
        "password": os.getenv("PGPASSWORD", "postgres"),
        "dbname": os.getenv("PGDATABASE", "postgres"),
    }


@pytest.fixture()
def temp_schema():
    try:
        admin = connect(connect_timeout=3, **_conninfo())
    except OperationalError as exc:
        pytest.skip(f"postgres not reachable: {exc}")

    schema = f"airtable_feed_test_{uuid.uuid4().hex[:8]}"
    try:
        yield schema
    finally:
        admin.execute(
            sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(schema))
        )
        admin.close()


@pytest.fixture()
def store(temp_schema):
    conn = connect(**_conninfo())
    pg_store = PostgresSubscriptionStore(conn, schema=temp_schema)
    pg_store.ensure_schema()
    try:
        yield pg_store
    finally:
        conn.close()


def _subscription(last_cursor=0):
    return Subscription(
        subscription_id="ach1",
        base_id="app1",
        table_id="tbl1",
        secret="c2VjcmV0",
        last_cursor=last_cursor,
        included_field_ids=("fldName",),
        source_filters={"dataTypes": ["tableData"]},
    )


def test_save_load_and_clear(store):
    assert store.load("default") is None

    store.save("default", _subscription(4))
    assert store.load("default") == _subscription(4)

    store.save("default", _subscription(6))
    assert store.load("default").last_cursor == 6

    store.clear("default")
    assert store.load("default") is None


def test_advance_cursor_is_advance_only(store):
    store.save("default", _subscription(5))

    assert store.advance_cursor("default", 3) is None
    assert store.advance_cursor("default", 5) is None

    updated = store.advance_cursor("default", 9)
    assert updated.last_cursor == 9
    assert updated.subscription_id == "ach1"
    assert store.load("default").last_cursor == 9


def test_ensure_schema_is_idempotent(store):
    store.ensure_schema()
    store.save("default", _subscription(1))
    store.ensure_schema()
    assert store.load("default").last_cursor == 1


def test_advisory_lock_serializes_sessions(store, temp_schema):
    other_conn = connect(**_conninfo())
    other = PostgresSubscriptionStore(other_conn, schema=temp_schema)
    order = []
    entered = threading.Event()

    def first():
        with store.lock("default"):
            entered.set()
            time.sleep(0.2)
            order.append("first")

    def second():
        entered.wait()
        with other.lock("default"):
            order.append("second")

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)
    finally:
        other_conn.close()

    assert order == ["first", "second"]
