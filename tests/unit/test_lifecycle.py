from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from airtable_change_feed.airtable.client import TransportError
from airtable_change_feed.feed.lifecycle import (
    CreationError,
    InvalidFilterConfig,
    SubscriptionManager,
    build_specification,
    parse_source_options,
)
from airtable_change_feed.feed.models import Subscription, SubscriptionConfig
from airtable_change_feed.feed.store import InMemorySubscriptionStore


class _RoutingTransport:
    """Dispatches requests to per-(method, path) handlers."""

    def __init__(self, routes: Dict[Tuple[str, str], Any]) -> None:
        self._routes = routes
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

    def request(self, method, path, body=None, query=None):
        self.calls.append((method, path, body))
        route = self._routes[(method, path)]
        if isinstance(route, Exception):
            raise route
        return route


def _config(**overrides) -> SubscriptionConfig:
    values = dict(
        base_id="app1",
        table_id="tbl1",
        notification_url="https://hooks.example.com/airtable",
    )
    values.update(overrides)
    return SubscriptionConfig(**values)


def _manager(routes, store=None):
    store = store if store is not None else InMemorySubscriptionStore()
    transport = _RoutingTransport(routes)
    return SubscriptionManager(transport, store, instance_id="default"), transport, store


def _stored(subscription_id="achOld", **overrides) -> Subscription:
    values = dict(
        subscription_id=subscription_id,
        base_id="app1",
        table_id="tbl1",
        secret="c2VjcmV0",
        last_cursor=11,
    )
    values.update(overrides)
    return Subscription(**values)


@pytest.mark.unit
def test_specification_contains_required_filters_only_by_default():
    body = build_specification(_config())
    assert body == {
        "notificationUrl": "https://hooks.example.com/airtable",
        "specification": {
            "options": {
                "filters": {
                    "dataTypes": ["tableData"],
                    "recordChangeScope": "tbl1",
                    "changeTypes": ["update"],
                },
                "includes": {"includePreviousCellValues": True},
            }
        },
    }


@pytest.mark.unit
def test_specification_includes_optional_filters():
    body = build_specification(
        _config(
            fields_to_watch=("fldA",),
            fields_to_include=("fldName",),
            from_sources=("client", "formSubmission"),
            source_options='{"formSubmission": {"viewId": "viw1"}}',
            watch_schemas_of_field_ids=("fldA",),
            event_types=("add", "update"),
        )
    )
    options = body["specification"]["options"]
    assert options["filters"]["watchDataInFieldIds"] == ["fldA"]
    assert options["filters"]["fromSources"] == ["client", "formSubmission"]
    assert options["filters"]["sourceOptions"] == {"formSubmission": {"viewId": "viw1"}}
    assert options["filters"]["watchSchemasOfFieldIds"] == ["fldA"]
    assert options["filters"]["changeTypes"] == ["add", "update"]
    assert options["includes"]["includeCellValuesInFieldIds"] == ["fldName"]


@pytest.mark.unit
def test_invalid_source_options_are_dropped_with_warning(caplog):
    body = build_specification(_config(source_options="{not json"))
    assert "sourceOptions" not in body["specification"]["options"]["filters"]
    assert "ignoring source options" in caplog.text


@pytest.mark.unit
@pytest.mark.parametrize("raw", ["{bad", "[1, 2", "text"])
def test_parse_source_options_rejects_invalid_json(raw):
    with pytest.raises(InvalidFilterConfig):
        parse_source_options(raw)


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw, expected",
    [("[]", []), ("[1, 2]", [1, 2]), ('"text"', "text"), ("0", 0), ("{}", {})],
)
def test_parse_source_options_forwards_any_json_value(raw, expected):
    assert parse_source_options(raw) == expected


@pytest.mark.unit
def test_non_object_source_options_reach_the_request_body():
    body = build_specification(_config(source_options="[]"))
    assert body["specification"]["options"]["filters"]["sourceOptions"] == []


@pytest.mark.unit
def test_parse_source_options_blank_is_none():
    assert parse_source_options("   ") is None


@pytest.mark.unit
def test_create_persists_subscription_with_secret():
    manager, transport, store = _manager(
        {
            ("POST", "/bases/app1/webhooks"): {
                "id": "achNew",
                "macSecretBase64": "c2VjcmV0",
                "expirationTime": "2024-03-08T10:00:00.000Z",
            }
        }
    )
    subscription = manager.create(_config(fields_to_include=("fldName",)))

    assert subscription.subscription_id == "achNew"
    assert subscription.secret == "c2VjcmV0"
    assert subscription.last_cursor == 0
    assert subscription.included_field_ids == ("fldName",)
    assert subscription.expiration_time == "2024-03-08T10:00:00.000Z"
    assert store.load("default") == subscription
    assert transport.calls[0][2]["notificationUrl"] == "https://hooks.example.com/airtable"


@pytest.mark.unit
def test_create_rejected_raises_creation_error():
    manager, _transport, store = _manager(
        {("POST", "/bases/app1/webhooks"): TransportError("invalid", status_code=422)}
    )
    with pytest.raises(CreationError):
        manager.create(_config())
    assert store.load("default") is None


@pytest.mark.unit
def test_create_without_id_raises_creation_error():
    manager, _transport, _store = _manager({("POST", "/bases/app1/webhooks"): {}})
    with pytest.raises(CreationError):
        manager.create(_config())


@pytest.mark.unit
def test_exists_checks_listing():
    manager, _transport, _store = _manager(
        {("GET", "/bases/app1/webhooks"): {"webhooks": [{"id": "achOld"}, {"id": "achX"}]}}
    )
    assert manager.exists(_stored("achOld")) is True
    assert manager.exists(_stored("achGone")) is False


@pytest.mark.unit
def test_exists_treats_transport_failure_as_missing():
    manager, _transport, _store = _manager(
        {("GET", "/bases/app1/webhooks"): TransportError("offline")}
    )
    assert manager.exists(_stored()) is False


@pytest.mark.unit
def test_delete_clears_store_after_remote_delete():
    store = InMemorySubscriptionStore()
    store.save("default", _stored())
    manager, transport, _ = _manager(
        {("DELETE", "/bases/app1/webhooks/achOld"): {}}, store=store
    )
    assert manager.delete() is True
    assert store.load("default") is None
    assert transport.calls == [("DELETE", "/bases/app1/webhooks/achOld", None)]


@pytest.mark.unit
def test_delete_failure_keeps_stored_record():
    store = InMemorySubscriptionStore()
    store.save("default", _stored())
    manager, _transport, _ = _manager(
        {("DELETE", "/bases/app1/webhooks/achOld"): TransportError("nope", status_code=500)},
        store=store,
    )
    assert manager.delete() is False
    assert store.load("default") == _stored()


@pytest.mark.unit
def test_delete_without_subscription_is_true():
    manager, transport, _store = _manager({})
    assert manager.delete() is True
    assert transport.calls == []


@pytest.mark.unit
def test_refresh_updates_expiration_and_keeps_cursor():
    store = InMemorySubscriptionStore()
    store.save("default", _stored())
    manager, _transport, _ = _manager(
        {
            ("POST", "/bases/app1/webhooks/achOld/refresh"): {
                "expirationTime": "2024-03-15T10:00:00.000Z"
            }
        },
        store=store,
    )
    refreshed = manager.refresh(_stored())
    assert refreshed.expiration_time == "2024-03-15T10:00:00.000Z"
    assert store.load("default").last_cursor == 11


@pytest.mark.unit
def test_refresh_failure_returns_none():
    manager, _transport, _store = _manager(
        {("POST", "/bases/app1/webhooks/achOld/refresh"): TransportError("gone", status_code=404)}
    )
    assert manager.refresh(_stored()) is None


@pytest.mark.unit
def test_refresh_after_record_was_cleared_does_not_recreate_it():
    manager, transport, store = _manager(
        {
            ("POST", "/bases/app1/webhooks/achOld/refresh"): {
                "expirationTime": "2024-03-15T10:00:00.000Z"
            }
        }
    )

    assert manager.refresh(_stored()) is None
    assert store.load("default") is None
    assert [call[0:2] for call in transport.calls] == [
        ("POST", "/bases/app1/webhooks/achOld/refresh")
    ]


@pytest.mark.unit
def test_ensure_reuses_existing_webhook():
    store = InMemorySubscriptionStore()
    store.save("default", _stored())
    manager, transport, _ = _manager(
        {("GET", "/bases/app1/webhooks"): {"webhooks": [{"id": "achOld"}]}},
        store=store,
    )
    assert manager.ensure(_config()) == _stored()
    assert [call[0] for call in transport.calls] == ["GET"]


@pytest.mark.unit
def test_ensure_recreates_missing_webhook():
    store = InMemorySubscriptionStore()
    store.save("default", _stored())
    manager, transport, _ = _manager(
        {
            ("GET", "/bases/app1/webhooks"): {"webhooks": []},
            ("DELETE", "/bases/app1/webhooks/achOld"): TransportError("gone", status_code=404),
            ("POST", "/bases/app1/webhooks"): {"id": "achNew", "macSecretBase64": "bmV3"},
        },
        store=store,
    )
    subscription = manager.ensure(_config())

    assert subscription.subscription_id == "achNew"
    assert subscription.last_cursor == 0
    assert store.load("default").subscription_id == "achNew"
    assert [call[0] for call in transport.calls] == ["GET", "DELETE", "POST"]


@pytest.mark.unit
def test_ensure_returns_none_when_creation_fails():
    manager, _transport, store = _manager(
        {("POST", "/bases/app1/webhooks"): TransportError("invalid", status_code=422)}
    )
    assert manager.ensure(_config()) is None
    assert store.load("default") is None
