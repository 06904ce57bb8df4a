import pytest

from airtable_change_feed.feed.models import (
    MalformedPingError,
    Ping,
    RawPayload,
    RecordDelta,
    SchemaDelta,
    Subscription,
    UnrecognizedPayloadError,
)


def _ping_body(**overrides):
    body = {
        "base": {"id": "app1"},
        "webhook": {"id": "ach1"},
        "timestamp": "2024-03-01T10:00:00.000Z",
    }
    body.update(overrides)
    return body


@pytest.mark.unit
def test_ping_decodes_ids_and_keeps_body():
    ping = Ping.from_body(_ping_body())
    assert ping.base_id == "app1"
    assert ping.subscription_id == "ach1"
    assert ping.timestamp == "2024-03-01T10:00:00.000Z"
    assert ping.body["webhook"] == {"id": "ach1"}


@pytest.mark.unit
@pytest.mark.parametrize(
    "body",
    [
        None,
        [],
        _ping_body(base=None),
        _ping_body(base={"id": "  "}),
        _ping_body(webhook={}),
        _ping_body(webhook={"id": 42}),
        _ping_body(timestamp=None),
    ],
)
def test_ping_rejects_malformed_bodies(body):
    with pytest.raises(MalformedPingError):
        Ping.from_body(body)


@pytest.mark.unit
def test_subscription_record_round_trip_and_advance():
    sub = Subscription(
        subscription_id="ach1",
        base_id="app1",
        table_id="tbl1",
        secret="c2VjcmV0",
        last_cursor=4,
        included_field_ids=("fldA",),
        source_filters={"dataTypes": ["tableData"]},
    )
    restored = Subscription.from_record(sub.to_record())
    assert restored == sub
    assert sub.advanced_to(3) is sub
    assert sub.advanced_to(9).last_cursor == 9


@pytest.mark.unit
def test_subscription_record_rejects_non_integer_cursor():
    with pytest.raises(ValueError):
        Subscription.from_record({"base_id": "app1", "last_cursor": "7"})


@pytest.mark.unit
def test_record_delta_reads_native_shape():
    delta = RecordDelta.from_mapping(
        "rec1",
        {
            "current": {"cellValuesByFieldId": {"fldA": "A", "fldB": 2}},
            "previous": {"cellValuesByFieldId": {"fldA": "B", "fldC": "gone"}},
            "unchanged": {"cellValuesByFieldId": {"fldD": "same"}},
        },
    )
    cells = {cell.field_id: cell for cell in delta.cells}
    assert cells["fldA"].current == "A"
    assert cells["fldA"].previous == "B"
    assert cells["fldA"].has_previous is True
    assert cells["fldB"].has_previous is False
    assert cells["fldC"].current is None and cells["fldC"].previous == "gone"
    assert delta.context == {"fldD": "same", "fldA": "A", "fldB": 2}


@pytest.mark.unit
def test_record_delta_reads_flattened_shape():
    delta = RecordDelta.from_mapping(
        "rec1",
        {"cellValuesByFieldId": {"fldA": {"current": "A", "previous": "B"}, "fldB": 5}},
    )
    cells = {cell.field_id: cell for cell in delta.cells}
    assert (cells["fldA"].current, cells["fldA"].previous) == ("A", "B")
    assert cells["fldB"].current == 5
    assert cells["fldB"].has_previous is False


@pytest.mark.unit
def test_schema_delta_lists_changed_properties():
    delta = SchemaDelta(
        field_id="fldA",
        current={"name": "Status", "type": "singleSelect"},
        previous={"name": "State", "type": "singleSelect"},
    )
    assert delta.changed_properties() == ["name"]


@pytest.mark.unit
def test_raw_payload_decodes_tables_and_user():
    payload = RawPayload.from_mapping(
        {
            "cursor": 3,
            "timestamp": "2024-03-01T10:00:00.000Z",
            "actionMetadata": {
                "source": "client",
                "sourceMetadata": {
                    "user": {"id": "usr1", "name": "Ada", "email": "ada@example.com"}
                },
            },
            "changedTablesById": {
                "tbl1": {
                    "destroyedRecordIds": ["rec9"],
                    "changedMetadata": {
                        "current": {"name": "Orders"},
                        "previous": {"name": "Order"},
                    },
                }
            },
        }
    )
    assert payload.cursor == 3
    assert payload.source == "client"
    assert payload.changed_by.user_email == "ada@example.com"
    table = payload.tables[0]
    assert table.table_id == "tbl1"
    assert table.destroyed_record_ids == ("rec9",)
    assert table.changed_metadata.keys() == ["name"]


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw",
    [
        "not a mapping",
        {"cursor": "3"},
        {"cursor": True},
        {"cursor": 3, "changedTablesById": ["tbl1"]},
        {"cursor": 3, "changedTablesById": {"tbl1": {"changedRecordsById": {"rec1": 7}}}},
    ],
)
def test_raw_payload_rejects_unrecognized_shapes(raw):
    with pytest.raises(UnrecognizedPayloadError):
        RawPayload.from_mapping(raw)


@pytest.mark.unit
def test_raw_payload_scoped_to_a_table_skips_other_tables():
    raw = {
        "cursor": 6,
        "changedTablesById": {
            "tblOTHER": {"destroyedRecordIds": "recX"},
            "tbl1": {"destroyedRecordIds": ["rec1"]},
        },
    }

    payload = RawPayload.from_mapping(raw, table_id="tbl1")

    assert [table.table_id for table in payload.tables] == ["tbl1"]
    assert payload.tables[0].destroyed_record_ids == ("rec1",)
    with pytest.raises(UnrecognizedPayloadError):
        RawPayload.from_mapping(raw)
    with pytest.raises(UnrecognizedPayloadError):
        RawPayload.from_mapping(raw, table_id="tblOTHER")
