"""Typed records for subscriptions, inbound pings, payloads, and change events.

Raw Airtable JSON is decoded here, at the boundary, into frozen dataclasses so
the fetcher, normalizer, and pipeline never poke at untyped dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union


class MalformedPingError(ValueError):
    """Raised when an inbound notification lacks the expected identifiers."""


class UnrecognizedPayloadError(ValueError):
    """Raised when a payload member does not have the shape Airtable documents."""


# ---------------------------------------------------------------------------
# Decoding helpers


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise UnrecognizedPayloadError(
            f"{where} must be an object, got {type(value).__name__}"
        )
    return value


def _id_list(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise UnrecognizedPayloadError(
            f"{where} must be a list, got {type(value).__name__}"
        )
    return tuple(str(entry) for entry in value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Subscription record


@dataclass(frozen=True)
class SubscriptionConfig:
    """Creation-time options for a change feed subscription."""

    base_id: str
    table_id: str
    notification_url: str
    fields_to_watch: Tuple[str, ...] = ()
    fields_to_include: Tuple[str, ...] = ()
    include_previous_values: bool = True
    event_types: Tuple[str, ...] = ("update",)
    data_types: Tuple[str, ...] = ("tableData",)
    from_sources: Tuple[str, ...] = ()
    source_options: str = ""
    watch_schemas_of_field_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Subscription:
    """Durable state of one webhook subscription.

    ``last_cursor`` is an exclusive lower bound for the next payload read;
    ``0`` means nothing has been processed yet.
    """

    subscription_id: Optional[str]
    base_id: str
    table_id: str
    secret: Optional[str] = None
    last_cursor: int = 0
    watched_field_ids: Tuple[str, ...] = ()
    included_field_ids: Tuple[str, ...] = ()
    event_types: Tuple[str, ...] = ()
    source_filters: Dict[str, Any] = field(default_factory=dict)
    include_previous_values: bool = True
    expiration_time: Optional[str] = None

    def advanced_to(self, cursor: int) -> "Subscription":
        """Return a copy whose cursor is ``max(last_cursor, cursor)``."""
        if cursor <= self.last_cursor:
            return self
        return replace(self, last_cursor=cursor)

    def to_record(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "base_id": self.base_id,
            "table_id": self.table_id,
            "secret": self.secret,
            "last_cursor": self.last_cursor,
            "watched_field_ids": list(self.watched_field_ids),
            "included_field_ids": list(self.included_field_ids),
            "event_types": list(self.event_types),
            "source_filters": dict(self.source_filters),
            "include_previous_values": self.include_previous_values,
            "expiration_time": self.expiration_time,
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "Subscription":
        cursor = data.get("last_cursor") or 0
        if not isinstance(cursor, int) or isinstance(cursor, bool):
            raise ValueError(f"stored last_cursor is not an integer: {cursor!r}")
        filters = data.get("source_filters") or {}
        return cls(
            subscription_id=_optional_str(data.get("subscription_id")),
            base_id=str(data.get("base_id") or ""),
            table_id=str(data.get("table_id") or ""),
            secret=_optional_str(data.get("secret")),
            last_cursor=cursor,
            watched_field_ids=tuple(data.get("watched_field_ids") or ()),
            included_field_ids=tuple(data.get("included_field_ids") or ()),
            event_types=tuple(data.get("event_types") or ()),
            source_filters=dict(filters) if isinstance(filters, Mapping) else {},
            include_previous_values=bool(data.get("include_previous_values", True)),
            expiration_time=_optional_str(data.get("expiration_time")),
        )


# ---------------------------------------------------------------------------
# Inbound notification


@dataclass(frozen=True)
class Ping:
    """The lightweight "something changed" notification Airtable posts."""

    base_id: str
    subscription_id: str
    timestamp: str
    body: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_body(cls, body: Any) -> "Ping":
        if not isinstance(body, Mapping):
            raise MalformedPingError("notification body must be a JSON object")
        base = body.get("base")
        webhook = body.get("webhook")
        timestamp = body.get("timestamp")
        base_id = base.get("id") if isinstance(base, Mapping) else None
        webhook_id = webhook.get("id") if isinstance(webhook, Mapping) else None
        if not isinstance(base_id, str) or not base_id.strip():
            raise MalformedPingError("notification is missing base.id")
        if not isinstance(webhook_id, str) or not webhook_id.strip():
            raise MalformedPingError("notification is missing webhook.id")
        if not timestamp:
            raise MalformedPingError("notification is missing timestamp")
        return cls(
            base_id=base_id.strip(),
            subscription_id=webhook_id.strip(),
            timestamp=str(timestamp),
            body=dict(body),
        )


# ---------------------------------------------------------------------------
# Payload log entries


@dataclass(frozen=True)
class ChangedBy:
    user_id: Optional[str]
    user_name: Optional[str]
    user_email: Optional[str]

    @classmethod
    def from_action_metadata(
        cls, action_metadata: Mapping[str, Any]
    ) -> Optional["ChangedBy"]:
        source_metadata = action_metadata.get("sourceMetadata")
        if not isinstance(source_metadata, Mapping):
            return None
        user = source_metadata.get("user")
        if not isinstance(user, Mapping) or not user:
            return None
        return cls(
            user_id=_optional_str(user.get("id")),
            user_name=_optional_str(user.get("name")),
            user_email=_optional_str(user.get("email")),
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "userEmail": self.user_email,
        }


@dataclass(frozen=True)
class CellDelta:
    field_id: str
    current: Any
    previous: Any = None
    has_previous: bool = False


@dataclass(frozen=True)
class RecordDelta:
    """Cell edits for one record plus the values Airtable sent for context."""

    record_id: str
    cells: Tuple[CellDelta, ...] = ()
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, record_id: str, raw: Any) -> "RecordDelta":
        where = f"changedRecordsById.{record_id}"
        entry = _mapping(raw, where)
        current = _mapping(
            _mapping(entry.get("current"), f"{where}.current").get(
                "cellValuesByFieldId"
            ),
            f"{where}.current.cellValuesByFieldId",
        )
        previous = _mapping(
            _mapping(entry.get("previous"), f"{where}.previous").get(
                "cellValuesByFieldId"
            ),
            f"{where}.previous.cellValuesByFieldId",
        )
        unchanged = _mapping(
            _mapping(entry.get("unchanged"), f"{where}.unchanged").get(
                "cellValuesByFieldId"
            ),
            f"{where}.unchanged.cellValuesByFieldId",
        )
        flattened = _mapping(
            entry.get("cellValuesByFieldId"), f"{where}.cellValuesByFieldId"
        )

        cells: List[CellDelta] = []
        context: Dict[str, Any] = dict(unchanged)
        for field_id, value in current.items():
            cells.append(
                CellDelta(
                    field_id=field_id,
                    current=value,
                    previous=previous.get(field_id),
                    has_previous=field_id in previous,
                )
            )
            context[field_id] = value
        for field_id, value in previous.items():
            if field_id in current:
                continue
            cells.append(
                CellDelta(field_id=field_id, current=None, previous=value, has_previous=True)
            )
        seen = {cell.field_id for cell in cells}
        for field_id, value in flattened.items():
            if field_id in seen:
                continue
            if isinstance(value, Mapping) and "current" in value:
                delta = CellDelta(
                    field_id=field_id,
                    current=value.get("current"),
                    previous=value.get("previous"),
                    has_previous="previous" in value,
                )
            else:
                delta = CellDelta(field_id=field_id, current=value)
            cells.append(delta)
            context[field_id] = delta.current
        return cls(record_id=record_id, cells=tuple(cells), context=context)


@dataclass(frozen=True)
class CreatedRecord:
    record_id: str
    created_time: Optional[str]
    cell_values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, record_id: str, raw: Any) -> "CreatedRecord":
        where = f"createdRecordsById.{record_id}"
        entry = _mapping(raw, where)
        values = _mapping(
            entry.get("cellValuesByFieldId"), f"{where}.cellValuesByFieldId"
        )
        return cls(
            record_id=record_id,
            created_time=_optional_str(entry.get("createdTime")),
            cell_values=dict(values),
        )


@dataclass(frozen=True)
class SchemaDelta:
    field_id: str
    current: Optional[Dict[str, Any]] = None
    previous: Optional[Dict[str, Any]] = None

    def changed_properties(self) -> List[str]:
        current = self.current or {}
        previous = self.previous or {}
        keys = set(current) | set(previous)
        return sorted(key for key in keys if current.get(key) != previous.get(key))


@dataclass(frozen=True)
class MetadataDelta:
    current: Dict[str, Any] = field(default_factory=dict)
    previous: Dict[str, Any] = field(default_factory=dict)

    def keys(self) -> List[str]:
        ordered = list(self.current)
        ordered.extend(key for key in self.previous if key not in self.current)
        return ordered


@dataclass(frozen=True)
class TableChange:
    table_id: str
    changed_records: Tuple[RecordDelta, ...] = ()
    created_records: Tuple[CreatedRecord, ...] = ()
    destroyed_record_ids: Tuple[str, ...] = ()
    changed_fields: Tuple[SchemaDelta, ...] = ()
    created_fields: Tuple[SchemaDelta, ...] = ()
    destroyed_field_ids: Tuple[str, ...] = ()
    changed_metadata: Optional[MetadataDelta] = None

    @classmethod
    def from_mapping(cls, table_id: str, raw: Any) -> "TableChange":
        where = f"changedTablesById.{table_id}"
        entry = _mapping(raw, where)

        changed_records = tuple(
            RecordDelta.from_mapping(record_id, value)
            for record_id, value in _mapping(
                entry.get("changedRecordsById"), f"{where}.changedRecordsById"
            ).items()
        )
        created_records = tuple(
            CreatedRecord.from_mapping(record_id, value)
            for record_id, value in _mapping(
                entry.get("createdRecordsById"), f"{where}.createdRecordsById"
            ).items()
        )

        changed_fields: List[SchemaDelta] = []
        for field_id, value in _mapping(
            entry.get("changedFieldsById"), f"{where}.changedFieldsById"
        ).items():
            delta = _mapping(value, f"{where}.changedFieldsById.{field_id}")
            current = _mapping(delta.get("current"), f"{field_id}.current")
            previous = _mapping(delta.get("previous"), f"{field_id}.previous")
            changed_fields.append(
                SchemaDelta(
                    field_id=field_id,
                    current=dict(current) if "current" in delta else None,
                    previous=dict(previous) if "previous" in delta else None,
                )
            )
        created_fields = tuple(
            SchemaDelta(
                field_id=field_id,
                current=dict(_mapping(value, f"{where}.createdFieldsById.{field_id}")),
            )
            for field_id, value in _mapping(
                entry.get("createdFieldsById"), f"{where}.createdFieldsById"
            ).items()
        )

        changed_metadata: Optional[MetadataDelta] = None
        if entry.get("changedMetadata") is not None:
            metadata = _mapping(entry.get("changedMetadata"), f"{where}.changedMetadata")
            changed_metadata = MetadataDelta(
                current=dict(_mapping(metadata.get("current"), "changedMetadata.current")),
                previous=dict(
                    _mapping(metadata.get("previous"), "changedMetadata.previous")
                ),
            )

        return cls(
            table_id=table_id,
            changed_records=changed_records,
            created_records=created_records,
            destroyed_record_ids=_id_list(
                entry.get("destroyedRecordIds"), f"{where}.destroyedRecordIds"
            ),
            changed_fields=tuple(changed_fields),
            created_fields=created_fields,
            destroyed_field_ids=_id_list(
                entry.get("destroyedFieldIds"), f"{where}.destroyedFieldIds"
            ),
            changed_metadata=changed_metadata,
        )


@dataclass(frozen=True)
class RawPayload:
    """One entry of a webhook's payload log."""

    cursor: int
    timestamp: Optional[str] = None
    action_metadata: Dict[str, Any] = field(default_factory=dict)
    tables: Tuple[TableChange, ...] = ()

    @property
    def changed_by(self) -> Optional[ChangedBy]:
        return ChangedBy.from_action_metadata(self.action_metadata)

    @property
    def source(self) -> Optional[str]:
        return _optional_str(self.action_metadata.get("source"))

    @classmethod
    def from_mapping(cls, raw: Any, *, table_id: Optional[str] = None) -> "RawPayload":
        """Decode one payload entry.

        With ``table_id`` set, only that table's changes are decoded and kept;
        other tables are skipped without inspecting their shape.
        """
        entry = _mapping(raw, "payload")
        cursor = entry.get("cursor")
        if not isinstance(cursor, int) or isinstance(cursor, bool):
            raise UnrecognizedPayloadError(f"payload cursor is not an integer: {cursor!r}")
        action_metadata = _mapping(entry.get("actionMetadata"), "actionMetadata")
        tables = tuple(
            TableChange.from_mapping(key, value)
            for key, value in _mapping(
                entry.get("changedTablesById"), "changedTablesById"
            ).items()
            if not table_id or key == table_id
        )
        return cls(
            cursor=cursor,
            timestamp=_optional_str(entry.get("timestamp")),
            action_metadata=dict(action_metadata),
            tables=tables,
        )


# ---------------------------------------------------------------------------
# Normalized change events


@dataclass(frozen=True)
class EventStamp:
    """Fields every change event carries about its origin."""

    table_id: str
    cursor: int
    timestamp: Optional[str]
    changed_by: Optional[ChangedBy] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "tableId": self.table_id,
            "cursor": self.cursor,
            "timestamp": self.timestamp,
        }
        if self.changed_by is not None:
            data["changedBy"] = self.changed_by.to_dict()
        if self.source is not None:
            data["source"] = self.source
        return data


@dataclass(frozen=True)
class RecordChange:
    stamp: EventStamp
    change_type: str
    record_id: str
    field_id: Optional[str] = None
    current_value: Any = None
    previous_value: Any = None
    has_previous: bool = False
    included_fields: Dict[str, Any] = field(default_factory=dict)
    created_time: Optional[str] = None

    kind: ClassVar[str] = "RecordChange"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind,
            "changeType": self.change_type,
            "recordId": self.record_id,
        }
        if self.field_id is not None:
            data["fieldId"] = self.field_id
        if self.change_type != "remove":
            data["currentValue"] = self.current_value
        if self.has_previous:
            data["previousValue"] = self.previous_value
        if self.created_time is not None:
            data["createdTime"] = self.created_time
        data["includedFields"] = dict(self.included_fields)
        data.update(self.stamp.to_dict())
        return data


@dataclass(frozen=True)
class FieldSchemaChange:
    stamp: EventStamp
    change_type: str
    field_id: str
    changed_properties: Tuple[str, ...] = ()
    current_schema: Optional[Dict[str, Any]] = None
    previous_schema: Optional[Dict[str, Any]] = None

    kind: ClassVar[str] = "FieldSchemaChange"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind,
            "changeType": self.change_type,
            "fieldId": self.field_id,
            "changedProperties": list(self.changed_properties),
            "currentSchema": self.current_schema,
            "previousSchema": self.previous_schema,
        }
        data.update(self.stamp.to_dict())
        return data


@dataclass(frozen=True)
class TableMetadataChange:
    stamp: EventStamp
    metadata_key: str
    current_value: Any = None
    previous_value: Any = None
    change_type: str = "update"

    kind: ClassVar[str] = "TableMetadataChange"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind,
            "changeType": self.change_type,
            "metadataKey": self.metadata_key,
            "currentValue": self.current_value,
            "previousValue": self.previous_value,
        }
        data.update(self.stamp.to_dict())
        return data


ChangeEvent = Union[RecordChange, FieldSchemaChange, TableMetadataChange]


__all__ = [
    "CellDelta",
    "ChangeEvent",
    "ChangedBy",
    "CreatedRecord",
    "EventStamp",
    "FieldSchemaChange",
    "MalformedPingError",
    "MetadataDelta",
    "Ping",
    "RawPayload",
    "RecordChange",
    "RecordDelta",
    "SchemaDelta",
    "Subscription",
    "SubscriptionConfig",
    "TableChange",
    "TableMetadataChange",
    "UnrecognizedPayloadError",
]
