"""Flatten decoded webhook payloads into typed change events."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence

from .models import (
    ChangeEvent,
    EventStamp,
    FieldSchemaChange,
    RawPayload,
    RecordChange,
    Subscription,
    TableChange,
    TableMetadataChange,
)

logger = logging.getLogger(__name__)


class ChangeNormalizer:
    """Produce change events for the watched table of each payload.

    Events are emitted per table in payload order and, within a table, in the
    order record changes, field-schema changes, table-metadata changes.
    """

    def __init__(
        self,
        *,
        table_id: str,
        fields_to_include: Sequence[str] = (),
        include_previous_values: bool = True,
    ) -> None:
        self._table_id = table_id
        self._fields_to_include = tuple(fields_to_include)
        self._include_previous = include_previous_values

    @classmethod
    def for_subscription(cls, subscription: Subscription) -> "ChangeNormalizer":
        return cls(
            table_id=subscription.table_id,
            fields_to_include=subscription.included_field_ids,
            include_previous_values=subscription.include_previous_values,
        )

    def normalize(self, payload: RawPayload) -> List[ChangeEvent]:
        events: List[ChangeEvent] = []
        changed_by = payload.changed_by
        source = payload.source
        for table in payload.tables:
            if self._table_id and table.table_id != self._table_id:
                logger.debug(
                    "skipping changes for unwatched table %s (cursor %s)",
                    table.table_id,
                    payload.cursor,
                )
                continue
            stamp = EventStamp(
                table_id=table.table_id,
                cursor=payload.cursor,
                timestamp=payload.timestamp,
                changed_by=changed_by,
                source=source,
            )
            events.extend(self._record_events(table, stamp))
            events.extend(self._field_schema_events(table, stamp))
            events.extend(self._metadata_events(table, stamp))
        return events

    def normalize_all(self, payloads: Iterable[RawPayload]) -> List[ChangeEvent]:
        events: List[ChangeEvent] = []
        for payload in payloads:
            events.extend(self.normalize(payload))
        return events

    # ------------------------------------------------------------------ Records
    def _record_events(self, table: TableChange, stamp: EventStamp) -> List[ChangeEvent]:
        events: List[ChangeEvent] = []
        for record in table.changed_records:
            if not record.cells:
                logger.debug("record %s carries no changed cells", record.record_id)
                continue
            included = self._included_values(record.context)
            for cell in record.cells:
                has_previous = self._include_previous and cell.has_previous
                events.append(
                    RecordChange(
                        stamp=stamp,
                        change_type="update",
                        record_id=record.record_id,
                        field_id=cell.field_id,
                        current_value=cell.current,
                        previous_value=cell.previous if has_previous else None,
                        has_previous=has_previous,
                        included_fields=included,
                    )
                )
        for created in table.created_records:
            events.append(
                RecordChange(
                    stamp=stamp,
                    change_type="add",
                    record_id=created.record_id,
                    current_value=dict(created.cell_values),
                    included_fields=self._included_values(created.cell_values),
                    created_time=created.created_time,
                )
            )
        for record_id in table.destroyed_record_ids:
            events.append(
                RecordChange(stamp=stamp, change_type="remove", record_id=record_id)
            )
        return events

    def _included_values(self, values: Dict[str, object]) -> Dict[str, object]:
        return {
            field_id: values[field_id]
            for field_id in self._fields_to_include
            if field_id in values
        }

    # ------------------------------------------------------------------ Schema
    @staticmethod
    def _field_schema_events(
        table: TableChange, stamp: EventStamp
    ) -> List[ChangeEvent]:
        events: List[ChangeEvent] = []
        for delta in table.changed_fields:
            events.append(
                FieldSchemaChange(
                    stamp=stamp,
                    change_type="update",
                    field_id=delta.field_id,
                    changed_properties=tuple(delta.changed_properties()),
                    current_schema=delta.current,
                    previous_schema=delta.previous,
                )
            )
        for delta in table.created_fields:
            events.append(
                FieldSchemaChange(
                    stamp=stamp,
                    change_type="add",
                    field_id=delta.field_id,
                    changed_properties=tuple(sorted(delta.current or {})),
                    current_schema=delta.current,
                )
            )
        for field_id in table.destroyed_field_ids:
            events.append(
                FieldSchemaChange(stamp=stamp, change_type="remove", field_id=field_id)
            )
        return events

    # ------------------------------------------------------------------ Metadata
    @staticmethod
    def _metadata_events(
        table: TableChange, stamp: EventStamp
    ) -> List[ChangeEvent]:
        metadata = table.changed_metadata
        if metadata is None:
            return []
        events: List[ChangeEvent] = []
        for key in metadata.keys():
            events.append(
                TableMetadataChange(
                    stamp=stamp,
                    metadata_key=key,
                    current_value=metadata.current.get(key),
                    previous_value=metadata.previous.get(key),
                )
            )
        return events


def events_to_dicts(events: Iterable[ChangeEvent]) -> List[Dict[str, object]]:
    return [event.to_dict() for event in events]

