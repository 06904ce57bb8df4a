"""Cursor-tracked retrieval of a webhook's payload log."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from ..airtable.client import Transport, TransportError
from .models import RawPayload, Subscription

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """Raised when the payload log cannot be read; the cursor stays put."""


@dataclass(frozen=True)
class FetchResult:
    """Payloads newer than the subscription cursor, in ascending cursor order."""

    payloads: List[RawPayload] = field(default_factory=list)
    new_cursor: Optional[int] = None
    received: int = 0
    duplicate_cursors: List[int] = field(default_factory=list)

    @property
    def has_new(self) -> bool:
        return self.new_cursor is not None


def payloads_path(base_id: str, subscription_id: str) -> str:
    return f"/bases/{base_id}/webhooks/{subscription_id}/payloads"


def _valid_cursor(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class PayloadFetcher:
    """Reads every payload with ``cursor > subscription.last_cursor``.

    ``last_cursor == 0`` is the "nothing processed" sentinel: the cursor query
    parameter is omitted entirely so Airtable returns the log from its start.
    Entries at or below the cursor, or without a usable cursor, are dropped.
    """

    def __init__(self, transport: Transport, *, max_pages: int = 10) -> None:
        if max_pages <= 0:
            raise ValueError("max_pages must be positive")
        self._transport = transport
        self._max_pages = max_pages

    def fetch(self, subscription: Subscription) -> FetchResult:
        if not subscription.subscription_id:
            raise FetchError("subscription has no webhook id")
        last_cursor = subscription.last_cursor
        raw_entries = self._read_log(subscription, last_cursor)

        retained: List[Mapping[str, Any]] = []
        for entry in raw_entries:
            cursor = entry.get("cursor") if isinstance(entry, Mapping) else None
            if not _valid_cursor(cursor) or cursor <= last_cursor:
                logger.debug(
                    "dropping payload with cursor %r (last processed %s)",
                    cursor,
                    last_cursor,
                )
                continue
            retained.append(entry)

        logger.info(
            "retained %s of %s payloads after cursor %s",
            len(retained),
            len(raw_entries),
            last_cursor,
        )
        if not retained:
            return FetchResult(received=len(raw_entries))

        retained.sort(key=lambda entry: entry["cursor"])
        duplicates = _duplicate_cursors(retained)
        if duplicates:
            logger.warning(
                "payload log for webhook %s repeats cursor(s) %s; emitting every copy",
                subscription.subscription_id,
                duplicates,
            )
        payloads = [
            RawPayload.from_mapping(entry, table_id=subscription.table_id)
            for entry in retained
        ]
        return FetchResult(
            payloads=payloads,
            new_cursor=max(payload.cursor for payload in payloads),
            received=len(raw_entries),
            duplicate_cursors=duplicates,
        )

    def _read_log(self, subscription: Subscription, last_cursor: int) -> List[Any]:
        path = payloads_path(subscription.base_id, str(subscription.subscription_id))
        entries: List[Any] = []
        request_cursor: Optional[int] = last_cursor if last_cursor > 0 else None
        for _page in range(self._max_pages):
            query = {"cursor": request_cursor} if request_cursor is not None else None
            try:
                response = self._transport.request("GET", path, query=query)
            except TransportError as exc:
                raise FetchError(f"failed to read payloads from {path}: {exc}") from exc

            page = response.get("payloads")
            if not isinstance(page, list):
                raise FetchError(f"payload response from {path} has no payloads list")
            entries.extend(page)

            next_cursor = response.get("cursor")
            if not response.get("mightHaveMore") or not _valid_cursor(next_cursor):
                break
            if request_cursor is not None and next_cursor <= request_cursor:
                break
            request_cursor = next_cursor
        else:
            logger.warning(
                "stopped reading %s after %s pages; remaining payloads follow on next ping",
                path,
                self._max_pages,
            )
        return entries


def _duplicate_cursors(entries: List[Mapping[str, Any]]) -> List[int]:
    seen: set[int] = set()
    duplicates: List[int] = []
    for entry in entries:
        cursor = entry["cursor"]
        if cursor in seen and cursor not in duplicates:
            duplicates.append(cursor)
        seen.add(cursor)
    return duplicates
