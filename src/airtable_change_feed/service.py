"""Service runtime and command line entrypoint for the change feed trigger."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .airtable import AirtableClient, AirtableClientSettings, Transport
from .config import Settings, load_settings
from .feed import (
    SIGNATURE_HEADER,
    EventPipeline,
    PayloadFetcher,
    PipelineMetrics,
    PipelineResult,
    Subscription,
    SubscriptionConfig,
    SubscriptionManager,
    SubscriptionStore,
    build_store,
)

logger = logging.getLogger(__name__)


class TriggerService:
    """Wires the Airtable transport, store, lifecycle manager and pipeline."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[Transport] = None,
        store: Optional[SubscriptionStore] = None,
        metrics: Optional[PipelineMetrics] = None,
    ) -> None:
        self.settings = settings
        self._client: Optional[AirtableClient] = None
        if transport is None:
            self._client = AirtableClient(
                AirtableClientSettings(
                    api_token=settings.api_token,
                    base_url=settings.api_base_url,
                    request_timeout_seconds=settings.request_timeout_seconds,
                )
            )
            transport = self._client
        self.transport = transport
        self.store = store if store is not None else build_store(settings)
        self.manager = SubscriptionManager(
            transport, self.store, instance_id=settings.instance_id
        )
        self.fetcher = PayloadFetcher(transport, max_pages=settings.fetch_max_pages)
        self.pipeline = EventPipeline(
            store=self.store,
            instance_id=settings.instance_id,
            fetcher=self.fetcher,
            metrics=metrics,
            verify_signatures=settings.verify_signatures,
        )

    def subscription_config(self) -> SubscriptionConfig:
        s = self.settings
        return SubscriptionConfig(
            base_id=s.base_id,
            table_id=s.table_id,
            notification_url=s.notification_url,
            fields_to_watch=s.fields_to_watch,
            fields_to_include=s.fields_to_include,
            include_previous_values=s.include_previous_values,
            event_types=s.event_types,
            data_types=s.data_types,
            from_sources=s.from_sources,
            source_options=s.source_options,
            watch_schemas_of_field_ids=s.watch_schemas_of_field_ids,
        )

    # Lifecycle -----------------------------------------------------------
    def activate(self) -> Optional[Subscription]:
        missing = [
            name
            for name, value in (
                ("TRIGGER_BASE_ID", self.settings.base_id),
                ("TRIGGER_TABLE_ID", self.settings.table_id),
                ("TRIGGER_NOTIFICATION_URL", self.settings.notification_url),
            )
            if not value
        ]
        if missing:
            logger.error("cannot activate change feed; missing %s", ", ".join(missing))
            return None
        return self.manager.ensure(self.subscription_config())

    def deactivate(self) -> bool:
        return self.manager.delete()

    def refresh(self) -> Optional[Subscription]:
        current = self.manager.current()
        if current is None:
            logger.warning(
                "no stored subscription for instance %s to refresh",
                self.settings.instance_id,
            )
            return None
        return self.manager.refresh(current)

    def status(self) -> Dict[str, Any]:
        current = self.manager.current()
        record: Optional[Dict[str, Any]] = None
        if current is not None:
            record = current.to_record()
            # never echo the signing secret
            record["secret"] = "***" if current.secret else None
        return {
            "instanceId": self.settings.instance_id,
            "subscription": record,
            "exists": self.manager.exists(current) if current is not None else False,
            "metrics": self.pipeline.metrics.snapshot(),
        }

    # Hot path ------------------------------------------------------------
    def handle_ping(
        self,
        body: Any,
        *,
        raw_body: Optional[bytes] = None,
        signature: Optional[str] = None,
    ) -> PipelineResult:
        result = self.pipeline.handle(body, raw_body=raw_body, signature=signature)
        if result.items:
            self._write_jsonl(result)
        return result

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def __enter__(self) -> "TriggerService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _write_jsonl(self, result: PipelineResult) -> None:
        if not self.settings.write_jsonl:
            return
        path = Path(self.settings.jsonl_path)
        lines: List[Dict[str, Any]] = (
            [{"diagnostic": True, "ping": result.items[0]}]
            if result.diagnostic
            else result.items
        )
        try:
            with path.open("a", encoding="utf-8") as handle:
                for line in lines:
                    handle.write(json.dumps(line, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.error("failed to write change events JSONL to %s: %s", path, exc)


# ---------------------------------------------------------------------------
# Command line


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Airtable change feed trigger")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "activate", help="Create the webhook, or reuse the stored one if it still exists"
    )
    subparsers.add_parser(
        "deactivate", help="Delete the webhook and clear the stored subscription"
    )
    subparsers.add_parser("status", help="Show the stored subscription as JSON")
    subparsers.add_parser("refresh", help="Extend the webhook's expiration time")

    ping_parser = subparsers.add_parser(
        "handle-ping", help="Process one notification body and print the batch"
    )
    ping_parser.add_argument(
        "source",
        nargs="?",
        default="-",
        help="File containing the notification JSON ('-' reads stdin)",
    )
    ping_parser.add_argument(
        "--signature",
        default=None,
        help=f"Value of the {SIGNATURE_HEADER} header, if the host received one",
    )
    return parser


def _read_source(source: str) -> bytes:
    if source == "-":
        return sys.stdin.buffer.read()
    return Path(source).read_bytes()


def _decode_body(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("notification body is not valid JSON: %s", exc)
        return None


def main(argv: Optional[List[str]] = None) -> int:
    """Entrypoint used by both python -m and the console script hook."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )

    try:
        service = TriggerService(settings)
    except ValueError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2

    with service:
        if args.command == "activate":
            subscription = service.activate()
            if subscription is None:
                return 1
            print(f"Active webhook {subscription.subscription_id}")
            return 0

        if args.command == "deactivate":
            if not service.deactivate():
                return 1
            print("Webhook deactivated")
            return 0

        if args.command == "status":
            print(json.dumps(service.status(), indent=2, sort_keys=True))
            return 0

        if args.command == "refresh":
            refreshed = service.refresh()
            if refreshed is None:
                return 1
            print(
                f"Webhook {refreshed.subscription_id} expires at "
                f"{refreshed.expiration_time or '<unknown>'}"
            )
            return 0

        if args.command == "handle-ping":
            raw = _read_source(args.source)
            result = service.handle_ping(
                _decode_body(raw), raw_body=raw, signature=args.signature
            )
            print(
                json.dumps(
                    {
                        "diagnostic": result.diagnostic,
                        "items": result.items,
                        "newCursor": result.new_cursor,
                    },
                    ensure_ascii=False,
                )
            )
            return 0

    parser.error("Unknown command")
    return 1


__all__ = ["TriggerService", "main"]
