"""Normalized change feed for Airtable tables driven by webhook pings."""

from .feed import ChangeNormalizer, EventPipeline, SubscriptionManager


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    raise SystemExit(_service_main())


__all__ = ["main", "ChangeNormalizer", "EventPipeline", "SubscriptionManager"]
