"""Webhook subscription, payload retrieval, and change event normalization."""

from .fetcher import FetchError, FetchResult, PayloadFetcher
from .lifecycle import (
    CreationError,
    InvalidFilterConfig,
    SubscriptionManager,
    build_specification,
)
from .models import (
    ChangeEvent,
    EventStamp,
    FieldSchemaChange,
    MalformedPingError,
    Ping,
    RawPayload,
    RecordChange,
    Subscription,
    SubscriptionConfig,
    TableMetadataChange,
    UnrecognizedPayloadError,
)
from .normalizer import ChangeNormalizer, events_to_dicts
from .pipeline import EventPipeline, PipelineMetrics, PipelineResult, PipelineState
from .signature import (
    SIGNATURE_HEADER,
    compute_notification_signature,
    verify_notification_signature,
)
from .store import (
    FileSubscriptionStore,
    InMemorySubscriptionStore,
    PostgresSubscriptionStore,
    SubscriptionStore,
    build_store,
)

__all__ = [
    "ChangeEvent",
    "ChangeNormalizer",
    "CreationError",
    "EventPipeline",
    "EventStamp",
    "FetchError",
    "FetchResult",
    "FieldSchemaChange",
    "FileSubscriptionStore",
    "InMemorySubscriptionStore",
    "InvalidFilterConfig",
    "MalformedPingError",
    "PayloadFetcher",
    "Ping",
    "PipelineMetrics",
    "PipelineResult",
    "PipelineState",
    "PostgresSubscriptionStore",
    "RawPayload",
    "RecordChange",
    "SIGNATURE_HEADER",
    "Subscription",
    "SubscriptionConfig",
    "SubscriptionManager",
    "SubscriptionStore",
    "TableMetadataChange",
    "UnrecognizedPayloadError",
    "build_specification",
    "build_store",
    "compute_notification_signature",
    "events_to_dicts",
    "verify_notification_signature",
]
