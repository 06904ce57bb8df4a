"""Per-ping orchestration: validate, fetch, normalize, commit."""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge

from .fetcher import PayloadFetcher
from .models import MalformedPingError, Ping, Subscription
from .normalizer import ChangeNormalizer, events_to_dicts
from .signature import verify_notification_signature
from .store import SubscriptionStore

logger = logging.getLogger(__name__)


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    COMMITTING = "committing"
    ERROR_FALLBACK = "error_fallback"


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one ping: a batch of events, a diagnostic item, or nothing."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    diagnostic: bool = False
    new_cursor: Optional[int] = None
    transitions: Tuple[PipelineState, ...] = ()

    @property
    def state(self) -> PipelineState:
        return self.transitions[-1] if self.transitions else PipelineState.IDLE


# ---------------------------------------------------------------------------
# Metrics


class PipelineMetrics:
    """Prometheus counters for the ping handler plus an in-process snapshot."""

    def __init__(
        self,
        namespace: str = "airtable_change_feed",
        *,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        prefix = f"{namespace}_pipeline"
        self._pings = Counter(
            f"{prefix}_pings_total", "Notifications received", registry=self.registry
        )
        self._ignored = Counter(
            f"{prefix}_ignored_total",
            "Notifications ignored as malformed or unrecognized",
            registry=self.registry,
        )
        self._payloads = Counter(
            f"{prefix}_payloads_total",
            "Payloads retained after cursor filtering",
            registry=self.registry,
        )
        self._events = Counter(
            f"{prefix}_events_total", "Change events emitted", registry=self.registry
        )
        self._fallbacks = Counter(
            f"{prefix}_fallbacks_total",
            "Invocations that fell back to emitting the raw notification",
            registry=self.registry,
        )
        self._commits = Counter(
            f"{prefix}_cursor_commits_total",
            "Cursor advances persisted",
            registry=self.registry,
        )
        self._cursor = Gauge(
            f"{prefix}_cursor", "Last committed payload cursor", registry=self.registry
        )
        self._snapshot: Dict[str, float] = defaultdict(float)

    def inc_pings(self) -> None:
        self._pings.inc()
        self._snapshot["pings_total"] += 1

    def inc_ignored(self) -> None:
        self._ignored.inc()
        self._snapshot["ignored_total"] += 1

    def inc_payloads(self, amount: int) -> None:
        if amount <= 0:
            return
        self._payloads.inc(amount)
        self._snapshot["payloads_total"] += amount

    def inc_events(self, amount: int) -> None:
        if amount <= 0:
            return
        self._events.inc(amount)
        self._snapshot["events_total"] += amount

    def inc_fallbacks(self) -> None:
        self._fallbacks.inc()
        self._snapshot["fallbacks_total"] += 1

    def record_commit(self, cursor: int) -> None:
        self._commits.inc()
        self._cursor.set(cursor)
        self._snapshot["cursor_commits_total"] += 1
        self._snapshot["cursor"] = cursor

    def snapshot(self) -> Dict[str, float]:
        return dict(self._snapshot)


# ---------------------------------------------------------------------------
# Pipeline


class EventPipeline:
    """Turns one inbound notification into a batch of change events.

    The store's per-subscription lock is held from loading the record through
    the cursor commit, so concurrent pings for the same subscription are
    processed one after another. Any failure while fetching or normalizing is
    converted into a single diagnostic item carrying the original body, with the
    cursor left where it was.
    """

    def __init__(
        self,
        *,
        store: SubscriptionStore,
        instance_id: str,
        fetcher: PayloadFetcher,
        metrics: Optional[PipelineMetrics] = None,
        verify_signatures: bool = False,
    ) -> None:
        self._store = store
        self._instance_id = instance_id
        self._fetcher = fetcher
        self._metrics = metrics or PipelineMetrics()
        self._verify_signatures = verify_signatures
        self._state = PipelineState.IDLE

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    def handle(
        self,
        body: Any,
        *,
        raw_body: Optional[bytes] = None,
        signature: Optional[str] = None,
    ) -> PipelineResult:
        trail: List[PipelineState] = []
        self._metrics.inc_pings()
        self._transition(trail, PipelineState.VALIDATING)
        try:
            ping = Ping.from_body(body)
        except MalformedPingError as exc:
            logger.info("ignoring notification: %s", exc)
            return self._ignore(trail)

        try:
            with self._store.lock(self._instance_id):
                subscription = self._store.load(self._instance_id)
                if not self._accepts(ping, subscription, raw_body, signature):
                    return self._ignore(trail)
                assert subscription is not None
                return self._process(trail, subscription)
        except Exception:  # noqa: BLE001 - the trigger must stay live
            logger.exception(
                "failed to process notification for webhook %s; emitting raw body",
                ping.subscription_id,
            )
            return self._fallback(trail, body)

    # ------------------------------------------------------------------ Steps
    def _accepts(
        self,
        ping: Ping,
        subscription: Optional[Subscription],
        raw_body: Optional[bytes],
        signature: Optional[str],
    ) -> bool:
        if subscription is None:
            logger.warning(
                "notification for webhook %s arrived with no stored subscription",
                ping.subscription_id,
            )
            return False
        if (
            ping.base_id != subscription.base_id
            or ping.subscription_id != subscription.subscription_id
        ):
            logger.warning(
                "notification for %s/%s does not match subscription %s/%s",
                ping.base_id,
                ping.subscription_id,
                subscription.base_id,
                subscription.subscription_id,
            )
            return False
        if self._verify_signatures and signature is not None:
            if raw_body is None or not verify_notification_signature(
                subscription.secret, raw_body, signature
            ):
                logger.warning(
                    "notification for webhook %s failed signature verification",
                    ping.subscription_id,
                )
                return False
        return True

    def _process(
        self, trail: List[PipelineState], subscription: Subscription
    ) -> PipelineResult:
        self._transition(trail, PipelineState.FETCHING)
        fetched = self._fetcher.fetch(subscription)
        if not fetched.has_new:
            logger.info(
                "no new payloads for webhook %s after cursor %s",
                subscription.subscription_id,
                subscription.last_cursor,
            )
            return self._finish(trail, PipelineResult())
        self._metrics.inc_payloads(len(fetched.payloads))

        self._transition(trail, PipelineState.NORMALIZING)
        normalizer = ChangeNormalizer.for_subscription(subscription)
        events = normalizer.normalize_all(fetched.payloads)
        items = events_to_dicts(events)

        self._transition(trail, PipelineState.COMMITTING)
        new_cursor = fetched.new_cursor
        assert new_cursor is not None
        updated = self._store.advance_cursor(self._instance_id, new_cursor)
        if updated is None:
            logger.warning(
                "cursor for webhook %s not advanced to %s (already at or beyond it)",
                subscription.subscription_id,
                new_cursor,
            )
        else:
            self._metrics.record_commit(updated.last_cursor)
            logger.info(
                "webhook %s cursor advanced %s -> %s with %s event(s)",
                subscription.subscription_id,
                subscription.last_cursor,
                updated.last_cursor,
                len(items),
            )
        self._metrics.inc_events(len(items))
        return self._finish(trail, PipelineResult(items=items, new_cursor=new_cursor))

    def _ignore(self, trail: List[PipelineState]) -> PipelineResult:
        self._metrics.inc_ignored()
        return self._finish(trail, PipelineResult())

    def _fallback(self, trail: List[PipelineState], body: Any) -> PipelineResult:
        self._transition(trail, PipelineState.ERROR_FALLBACK)
        self._metrics.inc_fallbacks()
        item = dict(body) if isinstance(body, dict) else {"body": body}
        result = PipelineResult(
            items=[item],
            diagnostic=True,
            transitions=tuple(trail),
        )
        self._state = PipelineState.IDLE
        return result

    def _finish(
        self, trail: List[PipelineState], result: PipelineResult
    ) -> PipelineResult:
        self._transition(trail, PipelineState.IDLE)
        return PipelineResult(
            items=result.items,
            diagnostic=result.diagnostic,
            new_cursor=result.new_cursor,
            transitions=tuple(trail),
        )

    def _transition(self, trail: List[PipelineState], state: PipelineState) -> None:
        logger.debug("pipeline %s -> %s", self._state.value, state.value)
        self._state = state
        trail.append(state)


__all__ = [
    "EventPipeline",
    "PipelineMetrics",
    "PipelineResult",
    "PipelineState",
]
