"""Create, verify, refresh, and tear down the Airtable webhook subscription."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from ..airtable.client import Transport, TransportError
from .models import Subscription, SubscriptionConfig
from .store import SubscriptionStore

logger = logging.getLogger(__name__)


class CreationError(RuntimeError):
    """Raised when Airtable rejects a webhook specification."""


class InvalidFilterConfig(ValueError):
    """Raised when the per-source filter options are not a JSON object."""


def webhooks_path(base_id: str) -> str:
    return f"/bases/{base_id}/webhooks"


def parse_source_options(raw: str) -> Optional[Any]:
    """Parse the source options JSON string; blank input means no options.

    Any JSON value is forwarded as-is and Airtable validates its shape.
    """
    if not raw or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidFilterConfig(f"source options are not valid JSON: {exc}") from exc
    return parsed


def build_specification(config: SubscriptionConfig) -> Dict[str, Any]:
    """Return the webhook creation request body for ``config``."""
    filters: Dict[str, Any] = {
        "dataTypes": list(config.data_types) or ["tableData"],
        "recordChangeScope": config.table_id,
        "changeTypes": list(config.event_types),
    }
    includes: Dict[str, Any] = {
        "includePreviousCellValues": config.include_previous_values,
    }
    if config.fields_to_watch:
        filters["watchDataInFieldIds"] = list(config.fields_to_watch)
    if config.fields_to_include:
        includes["includeCellValuesInFieldIds"] = list(config.fields_to_include)
    if config.from_sources:
        filters["fromSources"] = list(config.from_sources)
    try:
        source_options = parse_source_options(config.source_options)
    except InvalidFilterConfig as exc:
        logger.warning("ignoring source options filter: %s", exc)
        source_options = None
    if source_options is not None:
        filters["sourceOptions"] = source_options
    if config.watch_schemas_of_field_ids:
        filters["watchSchemasOfFieldIds"] = list(config.watch_schemas_of_field_ids)
    return {
        "notificationUrl": config.notification_url,
        "specification": {"options": {"filters": filters, "includes": includes}},
    }


class SubscriptionManager:
    """Owns the durable subscription record of one trigger instance."""

    def __init__(
        self,
        transport: Transport,
        store: SubscriptionStore,
        *,
        instance_id: str,
    ) -> None:
        self._transport = transport
        self._store = store
        self._instance_id = instance_id

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def current(self) -> Optional[Subscription]:
        return self._store.load(self._instance_id)

    def exists(self, subscription: Subscription) -> bool:
        """Return whether Airtable still lists ``subscription``.

        Transport failures count as "missing" so activation recreates the webhook.
        """
        if not subscription.subscription_id:
            return False
        try:
            response = self._transport.request(
                "GET", webhooks_path(subscription.base_id)
            )
        except TransportError as exc:
            logger.warning(
                "could not list webhooks for base %s; treating %s as missing: %s",
                subscription.base_id,
                subscription.subscription_id,
                exc,
            )
            return False
        webhooks = response.get("webhooks")
        if not isinstance(webhooks, list):
            logger.warning("webhook listing for base %s has no webhooks list", subscription.base_id)
            return False
        for webhook in webhooks:
            if isinstance(webhook, dict) and webhook.get("id") == subscription.subscription_id:
                return True
        logger.info("webhook %s no longer exists", subscription.subscription_id)
        return False

    def create(self, config: SubscriptionConfig) -> Subscription:
        body = build_specification(config)
        logger.info(
            "creating webhook for base %s table %s", config.base_id, config.table_id
        )
        try:
            response = self._transport.request(
                "POST", webhooks_path(config.base_id), body=body
            )
        except TransportError as exc:
            raise CreationError(f"webhook creation rejected: {exc}") from exc
        webhook_id = response.get("id")
        if not isinstance(webhook_id, str) or not webhook_id:
            raise CreationError("webhook creation response has no id")

        filters = body["specification"]["options"]["filters"]
        subscription = Subscription(
            subscription_id=webhook_id,
            base_id=config.base_id,
            table_id=config.table_id,
            secret=response.get("macSecretBase64"),
            last_cursor=0,
            watched_field_ids=tuple(config.fields_to_watch),
            included_field_ids=tuple(config.fields_to_include),
            event_types=tuple(config.event_types),
            source_filters={
                "dataTypes": filters["dataTypes"],
                "fromSources": filters.get("fromSources", []),
                "sourceOptions": filters.get("sourceOptions"),
                "watchSchemasOfFieldIds": filters.get("watchSchemasOfFieldIds", []),
            },
            include_previous_values=config.include_previous_values,
            expiration_time=response.get("expirationTime"),
        )
        self._store.save(self._instance_id, subscription)
        logger.info("webhook %s created for base %s", webhook_id, config.base_id)
        return subscription

    def delete(self, subscription: Optional[Subscription] = None) -> bool:
        subscription = subscription or self.current()
        if subscription is None or not subscription.subscription_id:
            self._store.clear(self._instance_id)
            return True
        path = f"{webhooks_path(subscription.base_id)}/{subscription.subscription_id}"
        try:
            self._transport.request("DELETE", path)
        except TransportError as exc:
            logger.error(
                "failed to delete webhook %s: %s", subscription.subscription_id, exc
            )
            return False
        self._store.clear(self._instance_id)
        logger.info("webhook %s deleted", subscription.subscription_id)
        return True

    def refresh(self, subscription: Subscription) -> Optional[Subscription]:
        """Extend the webhook's expiry; Airtable expires idle webhooks after 7 days."""
        if not subscription.subscription_id:
            return None
        path = (
            f"{webhooks_path(subscription.base_id)}/"
            f"{subscription.subscription_id}/refresh"
        )
        try:
            response = self._transport.request("POST", path)
        except TransportError as exc:
            logger.warning(
                "failed to refresh webhook %s: %s", subscription.subscription_id, exc
            )
            return None
        with self._store.lock(self._instance_id):
            stored = self._store.load(self._instance_id)
            if stored is None:
                logger.warning(
                    "subscription for instance %s was removed during refresh; not saving",
                    self._instance_id,
                )
                return None
            refreshed = replace(stored, expiration_time=response.get("expirationTime"))
            self._store.save(self._instance_id, refreshed)
        return refreshed

    def ensure(self, config: SubscriptionConfig) -> Optional[Subscription]:
        """Reuse the stored webhook if Airtable still has it, else recreate it."""
        stored = self.current()
        if stored is not None:
            if (
                stored.base_id == config.base_id
                and stored.table_id == config.table_id
                and self.exists(stored)
            ):
                return stored
            self.delete(stored)
            self._store.clear(self._instance_id)
        try:
            return self.create(config)
        except CreationError:
            logger.exception("unable to activate change feed for base %s", config.base_id)
            return None


__all__ = [
    "CreationError",
    "InvalidFilterConfig",
    "SubscriptionManager",
    "build_specification",
    "parse_source_options",
    "webhooks_path",
]
