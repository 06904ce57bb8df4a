"""Runtime configuration helpers for the Airtable change feed service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_API_BASE_URL = "https://api.airtable.com/v0"


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    api_token: str
    api_base_url: str
    request_timeout_seconds: float
    instance_id: str
    base_id: str
    table_id: str
    notification_url: str
    fields_to_watch: Tuple[str, ...]
    fields_to_include: Tuple[str, ...]
    include_previous_values: bool
    event_types: Tuple[str, ...]
    data_types: Tuple[str, ...]
    from_sources: Tuple[str, ...]
    source_options: str
    watch_schemas_of_field_ids: Tuple[str, ...]
    verify_signatures: bool
    fetch_max_pages: int
    store_backend: str
    store_path: Path
    store_fsync: bool
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_schema: str
    write_jsonl: bool = False
    jsonl_path: Path = Path("change_events.jsonl")
    log_level: str = "INFO"


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_store_backend(value: Optional[str]) -> str:
    """Translate STORE_BACKEND env var to a supported value."""
    if value is None:
        return "file"
    normalized = value.strip().lower()
    if normalized in {"memory", "file", "postgres"}:
        return normalized
    return "file"


def _split_csv(value: Optional[str], default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    if value is None:
        return default
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    api_token = os.getenv("AIRTABLE_API_TOKEN", "").strip()
    api_base_url = os.getenv("AIRTABLE_API_BASE_URL", DEFAULT_API_BASE_URL).strip()
    if api_base_url.endswith("/"):
        api_base_url = api_base_url.rstrip("/")
    request_timeout_seconds = float(
        os.getenv("AIRTABLE_REQUEST_TIMEOUT_SECONDS", "30")
    )

    instance_id = os.getenv("TRIGGER_INSTANCE_ID", "default").strip() or "default"
    base_id = os.getenv("TRIGGER_BASE_ID", "").strip()
    table_id = os.getenv("TRIGGER_TABLE_ID", "").strip()
    notification_url = os.getenv("TRIGGER_NOTIFICATION_URL", "").strip()
    fields_to_watch = _split_csv(os.getenv("TRIGGER_FIELDS_TO_WATCH"))
    fields_to_include = _split_csv(os.getenv("TRIGGER_FIELDS_TO_INCLUDE"))
    include_previous_values = _as_bool(
        os.getenv("TRIGGER_INCLUDE_PREVIOUS_VALUES"), True
    )
    event_types = _split_csv(os.getenv("TRIGGER_EVENT_TYPES"), ("update",)) or (
        "update",
    )
    data_types = _split_csv(os.getenv("TRIGGER_DATA_TYPES"), ("tableData",)) or (
        "tableData",
    )
    from_sources = _split_csv(os.getenv("TRIGGER_FROM_SOURCES"))
    source_options = os.getenv("TRIGGER_SOURCE_OPTIONS", "").strip()
    watch_schemas_of_field_ids = _split_csv(
        os.getenv("TRIGGER_WATCH_SCHEMAS_OF_FIELD_IDS")
    )
    verify_signatures = _as_bool(os.getenv("TRIGGER_VERIFY_SIGNATURES"), False)
    fetch_max_pages = max(1, int(os.getenv("FETCH_MAX_PAGES", "10")))

    store_backend = _coerce_store_backend(os.getenv("STORE_BACKEND"))
    store_path = Path(os.getenv("STORE_PATH", "subscriptions.json"))
    store_fsync = _as_bool(os.getenv("STORE_FSYNC"), False)
    db_host = os.getenv("PGHOST", "localhost")
    db_port = int(os.getenv("PGPORT", "5432"))
    db_name = os.getenv("PGDATABASE", "airtable_feed")
    db_user = os.getenv("PGUSER", "postgres")
    db_password = os.getenv("PGPASSWORD", "")
    db_schema = os.getenv("PGSCHEMA", "airtable_feed")

    write_jsonl = _as_bool(os.getenv("WRITE_JSONL"), False)
    jsonl_path = Path(os.getenv("JSONL_PATH", "change_events.jsonl"))
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return Settings(
        api_token=api_token,
        api_base_url=api_base_url,
        request_timeout_seconds=request_timeout_seconds,
        instance_id=instance_id,
        base_id=base_id,
        table_id=table_id,
        notification_url=notification_url,
        fields_to_watch=fields_to_watch,
        fields_to_include=fields_to_include,
        include_previous_values=include_previous_values,
        event_types=event_types,
        data_types=data_types,
        from_sources=from_sources,
        source_options=source_options,
        watch_schemas_of_field_ids=watch_schemas_of_field_ids,
        verify_signatures=verify_signatures,
        fetch_max_pages=fetch_max_pages,
        store_backend=store_backend,
        store_path=store_path,
        store_fsync=store_fsync,
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        db_schema=db_schema,
        write_jsonl=write_jsonl,
        jsonl_path=jsonl_path,
        log_level=log_level,
    )
