"""Airtable REST transport utilities."""

from .client import AirtableClient, AirtableClientSettings, Transport, TransportError

__all__ = [
    "AirtableClient",
    "AirtableClientSettings",
    "Transport",
    "TransportError",
]
