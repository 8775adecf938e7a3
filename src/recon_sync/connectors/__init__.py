"""Connectors for the local store and the source REST interface."""

from recon_sync.connectors.local_store import LocalStore, StoreError
from recon_sync.connectors.source_client import (
    Constraint,
    SourceClient,
    SourceError,
    SourceNotFoundError,
    SourceRateLimitError,
    SourceTimeoutError,
    create_source_client,
)

__all__ = [
    "LocalStore",
    "StoreError",
    "Constraint",
    "SourceClient",
    "SourceError",
    "SourceNotFoundError",
    "SourceRateLimitError",
    "SourceTimeoutError",
    "create_source_client",
]
