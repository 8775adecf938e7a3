"""Recon Sync - reconcile a paginated REST source into a local SQLite store."""

__version__ = "1.0.0"
__author__ = "Recon Sync Contributors"

from recon_sync.config import Settings, SourceLimits

__all__ = ["Settings", "SourceLimits", "__version__"]
