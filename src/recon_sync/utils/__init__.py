"""Utility modules for Recon Sync."""

from recon_sync.utils.logger import ActivityLog, get_logger, setup_logging
from recon_sync.utils.display import ProgressDisplay

__all__ = ["ActivityLog", "setup_logging", "get_logger", "ProgressDisplay"]
