"""Core reconciliation engine components for Recon Sync."""

from recon_sync.core.merge import MergeExecutor, MergeOutcome, map_source_record
from recon_sync.core.orchestrator import BatchResult, ClassCounts, SyncOrchestrator
from recon_sync.core.policy import PolicyResolver
from recon_sync.core.problems import ProblemQueue, ProblemRecord
from recon_sync.core.progress import ProgressSession, ProgressTracker, SessionStatus
from recon_sync.core.repair import RelationshipRepair, RepairReport, ValidationReport

__all__ = [
    "MergeExecutor",
    "MergeOutcome",
    "map_source_record",
    "BatchResult",
    "ClassCounts",
    "SyncOrchestrator",
    "PolicyResolver",
    "ProblemQueue",
    "ProblemRecord",
    "ProgressSession",
    "ProgressTracker",
    "SessionStatus",
    "RelationshipRepair",
    "RepairReport",
    "ValidationReport",
]
