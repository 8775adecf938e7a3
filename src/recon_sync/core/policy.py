"""
Sync Policy Resolver.

Decides, for one record, which way data should flow:
- PullOnlyIfAbsent: insert once, never overwrite
- LatestWinsBidirectional: newer side wins, equal timestamps do nothing
- ForcedCascade: unconditional when a parent package is syncing
"""

from __future__ import annotations

import logging
from datetime import datetime

from recon_sync.models import SyncAction, SyncPolicy, Watermark
from recon_sync.schema import EntityClass

logger = logging.getLogger(__name__)


def resolve(
    policy: SyncPolicy,
    local: Watermark | None,
    source_modified_at: datetime | None,
    cascade: bool = False,
) -> SyncAction:
    """
    Resolve the action for one record.

    Args:
        policy: Policy of the record's entity class
        local: Watermark of the local copy (None when absent)
        source_modified_at: Modification time asserted by the source
        cascade: True when invoked on behalf of a syncing parent

    Returns:
        The SyncAction to carry out
    """
    if policy == SyncPolicy.PULL_ONLY_IF_ABSENT:
        # Never overwritten once present, not even by a cascade.
        return SyncAction.INSERT if local is None else SyncAction.SKIP

    if cascade:
        return SyncAction.FORCE_SYNC

    if local is None:
        return SyncAction.INSERT

    local_edited = local.last_edited_at
    if source_modified_at is None or local_edited is None:
        # Without both timestamps there is no ordering; pull only when the
        # local copy has never been stamped at all.
        if local_edited is None and source_modified_at is not None:
            return SyncAction.PULL_UPDATE
        return SyncAction.SKIP

    if source_modified_at > local_edited:
        return SyncAction.PULL_UPDATE
    if local_edited > source_modified_at:
        if policy == SyncPolicy.FORCED_CASCADE:
            # Cascade-only classes have no write-back path of their own.
            return SyncAction.SKIP
        return SyncAction.PUSH_UPDATE
    return SyncAction.SKIP


class PolicyResolver:
    """
    Resolver bound to the entity class table and the push settings.

    PushUpdate is only returned for classes allowed to write back; for
    every other class a locally newer record resolves to Skip and the
    decision is logged.

    Example:
        resolver = PolicyResolver(push_classes={"agent", "user", "payment"})
        action = resolver.resolve(AGENT, store.get_watermark(AGENT, key), modified)
    """

    def __init__(
        self,
        push_classes: set[str] | frozenset[str] | None = None,
        enable_push: bool = True,
    ) -> None:
        self.push_classes = frozenset(push_classes or ())
        self.enable_push = enable_push

    def can_push(self, entity: EntityClass) -> bool:
        return (
            self.enable_push
            and entity.can_push
            and entity.name in self.push_classes
        )

    def resolve(
        self,
        entity: EntityClass,
        local: Watermark | None,
        source_modified_at: datetime | None,
        cascade: bool = False,
    ) -> SyncAction:
        action = resolve(entity.policy, local, source_modified_at, cascade)
        if action == SyncAction.PUSH_UPDATE and not self.can_push(entity):
            logger.debug(
                "%s is newer locally but push-back is disabled for this class",
                entity.name,
            )
            return SyncAction.SKIP
        return action
