"""
Conflict detection by content hash.

Two copies of an entity conflict exactly when their content hashes differ.
Timestamps and version counters never decide whether a merge is needed;
they only decide who wins once one is.
"""

from __future__ import annotations

import logging

from cairn.core.entities.canonical import content_hash
from cairn.core.entities.models import BaseEntity
from cairn.core.merge.models import Resolution

logger = logging.getLogger(__name__)


def needs_merge(local: BaseEntity, remote: BaseEntity) -> bool:
    """True when the two copies hold different content."""
    return content_hash(local) != content_hash(remote)


def classify(
    local: BaseEntity | None,
    remote: BaseEntity | None,
    base: BaseEntity | None = None,
) -> Resolution:
    """
    Decide what to do with one entity during sync.

    Args:
        local: Local copy (None if absent locally)
        remote: Copy on the remote sync branch (None if absent there)
        base: Copy at the common ancestor of both branch tips, if any

    Returns:
        The Resolution for this entity. With a base, a side that has not
        changed since the ancestor simply takes the other side, which is
        what keeps replicas from re-merging each other's merge results.
    """
    if local is None and remote is None:
        return Resolution.NOOP
    if remote is None:
        return Resolution.OUTBOUND
    if local is None:
        return Resolution.INBOUND

    local_hash = content_hash(local)
    remote_hash = content_hash(remote)
    if local_hash == remote_hash:
        return Resolution.IN_SYNC

    if base is not None:
        base_hash = content_hash(base)
        if local_hash == base_hash:
            return Resolution.FAST_FORWARD
        if remote_hash == base_hash:
            return Resolution.KEEP_LOCAL

    logger.debug("%s diverged (local %s, remote %s)", local.id, local_hash[:8], remote_hash[:8])
    return Resolution.MERGE
