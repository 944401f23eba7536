"""
Loss-preserving archive for merge losers and orphaned references.
"""

from cairn.core.attic.models import (
    ENTITY_FIELD,
    AtticEntry,
    AtticFilter,
    AtticReason,
    OrphanEntry,
    OrphanReason,
)
from cairn.core.attic.store import AtticStore
from cairn.core.attic.sweep import BrokenReference, IntegritySweep, SweepReport

__all__ = [
    "ENTITY_FIELD",
    "AtticEntry",
    "AtticFilter",
    "AtticReason",
    "AtticStore",
    "BrokenReference",
    "IntegritySweep",
    "OrphanEntry",
    "OrphanReason",
    "SweepReport",
]
