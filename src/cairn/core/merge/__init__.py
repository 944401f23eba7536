"""
Conflict detection and field-level merging.

The detector and engine live in `cairn.core.merge.detector` and
`cairn.core.merge.engine`. Only rules and result models are re-exported
here because the entity registry imports the rule tables.
"""

from cairn.core.merge.models import Discard, MergeResult, Resolution, Side
from cairn.core.merge.rules import FieldRule, RuleTable, Strategy

__all__ = [
    "Discard",
    "FieldRule",
    "MergeResult",
    "Resolution",
    "RuleTable",
    "Side",
    "Strategy",
]
