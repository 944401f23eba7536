"""
Local entity persistence with atomic, crash-safe writes.
"""

from cairn.core.store.atomic import atomic_write_bytes, atomic_write_text, sweep_temp_files
from cairn.core.store.entity_store import EntityStore, ListResult

__all__ = [
    "EntityStore",
    "ListResult",
    "atomic_write_bytes",
    "atomic_write_text",
    "sweep_temp_files",
]
