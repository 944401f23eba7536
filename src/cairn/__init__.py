"""
cairn - convergent multi-writer entity store over git.

Independent, possibly offline writers create and mutate small structured
records; a sync engine reconciles divergent copies through a dedicated git
branch without ever silently discarding data.
"""

__version__ = "0.1.0"

# Re-export core models for convenience
from cairn.core.config.models import CairnConfig
from cairn.core.entities.models import AgentRecord, Message, WorkItem

__all__ = ["AgentRecord", "CairnConfig", "Message", "WorkItem", "__version__"]
