"""Storage collaborators: flow definitions and instance state."""

from __future__ import annotations

from approval_workflow.store.definition_store import (
    DefinitionRepository,
    InMemoryDefinitionStore,
    JsonDefinitionStore,
)
from approval_workflow.store.instance_store import (
    InMemoryInstanceStore,
    InstanceStore,
    JsonInstanceStore,
)

__all__ = [
    "DefinitionRepository",
    "InMemoryDefinitionStore",
    "InMemoryInstanceStore",
    "InstanceStore",
    "JsonDefinitionStore",
    "JsonInstanceStore",
]
