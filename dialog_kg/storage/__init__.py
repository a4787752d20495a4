"""
Storage Layer

Modules:
    base: PropositionStore, EntityStore and AnalysisStateStore interfaces
    memory: In-process stores (tests, single-instance deployments)
    state: JSON-file analysis cursor store guarded by a file lock
    lancedb/: LanceDB-backed proposition and entity stores

The LanceDB stores are imported lazily (`dialog_kg.storage.lancedb`) so the
lancedb/pyarrow dependencies stay optional.
"""

from dialog_kg.storage.base import AnalysisStateStore, EntityStore, PropositionStore
from dialog_kg.storage.memory import (
    InMemoryAnalysisStateStore,
    InMemoryEntityStore,
    InMemoryPropositionStore,
)
from dialog_kg.storage.state import JsonAnalysisStateStore

__all__ = [
    "AnalysisStateStore",
    "EntityStore",
    "PropositionStore",
    "InMemoryAnalysisStateStore",
    "InMemoryEntityStore",
    "InMemoryPropositionStore",
    "JsonAnalysisStateStore",
]
