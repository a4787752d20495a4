"""
Abstract Storage Interfaces

Defines the contracts for the three stores the pipeline depends on:

    PropositionStore    - propositions with owned mentions, vector search over text
    EntityStore         - named entities, name lookups and vector search
    AnalysisStateStore  - per-context window cursor

Lifecycle:
    store = LanceDBPropositionStore(path, embeddings)
    await store.initialize()
    # ... operations ...
    await store.close()

Or using context manager:
    async with LanceDBPropositionStore(path, embeddings) as store:
        await store.save(proposition)
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from dialog_kg.errors import StoreFailure
from dialog_kg.utils.text import name_similarity, normalize_name

if TYPE_CHECKING:
    from dialog_kg.types import AnalysisState, NamedEntity, Proposition, PropositionStatus


def check_persistable(proposition: "Proposition") -> None:
    """Reject propositions that would violate stored-record invariants."""
    if not proposition.grounding:
        raise StoreFailure(f"Proposition {proposition.id} has empty grounding")
    if not proposition.text.strip():
        raise StoreFailure(f"Proposition {proposition.id} has empty text")


class _Lifecycle(ABC):
    async def initialize(self) -> None:
        """Create directories/tables. Default: nothing to do."""

    async def close(self) -> None:
        """Release resources. Default: nothing to do."""

    async def __aenter__(self) -> Any:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


class PropositionStore(_Lifecycle):
    """
    Persists propositions and their entity mentions.

    Implementations embed the proposition text on save when no embedding is
    present. An embedding failure is logged and the record is saved without
    a vector; it then simply never shows up in find_similar().
    """

    @abstractmethod
    async def save(self, proposition: "Proposition") -> "Proposition":
        """Insert or replace a proposition by id. Returns the stored record."""
        ...

    async def save_all(self, propositions: list["Proposition"]) -> list["Proposition"]:
        """Insert or replace several propositions."""
        return [await self.save(p) for p in propositions]

    @abstractmethod
    async def get(self, proposition_id: str) -> "Proposition | None":
        ...

    @abstractmethod
    async def find_all(self, context_id: str | None = None) -> list["Proposition"]:
        """All propositions, optionally restricted to one context."""
        ...

    async def find_by_context(self, context_id: str) -> list["Proposition"]:
        return await self.find_all(context_id)

    async def find_by_status(
        self,
        status: "PropositionStatus",
        context_id: str | None = None,
    ) -> list["Proposition"]:
        return [p for p in await self.find_all(context_id) if p.status == status]

    async def find_by_grounding(self, chunk_id: str) -> list["Proposition"]:
        """Propositions supported by the given source chunk."""
        return [p for p in await self.find_all() if chunk_id in p.grounding]

    async def find_by_entity(
        self,
        entity_id: str,
        context_id: str | None = None,
    ) -> list["Proposition"]:
        """Propositions with a mention resolved to `entity_id`."""
        return [
            p for p in await self.find_all(context_id)
            if entity_id in p.resolved_entity_ids()
        ]

    @abstractmethod
    async def find_similar(
        self,
        query: str,
        top_k: int = 10,
        threshold: float = 0.0,
        *,
        context_id: str | None = None,
        status: "PropositionStatus | None" = None,
    ) -> list[tuple["Proposition", float]]:
        """
        Vector search over proposition text.

        Returns (proposition, cosine similarity) pairs with similarity >=
        threshold, best first. Returns [] when the query cannot be embedded.
        """
        ...

    async def count(self, context_id: str | None = None) -> int:
        return len(await self.find_all(context_id))

    @abstractmethod
    async def delete(self, proposition_ids: list[str]) -> int:
        """Hard-delete by id. Returns number removed."""
        ...

    @abstractmethod
    async def clear(self, context_id: str | None = None) -> int:
        """Administrative clear: one context, or everything when None."""
        ...


class EntityStore(_Lifecycle):
    """Persists named entities with embeddings."""

    @abstractmethod
    async def save_all(self, entities: list["NamedEntity"]) -> list["NamedEntity"]:
        """Insert or replace entities by id, embedding those without a vector."""
        ...

    async def save(self, entity: "NamedEntity") -> "NamedEntity":
        return (await self.save_all([entity]))[0]

    @abstractmethod
    async def get(self, entity_id: str) -> "NamedEntity | None":
        ...

    async def get_many(self, entity_ids: list[str]) -> list["NamedEntity"]:
        found = []
        for entity_id in entity_ids:
            entity = await self.get(entity_id)
            if entity is not None:
                found.append(entity)
        return found

    @abstractmethod
    async def find_all(self, entity_type: str | None = None) -> list["NamedEntity"]:
        """All entities, optionally only those carrying `entity_type`."""
        ...

    async def find_by_name(
        self,
        name: str,
        entity_type: str | None = None,
    ) -> list["NamedEntity"]:
        """Exact (case-insensitive) match on name or alias."""
        wanted = name.strip().lower()
        return [
            e for e in await self.find_all(entity_type)
            if any(n.strip().lower() == wanted for n in e.all_names())
        ]

    async def find_by_normalized_name(
        self,
        name: str,
        entity_type: str | None = None,
    ) -> list["NamedEntity"]:
        """Match after case/diacritic/punctuation normalization."""
        wanted = normalize_name(name)
        if not wanted:
            return []
        return [
            e for e in await self.find_all(entity_type)
            if any(normalize_name(n) == wanted for n in e.all_names())
        ]

    async def find_by_fuzzy_name(
        self,
        name: str,
        threshold: float,
        *,
        entity_type: str | None = None,
        limit: int = 10,
    ) -> list[tuple["NamedEntity", float]]:
        """Fuzzy name matches scoring >= threshold (0-100 scale), best first."""
        scored = []
        for entity in await self.find_all(entity_type):
            score = max(name_similarity(name, n) for n in entity.all_names())
            if score >= threshold:
                scored.append((entity, score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    @abstractmethod
    async def find_similar(
        self,
        text: str,
        top_k: int = 10,
        threshold: float = 0.0,
        *,
        entity_type: str | None = None,
    ) -> list[tuple["NamedEntity", float]]:
        """Vector search; (entity, cosine similarity) pairs, best first."""
        ...

    async def count(self) -> int:
        return len(await self.find_all())

    @abstractmethod
    async def delete(self, entity_ids: list[str]) -> int:
        ...

    @abstractmethod
    async def clear(self) -> int:
        ...


class AnalysisStateStore(ABC):
    """Persists the per-context analysis cursor between runs."""

    @abstractmethod
    async def load(self, context_id: str) -> "AnalysisState | None":
        ...

    @abstractmethod
    async def save(self, state: "AnalysisState") -> None:
        ...

    @abstractmethod
    async def clear(self, context_id: str | None = None) -> None:
        ...
