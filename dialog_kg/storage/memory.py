"""
In-Memory Stores

Single-process stores for tests and single-instance deployments. Vector
search is brute-force cosine similarity via scipy's cdist.

Note: InMemoryAnalysisStateStore loses the "no double-analysis" guarantee
across restarts. Use JsonAnalysisStateStore when that matters.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.spatial.distance import cdist

from dialog_kg.providers.base import EmbeddingProvider
from dialog_kg.storage.base import (
    AnalysisStateStore,
    EntityStore,
    PropositionStore,
    check_persistable,
)
from dialog_kg.types import AnalysisState, NamedEntity, Proposition, PropositionStatus

logger = logging.getLogger(__name__)


def cosine_scores(query: list[float], vectors: list[list[float]]) -> np.ndarray:
    """Cosine similarity of `query` against each row of `vectors`."""
    if not vectors:
        return np.array([])
    q = np.array([query], dtype=np.float64)
    arr = np.array(vectors, dtype=np.float64)
    # cdist returns distance (1 - similarity); zero vectors yield nan
    scores = 1 - cdist(q, arr, metric="cosine")[0]
    return np.nan_to_num(scores, nan=0.0)


def _rank(
    items: list,
    vectors: list[list[float]],
    query_vector: list[float],
    top_k: int,
    threshold: float,
) -> list[tuple]:
    scores = cosine_scores(query_vector, vectors)
    order = np.argsort(-scores, kind="stable")
    results = []
    for i in order[:top_k]:
        score = float(scores[i])
        if score >= threshold:
            results.append((items[i], score))
    return results


class InMemoryPropositionStore(PropositionStore):
    """Dict-backed proposition store."""

    def __init__(self, embedding_provider: EmbeddingProvider | None = None) -> None:
        self.embeddings = embedding_provider
        self._records: dict[str, Proposition] = {}

    async def _embed(self, text: str) -> list[float] | None:
        if self.embeddings is None:
            return None
        try:
            return await self.embeddings.embed_single(text)
        except Exception as e:
            logger.warning(f"Embedding failed for proposition text '{text[:60]}': {e}")
            return None

    async def save(self, proposition: Proposition) -> Proposition:
        check_persistable(proposition)
        stored = proposition.model_copy(deep=True)
        previous = self._records.get(stored.id)
        if stored.embedding is None or (previous is not None and previous.text != stored.text):
            stored.embedding = await self._embed(stored.text)
        self._records[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, proposition_id: str) -> Proposition | None:
        record = self._records.get(proposition_id)
        return record.model_copy(deep=True) if record else None

    async def find_all(self, context_id: str | None = None) -> list[Proposition]:
        return [
            p.model_copy(deep=True)
            for p in self._records.values()
            if context_id is None or p.context_id == context_id
        ]

    async def find_similar(
        self,
        query: str,
        top_k: int = 10,
        threshold: float = 0.0,
        *,
        context_id: str | None = None,
        status: PropositionStatus | None = None,
    ) -> list[tuple[Proposition, float]]:
        query_vector = await self._embed(query)
        if query_vector is None:
            return []
        pool = [
            p for p in self._records.values()
            if p.embedding is not None
            and (context_id is None or p.context_id == context_id)
            and (status is None or p.status == status)
        ]
        ranked = _rank(pool, [p.embedding for p in pool], query_vector, top_k, threshold)
        return [(p.model_copy(deep=True), score) for p, score in ranked]

    async def delete(self, proposition_ids: list[str]) -> int:
        removed = 0
        for proposition_id in proposition_ids:
            if self._records.pop(proposition_id, None) is not None:
                removed += 1
        return removed

    async def clear(self, context_id: str | None = None) -> int:
        if context_id is None:
            removed = len(self._records)
            self._records.clear()
            return removed
        ids = [p.id for p in self._records.values() if p.context_id == context_id]
        return await self.delete(ids)


class InMemoryEntityStore(EntityStore):
    """Dict-backed entity store."""

    def __init__(self, embedding_provider: EmbeddingProvider | None = None) -> None:
        self.embeddings = embedding_provider
        self._records: dict[str, NamedEntity] = {}

    def _typed(self, entity_type: str | None) -> list[NamedEntity]:
        return [
            e for e in self._records.values()
            if entity_type is None or e.has_type(entity_type)
        ]

    async def save_all(self, entities: list[NamedEntity]) -> list[NamedEntity]:
        missing = [e for e in entities if e.embedding is None]
        vectors: list[list[float]] = []
        if missing and self.embeddings is not None:
            try:
                vectors = await self.embeddings.embed([e.embedding_text() for e in missing])
            except Exception as e:
                logger.warning(f"Embedding failed for {len(missing)} entities: {e}")
        by_id = {e.id: v for e, v in zip(missing, vectors)}

        stored = []
        for entity in entities:
            record = entity.model_copy(deep=True)
            if record.id in by_id:
                record.embedding = by_id[record.id]
            self._records[record.id] = record
            stored.append(record.model_copy(deep=True))
        return stored

    async def get(self, entity_id: str) -> NamedEntity | None:
        record = self._records.get(entity_id)
        return record.model_copy(deep=True) if record else None

    async def find_all(self, entity_type: str | None = None) -> list[NamedEntity]:
        return [e.model_copy(deep=True) for e in self._typed(entity_type)]

    async def find_similar(
        self,
        text: str,
        top_k: int = 10,
        threshold: float = 0.0,
        *,
        entity_type: str | None = None,
    ) -> list[tuple[NamedEntity, float]]:
        if self.embeddings is None:
            return []
        pool = [e for e in self._typed(entity_type) if e.embedding is not None]
        if not pool:
            return []
        query_vector = await self.embeddings.embed_single(text)
        ranked = _rank(pool, [e.embedding for e in pool], query_vector, top_k, threshold)
        return [(e.model_copy(deep=True), score) for e, score in ranked]

    async def delete(self, entity_ids: list[str]) -> int:
        removed = 0
        for entity_id in entity_ids:
            if self._records.pop(entity_id, None) is not None:
                removed += 1
        return removed

    async def clear(self) -> int:
        removed = len(self._records)
        self._records.clear()
        return removed


class InMemoryAnalysisStateStore(AnalysisStateStore):
    def __init__(self) -> None:
        self._states: dict[str, AnalysisState] = {}

    async def load(self, context_id: str) -> AnalysisState | None:
        return self._states.get(context_id)

    async def save(self, state: AnalysisState) -> None:
        self._states[state.context_id] = state

    async def clear(self, context_id: str | None = None) -> None:
        if context_id is None:
            self._states.clear()
        else:
            self._states.pop(context_id, None)
