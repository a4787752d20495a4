"""
Resolution Stages

Each escalation level is a strategy with one method:

    attempt(mention, candidates, context) -> StageOutcome

RESOLVED and UNRESOLVED are terminal. NEED_MORE passes the (possibly
extended) candidate list on to the next stage. Stages 1-3 never call an LLM.

    1. ExactMatchStage       id lookup, then exact name/alias
    2. HeuristicMatchStage   normalized name, then rapidfuzz scoring
    3. EmbeddingMatchStage   vector search with auto-accept margin
    4. LlmVerificationStage  yes/no when exactly one candidate survives
    5. LlmBakeoffStage       pick one (or none) of several candidates
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from dialog_kg.ingestion.resolution.judge import PromptMode, ResolutionJudge
from dialog_kg.storage.base import EntityStore
from dialog_kg.types import EntityMention, KnownEntity, NamedEntity, ResolutionLevel

logger = logging.getLogger(__name__)

Candidates = list[tuple[NamedEntity, float]]


class OutcomeKind(str, Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    NEED_MORE = "need_more"


@dataclass
class StageOutcome:
    kind: OutcomeKind
    entity_id: str | None = None
    candidates: Candidates = field(default_factory=list)
    llm_calls: int = 0

    @classmethod
    def resolved(cls, entity_id: str, llm_calls: int = 0) -> "StageOutcome":
        return cls(OutcomeKind.RESOLVED, entity_id=entity_id, llm_calls=llm_calls)

    @classmethod
    def unresolved(cls, llm_calls: int = 0) -> "StageOutcome":
        return cls(OutcomeKind.UNRESOLVED, llm_calls=llm_calls)

    @classmethod
    def need_more(cls, candidates: Candidates | None = None) -> "StageOutcome":
        return cls(OutcomeKind.NEED_MORE, candidates=candidates or [])


@dataclass
class ResolutionContext:
    """What a stage may know beyond the mention itself."""

    context_id: str = "default"
    known_entities: list[KnownEntity] = field(default_factory=list)
    proposition_text: str | None = None

    def known_match(self, span: str) -> KnownEntity | None:
        return next((k for k in self.known_entities if k.matches(span)), None)


def merge_candidates(existing: Candidates, found: Candidates) -> Candidates:
    """Union by entity id keeping the best score, best first."""
    best: dict[str, tuple[NamedEntity, float]] = {}
    for entity, score in [*existing, *found]:
        current = best.get(entity.id)
        if current is None or score > current[1]:
            best[entity.id] = (entity, score)
    return sorted(best.values(), key=lambda pair: pair[1], reverse=True)


class ResolutionStage(ABC):
    """One level of the escalation chain."""

    level: ResolutionLevel

    @abstractmethod
    async def attempt(
        self,
        mention: EntityMention,
        candidates: Candidates,
        context: ResolutionContext,
    ) -> StageOutcome:
        ...


class ExactMatchStage(ResolutionStage):
    """Direct id lookup, then exact (case-insensitive) name or alias."""

    level = ResolutionLevel.EXACT_MATCH

    def __init__(self, entities: EntityStore) -> None:
        self.entities = entities

    async def attempt(
        self,
        mention: EntityMention,
        candidates: Candidates,
        context: ResolutionContext,
    ) -> StageOutcome:
        if mention.resolved_id:
            entity = await self.entities.get(mention.resolved_id)
            if entity is not None and entity.has_type(mention.type):
                return StageOutcome.resolved(entity.id)

        matches = await self.entities.find_by_name(mention.span, entity_type=mention.type)
        if len(matches) == 1:
            return StageOutcome.resolved(matches[0].id)
        # Several entities share the exact name: let the judge pick
        return StageOutcome.need_more([(e, 1.0) for e in matches])


class HeuristicMatchStage(ResolutionStage):
    """
    Normalized-name equality, then fuzzy scoring.

    A fuzzy match resolves only when its score clears `threshold` and no
    other candidate ties it. Ties are passed on as candidates.
    """

    level = ResolutionLevel.HEURISTIC_MATCH

    def __init__(self, entities: EntityStore, threshold: float = 90.0, limit: int = 10) -> None:
        self.entities = entities
        self.threshold = threshold
        self.limit = limit

    async def attempt(
        self,
        mention: EntityMention,
        candidates: Candidates,
        context: ResolutionContext,
    ) -> StageOutcome:
        normalized = await self.entities.find_by_normalized_name(
            mention.span, entity_type=mention.type
        )
        if len(normalized) == 1:
            return StageOutcome.resolved(normalized[0].id)
        if len(normalized) > 1:
            return StageOutcome.need_more([(e, 1.0) for e in normalized])

        fuzzy = await self.entities.find_by_fuzzy_name(
            mention.span,
            self.threshold,
            entity_type=mention.type,
            limit=self.limit,
        )
        if not fuzzy:
            return StageOutcome.need_more()

        best_score = fuzzy[0][1]
        leaders = [(e, s) for e, s in fuzzy if s >= best_score]
        if len(leaders) == 1:
            logger.debug(
                f"Heuristic match '{mention.span}' -> '{leaders[0][0].name}' ({best_score:.0f})"
            )
            return StageOutcome.resolved(leaders[0][0].id)
        return StageOutcome.need_more([(e, s / 100.0) for e, s in leaders])


class EmbeddingMatchStage(ResolutionStage):
    """
    Vector search over entity embeddings.

    Auto-accepts the nearest entity only if it scores >= auto_accept and leads
    the runner-up by >= margin. Otherwise entities scoring >= candidate_threshold
    become candidates for the LLM stages. With no candidates at all the
    mention is declared unresolved here, so no LLM call is made.
    """

    level = ResolutionLevel.EMBEDDING_MATCH

    def __init__(
        self,
        entities: EntityStore,
        *,
        auto_accept: float = 0.95,
        candidate_threshold: float = 0.70,
        margin: float = 0.05,
        top_k: int = 10,
    ) -> None:
        self.entities = entities
        self.auto_accept = auto_accept
        self.candidate_threshold = candidate_threshold
        self.margin = margin
        self.top_k = top_k

    async def attempt(
        self,
        mention: EntityMention,
        candidates: Candidates,
        context: ResolutionContext,
    ) -> StageOutcome:
        found = await self.entities.find_similar(
            mention.span,
            top_k=self.top_k,
            threshold=self.candidate_threshold,
            entity_type=mention.type,
        )
        if found and not candidates:
            top_score = found[0][1]
            runner_up = found[1][1] if len(found) > 1 else 0.0
            if top_score >= self.auto_accept and top_score - runner_up >= self.margin:
                return StageOutcome.resolved(found[0][0].id)

        merged = merge_candidates(candidates, found)[: self.top_k]
        if not merged:
            return StageOutcome.unresolved()
        return StageOutcome.need_more(merged)


class LlmVerificationStage(ResolutionStage):
    """Yes/no check when exactly one candidate survives."""

    level = ResolutionLevel.LLM_VERIFICATION

    def __init__(self, judge: ResolutionJudge) -> None:
        self.judge = judge

    async def attempt(
        self,
        mention: EntityMention,
        candidates: Candidates,
        context: ResolutionContext,
    ) -> StageOutcome:
        if not candidates:
            return StageOutcome.unresolved()
        if len(candidates) > 1:
            return StageOutcome.need_more(candidates)

        candidate = candidates[0][0]
        if await self.judge.verify(mention, candidate, context):
            return StageOutcome.resolved(candidate.id, llm_calls=1)
        return StageOutcome.unresolved(llm_calls=1)


class LlmBakeoffStage(ResolutionStage):
    """Ask the judge to pick among several candidates, or none."""

    level = ResolutionLevel.LLM_BAKEOFF

    def __init__(
        self,
        judge: ResolutionJudge,
        mode: PromptMode = PromptMode.COMPACT,
        max_candidates: int = 10,
    ) -> None:
        self.judge = judge
        self.mode = mode
        self.max_candidates = max_candidates

    async def attempt(
        self,
        mention: EntityMention,
        candidates: Candidates,
        context: ResolutionContext,
    ) -> StageOutcome:
        if not candidates:
            return StageOutcome.unresolved()

        shortlist = candidates[: self.max_candidates]
        chosen = await self.judge.choose(mention, shortlist, context, self.mode)
        if chosen is None:
            return StageOutcome.unresolved(llm_calls=1)
        return StageOutcome.resolved(chosen, llm_calls=1)
