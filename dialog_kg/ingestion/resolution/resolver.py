"""
Escalating Entity Resolver

Resolves each mention to an existing entity id through an ordered chain of
increasingly expensive stages, stopping at the first terminal outcome. Most
mentions in a bounded domain resolve at the exact or heuristic level; only
ambiguous or novel ones reach the LLM stages.

Known entities (e.g. the current user) short-circuit the chain: "I", "me"
and "my" resolve deterministically without any store or LLM access.

The resolver never creates entities. Deciding that an unresolved mention
deserves a new entity is the pipeline's job.

Example:
    >>> resolver = EscalatingEntityResolver.default(entity_store, judge, config)
    >>> resolution = await resolver.resolve(
    ...     EntityMention(span="Brahms", type="Composer"), ResolutionContext()
    ... )
    >>> resolution.level
    <ResolutionLevel.HEURISTIC_MATCH: 'heuristic_match'>
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from dialog_kg.errors import ResolutionFailure
from dialog_kg.ingestion.resolution.judge import PromptMode, ResolutionJudge
from dialog_kg.ingestion.resolution.stages import (
    Candidates,
    EmbeddingMatchStage,
    ExactMatchStage,
    HeuristicMatchStage,
    LlmBakeoffStage,
    LlmVerificationStage,
    OutcomeKind,
    ResolutionContext,
    ResolutionStage,
    merge_candidates,
)
from dialog_kg.types import (
    EntityMention,
    EntityResolution,
    EntityResolutionStats,
    ResolutionLevel,
)
from dialog_kg.utils.text import normalize_name

if TYPE_CHECKING:
    from dialog_kg.config import KGConfig
    from dialog_kg.storage.base import EntityStore

logger = logging.getLogger(__name__)


class EscalatingEntityResolver:
    """
    Runs mentions through an ordered list of ResolutionStages.

    Args:
        stages: Stages in escalation order (reorder or omit to taste)
        concurrency: Max concurrent mention resolutions in resolve_all()
        stage_timeout: Seconds allowed per stage attempt
    """

    def __init__(
        self,
        stages: list[ResolutionStage],
        *,
        concurrency: int = 8,
        stage_timeout: float | None = None,
    ) -> None:
        self.stages = stages
        self.concurrency = concurrency
        self.stage_timeout = stage_timeout

    @classmethod
    def default(
        cls,
        entities: "EntityStore",
        judge: ResolutionJudge | None,
        config: "KGConfig",
    ) -> "EscalatingEntityResolver":
        """Build the standard five-stage chain from configuration."""
        stages: list[ResolutionStage] = [
            ExactMatchStage(entities),
            HeuristicMatchStage(
                entities,
                threshold=config.heuristic_threshold,
                limit=config.resolver_top_k,
            ),
            EmbeddingMatchStage(
                entities,
                auto_accept=config.embedding_auto_accept_threshold,
                candidate_threshold=config.embedding_candidate_threshold,
                margin=config.embedding_margin,
                top_k=config.resolver_top_k,
            ),
        ]
        if judge is not None and not config.heuristic_only:
            stages.append(LlmVerificationStage(judge))
            stages.append(
                LlmBakeoffStage(
                    judge,
                    mode=PromptMode(config.bakeoff_prompt_mode),
                    max_candidates=config.resolver_top_k,
                )
            )
        return cls(
            stages,
            concurrency=config.resolution_concurrency,
            stage_timeout=config.llm_timeout_seconds,
        )

    @property
    def levels(self) -> list[ResolutionLevel]:
        return [stage.level for stage in self.stages]

    async def resolve(
        self,
        mention: EntityMention,
        context: ResolutionContext,
    ) -> EntityResolution:
        """
        Resolve one mention. Never raises.

        Errors in any stage leave the mention unresolved with `error` set.
        """
        known = context.known_match(mention.span)
        if known is not None:
            return EntityResolution(
                entity_id=known.entity.id,
                level=ResolutionLevel.KNOWN_ENTITY,
            )

        try:
            return await self._run_chain(mention, context)
        except Exception as e:
            failure = ResolutionFailure(mention.span, e)
            logger.warning(f"{failure}. Leaving mention unresolved.")
            return EntityResolution(error=str(failure))

    async def _run_chain(
        self,
        mention: EntityMention,
        context: ResolutionContext,
    ) -> EntityResolution:
        candidates: Candidates = []
        llm_calls = 0

        for stage in self.stages:
            outcome = await asyncio.wait_for(
                stage.attempt(mention, candidates, context),
                timeout=self.stage_timeout,
            )
            llm_calls += outcome.llm_calls

            if outcome.kind == OutcomeKind.RESOLVED:
                logger.debug(f"Resolved '{mention.span}' at {stage.level.value}")
                return EntityResolution(
                    entity_id=outcome.entity_id,
                    level=stage.level,
                    llm_calls=llm_calls,
                )
            if outcome.kind == OutcomeKind.UNRESOLVED:
                return EntityResolution(level=stage.level, llm_calls=llm_calls)

            candidates = merge_candidates(candidates, outcome.candidates)

        # Chain exhausted with candidates still open (e.g. LLM stages disabled)
        return EntityResolution(llm_calls=llm_calls)

    async def resolve_all(
        self,
        mentions: list[EntityMention],
        context: ResolutionContext,
        statements: list[str] | None = None,
    ) -> tuple[list[EntityResolution], EntityResolutionStats]:
        """
        Resolve a batch of mentions with bounded concurrency.

        Mentions with the same normalized span and type are resolved once,
        judged against the statement of their first occurrence.

        Args:
            mentions: Mentions to resolve
            context: Shared resolution context
            statements: Proposition text per mention, parallel to `mentions`

        Returns:
            (resolutions in input order, per-level statistics)
        """
        stats = EntityResolutionStats()
        if not mentions:
            return [], stats

        if statements is not None and len(statements) != len(mentions):
            raise ValueError("statements must be parallel to mentions")

        contexts: dict[tuple[str, str, str | None], ResolutionContext] = {}
        first: dict[tuple[str, str, str | None], EntityMention] = {}
        for i, mention in enumerate(mentions):
            key = self._key(mention)
            if key in first:
                continue
            first[key] = mention
            contexts[key] = (
                replace(context, proposition_text=statements[i]) if statements else context
            )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded_resolve(key: tuple[str, str, str | None]) -> EntityResolution:
            async with semaphore:
                return await self.resolve(first[key], contexts[key])

        keys = list(first)
        results = await asyncio.gather(*(bounded_resolve(k) for k in keys))
        by_key = dict(zip(keys, results))

        resolutions: list[EntityResolution] = []
        counted: set[tuple[str, str, str | None]] = set()
        for mention in mentions:
            key = self._key(mention)
            resolution = by_key[key]
            if key in counted:
                resolution = resolution.model_copy(update={"llm_calls": 0})
            counted.add(key)
            stats.record(resolution)
            resolutions.append(resolution)

        logger.info(
            f"Resolved {stats.resolved}/{len(mentions)} mentions "
            f"({stats.by_level}), {stats.llm_calls} LLM calls"
        )
        return resolutions, stats

    @staticmethod
    def _key(mention: EntityMention) -> tuple[str, str, str | None]:
        return (normalize_name(mention.span) or mention.span.lower(), mention.type.lower(), mention.resolved_id)
