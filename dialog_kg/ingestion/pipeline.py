"""
Proposition Pipeline

Orchestrates one window end to end:

    1. Extraction  - window text -> RawPropositions (one LLM call)
    2. Resolution  - every mention through the escalation chain
    3. Creation    - one new entity per unresolved in-schema (span, type)
    4. Revision    - NEW / DUPLICATE / REINFORCED / MERGED, sequentially so
                     later propositions see earlier ones from the same run
    5. Assembly    - entities first, then propositions

Failures degrade instead of propagating: an extraction failure ends the run
with nothing persisted, resolution and revision failures affect only the
mention or proposition concerned, and a store failure marks the run failed.
process_window() never raises.

Example:
    >>> pipeline = PropositionPipeline.from_config(config, llm, propositions, entities)
    >>> result = await pipeline.process_window("user-42", window_text, schema)
    >>> print(result.info_string())
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from dialog_kg.errors import ExtractionFailure, StoreFailure
from dialog_kg.ingestion.assembly import Assembler
from dialog_kg.ingestion.extraction import PropositionExtractor
from dialog_kg.ingestion.resolution import (
    EscalatingEntityResolver,
    LlmResolutionJudge,
    ResolutionContext,
    ResolutionJudge,
)
from dialog_kg.ingestion.revision import PropositionReviser, RevisionPolicy
from dialog_kg.types import (
    DomainSchema,
    EntityMention,
    EntityResolution,
    KnownEntity,
    NamedEntity,
    PipelineResult,
    Proposition,
    RawProposition,
    RevisionStats,
    SchemaAdherence,
)
from dialog_kg.utils.telemetry import CallCollector, telemetry_collector
from dialog_kg.utils.text import normalize_name

if TYPE_CHECKING:
    from dialog_kg.config import KGConfig
    from dialog_kg.providers.base import LLMProvider
    from dialog_kg.storage.base import EntityStore, PropositionStore

logger = logging.getLogger(__name__)


@dataclass
class WindowContext:
    """
    Per-call extras for process_window().

    Attributes:
        known_entities: Entities the caller already knows (e.g. the current user)
        prompt_variables: Extra key/value context shown to the extractor
        chunk_id: Grounding id for the window; generated when omitted
    """

    known_entities: list[KnownEntity] = field(default_factory=list)
    prompt_variables: dict[str, Any] = field(default_factory=dict)
    chunk_id: str | None = None


class PropositionPipeline:
    """
    Extract, resolve, revise and persist propositions for one window.

    Args:
        extractor: Schema-constrained proposition extractor
        resolver: Escalating entity resolver
        reviser: Proposition reviser
        propositions: Proposition store
        entities: Entity store
        store_timeout: Seconds allowed per store call
    """

    def __init__(
        self,
        extractor: PropositionExtractor,
        resolver: EscalatingEntityResolver,
        reviser: PropositionReviser,
        propositions: "PropositionStore",
        entities: "EntityStore",
        *,
        store_timeout: float | None = None,
    ) -> None:
        self.extractor = extractor
        self.resolver = resolver
        self.reviser = reviser
        self.propositions = propositions
        self.entities = entities
        self.assembler = Assembler(propositions, entities, timeout=store_timeout)

    @classmethod
    def from_config(
        cls,
        config: "KGConfig",
        llm: "LLMProvider",
        propositions: "PropositionStore",
        entities: "EntityStore",
        *,
        judge: ResolutionJudge | None = None,
    ) -> "PropositionPipeline":
        """Wire the standard components from configuration."""
        if judge is None and not config.heuristic_only:
            judge = LlmResolutionJudge(llm)
        return cls(
            extractor=PropositionExtractor(
                llm,
                schema_adherence=SchemaAdherence(config.schema_adherence),
                timeout=config.llm_timeout_seconds,
            ),
            resolver=EscalatingEntityResolver.default(entities, judge, config),
            reviser=PropositionReviser(
                llm,
                propositions,
                policy=RevisionPolicy(config.reinforcement_boost),
                candidate_limit=config.revision_candidate_limit,
                similarity_threshold=config.revision_similarity_threshold,
                timeout=config.llm_timeout_seconds,
            ),
            propositions=propositions,
            entities=entities,
            store_timeout=config.store_timeout_seconds,
        )

    async def process_window(
        self,
        context_id: str,
        window_text: str,
        schema: DomainSchema,
        context: WindowContext | None = None,
    ) -> PipelineResult:
        """
        Run the full pipeline on one window. Never raises.

        Returns:
            PipelineResult with persisted propositions, new entities, outcome
            counts and LLM call telemetry
        """
        context = context or WindowContext()
        chunk_id = context.chunk_id or f"{context_id}:{uuid4().hex[:12]}"
        start_time = time.time()
        collector = CallCollector()

        with telemetry_collector(collector):
            try:
                result = await self._run(context_id, window_text, schema, context, chunk_id)
            except ExtractionFailure as e:
                logger.warning(f"Extraction failed for {context_id}, nothing persisted: {e}")
                result = PipelineResult.failure(context_id, str(e), chunk_id=chunk_id)
            except Exception as e:
                logger.error(f"Pipeline run for {context_id} failed: {e}")
                result = PipelineResult.failure(context_id, str(e), chunk_id=chunk_id)

        result.llm_calls = collector.summary()
        result.duration_seconds = time.time() - start_time
        logger.info(f"[{context_id}] {result.info_string()}")
        return result

    async def _run(
        self,
        context_id: str,
        window_text: str,
        schema: DomainSchema,
        context: WindowContext,
        chunk_id: str,
    ) -> PipelineResult:
        # 1. Extraction
        raw = await self.extractor.extract(
            window_text, schema, context.known_entities, context.prompt_variables
        )
        if not raw:
            return PipelineResult(context_id=context_id, chunk_id=chunk_id)

        propositions = [self._to_proposition(r, context_id, chunk_id) for r in raw]

        # 2. Resolution
        mentions = [m for p in propositions for m in p.mentions]
        resolutions, entity_stats = await self.resolver.resolve_all(
            mentions,
            ResolutionContext(context_id=context_id, known_entities=context.known_entities),
            statements=[p.text for p in propositions for _ in p.mentions],
        )

        # 3. Entity creation for unresolved in-schema mentions
        new_entities = self._apply_resolutions(propositions, resolutions, schema, context)
        new_entities.extend(await self._missing_known_entities(context.known_entities))

        # 4. Revision
        stats = RevisionStats()
        pending: dict[str, Proposition] = {}
        for proposition in propositions:
            candidates = await self.reviser.find_candidates(proposition, list(pending.values()))
            revision = await self.reviser.revise(proposition, candidates)
            stats.record(revision)
            logger.debug(
                f"{revision.outcome.value}: '{proposition.text}'"
                + (f" -> {revision.matched_id}" if revision.matched_id else "")
            )
            if revision.proposition is not None:
                pending[revision.proposition.id] = revision.proposition

        # 5. Assembly
        try:
            persisted, created = await self.assembler.assemble(
                list(pending.values()), new_entities
            )
        except StoreFailure as e:
            return PipelineResult.failure(
                context_id,
                str(e),
                chunk_id=chunk_id,
                stats=stats,
                entity_stats=entity_stats,
                extracted=len(raw),
            )

        return PipelineResult(
            context_id=context_id,
            chunk_id=chunk_id,
            propositions=persisted,
            new_entities=created,
            stats=stats,
            entity_stats=entity_stats,
            extracted=len(raw),
        )

    @staticmethod
    def _to_proposition(raw: RawProposition, context_id: str, chunk_id: str) -> Proposition:
        return Proposition(
            context_id=context_id,
            text=raw.text.strip(),
            mentions=raw.to_mentions(),
            confidence=raw.confidence,
            decay=raw.decay,
            reasoning=raw.reasoning,
            grounding=[chunk_id],
        )

    @staticmethod
    def _apply_resolutions(
        propositions: list[Proposition],
        resolutions: list[EntityResolution],
        schema: DomainSchema,
        context: WindowContext,
    ) -> list[NamedEntity]:
        """
        Write resolved ids into mentions and create entities for the rest.

        A new entity is created only when the chain reached a definite "no
        match" (not on errors or an exhausted chain with open candidates) and
        the mention type belongs to the schema or to a known entity.
        Identical (normalized span, type) pairs share one entity per run.
        """
        known_types = {k.entity.entity_type for k in context.known_entities}
        created: dict[tuple[str, str], NamedEntity] = {}
        index = 0
        for proposition in propositions:
            updated: list[EntityMention] = []
            for mention in proposition.mentions:
                resolution = resolutions[index]
                index += 1
                if resolution.resolved:
                    updated.append(mention.model_copy(update={"resolved_id": resolution.entity_id}))
                    continue

                definite_miss = resolution.error is None and resolution.level is not None
                in_schema = schema.allows(mention.type) or mention.type in known_types
                if not (definite_miss and in_schema):
                    updated.append(mention)
                    continue

                key = (normalize_name(mention.span) or mention.span.strip().lower(), mention.type.lower())
                entity = created.get(key)
                if entity is None:
                    entity = NamedEntity(
                        name=mention.span.strip(),
                        entity_type=schema.canonical_type(mention.type) or mention.type,
                    )
                    created[key] = entity
                    logger.debug(f"New entity '{entity.name}' ({entity.entity_type})")
                updated.append(mention.model_copy(update={"resolved_id": entity.id}))
            proposition.mentions = updated
        return list(created.values())

    async def _missing_known_entities(self, known_entities: list[KnownEntity]) -> list[NamedEntity]:
        """Known entities not yet in the entity store."""
        if not known_entities:
            return []
        ids = [k.entity.id for k in known_entities]
        stored = {e.id for e in await self.entities.get_many(ids)}
        return [k.entity for k in known_entities if k.entity.id not in stored]
