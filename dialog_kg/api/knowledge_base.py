"""
ConversationKnowledgeBase - Primary Entry Point

Connects a chat application to the ingestion pipeline. The chat turn handler
calls on_exchange() after each reply; analysis then runs in the background,
serialized per context, and writes propositions to the knowledge base.

A knowledge base directory contains:
    - lancedb/: proposition and entity tables (vector-indexed)
    - analysis_state.json: per-context analysis cursors

Example:
    >>> schema = DomainSchema.of("Composer", "Work", "Instrument")
    >>> async with ConversationKnowledgeBase("./kb", schema=schema) as kb:
    ...     kb.on_exchange("alice", conversation)
    ...     await kb.drain()
    ...     for p in await kb.find_similar("violin concerto", context_id="alice"):
    ...         print(p.text)

    # Or with explicit stores and providers (tests, embedding in other apps)
    >>> kb = ConversationKnowledgeBase(
    ...     propositions=InMemoryPropositionStore(embeddings),
    ...     entities=InMemoryEntityStore(embeddings),
    ...     state=InMemoryAnalysisStateStore(),
    ...     llm=llm,
    ...     schema=schema,
    ... )
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dialog_kg.api.worker import AnalysisJob, AnalysisWorker
from dialog_kg.ingestion.pipeline import PropositionPipeline, WindowContext
from dialog_kg.ingestion.windowing import WindowTracker
from dialog_kg.types import (
    Conversation,
    DomainSchema,
    KnownEntity,
    PipelineResult,
    Proposition,
    PropositionStatus,
)

if TYPE_CHECKING:
    from dialog_kg.config.settings import KGConfig
    from dialog_kg.ingestion.resolution import ResolutionJudge
    from dialog_kg.providers.base import EmbeddingProvider, LLMProvider
    from dialog_kg.storage.base import AnalysisStateStore, EntityStore, PropositionStore

logger = logging.getLogger(__name__)


class ConversationKnowledgeBase:
    """
    Conversation-driven proposition knowledge base.

    Args:
        path: Directory for LanceDB tables and cursor state. Required unless
            all three stores are given.
        config: Optional configuration. Uses defaults if not provided.
        schema: Entity types extraction is held to
        propositions / entities / state: Explicit stores (override `path`)
        llm: LLM provider (created from config when omitted)
        embeddings: Embedding provider (created from config when omitted)
        judge: Resolution judge (LLM-backed when omitted)
    """

    def __init__(
        self,
        path: str | Path | None = None,
        config: "KGConfig | None" = None,
        *,
        schema: DomainSchema | None = None,
        propositions: "PropositionStore | None" = None,
        entities: "EntityStore | None" = None,
        state: "AnalysisStateStore | None" = None,
        llm: "LLMProvider | None" = None,
        embeddings: "EmbeddingProvider | None" = None,
        judge: "ResolutionJudge | None" = None,
    ) -> None:
        if path is None and (propositions is None or entities is None or state is None):
            raise ValueError("Either path or all of propositions, entities and state is required")

        # Lazy import to avoid circular imports
        if config is None:
            from dialog_kg.config import KGConfig
            config = KGConfig()
        self._config = config
        self._path = Path(path).resolve() if path is not None else None
        self.schema = schema or DomainSchema()
        if not self.schema.entity_types and config.schema_adherence == "strict":
            logger.warning(
                "No entity types in schema with strict adherence: every proposition "
                "mentioning a non-user entity will be dropped. Pass schema= or set "
                "schema_adherence = 'relaxed'."
            )

        self._propositions = propositions
        self._entities = entities
        self._state = state
        self._llm = llm
        self._llm_injected = llm is not None
        self._embeddings = embeddings
        self._judge = judge

        self._pipeline: PropositionPipeline | None = None
        self._tracker: WindowTracker | None = None
        self._worker = AnalysisWorker(
            self._handle_job,
            concurrency=config.analysis_concurrency,
            queue_size=config.analysis_queue_size,
        )
        self._init_lock = asyncio.Lock()
        self._initialized = False

    # === Initialization ===

    async def _ensure_initialized(self) -> None:
        """Lazy initialization of stores and providers on first use."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return

            if self._path is not None:
                self._path.mkdir(parents=True, exist_ok=True)

            if self._propositions is None or self._entities is None:
                if self._embeddings is None:
                    self._embeddings = self._create_embedding_provider()
                from dialog_kg.storage.lancedb import (
                    LanceDBConnection,
                    LanceDBEntityStore,
                    LanceDBPropositionStore,
                )
                connection = LanceDBConnection(self._path / "lancedb")
                if self._propositions is None:
                    self._propositions = LanceDBPropositionStore(connection, self._embeddings)
                if self._entities is None:
                    self._entities = LanceDBEntityStore(connection, self._embeddings)

            if self._state is None:
                from dialog_kg.storage.state import JsonAnalysisStateStore
                self._state = JsonAnalysisStateStore(self._path)

            await self._propositions.initialize()
            await self._entities.initialize()

            if self._llm is None:
                self._llm = self._create_llm_provider()
            if self._judge is None and not self._config.heuristic_only:
                self._judge = self._create_judge()

            self._tracker = WindowTracker(
                self._state,
                window_size=self._config.window_size,
                overlap_size=self._config.overlap_size,
                trigger_interval=self._config.trigger_interval,
            )
            self._pipeline = PropositionPipeline.from_config(
                self._config,
                self._llm,
                self._propositions,
                self._entities,
                judge=self._judge,
            )
            self._initialized = True

    def _create_llm_provider(self, model: str | None = None) -> "LLMProvider":
        """Create LLM provider based on config."""
        provider = self._config.llm_provider.lower()

        if provider == "openai":
            from dialog_kg.providers.llm.openai import OpenAILLMProvider
            return OpenAILLMProvider(
                api_key=self._config.openai_api_key,
                model=model or self._config.llm_model,
                timeout=self._config.llm_timeout_seconds,
            )
        raise ValueError(f"Unknown LLM provider: {provider}")

    def _create_embedding_provider(self) -> "EmbeddingProvider":
        """Create embedding provider based on config."""
        provider = self._config.embedding_provider.lower()

        if provider == "openai":
            from dialog_kg.providers.embedding.openai import OpenAIEmbeddingProvider
            return OpenAIEmbeddingProvider(
                api_key=self._config.openai_api_key,
                model=self._config.embedding_model,
                dimensions=self._config.embedding_dimensions,
                batch_size=self._config.embedding_batch_size,
                timeout=self._config.llm_timeout_seconds,
            )
        raise ValueError(f"Unknown embedding provider: {provider}")

    def _create_judge(self) -> "ResolutionJudge":
        """Resolution judge on the fast model."""
        from dialog_kg.ingestion.resolution import LlmResolutionJudge

        # An injected provider is used as-is for every stage
        if self._llm_injected or not self._config.llm_model_fast:
            assert self._llm is not None
            return LlmResolutionJudge(self._llm)
        return LlmResolutionJudge(self._create_llm_provider(self._config.llm_model_fast))

    # === Lifecycle ===

    async def __aenter__(self) -> "ConversationKnowledgeBase":
        await self._ensure_initialized()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Wait for queued analysis, then release stores."""
        await self._worker.stop(drain=True)
        if self._initialized:
            assert self._propositions is not None and self._entities is not None
            await self._propositions.close()
            await self._entities.close()
        self._pipeline = None
        self._tracker = None
        self._initialized = False

    # === Properties ===

    @property
    def config(self) -> "KGConfig":
        return self._config

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def worker(self) -> AnalysisWorker:
        return self._worker

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # === Analysis ===

    def on_exchange(
        self,
        context_id: str,
        conversation: Conversation,
        *,
        known_entities: list[KnownEntity] | None = None,
        prompt_variables: dict[str, Any] | None = None,
    ) -> bool:
        """
        Notify that an exchange completed. Never blocks, never raises.

        Turns below the trigger interval of an already-seen cursor return
        without copying anything. Otherwise a job is queued and re-checks the
        stored cursor, so a job queued early is a no-op if nothing is due.

        Returns:
            True if an analysis job was queued
        """
        try:
            if self._config.trigger_interval <= 0:
                return False
            count = len(conversation.messages)
            due = None
            if self._tracker is not None:
                due = self._tracker.cached_should_analyze(context_id, count)
                if due is False:
                    return False

            job = AnalysisJob(
                context_id=context_id,
                conversation=conversation.model_copy(deep=True),
                known_entities=list(known_entities or []),
                prompt_variables=dict(prompt_variables or {}),
            )
            queued = self._worker.submit(job)
            if queued and due and self._tracker is not None:
                self._tracker.mark_pending(context_id, count)
            return queued
        except Exception as e:
            logger.error(f"Could not queue analysis for {context_id}: {e}")
            return False

    async def analyze(
        self,
        context_id: str,
        conversation: Conversation,
        *,
        known_entities: list[KnownEntity] | None = None,
        prompt_variables: dict[str, Any] | None = None,
        force: bool = True,
    ) -> PipelineResult | None:
        """
        Manual trigger. Awaited, but still serialized with background jobs
        for the same context.

        Returns:
            PipelineResult, or None if there was nothing new to analyze
        """
        job = AnalysisJob(
            context_id=context_id,
            conversation=conversation,
            known_entities=list(known_entities or []),
            prompt_variables=dict(prompt_variables or {}),
            force=force,
        )
        return await self._worker.run_exclusive(context_id, lambda: self._handle_job(job))

    async def _handle_job(self, job: AnalysisJob) -> PipelineResult | None:
        await self._ensure_initialized()
        assert self._tracker is not None and self._pipeline is not None

        window = await self._tracker.claim(job.context_id, job.conversation, force=job.force)
        if window is None:
            return None

        return await self._pipeline.process_window(
            job.context_id,
            window.text,
            self.schema,
            WindowContext(
                known_entities=job.known_entities,
                prompt_variables=job.prompt_variables,
                chunk_id=window.chunk_id,
            ),
        )

    async def drain(self) -> None:
        """Wait for all queued background analysis to finish."""
        await self._worker.drain()

    # === Queries ===

    async def propositions(self, context_id: str | None = None) -> list[Proposition]:
        await self._ensure_initialized()
        assert self._propositions is not None
        return await self._propositions.find_all(context_id)

    async def find_similar(
        self,
        query: str,
        top_k: int = 10,
        threshold: float = 0.0,
        *,
        context_id: str | None = None,
    ) -> list[Proposition]:
        """Active propositions most similar to `query`, best first."""
        await self._ensure_initialized()
        assert self._propositions is not None
        results = await self._propositions.find_similar(
            query,
            top_k=top_k,
            threshold=threshold,
            context_id=context_id,
            status=PropositionStatus.ACTIVE,
        )
        return [p for p, _score in results]

    async def find_by_status(
        self,
        status: PropositionStatus,
        context_id: str | None = None,
    ) -> list[Proposition]:
        await self._ensure_initialized()
        assert self._propositions is not None
        return await self._propositions.find_by_status(status, context_id)

    async def count(self, context_id: str | None = None) -> int:
        await self._ensure_initialized()
        assert self._propositions is not None
        return await self._propositions.count(context_id)

    async def stats(self, context_id: str | None = None) -> dict[str, Any]:
        """Resolution coverage, confidence and mention-type breakdown."""
        await self._ensure_initialized()
        assert self._propositions is not None and self._entities is not None

        propositions = await self._propositions.find_all(context_id)
        fully = sum(1 for p in propositions if p.mentions and p.is_fully_resolved)
        partially = sum(1 for p in propositions if p.is_partially_resolved)
        by_type = Counter(m.type for p in propositions for m in p.mentions)
        by_status = Counter(p.status.value for p in propositions)

        return {
            "propositions": len(propositions),
            "by_status": dict(by_status),
            "fully_resolved": fully,
            "partially_resolved": partially,
            "unresolved": len(propositions) - fully - partially,
            "avg_confidence": (
                sum(p.confidence for p in propositions) / len(propositions) if propositions else 0.0
            ),
            "mentions_by_type": dict(by_type.most_common()),
            "entities": await self._entities.count(),
        }

    # === Administration ===

    async def clear(self, context_id: str | None = None) -> int:
        """
        Delete propositions and analysis cursors for one context, or all.

        Entities are shared across contexts and only removed on a global clear.

        Returns:
            Number of propositions deleted
        """
        await self._ensure_initialized()
        assert self._propositions is not None and self._entities is not None
        assert self._tracker is not None

        async def _clear() -> int:
            deleted = await self._propositions.clear(context_id)
            if context_id is None:
                await self._entities.clear()
            await self._tracker.reset(context_id)
            return deleted

        if context_id is None:
            deleted = await _clear()
        else:
            deleted = await self._worker.run_exclusive(context_id, _clear)
        logger.info(f"Cleared {deleted} propositions ({context_id or 'all contexts'})")
        return deleted
