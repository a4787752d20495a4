"""End-to-end pipeline tests over in-memory stores and a scripted LLM."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from dialog_kg.config import KGConfig
from dialog_kg.ingestion import PropositionPipeline, WindowContext
from dialog_kg.storage import InMemoryPropositionStore
from dialog_kg.types import (
    USER_TYPE,
    DomainSchema,
    ExtractionResult,
    KnownEntity,
    MentionRole,
    NamedEntity,
    RevisionDecision,
)
from fakes import BRAHMS_WINDOW, CountingJudge, brahms_extraction, raw

SCHEMA = DomainSchema.of("Composer", "Work")


@pytest.fixture
def judge() -> CountingJudge:
    return CountingJudge()


@pytest.fixture
def pipeline(llm, proposition_store, entity_store, judge) -> PropositionPipeline:
    return PropositionPipeline.from_config(
        KGConfig(), llm, proposition_store, entity_store, judge=judge
    )


class TestFirstWindow:
    """A window with no existing knowledge."""

    @pytest.mark.asyncio
    async def test_creates_entities_and_new_propositions(self, pipeline, llm, entity_store, judge):
        llm.script(ExtractionResult, brahms_extraction())

        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert not result.failed
        assert result.extracted == 1
        assert result.stats.new == len(result.propositions) == 1
        assert {e.name for e in result.new_entities} == {"Brahms", "violin concerto"}
        assert await entity_store.count() == 2
        assert result.propositions[0].is_fully_resolved
        assert judge.calls == 0

    @pytest.mark.asyncio
    async def test_persisted_records_are_grounded_and_bounded(self, pipeline, llm, proposition_store):
        llm.script(ExtractionResult, ExtractionResult(propositions=[
            raw("Brahms wrote a violin concerto", ("Brahms", "Composer"), confidence=1.7, decay=-0.2),
        ]))

        result = await pipeline.process_window(
            "alice", BRAHMS_WINDOW, SCHEMA, WindowContext(chunk_id="alice:0-2")
        )

        stored = await proposition_store.find_all("alice")
        assert len(stored) == 1
        assert stored[0].grounding == ["alice:0-2"]
        assert stored[0].confidence == 1.0
        assert stored[0].decay == 0.0
        assert result.chunk_id == "alice:0-2"

    @pytest.mark.asyncio
    async def test_no_orphan_entities(self, pipeline, llm, entity_store, proposition_store):
        llm.script(ExtractionResult, brahms_extraction())
        await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        referenced = set()
        for proposition in await proposition_store.find_all():
            referenced |= proposition.resolved_entity_ids()
        assert {e.id for e in await entity_store.find_all()} <= referenced

    @pytest.mark.asyncio
    async def test_empty_extraction(self, pipeline, llm, proposition_store):
        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)
        assert not result.failed
        assert result.propositions == []
        assert await proposition_store.count() == 0

    @pytest.mark.asyncio
    async def test_reports_llm_calls_per_stage(self, pipeline, llm):
        llm.script(ExtractionResult, brahms_extraction())
        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)
        assert result.llm_calls.calls_for("extraction") == 1
        assert result.llm_calls.calls_for("revision") == 0


class TestRepeatedWindow:
    """Re-analysis of the same content."""

    @pytest.mark.asyncio
    async def test_second_run_is_duplicate(self, pipeline, llm, entity_store, proposition_store):
        llm.script(ExtractionResult, brahms_extraction(), brahms_extraction())

        first = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)
        second = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert first.stats.new == 1
        assert second.stats.new == 0
        assert second.stats.duplicate >= 1
        assert second.new_entities == []
        assert second.entity_stats.by_level == {"exact_match": 2}
        assert await entity_store.count() == 2
        assert await proposition_store.count() == 1
        assert llm.calls_for(RevisionDecision) == 0

    @pytest.mark.asyncio
    async def test_same_run_duplicates_collapse(self, pipeline, llm, proposition_store):
        extraction = brahms_extraction()
        extraction.propositions.append(extraction.propositions[0].model_copy())
        llm.script(ExtractionResult, extraction)

        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert result.stats.new == 1
        assert result.stats.duplicate == 1
        assert await proposition_store.count() == 1

    @pytest.mark.asyncio
    async def test_contexts_do_not_share_propositions(self, pipeline, llm, proposition_store):
        llm.script(ExtractionResult, brahms_extraction(), brahms_extraction())

        await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)
        other = await pipeline.process_window("bob", BRAHMS_WINDOW, SCHEMA)

        assert other.stats.new == 1
        assert await proposition_store.count("bob") == 1


class TestKnownEntities:
    """The current user as a known entity."""

    @pytest.mark.asyncio
    async def test_user_mention_resolves_and_user_is_persisted(self, pipeline, llm, entity_store):
        user = NamedEntity(id="user:alice", name="Alice", entity_type=USER_TYPE)
        llm.script(ExtractionResult, ExtractionResult(propositions=[
            raw(
                "The user loves Brahms",
                ("I", USER_TYPE, MentionRole.SUBJECT),
                ("Brahms", "Composer", MentionRole.OBJECT),
            ),
        ]))

        result = await pipeline.process_window(
            "alice",
            BRAHMS_WINDOW,
            SCHEMA,
            WindowContext(known_entities=[KnownEntity.current_user(user)]),
        )

        subject = result.propositions[0].subject
        assert subject.resolved_id == "user:alice"
        assert result.entity_stats.by_level["known_entity"] == 1
        assert await entity_store.get("user:alice") is not None


class TestSchemaAdherence:
    """Off-schema mentions never create entities."""

    @pytest.mark.asyncio
    async def test_relaxed_off_schema_mention_stays_unresolved(
        self, llm, proposition_store, entity_store
    ):
        pipeline = PropositionPipeline.from_config(
            KGConfig(schema_adherence="relaxed"), llm, proposition_store, entity_store,
            judge=CountingJudge(),
        )
        llm.script(ExtractionResult, ExtractionResult(propositions=[
            raw("Brahms played the violin", ("Brahms", "Composer"), ("violin", "Instrument")),
        ]))

        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        proposition = result.propositions[0]
        assert proposition.is_partially_resolved
        assert [e.name for e in result.new_entities] == ["Brahms"]


class TestResolutionContext:
    """What the LLM resolution stages see."""

    @pytest.mark.asyncio
    async def test_judge_sees_proposition_text(self, pipeline, llm, entity_store, judge):
        await entity_store.save_all([
            NamedEntity(name="Johannes Brahms", entity_type="Composer"),
            NamedEntity(name="Brahms Trio", entity_type="Composer"),
        ])
        llm.script(ExtractionResult, ExtractionResult(propositions=[
            raw("The user loves Brahms", ("Brahms", "Composer")),
        ]))

        await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert judge.choose_calls == 1
        assert judge.contexts[0].proposition_text == "The user loves Brahms"
        assert judge.contexts[0].context_id == "alice"


class TestFailures:
    """process_window never raises."""

    @pytest.mark.asyncio
    async def test_extraction_timeout(self, pipeline, llm, proposition_store, entity_store):
        llm.script(ExtractionResult, TimeoutError("simulated timeout"))

        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert result.failed
        assert result.propositions == []
        assert "simulated timeout" in result.error
        assert await proposition_store.count() == 0
        assert await entity_store.count() == 0

    @pytest.mark.asyncio
    async def test_store_failure_rolls_back_entities(
        self, pipeline, llm, proposition_store, entity_store
    ):
        llm.script(ExtractionResult, brahms_extraction())
        proposition_store.save_all = AsyncMock(side_effect=RuntimeError("disk full"))

        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert result.failed
        assert "disk full" in result.error
        assert result.stats.new == 1
        assert result.extracted == 1
        assert await entity_store.count() == 0

    @pytest.mark.asyncio
    async def test_timed_out_write_leaves_no_dangling_mentions(self, llm, embeddings, entity_store):
        propositions = SlowSecondSave(embeddings)
        pipeline = PropositionPipeline.from_config(
            KGConfig(store_timeout_seconds=0.1), llm, propositions, entity_store, judge=CountingJudge()
        )
        llm.script(ExtractionResult, ExtractionResult(propositions=[
            raw("The user loves Brahms", ("Brahms", "Composer")),
            raw("The user admires Clara Schumann", ("Clara Schumann", "Composer")),
        ]))

        result = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert result.failed
        stored = await propositions.find_all()
        assert len(stored) == 1
        for proposition in stored:
            for entity_id in proposition.resolved_entity_ids():
                assert await entity_store.get(entity_id) is not None

    @pytest.mark.asyncio
    async def test_revision_error_keeps_proposition(self, pipeline, llm, proposition_store):
        llm.script(ExtractionResult, brahms_extraction(), ExtractionResult(propositions=[
            raw(
                "The user adores Brahms' violin concerto",
                ("Brahms", "Composer"),
                ("violin concerto", "Work"),
            ),
        ]))
        llm.script(RevisionDecision, RuntimeError("model overloaded"))

        await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)
        second = await pipeline.process_window("alice", BRAHMS_WINDOW, SCHEMA)

        assert second.stats.new == 1
        assert second.stats.failed == 1
        assert await proposition_store.count() == 2


class SlowSecondSave(InMemoryPropositionStore):
    """Stalls on the second save so the batch write times out halfway."""

    saves = 0

    async def save(self, proposition):
        self.saves += 1
        if self.saves == 2:
            await asyncio.sleep(0.5)
        return await super().save(proposition)
