"""Tests for the escalating entity resolver and its stages."""

import asyncio

import pytest

from dialog_kg.config import KGConfig
from dialog_kg.ingestion.resolution import (
    EmbeddingMatchStage,
    EscalatingEntityResolver,
    LlmBakeoffStage,
    LlmResolutionJudge,
    LlmVerificationStage,
    PromptMode,
    ResolutionContext,
    ResolutionStage,
    StageOutcome,
)
from dialog_kg.types import (
    USER_TYPE,
    BakeoffDecision,
    KnownEntity,
    NamedEntity,
    ResolutionLevel,
    VerificationDecision,
)
from fakes import CountingJudge, mention


class FixedCandidatesStage(ResolutionStage):
    """Stage double that always hands on the same candidates."""

    level = ResolutionLevel.EMBEDDING_MATCH

    def __init__(self, candidates, error: Exception | None = None) -> None:
        self.candidates = candidates
        self.error = error
        self.attempts = 0

    async def attempt(self, mention, candidates, context):
        self.attempts += 1
        if self.error is not None:
            raise self.error
        return StageOutcome.need_more(self.candidates)


def _resolver(entity_store, judge=None, **overrides) -> EscalatingEntityResolver:
    config = KGConfig(**overrides)
    return EscalatingEntityResolver.default(entity_store, judge, config)


@pytest.fixture
def brahms() -> NamedEntity:
    return NamedEntity(name="Johannes Brahms", entity_type="Composer", aliases=["J. Brahms"])


class TestShortCircuit:
    """Cheap levels resolve without LLM calls."""

    @pytest.mark.asyncio
    async def test_exact_name_match(self, entity_store, brahms):
        await entity_store.save(brahms)
        judge = CountingJudge()

        resolution = await _resolver(entity_store, judge).resolve(
            mention("johannes brahms", "Composer"), ResolutionContext()
        )

        assert resolution.entity_id == brahms.id
        assert resolution.level == ResolutionLevel.EXACT_MATCH
        assert resolution.llm_calls == 0
        assert judge.calls == 0

    @pytest.mark.asyncio
    async def test_exact_alias_match(self, entity_store, brahms):
        await entity_store.save(brahms)
        resolution = await _resolver(entity_store, CountingJudge()).resolve(
            mention("J. Brahms", "Composer"), ResolutionContext()
        )
        assert resolution.level == ResolutionLevel.EXACT_MATCH

    @pytest.mark.asyncio
    async def test_partial_name_resolves_heuristically(self, entity_store, brahms):
        await entity_store.save(brahms)
        judge = CountingJudge()

        resolution = await _resolver(entity_store, judge).resolve(
            mention("Brahms", "Composer"), ResolutionContext()
        )

        assert resolution.entity_id == brahms.id
        assert resolution.level == ResolutionLevel.HEURISTIC_MATCH
        assert judge.calls == 0

    @pytest.mark.asyncio
    async def test_type_must_match(self, entity_store, brahms):
        await entity_store.save(brahms)
        judge = CountingJudge(verify_answer=True)

        resolution = await _resolver(entity_store, judge).resolve(
            mention("Johannes Brahms", "Work"), ResolutionContext()
        )

        assert not resolution.resolved
        assert resolution.level == ResolutionLevel.EMBEDDING_MATCH
        assert judge.calls == 0

    @pytest.mark.asyncio
    async def test_empty_store_is_definite_miss(self, entity_store):
        judge = CountingJudge()
        resolution = await _resolver(entity_store, judge).resolve(
            mention("Brahms", "Composer"), ResolutionContext()
        )
        assert not resolution.resolved
        assert resolution.error is None
        assert resolution.level == ResolutionLevel.EMBEDDING_MATCH
        assert judge.calls == 0

    @pytest.mark.asyncio
    async def test_embedding_auto_accept(self, entity_store):
        work = NamedEntity(name="Brahms Violin Concerto", entity_type="Work")
        await entity_store.save(work)
        resolver = EscalatingEntityResolver([EmbeddingMatchStage(entity_store)])

        resolution = await resolver.resolve(
            mention("Violin Concerto Brahms", "Work"), ResolutionContext()
        )

        assert resolution.entity_id == work.id
        assert resolution.level == ResolutionLevel.EMBEDDING_MATCH


class TestKnownEntities:
    """Caller-supplied entities bypass the chain."""

    @pytest.mark.asyncio
    async def test_self_reference_resolves_to_user(self, entity_store):
        user = NamedEntity(name="Alice", entity_type=USER_TYPE)
        stage = FixedCandidatesStage([])
        resolver = EscalatingEntityResolver([stage])

        resolution = await resolver.resolve(
            mention("I", USER_TYPE),
            ResolutionContext(known_entities=[KnownEntity.current_user(user)]),
        )

        assert resolution.entity_id == user.id
        assert resolution.level == ResolutionLevel.KNOWN_ENTITY
        assert stage.attempts == 0


class TestLlmStages:
    """Verification and bakeoff."""

    @pytest.mark.asyncio
    async def test_single_candidate_verified(self, brahms):
        judge = CountingJudge(verify_answer=True)
        resolver = EscalatingEntityResolver([
            FixedCandidatesStage([(brahms, 0.8)]),
            LlmVerificationStage(judge),
            LlmBakeoffStage(judge),
        ])

        resolution = await resolver.resolve(mention("the German", "Composer"), ResolutionContext())

        assert resolution.entity_id == brahms.id
        assert resolution.level == ResolutionLevel.LLM_VERIFICATION
        assert resolution.llm_calls == 1
        assert judge.verify_calls == 1
        assert judge.choose_calls == 0

    @pytest.mark.asyncio
    async def test_single_candidate_rejected(self, brahms):
        judge = CountingJudge(verify_answer=False)
        resolver = EscalatingEntityResolver([
            FixedCandidatesStage([(brahms, 0.8)]),
            LlmVerificationStage(judge),
            LlmBakeoffStage(judge),
        ])

        resolution = await resolver.resolve(mention("Clara", "Composer"), ResolutionContext())

        assert not resolution.resolved
        assert resolution.level == ResolutionLevel.LLM_VERIFICATION
        assert judge.choose_calls == 0

    @pytest.mark.asyncio
    async def test_tied_names_go_to_bakeoff(self, entity_store, brahms):
        trio = NamedEntity(name="Brahms Trio", entity_type="Composer")
        await entity_store.save_all([brahms, trio])
        judge = CountingJudge(choice=brahms.id)

        resolution = await _resolver(entity_store, judge).resolve(
            mention("Brahms", "Composer"), ResolutionContext()
        )

        assert resolution.entity_id == brahms.id
        assert resolution.level == ResolutionLevel.LLM_BAKEOFF
        assert judge.choose_calls == 1
        assert {e.id for e, _ in judge.last_candidates} == {brahms.id, trio.id}

    @pytest.mark.asyncio
    async def test_heuristic_only_never_calls_judge(self, entity_store, brahms):
        trio = NamedEntity(name="Brahms Trio", entity_type="Composer")
        await entity_store.save_all([brahms, trio])
        judge = CountingJudge(choice=brahms.id)
        resolver = _resolver(entity_store, judge, heuristic_only=True)

        resolution = await resolver.resolve(mention("Brahms", "Composer"), ResolutionContext())

        assert not resolution.resolved
        assert judge.calls == 0
        assert ResolutionLevel.LLM_BAKEOFF not in resolver.levels


class TestFailures:
    """Errors leave single mentions unresolved."""

    @pytest.mark.asyncio
    async def test_stage_error_is_contained(self):
        resolver = EscalatingEntityResolver([FixedCandidatesStage([], error=RuntimeError("down"))])

        resolution = await resolver.resolve(mention("Brahms", "Composer"), ResolutionContext())

        assert not resolution.resolved
        assert "down" in resolution.error

    @pytest.mark.asyncio
    async def test_resolve_all_continues_after_failure(self, entity_store, brahms):
        await entity_store.save(brahms)
        user = NamedEntity(name="Alice", entity_type=USER_TYPE)
        resolver = EscalatingEntityResolver([FixedCandidatesStage([], error=RuntimeError("down"))])

        resolutions, stats = await resolver.resolve_all(
            [mention("Brahms", "Composer"), mention("me", USER_TYPE)],
            ResolutionContext(known_entities=[KnownEntity.current_user(user)]),
        )

        assert resolutions[0].error is not None
        assert resolutions[1].entity_id == user.id
        assert stats.failures == 1
        assert stats.by_level == {"known_entity": 1}


class TestResolveAll:
    """Batch resolution."""

    @pytest.mark.asyncio
    async def test_duplicate_mentions_resolved_once(self, brahms):
        stage = FixedCandidatesStage([(brahms, 0.8)])
        judge = CountingJudge(verify_answer=True)
        resolver = EscalatingEntityResolver([stage, LlmVerificationStage(judge)])

        resolutions, stats = await resolver.resolve_all(
            [mention("Brahms", "Composer"), mention("brahms", "Composer")],
            ResolutionContext(),
        )

        assert [r.entity_id for r in resolutions] == [brahms.id, brahms.id]
        assert stage.attempts == 1
        assert stats.resolved == 2
        assert stats.llm_calls == 1

    @pytest.mark.asyncio
    async def test_statement_of_first_occurrence_reaches_judge(self, brahms):
        stage = FixedCandidatesStage([(brahms, 0.8)])
        judge = CountingJudge(verify_answer=True)
        resolver = EscalatingEntityResolver([stage, LlmVerificationStage(judge)])

        await resolver.resolve_all(
            [mention("Brahms", "Composer"), mention("Brahms", "Composer")],
            ResolutionContext(context_id="alice"),
            statements=["The user loves Brahms", "Brahms wrote four symphonies"],
        )

        assert [c.proposition_text for c in judge.contexts] == ["The user loves Brahms"]
        assert judge.contexts[0].context_id == "alice"

    def test_statements_must_be_parallel(self):
        with pytest.raises(ValueError):
            asyncio.run(EscalatingEntityResolver([]).resolve_all(
                [mention("Brahms", "Composer")], ResolutionContext(), statements=[]
            ))

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        resolutions, stats = await EscalatingEntityResolver([]).resolve_all([], ResolutionContext())
        assert resolutions == []
        assert stats.resolved == 0

    def test_default_levels(self, entity_store):
        assert _resolver(entity_store, CountingJudge()).levels == [
            ResolutionLevel.EXACT_MATCH,
            ResolutionLevel.HEURISTIC_MATCH,
            ResolutionLevel.EMBEDDING_MATCH,
            ResolutionLevel.LLM_VERIFICATION,
            ResolutionLevel.LLM_BAKEOFF,
        ]
        assert len(_resolver(entity_store, None).levels) == 3


class TestLlmResolutionJudge:
    """LLM-backed judge over a scripted provider."""

    @pytest.mark.asyncio
    async def test_verify(self, llm, brahms):
        llm.script(VerificationDecision, VerificationDecision(is_match=True))
        judge = LlmResolutionJudge(llm)
        assert await judge.verify(mention("Brahms", "Composer"), brahms, ResolutionContext())

    @pytest.mark.asyncio
    async def test_choose_maps_index_to_id(self, llm, brahms):
        other = NamedEntity(name="Brahms Trio", entity_type="Composer")
        llm.script(BakeoffDecision, BakeoffDecision(choice=2))
        judge = LlmResolutionJudge(llm)

        chosen = await judge.choose(
            mention("Brahms", "Composer"), [(other, 0.9), (brahms, 0.8)], ResolutionContext()
        )

        assert chosen == brahms.id

    @pytest.mark.asyncio
    async def test_out_of_range_choice_is_no_match(self, llm, brahms):
        llm.script(BakeoffDecision, BakeoffDecision(choice=5))
        judge = LlmResolutionJudge(llm)
        assert await judge.choose(mention("Brahms", "Composer"), [(brahms, 0.9)], ResolutionContext()) is None

    def test_compact_prompt_omits_descriptions(self, brahms):
        described = brahms.model_copy(update={"description": "German Romantic composer"})
        judge = LlmResolutionJudge.__new__(LlmResolutionJudge)
        candidates = [(described, 0.9)]

        compact = judge._build_bakeoff_prompt(
            mention("Brahms", "Composer"), candidates, ResolutionContext(), PromptMode.COMPACT
        )
        full = judge._build_bakeoff_prompt(
            mention("Brahms", "Composer"), candidates, ResolutionContext(), PromptMode.FULL
        )

        assert "German Romantic composer" not in compact
        assert "German Romantic composer" in full
        assert "90% similar" in full
        assert len(compact) < len(full)

    def test_prompts_include_statement(self, brahms):
        judge = LlmResolutionJudge.__new__(LlmResolutionJudge)
        context = ResolutionContext(proposition_text="The user loves Brahms' violin concerto")

        verification = judge._build_verification_prompt(mention("Brahms", "Composer"), brahms, context)
        bakeoff = judge._build_bakeoff_prompt(
            mention("Brahms", "Composer"), [(brahms, 0.9)], context, PromptMode.COMPACT
        )

        assert "Statement: The user loves Brahms' violin concerto" in verification
        assert "Statement: The user loves Brahms' violin concerto" in bakeoff

    @pytest.mark.asyncio
    async def test_statement_sent_to_model(self, llm, brahms):
        llm.script(VerificationDecision, VerificationDecision(is_match=True))
        judge = LlmResolutionJudge(llm)

        await judge.verify(
            mention("Brahms", "Composer"),
            brahms,
            ResolutionContext(proposition_text="The user loves Brahms"),
        )

        _, prompt, _ = llm.calls[0]
        assert "Statement: The user loves Brahms" in prompt
