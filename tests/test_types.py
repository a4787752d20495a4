"""Tests for pydantic models and their invariants."""

import pytest
from pydantic import ValidationError

from dialog_kg.types import (
    USER_TYPE,
    Conversation,
    ConversationWindow,
    DomainSchema,
    EntityMention,
    EntityResolution,
    EntityResolutionStats,
    KnownEntity,
    MentionRole,
    NamedEntity,
    PipelineResult,
    Proposition,
    RawProposition,
    ResolutionLevel,
    RevisionOutcome,
    RevisionResult,
    RevisionStats,
)


class TestProposition:
    """Proposition invariants."""

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            Proposition(text="x", confidence=1.2)
        with pytest.raises(ValidationError):
            Proposition(text="x", decay=-0.1)

    def test_assignment_is_validated(self):
        p = Proposition(text="x")
        with pytest.raises(ValidationError):
            p.confidence = 2.0

    def test_at_most_one_subject(self):
        with pytest.raises(ValidationError):
            Proposition(
                text="x",
                mentions=[
                    EntityMention(span="a", type="T", role=MentionRole.SUBJECT),
                    EntityMention(span="b", type="T", role=MentionRole.SUBJECT),
                ],
            )

    def test_grounding_is_deduplicated(self):
        p = Proposition(text="x", grounding=["c1", "c2", "c1"])
        assert p.grounding == ["c1", "c2"]

    def test_resolution_flags(self):
        p = Proposition(
            text="x",
            mentions=[
                EntityMention(span="a", type="T", resolved_id="e1"),
                EntityMention(span="b", type="T"),
            ],
        )
        assert p.is_partially_resolved
        assert not p.is_fully_resolved
        assert p.resolved_entity_ids() == {"e1"}

    def test_mention_str(self):
        assert str(EntityMention(span="Brahms", type="Composer")) == "Brahms:Composer→?"
        assert str(EntityMention(span="Brahms", type="Composer", resolved_id="e1")) == "Brahms:Composer→e1"


class TestRawProposition:
    """Extraction output normalization."""

    def test_confidence_and_decay_clamped(self):
        raw = RawProposition(text="x", confidence=1.7, decay=-3)
        assert raw.confidence == 1.0
        assert raw.decay == 0.0

    def test_extra_subjects_demoted(self):
        raw = RawProposition.model_validate({
            "text": "x",
            "mentions": [
                {"span": "a", "type": "T", "role": "subject"},
                {"span": "b", "type": "T", "role": "subject"},
            ],
        })
        roles = [m.role for m in raw.to_mentions()]
        assert roles == [MentionRole.SUBJECT, MentionRole.OTHER]
        assert all(m.resolved_id is None for m in raw.to_mentions())


class TestEntities:
    """Entity and schema helpers."""

    def test_has_type_checks_labels(self):
        entity = NamedEntity(name="Brahms", entity_type="Composer", labels=["Person"])
        assert entity.has_type("composer")
        assert entity.has_type("Person")
        assert not entity.has_type("Work")

    def test_embedding_text(self):
        assert NamedEntity(name="Brahms", entity_type="Composer").embedding_text() == "Brahms"
        described = NamedEntity(name="Brahms", entity_type="Composer", description="German composer")
        assert described.embedding_text() == "Brahms: German composer"

    def test_current_user_matches_self_references(self):
        user = NamedEntity(name="Alice", entity_type=USER_TYPE)
        known = KnownEntity.current_user(user)
        assert known.matches("I")
        assert known.matches(" my ")
        assert known.matches("alice")
        assert not known.matches("Bob")

    def test_schema_canonical_type(self):
        schema = DomainSchema.of("Composer", "Work")
        assert schema.canonical_type("composer") == "Composer"
        assert schema.canonical_type("Instrument") is None
        assert schema.allows("WORK")
        assert "**Composer**" in schema.describe()


class TestConversation:
    """Conversation and window models."""

    def test_window_chunk_id_is_deterministic(self):
        window = ConversationWindow(conversation_id="c", start=2, new_start=4, end=9)
        assert window.chunk_id == "c:2-9"
        assert window.overlap == 2
        assert not window.is_empty

    def test_window_text(self):
        conversation = Conversation(id="c").add_user("Hi").add_assistant("Hello")
        window = ConversationWindow(
            conversation_id="c", start=0, new_start=0, end=2, messages=conversation.messages
        )
        assert window.text == "User: Hi\nAssistant: Hello"
        assert len(conversation) == 2


class TestStats:
    """Result counters."""

    def test_resolution_stats(self):
        stats = EntityResolutionStats()
        stats.record(EntityResolution(entity_id="e1", level=ResolutionLevel.EXACT_MATCH))
        stats.record(EntityResolution(entity_id="e2", level=ResolutionLevel.LLM_BAKEOFF, llm_calls=1))
        stats.record(EntityResolution(level=ResolutionLevel.EMBEDDING_MATCH))
        stats.record(EntityResolution(error="boom"))

        assert stats.resolved == 2
        assert stats.unresolved == 2
        assert stats.failures == 1
        assert stats.llm_calls == 1
        assert stats.by_level == {"exact_match": 1, "llm_bakeoff": 1}

    def test_revision_stats(self):
        original = Proposition(text="x")
        stats = RevisionStats()
        stats.record(RevisionResult(outcome=RevisionOutcome.NEW, proposition=original, original=original))
        stats.record(RevisionResult(outcome=RevisionOutcome.DUPLICATE, original=original))
        stats.record(RevisionResult(outcome=RevisionOutcome.NEW, proposition=original, original=original, failed=True))

        assert stats.new == 2
        assert stats.duplicate == 1
        assert stats.failed == 1
        assert stats.total == 3

    def test_pipeline_failure(self):
        result = PipelineResult.failure("ctx", "timed out")
        assert result.failed
        assert result.propositions == []
        assert "timed out" in result.info_string()
