"""Tests for Assembler write ordering and compensation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from dialog_kg.errors import StoreFailure
from dialog_kg.ingestion.assembly import Assembler
from dialog_kg.storage.memory import InMemoryPropositionStore
from dialog_kg.types import EntityMention, NamedEntity, Proposition


def _entity(name: str) -> NamedEntity:
    return NamedEntity(name=name, entity_type="Composer")


def _proposition(*entities: NamedEntity, grounding=("c:1",)) -> Proposition:
    return Proposition(
        context_id="alice",
        text="The user loves " + " and ".join(e.name for e in entities),
        mentions=[EntityMention(span=e.name, type="Composer", resolved_id=e.id) for e in entities],
        grounding=list(grounding),
    )


class TestReferencedEntities:
    """Filtering of new entities."""

    def test_only_referenced(self):
        brahms, clara = _entity("Brahms"), _entity("Clara Schumann")
        referenced = Assembler.referenced_entities([_proposition(brahms)], [brahms, clara])
        assert referenced == [brahms]

    def test_no_propositions(self):
        assert Assembler.referenced_entities([], [_entity("Brahms")]) == []


class TestAssemble:
    """Writes against in-memory stores."""

    @pytest.mark.asyncio
    async def test_writes_entities_and_propositions(self, proposition_store, entity_store):
        brahms, clara = _entity("Brahms"), _entity("Clara Schumann")
        assembler = Assembler(proposition_store, entity_store)

        propositions, entities = await assembler.assemble([_proposition(brahms)], [brahms, clara])

        assert len(propositions) == 1
        assert [e.id for e in entities] == [brahms.id]
        assert await entity_store.get(clara.id) is None
        assert await proposition_store.count() == 1

    @pytest.mark.asyncio
    async def test_nothing_to_write(self, proposition_store, entity_store):
        assembler = Assembler(proposition_store, entity_store)
        assert await assembler.assemble([], [_entity("Brahms")]) == ([], [])
        assert await entity_store.count() == 0

    @pytest.mark.asyncio
    async def test_empty_grounding_rejected_before_writes(self, proposition_store, entity_store):
        brahms = _entity("Brahms")
        ungrounded = _proposition(brahms, grounding=())
        assembler = Assembler(proposition_store, entity_store)

        with pytest.raises(StoreFailure, match="empty grounding"):
            await assembler.assemble([ungrounded], [brahms])

        assert await entity_store.count() == 0


class TestCompensation:
    """Rollback when the proposition write fails."""

    @pytest.mark.asyncio
    async def test_entities_removed_when_propositions_fail(self, entity_store):
        brahms = _entity("Brahms")
        propositions = AsyncMock()
        propositions.save_all.side_effect = RuntimeError("disk full")
        propositions.get.return_value = None
        assembler = Assembler(propositions, entity_store)

        with pytest.raises(StoreFailure, match="disk full"):
            await assembler.assemble([_proposition(brahms)], [brahms])

        assert await entity_store.get(brahms.id) is None

    @pytest.mark.asyncio
    async def test_entity_write_failure_skips_propositions(self):
        brahms = _entity("Brahms")
        propositions = AsyncMock()
        entities = AsyncMock()
        entities.save_all.side_effect = RuntimeError("locked")
        assembler = Assembler(propositions, entities)

        with pytest.raises(StoreFailure, match="Entity write failed"):
            await assembler.assemble([_proposition(brahms)], [brahms])

        propositions.save_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_rollback_failure_is_logged_not_masked(self):
        brahms = _entity("Brahms")
        propositions = AsyncMock()
        propositions.save_all.side_effect = RuntimeError("disk full")
        propositions.get.return_value = None
        entities = AsyncMock()
        entities.save_all.return_value = [brahms]
        entities.delete.side_effect = RuntimeError("also broken")
        assembler = Assembler(propositions, entities)

        with pytest.raises(StoreFailure, match="Proposition write failed"):
            await assembler.assemble([_proposition(brahms)], [brahms])

        entities.delete.assert_awaited_once_with([brahms.id])

    @pytest.mark.asyncio
    async def test_partial_write_keeps_referenced_entities(self, entity_store):
        brahms, clara = _entity("Brahms"), _entity("Clara Schumann")
        propositions = FailingSecondSave()
        assembler = Assembler(propositions, entity_store)

        with pytest.raises(StoreFailure, match="Proposition write failed"):
            await assembler.assemble([_proposition(brahms), _proposition(clara)], [brahms, clara])

        stored = await propositions.find_all()
        assert [p.mentions[0].resolved_id for p in stored] == [brahms.id]
        assert await entity_store.get(brahms.id) is not None
        assert await entity_store.get(clara.id) is None

    @pytest.mark.asyncio
    async def test_timed_out_write_keeps_entities(self, entity_store):
        brahms, clara = _entity("Brahms"), _entity("Clara Schumann")
        propositions = FailingSecondSave(delay=0.5)
        assembler = Assembler(propositions, entity_store, timeout=0.05)

        with pytest.raises(StoreFailure, match="timed out"):
            await assembler.assemble([_proposition(brahms), _proposition(clara)], [brahms, clara])

        for stored in await propositions.find_all():
            for entity_id in stored.resolved_entity_ids():
                assert await entity_store.get(entity_id) is not None
        assert await entity_store.count() == 2


class FailingSecondSave(InMemoryPropositionStore):
    """Saves the first proposition, then stalls or fails on the second."""

    def __init__(self, delay: float | None = None) -> None:
        super().__init__()
        self.delay = delay
        self.saves = 0

    async def save(self, proposition):
        self.saves += 1
        if self.saves == 2:
            if self.delay is None:
                raise RuntimeError("connection reset")
            await asyncio.sleep(self.delay)
        return await super().save(proposition)
