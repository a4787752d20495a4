"""
Knowledge Base Assembler

Final phase that writes one run's output to storage.

Write order (propositions reference entities):
    1. Entities - only new ones that a persisted proposition references
    2. Propositions - new records and updated (reinforced/merged) records

If the proposition write raises, entities from step 1 that no stored
proposition references are deleted again. A partially applied write keeps
the entities its stored records point at. On a timeout nothing is deleted,
since the cancelled write may still complete.
"""

from __future__ import annotations

import asyncio
import logging

from dialog_kg.errors import StoreFailure
from dialog_kg.storage.base import EntityStore, PropositionStore, check_persistable
from dialog_kg.types import NamedEntity, Proposition

logger = logging.getLogger(__name__)


class Assembler:
    """
    Writes revised propositions and their new entities.

    Usage:
        assembler = Assembler(proposition_store, entity_store)
        propositions, entities = await assembler.assemble(propositions, new_entities)
    """

    def __init__(
        self,
        propositions: PropositionStore,
        entities: EntityStore,
        *,
        timeout: float | None = None,
    ) -> None:
        self.propositions = propositions
        self.entities = entities
        self.timeout = timeout

    @staticmethod
    def referenced_entities(
        propositions: list[Proposition],
        new_entities: list[NamedEntity],
    ) -> list[NamedEntity]:
        """New entities referenced by at least one of `propositions`."""
        referenced: set[str] = set()
        for proposition in propositions:
            referenced |= proposition.resolved_entity_ids()
        return [e for e in new_entities if e.id in referenced]

    async def assemble(
        self,
        propositions: list[Proposition],
        new_entities: list[NamedEntity],
    ) -> tuple[list[Proposition], list[NamedEntity]]:
        """
        Persist one run.

        Returns:
            (persisted propositions, persisted new entities)

        Raises:
            StoreFailure: If either write fails. Entities of this call that no
                stored proposition references have been removed again,
                unless the proposition write timed out.
        """
        if not propositions:
            return [], []

        for proposition in propositions:
            check_persistable(proposition)

        entities = self.referenced_entities(propositions, new_entities)
        skipped = len(new_entities) - len(entities)
        if skipped:
            logger.debug(f"Skipping {skipped} new entities not referenced by any proposition")

        written_entities: list[NamedEntity] = []
        try:
            if entities:
                written_entities = await asyncio.wait_for(
                    self.entities.save_all(entities), timeout=self.timeout
                )
        except Exception as e:
            logger.error(f"Entity write failed ({len(entities)} entities): {e}")
            raise StoreFailure(f"Entity write failed: {e}") from e

        try:
            written = await asyncio.wait_for(
                self.propositions.save_all(propositions), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            # The write may still land after the await is cancelled
            logger.error(
                f"Proposition write timed out after writing {len(written_entities)} entities; "
                f"keeping them since propositions may still reference them"
            )
            raise StoreFailure(f"Proposition write timed out after {self.timeout}s") from e
        except Exception as e:
            logger.error(
                f"Proposition write failed after writing {len(written_entities)} entities. "
                f"Rolling back unreferenced entities. Error: {e}"
            )
            await self._compensate(propositions, written_entities)
            raise StoreFailure(f"Proposition write failed: {e}") from e

        logger.info(f"Assembled {len(written)} propositions, {len(written_entities)} new entities")
        return written, written_entities

    async def _compensate(
        self,
        propositions: list[Proposition],
        entities: list[NamedEntity],
    ) -> None:
        """Delete the entities of this run that no stored proposition references."""
        if not entities:
            return
        try:
            referenced: set[str] = set()
            for proposition in propositions:
                stored = await asyncio.wait_for(
                    self.propositions.get(proposition.id), timeout=self.timeout
                )
                if stored is not None:
                    referenced |= stored.resolved_entity_ids()
            orphans = [e.id for e in entities if e.id not in referenced]
            if orphans:
                await asyncio.wait_for(self.entities.delete(orphans), timeout=self.timeout)
            kept = len(entities) - len(orphans)
            if kept:
                logger.warning(f"Kept {kept} entities referenced by partially written propositions")
        except Exception as e:
            logger.error(
                f"Rollback of {len(entities)} entities failed, store may hold orphans: {e}"
            )
