"""
Proposition Reviser

Compares each newly extracted proposition with existing ones in the same
context and classifies it as exactly one of:

    NEW         - nothing similar exists; persist as-is
    DUPLICATE   - same statement as an active proposition; discard
    REINFORCED  - same fact restated; raise the existing record's confidence
    MERGED      - compatible but incomplete; extend the existing record's text

The classification is model-assisted but the result is always one of those
four. Deterministic fast paths run first:

    - no candidates                          -> NEW (no LLM call)
    - identical normalized text, same or
      fewer entities, candidate ACTIVE       -> DUPLICATE (no LLM call)

Anything the model answers that cannot be applied (unknown id, missing
merged text, an error or timeout) falls back to NEW: a potentially valuable
fact is never silently dropped and an existing record is never changed on
an uncertain comparison.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from dialog_kg.errors import RevisionFailure
from dialog_kg.types import (
    EntityMention,
    MentionRole,
    Proposition,
    PropositionStatus,
    RevisionDecision,
    RevisionOutcome,
    RevisionResult,
)
from dialog_kg.utils.telemetry import telemetry_stage
from dialog_kg.utils.text import normalize_text, text_similarity

if TYPE_CHECKING:
    from dialog_kg.providers.base import LLMProvider
    from dialog_kg.storage.base import PropositionStore

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Update policy
# -----------------------------------------------------------------------------


class RevisionPolicy:
    """
    How REINFORCED and MERGED outcomes change the existing record.

    Confidence on reinforcement rises by `boost` times the remaining headroom,
    so it approaches but never exceeds 1.0. Decay takes the lower of the two
    values (the restatement suggests the fact is at least as durable).
    """

    def __init__(self, reinforcement_boost: float = 0.1) -> None:
        if not 0.0 <= reinforcement_boost <= 1.0:
            raise ValueError(f"reinforcement_boost must be in [0, 1], got {reinforcement_boost}")
        self.reinforcement_boost = reinforcement_boost

    def reinforce(self, existing: Proposition, new: Proposition) -> Proposition:
        base = max(existing.confidence, new.confidence)
        confidence = min(1.0, base + self.reinforcement_boost * (1.0 - base))
        return existing.model_copy(update={
            "confidence": confidence,
            "decay": min(existing.decay, new.decay),
            "grounding": _union(existing.grounding, new.grounding),
            "revised": datetime.now(timezone.utc),
        })

    def merge(self, existing: Proposition, new: Proposition, merged_text: str) -> Proposition:
        return existing.model_copy(update={
            "text": merged_text.strip(),
            "mentions": merge_mentions(existing.mentions, new.mentions),
            "confidence": max(existing.confidence, new.confidence),
            "decay": min(existing.decay, new.decay),
            "grounding": _union(existing.grounding, new.grounding),
            "reasoning": new.reasoning or existing.reasoning,
            "revised": datetime.now(timezone.utc),
            # Text changed, the store re-embeds
            "embedding": None,
        })


def _union(first: list[str], second: list[str]) -> list[str]:
    return list(dict.fromkeys([*first, *second]))


def merge_mentions(existing: list[EntityMention], new: list[EntityMention]) -> list[EntityMention]:
    """Existing mentions first, then unseen new ones. Keeps a single SUBJECT."""
    merged = [m.model_copy() for m in existing]
    seen = {m.key() for m in merged}
    has_subject = any(m.role == MentionRole.SUBJECT for m in merged)
    for mention in new:
        if mention.key() in seen:
            continue
        role = mention.role
        if role == MentionRole.SUBJECT and has_subject:
            role = MentionRole.OTHER
        has_subject = has_subject or role == MentionRole.SUBJECT
        merged.append(mention.model_copy(update={"role": role}))
        seen.add(mention.key())
    return merged


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------

_REVISION_SYSTEM_PROMPT = """\
You maintain a knowledge base of statements learned from conversations.
Compare a NEW statement with EXISTING statements and classify it:

- duplicate: an existing statement says exactly this; nothing new
- reinforced: an existing statement states the same fact in other words
- merged: an existing statement is compatible but the new one adds detail;
  write merged_text combining both into one self-contained statement
- new: no existing statement covers it, or it contradicts one

Only choose duplicate/reinforced/merged when you are confident; otherwise new.
Set matched_id to the id of the existing statement you compared against."""

_REVISION_USER_TEMPLATE = """\
NEW STATEMENT:
  {text}
  (confidence {confidence:.2f}, decay {decay:.2f})

EXISTING STATEMENTS:
{candidates}"""


class PropositionReviser:
    """
    Classifies propositions against existing ones and applies the update policy.

    Args:
        llm: Provider for the revision classification
        store: Proposition store used to fetch candidates
        policy: Confidence/decay update policy
        candidate_limit: Max existing propositions compared per new one
        similarity_threshold: Min vector similarity for text-based candidates
        timeout: Seconds allowed for each store read and LLM call
    """

    def __init__(
        self,
        llm: "LLMProvider",
        store: "PropositionStore",
        *,
        policy: RevisionPolicy | None = None,
        candidate_limit: int = 8,
        similarity_threshold: float = 0.75,
        timeout: float | None = None,
    ) -> None:
        self.llm = llm
        self.store = store
        self.policy = policy or RevisionPolicy()
        self.candidate_limit = candidate_limit
        self.similarity_threshold = similarity_threshold
        self.timeout = timeout

    async def find_candidates(
        self,
        proposition: Proposition,
        pending: list[Proposition] | None = None,
    ) -> list[Proposition]:
        """
        Existing ACTIVE propositions in the same context that share an entity
        or are textually similar, plus matching propositions from `pending`
        (earlier results of the same run, not yet persisted).
        """
        found: dict[str, Proposition] = {}

        for entity_id in sorted(proposition.resolved_entity_ids()):
            for candidate in await asyncio.wait_for(
                self.store.find_by_entity(entity_id, context_id=proposition.context_id),
                timeout=self.timeout,
            ):
                found.setdefault(candidate.id, candidate)

        similar = await asyncio.wait_for(
            self.store.find_similar(
                proposition.text,
                top_k=self.candidate_limit,
                threshold=self.similarity_threshold,
                context_id=proposition.context_id,
                status=PropositionStatus.ACTIVE,
            ),
            timeout=self.timeout,
        )
        for candidate, _score in similar:
            found.setdefault(candidate.id, candidate)

        # Pending records supersede their stored versions
        entity_ids = proposition.resolved_entity_ids()
        for candidate in pending or []:
            if candidate.context_id != proposition.context_id:
                continue
            if (
                entity_ids & candidate.resolved_entity_ids()
                or text_similarity(candidate.text, proposition.text) >= self.similarity_threshold
            ):
                found[candidate.id] = candidate

        candidates = [
            c for c in found.values()
            if c.status == PropositionStatus.ACTIVE and c.id != proposition.id
        ]
        candidates.sort(key=lambda c: text_similarity(c.text, proposition.text), reverse=True)
        return candidates[: self.candidate_limit]

    async def revise(
        self,
        proposition: Proposition,
        existing_candidates: list[Proposition],
    ) -> RevisionResult:
        """
        Classify `proposition` against `existing_candidates`. Never raises.

        Returns:
            RevisionResult whose `proposition` is the record to persist
            (None for DUPLICATE)
        """
        try:
            return await self._revise(proposition, existing_candidates)
        except Exception as e:
            failure = RevisionFailure(f"Revision of '{proposition.text[:60]}' failed: {e}")
            logger.warning(f"{failure}. Treating as NEW.")
            return self._new(proposition, failed=True)

    async def _revise(
        self,
        proposition: Proposition,
        existing_candidates: list[Proposition],
    ) -> RevisionResult:
        candidates = [
            c for c in existing_candidates
            if c.status == PropositionStatus.ACTIVE and c.id != proposition.id
        ]
        if not candidates:
            return self._new(proposition)

        identical = self._find_identical(proposition, candidates)
        if identical is not None:
            return RevisionResult(
                outcome=RevisionOutcome.DUPLICATE,
                original=proposition,
                matched_id=identical.id,
            )

        decision = await self._classify(proposition, candidates)
        if decision.outcome == RevisionOutcome.NEW:
            return self._new(proposition)

        matched = next((c for c in candidates if c.id == decision.matched_id), None)
        if matched is None:
            logger.warning(
                f"Revision answered {decision.outcome.value} with unknown id "
                f"'{decision.matched_id}'. Treating as NEW."
            )
            return self._new(proposition, failed=True)

        if decision.outcome == RevisionOutcome.DUPLICATE:
            return RevisionResult(
                outcome=RevisionOutcome.DUPLICATE,
                original=proposition,
                matched_id=matched.id,
            )

        if decision.outcome == RevisionOutcome.REINFORCED:
            updated = self.policy.reinforce(matched, proposition)
        else:
            if not decision.merged_text or not decision.merged_text.strip():
                logger.warning("Revision answered merged without merged_text. Treating as NEW.")
                return self._new(proposition, failed=True)
            updated = self.policy.merge(matched, proposition, decision.merged_text)

        return RevisionResult(
            outcome=decision.outcome,
            proposition=updated,
            original=proposition,
            matched_id=matched.id,
        )

    @staticmethod
    def _new(proposition: Proposition, failed: bool = False) -> RevisionResult:
        return RevisionResult(
            outcome=RevisionOutcome.NEW,
            proposition=proposition,
            original=proposition,
            failed=failed,
        )

    @staticmethod
    def _find_identical(
        proposition: Proposition,
        candidates: list[Proposition],
    ) -> Proposition | None:
        text = normalize_text(proposition.text)
        entity_ids = proposition.resolved_entity_ids()
        for candidate in candidates:
            if normalize_text(candidate.text) != text:
                continue
            if entity_ids <= candidate.resolved_entity_ids():
                return candidate
        return None

    async def _classify(
        self,
        proposition: Proposition,
        candidates: list[Proposition],
    ) -> RevisionDecision:
        lines = []
        for candidate in candidates:
            lines.append(
                f"- id: {candidate.id}\n  text: {candidate.text}\n"
                f"  confidence {candidate.confidence:.2f}, decay {candidate.decay:.2f}"
            )
        prompt = _REVISION_USER_TEMPLATE.format(
            text=proposition.text,
            confidence=proposition.confidence,
            decay=proposition.decay,
            candidates="\n".join(lines),
        )
        with telemetry_stage("revision"):
            decision = await asyncio.wait_for(
                self.llm.generate_structured(
                    prompt, RevisionDecision, system=_REVISION_SYSTEM_PROMPT
                ),
                timeout=self.timeout,
            )
        if not isinstance(decision, RevisionDecision):
            raise RevisionFailure(f"Revision returned {type(decision).__name__}")
        return decision
