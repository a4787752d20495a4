"""
Resolution Judge

The model-assisted part of entity resolution, behind a narrow interface:

    verify(mention, candidate)   -> bool          (one plausible candidate)
    choose(mention, candidates)  -> id | None     (several plausible candidates)

LlmResolutionJudge implements both with structured LLM calls. Bakeoff
prompts come in two strategies:

    FULL    - candidate names, types, descriptions and aliases
    COMPACT - candidate names and types only (roughly a quarter of the tokens)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING

from dialog_kg.types import BakeoffDecision, EntityMention, NamedEntity, VerificationDecision
from dialog_kg.utils.telemetry import telemetry_stage

if TYPE_CHECKING:
    from dialog_kg.ingestion.resolution.stages import ResolutionContext
    from dialog_kg.providers.base import LLMProvider

logger = logging.getLogger(__name__)

DESCRIPTION_PREVIEW_CHARS = 200


class PromptMode(str, Enum):
    """Cost/accuracy trade-off for bakeoff prompts."""

    FULL = "full"
    COMPACT = "compact"


class ResolutionJudge(ABC):
    """Decides ambiguous mention-to-entity matches."""

    @abstractmethod
    async def verify(
        self,
        mention: EntityMention,
        candidate: NamedEntity,
        context: "ResolutionContext",
    ) -> bool:
        """Does `mention` refer to `candidate`?"""
        ...

    @abstractmethod
    async def choose(
        self,
        mention: EntityMention,
        candidates: list[tuple[NamedEntity, float]],
        context: "ResolutionContext",
        mode: PromptMode = PromptMode.COMPACT,
    ) -> str | None:
        """Pick the candidate `mention` refers to, or None."""
        ...


_JUDGE_SYSTEM_PROMPT = (
    "You resolve entity mentions from a conversation to entities in a knowledge base. "
    "Be conservative: only match if the mention clearly refers to the same real-world "
    "entity. A composer is not one of their works; a performer is not the ensemble "
    "they play in. When uncertain, answer no match."
)


class LlmResolutionJudge(ResolutionJudge):
    """
    LLM-backed judge.

    Args:
        llm: Provider for the yes/no and choice calls (a fast model is enough)
    """

    def __init__(self, llm: "LLMProvider") -> None:
        self.llm = llm

    async def verify(
        self,
        mention: EntityMention,
        candidate: NamedEntity,
        context: "ResolutionContext",
    ) -> bool:
        prompt = self._build_verification_prompt(mention, candidate, context)
        with telemetry_stage("resolution.verification"):
            decision = await self.llm.generate_structured(
                prompt, VerificationDecision, system=_JUDGE_SYSTEM_PROMPT
            )
        logger.debug(
            f"Verification '{mention.span}' -> '{candidate.name}': "
            f"{decision.is_match} ({decision.reasoning})"
        )
        return decision.is_match

    async def choose(
        self,
        mention: EntityMention,
        candidates: list[tuple[NamedEntity, float]],
        context: "ResolutionContext",
        mode: PromptMode = PromptMode.COMPACT,
    ) -> str | None:
        if not candidates:
            return None
        prompt = self._build_bakeoff_prompt(mention, candidates, context, mode)
        with telemetry_stage("resolution.bakeoff"):
            decision = await self.llm.generate_structured(
                prompt, BakeoffDecision, system=_JUDGE_SYSTEM_PROMPT
            )

        if decision.choice is None:
            return None
        if not 1 <= decision.choice <= len(candidates):
            logger.warning(
                f"Bakeoff for '{mention.span}' chose {decision.choice}, "
                f"out of range 1..{len(candidates)}; treating as no match"
            )
            return None
        return candidates[decision.choice - 1][0].id

    def _build_verification_prompt(
        self,
        mention: EntityMention,
        candidate: NamedEntity,
        context: "ResolutionContext",
    ) -> str:
        lines = [
            f'Does the mention "{mention.span}" ({mention.type}) refer to this entity?',
            "",
        ]
        if context.proposition_text:
            lines.extend([f"Statement: {context.proposition_text}", ""])
        lines.extend([
            "CANDIDATE:",
            f"  Name: {candidate.name}",
            f"  Type: {candidate.entity_type}",
        ])
        if candidate.aliases:
            lines.append(f"  Also known as: {', '.join(candidate.aliases)}")
        if candidate.description:
            lines.append(f"  Description: {candidate.description[:DESCRIPTION_PREVIEW_CHARS]}")
        return "\n".join(lines)

    def _build_bakeoff_prompt(
        self,
        mention: EntityMention,
        candidates: list[tuple[NamedEntity, float]],
        context: "ResolutionContext",
        mode: PromptMode,
    ) -> str:
        lines = [f'Which entity does the mention "{mention.span}" ({mention.type}) refer to?']
        if context.proposition_text:
            lines.append(f"Statement: {context.proposition_text}")
        lines.extend(["", "CANDIDATES:"])

        for i, (candidate, score) in enumerate(candidates, 1):
            if mode == PromptMode.COMPACT:
                lines.append(f"  {i}. {candidate.name} ({candidate.entity_type})")
                continue
            pct = int(score * 100)
            lines.append(f'  {i}. "{candidate.name}" ({candidate.entity_type}, {pct}% similar)')
            if candidate.aliases:
                lines.append(f"     Also known as: {', '.join(candidate.aliases)}")
            if candidate.description:
                preview = candidate.description
                if len(preview) > DESCRIPTION_PREVIEW_CHARS:
                    preview = preview[:DESCRIPTION_PREVIEW_CHARS] + "..."
                lines.append(f"     Description: {preview}")

        lines.extend([
            "",
            "Answer with the candidate number, or null if none is the same entity.",
        ])
        return "\n".join(lines)
