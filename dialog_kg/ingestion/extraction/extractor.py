"""
Proposition Extractor

Turns one conversation window into candidate propositions with unresolved
entity mentions, constrained to a domain schema.

The governing instruction is "extract only what the conversation supports":
no general world knowledge, no facts the speakers did not state or clearly
imply. That contract lives in the system prompt.

Schema adherence:
    STRICT  - propositions mentioning an off-schema type are dropped
    RELAXED - off-schema types are kept as extracted
Known-entity types (e.g. "User") are always allowed.

Example:
    >>> extractor = PropositionExtractor(llm)
    >>> raw = await extractor.extract(
    ...     "User: I love Brahms' violin concerto.\\nAssistant: It's a masterpiece.",
    ...     DomainSchema.of("Composer", "Work"),
    ... )
    >>> raw[0].text
    'The user loves the violin concerto by Brahms'
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from dialog_kg.errors import ExtractionFailure
from dialog_kg.types import (
    DomainSchema,
    ExtractedMention,
    ExtractionResult,
    KnownEntity,
    RawProposition,
    SchemaAdherence,
)
from dialog_kg.utils.telemetry import telemetry_stage

if TYPE_CHECKING:
    from dialog_kg.providers.base import LLMProvider

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------

_EXTRACTION_SYSTEM_PROMPT = """\
You extract durable knowledge from a conversation between a user and an assistant.

## Governing Rule
Extract ONLY what the conversation supports. Do not add general world knowledge,
do not complete facts from memory, do not infer beyond what a careful reader would.
If the assistant states a fact the user did not dispute, you may extract it with
lower confidence. Small talk and pleasantries produce nothing.

## Entity Types
Every mention MUST use one of these types:
{entity_types}

{known_entities}
## Propositions
- One self-contained statement per proposition, no dangling pronouns
  ("The user loves Brahms' Violin Concerto", not "I love it")
- Refer to the user as "the user" in the text
- Mark at most ONE mention as subject: what the statement is about
- span is the mention exactly as it appears in the conversation
- confidence (0-1): how clearly the conversation supports the statement
- decay (0-1): how fast it goes stale. 0 = permanent fact (a composer's nationality),
  0.3 = stable preference, 1 = momentary state ("is listening to X right now")"""

_EXTRACTION_USER_TEMPLATE = """\
{variables}CONVERSATION:
{window_text}

Extract the propositions this conversation supports."""


def _format_known_entities(known_entities: list[KnownEntity]) -> str:
    if not known_entities:
        return ""
    lines = ["## Known Entities", "These entities are already known. Use their type when mentioned:"]
    for known in known_entities:
        entity = known.entity
        spans = ", ".join(f'"{s}"' for s in known.spans[:8])
        hint = f" {known.role_hint}" if known.role_hint else ""
        lines.append(f"- {entity.name} ({entity.entity_type}), referred to as {spans}.{hint}")
    lines.append("")
    return "\n".join(lines) + "\n"


def _format_variables(prompt_variables: dict[str, Any] | None) -> str:
    if not prompt_variables:
        return ""
    lines = ["CONTEXT:"]
    lines.extend(f"{key}: {value}" for key, value in prompt_variables.items())
    return "\n".join(lines) + "\n\n"


class PropositionExtractor:
    """
    Schema-constrained proposition extraction.

    Args:
        llm: Provider used for the structured extraction call
        schema_adherence: STRICT drops off-schema propositions, RELAXED keeps them
        timeout: Seconds before the extraction call is abandoned
    """

    def __init__(
        self,
        llm: "LLMProvider",
        *,
        schema_adherence: SchemaAdherence = SchemaAdherence.STRICT,
        timeout: float | None = None,
    ) -> None:
        self.llm = llm
        self.schema_adherence = schema_adherence
        self.timeout = timeout

    def build_prompts(
        self,
        window_text: str,
        schema: DomainSchema,
        known_entities: list[KnownEntity] | None = None,
        prompt_variables: dict[str, Any] | None = None,
    ) -> tuple[str, str]:
        """Return (system, user) prompts for one window."""
        known = known_entities or []
        type_lines = schema.describe()
        known_types = {k.entity.entity_type for k in known} - set(schema.type_names)
        if known_types:
            type_lines += "\n" + "\n".join(f"- **{t}**" for t in sorted(known_types))

        system = _EXTRACTION_SYSTEM_PROMPT.format(
            entity_types=type_lines,
            known_entities=_format_known_entities(known),
        )
        user = _EXTRACTION_USER_TEMPLATE.format(
            variables=_format_variables(prompt_variables),
            window_text=window_text,
        )
        return system, user

    async def extract(
        self,
        window_text: str,
        schema: DomainSchema,
        known_entities: list[KnownEntity] | None = None,
        prompt_variables: dict[str, Any] | None = None,
    ) -> list[RawProposition]:
        """
        Extract candidate propositions from one window.

        Raises:
            ExtractionFailure: On timeout, provider error or malformed output
        """
        if not window_text.strip():
            return []

        system, prompt = self.build_prompts(window_text, schema, known_entities, prompt_variables)

        try:
            with telemetry_stage("extraction"):
                result = await asyncio.wait_for(
                    self.llm.generate_structured(prompt, ExtractionResult, system=system),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError as e:
            detail = f": {e}" if str(e) else ""
            raise ExtractionFailure(f"Extraction timed out after {self.timeout}s{detail}") from e
        except Exception as e:
            raise ExtractionFailure(f"Extraction call failed: {e}") from e

        if not isinstance(result, ExtractionResult):
            raise ExtractionFailure(
                f"Extraction returned {type(result).__name__}, expected ExtractionResult"
            )

        kept = self._apply_schema(result.propositions, schema, known_entities or [])
        logger.debug(
            f"Extracted {len(result.propositions)} propositions, kept {len(kept)} after schema check"
        )
        return kept

    def _apply_schema(
        self,
        propositions: list[RawProposition],
        schema: DomainSchema,
        known_entities: list[KnownEntity],
    ) -> list[RawProposition]:
        """Canonicalize mention types and drop off-schema propositions under STRICT."""
        kept: list[RawProposition] = []
        for raw in propositions:
            if not raw.text.strip():
                continue

            mentions: list[ExtractedMention] = []
            off_schema: list[str] = []
            for mention in raw.mentions:
                if not mention.span.strip():
                    continue
                canonical = self._canonical_type(mention, schema, known_entities)
                if canonical is None:
                    off_schema.append(mention.type)
                    canonical = mention.type
                mentions.append(mention.model_copy(update={"type": canonical}))

            if off_schema and self.schema_adherence == SchemaAdherence.STRICT:
                logger.info(
                    f"Dropping proposition with off-schema types {off_schema}: '{raw.text}'"
                )
                continue

            kept.append(raw.model_copy(update={"mentions": mentions}))
        return kept

    @staticmethod
    def _canonical_type(
        mention: ExtractedMention,
        schema: DomainSchema,
        known_entities: list[KnownEntity],
    ) -> str | None:
        for known in known_entities:
            if known.matches(mention.span):
                return known.entity.entity_type
        if canonical := schema.canonical_type(mention.type):
            return canonical
        for known in known_entities:
            if known.entity.entity_type.lower() == mention.type.strip().lower():
                return known.entity.entity_type
        return None
