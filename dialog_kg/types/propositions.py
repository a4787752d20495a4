"""
Proposition Types

Propositions are natural-language statements with typed references to entities.

Storage Models:
    - Proposition: Persisted statement with confidence, decay and grounding
    - EntityMention: In-text entity reference owned by one proposition
    - PropositionStatus / MentionRole: Closed enums

Extraction Models (LLM structured output):
    - ExtractedMention: Mention as returned by the extraction LLM
    - RawProposition: Unresolved proposition from one window
    - ExtractionResult: Wrapper for the extraction call
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PropositionStatus(str, Enum):
    """Lifecycle status of a stored proposition."""

    ACTIVE = "active"
    SUPERSEDED = "superseded"
    RETRACTED = "retracted"


class MentionRole(str, Enum):
    """Role an entity plays within a proposition."""

    SUBJECT = "subject"
    OBJECT = "object"
    OTHER = "other"


class EntityMention(BaseModel):
    """
    A reference to an entity inside a proposition.

    Attributes:
        span: Surface text as it appeared ("Brahms", "I")
        type: Schema label ("Composer")
        role: SUBJECT, OBJECT or OTHER
        resolved_id: Entity id, or None while unresolved
    """

    span: str
    type: str
    role: MentionRole = MentionRole.OTHER
    resolved_id: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_id is not None

    def key(self) -> tuple[str, str]:
        """Identity of a mention within one proposition."""
        return (self.resolved_id or self.span.lower(), self.type.lower())

    def __str__(self) -> str:
        return f"{self.span}:{self.type}→{self.resolved_id or '?'}"


class Proposition(BaseModel):
    """
    A persisted factual statement.

    Confidence is the extractor/reviser certainty. Decay is the rate at which
    the statement goes stale: 0 is a permanent fact, 1 is momentary.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    context_id: str = "default"
    text: str
    mentions: list[EntityMention] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    decay: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str | None = None
    grounding: list[str] = Field(default_factory=list)
    created: datetime = Field(default_factory=utcnow)
    revised: datetime = Field(default_factory=utcnow)
    status: PropositionStatus = PropositionStatus.ACTIVE
    embedding: list[float] | None = None

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("grounding")
    @classmethod
    def _dedupe_grounding(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _single_subject(self) -> "Proposition":
        subjects = [m for m in self.mentions if m.role == MentionRole.SUBJECT]
        if len(subjects) > 1:
            raise ValueError(
                f"Proposition may have at most one SUBJECT mention, got {len(subjects)}"
            )
        return self

    @property
    def subject(self) -> EntityMention | None:
        return next((m for m in self.mentions if m.role == MentionRole.SUBJECT), None)

    @property
    def is_fully_resolved(self) -> bool:
        return all(m.is_resolved for m in self.mentions)

    @property
    def is_partially_resolved(self) -> bool:
        resolved = sum(1 for m in self.mentions if m.is_resolved)
        return 0 < resolved < len(self.mentions)

    def resolved_entity_ids(self) -> set[str]:
        return {m.resolved_id for m in self.mentions if m.resolved_id}

    def info_string(self, verbose: bool = False) -> str:
        mentions = ", ".join(str(m) for m in self.mentions)
        line = f"{self.text} (conf={self.confidence:.2f}, decay={self.decay:.2f})"
        if verbose:
            line += f" [{mentions}] grounding={self.grounding}"
        return line


# -----------------------------------------------------------------------------
# Extraction Models (LLM structured output)
# -----------------------------------------------------------------------------


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


class ExtractedMention(BaseModel):
    """An entity reference as returned by the extraction LLM."""

    span: str = Field(..., description="Exact text of the mention as it appears in the conversation")
    type: str = Field(..., description="Entity type label, must be one of the schema types")
    role: MentionRole = Field(
        default=MentionRole.OTHER,
        description="subject (what the statement is about, at most one), object, or other",
    )


class RawProposition(BaseModel):
    """
    A candidate proposition from one conversation window.

    Mentions are unresolved at this point. Confidence and decay are clamped
    into [0, 1] rather than rejected, since models occasionally overshoot.
    """

    text: str = Field(..., description="Self-contained statement, no dangling pronouns")
    mentions: list[ExtractedMention] = Field(default_factory=list)
    confidence: float = Field(default=0.7, description="Certainty the conversation supports this, 0-1")
    decay: float = Field(
        default=0.2,
        description="How quickly this becomes stale: 0 = permanent fact, 1 = momentary state",
    )
    reasoning: str | None = Field(default=None, description="Brief justification from the conversation")

    @field_validator("confidence", "decay", mode="before")
    @classmethod
    def _clamp_unit(cls, value: float) -> float:
        return _clamp(value)

    def to_mentions(self) -> list[EntityMention]:
        """Convert to unresolved EntityMentions, keeping only the first SUBJECT."""
        mentions: list[EntityMention] = []
        seen_subject = False
        for m in self.mentions:
            role = m.role
            if role == MentionRole.SUBJECT:
                if seen_subject:
                    role = MentionRole.OTHER
                seen_subject = True
            mentions.append(EntityMention(span=m.span, type=m.type, role=role))
        return mentions


class ExtractionResult(BaseModel):
    """Structured output of one extraction call."""

    propositions: list[RawProposition] = Field(default_factory=list)
