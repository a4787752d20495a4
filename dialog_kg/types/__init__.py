"""
DialogKG Types

Pydantic models shared across the pipeline.
"""

from dialog_kg.types.conversation import (
    AnalysisState,
    Conversation,
    ConversationWindow,
    Message,
    MessageRole,
)
from dialog_kg.types.entities import (
    SELF_REFERENCES,
    USER_TYPE,
    DomainSchema,
    EntityTypeDefinition,
    KnownEntity,
    NamedEntity,
    SchemaAdherence,
)
from dialog_kg.types.propositions import (
    EntityMention,
    ExtractedMention,
    ExtractionResult,
    MentionRole,
    Proposition,
    PropositionStatus,
    RawProposition,
)
from dialog_kg.types.results import (
    BakeoffDecision,
    EntityResolution,
    EntityResolutionStats,
    LLMCallRecord,
    LLMCallReport,
    PipelineResult,
    ResolutionLevel,
    RevisionDecision,
    RevisionOutcome,
    RevisionResult,
    RevisionStats,
    StageCallBreakdown,
    VerificationDecision,
)

__all__ = [
    # Conversation
    "AnalysisState",
    "Conversation",
    "ConversationWindow",
    "Message",
    "MessageRole",
    # Entities
    "SELF_REFERENCES",
    "USER_TYPE",
    "DomainSchema",
    "EntityTypeDefinition",
    "KnownEntity",
    "NamedEntity",
    "SchemaAdherence",
    # Propositions
    "EntityMention",
    "ExtractedMention",
    "ExtractionResult",
    "MentionRole",
    "Proposition",
    "PropositionStatus",
    "RawProposition",
    # Results
    "BakeoffDecision",
    "EntityResolution",
    "EntityResolutionStats",
    "LLMCallRecord",
    "LLMCallReport",
    "PipelineResult",
    "ResolutionLevel",
    "RevisionDecision",
    "RevisionOutcome",
    "RevisionResult",
    "RevisionStats",
    "StageCallBreakdown",
    "VerificationDecision",
]
