"""
Entity Resolution

Five-level escalation chain, cheapest first:

Modules:
    stages: ExactMatch, HeuristicMatch, EmbeddingMatch, LlmVerification, LlmBakeoff
    judge: Verification/bakeoff capability and its LLM implementation
    resolver: EscalatingEntityResolver, the chain runner

Stages 1-3 (no LLM):
    - Exact id or name/alias lookup
    - Normalized name and rapidfuzz token scoring
    - Embedding similarity with auto-accept margin

Stages 4-5 (LLM, only for what survives):
    - Yes/no verification for a single candidate
    - Bakeoff among several candidates (FULL or COMPACT prompt)
"""

from dialog_kg.ingestion.resolution.judge import LlmResolutionJudge, PromptMode, ResolutionJudge
from dialog_kg.ingestion.resolution.resolver import EscalatingEntityResolver
from dialog_kg.ingestion.resolution.stages import (
    EmbeddingMatchStage,
    ExactMatchStage,
    HeuristicMatchStage,
    LlmBakeoffStage,
    LlmVerificationStage,
    OutcomeKind,
    ResolutionContext,
    ResolutionStage,
    StageOutcome,
)

__all__ = [
    "EscalatingEntityResolver",
    "LlmResolutionJudge",
    "PromptMode",
    "ResolutionJudge",
    "EmbeddingMatchStage",
    "ExactMatchStage",
    "HeuristicMatchStage",
    "LlmBakeoffStage",
    "LlmVerificationStage",
    "OutcomeKind",
    "ResolutionContext",
    "ResolutionStage",
    "StageOutcome",
]
