"""
Result Types

Outcomes and statistics of the resolution, revision and pipeline stages.

Resolution Models:
    - ResolutionLevel: Escalation level that produced a decision
    - EntityResolution: Outcome for one mention
    - EntityResolutionStats: Per-run counts by level

Revision Models:
    - RevisionOutcome: NEW | REINFORCED | MERGED | DUPLICATE
    - RevisionDecision: LLM structured output for revision classification
    - RevisionResult: Outcome plus the proposition to persist (if any)
    - RevisionStats: Per-run outcome counts

Pipeline Models:
    - PipelineResult: Result bundle of one process_window() call
    - LLMCallRecord / LLMCallReport: Call telemetry per stage
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from dialog_kg.types.entities import NamedEntity
from dialog_kg.types.propositions import Proposition

# -----------------------------------------------------------------------------
# Resolution Models
# -----------------------------------------------------------------------------


class ResolutionLevel(str, Enum):
    """Escalation levels, cheapest first. KNOWN_ENTITY bypasses the chain."""

    KNOWN_ENTITY = "known_entity"
    EXACT_MATCH = "exact_match"
    HEURISTIC_MATCH = "heuristic_match"
    EMBEDDING_MATCH = "embedding_match"
    LLM_VERIFICATION = "llm_verification"
    LLM_BAKEOFF = "llm_bakeoff"


class EntityResolution(BaseModel):
    """
    Outcome of resolving one mention.

    Attributes:
        entity_id: Resolved entity id, None if unresolved
        level: Level that made the decision (None if no level did)
        llm_calls: Number of LLM calls spent on this mention
        error: Set when the chain errored (mention left unresolved)
    """

    entity_id: str | None = None
    level: ResolutionLevel | None = None
    llm_calls: int = 0
    error: str | None = None

    @property
    def resolved(self) -> bool:
        return self.entity_id is not None


class EntityResolutionStats(BaseModel):
    """Counts of mentions resolved at each level during one run."""

    by_level: dict[str, int] = Field(default_factory=dict)
    unresolved: int = 0
    failures: int = 0
    llm_calls: int = 0

    def record(self, resolution: EntityResolution) -> None:
        if resolution.error is not None:
            self.failures += 1
        if resolution.level is not None and resolution.entity_id is not None:
            key = resolution.level.value
            self.by_level[key] = self.by_level.get(key, 0) + 1
        else:
            self.unresolved += 1
        self.llm_calls += resolution.llm_calls

    @property
    def resolved(self) -> int:
        return sum(self.by_level.values())


class VerificationDecision(BaseModel):
    """LLM yes/no decision: does a mention refer to a candidate entity?"""

    is_match: bool = Field(..., description="True only if the mention clearly refers to the candidate")
    reasoning: str = Field(default="", description="Brief explanation")


class BakeoffDecision(BaseModel):
    """LLM choice among several candidate entities."""

    choice: int | None = Field(
        default=None,
        description="1-based index of the matching candidate, or null if none match",
    )
    reasoning: str = Field(default="", description="Brief explanation")


# -----------------------------------------------------------------------------
# Revision Models
# -----------------------------------------------------------------------------


class RevisionOutcome(str, Enum):
    """Closed set of revision outcomes."""

    NEW = "new"
    REINFORCED = "reinforced"
    MERGED = "merged"
    DUPLICATE = "duplicate"


class RevisionDecision(BaseModel):
    """LLM classification of a new proposition against existing ones."""

    outcome: RevisionOutcome = Field(
        ...,
        description=(
            "new: no existing statement covers it; "
            "duplicate: identical meaning, nothing new; "
            "reinforced: same fact restated; "
            "merged: compatible, the new statement adds detail"
        ),
    )
    matched_id: str | None = Field(
        default=None,
        description="Id of the existing proposition for duplicate/reinforced/merged",
    )
    merged_text: str | None = Field(
        default=None,
        description="For merged only: one statement combining both",
    )
    reasoning: str = Field(default="", description="Brief explanation")


class RevisionResult(BaseModel):
    """
    Outcome of revising one proposition.

    `proposition` is what must be persisted: the new record for NEW, the
    updated existing record for REINFORCED/MERGED, None for DUPLICATE.
    """

    outcome: RevisionOutcome
    proposition: Proposition | None = None
    original: Proposition
    matched_id: str | None = None
    failed: bool = False


class RevisionStats(BaseModel):
    """Outcome counts for one run, exposed for auditability."""

    new: int = 0
    merged: int = 0
    reinforced: int = 0
    duplicate: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.new + self.merged + self.reinforced + self.duplicate

    def record(self, result: RevisionResult) -> None:
        if result.outcome == RevisionOutcome.NEW:
            self.new += 1
        elif result.outcome == RevisionOutcome.MERGED:
            self.merged += 1
        elif result.outcome == RevisionOutcome.REINFORCED:
            self.reinforced += 1
        else:
            self.duplicate += 1
        if result.failed:
            self.failed += 1


# -----------------------------------------------------------------------------
# Telemetry Models
# -----------------------------------------------------------------------------


class LLMCallRecord(BaseModel):
    """One provider call."""

    provider: str
    model: str
    operation: str
    stage: str = "unknown"
    latency_ms: int = 0
    succeeded: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class StageCallBreakdown(BaseModel):
    stage: str
    calls: int = 0
    failures: int = 0
    total_latency_ms: int = 0


class LLMCallReport(BaseModel):
    total_calls: int = 0
    total_latency_ms: int = 0
    by_stage: list[StageCallBreakdown] = Field(default_factory=list)

    def calls_for(self, stage: str) -> int:
        return next((s.calls for s in self.by_stage if s.stage == stage), 0)


# -----------------------------------------------------------------------------
# Pipeline Models
# -----------------------------------------------------------------------------


class PipelineResult(BaseModel):
    """
    Result of one process_window() call.

    Attributes:
        context_id: Context the window belongs to
        chunk_id: Grounding id used for the window
        propositions: Propositions persisted by this run (new or updated)
        new_entities: Entities created and persisted by this run
        stats: Revision outcome counts
        entity_stats: Resolution counts by level
        failed: True if the run aborted or persistence failed
        error: Failure description
        llm_calls: LLM call telemetry for the run
        duration_seconds: Wall-clock time
    """

    context_id: str
    chunk_id: str | None = None
    propositions: list[Proposition] = Field(default_factory=list)
    new_entities: list[NamedEntity] = Field(default_factory=list)
    stats: RevisionStats = Field(default_factory=RevisionStats)
    entity_stats: EntityResolutionStats = Field(default_factory=EntityResolutionStats)
    extracted: int = 0
    failed: bool = False
    error: str | None = None
    llm_calls: LLMCallReport | None = None
    duration_seconds: float = 0.0

    @property
    def new_entity_count(self) -> int:
        return len(self.new_entities)

    @classmethod
    def failure(cls, context_id: str, error: str, **kwargs: Any) -> "PipelineResult":
        return cls(context_id=context_id, failed=True, error=error, **kwargs)

    def info_string(self) -> str:
        if self.failed:
            return f"Pipeline run for {self.context_id} failed: {self.error}"
        return (
            f"{self.extracted} extracted, {self.stats.new} new, "
            f"{self.stats.merged} merged, {self.stats.reinforced} reinforced, "
            f"{self.stats.duplicate} duplicate; {self.new_entity_count} new entities "
            f"in {self.duration_seconds:.2f}s"
        )
