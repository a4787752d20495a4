"""
Run-scoped LLM call telemetry.

Telemetry is enabled by attaching a CallCollector via contextvars.
Providers read the active collector/stage and emit call records automatically,
so each pipeline run can report how many LLM calls each stage spent.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar

from dialog_kg.types.results import LLMCallRecord, LLMCallReport, StageCallBreakdown

_COLLECTOR: ContextVar[CallCollector | None] = ContextVar(
    "dialog_kg_call_collector",
    default=None,
)
_STAGE: ContextVar[str] = ContextVar("dialog_kg_call_stage", default="unknown")


class CallCollector:
    """Accumulates provider call records for one pipeline run."""

    def __init__(self) -> None:
        self._records: list[LLMCallRecord] = []

    def add(self, record: LLMCallRecord) -> None:
        """Add one call record."""
        self._records.append(record)

    @property
    def records(self) -> list[LLMCallRecord]:
        return list(self._records)

    def summary(self) -> LLMCallReport:
        """Build aggregate report across all records."""
        by_stage: dict[str, StageCallBreakdown] = {}
        total_latency = 0

        for record in self._records:
            total_latency += record.latency_ms
            stage = by_stage.setdefault(record.stage, StageCallBreakdown(stage=record.stage))
            stage.calls += 1
            stage.total_latency_ms += record.latency_ms
            if not record.succeeded:
                stage.failures += 1

        return LLMCallReport(
            total_calls=len(self._records),
            total_latency_ms=total_latency,
            by_stage=sorted(by_stage.values(), key=lambda s: s.calls, reverse=True),
        )


@contextmanager
def telemetry_collector(collector: CallCollector | None):
    """Set active run collector for provider instrumentation."""
    token = _COLLECTOR.set(collector)
    try:
        yield
    finally:
        _COLLECTOR.reset(token)


@contextmanager
def telemetry_stage(stage: str):
    """Set pipeline stage label for provider instrumentation."""
    token = _STAGE.set(stage)
    try:
        yield
    finally:
        _STAGE.reset(token)


def current_stage() -> str:
    """Return currently active telemetry stage label."""
    return _STAGE.get()


def record_call(record: LLMCallRecord) -> None:
    """Add record to active collector if telemetry is enabled."""
    collector = _COLLECTOR.get()
    if collector is not None:
        collector.add(record)
