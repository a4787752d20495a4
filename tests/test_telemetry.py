"""Tests for run-scoped LLM call telemetry."""

import asyncio

from dialog_kg.types.results import LLMCallRecord
from dialog_kg.utils.telemetry import (
    CallCollector,
    current_stage,
    record_call,
    telemetry_collector,
    telemetry_stage,
)


def _record(stage: str, latency_ms: int = 10, succeeded: bool = True) -> LLMCallRecord:
    return LLMCallRecord(
        provider="openai",
        model="gpt-4.1",
        operation="generate_structured",
        stage=stage,
        latency_ms=latency_ms,
        succeeded=succeeded,
    )


def test_collector_aggregates_by_stage() -> None:
    """Collector should aggregate totals and per-stage counts."""
    collector = _collector_with(
        _record("extraction", 100),
        _record("revision", 20),
        _record("revision", 30, succeeded=False),
    )

    report = collector.summary()
    assert report.total_calls == 3
    assert report.total_latency_ms == 150
    assert report.by_stage[0].stage == "revision"
    assert report.by_stage[0].failures == 1
    assert report.calls_for("extraction") == 1
    assert report.calls_for("resolution.bakeoff") == 0


def test_record_without_collector_is_ignored() -> None:
    record_call(_record("extraction"))


def test_stage_and_collector_are_scoped() -> None:
    collector = CallCollector()
    with telemetry_collector(collector):
        with telemetry_stage("revision"):
            assert current_stage() == "revision"
            record_call(_record(current_stage()))
        assert current_stage() == "unknown"
    record_call(_record("extraction"))

    assert [r.stage for r in collector.records] == ["revision"]


def test_concurrent_runs_do_not_mix() -> None:
    async def run(stage: str) -> CallCollector:
        collector = CallCollector()
        with telemetry_collector(collector):
            with telemetry_stage(stage):
                await asyncio.sleep(0)
                record_call(_record(current_stage()))
        return collector

    async def main() -> list[CallCollector]:
        return await asyncio.gather(run("extraction"), run("revision"))

    first, second = asyncio.run(main())
    assert [r.stage for r in first.records] == ["extraction"]
    assert [r.stage for r in second.records] == ["revision"]


def _collector_with(*records: LLMCallRecord) -> CallCollector:
    collector = CallCollector()
    for record in records:
        collector.add(record)
    return collector
