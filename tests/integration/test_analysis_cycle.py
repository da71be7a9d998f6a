from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from powa_sentinel import AnalysisCycle, Collector, Dispatcher, ManualSnapshotSource
from powa_sentinel.config import build_config
from powa_sentinel.domain import (
    Alert,
    DegradedSource,
    QualifierStat,
    QueryStat,
    ScenarioKind,
    Severity,
    Snapshot,
)
from powa_sentinel.exceptions import DataUnavailable
from powa_sentinel.transport import Message

T0 = datetime(2026, 3, 1, 12, 0, 0)
STEP = timedelta(minutes=5)


class MemoryTransport:
    name: str = "memory"

    def __init__(self) -> None:
        self.messages: list[Message] = []

    async def send(self, channel: str, message: Message) -> None:
        self.messages.append(message)

    @property
    def alerts(self) -> list[Alert]:
        return [m.alert for m in self.messages]


def make_cycle(raw: dict | None = None, snapshots=()):
    raw = dict(raw or {})
    raw.setdefault("instances", [{"id": "prod"}])
    config = build_config(raw)
    source = ManualSnapshotSource(snapshots)
    transport = MemoryTransport()
    dispatcher = Dispatcher({"memory": transport})
    cycle = AnalysisCycle(config, Collector(source), dispatcher, deliver_inline=True)
    return cycle, config.instances[0], source, transport


def snap(at: datetime, *stats: QueryStat, qualifiers=None, degraded=()) -> Snapshot:
    return Snapshot("prod", at, stats=stats, qualifiers=qualifiers, degraded=degraded)


async def run_all(cycle: AnalysisCycle, instance, count: int):
    return [await cycle.run(instance) for _ in range(count)]


@pytest.mark.asyncio
async def test_scenario_abnormal_growth_end_to_end():
    snapshots = [
        snap(T0, QueryStat("app:q1", calls=90, total_time=0.0, query="SELECT * FROM orders")),
        snap(T0 + STEP, QueryStat("app:q1", calls=100, total_time=1000.0, query="SELECT * FROM orders")),
        snap(T0 + 2 * STEP, QueryStat("app:q1", calls=110, total_time=5000.0, query="SELECT * FROM orders")),
    ]
    raw = {"rules": {"abnormal_growth": {"multiplier": 3, "min_calls": 10}}}
    cycle, instance, _, transport = make_cycle(raw, snapshots)

    reports = await run_all(cycle, instance, 3)

    assert all(r.ok for r in reports)
    growth = [a for a in reports[2].alerts if a.finding.kind == ScenarioKind.ABNORMAL_GROWTH]
    assert len(growth) == 1
    alert = growth[0]
    assert alert.finding.subject == "app:q1"
    assert alert.finding.evidence["calls"] == 10
    assert alert.finding.evidence["growth_ratio"] == pytest.approx(4.0)
    assert alert.severity == Severity.L1
    assert alert.emitted_at == T0 + 2 * STEP
    assert alert in transport.alerts


@pytest.mark.asyncio
async def test_dedup_within_window_emits_once():
    snapshots = [snap(T0 + i * STEP, QueryStat("app:slow", calls=10 * i, total_time=2000.0 * i)) for i in range(10)]
    raw = {"suppression": {"window": "6h"}, "rules": {"abnormal_growth": {"enabled": False}}}
    cycle, instance, _, transport = make_cycle(raw, snapshots)

    reports = await run_all(cycle, instance, 10)

    slow_findings = sum(1 for r in reports for f in r.findings if f.kind == ScenarioKind.SLOW_QUERY_TOP_N)
    slow_alerts = [a for a in transport.alerts if a.finding.kind == ScenarioKind.SLOW_QUERY_TOP_N]
    assert slow_findings == 9
    assert len(slow_alerts) == 1
    assert sum(r.suppressed for r in reports) >= 8


@pytest.mark.asyncio
async def test_suppression_expires_after_window():
    step = timedelta(minutes=10)
    snapshots = [snap(T0 + i * step, QueryStat("app:slow", calls=10 * i, total_time=2000.0 * i)) for i in range(7)]
    raw = {
        "suppression": {"window": "30m"},
        "rules": {"abnormal_growth": {"enabled": False}, "regression": {"enabled": False}},
    }
    cycle, instance, _, transport = make_cycle(raw, snapshots)

    await run_all(cycle, instance, 7)

    emitted = [a.emitted_at for a in transport.alerts]
    assert emitted == [T0 + step, T0 + 4 * step]
    assert transport.alerts[1].occurrences == 4


@pytest.mark.asyncio
async def test_counter_reset_produces_no_findings():
    snapshots = [
        snap(T0, QueryStat("app:q", calls=1000, total_time=100000.0)),
        snap(T0 + STEP, QueryStat("app:q", calls=5, total_time=50.0)),
        snap(T0 + 2 * STEP, QueryStat("app:q", calls=15, total_time=10050.0)),
    ]
    cycle, instance, _, _ = make_cycle(snapshots=snapshots)

    first, reset, after = await run_all(cycle, instance, 3)

    assert reset.ok
    assert reset.findings == []
    assert after.ok
    assert [f.kind for f in after.findings] == [ScenarioKind.SLOW_QUERY_TOP_N]
    assert after.findings[0].evidence["total_time_ms"] == 10000.0


def cumulative(means: list[float], calls_per_cycle: int = 10) -> list[Snapshot]:
    snapshots = [snap(T0, QueryStat("app:r", calls=0, total_time=0.0))]
    calls, total = 0, 0.0
    for i, mean in enumerate(means, start=1):
        calls += calls_per_cycle
        total += mean * calls_per_cycle
        snapshots.append(snap(T0 + i * STEP, QueryStat("app:r", calls=calls, total_time=total)))
    return snapshots


REGRESSION_ONLY = {
    "rules": {
        "slow_query": {"enabled": False},
        "abnormal_growth": {"enabled": False},
        "regression": {"threshold_percent": 50},
    }
}


@pytest.mark.asyncio
async def test_regression_single_spike_is_ignored():
    snapshots = cumulative([10.0, 10.0, 30.0, 10.0, 10.0])
    cycle, instance, _, transport = make_cycle(REGRESSION_ONLY, snapshots)
    await run_all(cycle, instance, len(snapshots))
    assert transport.alerts == []


@pytest.mark.asyncio
async def test_regression_two_cycles_above_threshold_alerts():
    snapshots = cumulative([10.0, 10.0, 25.0, 25.0])
    cycle, instance, _, transport = make_cycle(REGRESSION_ONLY, snapshots)
    reports = await run_all(cycle, instance, len(snapshots))
    assert [len(r.alerts) for r in reports] == [0, 0, 0, 0, 1]
    alert = transport.alerts[0]
    assert alert.finding.kind == ScenarioKind.REGRESSION
    assert alert.severity == Severity.L2


@pytest.mark.asyncio
async def test_top_n_output_is_stable():
    stats_before = tuple(QueryStat(f"app:{i}", calls=0, total_time=0.0) for i in range(30))
    stats_after = tuple(
        QueryStat(f"app:{i}", calls=(i % 4) + 1, total_time=float(1000 * (i % 5) + 1000)) for i in range(30)
    )
    results = []
    for _ in range(2):
        cycle, instance, _, _ = make_cycle(
            {"rules": {"slow_query": {"top_n": 10}}},
            [snap(T0, *stats_before), snap(T0 + STEP, *stats_after)],
        )
        reports = await run_all(cycle, instance, 2)
        results.append([(f.kind, f.subject, f.evidence["rank"]) for f in reports[1].findings])
    assert results[0] == results[1]
    assert len(results[0]) == 10


@pytest.mark.asyncio
async def test_missing_qualstats_is_skipped_gracefully():
    degraded = (DegradedSource("qualstats", "pg_qualstats not installed"),)
    snapshots = [
        snap(T0, QueryStat("app:q", calls=0, total_time=0.0), degraded=degraded),
        snap(T0 + STEP, QueryStat("app:q", calls=10, total_time=5000.0), degraded=degraded),
    ]
    cycle, instance, _, _ = make_cycle(snapshots=snapshots)

    reports = await run_all(cycle, instance, 2)

    assert all(r.ok for r in reports)
    kinds = {f.kind for r in reports for f in r.findings}
    assert ScenarioKind.MISSING_INDEX not in kinds
    assert ScenarioKind.SLOW_QUERY_TOP_N in kinds
    assert cycle.health.snapshot()["instances"]["prod"]["degraded"] == ["qualstats"]


@pytest.mark.asyncio
async def test_missing_index_on_first_cycle():
    qualifiers = (
        QualifierStat("public", "orders", ("customer_id",), calls=200, rows_filtered=5000, estimated_improvement=85.0),
    )
    cycle, instance, _, transport = make_cycle(snapshots=[snap(T0, qualifiers=qualifiers)])

    report = await cycle.run(instance)

    assert [a.finding.kind for a in report.alerts] == [ScenarioKind.MISSING_INDEX]
    assert transport.alerts[0].severity == Severity.L3
    assert "CREATE INDEX ON orders (customer_id)" in transport.messages[0].text


@pytest.mark.asyncio
async def test_source_error_skips_cycle_without_advancing():
    cycle, instance, source, _ = make_cycle(snapshots=[snap(T0, QueryStat("app:q", 1, 1.0))])
    source.push(DataUnavailable("connection refused"), instance_id="prod")

    first = await cycle.run(instance)
    failed = await cycle.run(instance)

    assert first.ok
    assert failed.skipped
    assert isinstance(failed.error, DataUnavailable)
    assert cycle.store.current("prod").captured_at == T0
    assert cycle.health.snapshot()["instances"]["prod"]["last_error"] == "connection refused"


@pytest.mark.asyncio
async def test_failed_cycle_rolls_back_state():
    s0 = snap(T0, QueryStat("app:q", calls=0, total_time=0.0))
    s1 = snap(T0 + STEP, QueryStat("app:q", calls=10, total_time=5000.0))
    cycle, instance, source, transport = make_cycle(snapshots=[s0, s1])
    await cycle.run(instance)

    state = cycle.state(instance)
    with patch.object(state.suppression, "admit", side_effect=RuntimeError("boom")):
        failed = await cycle.run(instance)

    assert failed.error is not None
    assert failed.alerts == []
    assert cycle.store.current("prod") is s0
    assert len(state.suppression) == 0
    assert transport.alerts == []

    source.push(s1)
    retried = await cycle.run(instance)
    assert retried.ok
    assert [a.finding.kind for a in retried.alerts] == [ScenarioKind.SLOW_QUERY_TOP_N]


@pytest.mark.asyncio
async def test_instances_are_isolated():
    raw = {"instances": [{"id": "a"}, {"id": "b"}]}
    config = build_config(raw)
    a, b = config.instances
    source = ManualSnapshotSource(
        [
            Snapshot("a", T0, stats=(QueryStat("app:q", 0, 0.0),)),
            Snapshot("a", T0 + STEP, stats=(QueryStat("app:q", 10, 5000.0),)),
            Snapshot("b", T0, stats=(QueryStat("app:q", 0, 0.0),)),
            Snapshot("b", T0 + STEP, stats=(QueryStat("app:q", 10, 5000.0),)),
        ]
    )
    transport = MemoryTransport()
    cycle = AnalysisCycle(config, Collector(source), Dispatcher({"memory": transport}), deliver_inline=True)

    for instance in (a, b, a, b):
        await cycle.run(instance)

    assert sorted(alert.instance_id for alert in transport.alerts) == ["a", "b"]


@pytest.mark.asyncio
async def test_returning_and_new_fingerprints_do_not_alert_on_lifetime_counters():
    q1 = [QueryStat("app:q1", calls=10 * i, total_time=10.0 * i) for i in range(5)]
    snapshots = [
        snap(T0, q1[0], QueryStat("app:old", calls=100000, total_time=9e6)),
        snap(T0 + STEP, q1[1]),
        snap(T0 + 2 * STEP, q1[2], QueryStat("app:old", calls=100001, total_time=9_000_001.0)),
        snap(
            T0 + 3 * STEP,
            q1[3],
            QueryStat("app:old", calls=100002, total_time=9_000_002.0),
            QueryStat("app:new", calls=10, total_time=20.0),
        ),
        snap(
            T0 + 4 * STEP,
            q1[4],
            QueryStat("app:old", calls=100003, total_time=9_000_003.0),
            QueryStat("app:new", calls=20, total_time=40.0),
        ),
    ]
    cycle, instance, _, transport = make_cycle(snapshots=snapshots)

    reports = await run_all(cycle, instance, len(snapshots))

    assert all(r.ok for r in reports)
    assert [f for r in reports for f in r.findings] == []
    assert transport.alerts == []
    assert cycle.store.pair("prod").deltas.deltas["app:old"].calls == 1


@pytest.mark.asyncio
async def test_inline_delivery_error_does_not_escape_the_cycle(caplog):
    qualifiers = (
        QualifierStat("public", "orders", ("customer_id",), calls=200, rows_filtered=5000, estimated_improvement=85.0),
    )
    cycle, instance, _, _ = make_cycle(snapshots=[snap(T0, qualifiers=qualifiers)])

    with patch.object(Dispatcher, "deliver", side_effect=ValueError("bad header")):
        report = await cycle.run(instance)

    assert report.ok
    assert len(report.alerts) == 1
    assert "Unexpected error delivering alert" in caplog.text


@pytest.mark.asyncio
async def test_cycle_summary_is_reported_and_exposed_in_health():
    qualifiers = (
        QualifierStat("public", "orders", ("customer_id",), calls=200, rows_filtered=5000, estimated_improvement=85.0),
        QualifierStat("public", "items", ("sku",), calls=200, rows_filtered=5000, estimated_improvement=60.0),
    )
    stats = (QueryStat("app:a", 1, 1.0), QueryStat("app:b", 1, 1.0), QueryStat("app:c", 1, 1.0))
    cycle, instance, _, _ = make_cycle(snapshots=[snap(T0, *stats, qualifiers=qualifiers)])

    report = await cycle.run(instance)

    assert report.summary.queries_analyzed == 3
    assert report.summary.counts[ScenarioKind.MISSING_INDEX.value] == 2
    assert report.summary.counts[ScenarioKind.REGRESSION.value] == 0
    assert report.summary.health_score == 94
    assert report.summary.health_status == "healthy"
    assert cycle.health.snapshot()["instances"]["prod"]["summary"] == report.summary.as_dict()
