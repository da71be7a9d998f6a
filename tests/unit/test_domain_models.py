from datetime import datetime

from powa_sentinel.domain import (
    Alert,
    Finding,
    QualifierStat,
    QueryDelta,
    QueryStat,
    ScenarioKind,
    Severity,
    Snapshot,
    DegradedSource,
    fingerprint,
)


def test_severity_ordering():
    assert Severity.L1 < Severity.L2 < Severity.L3
    assert max(Severity.L2, Severity.L3) == Severity.L3


def test_scenario_kind_order_follows_declaration():
    assert [kind.order for kind in ScenarioKind] == [0, 1, 2, 3]
    assert ScenarioKind.SLOW_QUERY_TOP_N.order < ScenarioKind.MISSING_INDEX.order


def test_query_stat_mean_time():
    assert QueryStat("db:1", calls=4, total_time=100.0).mean_time == 25.0
    assert QueryStat("db:1", calls=0, total_time=0.0).mean_time == 0.0


def test_query_stat_has_kcache():
    assert not QueryStat("db:1", calls=1, total_time=1.0).has_kcache
    assert QueryStat("db:1", calls=1, total_time=1.0, cpu_time=0.5).has_kcache


def test_query_delta_mean_time_with_no_calls():
    assert QueryDelta("db:1", calls=0, total_time=10.0).mean_time == 0.0


def test_qualifier_subject_omits_public_schema():
    qualifier = QualifierStat(schema="public", table="orders", columns=("customer_id", "status"), calls=5)
    assert qualifier.full_table_name == "orders"
    assert qualifier.subject == "orders(customer_id,status)"


def test_qualifier_subject_keeps_other_schema():
    qualifier = QualifierStat(schema="sales", table="orders", columns=("id",), calls=5)
    assert qualifier.subject == "sales.orders(id)"


def test_snapshot_lookup_and_degradation():
    snapshot = Snapshot(
        instance_id="prod",
        captured_at=datetime(2026, 1, 1),
        stats=(QueryStat("db:1", 1, 1.0), QueryStat("db:2", 2, 2.0)),
        degraded=(DegradedSource("kcache", "not installed"),),
    )
    assert set(snapshot.by_fingerprint()) == {"db:1", "db:2"}
    assert snapshot.is_degraded("kcache")
    assert not snapshot.is_degraded("qualstats")


def test_fingerprint_is_deterministic_and_ignores_evidence():
    key = fingerprint("prod", ScenarioKind.REGRESSION, "db:1")
    assert key == fingerprint("prod", ScenarioKind.REGRESSION, "db:1")
    assert len(key) == 64


def test_fingerprint_differs_per_component():
    base = fingerprint("prod", ScenarioKind.REGRESSION, "db:1")
    assert base != fingerprint("staging", ScenarioKind.REGRESSION, "db:1")
    assert base != fingerprint("prod", ScenarioKind.ABNORMAL_GROWTH, "db:1")
    assert base != fingerprint("prod", ScenarioKind.REGRESSION, "db:2")


def test_fingerprint_separates_fields():
    assert fingerprint("ab", ScenarioKind.REGRESSION, "c") != fingerprint("a", ScenarioKind.REGRESSION, "bc")


def test_finding_sort_key():
    first = Finding("prod", ScenarioKind.SLOW_QUERY_TOP_N, "z", "m")
    second = Finding("prod", ScenarioKind.ABNORMAL_GROWTH, "a", "m")
    assert sorted([second, first], key=lambda f: f.sort_key) == [first, second]


def test_alert_exposes_finding_fields():
    finding = Finding("prod", ScenarioKind.SLOW_QUERY_TOP_N, "db:1", "slow query")
    alert = Alert(finding=finding, severity=Severity.L2, fingerprint="abc")
    assert alert.conclusion == "slow query"
    assert alert.instance_id == "prod"
    assert alert.occurrences == 1
