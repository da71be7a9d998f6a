"""Domain models for snapshot analysis and alerting."""

from powa_sentinel.domain.models import (
    Alert,
    DegradedSource,
    DeltaSet,
    Finding,
    QualifierStat,
    QueryDelta,
    QueryStat,
    ScenarioKind,
    Severity,
    Snapshot,
    SnapshotPair,
    SuppressionRecord,
    fingerprint,
)

__all__ = [
    "Alert",
    "DegradedSource",
    "DeltaSet",
    "Finding",
    "QualifierStat",
    "QueryDelta",
    "QueryStat",
    "ScenarioKind",
    "Severity",
    "Snapshot",
    "SnapshotPair",
    "SuppressionRecord",
    "fingerprint",
]
