"""Core domain models for snapshot analysis and alerting."""

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any, Mapping


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Severity(IntEnum):
    """Alert grading levels, ordered for comparison (higher value = more detail)."""

    L1 = 1
    L2 = 2
    L3 = 3


class ScenarioKind(str, Enum):
    """Scenario kinds recognized by the detectors.

    Declaration order is the merge order of findings within a cycle.
    """

    SLOW_QUERY_TOP_N = "slow_query_top_n"
    ABNORMAL_GROWTH = "abnormal_growth"
    REGRESSION = "regression"
    MISSING_INDEX = "missing_index"

    @property
    def order(self) -> int:
        return list(ScenarioKind).index(self)


@dataclass(frozen=True, slots=True)
class QueryStat:
    """Cumulative per-query counters at one point in time.

    Times are milliseconds. ``cpu_time`` and ``io_time`` are only present
    when pg_stat_kcache data is available for the query.
    """

    fingerprint: str
    calls: int
    total_time: float
    rows: int = 0
    query: str = ""
    database: str = ""
    cpu_time: float | None = None
    io_time: float | None = None

    @property
    def has_kcache(self) -> bool:
        return self.cpu_time is not None or self.io_time is not None

    @property
    def mean_time(self) -> float:
        if self.calls == 0:
            return 0.0
        return self.total_time / self.calls


@dataclass(frozen=True, slots=True)
class QualifierStat:
    """Predicate statistics for one table and column set (pg_qualstats)."""

    schema: str
    table: str
    columns: tuple[str, ...]
    calls: int
    rows_filtered: int = 0
    qual_type: str = ""
    has_index: bool = False
    estimated_improvement: float = 0.0
    suggested_ddl: str | None = None

    @property
    def full_table_name(self) -> str:
        if not self.schema or self.schema == "public":
            return self.table
        return f"{self.schema}.{self.table}"

    @property
    def subject(self) -> str:
        return f"{self.full_table_name}({','.join(self.columns)})"


@dataclass(frozen=True, slots=True)
class DegradedSource:
    """An optional data source that could not be read this cycle."""

    feature: str
    cause: str


@dataclass(frozen=True, slots=True)
class Snapshot:
    """One sample of per-query statistics for one monitored instance."""

    instance_id: str
    captured_at: datetime
    stats: tuple[QueryStat, ...] = field(default_factory=tuple)
    qualifiers: tuple[QualifierStat, ...] | None = None
    degraded: tuple[DegradedSource, ...] = field(default_factory=tuple)

    def by_fingerprint(self) -> dict[str, QueryStat]:
        return {stat.fingerprint: stat for stat in self.stats}

    def is_degraded(self, feature: str) -> bool:
        return any(source.feature == feature for source in self.degraded)


@dataclass(frozen=True, slots=True)
class QueryDelta:
    """Counter differences for one fingerprint over one interval."""

    fingerprint: str
    calls: int
    total_time: float
    rows: int = 0
    cpu_time: float | None = None
    io_time: float | None = None
    query: str = ""
    database: str = ""

    @property
    def has_kcache(self) -> bool:
        return self.cpu_time is not None or self.io_time is not None

    @property
    def mean_time(self) -> float:
        if self.calls <= 0:
            return 0.0
        return self.total_time / self.calls


@dataclass(frozen=True, slots=True)
class DeltaSet:
    """Deltas between two snapshots.

    ``resets`` holds fingerprints whose counters were reset and ``unseen``
    those with no sample in the earlier snapshot; neither has a delta.
    """

    deltas: Mapping[str, QueryDelta] = field(default_factory=dict)
    resets: frozenset[str] = field(default_factory=frozenset)
    unseen: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class SnapshotPair:
    """Detector input: the two stored generations, their deltas and the prior interval's deltas.

    ``deltas`` is ``None`` exactly when ``previous`` is ``None``.
    """

    current: Snapshot
    previous: Snapshot | None = None
    deltas: DeltaSet | None = None
    prior_deltas: DeltaSet | None = None

    @property
    def instance_id(self) -> str:
        return self.current.instance_id


@dataclass(frozen=True, slots=True)
class Finding:
    """Output of one detector for one subject."""

    instance_id: str
    kind: ScenarioKind
    subject: str
    message: str
    evidence: Mapping[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=_utcnow)
    query: str | None = None

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.kind.order, self.subject)


def fingerprint(instance_id: str, kind: ScenarioKind, subject: str) -> str:
    """Deterministic dedup key over (instance, kind, subject); evidence is not part of it."""
    digest = hashlib.sha256()
    for part in (instance_id, kind.value, subject):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


@dataclass(slots=True)
class SuppressionRecord:
    fingerprint: str
    last_emitted_at: datetime
    severity: Severity
    emit_count: int = 1
    first_emitted_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Alert:
    """A finding promoted past deduplication, ready for dispatch."""

    finding: Finding
    severity: Severity
    fingerprint: str
    emitted_at: datetime = field(default_factory=_utcnow)
    occurrences: int = 1

    @property
    def conclusion(self) -> str:
        return self.finding.message

    @property
    def instance_id(self) -> str:
        return self.finding.instance_id
