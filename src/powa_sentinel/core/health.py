import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from powa_sentinel.domain import Finding, ScenarioKind

MAX_REGRESSION_DEDUCTION = 50
MAX_MISSING_INDEX_DEDUCTION = 30
MISSING_INDEX_DEDUCTION = 3

# (minimum change_percent, points), checked in order
REGRESSION_DEDUCTIONS = ((500.0, 20), (200.0, 10), (100.0, 5))
MINOR_REGRESSION_DEDUCTION = 2


@dataclass(frozen=True, slots=True)
class CycleSummary:
    """Overall picture of one analysis cycle, scored 0-100."""

    queries_analyzed: int
    counts: dict[str, int]
    health_score: int
    health_status: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "queries_analyzed": self.queries_analyzed,
            "counts": dict(self.counts),
            "health_score": self.health_score,
            "health_status": self.health_status,
        }


def health_status(score: int) -> str:
    if score >= 90:
        return "healthy"
    if score >= 70:
        return "warning"
    if score >= 50:
        return "degraded"
    return "critical"


def _regression_points(finding: Finding) -> int:
    change = finding.evidence.get("change_percent")
    if isinstance(change, int | float) and not isinstance(change, bool):
        for floor, points in REGRESSION_DEDUCTIONS:
            if change >= floor:
                return points
    return MINOR_REGRESSION_DEDUCTION


def summarize(findings: Iterable[Finding], queries_analyzed: int) -> CycleSummary:
    """Score a cycle's findings.

    Regressions cost 2 to 20 points each by how far the mean time moved and
    missing indexes cost 3 each; both categories are capped. Slow queries and
    growth findings are counted but not scored.
    """
    findings = list(findings)
    counts = Counter(finding.kind.value for finding in findings)

    regression = sum(_regression_points(f) for f in findings if f.kind == ScenarioKind.REGRESSION)
    missing_index = MISSING_INDEX_DEDUCTION * counts[ScenarioKind.MISSING_INDEX.value]

    score = 100 - min(regression, MAX_REGRESSION_DEDUCTION) - min(missing_index, MAX_MISSING_INDEX_DEDUCTION)
    score = max(score, 0)
    return CycleSummary(
        queries_analyzed=queries_analyzed,
        counts={kind.value: counts[kind.value] for kind in ScenarioKind},
        health_score=score,
        health_status=health_status(score),
    )


@dataclass(slots=True)
class InstanceHealth:
    instance_id: str
    cycles: int = 0
    failures: int = 0
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    degraded: tuple[str, ...] = field(default_factory=tuple)
    summary: CycleSummary | None = None

    @property
    def healthy(self) -> bool:
        if self.last_error_at is None:
            return True
        return self.last_success_at is not None and self.last_success_at > self.last_error_at


class HealthRegistry:
    """Last-known status of every monitored instance."""

    def __init__(self) -> None:
        self._entries: dict[str, InstanceHealth] = {}
        self._lock = threading.Lock()

    def _entry(self, instance_id: str) -> InstanceHealth:
        entry = self._entries.get(instance_id)
        if entry is None:
            entry = self._entries[instance_id] = InstanceHealth(instance_id)
        return entry

    def record_success(
        self,
        instance_id: str,
        degraded: tuple[str, ...] = (),
        at: datetime | None = None,
        summary: CycleSummary | None = None,
    ) -> None:
        with self._lock:
            entry = self._entry(instance_id)
            entry.cycles += 1
            entry.last_success_at = at or datetime.now(UTC)
            entry.degraded = degraded
            if summary is not None:
                entry.summary = summary

    def record_error(self, instance_id: str, error: BaseException | str, at: datetime | None = None) -> None:
        with self._lock:
            entry = self._entry(instance_id)
            entry.cycles += 1
            entry.failures += 1
            entry.last_error = str(error) or type(error).__name__
            entry.last_error_at = at or datetime.now(UTC)

    def get(self, instance_id: str) -> InstanceHealth | None:
        return self._entries.get(instance_id)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            instances = {
                entry.instance_id: {
                    "healthy": entry.healthy,
                    "cycles": entry.cycles,
                    "failures": entry.failures,
                    "last_success_at": entry.last_success_at.isoformat() if entry.last_success_at else None,
                    "last_error": entry.last_error,
                    "last_error_at": entry.last_error_at.isoformat() if entry.last_error_at else None,
                    "degraded": list(entry.degraded),
                    "summary": entry.summary.as_dict() if entry.summary else None,
                }
                for entry in self._entries.values()
            }
        return {
            "status": "ok" if all(item["healthy"] for item in instances.values()) else "degraded",
            "instances": instances,
        }
