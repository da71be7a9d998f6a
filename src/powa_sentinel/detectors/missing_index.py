from typing import Protocol, runtime_checkable

from powa_sentinel.domain import Finding, QualifierStat, ScenarioKind, SnapshotPair


@runtime_checkable
class IndexAdvisor(Protocol):
    """Evaluates a hypothetical index (hypopg) for a qualifier set.

    Returns the estimated improvement in percent, or ``None`` when the
    candidate cannot be evaluated.
    """

    async def estimate(self, instance_id: str, qualifier: QualifierStat) -> float | None:
        ...


class MissingIndexDetector:
    name: str = "missing_index"
    kind: ScenarioKind = ScenarioKind.MISSING_INDEX
    requires_previous: bool = False

    def __init__(
        self,
        min_calls: int = 1,
        min_rows_filtered: int = 0,
        min_improvement_percent: float = 30.0,
        advisor: IndexAdvisor | None = None,
    ) -> None:
        self._min_calls = min_calls
        self._min_rows_filtered = min_rows_filtered
        self._min_improvement = min_improvement_percent
        self._advisor = advisor

    async def _improvement(self, instance_id: str, qualifier: QualifierStat) -> float:
        if self._advisor is None:
            return qualifier.estimated_improvement
        estimate = await self._advisor.estimate(instance_id, qualifier)
        return qualifier.estimated_improvement if estimate is None else estimate

    async def detect(self, pair: SnapshotPair) -> list[Finding]:
        qualifiers = pair.current.qualifiers
        if qualifiers is None:
            return []

        findings: list[Finding] = []
        for qualifier in qualifiers:
            if qualifier.has_index:
                continue
            if qualifier.calls < self._min_calls or qualifier.rows_filtered < self._min_rows_filtered:
                continue

            improvement = await self._improvement(pair.instance_id, qualifier)
            if improvement < self._min_improvement:
                continue

            ddl = qualifier.suggested_ddl or (
                f"CREATE INDEX ON {qualifier.full_table_name} ({', '.join(qualifier.columns)})"
            )
            findings.append(
                Finding(
                    instance_id=pair.instance_id,
                    kind=self.kind,
                    subject=qualifier.subject,
                    message=(
                        f"Missing index on {qualifier.full_table_name} "
                        f"({', '.join(qualifier.columns)}): est. +{improvement:.0f}%"
                    ),
                    evidence={
                        "estimated_improvement": improvement,
                        "table": qualifier.full_table_name,
                        "columns": list(qualifier.columns),
                        "qual_type": qualifier.qual_type,
                        "calls": qualifier.calls,
                        "rows_filtered": qualifier.rows_filtered,
                        "suggested_ddl": ddl,
                    },
                    detected_at=pair.current.captured_at,
                )
            )
        return findings
