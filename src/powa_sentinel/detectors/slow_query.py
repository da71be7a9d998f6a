from powa_sentinel.domain import Finding, QueryDelta, ScenarioKind, SnapshotPair


class SlowQueryDetector:
    name: str = "slow_query_top_n"
    kind: ScenarioKind = ScenarioKind.SLOW_QUERY_TOP_N
    requires_previous: bool = True

    def __init__(self, top_n: int = 10, min_duration_ms: float = 1000.0, rank_by: str = "auto") -> None:
        self._top_n = top_n
        self._min_duration_ms = min_duration_ms
        self._rank_by = rank_by

    def _rank_value(self, delta: QueryDelta) -> tuple[float, str] | None:
        if self._rank_by == "total_time":
            return delta.total_time, "total_time"
        if self._rank_by == "mean_time":
            return delta.mean_time, "mean_time"
        if self._rank_by == "cpu_time":
            return (delta.cpu_time, "cpu_time") if delta.cpu_time is not None else None
        if self._rank_by == "io_time":
            return (delta.io_time, "io_time") if delta.io_time is not None else None
        if delta.has_kcache:
            return (delta.cpu_time or 0.0) + (delta.io_time or 0.0), "cpu_io_time"
        return delta.total_time, "total_time"

    async def detect(self, pair: SnapshotPair) -> list[Finding]:
        if pair.deltas is None:
            return []

        ranked: list[tuple[float, str, QueryDelta]] = []
        for delta in pair.deltas.deltas.values():
            if delta.calls <= 0:
                continue
            scored = self._rank_value(delta)
            if scored is None or scored[0] < self._min_duration_ms:
                continue
            ranked.append((scored[0], scored[1], delta))

        ranked.sort(key=lambda item: (-item[0], -item[2].calls, item[2].fingerprint))

        findings: list[Finding] = []
        for rank, (value, metric, delta) in enumerate(ranked[: self._top_n], start=1):
            findings.append(
                Finding(
                    instance_id=pair.instance_id,
                    kind=self.kind,
                    subject=delta.fingerprint,
                    message=(
                        f"Query {delta.fingerprint} is #{rank} by {metric}: "
                        f"{value:.0f}ms over {delta.calls} calls this interval"
                    ),
                    evidence={
                        "rank": rank,
                        "rank_by": metric,
                        "ranked_value_ms": value,
                        "total_time_ms": delta.total_time,
                        "calls": delta.calls,
                        "mean_time_ms": delta.mean_time,
                        "cpu_time_ms": delta.cpu_time,
                        "io_time_ms": delta.io_time,
                        "database": delta.database,
                    },
                    detected_at=pair.current.captured_at,
                    query=delta.query or None,
                )
            )
        return findings
