from datetime import timedelta

from powa_sentinel.detectors.baseline import BaselineCheckpoint, BaselineTable
from powa_sentinel.domain import Finding, ScenarioKind, SnapshotPair


class RegressionDetector:
    """Flags queries whose mean time stays above their rolling baseline.

    The baseline is an exponential moving average of each fingerprint's
    interval mean time. A fingerprint must exceed
    ``baseline * (1 + threshold_percent / 100)`` for ``consecutive_cycles``
    cycles in a row before a finding is produced, and the baseline is frozen
    while it is above the limit so a sustained regression is not absorbed.
    """

    name: str = "regression"
    kind: ScenarioKind = ScenarioKind.REGRESSION
    requires_previous: bool = True

    def __init__(
        self,
        threshold_percent: float = 50.0,
        consecutive_cycles: int = 2,
        smoothing: float = 0.3,
        min_calls: int = 1,
        ttl: timedelta = timedelta(hours=24),
        max_tracked: int = 10_000,
    ) -> None:
        self._threshold = threshold_percent / 100.0
        self._consecutive = consecutive_cycles
        self._smoothing = smoothing
        self._min_calls = max(1, min_calls)
        self._table = BaselineTable(ttl=ttl, capacity=max_tracked)

    @property
    def table(self) -> BaselineTable:
        return self._table

    def checkpoint(self) -> BaselineCheckpoint:
        return self._table.checkpoint()

    def restore(self, state: BaselineCheckpoint) -> None:
        self._table.restore(state)

    async def detect(self, pair: SnapshotPair) -> list[Finding]:
        if pair.deltas is None:
            return []

        now = pair.current.captured_at
        self._table.evict_expired(now)

        findings: list[Finding] = []
        for fp, delta in sorted(pair.deltas.deltas.items()):
            if delta.calls < self._min_calls:
                continue
            mean = delta.mean_time

            slot = self._table.get(fp)
            if slot is None:
                self._table.insert(fp, mean, now)
                continue

            slot.last_seen = now
            limit = slot.baseline * (1 + self._threshold)
            if slot.baseline <= 0 or mean <= limit:
                slot.streak = 0
                slot.baseline = self._smoothing * mean + (1 - self._smoothing) * slot.baseline
                slot.samples += 1
                continue

            slot.streak += 1
            if slot.streak < self._consecutive:
                continue

            change = (mean - slot.baseline) / slot.baseline * 100
            findings.append(
                Finding(
                    instance_id=pair.instance_id,
                    kind=self.kind,
                    subject=fp,
                    message=(
                        f"Query {fp} regressed {change:+.1f}%: mean "
                        f"{slot.baseline:.2f}ms -> {mean:.2f}ms for {slot.streak} consecutive cycles"
                    ),
                    evidence={
                        "change_percent": change,
                        "mean_time_ms": mean,
                        "baseline_mean_time_ms": slot.baseline,
                        "consecutive_cycles": slot.streak,
                        "calls": delta.calls,
                        "database": delta.database,
                    },
                    detected_at=now,
                    query=delta.query or None,
                )
            )
        return findings
