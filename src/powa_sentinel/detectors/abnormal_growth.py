from powa_sentinel.domain import Finding, ScenarioKind, SnapshotPair


class AbnormalGrowthDetector:
    """Compares each fingerprint's interval time with the interval before it.

    Both intervals must have a real delta: fingerprints that were reset or
    unseen in either interval are skipped. When the prior interval had no
    calls there is no ratio, so the absolute delta is held against
    ``min_idle_total_time_ms`` instead and no ``growth_ratio`` is reported.
    """

    name: str = "abnormal_growth"
    kind: ScenarioKind = ScenarioKind.ABNORMAL_GROWTH
    requires_previous: bool = True

    def __init__(
        self,
        multiplier: float = 3.0,
        min_calls: int = 10,
        min_idle_total_time_ms: float = 1000.0,
    ) -> None:
        self._multiplier = multiplier
        self._min_calls = min_calls
        self._min_idle_total_time_ms = min_idle_total_time_ms

    async def detect(self, pair: SnapshotPair) -> list[Finding]:
        if pair.deltas is None or pair.prior_deltas is None:
            return []

        findings: list[Finding] = []
        for fp, delta in sorted(pair.deltas.deltas.items()):
            prior = pair.prior_deltas.deltas.get(fp)
            if prior is None:
                continue
            if delta.calls < self._min_calls:
                continue

            evidence = {
                "calls": delta.calls,
                "total_time_ms": delta.total_time,
                "prior_calls": prior.calls,
                "prior_total_time_ms": prior.total_time,
                "database": delta.database,
            }

            if prior.calls == 0 or prior.total_time <= 0:
                if delta.total_time < self._min_idle_total_time_ms:
                    continue
                evidence["idle_prior"] = True
                message = (
                    f"Query {fp} ran {delta.calls} calls for "
                    f"{delta.total_time:.0f}ms after an idle interval"
                )
            else:
                ratio = delta.total_time / prior.total_time
                if ratio < self._multiplier:
                    continue
                evidence["growth_ratio"] = ratio
                evidence["idle_prior"] = False
                message = (
                    f"Query {fp} time grew {ratio:.1f}x over the previous interval "
                    f"({prior.total_time:.0f}ms -> {delta.total_time:.0f}ms, {delta.calls} calls)"
                )

            findings.append(
                Finding(
                    instance_id=pair.instance_id,
                    kind=self.kind,
                    subject=fp,
                    message=message,
                    evidence=evidence,
                    detected_at=pair.current.captured_at,
                    query=delta.query or None,
                )
            )
        return findings
