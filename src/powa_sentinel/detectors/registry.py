import asyncio
import logging
from typing import Any

from powa_sentinel.config import RulesConfig
from powa_sentinel.detectors.abnormal_growth import AbnormalGrowthDetector
from powa_sentinel.detectors.base import Detector, StatefulDetector
from powa_sentinel.detectors.missing_index import IndexAdvisor, MissingIndexDetector
from powa_sentinel.detectors.regression import RegressionDetector
from powa_sentinel.detectors.slow_query import SlowQueryDetector
from powa_sentinel.domain import Finding, SnapshotPair

logger = logging.getLogger(__name__)


class DetectorRegistry:
    """Registry for managing and orchestrating scenario detectors."""

    def __init__(self) -> None:
        self._detectors: list[Detector] = []

    @classmethod
    def from_rules(cls, rules: RulesConfig, advisor: IndexAdvisor | None = None) -> "DetectorRegistry":
        """Build a registry holding every enabled detector, with its own state."""
        registry = cls()
        if rules.slow_query.enabled:
            registry.register(
                SlowQueryDetector(
                    top_n=rules.slow_query.top_n,
                    min_duration_ms=rules.slow_query.min_duration_ms,
                    rank_by=rules.slow_query.rank_by,
                )
            )
        if rules.abnormal_growth.enabled:
            registry.register(
                AbnormalGrowthDetector(
                    multiplier=rules.abnormal_growth.multiplier,
                    min_calls=rules.abnormal_growth.min_calls,
                    min_idle_total_time_ms=rules.abnormal_growth.min_idle_total_time_ms,
                )
            )
        if rules.regression.enabled:
            registry.register(
                RegressionDetector(
                    threshold_percent=rules.regression.threshold_percent,
                    consecutive_cycles=rules.regression.consecutive_cycles,
                    smoothing=rules.regression.smoothing,
                    min_calls=rules.regression.min_calls,
                    ttl=rules.regression.ttl,
                    max_tracked=rules.regression.max_tracked,
                )
            )
        if rules.missing_index.enabled:
            registry.register(
                MissingIndexDetector(
                    min_calls=rules.missing_index.min_calls,
                    min_rows_filtered=rules.missing_index.min_rows_filtered,
                    min_improvement_percent=rules.missing_index.min_improvement_percent,
                    advisor=advisor,
                )
            )
        return registry

    def register(self, detector: Detector) -> None:
        if any(existing.name == detector.name for existing in self._detectors):
            raise ValueError(f"detector already registered: {detector.name}")
        self._detectors.append(detector)

    @property
    def detectors(self) -> tuple[Detector, ...]:
        return tuple(self._detectors)

    async def detect_all(self, pair: SnapshotPair) -> list[Finding]:
        """Run every applicable detector concurrently and merge their findings.

        Without a previous snapshot only detectors that work on the current
        snapshot alone run. Output is ordered by scenario kind, then subject.
        """
        runnable = [d for d in self._detectors if pair.previous is not None or not d.requires_previous]
        results = await asyncio.gather(
            *(detector.detect(pair) for detector in runnable),
            return_exceptions=True,
        )

        findings: list[Finding] = []
        for detector, result in zip(runnable, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"[{pair.instance_id}] detector {detector.name} failed: {result!r}")
                continue
            findings.extend(result)

        findings.sort(key=lambda finding: finding.sort_key)
        return findings

    def checkpoint(self) -> dict[str, Any]:
        return {
            detector.name: detector.checkpoint()
            for detector in self._detectors
            if isinstance(detector, StatefulDetector)
        }

    def restore(self, state: dict[str, Any]) -> None:
        for detector in self._detectors:
            if detector.name in state and isinstance(detector, StatefulDetector):
                detector.restore(state[detector.name])
