import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from powa_sentinel.config import InstanceConfig, SentinelConfig
from powa_sentinel.core.collector import Collector
from powa_sentinel.core.health import CycleSummary, HealthRegistry, summarize
from powa_sentinel.core.store import SnapshotStore
from powa_sentinel.detectors import DetectorRegistry
from powa_sentinel.detectors.missing_index import IndexAdvisor
from powa_sentinel.dispatch import Dispatcher
from powa_sentinel.domain import Alert, Finding, Snapshot, SnapshotPair
from powa_sentinel.suppression import SeverityClassifier, SuppressionEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleReport:
    instance_id: str
    findings: list[Finding] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    suppressed: int = 0
    skipped: bool = False
    error: Exception | None = None
    summary: CycleSummary | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class InstanceState:
    """Everything one instance carries between cycles.

    The snapshot partition, detector state and suppression records move
    together: ``transaction`` checkpoints all three and puts them back if the
    cycle fails, so a failed cycle leaves no trace.
    """

    def __init__(
        self,
        instance_id: str,
        store: SnapshotStore,
        registry: DetectorRegistry,
        suppression: SuppressionEngine,
    ) -> None:
        self.instance_id = instance_id
        self.store = store
        self.registry = registry
        self.suppression = suppression
        self.lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        instance: InstanceConfig,
        config: SentinelConfig,
        store: SnapshotStore,
        advisor: IndexAdvisor | None = None,
    ) -> "InstanceState":
        return cls(
            instance.id,
            store,
            DetectorRegistry.from_rules(config.rules, advisor=advisor),
            SuppressionEngine(
                window=config.suppression.window,
                retention_multiplier=config.suppression.retention_multiplier,
                escalate_on_severity_increase=config.suppression.escalate_on_severity_increase,
            ),
        )

    def advance(self, snapshot: Snapshot) -> SnapshotPair:
        return self.store.rotate(snapshot).as_pair()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InstanceState"]:
        generation = self.store.checkpoint(self.instance_id)
        detectors = self.registry.checkpoint()
        records = self.suppression.checkpoint()
        try:
            yield self
        except BaseException:
            self.store.restore(self.instance_id, generation)
            self.registry.restore(detectors)
            self.suppression.restore(records)
            raise


class AnalysisCycle:
    """One collect → detect → classify → admit → dispatch pass per instance.

    Nothing raised inside a cycle is fatal: source errors skip the cycle,
    anything else is logged and the instance state is rolled back. Alerts
    are only handed to the dispatcher once the cycle's state is committed.
    With ``deliver_inline`` alerts are sent before ``run`` returns instead of
    being queued.
    """

    def __init__(
        self,
        config: SentinelConfig,
        collector: Collector,
        dispatcher: Dispatcher,
        store: SnapshotStore | None = None,
        health: HealthRegistry | None = None,
        advisor: IndexAdvisor | None = None,
        deliver_inline: bool = False,
    ) -> None:
        self._config = config
        self._collector = collector
        self._dispatcher = dispatcher
        self._store = store or SnapshotStore()
        self._health = health or HealthRegistry()
        self._advisor = advisor
        self._classifier = SeverityClassifier.from_rules(config.rules)
        self._deliver_inline = deliver_inline
        self._states: dict[str, InstanceState] = {}

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def health(self) -> HealthRegistry:
        return self._health

    def state(self, instance: InstanceConfig) -> InstanceState:
        state = self._states.get(instance.id)
        if state is None:
            state = InstanceState.from_config(instance, self._config, self._store, self._advisor)
            self._states[instance.id] = state
        return state

    async def run(self, instance: InstanceConfig) -> CycleReport:
        state = self.state(instance)
        async with state.lock:
            report = await self._run_locked(instance, state)

        if report.alerts:
            await self._hand_off(report.alerts)
        return report

    async def _run_locked(self, instance: InstanceConfig, state: InstanceState) -> CycleReport:
        report = CycleReport(instance.id)

        result = await self._collector.collect(instance)
        if result.snapshot is None:
            report.skipped = True
            report.error = result.error
            self._health.record_error(instance.id, result.error or "no snapshot")
            return report

        snapshot = result.snapshot
        try:
            async with state.transaction():
                pair = state.advance(snapshot)
                report.findings = await state.registry.detect_all(pair)
                for finding in report.findings:
                    severity = self._classifier.classify(finding)
                    admission = state.suppression.admit(finding, severity, now=snapshot.captured_at)
                    if admission.emit and admission.alert is not None:
                        report.alerts.append(admission.alert)
                    else:
                        report.suppressed += 1
                report.summary = summarize(report.findings, len(snapshot.stats))
        except Exception as exc:
            logger.exception(f"[{instance.id}] analysis cycle failed, state rolled back")
            report.findings = []
            report.alerts = []
            report.suppressed = 0
            report.summary = None
            report.error = exc
            self._health.record_error(instance.id, exc)
            return report

        degraded = tuple(sorted({source.feature for source in snapshot.degraded}))
        self._health.record_success(instance.id, degraded, summary=report.summary)
        logger.info(
            f"[{instance.id}] cycle complete: {len(report.findings)} finding(s), "
            f"{len(report.alerts)} alert(s), {report.suppressed} suppressed, "
            f"health {report.summary.health_score} ({report.summary.health_status})"
        )
        return report

    async def _hand_off(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            if not self._deliver_inline:
                self._dispatcher.dispatch(alert)
                continue
            try:
                await self._dispatcher.deliver(alert)
            except Exception:
                logger.exception(f"Unexpected error delivering alert {alert.fingerprint[:12]}")
