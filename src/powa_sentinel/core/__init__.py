from powa_sentinel.core.collector import CollectResult, Collector, WarningLimiter
from powa_sentinel.core.deltas import compute_deltas
from powa_sentinel.core.health import CycleSummary, HealthRegistry, InstanceHealth, summarize
from powa_sentinel.core.pipeline import AnalysisCycle, CycleReport, InstanceState
from powa_sentinel.core.scheduler import Scheduler
from powa_sentinel.core.store import SnapshotStore, StoreGeneration

__all__ = [
    "AnalysisCycle",
    "CollectResult",
    "Collector",
    "CycleReport",
    "CycleSummary",
    "HealthRegistry",
    "InstanceHealth",
    "InstanceState",
    "Scheduler",
    "SnapshotStore",
    "StoreGeneration",
    "WarningLimiter",
    "compute_deltas",
    "summarize",
]
