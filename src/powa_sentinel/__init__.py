__version__ = "0.1.0"

from powa_sentinel.core import AnalysisCycle, Collector, HealthRegistry, Scheduler, SnapshotStore
from powa_sentinel.detectors import (
    AbnormalGrowthDetector,
    Detector,
    DetectorRegistry,
    MissingIndexDetector,
    RegressionDetector,
    SlowQueryDetector,
)
from powa_sentinel.dispatch import AlertFormatter, Dispatcher
from powa_sentinel.domain import (
    Alert,
    Finding,
    ScenarioKind,
    Severity,
    Snapshot,
    SnapshotPair,
)
from powa_sentinel.source import ManualSnapshotSource, SnapshotSource
from powa_sentinel.suppression import SeverityClassifier, SuppressionEngine

__all__ = [
    "__version__",
    "AnalysisCycle",
    "Collector",
    "HealthRegistry",
    "Scheduler",
    "SnapshotStore",
    "Snapshot",
    "SnapshotPair",
    "Finding",
    "Alert",
    "Severity",
    "ScenarioKind",
    "SnapshotSource",
    "ManualSnapshotSource",
    "Detector",
    "DetectorRegistry",
    "SlowQueryDetector",
    "AbnormalGrowthDetector",
    "RegressionDetector",
    "MissingIndexDetector",
    "SeverityClassifier",
    "SuppressionEngine",
    "AlertFormatter",
    "Dispatcher",
]
