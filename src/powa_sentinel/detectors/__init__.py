from powa_sentinel.detectors.abnormal_growth import AbnormalGrowthDetector
from powa_sentinel.detectors.base import Detector, StatefulDetector
from powa_sentinel.detectors.baseline import BaselineTable
from powa_sentinel.detectors.missing_index import IndexAdvisor, MissingIndexDetector
from powa_sentinel.detectors.registry import DetectorRegistry
from powa_sentinel.detectors.regression import RegressionDetector
from powa_sentinel.detectors.slow_query import SlowQueryDetector

__all__ = [
    "Detector",
    "StatefulDetector",
    "DetectorRegistry",
    "BaselineTable",
    "IndexAdvisor",
    "SlowQueryDetector",
    "AbnormalGrowthDetector",
    "RegressionDetector",
    "MissingIndexDetector",
]
