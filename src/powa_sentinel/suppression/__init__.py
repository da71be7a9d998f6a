from powa_sentinel.suppression.classifier import SeverityClassifier
from powa_sentinel.suppression.engine import Admission, SuppressionEngine

__all__ = ["Admission", "SeverityClassifier", "SuppressionEngine"]
