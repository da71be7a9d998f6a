from collections.abc import Mapping
from types import MappingProxyType

from powa_sentinel.config import RulesConfig, SeverityThresholds
from powa_sentinel.domain import Finding, ScenarioKind, Severity


class SeverityClassifier:
    """Table-driven severity grading.

    Each scenario kind owns one evidence metric and its L2/L3 cut-offs. A
    finding whose metric is missing or not numeric is graded L1.
    """

    def __init__(self, table: Mapping[ScenarioKind, SeverityThresholds]) -> None:
        self._table = MappingProxyType(dict(table))

    @classmethod
    def from_rules(cls, rules: RulesConfig) -> "SeverityClassifier":
        return cls(rules.severity_table())

    def classify(self, finding: Finding) -> Severity:
        thresholds = self._table.get(finding.kind)
        if thresholds is None:
            return Severity.L1

        value = finding.evidence.get(thresholds.metric)
        if isinstance(value, bool) or not isinstance(value, int | float):
            return Severity.L1
        if value >= thresholds.l3:
            return Severity.L3
        if value >= thresholds.l2:
            return Severity.L2
        return Severity.L1
