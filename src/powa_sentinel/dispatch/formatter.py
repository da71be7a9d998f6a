from typing import Any

from powa_sentinel.domain import Alert, ScenarioKind, Severity
from powa_sentinel.transport.base import Message

KIND_LABELS = {
    ScenarioKind.SLOW_QUERY_TOP_N: "Slow query",
    ScenarioKind.ABNORMAL_GROWTH: "Abnormal growth",
    ScenarioKind.REGRESSION: "Performance regression",
    ScenarioKind.MISSING_INDEX: "Missing index",
}

# Evidence shown to tech leads (L2); DBAs (L3) get everything.
KEY_METRICS = {
    ScenarioKind.SLOW_QUERY_TOP_N: ("total_time_ms", "calls", "mean_time_ms"),
    ScenarioKind.ABNORMAL_GROWTH: ("growth_ratio", "calls", "prior_total_time_ms", "total_time_ms"),
    ScenarioKind.REGRESSION: ("change_percent", "baseline_mean_time_ms", "mean_time_ms"),
    ScenarioKind.MISSING_INDEX: ("estimated_improvement", "table", "columns"),
}

SEVERITY_ICONS = {
    Severity.L1: "🔵",
    Severity.L2: "🟠",
    Severity.L3: "🔴",
}


def truncate_query(query: str, max_len: int = 300) -> str:
    query = " ".join(query.split())
    if len(query) <= max_len:
        return query
    return query[: max_len - 3] + "..."


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, list | tuple):
        return ", ".join(str(v) for v in value)
    return str(value)


class AlertFormatter:
    """Renders alerts with detail matched to their severity.

    L1 is a single summary line, L2 adds the scenario's key metrics and L3
    adds the full evidence, the query text and dedup bookkeeping.
    """

    def __init__(self, query_preview: int = 300) -> None:
        self._query_preview = query_preview

    def title(self, alert: Alert) -> str:
        label = KIND_LABELS.get(alert.finding.kind, alert.finding.kind.value)
        return f"{SEVERITY_ICONS[alert.severity]} [{alert.instance_id}] {label}: {alert.conclusion}"

    def format(self, alert: Alert) -> Message:
        title = self.title(alert)
        if alert.severity == Severity.L1:
            return Message(title=title, text=title, severity=alert.severity, alert=alert)

        evidence = alert.finding.evidence
        lines = [f"### {title}"]
        if alert.severity == Severity.L2:
            keys = [key for key in KEY_METRICS.get(alert.finding.kind, ()) if key in evidence]
        else:
            keys = [key for key in evidence if evidence[key] is not None]
        for key in keys:
            lines.append(f"> **{key}**: {_format_value(evidence[key])}")

        if alert.severity == Severity.L3:
            if alert.finding.query:
                lines.append(f"```sql\n{truncate_query(alert.finding.query, self._query_preview)}\n```")
            lines.append(
                f"*Fingerprint {alert.fingerprint[:12]} · occurrence {alert.occurrences} · "
                f"{alert.emitted_at.strftime('%Y-%m-%d %H:%M:%S')}*"
            )

        return Message(title=title, text="\n".join(lines), severity=alert.severity, alert=alert)
