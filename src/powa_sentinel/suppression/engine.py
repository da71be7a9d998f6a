import logging
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from powa_sentinel.domain import Alert, Finding, Severity, SuppressionRecord, fingerprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Admission:
    emit: bool
    fingerprint: str
    alert: Alert | None = None
    escalated: bool = False


class SuppressionEngine:
    """Decides which findings become alerts, per monitored instance.

    A finding is admitted when no record exists for its fingerprint or the
    last emission is at least ``window`` old. Otherwise it is counted and
    suppressed. Records older than ``window * retention_multiplier`` are
    dropped. With ``escalate_on_severity_increase`` a re-detection graded
    strictly higher than the last emitted alert is admitted inside the
    window as well.

    Every read-modify-write on the records happens under one lock.
    """

    def __init__(
        self,
        window: timedelta = timedelta(hours=6),
        retention_multiplier: float = 4.0,
        escalate_on_severity_increase: bool = False,
    ) -> None:
        if window <= timedelta():
            raise ValueError("suppression window must be positive")
        if retention_multiplier < 1:
            raise ValueError("retention_multiplier must be at least 1")
        self._window = window
        self._retention = window * retention_multiplier
        self._escalate = escalate_on_severity_increase
        self._records: dict[str, SuppressionRecord] = {}
        self._lock = threading.Lock()

    @property
    def window(self) -> timedelta:
        return self._window

    def admit(self, finding: Finding, severity: Severity, now: datetime | None = None) -> Admission:
        now = now or datetime.now(UTC)
        key = fingerprint(finding.instance_id, finding.kind, finding.subject)

        with self._lock:
            self._expire_locked(now)
            record = self._records.get(key)

            if record is None:
                record = SuppressionRecord(
                    fingerprint=key,
                    last_emitted_at=now,
                    severity=severity,
                    first_emitted_at=now,
                )
                self._records[key] = record
                return Admission(emit=True, fingerprint=key, alert=self._alert(finding, severity, record, now))

            if now - record.last_emitted_at >= self._window:
                record.last_emitted_at = now
                record.severity = severity
                record.emit_count += 1
                return Admission(emit=True, fingerprint=key, alert=self._alert(finding, severity, record, now))

            record.emit_count += 1
            if self._escalate and severity > record.severity:
                logger.info(
                    f"[{finding.instance_id}] escalating {finding.kind.value} {finding.subject} "
                    f"from {record.severity.name} to {severity.name}"
                )
                record.last_emitted_at = now
                record.severity = severity
                return Admission(
                    emit=True,
                    fingerprint=key,
                    alert=self._alert(finding, severity, record, now),
                    escalated=True,
                )
            return Admission(emit=False, fingerprint=key)

    def expire(self, now: datetime | None = None) -> int:
        with self._lock:
            return self._expire_locked(now or datetime.now(UTC))

    def _expire_locked(self, now: datetime) -> int:
        cutoff = now - self._retention
        stale = [key for key, record in self._records.items() if record.last_emitted_at < cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)

    @staticmethod
    def _alert(finding: Finding, severity: Severity, record: SuppressionRecord, now: datetime) -> Alert:
        return Alert(
            finding=finding,
            severity=severity,
            fingerprint=record.fingerprint,
            emitted_at=now,
            occurrences=record.emit_count,
        )

    def record(self, key: str) -> SuppressionRecord | None:
        with self._lock:
            record = self._records.get(key)
            return replace(record) if record is not None else None

    def checkpoint(self) -> dict[str, SuppressionRecord]:
        with self._lock:
            return {key: replace(record) for key, record in self._records.items()}

    def restore(self, saved: dict[str, SuppressionRecord]) -> None:
        with self._lock:
            self._records = {key: replace(record) for key, record in saved.items()}

    def __len__(self) -> int:
        return len(self._records)
