import asyncio
import logging
from dataclasses import dataclass

from powa_sentinel.config import InstanceConfig
from powa_sentinel.domain import Snapshot
from powa_sentinel.exceptions import DataUnavailable, SchemaIncompatible, SourceError
from powa_sentinel.source.base import SnapshotSource

logger = logging.getLogger(__name__)


class WarningLimiter:
    """Lets a given (instance, feature, cause) warning through once."""

    def __init__(self) -> None:
        self._seen: set[tuple[str, str, str]] = set()

    def should_warn(self, instance_id: str, feature: str, cause: str) -> bool:
        key = (instance_id, feature, cause)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def clear(self, instance_id: str, feature: str | None = None) -> None:
        self._seen = {
            key
            for key in self._seen
            if key[0] != instance_id or (feature is not None and key[1] != feature)
        }


@dataclass(frozen=True, slots=True)
class CollectResult:
    instance_id: str
    snapshot: Snapshot | None = None
    error: SourceError | None = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


class Collector:
    """Fetches one snapshot per call, bounded by the instance timeout.

    Source errors are returned rather than raised so that a failing instance
    only skips its own cycle.
    """

    def __init__(self, source: SnapshotSource, limiter: WarningLimiter | None = None) -> None:
        self._source = source
        self._limiter = limiter or WarningLimiter()

    async def collect(self, instance: InstanceConfig) -> CollectResult:
        try:
            snapshot = await asyncio.wait_for(
                self._source.fetch(instance), timeout=instance.timeout.total_seconds()
            )
        except TimeoutError:
            error = DataUnavailable(
                f"snapshot fetch timed out after {instance.timeout.total_seconds():.0f}s", cause="timeout"
            )
            logger.error(f"[{instance.id}] {error}")
            return CollectResult(instance.id, error=error)
        except SchemaIncompatible as exc:
            if self._limiter.should_warn(instance.id, "schema", str(exc)):
                logger.error(f"[{instance.id}] incompatible PoWA schema: {exc}")
            return CollectResult(instance.id, error=exc)
        except SourceError as exc:
            logger.error(f"[{instance.id}] {type(exc).__name__}: {exc}")
            return CollectResult(instance.id, error=exc)

        self._limiter.clear(instance.id, "schema")
        for source in snapshot.degraded:
            if self._limiter.should_warn(instance.id, source.feature, source.cause):
                logger.warning(f"[{instance.id}] {source.feature} unavailable, skipping dependent checks: {source.cause}")
        return CollectResult(instance.id, snapshot=snapshot)
