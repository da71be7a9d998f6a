from typing import Protocol, runtime_checkable

from powa_sentinel.config import InstanceConfig
from powa_sentinel.domain import Snapshot


@runtime_checkable
class SnapshotSource(Protocol):
    """Protocol for read-only statistic snapshot sources.

    ``fetch`` raises ``DataUnavailable``, ``SchemaIncompatible`` or
    ``PermissionDenied``. Missing optional data is reported on the snapshot
    itself through ``Snapshot.degraded``.
    """

    async def fetch(self, instance: InstanceConfig) -> Snapshot:
        ...
