from collections import defaultdict, deque
from collections.abc import Iterable, MutableMapping

from powa_sentinel.config import InstanceConfig
from powa_sentinel.domain import Snapshot
from powa_sentinel.exceptions import DataUnavailable, SourceError


class ManualSnapshotSource:
    """Snapshot source fed programmatically, one queued item per fetch.

    Items are either snapshots or ``SourceError`` instances to raise. Useful
    for tests and for replaying captured snapshots.
    """

    def __init__(self, items: Iterable[Snapshot | SourceError] = ()) -> None:
        self._queues: MutableMapping[str, deque[Snapshot | SourceError]] = defaultdict(deque)
        for item in items:
            self.push(item)

    def push(self, item: Snapshot | SourceError, instance_id: str | None = None) -> None:
        if instance_id is None:
            if not isinstance(item, Snapshot):
                raise ValueError("instance_id is required when queueing an error")
            instance_id = item.instance_id
        self._queues[instance_id].append(item)

    def pending(self, instance_id: str) -> int:
        return len(self._queues[instance_id])

    async def fetch(self, instance: InstanceConfig) -> Snapshot:
        queue = self._queues[instance.id]
        if not queue:
            raise DataUnavailable(f"no snapshot queued for instance {instance.id}", cause="empty")

        item = queue.popleft()
        if isinstance(item, SourceError):
            raise item
        return item
