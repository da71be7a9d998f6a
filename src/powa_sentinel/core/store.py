import threading
from dataclasses import dataclass

from powa_sentinel.core.deltas import compute_deltas
from powa_sentinel.domain import DeltaSet, Snapshot, SnapshotPair


@dataclass(frozen=True, slots=True)
class StoreGeneration:
    """Immutable view of one instance partition: at most two snapshots."""

    current: Snapshot
    previous: Snapshot | None = None
    deltas: DeltaSet | None = None
    prior_deltas: DeltaSet | None = None

    def as_pair(self) -> SnapshotPair:
        return SnapshotPair(
            current=self.current,
            previous=self.previous,
            deltas=self.deltas,
            prior_deltas=self.prior_deltas,
        )


class SnapshotStore:
    """Holds the two most recent snapshots per monitored instance.

    Each partition is replaced wholesale on rotation, so readers always see
    a consistent (previous, current) pair. When the oldest generation is
    discarded only the deltas derived from it survive, as the prior period
    of the next interval.
    """

    def __init__(self) -> None:
        self._partitions: dict[str, StoreGeneration] = {}
        self._lock = threading.Lock()

    def rotate(self, snapshot: Snapshot) -> StoreGeneration:
        with self._lock:
            old = self._partitions.get(snapshot.instance_id)
            if old is None:
                generation = StoreGeneration(current=snapshot)
            else:
                generation = StoreGeneration(
                    current=snapshot,
                    previous=old.current,
                    deltas=compute_deltas(old.current, snapshot),
                    prior_deltas=old.deltas,
                )
            self._partitions[snapshot.instance_id] = generation
            return generation

    def pair(self, instance_id: str) -> SnapshotPair | None:
        generation = self._partitions.get(instance_id)
        return generation.as_pair() if generation else None

    def current(self, instance_id: str) -> Snapshot | None:
        generation = self._partitions.get(instance_id)
        return generation.current if generation else None

    def checkpoint(self, instance_id: str) -> StoreGeneration | None:
        return self._partitions.get(instance_id)

    def restore(self, instance_id: str, generation: StoreGeneration | None) -> None:
        with self._lock:
            if generation is None:
                self._partitions.pop(instance_id, None)
            else:
                self._partitions[instance_id] = generation

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._partitions

    def __len__(self) -> int:
        return len(self._partitions)
