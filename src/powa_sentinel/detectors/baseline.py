from dataclasses import dataclass, replace
from datetime import datetime, timedelta


@dataclass(slots=True)
class BaselineSlot:
    fingerprint: str
    baseline: float
    last_seen: datetime
    streak: int = 0
    samples: int = 1


@dataclass(frozen=True, slots=True)
class BaselineCheckpoint:
    slots: tuple[BaselineSlot | None, ...]
    index: dict[str, int]
    free: tuple[int, ...]


class BaselineTable:
    """Rolling mean-time baselines keyed by query fingerprint.

    Slots live in a flat arena addressed through a fingerprint index; freed
    slots are reused. Entries not seen for ``ttl`` are evicted, and when the
    table is full the least recently seen entry makes room for a new one.
    """

    def __init__(self, ttl: timedelta = timedelta(hours=24), capacity: int = 10_000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._ttl = ttl
        self._capacity = capacity
        self._slots: list[BaselineSlot | None] = []
        self._index: dict[str, int] = {}
        self._free: list[int] = []

    def get(self, fingerprint: str) -> BaselineSlot | None:
        position = self._index.get(fingerprint)
        if position is None:
            return None
        return self._slots[position]

    def insert(self, fingerprint: str, baseline: float, now: datetime) -> BaselineSlot:
        existing = self.get(fingerprint)
        if existing is not None:
            existing.baseline = baseline
            existing.last_seen = now
            return existing

        if len(self._index) >= self._capacity:
            self._evict_least_recent()

        slot = BaselineSlot(fingerprint=fingerprint, baseline=baseline, last_seen=now)
        if self._free:
            position = self._free.pop()
            self._slots[position] = slot
        else:
            position = len(self._slots)
            self._slots.append(slot)
        self._index[fingerprint] = position
        return slot

    def remove(self, fingerprint: str) -> None:
        position = self._index.pop(fingerprint, None)
        if position is None:
            return
        self._slots[position] = None
        self._free.append(position)

    def evict_expired(self, now: datetime) -> int:
        cutoff = now - self._ttl
        expired = [
            slot.fingerprint
            for slot in self._slots
            if slot is not None and slot.last_seen < cutoff
        ]
        for fingerprint in expired:
            self.remove(fingerprint)
        return len(expired)

    def _evict_least_recent(self) -> None:
        oldest = min(
            (slot for slot in self._slots if slot is not None),
            key=lambda slot: (slot.last_seen, slot.fingerprint),
        )
        self.remove(oldest.fingerprint)

    def checkpoint(self) -> BaselineCheckpoint:
        return BaselineCheckpoint(
            slots=tuple(replace(slot) if slot is not None else None for slot in self._slots),
            index=dict(self._index),
            free=tuple(self._free),
        )

    def restore(self, checkpoint: BaselineCheckpoint) -> None:
        self._slots = [replace(slot) if slot is not None else None for slot in checkpoint.slots]
        self._index = dict(checkpoint.index)
        self._free = list(checkpoint.free)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._index
