import logging

from powa_sentinel.domain import DeltaSet, QueryDelta, QueryStat, Snapshot
from powa_sentinel.exceptions import InternalInvariantViolation

logger = logging.getLogger(__name__)


def compute_deltas(previous: Snapshot, current: Snapshot) -> DeltaSet:
    """Counter differences between two consecutive snapshots.

    A decrease in ``calls`` means the statistics were reset: the fingerprint
    goes into ``resets`` and has no delta this interval. Any other counter
    going backwards is an invariant violation; it is logged and the
    fingerprint is left out. Fingerprints absent from ``previous`` have no
    baseline sample: they go into ``unseen`` and get their first delta next
    interval. Fingerprints that disappeared are ignored.
    """
    before = previous.by_fingerprint()
    deltas: dict[str, QueryDelta] = {}
    resets: set[str] = set()
    unseen: set[str] = set()

    for stat in current.stats:
        old = before.get(stat.fingerprint)
        if old is None:
            unseen.add(stat.fingerprint)
            continue
        if stat.calls < old.calls:
            resets.add(stat.fingerprint)
            continue
        try:
            deltas[stat.fingerprint] = _delta(old, stat)
        except InternalInvariantViolation as exc:
            logger.error(f"[{current.instance_id}] dropping {stat.fingerprint}: {exc}")

    return DeltaSet(deltas=deltas, resets=frozenset(resets), unseen=frozenset(unseen))


def _delta(old: QueryStat, new: QueryStat) -> QueryDelta:
    total_time = new.total_time - old.total_time
    rows = new.rows - old.rows
    cpu_time = _optional_delta(old.cpu_time, new.cpu_time)
    io_time = _optional_delta(old.io_time, new.io_time)

    for name, value in (("total_time", total_time), ("rows", rows), ("cpu_time", cpu_time), ("io_time", io_time)):
        if value is not None and value < 0:
            raise InternalInvariantViolation(
                f"negative {name} delta ({value}) without a calls reset"
            )

    return QueryDelta(
        fingerprint=new.fingerprint,
        calls=new.calls - old.calls,
        total_time=total_time,
        rows=rows,
        cpu_time=cpu_time,
        io_time=io_time,
        query=new.query,
        database=new.database,
    )


def _optional_delta(old: float | None, new: float | None) -> float | None:
    if new is None:
        return None
    if old is None:
        # kcache appeared between samples; no baseline to diff against
        return None
    return new - old
