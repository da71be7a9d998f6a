from powa_sentinel.source.base import SnapshotSource
from powa_sentinel.source.manual import ManualSnapshotSource
from powa_sentinel.source.postgres import PowaSnapshotSource

__all__ = ["SnapshotSource", "ManualSnapshotSource", "PowaSnapshotSource"]
