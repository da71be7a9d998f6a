from powa_sentinel.dispatch.dispatcher import DispatchStats, Dispatcher
from powa_sentinel.dispatch.formatter import AlertFormatter, truncate_query

__all__ = ["AlertFormatter", "DispatchStats", "Dispatcher", "truncate_query"]
