import asyncio
import logging
import random
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace

from powa_sentinel.config import NotifierConfig
from powa_sentinel.dispatch.formatter import AlertFormatter
from powa_sentinel.domain import Alert, Severity
from powa_sentinel.exceptions import TransportPermanent, TransportTransient
from powa_sentinel.transport.base import Message, NotificationTransport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchStats:
    queued: int = 0
    delivered: int = 0
    failed: int = 0
    dropped: int = 0
    rejected: int = 0


class Dispatcher:
    """Queues alerts and delivers them to their routed channels.

    ``dispatch`` never blocks the caller: alerts go onto a bounded queue that
    worker tasks drain. When the queue is full the oldest alert is dropped
    (``drop_oldest``) or the new one is refused (``reject``). Transient
    transport failures are retried with exponential backoff and jitter;
    permanent failures and exhausted retries drop the alert. Dropped alerts
    are never re-admitted.
    """

    MAX_JITTER = 0.5

    def __init__(
        self,
        transports: Mapping[str, NotificationTransport],
        routing: Mapping[Severity, Sequence[str]] | None = None,
        formatter: AlertFormatter | None = None,
        retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 10.0,
        queue_size: int = 100,
        overflow: str = "drop_oldest",
        workers: int = 1,
    ) -> None:
        self._transports = dict(transports)
        self._routing = {severity: tuple(channels) for severity, channels in (routing or {}).items()}
        self._formatter = formatter or AlertFormatter()
        self._retries = retries
        self._retry_delay = retry_delay
        self._timeout = timeout
        self._overflow = overflow
        self._worker_count = workers
        self._queue: asyncio.Queue[Alert] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task[None]] = []
        self.stats = DispatchStats()

    @classmethod
    def from_config(
        cls, config: NotifierConfig, transports: Mapping[str, NotificationTransport]
    ) -> "Dispatcher":
        return cls(
            transports,
            routing=config.routing,
            retries=config.retries,
            retry_delay=config.retry_delay.total_seconds(),
            timeout=config.timeout.total_seconds(),
            queue_size=config.queue_size,
            overflow=config.overflow,
            workers=config.workers,
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def channels_for(self, severity: Severity) -> tuple[str, ...]:
        if severity in self._routing:
            return self._routing[severity]
        return tuple(self._transports)

    def dispatch(self, alert: Alert) -> bool:
        """Enqueue an alert for delivery. Returns False when it was refused."""
        if self._queue.full():
            if self._overflow == "reject":
                self.stats.rejected += 1
                logger.warning(f"Dispatch queue full, rejecting alert {alert.fingerprint[:12]}")
                return False
            dropped = self._queue.get_nowait()
            self._queue.task_done()
            self.stats.dropped += 1
            logger.warning(f"Dispatch queue full, dropping oldest alert {dropped.fingerprint[:12]}")

        self._queue.put_nowait(alert)
        self.stats.queued += 1
        return True

    async def deliver(self, alert: Alert) -> bool:
        """Send an alert to every routed channel. Returns True if all succeeded."""
        message = self._formatter.format(alert)
        channels = self.channels_for(alert.severity)
        if not channels:
            logger.warning(f"No channel routed for severity {alert.severity.name}")
            return False

        ok = True
        for channel in channels:
            transport = self._transports.get(channel)
            if transport is None:
                logger.error(f"Unknown channel {channel}, alert {alert.fingerprint[:12]} not sent")
                ok = False
                continue
            if await self._send_with_retry(channel, transport, message):
                self.stats.delivered += 1
            else:
                self.stats.failed += 1
                ok = False
        return ok

    async def _send_with_retry(self, channel: str, transport: NotificationTransport, message: Message) -> bool:
        attempt = 0
        while True:
            try:
                await asyncio.wait_for(transport.send(channel, message), timeout=self._timeout)
                logger.info(f"Alert {message.alert.fingerprint[:12]} sent via {channel} ({transport.name})")
                return True
            except TransportPermanent as exc:
                logger.error(f"Alert {message.alert.fingerprint[:12]} dropped on {channel}: {exc}")
                return False
            except (TransportTransient, TimeoutError) as exc:
                if attempt >= self._retries:
                    logger.error(
                        f"Alert {message.alert.fingerprint[:12]} dropped on {channel} "
                        f"after {self._retries} retries: {exc!r}"
                    )
                    return False
                delay = self._retry_delay * (2**attempt) + random.uniform(0, self.MAX_JITTER)
                retry_after = getattr(exc, "retry_after", None)
                if retry_after:
                    delay = max(delay, retry_after)
                parts_sent = getattr(exc, "parts_sent", 0)
                if parts_sent > message.parts_sent:
                    message = replace(message, parts_sent=parts_sent)
                logger.warning(f"Transient failure on {channel} ({exc!r}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                attempt += 1

    async def _worker(self) -> None:
        while True:
            alert = await self._queue.get()
            try:
                await self.deliver(alert)
            except Exception:
                logger.exception(f"Unexpected error delivering alert {alert.fingerprint[:12]}")
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"dispatcher-{i}") for i in range(self._worker_count)
        ]

    async def close(self, timeout: float = 30.0) -> None:
        """Drain queued alerts for up to ``timeout`` seconds, then stop the workers."""
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning(f"Dispatcher drain timed out, {self._queue.qsize()} alert(s) abandoned")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
