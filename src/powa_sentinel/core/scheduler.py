import asyncio
import logging
from collections.abc import Sequence

from powa_sentinel.config import InstanceConfig
from powa_sentinel.core.pipeline import AnalysisCycle
from powa_sentinel.dispatch import Dispatcher

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs the analysis cycle for every instance on its own interval.

    Each instance has a single task, so a slow cycle delays that instance's
    next tick instead of overlapping it.
    """

    def __init__(self, cycle: AnalysisCycle, dispatcher: Dispatcher, instances: Sequence[InstanceConfig]) -> None:
        self._cycle = cycle
        self._dispatcher = dispatcher
        self._instances = tuple(instances)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self) -> None:
        self._dispatcher.start()
        for instance in self._instances:
            if instance.id not in self._tasks:
                self._tasks[instance.id] = asyncio.create_task(self._loop(instance), name=f"cycle-{instance.id}")
        logger.info(f"Scheduler started for {len(self._instances)} instance(s)")

    async def _loop(self, instance: InstanceConfig) -> None:
        interval = instance.interval.total_seconds()
        loop = asyncio.get_running_loop()
        while not self._stopping.is_set():
            started = loop.time()
            try:
                await self._cycle.run(instance)
            except Exception:
                logger.exception(f"[{instance.id}] unexpected error in scheduled cycle")
            delay = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                continue

    async def wait(self) -> None:
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop scheduling, give in-flight cycles ``timeout`` seconds, then drain the dispatcher."""
        self._stopping.set()
        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                logger.warning(f"Cancelling {task.get_name()} after {timeout:.0f}s shutdown timeout")
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        await self._dispatcher.close(timeout)
        logger.info("Scheduler stopped")
