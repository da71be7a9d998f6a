import argparse
import asyncio
import logging
import signal
import sys

from powa_sentinel import __version__
from powa_sentinel.config import SentinelConfig, load_config
from powa_sentinel.core import AnalysisCycle, Collector, HealthRegistry, Scheduler
from powa_sentinel.dispatch import Dispatcher
from powa_sentinel.exceptions import ConfigError
from powa_sentinel.source import PowaSnapshotSource
from powa_sentinel.transport import build_transports

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _build(config: SentinelConfig, deliver_inline: bool) -> tuple[AnalysisCycle, Dispatcher]:
    dispatcher = Dispatcher.from_config(config.notifier, build_transports(config.notifier))
    cycle = AnalysisCycle(
        config,
        Collector(PowaSnapshotSource()),
        dispatcher,
        health=HealthRegistry(),
        deliver_inline=deliver_inline,
    )
    return cycle, dispatcher


async def run_once(config: SentinelConfig) -> int:
    cycle, _ = _build(config, deliver_inline=True)
    reports = await asyncio.gather(*(cycle.run(instance) for instance in config.instances))
    for report in reports:
        if not report.ok:
            logger.error(f"[{report.instance_id}] cycle failed: {report.error}")
    return 0 if all(report.ok for report in reports) else 2


async def serve(config: SentinelConfig, shutdown_timeout: float) -> int:
    cycle, dispatcher = _build(config, deliver_inline=False)
    scheduler = Scheduler(cycle, dispatcher, config.instances)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    await stop.wait()
    logger.info("Shutdown requested")
    await scheduler.stop(timeout=shutdown_timeout)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="powa-sentinel", description="Scenario-based alerting on PoWA query statistics"
    )
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to the YAML config (default: config.yaml)")
    parser.add_argument("--once", action="store_true", help="Run one analysis cycle per instance and exit")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument(
        "--shutdown-timeout", type=float, default=30.0, help="Seconds to wait for in-flight work on shutdown"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"powa-sentinel: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(level=(args.log_level or config.log_level).upper(), format=LOG_FORMAT)
    logger.info(f"powa-sentinel {__version__} monitoring {len(config.instances)} instance(s)")

    if args.once:
        return asyncio.run(run_once(config))
    return asyncio.run(serve(config, args.shutdown_timeout))
