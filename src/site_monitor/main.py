from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import threading
from typing import List, Optional

from rich.console import Console
from rich.live import Live

from . import config
from .commands import HELP, CommandError, parse_command
from .config import ConfigError, ConfigPort, PayloadSize
from .engine import Engine
from .log import setup_logging
from .outage_logger import OutageLogger, describe
from .ping import FacilityError
from .registry import LoadError, TargetRegistry
from .scheduler import ManualTrigger, ReloadTargets, SetAveraging
from .ui import Dashboard

logger = logging.getLogger(__name__)

console = Console()


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Periodically ping a set of named sites and show their latency",
        epilog=HELP,
    )
    ap.add_argument("--sites", default=config.SITES_FILE,
                    help="JSON file mapping site name to IP address")
    ap.add_argument("--interval", default=config.REFRESH_INTERVAL_SECONDS,
                    help="Seconds between rounds")
    ap.add_argument("--timeout", default=config.PING_TIMEOUT_SECONDS,
                    help="Seconds to wait for each reply")
    ap.add_argument("--payload", default=config.DEFAULT_PAYLOAD_SIZE.name.lower(),
                    choices=[p.name.lower() for p in PayloadSize],
                    help="ICMP payload size class")
    ap.add_argument("--average", action="store_true",
                    help="Start with running averages enabled")
    ap.add_argument("--log-file", default=config.LOG_FILE,
                    help="Outage/event log file")
    ap.add_argument("--no-ui", action="store_true",
                    help="Log results instead of drawing the live table")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap


def log_results(event) -> None:
    """Consumer used with --no-ui."""
    outcome = getattr(event, "outcome", None)
    if outcome is not None:
        logger.info("%s: %s", event.name, describe(outcome))
    elif hasattr(event, "average_ms") and event.average_ms is not None:
        logger.info("%s: avg %.2fms over %d", event.name, event.average_ms, event.sample_count)


def read_commands(loop: asyncio.AbstractEventLoop, engine: Engine) -> None:
    """Blocking stdin reader; runs in a daemon thread and posts onto the loop."""
    for line in sys.stdin:
        if not line.strip():
            continue
        try:
            event = parse_command(line)
        except CommandError as exc:
            logger.warning("%s", exc)
            continue
        loop.call_soon_threadsafe(engine.post, event)


async def ui_loop(engine: Engine, dashboard: Dashboard, stop_event: asyncio.Event):
    """Renders the live UI table."""
    with Live(
        dashboard.render(engine),
        refresh_per_second=int(1 / config.UI_REFRESH_INTERVAL),
        console=console,
        screen=False,
    ) as live:
        while not stop_event.is_set():
            live.update(dashboard.render(engine))
            await asyncio.sleep(config.UI_REFRESH_INTERVAL)


async def main_async(args: argparse.Namespace, engine: Engine, outage_logger: OutageLogger):
    """The main asynchronous entry point of the application."""
    stop_event = asyncio.Event()
    dashboard = Dashboard()

    # consumers first, then the scheduler
    engine.subscribe(outage_logger)
    if args.no_ui:
        engine.subscribe(log_results)
    else:
        engine.subscribe(dashboard)

    loop = asyncio.get_running_loop()

    def _signal_handler():
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:  # Windows
            signal.signal(sig, lambda s, f: _signal_handler())

    controls = {
        "SIGHUP": ReloadTargets(),
        "SIGUSR1": ManualTrigger(),
        "SIGUSR2": SetAveraging(None),
    }
    for name, event in controls.items():
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, engine.post, event)
        except NotImplementedError:  # Windows
            pass

    threading.Thread(
        target=read_commands, args=(loop, engine), name="stdin-commands", daemon=True
    ).start()

    tasks = [asyncio.create_task(engine.run(stop_event))]
    if not args.no_ui:
        tasks.append(asyncio.create_task(ui_loop(engine, dashboard, stop_event)))

    await stop_event.wait()
    await asyncio.gather(*tasks, return_exceptions=True)

    outage_logger.finalize()

    # Print summary
    console.print("\nSummary:")
    for name in engine.targets:
        state = engine.aggregator.states.get(name)
        line = f"{name}: {describe(state.outcome) if state else 'no result'}"
        avg = engine.aggregator.averages.get(name)
        if avg is not None and avg.count:
            line += f" avg={avg.average_ms:.2f}ms samples={avg.count}"
        console.print(line)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    setup_logging(args.verbose, console)

    try:
        config_port = ConfigPort.from_values(
            timeout=args.timeout, payload_size=args.payload, refresh_interval=args.interval
        )
        engine = Engine.bootstrap(TargetRegistry(args.sites), config_port, args.average)
    except (ConfigError, LoadError, FacilityError) as exc:
        logger.critical("cannot start: %s", exc)
        return 1

    try:
        asyncio.run(main_async(args, engine, OutageLogger(args.log_file)))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
