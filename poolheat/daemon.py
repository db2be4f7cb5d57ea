# SPDX-License-Identifier: MPL-2.0
"""
poolheat daemon

Builds the day's heat pump schedule at the configured cycle time and runs the
executor every few minutes so that each hour's decision reaches the device.
"""

import argparse
import asyncio
import errno
import logging
import os
import signal
import socket
import time
from datetime import datetime, time as dt_time, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional

from poolheat.automation import AutomationService, create_service
from poolheat.config import Config, configure_logging, load_config
from poolheat.database import create_database
from poolheat.exceptions import ConfigurationError, PersistenceError
from poolheat.planner import ScheduleBuilder, plan_day
from poolheat.store import PriceStore, SettingsStore

logger = logging.getLogger(__name__)

# Delay before a failed daily build is attempted again
RETRY_DELAY_SECONDS = 3600


def notify(message: bytes) -> None:
    if not message:
        raise ValueError("notify() requires a message")

    socket_path = os.environ.get("NOTIFY_SOCKET")
    if not socket_path:
        return

    if socket_path[0] not in ("/", "@"):
        raise OSError(errno.EAFNOSUPPORT, "Unsupported socket type")

    # Handle abstract socket.
    if socket_path[0] == "@":
        socket_path = "\0" + socket_path[1:]

    with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM | socket.SOCK_CLOEXEC) as sock:
        sock.connect(socket_path)
        sock.sendall(message)


def notify_ready() -> None:
    notify(b"READY=1")


def notify_reloading() -> None:
    microsecs = time.clock_gettime_ns(time.CLOCK_MONOTONIC) // 1000
    notify(f"RELOADING=1\nMONOTONIC_USEC={microsecs}".encode())


def notify_stopping() -> None:
    notify(b"STOPPING=1")


def seconds_until_cycle(now: datetime, cycle_time: dt_time, tz: tzinfo) -> float:
    """
    Seconds from now until the next occurrence of cycle_time in local time.

    Args:
        now: Current time (timezone aware)
        cycle_time: Local time of day of the daily build
        tz: Local timezone
    """
    now_local = now.astimezone(tz)
    next_run = datetime(
        now_local.year, now_local.month, now_local.day,
        cycle_time.hour, cycle_time.minute, tzinfo=tz
    )
    if now_local >= next_run:
        tomorrow = now_local.date() + timedelta(days=1)
        next_run = datetime(
            tomorrow.year, tomorrow.month, tomorrow.day,
            cycle_time.hour, cycle_time.minute, tzinfo=tz
        )
    return (next_run.astimezone(timezone.utc) - now.astimezone(timezone.utc)).total_seconds()


async def run_daily_cycle(service: AutomationService) -> Dict[str, Any]:
    """
    Build today's schedule in a worker thread.

    Raises:
        RuntimeError: If the build failed and should be retried later
    """
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, service.create_daily_schedule)

    if result["success"]:
        logger.info(result["message"])
        return result

    if result.get("skipped"):
        logger.info("Automation is disabled, no schedule built")
        return result

    raise RuntimeError(f"Schedule build failed: {result['message']}")


async def run_execute_tick(service: AutomationService) -> Dict[str, Any]:
    """Run the executor once in a worker thread."""
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, service.execute_due)

    if not result["success"]:
        logger.error(f"Executor run failed: {result['message']}")
    elif result.get("attempted"):
        logger.info(result["message"])
    return result


def setup_signal_handlers(shutdown_event: asyncio.Event, reload_event: asyncio.Event) -> None:
    """Setup signal handlers that set corresponding events."""
    loop = asyncio.get_running_loop()

    def handle_shutdown() -> None:
        """Handle SIGINT/SIGTERM for graceful shutdown."""
        logger.debug("Received shutdown signal, initiating graceful shutdown")
        shutdown_event.set()

    def handle_reload() -> None:
        """Handle SIGHUP to reload configuration."""
        logger.debug("Received SIGHUP, will reload configuration")
        reload_event.set()

    loop.add_signal_handler(signal.SIGINT, handle_shutdown)
    loop.add_signal_handler(signal.SIGTERM, handle_shutdown)
    loop.add_signal_handler(signal.SIGHUP, handle_reload)


def run_dry_run(config: Config, now: Optional[datetime] = None) -> int:
    """
    Dry run mode: plan today's schedule from stored prices and print it.

    Nothing is sent to the device and the schedule table is not written.

    Args:
        config: Application configuration
        now: Reference time (defaults to now)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    tz = config.tz
    for_date = now.astimezone(tz).date()

    print("\n" + "=" * 70)
    print("  POOL HEAT PUMP SCHEDULE - DRY RUN MODE")
    print("=" * 70)
    print()

    try:
        session_factory = create_database(config.database_url)
        price_store = PriceStore(session_factory, provider=config.price_provider)
        settings = SettingsStore(session_factory, defaults=config.automation).get_active()
        settings.validate()

        builder = ScheduleBuilder(
            None, price_store, tz=tz,
            basis=config.price_basis, fallback_average=config.fallback_average_price,
        )
        average = builder.baseline_average(settings, now)

        day_start = datetime(for_date.year, for_date.month, for_date.day, tzinfo=tz)
        next_day = for_date + timedelta(days=1)
        day_end = datetime(next_day.year, next_day.month, next_day.day, tzinfo=tz)
        prices = price_store.query(settings.bidding_zone, day_start, day_end)
    except (ConfigurationError, PersistenceError) as e:
        print(f"Error: {e}")
        return 1

    if not prices:
        print(f"No price data available for {for_date} in {settings.bidding_zone}")
        return 1

    entries = plan_day(
        for_date, prices, average, settings, settings.baseline_temp, tz, config.price_basis
    )

    print(f"Date:            {for_date}")
    print(f"Bidding zone:    {settings.bidding_zone}")
    print(f"Price basis:     {config.price_basis.value}")
    print(f"Average price:   {average:.3f}/kWh ({settings.rolling_window_days} days)")
    print(f"Baseline temp:   {settings.baseline_temp:.1f}°C")
    print(f"Automation:      {'enabled' if settings.automation_enabled else 'DISABLED'}")
    print()
    print(f"  {'Hour':<6} {'Price':>8}  {'Class':<9} {'Target':>7}  Reason")
    print("  " + "-" * 66)
    for entry in entries:
        target = "OFF" if entry.shutdown else f"{entry.target_temperature:.1f}°C"
        print(f"  {entry.hour:02d}:00  {entry.price_value:8.3f}  "
              f"{entry.classification.value:<9} {target:>7}  {entry.reason}")
    print()
    print(f"{len(entries)} hourly entries planned")
    print("=" * 70 + "\n")
    return 0


async def async_main() -> int:
    """
    Main daemon loop (async).

    Builds the schedule at startup and daily at the cycle time, and runs the
    executor every execute_interval minutes.
    Handles signals:
    - SIGINT/SIGTERM: Graceful shutdown
    - SIGHUP: Reload configuration
    """
    shutdown_event = asyncio.Event()
    reload_event = asyncio.Event()

    parser = argparse.ArgumentParser(
        description='Pool heat pump daemon - plans and applies hourly targets from electricity prices'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: searches /etc, /run, /usr/lib)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the planned schedule for today without storing or executing it'
    )
    parser.add_argument(
        '--database',
        type=str,
        default=None,
        help='SQLAlchemy database URL (overrides config file)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (default: WARNING)'
    )
    args = parser.parse_args()

    config_path = args.config

    def apply_cli_overrides(cfg: Config) -> None:
        if args.database:
            cfg.database_url = args.database
        if args.log_level:
            cfg.logging_level = args.log_level.upper()

    try:
        config = load_config(config_path)
        apply_cli_overrides(config)
        configure_logging(config.logging_level)
        logger.debug("Configuration loaded successfully")
    except ConfigurationError as e:
        configure_logging('ERROR')
        logger.error(f"Configuration error: {e}")
        return 1

    if args.dry_run:
        return run_dry_run(config)

    setup_signal_handlers(shutdown_event, reload_event)

    service = create_service(config)
    notify_ready()

    loop = asyncio.get_running_loop()
    next_cycle_handle: Optional[asyncio.TimerHandle] = None
    next_tick_handle: Optional[asyncio.TimerHandle] = None
    tick_task: Optional[asyncio.Task] = None

    def schedule_next_cycle() -> None:
        """Schedule the next daily build at the configured local time."""
        nonlocal next_cycle_handle
        delay_seconds = seconds_until_cycle(datetime.now(timezone.utc), config.cycle_time, config.tz)
        logger.debug(f"Next schedule build in {delay_seconds/3600:.1f} hours")
        next_cycle_handle = loop.call_later(delay_seconds, run_cycle_callback)

    def run_cycle_callback() -> None:
        """Run the daily build and schedule the next one."""
        nonlocal next_cycle_handle

        task = asyncio.create_task(run_daily_cycle(service))

        def on_cycle_complete(future: asyncio.Future) -> None:
            nonlocal next_cycle_handle
            if future.cancelled():
                return
            try:
                future.result()
                schedule_next_cycle()
            except Exception as e:
                logger.error(f"Error in daily cycle: {e}", exc_info=True)
                logger.debug("Scheduling retry in 1 hour")
                next_cycle_handle = loop.call_later(RETRY_DELAY_SECONDS, run_cycle_callback)

        task.add_done_callback(on_cycle_complete)

    def run_tick_callback() -> None:
        """Run the executor and schedule the next tick."""
        nonlocal next_tick_handle, tick_task

        if tick_task is not None and not tick_task.done():
            logger.warning("Previous executor run still in progress, skipping tick")
        else:
            tick_task = asyncio.create_task(run_execute_tick(service))

            def on_tick_complete(future: asyncio.Future) -> None:
                if future.cancelled():
                    return
                error = future.exception()
                if error is not None:
                    logger.error(f"Error in executor run: {error}", exc_info=error)

            tick_task.add_done_callback(on_tick_complete)

        next_tick_handle = loop.call_later(config.execute_interval_minutes * 60, run_tick_callback)

    def cancel_timers() -> None:
        if next_cycle_handle:
            next_cycle_handle.cancel()
        if next_tick_handle:
            next_tick_handle.cancel()

    logger.debug("Running initial schedule build")
    run_cycle_callback()
    run_tick_callback()

    try:
        while True:
            shutdown_task = asyncio.create_task(shutdown_event.wait())
            reload_task = asyncio.create_task(reload_event.wait())

            done, pending = await asyncio.wait(
                [shutdown_task, reload_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            if shutdown_event.is_set():
                break

            if reload_event.is_set():
                reload_event.clear()
                cancel_timers()

                notify_reloading()
                logger.debug("Reloading configuration")
                try:
                    new_config = load_config(config_path)
                    apply_cli_overrides(new_config)
                    configure_logging(new_config.logging_level)

                    if service.device is not None:
                        service.device.close()
                    config = new_config
                    service = create_service(config)
                    logger.debug("Configuration reloaded successfully")
                except ConfigurationError as e:
                    logger.error(f"Failed to reload configuration: {e}")
                    logger.debug("Continuing with previous configuration")

                notify_ready()

                run_cycle_callback()
                run_tick_callback()
    except Exception as e:
        logger.error(f"Error in main loop: {e}", exc_info=True)

    cancel_timers()

    if tick_task is not None and not tick_task.done():
        logger.debug("Waiting for executor run to finish")
        try:
            await tick_task
        except Exception as e:
            logger.error(f"Executor run failed during shutdown: {e}")

    if service.device is not None:
        service.device.close()

    notify_stopping()

    logger.debug("Daemon shutdown complete")
    return 0


def main() -> int:
    """
    Synchronous wrapper for async_main.
    """
    return asyncio.run(async_main())


if __name__ == "__main__":
    exit(main())
