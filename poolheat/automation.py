# SPDX-License-Identifier: MPL-2.0
"""
Automation service.

Ties settings, prices, the schedule builder and the executor together for the
HTTP API and the daemon. Every operation returns a structured result
dictionary with at least "success" and "message", also on failure.
"""

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, Optional

from poolheat.exceptions import (
    ConfigurationError,
    DeviceError,
    NoPriceDataError,
    PersistenceError,
)
from poolheat.executor import ScheduleExecutor
from poolheat.models import EntryStatus, PricePoint
from poolheat.planner import ScheduleBuilder

logger = logging.getLogger(__name__)


class AutomationService:
    """
    Application facade over the planner and executor.

    Attributes:
        settings_store: Provides get_active() and save()
        price_store: Provides query() and store()
        schedule_store: Schedule table access
        builder: ScheduleBuilder
        executor: ScheduleExecutor
        device: Heat pump client (used for status reads), may be None
        notifier: Optional NtfyClient for operator alerts
        tz: Local timezone of the schedule
    """

    def __init__(self, settings_store, price_store, schedule_store,
                 builder: ScheduleBuilder, executor: ScheduleExecutor,
                 device=None, notifier=None, tz: tzinfo = timezone.utc):
        self.settings_store = settings_store
        self.price_store = price_store
        self.schedule_store = schedule_store
        self.builder = builder
        self.executor = executor
        self.device = device
        self.notifier = notifier
        self.tz = tz

    def _local_day_bounds(self, for_date: date):
        start = datetime(for_date.year, for_date.month, for_date.day, tzinfo=self.tz)
        next_day = for_date + timedelta(days=1)
        end = datetime(next_day.year, next_day.month, next_day.day, tzinfo=self.tz)
        return start, end

    def create_daily_schedule(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Build and persist today's schedule.

        Returns:
            Result dictionary with success, message, date, schedule_entries,
            average_price and baseline_temp. On failure, "error" names the
            exception type.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        for_date = now.astimezone(self.tz).date()

        try:
            settings = self.settings_store.get_active()
            if not settings.automation_enabled:
                logger.info("Automation is disabled, skipping schedule build")
                return {
                    "success": False,
                    "message": "Automation is disabled",
                    "date": for_date.isoformat(),
                    "skipped": True,
                    "error": "ConfigurationError",
                }

            settings.validate()
            day_start, day_end = self._local_day_bounds(for_date)
            prices = self.price_store.query(settings.bidding_zone, day_start, day_end)
            if not prices:
                raise NoPriceDataError(
                    f"No price data available for {for_date} in {settings.bidding_zone}. "
                    f"Day-ahead prices may not be published yet."
                )

            self._report_abandoned(for_date - timedelta(days=1), now)

            average = self.builder.baseline_average(settings, now)
            entries = self.builder.build(
                for_date, prices, settings, settings.baseline_temp,
                average_price=average, now=now,
            )

        except NoPriceDataError as e:
            logger.error(f"Cannot build schedule: {e}")
            if self.notifier:
                self.notifier.alert_missing_prices(for_date, str(e))
            return self._failure(e, for_date)

        except ConfigurationError as e:
            logger.warning(f"Cannot build schedule: {e}")
            return self._failure(e, for_date)

        except PersistenceError as e:
            logger.error(f"Failed to store schedule: {e}")
            return self._failure(e, for_date)

        return {
            "success": True,
            "message": f"Daily schedule created with {len(entries)} hourly adjustments",
            "date": for_date.isoformat(),
            "schedule_entries": len(entries),
            "average_price": average,
            "baseline_temp": settings.baseline_temp,
            "schedule": [e.to_dict() for e in entries],
        }

    def _report_abandoned(self, for_date: date, now: datetime) -> None:
        """Log and alert entries of a past day that were never executed."""
        cutoff = now - self.executor.window
        abandoned = self.schedule_store.unexecuted_before(for_date, cutoff)
        if not abandoned:
            return

        logger.warning(
            f"{len(abandoned)} schedule entries for {for_date} were never executed: "
            + ", ".join(f"{e.hour:02d}:00" for e in abandoned)
        )
        if self.notifier:
            self.notifier.alert_abandoned(for_date, abandoned)

    def get_schedule(self, for_date: Optional[date] = None,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        """Return the persisted entries of a day (default today) in hour order."""
        if now is None:
            now = datetime.now(timezone.utc)
        if for_date is None:
            for_date = now.astimezone(self.tz).date()

        try:
            entries = self.schedule_store.entries_for_date(for_date)
        except PersistenceError as e:
            logger.error(f"Failed to load schedule: {e}")
            return self._failure(e, for_date)

        schedule = []
        for entry in entries:
            item = entry.to_dict()
            item["status"] = entry.status(now, self.executor.window).value
            schedule.append(item)

        next_entry = next(
            (item for item in schedule if item["status"] == EntryStatus.PLANNED.value), None
        )

        return {
            "success": True,
            "message": f"{len(schedule)} schedule entries for {for_date}",
            "date": for_date.isoformat(),
            "schedule": schedule,
            "next_execution": next_entry,
        }

    def execute_due(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run the executor once and return its report."""
        try:
            report = self.executor.run(now)
        except PersistenceError as e:
            logger.error(f"Failed to execute schedule: {e}")
            return self._failure(e)

        if report.attempted == 0:
            message = "No scheduled actions to execute"
        else:
            message = f"Executed {report.succeeded} of {report.attempted} scheduled actions"

        result = {"success": True, "message": message}
        result.update(report.to_dict())
        return result

    def get_settings(self) -> Dict[str, Any]:
        try:
            settings = self.settings_store.get_active()
        except PersistenceError as e:
            return self._failure(e)
        return {"success": True, "message": "Settings loaded", "settings": settings.to_dict()}

    def update_settings(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial settings update.

        The new settings apply to the next schedule build; today's schedule is
        not rebuilt automatically.
        """
        try:
            current = self.settings_store.get_active()
            updated = current.updated(changes)
            self.settings_store.save(updated)
        except (ConfigurationError, PersistenceError) as e:
            logger.warning(f"Settings update rejected: {e}")
            return self._failure(e)

        return {
            "success": True,
            "message": "Settings updated successfully",
            "settings": updated.to_dict(),
        }

    def store_prices(self, points: Iterable[PricePoint]) -> Dict[str, Any]:
        try:
            count = self.price_store.store(points)
        except PersistenceError as e:
            logger.error(f"Failed to store prices: {e}")
            return self._failure(e)
        return {"success": True, "message": f"Stored {count} price points", "stored": count}

    def override(self, action: str, value: Any = None) -> Dict[str, Any]:
        """
        Apply a manual operator command.

        Actions:
            set_power: value is a bool, switches the pump on or off
            set_temperature: value in degrees, within the pump bounds
            pause: disable automation (no schedule is built)
            resume: enable automation again

        A manual device command lasts until the next scheduled entry runs.
        """
        try:
            if action == "set_power":
                if not isinstance(value, bool):
                    raise ConfigurationError("Power value must be true or false")
                self._require_device().set_power(value)
                message = f"Power set to {'on' if value else 'off'}"

            elif action == "set_temperature":
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ConfigurationError("Temperature value must be a number")
                settings = self.settings_store.get_active()
                if not settings.min_pump_temp <= value <= settings.max_pump_temp:
                    raise ConfigurationError(
                        f"Temperature must be between {settings.min_pump_temp} and "
                        f"{settings.max_pump_temp} degrees, got {value}"
                    )
                self._require_device().set_temperature(float(value))
                message = f"Temperature set to {float(value)}°C"

            elif action in ("pause", "resume"):
                enabled = action == "resume"
                current = self.settings_store.get_active()
                self.settings_store.save(current.updated({"automation_enabled": enabled}))
                message = "Automation resumed" if enabled else "Automation paused"

            else:
                raise ConfigurationError(f"Invalid action: {action}")

        except (ConfigurationError, DeviceError, PersistenceError) as e:
            logger.warning(f"Manual override '{action}' failed: {e}")
            return self._failure(e)

        logger.info(f"Manual override: {message}")
        return {"success": True, "message": message, "action": action}

    def _require_device(self):
        if self.device is None:
            raise ConfigurationError("No heat pump configured")
        return self.device

    def device_status(self) -> Dict[str, Any]:
        if self.device is None:
            return {"success": False, "message": "No heat pump configured", "error": "ConfigurationError"}
        try:
            status = self.device.get_status()
        except DeviceError as e:
            return self._failure(e)
        return {"success": True, "message": "Status retrieved", "status": status.to_dict()}

    @staticmethod
    def _failure(error: Exception, for_date: Optional[date] = None) -> Dict[str, Any]:
        result = {
            "success": False,
            "message": str(error),
            "error": type(error).__name__,
        }
        if for_date is not None:
            result["date"] = for_date.isoformat()
        return result


def create_service(config) -> AutomationService:
    """
    Wire up the database, stores, device client and notifier from a Config.

    Args:
        config: Loaded poolheat.config.Config

    Returns:
        Ready AutomationService
    """
    from poolheat.database import create_database
    from poolheat.heatpump import HeatPumpClient
    from poolheat.ntfy import NtfyClient
    from poolheat.store import PriceStore, ScheduleStore, SettingsStore

    session_factory = create_database(config.database_url)
    price_store = PriceStore(session_factory, provider=config.price_provider)
    schedule_store = ScheduleStore(session_factory)
    settings_store = SettingsStore(session_factory, defaults=config.automation)

    device = HeatPumpClient(
        base_url=config.heatpump_base_url,
        device_id=config.heatpump_device_id,
        access_token=config.heatpump_token,
        timeout=config.heatpump_timeout,
        power_code=config.power_code,
        temperature_code=config.temperature_code,
    )

    notifier = None
    if config.ntfy_topic:
        notifier = NtfyClient(config.ntfy_topic, server=config.ntfy_server, token=config.ntfy_token)

    tz = config.tz
    builder = ScheduleBuilder(
        schedule_store, price_store, tz=tz,
        basis=config.price_basis, fallback_average=config.fallback_average_price,
    )
    executor = ScheduleExecutor(
        schedule_store, device,
        window=config.execution_window,
        claim_lease=config.claim_lease,
        run_deadline=config.run_deadline_seconds,
    )

    return AutomationService(
        settings_store, price_store, schedule_store, builder, executor,
        device=device, notifier=notifier, tz=tz,
    )
