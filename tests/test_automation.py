# SPDX-License-Identifier: MPL-2.0
"""
Tests for the automation service facade used by the API and the daemon.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from poolheat.exceptions import DeviceError, PersistenceError
from poolheat.heatpump import DeviceStatus
from poolheat.models import AutomationSettings
from poolheat.planner import plan_day

from conftest import hourly_prices

DAY = date(2026, 7, 1)


@pytest.fixture
def priced_day(price_store, day_start):
    """A week of 0.50 history plus a day with cheap, dear and very dear hours."""
    price_store.store(hourly_prices(day_start - timedelta(days=7), [0.50] * 24 * 7))
    today = [0.30] * 6 + [0.50] * 12 + [0.70] * 4 + [1.60] * 2
    price_store.store(hourly_prices(day_start, today))
    return today


class TestCreateDailySchedule:
    def test_builds_schedule(self, service, priced_day, day_start) -> None:
        result = service.create_daily_schedule(now=day_start + timedelta(minutes=5))

        assert result["success"] is True
        assert result["date"] == "2026-07-01"
        assert result["schedule_entries"] == 24
        assert result["average_price"] == pytest.approx(0.50, abs=0.01)
        assert result["baseline_temp"] == 28.0
        assert result["message"] == "Daily schedule created with 24 hourly adjustments"

        schedule = result["schedule"]
        assert schedule[0]["classification"] == "LOW"
        assert schedule[0]["target_temperature"] == 30.0
        assert schedule[20]["classification"] == "HIGH"
        assert schedule[23]["classification"] == "SHUTDOWN"
        assert schedule[23]["target_temperature"] is None

    def test_disabled(self, service, settings_store, priced_day, day_start) -> None:
        settings_store.save(AutomationSettings(automation_enabled=False))

        result = service.create_daily_schedule(now=day_start)

        assert result["success"] is False
        assert result["message"] == "Automation is disabled"
        assert result["skipped"] is True
        assert service.schedule_store.entries_for_date(DAY) == []

    def test_missing_prices(self, service, notifier, day_start) -> None:
        result = service.create_daily_schedule(now=day_start)

        assert result["success"] is False
        assert result["error"] == "NoPriceDataError"
        assert "SE3" in result["message"]
        notifier.alert_missing_prices.assert_called_once()
        assert notifier.alert_missing_prices.call_args[0][0] == DAY

    def test_invalid_stored_settings(self, service, settings_store, priced_day, day_start) -> None:
        settings_store.save(AutomationSettings(min_pump_temp=30.0, max_pump_temp=20.0))

        result = service.create_daily_schedule(now=day_start)

        assert result["success"] is False
        assert result["error"] == "ConfigurationError"

    def test_reports_abandoned_entries_of_previous_day(
        self, service, schedule_store, notifier, priced_day, day_start
    ) -> None:
        yesterday = DAY - timedelta(days=1)
        missed = plan_day(
            yesterday, hourly_prices(day_start - timedelta(days=1), [0.50, 0.50]),
            0.50, AutomationSettings(), 28.0,
        )
        stored = schedule_store.replace_day(yesterday, missed)
        schedule_store.mark_executed(stored[0].id, day_start - timedelta(days=1), "ok")

        service.create_daily_schedule(now=day_start + timedelta(minutes=5))

        notifier.alert_abandoned.assert_called_once()
        alert_date, entries = notifier.alert_abandoned.call_args[0]
        assert alert_date == yesterday
        assert [e.hour for e in entries] == [1]

    def test_rebuild_same_day(self, service, priced_day, day_start) -> None:
        now = day_start + timedelta(minutes=5)
        first = service.create_daily_schedule(now=now)
        second = service.create_daily_schedule(now=now)

        def without_ids(schedule):
            return [{k: v for k, v in item.items() if k != "id"} for item in schedule]

        assert without_ids(first["schedule"]) == without_ids(second["schedule"])
        assert len(service.schedule_store.entries_for_date(DAY)) == 24


class TestGetSchedule:
    def test_statuses_and_next_execution(self, service, device, priced_day, day_start) -> None:
        service.create_daily_schedule(now=day_start)
        service.execute_due(now=day_start + timedelta(minutes=1))

        result = service.get_schedule(DAY, now=day_start + timedelta(hours=2, minutes=10))

        assert result["success"] is True
        statuses = [item["status"] for item in result["schedule"]]
        assert statuses[0] == "EXECUTED"
        assert statuses[1] == "ABANDONED"
        assert statuses[3] == "PLANNED"
        assert result["next_execution"]["hour"] == 3

    def test_empty_day(self, service) -> None:
        result = service.get_schedule(date(2030, 1, 1))
        assert result["success"] is True
        assert result["schedule"] == []
        assert result["next_execution"] is None

    def test_defaults_to_today(self, service, day_start) -> None:
        result = service.get_schedule(now=day_start + timedelta(hours=5))
        assert result["date"] == "2026-07-01"

    def test_storage_failure(self, service) -> None:
        service.schedule_store = Mock()
        service.schedule_store.entries_for_date.side_effect = PersistenceError("locked")

        result = service.get_schedule(DAY)

        assert result["success"] is False
        assert result["error"] == "PersistenceError"


class TestExecuteDue:
    def test_executes_current_hour(self, service, device, priced_day, day_start) -> None:
        service.create_daily_schedule(now=day_start)

        result = service.execute_due(now=day_start + timedelta(minutes=2))

        assert result["success"] is True
        assert result["attempted"] == 1
        assert result["succeeded"] == 1
        assert result["message"] == "Executed 1 of 1 scheduled actions"
        device.set_temperature.assert_called_once_with(30.0)

    def test_nothing_due(self, service) -> None:
        result = service.execute_due(now=datetime(2030, 1, 1, tzinfo=timezone.utc))
        assert result["success"] is True
        assert result["message"] == "No scheduled actions to execute"

    def test_device_failure_reported_per_entry(self, service, device, priced_day, day_start) -> None:
        service.create_daily_schedule(now=day_start)
        device.set_temperature.side_effect = DeviceError("offline")

        result = service.execute_due(now=day_start + timedelta(minutes=2))

        assert result["success"] is True
        assert result["failed"] == 1
        assert result["results"][0]["message"] == "Failed to set temperature: offline"


class TestSettings:
    def test_get_settings(self, service) -> None:
        result = service.get_settings()
        assert result["success"] is True
        assert result["settings"] == AutomationSettings().to_dict()

    def test_update_settings(self, service) -> None:
        result = service.update_settings({"baseline_temp": 30.0, "bidding_zone": "SE4"})

        assert result["success"] is True
        assert result["settings"]["baseline_temp"] == 30.0
        assert service.get_settings()["settings"]["bidding_zone"] == "SE4"

    def test_update_settings_invalid(self, service) -> None:
        result = service.update_settings({"baseline_temp": 50.0})

        assert result["success"] is False
        assert result["error"] == "ConfigurationError"
        assert service.get_settings()["settings"]["baseline_temp"] == 28.0

    def test_update_settings_unknown_field(self, service) -> None:
        result = service.update_settings({"colour": "blue"})
        assert result["success"] is False
        assert "colour" in result["message"]


class TestPricesAndStatus:
    def test_store_prices(self, service, day_start) -> None:
        result = service.store_prices(hourly_prices(day_start, [0.1, 0.2, 0.3]))
        assert result == {"success": True, "message": "Stored 3 price points", "stored": 3}

    def test_device_status(self, service, device) -> None:
        device.get_status.return_value = DeviceStatus(power=True, set_temp=28.0, water_temp=26.0)

        result = service.device_status()

        assert result["success"] is True
        assert result["status"]["power"] is True
        assert result["status"]["water_temp"] == 26.0

    def test_device_status_failure(self, service, device) -> None:
        device.get_status.side_effect = DeviceError("HTTP error: 401 - unauthorized")

        result = service.device_status()

        assert result["success"] is False
        assert result["error"] == "DeviceError"

    def test_no_device(self, service) -> None:
        service.device = None
        assert service.device_status()["success"] is False


class TestOverride:
    def test_set_power(self, service, device) -> None:
        result = service.override("set_power", False)

        assert result == {"success": True, "message": "Power set to off", "action": "set_power"}
        device.set_power.assert_called_once_with(False)

    def test_set_power_requires_bool(self, service, device) -> None:
        result = service.override("set_power", 1.0)

        assert result["success"] is False
        assert result["error"] == "ConfigurationError"
        device.set_power.assert_not_called()

    def test_set_temperature(self, service, device) -> None:
        result = service.override("set_temperature", 30)

        assert result["success"] is True
        assert result["message"] == "Temperature set to 30.0°C"
        device.set_temperature.assert_called_once_with(30.0)

    @pytest.mark.parametrize("value", [17.5, 33.0, None, True])
    def test_set_temperature_rejected(self, service, device, value) -> None:
        result = service.override("set_temperature", value)

        assert result["success"] is False
        assert result["error"] == "ConfigurationError"
        device.set_temperature.assert_not_called()

    def test_device_failure(self, service, device) -> None:
        device.set_power.side_effect = DeviceError("Request timed out after 10 seconds")

        result = service.override("set_power", True)

        assert result["success"] is False
        assert result["error"] == "DeviceError"

    def test_pause_and_resume(self, service, priced_day, day_start) -> None:
        assert service.override("pause")["message"] == "Automation paused"
        assert service.get_settings()["settings"]["automation_enabled"] is False
        assert service.create_daily_schedule(now=day_start)["skipped"] is True

        assert service.override("resume")["message"] == "Automation resumed"
        assert service.get_settings()["settings"]["automation_enabled"] is True
        assert service.create_daily_schedule(now=day_start)["success"] is True

    def test_unknown_action(self, service) -> None:
        result = service.override("defrost")

        assert result["success"] is False
        assert result["message"] == "Invalid action: defrost"

    def test_no_device(self, service) -> None:
        service.device = None
        assert service.override("set_power", True)["error"] == "ConfigurationError"
