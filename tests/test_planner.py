# SPDX-License-Identifier: MPL-2.0
"""
Unit tests for price classification, temperature planning and schedule building.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from poolheat.exceptions import ConfigurationError, NoPriceDataError
from poolheat.models import (
    AutomationSettings,
    Classification,
    PriceBasis,
    PricePoint,
)
from poolheat.planner import (
    DEFAULT_FALLBACK_AVERAGE,
    ScheduleBuilder,
    classify_price,
    plan_day,
    plan_temperature,
    rolling_average,
)

from conftest import hourly_prices

SETTINGS = AutomationSettings()
DAY = date(2026, 7, 1)


def price_at(start: datetime, value: float, energy: Optional[float] = None) -> PricePoint:
    return PricePoint("SE3", start, start + timedelta(hours=1), value, energy_price=energy)


class TestRollingAverage:
    """Tests for the trailing window average."""

    def test_average_of_prices_in_window(self) -> None:
        now = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
        prices = [
            price_at(now - timedelta(days=1), 0.40),
            price_at(now - timedelta(days=2), 0.60),
        ]
        assert rolling_average(prices, 7, now) == pytest.approx(0.50)

    def test_prices_outside_window_ignored(self) -> None:
        now = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
        prices = [
            price_at(now - timedelta(days=1), 0.40),
            price_at(now - timedelta(days=8), 5.00),
            price_at(now + timedelta(hours=1), 5.00),
        ]
        assert rolling_average(prices, 7, now) == pytest.approx(0.40)

    def test_window_bounds_are_inclusive(self) -> None:
        now = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
        prices = [
            price_at(now - timedelta(days=7), 0.20),
            price_at(now, 0.60),
        ]
        assert rolling_average(prices, 7, now) == pytest.approx(0.40)

    def test_empty_window_returns_fallback(self) -> None:
        now = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
        assert rolling_average([], 7, now) == DEFAULT_FALLBACK_AVERAGE
        assert rolling_average([], 7, now, fallback=0.25) == 0.25

    def test_energy_basis(self) -> None:
        now = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
        prices = [price_at(now - timedelta(hours=2), 1.00, energy=0.30)]
        assert rolling_average(prices, 7, now, basis=PriceBasis.ENERGY) == pytest.approx(0.30)
        assert rolling_average(prices, 7, now, basis=PriceBasis.TOTAL) == pytest.approx(1.00)

    def test_energy_basis_falls_back_to_total(self) -> None:
        now = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
        prices = [price_at(now - timedelta(hours=2), 0.80)]
        assert rolling_average(prices, 7, now, basis=PriceBasis.ENERGY) == pytest.approx(0.80)


class TestClassifyPrice:
    """Tests for price classification against the baseline."""

    @pytest.mark.parametrize("price,expected", [
        (0.30, Classification.LOW),
        (0.50, Classification.NORMAL),
        (0.65, Classification.HIGH),
        (1.60, Classification.SHUTDOWN),
        (1.50, Classification.SHUTDOWN),
        (0.10, Classification.LOW),
        (0.60, Classification.NORMAL),
    ])
    def test_classification(self, price: float, expected: Classification) -> None:
        assert classify_price(price, 0.50, SETTINGS) == expected

    def test_shutdown_wins_over_low_band(self) -> None:
        """An expensive week does not hide an absolute shutdown price."""
        assert classify_price(1.60, 3.00, SETTINGS) == Classification.SHUTDOWN

    def test_zero_price_is_low(self) -> None:
        assert classify_price(0.0, 0.50, SETTINGS) == Classification.LOW

    def test_negative_price_is_low(self) -> None:
        assert classify_price(-0.05, 0.50, SETTINGS) == Classification.LOW


class TestPlanTemperature:
    """Tests for mapping a classification to a pump target."""

    def test_example_targets(self) -> None:
        assert plan_temperature(Classification.LOW, 28.0, SETTINGS).target_temperature == 30.0
        assert plan_temperature(Classification.HIGH, 28.0, SETTINGS).target_temperature == 26.0
        assert plan_temperature(Classification.NORMAL, 28.0, SETTINGS).target_temperature == 28.0

    def test_shutdown_has_no_target(self) -> None:
        plan = plan_temperature(Classification.SHUTDOWN, 28.0, SETTINGS, price=1.60, average=0.50)
        assert plan.shutdown is True
        assert plan.target_temperature is None
        assert "SHUTDOWN" in plan.reason
        assert "1.50" in plan.reason

    def test_low_clamped_to_max(self) -> None:
        plan = plan_temperature(Classification.LOW, 31.0, SETTINGS)
        assert plan.target_temperature == 32.0

    def test_high_clamped_to_min(self) -> None:
        plan = plan_temperature(Classification.HIGH, 19.0, SETTINGS)
        assert plan.target_temperature == 18.0

    def test_out_of_range_baseline_clamped(self) -> None:
        assert plan_temperature(Classification.NORMAL, 35.0, SETTINGS).target_temperature == 32.0
        assert plan_temperature(Classification.NORMAL, 15.0, SETTINGS).target_temperature == 18.0

    def test_reason_describes_adjustment(self) -> None:
        plan = plan_temperature(Classification.LOW, 28.0, SETTINGS, price=0.30, average=0.50)
        assert plan.reason.startswith("LOW price (0.300/kWh, avg 0.500)")
        assert "+2.0°C" in plan.reason
        assert "target 30.0°C" in plan.reason

    def test_reason_for_baseline(self) -> None:
        plan = plan_temperature(Classification.NORMAL, 28.0, SETTINGS, price=0.50)
        assert "baseline temperature" in plan.reason


class TestPlanDay:
    """Tests for planning a whole day without persistence."""

    def test_example_scenario(self, day_start: datetime) -> None:
        prices = hourly_prices(day_start, [0.30, 0.65, 1.60, 0.50])
        entries = plan_day(DAY, prices, 0.50, SETTINGS, 28.0)

        assert [e.hour for e in entries] == [0, 1, 2, 3]
        assert [e.classification for e in entries] == [
            Classification.LOW, Classification.HIGH,
            Classification.SHUTDOWN, Classification.NORMAL,
        ]
        assert [e.target_temperature for e in entries] == [30.0, 26.0, None, 28.0]
        assert entries[2].shutdown is True
        assert all(not e.executed for e in entries)

    def test_one_entry_per_priced_hour(self, day_start: datetime) -> None:
        prices = hourly_prices(day_start, [0.5] * 24)
        entries = plan_day(DAY, prices, 0.50, SETTINGS, 28.0)

        assert [e.hour for e in entries] == list(range(24))
        assert entries[5].scheduled_time == day_start + timedelta(hours=5)
        assert entries[5].for_date == DAY

    def test_monotonic_in_price(self, day_start: datetime) -> None:
        values = [0.10, 0.30, 0.40, 0.50, 0.60, 0.65, 0.90, 1.20, 1.50, 2.00]
        entries = plan_day(DAY, hourly_prices(day_start, values), 0.50, SETTINGS, 28.0)

        ranks = [e.classification.rank for e in entries]
        assert ranks == sorted(ranks)

        targets = [e.target_temperature if e.target_temperature is not None else float("-inf")
                   for e in entries]
        assert targets == sorted(targets, reverse=True)

    def test_targets_within_bounds(self, day_start: datetime) -> None:
        values = [0.01 * i for i in range(24)]
        for baseline in (15.0, 18.0, 28.0, 32.0, 40.0):
            for entry in plan_day(DAY, hourly_prices(day_start, values), 0.12, SETTINGS, baseline):
                if entry.target_temperature is not None:
                    assert SETTINGS.min_pump_temp <= entry.target_temperature <= SETTINGS.max_pump_temp

    def test_prices_outside_day_skipped(self, day_start: datetime) -> None:
        prices = hourly_prices(day_start - timedelta(hours=2), [0.5] * 4)
        entries = plan_day(DAY, prices, 0.50, SETTINGS, 28.0)
        assert [e.hour for e in entries] == [0, 1]

    def test_duplicate_hour_ignored(self, day_start: datetime) -> None:
        prices = [
            price_at(day_start + timedelta(hours=3), 0.30),
            price_at(day_start + timedelta(hours=3), 1.60),
        ]
        entries = plan_day(DAY, prices, 0.50, SETTINGS, 28.0)
        assert len(entries) == 1
        assert entries[0].classification == Classification.LOW

    def test_local_timezone_defines_hours(self) -> None:
        tz = ZoneInfo("Europe/Stockholm")
        # 22:00 UTC on June 30 is midnight in Stockholm (CEST, UTC+2)
        start = datetime(2026, 6, 30, 22, 0, tzinfo=timezone.utc)
        entries = plan_day(DAY, hourly_prices(start, [0.5, 0.5]), 0.50, SETTINGS, 28.0, tz=tz)

        assert [e.hour for e in entries] == [0, 1]
        assert entries[0].scheduled_time == start
        assert entries[0].scheduled_time.tzinfo == timezone.utc

    def test_energy_basis_drives_classification(self, day_start: datetime) -> None:
        prices = [price_at(day_start, 1.00, energy=0.20)]
        entries = plan_day(DAY, prices, 0.50, SETTINGS, 28.0, basis=PriceBasis.ENERGY)
        assert entries[0].classification == Classification.LOW
        assert entries[0].price_value == pytest.approx(0.20)


class TestScheduleBuilder:
    """Tests for building and persisting a day's schedule."""

    def test_build_persists_entries(self, schedule_store, price_store, day_start: datetime) -> None:
        builder = ScheduleBuilder(schedule_store, price_store)
        prices = hourly_prices(day_start, [0.30, 0.65, 1.60, 0.50])

        entries = builder.build(DAY, prices, SETTINGS, 28.0, average_price=0.50, now=day_start)

        assert len(entries) == 4
        assert all(e.id is not None for e in entries)
        assert schedule_store.entries_for_date(DAY) == entries

    def test_rebuild_is_idempotent(self, schedule_store, price_store, day_start: datetime) -> None:
        builder = ScheduleBuilder(schedule_store, price_store)
        prices = hourly_prices(day_start, [0.2 + 0.05 * i for i in range(24)])

        first = builder.build(DAY, prices, SETTINGS, 28.0, average_price=0.50, now=day_start)
        second = builder.build(DAY, prices, SETTINGS, 28.0, average_price=0.50, now=day_start)

        assert len(second) == 24
        assert first == second
        assert len({e.hour for e in second}) == 24

    def test_rebuild_keeps_executed_entries(self, schedule_store, price_store, day_start: datetime) -> None:
        builder = ScheduleBuilder(schedule_store, price_store)
        first = builder.build(
            DAY, hourly_prices(day_start, [0.30, 0.50]), SETTINGS, 28.0,
            average_price=0.50, now=day_start,
        )
        executed_at = day_start + timedelta(minutes=1)
        assert schedule_store.mark_executed(first[0].id, executed_at, "Temperature set to 30.0°C")

        rebuilt = builder.build(
            DAY, hourly_prices(day_start, [1.60, 1.60]), SETTINGS, 28.0,
            average_price=0.50, now=day_start,
        )

        assert len(rebuilt) == 2
        assert rebuilt[0].id == first[0].id
        assert rebuilt[0].executed is True
        assert rebuilt[0].target_temperature == 30.0
        assert rebuilt[0].executed_at == executed_at
        assert rebuilt[1].classification == Classification.SHUTDOWN

    def test_disabled_builds_nothing(self, day_start: datetime) -> None:
        store = MagicMock()
        builder = ScheduleBuilder(store, MagicMock())
        settings = AutomationSettings(automation_enabled=False)

        result = builder.build(DAY, hourly_prices(day_start, [0.5]), settings, 28.0)

        assert result == []
        store.replace_day.assert_not_called()

    def test_no_prices_raises(self) -> None:
        store = MagicMock()
        builder = ScheduleBuilder(store, MagicMock())

        with pytest.raises(NoPriceDataError):
            builder.build(DAY, [], SETTINGS, 28.0)
        store.replace_day.assert_not_called()

    def test_prices_for_other_day_raise(self, day_start: datetime) -> None:
        store = MagicMock()
        builder = ScheduleBuilder(store, MagicMock())
        prices = hourly_prices(day_start + timedelta(days=1), [0.5])

        with pytest.raises(NoPriceDataError):
            builder.build(DAY, prices, SETTINGS, 28.0, average_price=0.50)
        store.replace_day.assert_not_called()

    def test_invalid_settings_raise(self, day_start: datetime) -> None:
        store = MagicMock()
        builder = ScheduleBuilder(store, MagicMock())
        settings = AutomationSettings(min_pump_temp=30.0, max_pump_temp=20.0)

        with pytest.raises(ConfigurationError):
            builder.build(DAY, hourly_prices(day_start, [0.5]), settings, 28.0)
        store.replace_day.assert_not_called()

    def test_average_from_price_history(self, schedule_store, price_store, day_start: datetime) -> None:
        history_start = day_start - timedelta(days=3)
        price_store.store(hourly_prices(history_start, [0.40] * 48 + [0.60] * 24))
        builder = ScheduleBuilder(schedule_store, price_store)

        average = builder.baseline_average(SETTINGS, day_start)
        assert average == pytest.approx((0.40 * 48 + 0.60 * 24) / 72)

        # 0.30 is LOW only against the stored history average
        entries = builder.build(DAY, [price_at(day_start, 0.30)], SETTINGS, 28.0, now=day_start)
        assert entries[0].classification == Classification.LOW

    def test_average_fallback_without_history(self, schedule_store, price_store, day_start: datetime) -> None:
        builder = ScheduleBuilder(schedule_store, price_store, fallback_average=0.40)
        assert builder.baseline_average(SETTINGS, day_start) == 0.40
