# SPDX-License-Identifier: MPL-2.0
"""
Shared fixtures: a throwaway SQLite database per test and the stores on top.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Sequence
from unittest.mock import Mock

import pytest

from poolheat.automation import AutomationService
from poolheat.database import create_database
from poolheat.executor import ScheduleExecutor
from poolheat.models import PricePoint
from poolheat.planner import ScheduleBuilder
from poolheat.store import PriceStore, ScheduleStore, SettingsStore


@pytest.fixture
def session_factory(tmp_path):
    return create_database(f"sqlite:///{tmp_path / 'poolheat.db'}")


@pytest.fixture
def price_store(session_factory):
    return PriceStore(session_factory)


@pytest.fixture
def schedule_store(session_factory):
    return ScheduleStore(session_factory)


@pytest.fixture
def settings_store(session_factory):
    return SettingsStore(session_factory)


def hourly_prices(start: datetime, values: Sequence[float], zone: str = "SE3") -> List[PricePoint]:
    """Build consecutive hourly price points starting at start."""
    return [
        PricePoint(
            zone=zone,
            start_time=start + timedelta(hours=i),
            end_time=start + timedelta(hours=i + 1),
            total_price=value,
        )
        for i, value in enumerate(values)
    ]


@pytest.fixture
def day_start():
    """Midnight UTC of the day under test."""
    return datetime(2026, 7, 1, tzinfo=timezone.utc)


@pytest.fixture
def device():
    """Mock heat pump controller."""
    return Mock()


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def service(settings_store, price_store, schedule_store, device, notifier):
    """AutomationService on the temporary database, in UTC."""
    builder = ScheduleBuilder(schedule_store, price_store)
    executor = ScheduleExecutor(schedule_store, device)
    return AutomationService(
        settings_store, price_store, schedule_store, builder, executor,
        device=device, notifier=notifier,
    )
