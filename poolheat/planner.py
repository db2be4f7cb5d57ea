# SPDX-License-Identifier: MPL-2.0
"""
Price-driven schedule planning.

Classifies each hour's price against a rolling average, derives a pump target
temperature (or a shutdown) per hour and persists the day's decisions as a
schedule that the executor consumes later.

The planner:
1. Averages prices over a trailing window (the baseline)
2. Classifies each hour as LOW, NORMAL, HIGH or SHUTDOWN
3. Maps the classification to a clamped target temperature
4. Replaces the day's unexecuted schedule entries in one transaction
"""

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Sequence

from poolheat.exceptions import NoPriceDataError
from poolheat.models import (
    AutomationSettings,
    Classification,
    PriceBasis,
    PricePoint,
    ScheduleEntry,
    TemperaturePlan,
)

logger = logging.getLogger(__name__)

# Average used when the trailing window holds no prices (per kWh)
DEFAULT_FALLBACK_AVERAGE = 0.50


def rolling_average(
    prices: Sequence[PricePoint],
    window_days: int,
    now: datetime,
    basis: PriceBasis = PriceBasis.TOTAL,
    fallback: float = DEFAULT_FALLBACK_AVERAGE
) -> float:
    """
    Calculate the average price over a trailing window.

    Args:
        prices: Candidate price points (may extend beyond the window)
        window_days: Length of the trailing window in days
        now: End of the window (inclusive)
        basis: Which price field to average
        fallback: Value returned when no price falls inside the window

    Returns:
        Arithmetic mean of the prices starting within [now - window_days, now]
    """
    window_start = now - timedelta(days=window_days)
    values = [p.value(basis) for p in prices if window_start <= p.start_time <= now]

    if not values:
        logger.warning(
            f"No prices in the last {window_days} days, using fallback average {fallback:.3f}"
        )
        return fallback

    average = sum(values) / len(values)
    logger.debug(f"Rolling {window_days}-day average over {len(values)} prices: {average:.3f}")
    return average


def classify_price(price: float, baseline: float, settings: AutomationSettings) -> Classification:
    """
    Classify an hourly price relative to the rolling baseline.

    The absolute shutdown threshold wins over the relative bands, so a day that
    is expensive across the board still shuts the pump down.

    Args:
        price: Price for the hour
        baseline: Rolling average price
        settings: Automation settings holding the ratios and shutdown price

    Returns:
        Classification of the hour
    """
    if price >= settings.absolute_shutdown_price:
        return Classification.SHUTDOWN
    if price <= baseline * settings.low_price_ratio:
        return Classification.LOW
    if price >= baseline * settings.high_price_ratio:
        return Classification.HIGH
    return Classification.NORMAL


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def plan_temperature(
    classification: Classification,
    baseline_temp: float,
    settings: AutomationSettings,
    price: Optional[float] = None,
    average: Optional[float] = None
) -> TemperaturePlan:
    """
    Derive the pump target for a classified hour.

    Args:
        classification: Price classification of the hour
        baseline_temp: Nominal pump target temperature
        settings: Automation settings with offsets and pump bounds
        price: Hour price, used in the audit reason
        average: Rolling average, used in the audit reason

    Returns:
        TemperaturePlan with a target inside [min_pump_temp, max_pump_temp],
        or no target when the pump should be switched off
    """
    price_text = f"{price:.3f}/kWh" if price is not None else "n/a"
    if average is not None:
        price_text += f", avg {average:.3f}"

    if classification == Classification.SHUTDOWN:
        return TemperaturePlan(
            target_temperature=None,
            shutdown=True,
            reason=(
                f"SHUTDOWN price ({price_text}) >= "
                f"{settings.absolute_shutdown_price:.2f} threshold - pump off"
            ),
        )

    if classification == Classification.LOW:
        target = min(settings.max_pump_temp, baseline_temp + settings.low_temp_offset)
    elif classification == Classification.HIGH:
        target = max(settings.min_pump_temp, baseline_temp - settings.high_temp_offset)
    else:
        target = baseline_temp

    # Baseline itself may be out of range after a settings change
    target = _clamp(target, settings.min_pump_temp, settings.max_pump_temp)
    adjustment = target - baseline_temp

    if adjustment == 0:
        change = "baseline temperature"
    else:
        change = f"{adjustment:+.1f}°C"

    return TemperaturePlan(
        target_temperature=target,
        shutdown=False,
        reason=f"{classification.value} price ({price_text}) - {change}, target {target:.1f}°C",
    )


def plan_day(
    for_date: date,
    prices_for_day: Sequence[PricePoint],
    average_price: float,
    settings: AutomationSettings,
    baseline_temp: float,
    tz: tzinfo = timezone.utc,
    basis: PriceBasis = PriceBasis.TOTAL
) -> List[ScheduleEntry]:
    """
    Build one day's schedule entries without persisting them.

    Args:
        for_date: Local date being planned
        prices_for_day: Price points for the day
        average_price: Baseline average, reused for every hour
        settings: Automation settings
        baseline_temp: Nominal pump target temperature
        tz: Local timezone that defines date and hour of each slot
        basis: Which price field drives classification

    Returns:
        Entries sorted by hour, at most one per hour
    """
    entries: Dict[int, ScheduleEntry] = {}

    for point in sorted(prices_for_day, key=lambda p: p.start_time):
        local_start = point.start_time.astimezone(tz)
        if local_start.date() != for_date:
            logger.debug(f"Skipping price outside {for_date}: {point}")
            continue

        hour = local_start.hour
        if hour in entries:
            logger.warning(f"Ignoring additional price for {for_date} hour {hour}: {point}")
            continue

        price = point.value(basis)
        classification = classify_price(price, average_price, settings)
        plan = plan_temperature(classification, baseline_temp, settings, price, average_price)

        entries[hour] = ScheduleEntry(
            for_date=for_date,
            hour=hour,
            scheduled_time=point.start_time.astimezone(timezone.utc),
            price_value=price,
            classification=classification,
            target_temperature=plan.target_temperature,
            reason=plan.reason,
        )

    return [entries[hour] for hour in sorted(entries)]


class ScheduleBuilder:
    """
    Builds and persists a day's schedule.

    Attributes:
        store: Schedule store providing replace_day()
        price_series: Price source providing query(zone, start, end)
        tz: Local timezone for hour slots
        basis: Price field used for the whole run
        fallback_average: Average used when the trailing window is empty
    """

    def __init__(self, store, price_series, tz: tzinfo = timezone.utc,
                 basis: PriceBasis = PriceBasis.TOTAL,
                 fallback_average: float = DEFAULT_FALLBACK_AVERAGE):
        self.store = store
        self.price_series = price_series
        self.tz = tz
        self.basis = basis
        self.fallback_average = fallback_average

    def baseline_average(self, settings: AutomationSettings, now: datetime) -> float:
        """Query the trailing window and return its average price."""
        window_start = now - timedelta(days=settings.rolling_window_days)
        # Query end is exclusive, the window end is not
        history = self.price_series.query(
            settings.bidding_zone, window_start, now + timedelta(microseconds=1)
        )
        return rolling_average(
            history, settings.rolling_window_days, now, self.basis, self.fallback_average
        )

    def build(
        self,
        for_date: date,
        prices_for_day: Sequence[PricePoint],
        settings: AutomationSettings,
        baseline_temp: float,
        average_price: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> List[ScheduleEntry]:
        """
        Plan the day and atomically replace its unexecuted entries.

        Args:
            for_date: Local date to plan
            prices_for_day: Price points for the day
            settings: Active automation settings
            baseline_temp: Nominal pump target temperature
            average_price: Precomputed baseline average (computed if None)
            now: Reference time for the rolling window (defaults to now)

        Returns:
            The persisted entries for the day, sorted by hour. Empty when
            automation is disabled.

        Raises:
            NoPriceDataError: If no prices were supplied
            ConfigurationError: If the settings are invalid
            PersistenceError: If the schedule could not be stored
        """
        if not settings.automation_enabled:
            logger.info(f"Automation disabled, not building schedule for {for_date}")
            return []

        if not prices_for_day:
            raise NoPriceDataError(f"No price data available for {for_date}")

        settings.validate()

        if now is None:
            now = datetime.now(timezone.utc)

        # Computed once so the baseline cannot drift while iterating
        if average_price is None:
            average_price = self.baseline_average(settings, now)

        entries = plan_day(
            for_date, prices_for_day, average_price, settings, baseline_temp,
            self.tz, self.basis
        )

        if not entries:
            raise NoPriceDataError(f"No price data falls on {for_date}")

        stored = self.store.replace_day(for_date, entries, now=now)

        counts: Dict[str, int] = {}
        for entry in entries:
            counts[entry.classification.value] = counts.get(entry.classification.value, 0) + 1
        logger.info(
            f"Built schedule for {for_date}: {len(entries)} hours, "
            f"average {average_price:.3f}, classifications {counts}"
        )
        for entry in stored:
            logger.debug(f"  {entry}: {entry.reason}")

        return stored
