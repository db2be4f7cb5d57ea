# SPDX-License-Identifier: MPL-2.0
"""
Data model for the price-driven heat pump schedule.

Price points are read-only inputs, automation settings are the single active
configuration record, and schedule entries are the unit of both planning and
execution.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from poolheat.exceptions import ConfigurationError


class PriceBasis(Enum):
    """Which price field drives a planning run."""
    TOTAL = "total"
    ENERGY = "energy"


class Classification(Enum):
    """Price classification of a single hour."""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    SHUTDOWN = "SHUTDOWN"

    @property
    def rank(self) -> int:
        """Expensiveness order: LOW < NORMAL < HIGH < SHUTDOWN."""
        return _CLASSIFICATION_RANK[self]


_CLASSIFICATION_RANK = {
    Classification.LOW: 0,
    Classification.NORMAL: 1,
    Classification.HIGH: 2,
    Classification.SHUTDOWN: 3,
}


class EntryStatus(Enum):
    """Derived lifecycle state of a schedule entry (never persisted)."""
    PLANNED = "PLANNED"
    EXECUTED = "EXECUTED"
    ABANDONED = "ABANDONED"


@dataclass(frozen=True)
class PricePoint:
    """
    A single price interval for a bidding zone.

    Attributes:
        zone: Bidding zone, e.g. "SE3"
        start_time: Interval start (timezone aware)
        end_time: Interval end (timezone aware)
        total_price: Total price per kWh including fees and taxes
        energy_price: Spot energy component per kWh, if the provider reports it
        provider: Name of the price source
    """
    zone: str
    start_time: datetime
    end_time: datetime
    total_price: float
    energy_price: Optional[float] = None
    provider: str = "default"

    def value(self, basis: PriceBasis = PriceBasis.TOTAL) -> float:
        """Return the price used for planning under the given basis."""
        if basis == PriceBasis.ENERGY and self.energy_price is not None:
            return self.energy_price
        return self.total_price

    def __repr__(self) -> str:
        return f"PricePoint({self.zone}, {self.start_time.isoformat()}, {self.total_price:.3f})"


# Validated ranges for user-editable settings: field -> (min, max, inclusive_min)
SETTINGS_RANGES: Dict[str, tuple] = {
    "baseline_temp": (15.0, 40.0, True),
    "min_pump_temp": (10.0, 45.0, True),
    "max_pump_temp": (10.0, 45.0, True),
    "rolling_window_days": (1, 60, True),
    "low_price_ratio": (0.0, 10.0, False),
    "high_price_ratio": (0.0, 10.0, False),
    "low_temp_offset": (0.0, 10.0, True),
    "high_temp_offset": (0.0, 10.0, True),
    "absolute_shutdown_price": (0.0, 10.0, True),
}


@dataclass(frozen=True)
class AutomationSettings:
    """Active automation configuration for the installation."""
    baseline_temp: float = 28.0  # Nominal pump target without price adjustment
    automation_enabled: bool = True  # Global kill switch
    min_pump_temp: float = 18.0
    max_pump_temp: float = 32.0
    rolling_window_days: int = 7
    low_price_ratio: float = 0.7  # LOW when price <= average * ratio
    high_price_ratio: float = 1.3  # HIGH when price >= average * ratio
    low_temp_offset: float = 2.0
    high_temp_offset: float = 2.0
    absolute_shutdown_price: float = 1.50  # Pump off at or above this price
    bidding_zone: str = "SE3"

    def validate(self) -> None:
        """
        Check value ranges and the planner invariants.

        Raises:
            ConfigurationError: If any setting is out of range or the
                                min/max and ratio orderings do not hold
        """
        for name, (low, high, inclusive) in SETTINGS_RANGES.items():
            value = getattr(self, name)
            below = value < low if inclusive else value <= low
            if below or value > high:
                bracket = "[" if inclusive else "("
                raise ConfigurationError(
                    f"{name} must be within {bracket}{low}, {high}], got {value}"
                )

        if not self.min_pump_temp < self.max_pump_temp:
            raise ConfigurationError(
                f"min_pump_temp ({self.min_pump_temp}) must be below "
                f"max_pump_temp ({self.max_pump_temp})"
            )

        if not self.low_price_ratio < 1.0 < self.high_price_ratio:
            raise ConfigurationError(
                f"Price ratios must satisfy low < 1.0 < high, got "
                f"low={self.low_price_ratio}, high={self.high_price_ratio}"
            )

        if not self.bidding_zone:
            raise ConfigurationError("bidding_zone must not be empty")

    def updated(self, changes: Dict[str, Any]) -> "AutomationSettings":
        """
        Return a validated copy with the given fields changed.

        Args:
            changes: Mapping of field name to new value; None values are ignored

        Returns:
            New AutomationSettings instance

        Raises:
            ConfigurationError: If a field is unknown or the result is invalid
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")

        result = replace(self, **{k: v for k, v in changes.items() if v is not None})
        result.validate()
        return result

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TemperaturePlan:
    """Planner decision for one hour."""
    target_temperature: Optional[float]
    shutdown: bool
    reason: str


@dataclass
class ScheduleEntry:
    """
    One hour's price-derived decision.

    target_temperature is None exactly when classification is SHUTDOWN.
    """
    for_date: date
    hour: int
    scheduled_time: datetime  # Slot start in UTC
    price_value: float
    classification: Classification
    target_temperature: Optional[float]
    reason: str
    executed: bool = False
    executed_at: Optional[datetime] = None
    execution_result: Optional[str] = None
    id: Optional[int] = field(default=None, compare=False)

    @property
    def shutdown(self) -> bool:
        return self.target_temperature is None

    def status(self, now: datetime, window: timedelta) -> EntryStatus:
        """
        Derive the lifecycle state of this entry.

        Args:
            now: Current time (timezone aware)
            window: Executor recency window; older unexecuted entries are abandoned
        """
        if self.executed:
            return EntryStatus.EXECUTED
        if self.scheduled_time < now - window:
            return EntryStatus.ABANDONED
        return EntryStatus.PLANNED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "for_date": self.for_date.isoformat(),
            "hour": self.hour,
            "scheduled_time": self.scheduled_time.isoformat(),
            "price_value": self.price_value,
            "classification": self.classification.value,
            "target_temperature": self.target_temperature,
            "reason": self.reason,
            "executed": self.executed,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "execution_result": self.execution_result,
        }

    def __repr__(self) -> str:
        target = "OFF" if self.shutdown else f"{self.target_temperature}°C"
        return f"ScheduleEntry({self.for_date} {self.hour:02d}:00, {self.classification.value}, {target})"


@dataclass
class ExecutionOutcome:
    """Result of the device commands issued for one entry."""
    success: bool
    message: str
    commands_attempted: List[str] = field(default_factory=list)


@dataclass
class ExecutionReport:
    """Aggregated outcome of one executor run; not persisted."""
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0  # Claimed by an overlapping run
    deferred: int = 0  # Not reached before the run deadline
    results: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "results": self.results,
        }
