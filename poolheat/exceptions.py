# SPDX-License-Identifier: MPL-2.0
"""
Exception hierarchy for the schedule planner and executor.
"""


class PoolHeatError(Exception):
    """Base exception for poolheat."""
    pass


class ConfigurationError(PoolHeatError):
    """Raised when configuration or automation settings are invalid or missing."""
    pass


class NoPriceDataError(PoolHeatError):
    """Raised when no price data is available for the day being planned."""
    pass


class DeviceError(PoolHeatError):
    """Raised when a heat pump command is rejected or cannot be delivered."""
    pass


class PersistenceError(PoolHeatError):
    """Raised when the schedule database cannot be read or written."""
    pass
