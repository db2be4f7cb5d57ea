# SPDX-License-Identifier: MPL-2.0
"""
Schedule execution.

Picks up schedule entries whose slot has just started, claims each one so that
overlapping runs never command the device twice, sends the power and
temperature commands and records the outcome. A failed entry stays unexecuted
and is retried by the next run as long as its slot is inside the recency
window.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from poolheat.exceptions import DeviceError, PersistenceError
from poolheat.models import ExecutionOutcome, ExecutionReport, ScheduleEntry

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=5)
DEFAULT_CLAIM_LEASE = timedelta(seconds=120)


class DeviceController(Protocol):
    """Commands understood by the heat pump. Failures raise DeviceError."""

    def set_power(self, on: bool) -> None:
        ...

    def set_temperature(self, celsius: float) -> None:
        ...


def apply_entry(entry: ScheduleEntry, controller: DeviceController) -> ExecutionOutcome:
    """
    Send the device commands for one schedule entry.

    A shutdown entry switches the pump off. Otherwise the pump is switched on
    (a failure there is only logged, the next cycle can recover it) and the
    target temperature is written.

    Args:
        entry: Entry to apply
        controller: Device controller

    Returns:
        ExecutionOutcome describing what was attempted and whether it worked
    """
    attempted = []

    if entry.shutdown:
        attempted.append("power:off")
        try:
            controller.set_power(False)
        except DeviceError as e:
            return ExecutionOutcome(False, f"Failed to turn off pump: {e}", attempted)
        return ExecutionOutcome(True, "Pump turned OFF due to high price", attempted)

    attempted.append("power:on")
    try:
        controller.set_power(True)
    except DeviceError as e:
        logger.warning(f"Failed to ensure pump is on, continuing with temperature: {e}")

    attempted.append(f"temperature:{entry.target_temperature}")
    try:
        controller.set_temperature(entry.target_temperature)
    except DeviceError as e:
        return ExecutionOutcome(False, f"Failed to set temperature: {e}", attempted)

    return ExecutionOutcome(True, f"Temperature set to {entry.target_temperature}°C", attempted)


class ScheduleExecutor:
    """
    Executes due schedule entries against a device.

    Attributes:
        store: Schedule store (due_entries, claim, mark_executed, release)
        controller: Device controller
        window: How far back an unexecuted entry is still considered due
        claim_lease: How long a claim blocks overlapping runs; must exceed
                     the worst-case duration of the device commands
        run_deadline: Optional time limit for one run in seconds
    """

    def __init__(self, store, controller: DeviceController,
                 window: timedelta = DEFAULT_WINDOW,
                 claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
                 run_deadline: Optional[float] = None):
        self.store = store
        self.controller = controller
        self.window = window
        self.claim_lease = claim_lease
        self.run_deadline = run_deadline

    def run(self, now: Optional[datetime] = None) -> ExecutionReport:
        """
        Execute every due, unexecuted entry once.

        Args:
            now: Current time (defaults to now, UTC)

        Returns:
            ExecutionReport aggregating per-entry outcomes

        Raises:
            PersistenceError: If the due entries cannot be loaded
        """
        if now is None:
            now = datetime.now(timezone.utc)

        report = ExecutionReport()
        due = self.store.due_entries(now - self.window, now)

        if not due:
            logger.debug(f"No scheduled entries due at {now.isoformat()}")
            return report

        logger.info(f"{len(due)} scheduled entries due")
        started = time.monotonic()

        for entry in due:
            elapsed = time.monotonic() - started
            if self.run_deadline is not None and elapsed >= self.run_deadline:
                logger.warning(f"Run deadline reached, deferring {entry}")
                report.deferred += 1
                continue

            # Lease runs from the moment of the claim, not from the start of the run
            claimed_at = now + timedelta(seconds=elapsed)
            result = self._execute_entry(entry, now, claimed_at)
            if result is None:
                report.skipped += 1
                continue

            report.attempted += 1
            if result["success"]:
                report.succeeded += 1
            report.results.append(result)

        logger.info(
            f"Executed {report.succeeded} of {report.attempted} scheduled entries"
            + (f", {report.skipped} claimed elsewhere" if report.skipped else "")
            + (f", {report.deferred} deferred" if report.deferred else "")
        )
        return report

    def _execute_entry(self, entry: ScheduleEntry, now: datetime,
                       claimed_at: datetime) -> Optional[dict]:
        """Claim and apply one entry. Returns None if another run holds it."""
        result = {
            "id": entry.id,
            "for_date": entry.for_date.isoformat(),
            "hour": entry.hour,
            "scheduled_time": entry.scheduled_time.isoformat(),
            "action": entry.reason,
        }

        try:
            if not self.store.claim(entry.id, claimed_at, claimed_at + self.claim_lease):
                logger.debug(f"Skipping {entry}, claimed by another run")
                return None
        except PersistenceError as e:
            logger.error(f"Could not claim {entry}: {e}")
            result.update(success=False, message=str(e), commands_attempted=[])
            return result

        outcome = apply_entry(entry, self.controller)
        result.update(
            success=outcome.success,
            message=outcome.message,
            commands_attempted=outcome.commands_attempted,
        )

        try:
            if outcome.success:
                if self.store.mark_executed(entry.id, now, outcome.message):
                    logger.info(f"Executed {entry}: {outcome.message}")
                else:
                    # Row was replaced or marked by another run meanwhile
                    logger.warning(f"{entry} was superseded, outcome not recorded: {outcome.message}")
                    result.update(
                        success=False,
                        message=f"{outcome.message}; entry superseded, outcome not recorded",
                    )
            else:
                self.store.release(entry.id, f"Failed: {outcome.message}")
                logger.error(f"Failed to execute {entry}: {outcome.message}")
        except PersistenceError as e:
            # Claim expires on its own; the entry is retried inside the window
            logger.error(f"Could not record outcome for {entry}: {e}")
            result.update(success=False, message=f"{outcome.message}; {e}")

        return result
