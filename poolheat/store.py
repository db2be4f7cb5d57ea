# SPDX-License-Identifier: MPL-2.0
"""
Storage access for prices, automation settings and the hourly schedule.

Every method opens its own session, so stores can be shared between the API
worker threads and the daemon. SQLAlchemy errors are raised as
PersistenceError.
"""

import logging
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from poolheat.database import PriceRow, ScheduleRow, SettingsRow
from poolheat.exceptions import PersistenceError
from poolheat.models import AutomationSettings, Classification, PricePoint, ScheduleEntry

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1

# Sessions hold no loaded rows during bulk UPDATE/DELETE
NO_SYNC = {"synchronize_session": False}


def to_db_time(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC for storage."""
    if value.tzinfo is None:
        raise ValueError(f"Timestamp must be timezone aware: {value!r}")
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class PriceStore:
    """Price series backed by the price_data table."""

    def __init__(self, session_factory: sessionmaker, provider: Optional[str] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory
            provider: Only return prices from this provider (all if None)
        """
        self._session_factory = session_factory
        self.provider = provider

    def query(self, zone: str, start: datetime, end: datetime) -> List[PricePoint]:
        """
        Return price points for a zone starting within [start, end).

        Raises:
            PersistenceError: If the query fails
        """
        stmt = (
            select(PriceRow)
            .where(
                PriceRow.zone == zone,
                PriceRow.start_time >= to_db_time(start),
                PriceRow.start_time < to_db_time(end),
            )
            .order_by(PriceRow.start_time, PriceRow.provider)
        )
        if self.provider:
            stmt = stmt.where(PriceRow.provider == self.provider)

        try:
            with self._session_factory() as db:
                rows = db.scalars(stmt).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to query prices: {e}") from e

        return [
            PricePoint(
                zone=row.zone,
                start_time=from_db_time(row.start_time),
                end_time=from_db_time(row.end_time),
                total_price=row.total_price,
                energy_price=row.energy_price,
                provider=row.provider,
            )
            for row in rows
        ]

    def store(self, points: Iterable[PricePoint]) -> int:
        """
        Insert or update price points keyed by (zone, start_time, provider).

        Returns:
            Number of points written

        Raises:
            PersistenceError: If the write fails
        """
        values = [
            {
                "zone": p.zone,
                "provider": p.provider,
                "start_time": to_db_time(p.start_time),
                "end_time": to_db_time(p.end_time),
                "total_price": p.total_price,
                "energy_price": p.energy_price,
            }
            for p in points
        ]
        if not values:
            return 0

        stmt = sqlite_insert(PriceRow)
        stmt = stmt.on_conflict_do_update(
            index_elements=["zone", "start_time", "provider"],
            set_={
                "end_time": stmt.excluded.end_time,
                "total_price": stmt.excluded.total_price,
                "energy_price": stmt.excluded.energy_price,
            },
        )

        try:
            with self._session_factory() as db:
                db.execute(stmt, values)
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store prices: {e}") from e

        logger.debug(f"Stored {len(values)} price points")
        return len(values)


class SettingsStore:
    """The single active automation settings record."""

    def __init__(self, session_factory: sessionmaker, defaults: Optional[AutomationSettings] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory
            defaults: Settings written on first access when no row exists
        """
        self._session_factory = session_factory
        self.defaults = defaults or AutomationSettings()

    def get_active(self) -> AutomationSettings:
        """
        Return the active settings, seeding the defaults if none are stored.

        Raises:
            PersistenceError: If the settings cannot be read or seeded
        """
        try:
            with self._session_factory() as db:
                row = db.get(SettingsRow, SETTINGS_ROW_ID)
                if row is None:
                    logger.info("No automation settings stored, seeding defaults")
                    row = SettingsRow(id=SETTINGS_ROW_ID, **self.defaults.to_dict())
                    db.add(row)
                    db.commit()
                return self._to_settings(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load automation settings: {e}") from e

    def save(self, settings: AutomationSettings) -> AutomationSettings:
        """
        Persist settings as the active record.

        Raises:
            PersistenceError: If the write fails
        """
        try:
            with self._session_factory() as db:
                row = db.get(SettingsRow, SETTINGS_ROW_ID)
                if row is None:
                    row = SettingsRow(id=SETTINGS_ROW_ID)
                    db.add(row)
                for name, value in settings.to_dict().items():
                    setattr(row, name, value)
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save automation settings: {e}") from e

        logger.info(f"Automation settings updated: {settings}")
        return settings

    @staticmethod
    def _to_settings(row: SettingsRow) -> AutomationSettings:
        return AutomationSettings(
            baseline_temp=row.baseline_temp,
            automation_enabled=row.automation_enabled,
            min_pump_temp=row.min_pump_temp,
            max_pump_temp=row.max_pump_temp,
            rolling_window_days=row.rolling_window_days,
            low_price_ratio=row.low_price_ratio,
            high_price_ratio=row.high_price_ratio,
            low_temp_offset=row.low_temp_offset,
            high_temp_offset=row.high_temp_offset,
            absolute_shutdown_price=row.absolute_shutdown_price,
            bidding_zone=row.bidding_zone,
        )


class ScheduleStore:
    """
    The automation_schedule table.

    The builder owns replace_day(); the executor owns claim(),
    mark_executed() and release().
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def replace_day(self, for_date: date, entries: List[ScheduleEntry],
                    now: Optional[datetime] = None) -> List[ScheduleEntry]:
        """
        Replace the unexecuted entries of a day in a single transaction.

        Executed entries and entries claimed by a running executor (claim
        still valid at now) are kept; a new entry for an hour that already
        has one is ignored, which also makes a racing duplicate build a no-op.

        Returns:
            All entries stored for the day after the replacement

        Raises:
            PersistenceError: If the transaction fails (nothing is changed)
        """
        if now is None:
            now = datetime.now(timezone.utc)

        values = [
            {
                "for_date": e.for_date,
                "hour": e.hour,
                "scheduled_time": to_db_time(e.scheduled_time),
                "price_value": e.price_value,
                "classification": e.classification.value,
                "target_temperature": e.target_temperature,
                "reason": e.reason,
                "executed": False,
            }
            for e in entries
        ]

        try:
            with self._session_factory() as db:
                removed = db.execute(
                    delete(ScheduleRow).where(
                        ScheduleRow.for_date == for_date,
                        ScheduleRow.executed.is_(False),
                        or_(
                            ScheduleRow.claimed_until.is_(None),
                            ScheduleRow.claimed_until < to_db_time(now),
                        ),
                    ),
                    execution_options=NO_SYNC,
                ).rowcount

                if values:
                    stmt = sqlite_insert(ScheduleRow).on_conflict_do_nothing(
                        index_elements=["for_date", "hour"]
                    )
                    db.execute(stmt, values)
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to replace schedule for {for_date}: {e}") from e

        stored = self.entries_for_date(for_date)
        executed = sum(1 for e in stored if e.executed)
        logger.debug(
            f"Schedule for {for_date}: removed {removed} unexecuted, "
            f"{len(stored)} entries stored"
            + (f", {executed} already executed" if executed else "")
        )
        return stored

    def entries_for_date(self, for_date: date) -> List[ScheduleEntry]:
        """Return a day's entries ordered by hour."""
        stmt = select(ScheduleRow).where(ScheduleRow.for_date == for_date).order_by(ScheduleRow.hour)
        return self._select(stmt, f"Failed to load schedule for {for_date}")

    def due_entries(self, start: datetime, end: datetime) -> List[ScheduleEntry]:
        """Return unexecuted entries scheduled within [start, end]."""
        stmt = (
            select(ScheduleRow)
            .where(
                ScheduleRow.executed.is_(False),
                ScheduleRow.scheduled_time >= to_db_time(start),
                ScheduleRow.scheduled_time <= to_db_time(end),
            )
            .order_by(ScheduleRow.scheduled_time)
        )
        return self._select(stmt, "Failed to load due schedule entries")

    def unexecuted_before(self, for_date: date, cutoff: datetime) -> List[ScheduleEntry]:
        """Return a day's unexecuted entries scheduled before cutoff."""
        stmt = (
            select(ScheduleRow)
            .where(
                ScheduleRow.for_date == for_date,
                ScheduleRow.executed.is_(False),
                ScheduleRow.scheduled_time < to_db_time(cutoff),
            )
            .order_by(ScheduleRow.hour)
        )
        return self._select(stmt, f"Failed to load unexecuted entries for {for_date}")

    def claim(self, entry_id: int, now: datetime, until: datetime) -> bool:
        """
        Claim an entry for execution with a conditional update.

        Succeeds only if the entry is unexecuted and not held by another
        run whose claim is still valid at now.

        Returns:
            True if this caller now owns the entry
        """
        stmt = (
            update(ScheduleRow)
            .where(
                ScheduleRow.id == entry_id,
                ScheduleRow.executed.is_(False),
                or_(
                    ScheduleRow.claimed_until.is_(None),
                    ScheduleRow.claimed_until < to_db_time(now),
                ),
            )
            .values(claimed_until=to_db_time(until))
        )
        return self._update(stmt, f"Failed to claim schedule entry {entry_id}") == 1

    def mark_executed(self, entry_id: int, executed_at: datetime, result: str) -> bool:
        """Mark a claimed entry executed and clear the claim."""
        stmt = (
            update(ScheduleRow)
            .where(ScheduleRow.id == entry_id, ScheduleRow.executed.is_(False))
            .values(
                executed=True,
                executed_at=to_db_time(executed_at),
                execution_result=result,
                claimed_until=None,
            )
        )
        return self._update(stmt, f"Failed to mark schedule entry {entry_id} executed") == 1

    def release(self, entry_id: int, result: str) -> None:
        """Drop the claim on a failed entry so a later run can retry it."""
        stmt = (
            update(ScheduleRow)
            .where(ScheduleRow.id == entry_id, ScheduleRow.executed.is_(False))
            .values(execution_result=result, claimed_until=None)
        )
        self._update(stmt, f"Failed to release schedule entry {entry_id}")

    def _select(self, stmt, error: str) -> List[ScheduleEntry]:
        try:
            with self._session_factory() as db:
                rows = db.scalars(stmt).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"{error}: {e}") from e
        return [self._to_entry(row) for row in rows]

    def _update(self, stmt, error: str) -> int:
        try:
            with self._session_factory() as db:
                count = db.execute(stmt, execution_options=NO_SYNC).rowcount
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"{error}: {e}") from e
        return count

    @staticmethod
    def _to_entry(row: ScheduleRow) -> ScheduleEntry:
        return ScheduleEntry(
            id=row.id,
            for_date=row.for_date,
            hour=row.hour,
            scheduled_time=from_db_time(row.scheduled_time),
            price_value=row.price_value,
            classification=Classification(row.classification),
            target_temperature=row.target_temperature,
            reason=row.reason,
            executed=row.executed,
            executed_at=from_db_time(row.executed_at),
            execution_result=row.execution_result,
        )
