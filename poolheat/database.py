# SPDX-License-Identifier: MPL-2.0
"""
Database tables and engine setup.

All timestamps are stored as naive UTC; conversion happens in the store.
"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:////var/lib/poolheat/poolheat.db"


class Base(DeclarativeBase):
    pass


class PriceRow(Base):
    __tablename__ = "price_data"
    __table_args__ = (
        UniqueConstraint("zone", "start_time", "provider", name="uq_price_data_zone_start_provider"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    zone: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    total_price: Mapped[float] = mapped_column(Float, nullable=False)
    energy_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class SettingsRow(Base):
    __tablename__ = "automation_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)  # Always 1
    baseline_temp: Mapped[float] = mapped_column(Float, nullable=False)
    automation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    min_pump_temp: Mapped[float] = mapped_column(Float, nullable=False)
    max_pump_temp: Mapped[float] = mapped_column(Float, nullable=False)
    rolling_window_days: Mapped[int] = mapped_column(Integer, nullable=False)
    low_price_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    high_price_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    low_temp_offset: Mapped[float] = mapped_column(Float, nullable=False)
    high_temp_offset: Mapped[float] = mapped_column(Float, nullable=False)
    absolute_shutdown_price: Mapped[float] = mapped_column(Float, nullable=False)
    bidding_zone: Mapped[str] = mapped_column(String(16), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class ScheduleRow(Base):
    __tablename__ = "automation_schedule"
    __table_args__ = (
        UniqueConstraint("for_date", "hour", name="uq_automation_schedule_date_hour"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    for_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    hour: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    price_value: Mapped[float] = mapped_column(Float, nullable=False)
    classification: Mapped[str] = mapped_column(String(16), nullable=False)
    target_temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    executed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    execution_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


def create_database(url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> sessionmaker:
    """
    Create the engine, ensure tables exist and return a session factory.

    SQLite transactions start with BEGIN IMMEDIATE so that concurrent
    schedule builds and executor claims are serialized by the database.

    Args:
        url: SQLAlchemy database URL
        echo: Log all SQL statements

    Returns:
        Session factory bound to the engine
    """
    engine = create_engine(url, echo=echo, connect_args=_connect_args(url))

    if engine.dialect.name == "sqlite":
        _use_immediate_transactions(engine)

    Base.metadata.create_all(engine)
    logger.debug(f"Database ready: {engine.url.render_as_string(hide_password=True)}")

    return sessionmaker(bind=engine, expire_on_commit=False)


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"timeout": 30, "check_same_thread": False}
    return {}


def _use_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
