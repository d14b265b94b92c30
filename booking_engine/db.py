"""
SQLAlchemy persistence for bookings.

Instants are stored as naive UTC and re-tagged as UTC on the way out, so
the same table works on SQLite and PostgreSQL.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from booking_engine.config import settings
from booking_engine.schemas.booking_schema import Booking, BookingStatus

logger = logging.getLogger(__name__)

Base = declarative_base()


class BookingRow(Base):
    """Represents one persisted appointment."""
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(128), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=False, default="")
    service_key = Column(String, nullable=False)
    start = Column(DateTime, nullable=False)
    end = Column(DateTime, nullable=False)
    timezone = Column(String, nullable=False)
    calendar_id = Column(String, nullable=False)
    calendar_event_id = Column(String, nullable=True)
    status = Column(String(16), nullable=False, default=BookingStatus.ACTIVE.value)
    custom_fields = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False)
    reminder_sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_bookings_overlap", "tenant_id", "calendar_id", "status", "start", "end"),
        Index("idx_bookings_lookup", "tenant_id", "email", "status", "start"),
    )


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _to_model(row: BookingRow) -> Booking:
    return Booking(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        email=row.email,
        phone=row.phone or "",
        service_key=row.service_key,
        start=_from_db(row.start),
        end=_from_db(row.end),
        timezone=row.timezone,
        calendar_id=row.calendar_id,
        calendar_event_id=row.calendar_event_id,
        status=BookingStatus(row.status),
        custom_fields=dict(row.custom_fields or {}),
        created_at=_from_db(row.created_at),
        reminder_sent_at=_from_db(row.reminder_sent_at),
    )


def build_engine(url: Optional[str] = None) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across sessions."""
    url = url or settings.database.url
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            echo=settings.database.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=settings.database.echo)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


class SqlBookingRepository:
    """BookingRepository over a relational store. One transaction per call."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _require(self, session: Session, booking_id: str) -> BookingRow:
        row = session.get(BookingRow, booking_id)
        if row is None:
            raise KeyError(f"Booking {booking_id} not found")
        return row

    def add(self, booking: Booking) -> Booking:
        with self._session_factory.begin() as session:
            session.add(BookingRow(
                id=booking.id,
                tenant_id=booking.tenant_id,
                name=booking.name,
                email=booking.email,
                phone=booking.phone,
                service_key=booking.service_key,
                start=_to_db(booking.start),
                end=_to_db(booking.end),
                timezone=booking.timezone,
                calendar_id=booking.calendar_id,
                calendar_event_id=booking.calendar_event_id,
                status=booking.status.value,
                custom_fields=dict(booking.custom_fields),
                created_at=_to_db(booking.created_at),
                reminder_sent_at=_to_db(booking.reminder_sent_at),
            ))
        logger.debug("Booking row inserted: %s", booking.id)
        return booking

    def get(self, booking_id: str) -> Optional[Booking]:
        with self._session_factory() as session:
            row = session.get(BookingRow, booking_id)
            return _to_model(row) if row else None

    def _overlap_query(self, tenant_id: str, calendar_id: str, start: datetime, end: datetime):
        return select(BookingRow).where(
            BookingRow.tenant_id == tenant_id,
            BookingRow.calendar_id == calendar_id,
            BookingRow.status == BookingStatus.ACTIVE.value,
            BookingRow.start < _to_db(end),
            BookingRow.end > _to_db(start),
        )

    def count_active_overlaps(
        self,
        tenant_id: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> int:
        query = self._overlap_query(tenant_id, calendar_id, start, end)
        if exclude_id is not None:
            query = query.where(BookingRow.id != exclude_id)
        with self._session_factory() as session:
            return len(session.scalars(query).all())

    def list_active_overlapping(
        self, tenant_id: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[Booking]:
        with self._session_factory() as session:
            rows = session.scalars(self._overlap_query(tenant_id, calendar_id, start, end)).all()
            return [_to_model(r) for r in rows]

    def find_active_by_email_near(
        self, tenant_id: str, email: str, approx_start: datetime, window: timedelta
    ) -> Optional[Booking]:
        query = (
            select(BookingRow)
            .where(
                BookingRow.tenant_id == tenant_id,
                BookingRow.email == email,
                BookingRow.status == BookingStatus.ACTIVE.value,
                BookingRow.start >= _to_db(approx_start - window),
                BookingRow.start <= _to_db(approx_start + window),
            )
            .order_by(BookingRow.start.asc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(query).first()
            return _to_model(row) if row else None

    def update_slot(
        self,
        booking_id: str,
        start: datetime,
        end: datetime,
        service_key: str,
        calendar_id: str,
    ) -> Booking:
        with self._session_factory.begin() as session:
            row = self._require(session, booking_id)
            row.start, row.end = _to_db(start), _to_db(end)
            row.service_key, row.calendar_id = service_key, calendar_id
            session.flush()
            return _to_model(row)

    def set_status(self, booking_id: str, status: BookingStatus) -> Booking:
        with self._session_factory.begin() as session:
            row = self._require(session, booking_id)
            row.status = status.value
            session.flush()
            return _to_model(row)

    def list_reminder_candidates(self, start: datetime, end: datetime) -> list[Booking]:
        query = (
            select(BookingRow)
            .where(
                BookingRow.status == BookingStatus.ACTIVE.value,
                BookingRow.reminder_sent_at.is_(None),
                BookingRow.start >= _to_db(start),
                BookingRow.start < _to_db(end),
            )
            .order_by(BookingRow.start.asc())
        )
        with self._session_factory() as session:
            return [_to_model(r) for r in session.scalars(query).all()]

    def mark_reminder_sent(self, booking_id: str, sent_at: datetime) -> None:
        with self._session_factory.begin() as session:
            self._require(session, booking_id).reminder_sent_at = _to_db(sent_at)
