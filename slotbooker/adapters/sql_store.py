"""
SQLAlchemy-backed scheduling store.

Works with any SQLAlchemy database URL; SQLite is the default for the CLI.
Admission transactions first bump ``books.lock_version`` for the book being
reserved, which takes the row (PostgreSQL, MySQL) or database (SQLite) write
lock, so admissions from several processes serialize at the storage boundary.
An in-memory SQLite database lives on one shared connection, so its units of
work run one at a time.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..domain.exceptions import (
    ConflictError,
    NotFoundError,
    OverlapConstraintError,
    StorageError,
)
from ..domain.models import (
    ACTIVE_STATUSES,
    AvailabilityException,
    Book,
    ExceptionKind,
    ManualBlock,
    MinuteRange,
    Reservation,
    ReservationStatus,
    WeeklyTemplate,
)

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class BookRow(Base):
    __tablename__ = "books"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    # {"monday": [540, 1020], ...}
    weekly_hours: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    lock_version: Mapped[int] = mapped_column(Integer, default=0)


class ExceptionRow(Base):
    __tablename__ = "availability_exceptions"
    __table_args__ = (
        UniqueConstraint("book_id", "date", name="uq_exception_book_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    book_id: Mapped[str] = mapped_column(ForeignKey("books.id", ondelete="CASCADE"))
    day: Mapped[date] = mapped_column("date", Date)
    kind: Mapped[str] = mapped_column(String(20))
    custom_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    custom_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)


class BlockRow(Base):
    __tablename__ = "manual_blocks"
    __table_args__ = (Index("ix_blocks_book_date", "book_id", "date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    book_id: Mapped[str] = mapped_column(ForeignKey("books.id", ondelete="CASCADE"))
    day: Mapped[date] = mapped_column("date", Date)
    start_minute: Mapped[int] = mapped_column(Integer)
    end_minute: Mapped[int] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)


class ReservationRow(Base):
    __tablename__ = "reservations"
    __table_args__ = (Index("ix_reservations_book_date", "book_id", "date"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    book_id: Mapped[str] = mapped_column(ForeignKey("books.id"))
    day: Mapped[date] = mapped_column("date", Date)
    start_minute: Mapped[int] = mapped_column(Integer)
    end_minute: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default=ReservationStatus.PENDING.value)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine, sharing one connection for in-memory SQLite so that
    every session and thread sees the same database.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo)


class SqlUnitOfWork:
    """Store operations bound to one open session and transaction."""

    def __init__(self, session: Session):
        self.session = session

    # Books

    def get_book(self, book_id: str) -> Optional[Book]:
        row = self.session.get(BookRow, book_id)
        return _book_from_row(row) if row else None

    def list_books(self) -> List[Book]:
        rows = self.session.scalars(select(BookRow).order_by(BookRow.id))
        return [_book_from_row(row) for row in rows]

    def save_book(self, book: Book) -> Book:
        row = self.session.get(BookRow, book.id)
        if row is None:
            row = BookRow(id=book.id, lock_version=0)
            self.session.add(row)
        row.name = book.name
        row.is_active = book.is_active
        row.start_date = book.start_date
        row.end_date = book.end_date
        row.weekly_hours = {
            name: [time_range.start, time_range.end]
            for name, time_range in book.template.to_names().items()
        }
        self.session.flush()
        return _book_from_row(row)

    def lock_book(self, book_id: str) -> None:
        self.session.execute(
            update(BookRow)
            .where(BookRow.id == book_id)
            .values(lock_version=BookRow.lock_version + 1)
        )

    # Exceptions

    def get_exception(self, book_id: str, day: date) -> Optional[AvailabilityException]:
        row = self.session.scalars(
            select(ExceptionRow).where(ExceptionRow.book_id == book_id, ExceptionRow.day == day)
        ).first()
        return _exception_from_row(row) if row else None

    def list_exceptions(self, book_id: str, start: date, end: date) -> List[AvailabilityException]:
        rows = self.session.scalars(
            select(ExceptionRow)
            .where(ExceptionRow.book_id == book_id, ExceptionRow.day >= start, ExceptionRow.day <= end)
            .order_by(ExceptionRow.day)
        )
        return [_exception_from_row(row) for row in rows]

    def add_exception(self, exception: AvailabilityException) -> AvailabilityException:
        if self.get_exception(exception.book_id, exception.date) is not None:
            raise ConflictError(
                f"Book {exception.book_id} already has an exception on {exception.date.isoformat()}"
            )
        row = ExceptionRow(
            book_id=exception.book_id,
            day=exception.date,
            kind=exception.kind.value,
            custom_start=exception.custom_hours.start if exception.custom_hours else None,
            custom_end=exception.custom_hours.end if exception.custom_hours else None,
            reason=exception.reason,
        )
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                f"Book {exception.book_id} already has an exception on {exception.date.isoformat()}"
            ) from exc
        return _exception_from_row(row)

    def remove_exception(self, exception_id: int) -> None:
        row = self.session.get(ExceptionRow, exception_id)
        if row is None:
            raise NotFoundError(f"Exception not found: {exception_id}")
        self.session.delete(row)

    # Manual blocks

    def list_blocks(self, book_id: str, start: date, end: Optional[date] = None) -> List[ManualBlock]:
        end = end or start
        rows = self.session.scalars(
            select(BlockRow)
            .where(BlockRow.book_id == book_id, BlockRow.day >= start, BlockRow.day <= end)
            .order_by(BlockRow.day, BlockRow.start_minute)
        )
        return [_block_from_row(row) for row in rows]

    def add_block(self, block: ManualBlock) -> ManualBlock:
        row = BlockRow(
            book_id=block.book_id,
            day=block.date,
            start_minute=block.time_range.start,
            end_minute=block.time_range.end,
            notes=block.notes,
        )
        self.session.add(row)
        self.session.flush()
        return _block_from_row(row)

    def remove_block(self, block_id: int) -> None:
        row = self.session.get(BlockRow, block_id)
        if row is None:
            raise NotFoundError(f"Manual block not found: {block_id}")
        self.session.delete(row)

    # Reservations

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        row = self.session.get(ReservationRow, reservation_id)
        return _reservation_from_row(row) if row else None

    def list_reservations(
        self,
        book_id: str,
        start: date,
        end: Optional[date] = None,
        statuses: Optional[Sequence[ReservationStatus]] = None,
    ) -> List[Reservation]:
        end = end or start
        query = select(ReservationRow).where(
            ReservationRow.book_id == book_id,
            ReservationRow.day >= start,
            ReservationRow.day <= end,
        )
        if statuses is not None:
            query = query.where(ReservationRow.status.in_([ReservationStatus(s).value for s in statuses]))
        rows = self.session.scalars(query.order_by(ReservationRow.day, ReservationRow.start_minute))
        return [_reservation_from_row(row) for row in rows]

    def add_reservation(self, reservation: Reservation) -> Reservation:
        if reservation.is_active:
            clash = self.session.scalars(
                select(ReservationRow).where(
                    ReservationRow.book_id == reservation.book_id,
                    ReservationRow.day == reservation.date,
                    ReservationRow.status.in_([status.value for status in ACTIVE_STATUSES]),
                    ReservationRow.start_minute < reservation.time_range.end,
                    ReservationRow.end_minute > reservation.time_range.start,
                )
            ).first()
            if clash is not None:
                raise OverlapConstraintError(
                    f"Reservation {reservation.id} overlaps {clash.id} on {reservation.date.isoformat()}"
                )

        row = ReservationRow(
            id=reservation.id,
            book_id=reservation.book_id,
            day=reservation.date,
            start_minute=reservation.time_range.start,
            end_minute=reservation.time_range.end,
            status=reservation.status.value,
            created_at=_naive(reservation.created_at),
        )
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Reservation already exists: {reservation.id}") from exc
        return _reservation_from_row(row)

    def update_reservation_status(self, reservation_id: str, status: ReservationStatus) -> Reservation:
        row = self.session.get(ReservationRow, reservation_id)
        if row is None:
            raise NotFoundError(f"Reservation not found: {reservation_id}")
        row.status = ReservationStatus(status).value
        self.session.flush()
        return _reservation_from_row(row)


class SqlStore:
    """
    Scheduling store on top of a SQLAlchemy engine.

    Plain method calls each run in their own short transaction;
    ``transaction()`` yields a ``SqlUnitOfWork`` sharing one.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self._serial = threading.RLock() if _is_in_memory(engine) else None

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlStore":
        return cls(build_engine(database_url, echo=echo))

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[SqlUnitOfWork]:
        with self._serial if self._serial is not None else nullcontext():
            session = self._session_factory()
            try:
                with session.begin():
                    yield SqlUnitOfWork(session)
            except IntegrityError as exc:
                raise OverlapConstraintError(f"Constraint violated: {exc.orig}") from exc
            except SQLAlchemyError as exc:
                logger.warning("Store transaction failed: %s", exc)
                raise StorageError(f"Database error: {exc}") from exc
            finally:
                session.close()

    def get_book(self, book_id: str) -> Optional[Book]:
        with self.transaction() as uow:
            return uow.get_book(book_id)

    def list_books(self) -> List[Book]:
        with self.transaction() as uow:
            return uow.list_books()

    def save_book(self, book: Book) -> Book:
        with self.transaction() as uow:
            return uow.save_book(book)

    def lock_book(self, book_id: str) -> None:
        with self.transaction() as uow:
            uow.lock_book(book_id)

    def get_exception(self, book_id: str, day: date) -> Optional[AvailabilityException]:
        with self.transaction() as uow:
            return uow.get_exception(book_id, day)

    def list_exceptions(self, book_id: str, start: date, end: date) -> List[AvailabilityException]:
        with self.transaction() as uow:
            return uow.list_exceptions(book_id, start, end)

    def add_exception(self, exception: AvailabilityException) -> AvailabilityException:
        with self.transaction() as uow:
            return uow.add_exception(exception)

    def remove_exception(self, exception_id: int) -> None:
        with self.transaction() as uow:
            uow.remove_exception(exception_id)

    def list_blocks(self, book_id: str, start: date, end: Optional[date] = None) -> List[ManualBlock]:
        with self.transaction() as uow:
            return uow.list_blocks(book_id, start, end)

    def add_block(self, block: ManualBlock) -> ManualBlock:
        with self.transaction() as uow:
            return uow.add_block(block)

    def remove_block(self, block_id: int) -> None:
        with self.transaction() as uow:
            uow.remove_block(block_id)

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self.transaction() as uow:
            return uow.get_reservation(reservation_id)

    def list_reservations(
        self,
        book_id: str,
        start: date,
        end: Optional[date] = None,
        statuses: Optional[Sequence[ReservationStatus]] = None,
    ) -> List[Reservation]:
        with self.transaction() as uow:
            return uow.list_reservations(book_id, start, end, statuses)

    def add_reservation(self, reservation: Reservation) -> Reservation:
        with self.transaction() as uow:
            return uow.add_reservation(reservation)

    def update_reservation_status(self, reservation_id: str, status: ReservationStatus) -> Reservation:
        with self.transaction() as uow:
            return uow.update_reservation_status(reservation_id, status)


def _is_in_memory(engine: Engine) -> bool:
    return engine.dialect.name == "sqlite" and engine.url.database in (None, "", ":memory:")


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.replace(tzinfo=None)


def _book_from_row(row: BookRow) -> Book:
    return Book(
        id=row.id,
        name=row.name,
        template=WeeklyTemplate.from_names({
            name: MinuteRange(start=bounds[0], end=bounds[1])
            for name, bounds in (row.weekly_hours or {}).items()
        }),
        is_active=row.is_active,
        start_date=row.start_date,
        end_date=row.end_date,
    )


def _exception_from_row(row: ExceptionRow) -> AvailabilityException:
    custom = None
    if row.custom_start is not None and row.custom_end is not None:
        custom = MinuteRange(start=row.custom_start, end=row.custom_end)
    return AvailabilityException(
        id=row.id,
        book_id=row.book_id,
        date=row.day,
        kind=ExceptionKind(row.kind),
        custom_hours=custom,
        reason=row.reason,
    )


def _block_from_row(row: BlockRow) -> ManualBlock:
    return ManualBlock(
        id=row.id,
        book_id=row.book_id,
        date=row.day,
        time_range=MinuteRange(start=row.start_minute, end=row.end_minute),
        notes=row.notes,
    )


def _reservation_from_row(row: ReservationRow) -> Reservation:
    return Reservation(
        id=row.id,
        book_id=row.book_id,
        date=row.day,
        time_range=MinuteRange(start=row.start_minute, end=row.end_minute),
        status=ReservationStatus(row.status),
        created_at=row.created_at,
    )
