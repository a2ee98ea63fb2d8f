from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Date, DateTime, Integer, String, UniqueConstraint, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TriggerRecord:
    subject_id: str
    trigger_type: str
    trigger_date: date
    created_at: datetime


class TriggerLedger(Protocol):
    """Write-once record of triggers that already went out.

    ``mark_fired`` must be idempotent: inserting an existing
    ``(subject_id, trigger_type, trigger_date)`` key is a success, not an error.
    """

    def reset(self) -> None: ...

    def has_fired(self, subject_id: str, trigger_type: str, trigger_date: date) -> bool: ...

    def mark_fired(self, subject_id: str, trigger_type: str, trigger_date: date) -> None: ...

    def list_records(self, subject_id: str | None = None) -> list[TriggerRecord]: ...


class InMemoryTriggerLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[tuple[str, str, date], TriggerRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def has_fired(self, subject_id: str, trigger_type: str, trigger_date: date) -> bool:
        return (subject_id, trigger_type, trigger_date) in self._records

    def mark_fired(self, subject_id: str, trigger_type: str, trigger_date: date) -> None:
        key = (subject_id, trigger_type, trigger_date)
        with self._lock:
            if key in self._records:
                return
            self._records[key] = TriggerRecord(
                subject_id=subject_id,
                trigger_type=trigger_type,
                trigger_date=trigger_date,
                created_at=_now_utc(),
            )

    def list_records(self, subject_id: str | None = None) -> list[TriggerRecord]:
        rows = sorted(self._records.values(), key=lambda value: (value.trigger_date, value.subject_id, value.trigger_type))
        if subject_id is None:
            return rows
        return [value for value in rows if value.subject_id == subject_id]


class LedgerBase(DeclarativeBase):
    pass


class _TriggerRecordRow(LedgerBase):
    __tablename__ = "sent_triggers"
    __table_args__ = (
        UniqueConstraint("subject_id", "trigger_type", "trigger_date", name="uq_sent_triggers_key"),
    )

    record_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyTriggerLedger:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LedgerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_TriggerRecordRow).delete()

    def has_fired(self, subject_id: str, trigger_type: str, trigger_date: date) -> bool:
        with self._session() as session:
            row = session.execute(
                select(_TriggerRecordRow.record_id)
                .where(_TriggerRecordRow.subject_id == subject_id)
                .where(_TriggerRecordRow.trigger_type == trigger_type)
                .where(_TriggerRecordRow.trigger_date == trigger_date)
                .limit(1)
            ).scalar_one_or_none()
            return row is not None

    def mark_fired(self, subject_id: str, trigger_type: str, trigger_date: date) -> None:
        # The unique constraint is the race boundary between processes.
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _TriggerRecordRow(
                            subject_id=subject_id,
                            trigger_type=trigger_type,
                            trigger_date=trigger_date,
                            created_at=_now_utc(),
                        )
                    )
        except IntegrityError:
            return

    def list_records(self, subject_id: str | None = None) -> list[TriggerRecord]:
        with self._session() as session:
            query = select(_TriggerRecordRow).order_by(
                _TriggerRecordRow.trigger_date.asc(),
                _TriggerRecordRow.subject_id.asc(),
                _TriggerRecordRow.trigger_type.asc(),
            )
            if subject_id is not None:
                query = query.where(_TriggerRecordRow.subject_id == subject_id)
            return [
                TriggerRecord(
                    subject_id=row.subject_id,
                    trigger_type=row.trigger_type,
                    trigger_date=row.trigger_date,
                    created_at=row.created_at if row.created_at.tzinfo else row.created_at.replace(tzinfo=timezone.utc),
                )
                for row in session.execute(query).scalars()
            ]


def create_trigger_ledger(*, backend: str, database_url: str) -> TriggerLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyTriggerLedger(database_url)
    if normalized == "inmemory":
        return InMemoryTriggerLedger()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
