from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import DispatchOutcome, TriggerType


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DispatchResult:
    result_id: str
    subject_id: str | None
    subject_name: str
    organization_id: str | None
    address: str | None
    trigger_type: TriggerType
    outcome: DispatchOutcome
    created_at: datetime
    message_body: str | None = None
    template_name: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    run_id: str | None = None
    campaign_id: str | None = None


class DispatchResultLog(Protocol):
    def reset(self) -> None: ...

    def append(self, result: DispatchResult) -> None: ...

    def list_results(
        self,
        *,
        outcome: str | None = None,
        organization_id: str | None = None,
        run_id: str | None = None,
        campaign_id: str | None = None,
        limit: int | None = None,
    ) -> list[DispatchResult]: ...


class InMemoryDispatchResultLog:
    def __init__(self) -> None:
        self._lock = Lock()
        self._results: list[DispatchResult] = []

    def reset(self) -> None:
        with self._lock:
            self._results.clear()

    def append(self, result: DispatchResult) -> None:
        with self._lock:
            self._results.append(result)

    def list_results(
        self,
        *,
        outcome: str | None = None,
        organization_id: str | None = None,
        run_id: str | None = None,
        campaign_id: str | None = None,
        limit: int | None = None,
    ) -> list[DispatchResult]:
        rows: list[DispatchResult] = []
        for value in reversed(self._results):
            if outcome is not None and value.outcome != outcome:
                continue
            if organization_id is not None and value.organization_id != organization_id:
                continue
            if run_id is not None and value.run_id != run_id:
                continue
            if campaign_id is not None and value.campaign_id != campaign_id:
                continue
            rows.append(value)
            if limit is not None and len(rows) >= limit:
                break
        return rows


class DispatchLogBase(DeclarativeBase):
    pass


class _DispatchResultRow(DispatchLogBase):
    __tablename__ = "dispatch_results"

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    result_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    campaign_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    subject_name: Mapped[str] = mapped_column(String(256), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    message_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyDispatchResultLog:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DispatchLogBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DispatchResultRow).delete()

    def append(self, result: DispatchResult) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _DispatchResultRow(
                        result_id=result.result_id,
                        run_id=result.run_id,
                        campaign_id=result.campaign_id,
                        subject_id=result.subject_id,
                        subject_name=result.subject_name,
                        organization_id=result.organization_id,
                        address=result.address,
                        trigger_type=result.trigger_type,
                        outcome=result.outcome,
                        message_body=result.message_body,
                        template_name=result.template_name,
                        provider_message_id=result.provider_message_id,
                        error_code=result.error_code,
                        error_message=result.error_message,
                        created_at=_coerce_utc(result.created_at),
                    )
                )

    def list_results(
        self,
        *,
        outcome: str | None = None,
        organization_id: str | None = None,
        run_id: str | None = None,
        campaign_id: str | None = None,
        limit: int | None = None,
    ) -> list[DispatchResult]:
        with self._session() as session:
            query = select(_DispatchResultRow).order_by(_DispatchResultRow.row_id.desc())
            if outcome is not None:
                query = query.where(_DispatchResultRow.outcome == outcome)
            if organization_id is not None:
                query = query.where(_DispatchResultRow.organization_id == organization_id)
            if run_id is not None:
                query = query.where(_DispatchResultRow.run_id == run_id)
            if campaign_id is not None:
                query = query.where(_DispatchResultRow.campaign_id == campaign_id)
            if limit is not None:
                query = query.limit(limit)
            return [
                DispatchResult(
                    result_id=row.result_id,
                    subject_id=row.subject_id,
                    subject_name=row.subject_name,
                    organization_id=row.organization_id,
                    address=row.address,
                    trigger_type=row.trigger_type,  # type: ignore[arg-type]
                    outcome=row.outcome,  # type: ignore[arg-type]
                    created_at=_coerce_utc(row.created_at),
                    message_body=row.message_body,
                    template_name=row.template_name,
                    provider_message_id=row.provider_message_id,
                    error_code=row.error_code,
                    error_message=row.error_message,
                    run_id=row.run_id,
                    campaign_id=row.campaign_id,
                )
                for row in session.execute(query).scalars()
            ]


def create_dispatch_result_log(*, backend: str, database_url: str) -> DispatchResultLog:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDispatchResultLog(database_url)
    if normalized == "inmemory":
        return InMemoryDispatchResultLog()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
