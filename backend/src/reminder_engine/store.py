from __future__ import annotations

import json
import re
import secrets
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, Date, DateTime, String, Text, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .lifecycle import classify

_ADDRESS_STRIP_RE = re.compile(r"[^\d+]")


class SubjectNotFoundError(KeyError):
    """Raised when an operation references a client id that does not exist."""


class CampaignNotFoundError(KeyError):
    """Raised when an operation references a scheduled campaign that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_address(value: str | None) -> str:
    if not value:
        return ""
    return _ADDRESS_STRIP_RE.sub("", value)


@dataclass(frozen=True)
class Subject:
    subject_id: str
    organization_id: str
    name: str
    whatsapp_number: str | None = None
    phone: str | None = None
    email: str | None = None
    date_of_birth: date | None = None
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def contact_addresses(self) -> tuple[str, ...]:
        # Messaging-app number is preferred over the voice number.
        return tuple(value for value in (self.whatsapp_number, self.phone) if value and value.strip())

    def resolve_address(self) -> str | None:
        for candidate in self.contact_addresses:
            normalized = normalize_address(candidate)
            if any(ch.isdigit() for ch in normalized):
                return normalized
        return None


@dataclass(frozen=True)
class PackageAssignment:
    assignment_id: str
    subject_id: str
    organization_id: str
    package_id: str
    package_name: str
    start_date: date
    end_date: date
    status: str = "active"

    def __post_init__(self) -> None:
        if self.end_date < self.start_date:
            raise ValueError("end_date must be greater than or equal to start_date")

    def status_on(self, today: date) -> str:
        return classify(self.start_date, self.end_date, today)


@dataclass(frozen=True)
class MessageTemplate:
    template_id: str
    organization_id: str
    template_type: str
    name: str
    body: str
    is_active: bool = True


@dataclass(frozen=True)
class TenantSettings:
    organization_id: str
    organization_name: str
    messaging_enabled: bool = True
    renewal_link: str = ""


@dataclass(frozen=True)
class ScheduledCampaign:
    campaign_id: str
    organization_id: str
    title: str
    message_text: str
    target_subject_ids: tuple[str, ...]
    scheduled_at: datetime
    is_sent: bool = False
    sent_at: datetime | None = None
    created_at: datetime = field(default_factory=_now_utc)


class ClientRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_subjects(self, subjects: list[Subject]) -> list[Subject]: ...

    def get_subject(self, subject_id: str) -> Subject | None: ...

    def list_subjects(self, organization_id: str | None = None) -> list[Subject]: ...

    def list_subjects_with_birthdate(self) -> list[Subject]: ...

    def upsert_package_assignments(self, assignments: list[PackageAssignment]) -> list[PackageAssignment]: ...

    def list_package_assignments(
        self,
        *,
        ending_on_or_after: date | None = None,
        organization_id: str | None = None,
    ) -> list[PackageAssignment]: ...

    def refresh_package_statuses(self, today: date) -> int: ...

    def upsert_templates(self, templates: list[MessageTemplate]) -> list[MessageTemplate]: ...

    def list_templates(self, organization_id: str) -> list[MessageTemplate]: ...

    def get_active_template(self, organization_id: str, template_type: str) -> MessageTemplate | None: ...

    def get_template_by_name(self, organization_id: str, name: str) -> MessageTemplate | None: ...

    def upsert_tenant_settings(self, tenant: TenantSettings) -> TenantSettings: ...

    def get_tenant_settings(self, organization_id: str) -> TenantSettings | None: ...

    def create_scheduled_campaign(
        self,
        *,
        organization_id: str,
        title: str,
        message_text: str,
        target_subject_ids: list[str],
        scheduled_at: datetime,
    ) -> ScheduledCampaign: ...

    def list_scheduled_campaigns(self, organization_id: str | None = None) -> list[ScheduledCampaign]: ...

    def list_due_campaigns(self, now: datetime) -> list[ScheduledCampaign]: ...

    def claim_campaign(self, campaign_id: str, *, claimed_at: datetime) -> bool: ...


class InMemoryClientRepository:
    """Deterministic in-memory store with incremental campaign ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._campaign_counter = count(1)
        self._subjects: dict[str, Subject] = {}
        self._assignments: dict[str, PackageAssignment] = {}
        self._templates: dict[str, MessageTemplate] = {}
        self._tenants: dict[str, TenantSettings] = {}
        self._campaigns: dict[str, ScheduledCampaign] = {}

    def reset(self) -> None:
        with self._lock:
            self._campaign_counter = count(1)
            self._subjects.clear()
            self._assignments.clear()
            self._templates.clear()
            self._tenants.clear()
            self._campaigns.clear()

    def upsert_subjects(self, subjects: list[Subject]) -> list[Subject]:
        with self._lock:
            for subject in subjects:
                self._subjects[subject.subject_id] = subject
            return list(subjects)

    def get_subject(self, subject_id: str) -> Subject | None:
        return self._subjects.get(subject_id)

    def list_subjects(self, organization_id: str | None = None) -> list[Subject]:
        rows = sorted(self._subjects.values(), key=lambda value: value.subject_id)
        if organization_id is None:
            return rows
        return [value for value in rows if value.organization_id == organization_id]

    def list_subjects_with_birthdate(self) -> list[Subject]:
        return [value for value in self.list_subjects() if value.date_of_birth is not None]

    def upsert_package_assignments(self, assignments: list[PackageAssignment]) -> list[PackageAssignment]:
        with self._lock:
            for assignment in assignments:
                self._assignments[assignment.assignment_id] = assignment
            return list(assignments)

    def list_package_assignments(
        self,
        *,
        ending_on_or_after: date | None = None,
        organization_id: str | None = None,
    ) -> list[PackageAssignment]:
        rows = sorted(self._assignments.values(), key=lambda value: (value.end_date, value.assignment_id))
        if ending_on_or_after is not None:
            rows = [value for value in rows if value.end_date >= ending_on_or_after]
        if organization_id is not None:
            rows = [value for value in rows if value.organization_id == organization_id]
        return rows

    def refresh_package_statuses(self, today: date) -> int:
        changed = 0
        with self._lock:
            for assignment_id, row in list(self._assignments.items()):
                derived = row.status_on(today)
                if derived != row.status:
                    self._assignments[assignment_id] = replace(row, status=derived)
                    changed += 1
        return changed

    def upsert_templates(self, templates: list[MessageTemplate]) -> list[MessageTemplate]:
        with self._lock:
            for template in templates:
                self._templates[template.template_id] = template
            return list(templates)

    def list_templates(self, organization_id: str) -> list[MessageTemplate]:
        rows = [value for value in self._templates.values() if value.organization_id == organization_id]
        return sorted(rows, key=lambda value: (value.template_type, value.template_id))

    def get_active_template(self, organization_id: str, template_type: str) -> MessageTemplate | None:
        for template in self.list_templates(organization_id):
            if template.template_type == template_type and template.is_active:
                return template
        return None

    def get_template_by_name(self, organization_id: str, name: str) -> MessageTemplate | None:
        for template in self.list_templates(organization_id):
            if template.name == name and template.is_active:
                return template
        return None

    def upsert_tenant_settings(self, tenant: TenantSettings) -> TenantSettings:
        with self._lock:
            self._tenants[tenant.organization_id] = tenant
        return tenant

    def get_tenant_settings(self, organization_id: str) -> TenantSettings | None:
        return self._tenants.get(organization_id)

    def create_scheduled_campaign(
        self,
        *,
        organization_id: str,
        title: str,
        message_text: str,
        target_subject_ids: list[str],
        scheduled_at: datetime,
    ) -> ScheduledCampaign:
        with self._lock:
            campaign_id = f"camp-{next(self._campaign_counter):04d}"
            campaign = ScheduledCampaign(
                campaign_id=campaign_id,
                organization_id=organization_id,
                title=title,
                message_text=message_text,
                target_subject_ids=tuple(target_subject_ids),
                scheduled_at=_coerce_utc(scheduled_at),
            )
            self._campaigns[campaign_id] = campaign
            return campaign

    def list_scheduled_campaigns(self, organization_id: str | None = None) -> list[ScheduledCampaign]:
        rows = sorted(self._campaigns.values(), key=lambda value: (value.scheduled_at, value.campaign_id))
        if organization_id is None:
            return rows
        return [value for value in rows if value.organization_id == organization_id]

    def list_due_campaigns(self, now: datetime) -> list[ScheduledCampaign]:
        cutoff = _coerce_utc(now)
        return [value for value in self.list_scheduled_campaigns() if not value.is_sent and value.scheduled_at <= cutoff]

    def claim_campaign(self, campaign_id: str, *, claimed_at: datetime) -> bool:
        with self._lock:
            row = self._campaigns.get(campaign_id)
            if row is None:
                raise CampaignNotFoundError(campaign_id)
            if row.is_sent:
                return False
            self._campaigns[campaign_id] = replace(row, is_sent=True, sent_at=_coerce_utc(claimed_at))
            return True


class ClientStoreBase(DeclarativeBase):
    pass


class _SubjectRow(ClientStoreBase):
    __tablename__ = "clients"

    subject_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    whatsapp_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    fields_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")


class _PackageAssignmentRow(ClientStoreBase):
    __tablename__ = "client_packages"

    assignment_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    package_id: Mapped[str] = mapped_column(String(128), nullable=False)
    package_name: Mapped[str] = mapped_column(String(256), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)


class _MessageTemplateRow(ClientStoreBase):
    __tablename__ = "message_templates"

    template_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    template_type: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _TenantSettingsRow(ClientStoreBase):
    __tablename__ = "tenant_settings"

    organization_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    organization_name: Mapped[str] = mapped_column(String(256), nullable=False)
    messaging_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    renewal_link: Mapped[str] = mapped_column(String(512), nullable=False, default="")


class _ScheduledCampaignRow(ClientStoreBase):
    __tablename__ = "scheduled_campaigns"

    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    target_subject_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    is_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _subject_from_row(row: _SubjectRow) -> Subject:
    return Subject(
        subject_id=row.subject_id,
        organization_id=row.organization_id,
        name=row.name,
        whatsapp_number=row.whatsapp_number,
        phone=row.phone,
        email=row.email,
        date_of_birth=row.date_of_birth,
        fields=json.loads(row.fields_json or "{}"),
    )


def _assignment_from_row(row: _PackageAssignmentRow) -> PackageAssignment:
    return PackageAssignment(
        assignment_id=row.assignment_id,
        subject_id=row.subject_id,
        organization_id=row.organization_id,
        package_id=row.package_id,
        package_name=row.package_name,
        start_date=row.start_date,
        end_date=row.end_date,
        status=row.status,
    )


def _template_from_row(row: _MessageTemplateRow) -> MessageTemplate:
    return MessageTemplate(
        template_id=row.template_id,
        organization_id=row.organization_id,
        template_type=row.template_type,
        name=row.name,
        body=row.body,
        is_active=row.is_active,
    )


def _campaign_from_row(row: _ScheduledCampaignRow) -> ScheduledCampaign:
    return ScheduledCampaign(
        campaign_id=row.campaign_id,
        organization_id=row.organization_id,
        title=row.title,
        message_text=row.message_text,
        target_subject_ids=tuple(json.loads(row.target_subject_ids_json or "[]")),
        scheduled_at=_coerce_utc(row.scheduled_at),
        is_sent=row.is_sent,
        sent_at=_coerce_utc(row.sent_at) if row.sent_at is not None else None,
        created_at=_coerce_utc(row.created_at),
    )


class SqlAlchemyClientRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ClientStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ScheduledCampaignRow).delete()
                session.query(_TenantSettingsRow).delete()
                session.query(_MessageTemplateRow).delete()
                session.query(_PackageAssignmentRow).delete()
                session.query(_SubjectRow).delete()

    def upsert_subjects(self, subjects: list[Subject]) -> list[Subject]:
        with self._session() as session:
            with session.begin():
                for subject in subjects:
                    row = session.get(_SubjectRow, subject.subject_id)
                    if row is None:
                        row = _SubjectRow(subject_id=subject.subject_id)
                        session.add(row)
                    row.organization_id = subject.organization_id
                    row.name = subject.name
                    row.whatsapp_number = subject.whatsapp_number
                    row.phone = subject.phone
                    row.email = subject.email
                    row.date_of_birth = subject.date_of_birth
                    row.fields_json = json.dumps(subject.fields, sort_keys=True, separators=(",", ":"))
        return list(subjects)

    def get_subject(self, subject_id: str) -> Subject | None:
        with self._session() as session:
            row = session.get(_SubjectRow, subject_id)
            if row is None:
                return None
            return _subject_from_row(row)

    def list_subjects(self, organization_id: str | None = None) -> list[Subject]:
        with self._session() as session:
            query = select(_SubjectRow).order_by(_SubjectRow.subject_id.asc())
            if organization_id is not None:
                query = query.where(_SubjectRow.organization_id == organization_id)
            return [_subject_from_row(row) for row in session.execute(query).scalars()]

    def list_subjects_with_birthdate(self) -> list[Subject]:
        with self._session() as session:
            rows = session.execute(
                select(_SubjectRow)
                .where(_SubjectRow.date_of_birth.is_not(None))
                .order_by(_SubjectRow.subject_id.asc())
            ).scalars()
            return [_subject_from_row(row) for row in rows]

    def upsert_package_assignments(self, assignments: list[PackageAssignment]) -> list[PackageAssignment]:
        with self._session() as session:
            with session.begin():
                for assignment in assignments:
                    row = session.get(_PackageAssignmentRow, assignment.assignment_id)
                    if row is None:
                        row = _PackageAssignmentRow(assignment_id=assignment.assignment_id)
                        session.add(row)
                    row.subject_id = assignment.subject_id
                    row.organization_id = assignment.organization_id
                    row.package_id = assignment.package_id
                    row.package_name = assignment.package_name
                    row.start_date = assignment.start_date
                    row.end_date = assignment.end_date
                    row.status = assignment.status
        return list(assignments)

    def list_package_assignments(
        self,
        *,
        ending_on_or_after: date | None = None,
        organization_id: str | None = None,
    ) -> list[PackageAssignment]:
        with self._session() as session:
            query = select(_PackageAssignmentRow).order_by(
                _PackageAssignmentRow.end_date.asc(),
                _PackageAssignmentRow.assignment_id.asc(),
            )
            if ending_on_or_after is not None:
                query = query.where(_PackageAssignmentRow.end_date >= ending_on_or_after)
            if organization_id is not None:
                query = query.where(_PackageAssignmentRow.organization_id == organization_id)
            return [_assignment_from_row(row) for row in session.execute(query).scalars()]

    def refresh_package_statuses(self, today: date) -> int:
        changed = 0
        with self._session() as session:
            with session.begin():
                for row in session.execute(select(_PackageAssignmentRow)).scalars():
                    derived = classify(row.start_date, row.end_date, today)
                    if derived != row.status:
                        row.status = derived
                        changed += 1
        return changed

    def upsert_templates(self, templates: list[MessageTemplate]) -> list[MessageTemplate]:
        with self._session() as session:
            with session.begin():
                for template in templates:
                    row = session.get(_MessageTemplateRow, template.template_id)
                    if row is None:
                        row = _MessageTemplateRow(template_id=template.template_id)
                        session.add(row)
                    row.organization_id = template.organization_id
                    row.template_type = template.template_type
                    row.name = template.name
                    row.body = template.body
                    row.is_active = template.is_active
        return list(templates)

    def list_templates(self, organization_id: str) -> list[MessageTemplate]:
        with self._session() as session:
            rows = session.execute(
                select(_MessageTemplateRow)
                .where(_MessageTemplateRow.organization_id == organization_id)
                .order_by(_MessageTemplateRow.template_type.asc(), _MessageTemplateRow.template_id.asc())
            ).scalars()
            return [_template_from_row(row) for row in rows]

    def get_active_template(self, organization_id: str, template_type: str) -> MessageTemplate | None:
        with self._session() as session:
            row = session.execute(
                select(_MessageTemplateRow)
                .where(_MessageTemplateRow.organization_id == organization_id)
                .where(_MessageTemplateRow.template_type == template_type)
                .where(_MessageTemplateRow.is_active.is_(True))
                .order_by(_MessageTemplateRow.template_id.asc())
                .limit(1)
            ).scalar_one_or_none()
            return _template_from_row(row) if row is not None else None

    def get_template_by_name(self, organization_id: str, name: str) -> MessageTemplate | None:
        with self._session() as session:
            row = session.execute(
                select(_MessageTemplateRow)
                .where(_MessageTemplateRow.organization_id == organization_id)
                .where(_MessageTemplateRow.name == name)
                .where(_MessageTemplateRow.is_active.is_(True))
                .order_by(_MessageTemplateRow.template_id.asc())
                .limit(1)
            ).scalar_one_or_none()
            return _template_from_row(row) if row is not None else None

    def upsert_tenant_settings(self, tenant: TenantSettings) -> TenantSettings:
        with self._session() as session:
            with session.begin():
                row = session.get(_TenantSettingsRow, tenant.organization_id)
                if row is None:
                    row = _TenantSettingsRow(organization_id=tenant.organization_id)
                    session.add(row)
                row.organization_name = tenant.organization_name
                row.messaging_enabled = tenant.messaging_enabled
                row.renewal_link = tenant.renewal_link
        return tenant

    def get_tenant_settings(self, organization_id: str) -> TenantSettings | None:
        with self._session() as session:
            row = session.get(_TenantSettingsRow, organization_id)
            if row is None:
                return None
            return TenantSettings(
                organization_id=row.organization_id,
                organization_name=row.organization_name,
                messaging_enabled=row.messaging_enabled,
                renewal_link=row.renewal_link,
            )

    def create_scheduled_campaign(
        self,
        *,
        organization_id: str,
        title: str,
        message_text: str,
        target_subject_ids: list[str],
        scheduled_at: datetime,
    ) -> ScheduledCampaign:
        campaign_id = f"camp_{secrets.token_hex(8)}"
        row = _ScheduledCampaignRow(
            campaign_id=campaign_id,
            organization_id=organization_id,
            title=title,
            message_text=message_text,
            target_subject_ids_json=json.dumps(list(target_subject_ids)),
            scheduled_at=_coerce_utc(scheduled_at),
            is_sent=False,
            sent_at=None,
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
            return _campaign_from_row(row)

    def list_scheduled_campaigns(self, organization_id: str | None = None) -> list[ScheduledCampaign]:
        with self._session() as session:
            query = select(_ScheduledCampaignRow).order_by(
                _ScheduledCampaignRow.scheduled_at.asc(),
                _ScheduledCampaignRow.campaign_id.asc(),
            )
            if organization_id is not None:
                query = query.where(_ScheduledCampaignRow.organization_id == organization_id)
            return [_campaign_from_row(row) for row in session.execute(query).scalars()]

    def list_due_campaigns(self, now: datetime) -> list[ScheduledCampaign]:
        with self._session() as session:
            rows = session.execute(
                select(_ScheduledCampaignRow)
                .where(_ScheduledCampaignRow.is_sent.is_(False))
                .where(_ScheduledCampaignRow.scheduled_at <= _coerce_utc(now))
                .order_by(_ScheduledCampaignRow.scheduled_at.asc(), _ScheduledCampaignRow.campaign_id.asc())
            ).scalars()
            return [_campaign_from_row(row) for row in rows]

    def claim_campaign(self, campaign_id: str, *, claimed_at: datetime) -> bool:
        """Flip ``is_sent`` false -> true; only one caller can win the claim."""
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ScheduledCampaignRow)
                    .where(_ScheduledCampaignRow.campaign_id == campaign_id)
                    .where(_ScheduledCampaignRow.is_sent.is_(False))
                    .values(is_sent=True, sent_at=_coerce_utc(claimed_at))
                )
                if result.rowcount == 1:
                    return True
                if session.get(_ScheduledCampaignRow, campaign_id) is None:
                    raise CampaignNotFoundError(campaign_id)
                return False


def create_client_repository(*, backend: str, database_url: str) -> ClientRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyClientRepository(database_url)
    if normalized == "inmemory":
        return InMemoryClientRepository()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
