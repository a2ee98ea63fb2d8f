from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

TriggerType = Literal[
    "birthday",
    "expiry_before_3d",
    "expiry_on",
    "expiry_after_3d",
    "bulk_custom",
]
PackageStatusValue = Literal["upcoming", "active", "expiring_soon", "expired"]
DispatchOutcome = Literal["sent", "failed"]
OrchestratorState = Literal["idle", "running"]
PhaseName = Literal["package_status_refresh", "birthday", "expiry", "scheduled_campaigns"]
PhaseStatus = Literal["completed", "error"]
RunTrigger = Literal["manual", "schedule"]
NotificationKind = Literal["error", "info", "warning"]


def _strip_required(value: str, label: str) -> str:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError(f"{label} cannot be blank")
    return normalized


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


class SubjectUpsertItem(BaseModel):
    subject_id: str = Field(min_length=1, max_length=128)
    organization_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=256)
    whatsapp_number: str | None = Field(default=None, max_length=64)
    phone: str | None = Field(default=None, max_length=64)
    email: str | None = Field(default=None, max_length=256)
    date_of_birth: date | None = None
    fields: dict[str, str] = Field(default_factory=dict)

    @field_validator("subject_id", "organization_id", "name")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _strip_required(value, "text fields")

    @field_validator("whatsapp_number", "phone", "email")
    @classmethod
    def _normalize_contact(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class SubjectUpsertRequest(BaseModel):
    subjects: list[SubjectUpsertItem] = Field(min_length=1, max_length=500)


class UpsertResponse(BaseModel):
    processed_count: int


class PackageAssignmentUpsertItem(BaseModel):
    assignment_id: str = Field(min_length=1, max_length=128)
    subject_id: str = Field(min_length=1, max_length=128)
    organization_id: str = Field(min_length=1, max_length=128)
    package_id: str = Field(min_length=1, max_length=128)
    package_name: str = Field(min_length=1, max_length=256)
    start_date: date
    end_date: date

    @field_validator("assignment_id", "subject_id", "organization_id", "package_id", "package_name")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _strip_required(value, "text fields")

    @model_validator(mode="after")
    def _validate_period(self) -> PackageAssignmentUpsertItem:
        if self.end_date < self.start_date:
            raise ValueError("end_date must be greater than or equal to start_date")
        return self


class PackageAssignmentUpsertRequest(BaseModel):
    assignments: list[PackageAssignmentUpsertItem] = Field(min_length=1, max_length=500)


class PackageAssignmentRecord(BaseModel):
    assignment_id: str
    subject_id: str
    organization_id: str
    package_id: str
    package_name: str
    start_date: date
    end_date: date
    status: PackageStatusValue


class PackageAssignmentUpsertResponse(BaseModel):
    processed_count: int
    assignments: list[PackageAssignmentRecord]


class TemplateUpsertItem(BaseModel):
    template_id: str = Field(min_length=1, max_length=128)
    organization_id: str = Field(min_length=1, max_length=128)
    template_type: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=256)
    body: str = Field(min_length=1, max_length=4096)
    is_active: bool = True

    @field_validator("template_id", "organization_id", "template_type", "name")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _strip_required(value, "text fields")


class TemplateUpsertRequest(BaseModel):
    templates: list[TemplateUpsertItem] = Field(min_length=1, max_length=100)


class TemplateRecord(BaseModel):
    template_id: str
    organization_id: str
    template_type: str
    name: str
    body: str
    is_active: bool


class TemplateListResponse(BaseModel):
    templates: list[TemplateRecord]


class TemplateSeedRequest(BaseModel):
    organization_id: str = Field(min_length=1, max_length=128)


class TenantSettingsUpsertRequest(BaseModel):
    organization_id: str = Field(min_length=1, max_length=128)
    organization_name: str = Field(min_length=1, max_length=256)
    messaging_enabled: bool = True
    renewal_link: str = Field(default="", max_length=512)


class AutomationRunRequest(BaseModel):
    today: date | None = None
    # Omitted or empty runs every phase.
    phases: list[PhaseName] | None = None


class PhaseSummary(BaseModel):
    phase: PhaseName
    status: PhaseStatus
    due_count: int = 0
    updated_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    omitted_count: int = 0
    error_message: str | None = None


class AutomationRunResponse(BaseModel):
    success: bool
    run_id: str
    trigger: RunTrigger
    today: date
    started_at: datetime
    finished_at: datetime
    sent_count: int
    failed_count: int
    skipped_count: int
    omitted_count: int
    ledger_warning_count: int
    phases: list[PhaseSummary]


class AutomationStatusResponse(BaseModel):
    state: OrchestratorState
    last_run: AutomationRunResponse | None = None


class BulkRecipient(BaseModel):
    subject_id: str | None = Field(default=None, max_length=128)
    phone: str | None = Field(default=None, max_length=64)
    name: str | None = Field(default=None, max_length=256)
    fields: dict[str, str] = Field(default_factory=dict)

    @field_validator("subject_id", "phone", "name")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        return _strip_optional(value)

    @model_validator(mode="after")
    def _require_target(self) -> BulkRecipient:
        if self.subject_id is None and self.phone is None:
            raise ValueError("each recipient needs a subject_id or a phone")
        return self


class BulkCampaignRequest(BaseModel):
    organization_id: str = Field(min_length=1, max_length=128)
    template_type: str | None = Field(default=None, max_length=64)
    template_name: str | None = Field(default=None, max_length=256)
    message_text: str | None = Field(default=None, max_length=4096)
    recipients: list[BulkRecipient] = Field(min_length=1, max_length=1000)

    @model_validator(mode="after")
    def _require_single_source(self) -> BulkCampaignRequest:
        sources = [value for value in (self.template_type, self.template_name, self.message_text) if value]
        if len(sources) != 1:
            raise ValueError("exactly one of template_type, template_name or message_text is required")
        return self


class DispatchResultItem(BaseModel):
    result_id: str
    subject_id: str | None = None
    subject_name: str
    organization_id: str | None = None
    contact_target_masked: str | None = None
    trigger_type: TriggerType
    outcome: DispatchOutcome
    template_name: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    run_id: str | None = None
    campaign_id: str | None = None
    created_at: datetime


class BulkCampaignResponse(BaseModel):
    campaign_id: str
    recipient_count: int
    sent_count: int
    failed_count: int
    results: list[DispatchResultItem]


class DispatchResultListResponse(BaseModel):
    items: list[DispatchResultItem]


class ScheduledCampaignCreateRequest(BaseModel):
    organization_id: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=256)
    message_text: str = Field(min_length=1, max_length=4096)
    target_subject_ids: list[str] = Field(min_length=1, max_length=1000)
    scheduled_at: datetime

    @field_validator("target_subject_ids")
    @classmethod
    def _normalize_targets(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        seen: set[str] = set()
        for raw in value:
            subject_id = _strip_required(raw, "target_subject_ids entries")
            if subject_id in seen:
                continue
            seen.add(subject_id)
            normalized.append(subject_id)
        return normalized


class ScheduledCampaignItem(BaseModel):
    campaign_id: str
    organization_id: str
    title: str
    message_text: str
    target_subject_ids: list[str]
    scheduled_at: datetime
    is_sent: bool
    sent_at: datetime | None = None


class ScheduledCampaignListResponse(BaseModel):
    items: list[ScheduledCampaignItem]


class SendMessageRequest(BaseModel):
    organization_id: str | None = Field(default=None, max_length=128)
    subject_id: str | None = Field(default=None, max_length=128)
    phone: str | None = Field(default=None, max_length=64)
    message_text: str | None = Field(default=None, max_length=4096)
    template_name: str | None = Field(default=None, max_length=256)
    template_params: list[str] = Field(default_factory=list, max_length=20)

    @model_validator(mode="after")
    def _validate_shape(self) -> SendMessageRequest:
        if self.subject_id is None and self.phone is None:
            raise ValueError("subject_id or phone is required")
        if bool(self.message_text) == bool(self.template_name):
            raise ValueError("exactly one of message_text or template_name is required")
        return self


class NotificationItem(BaseModel):
    id: str
    kind: NotificationKind
    title: str
    message: str
    created_at: datetime


class NotificationFeedResponse(BaseModel):
    items: list[NotificationItem]
