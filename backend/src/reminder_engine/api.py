from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, status

from .config import ConfigurationError, Settings, get_settings
from .dispatch_log import DispatchResult, DispatchResultLog, create_dispatch_result_log
from .ledger import TriggerLedger, create_trigger_ledger
from .models import (
    AutomationRunRequest,
    AutomationRunResponse,
    AutomationStatusResponse,
    BulkCampaignRequest,
    BulkCampaignResponse,
    DispatchOutcome,
    DispatchResultItem,
    DispatchResultListResponse,
    NotificationFeedResponse,
    NotificationItem,
    PackageAssignmentRecord,
    PackageAssignmentUpsertRequest,
    PackageAssignmentUpsertResponse,
    ScheduledCampaignCreateRequest,
    ScheduledCampaignItem,
    ScheduledCampaignListResponse,
    SendMessageRequest,
    SubjectUpsertRequest,
    TemplateListResponse,
    TemplateRecord,
    TemplateSeedRequest,
    TemplateUpsertRequest,
    TenantSettingsUpsertRequest,
    UpsertResponse,
)
from .orchestrator import AutomationAlreadyRunningError, AutomationOrchestrator, CampaignRecipient
from .store import (
    ClientRepository,
    MessageTemplate,
    PackageAssignment,
    ScheduledCampaign,
    Subject,
    SubjectNotFoundError,
    TenantSettings,
    create_client_repository,
)
from .templates import TemplateNotFoundError, seed_default_templates
from .transport import MessageTransport, StubTransport, TwilioTransport, WhatsAppCloudTransport, mask_contact_target

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/automation", tags=["automation"])

client_repo: ClientRepository = create_client_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
trigger_ledger: TriggerLedger = create_trigger_ledger(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
result_log: DispatchResultLog = create_dispatch_result_log(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)


def _create_transport(settings: Settings) -> MessageTransport:
    if settings.transport_type == "whatsapp_cloud":
        return WhatsAppCloudTransport(
            base_url=settings.whatsapp_graph_base_url,
            graph_version=settings.whatsapp_graph_version,
            phone_number_id=settings.whatsapp_phone_number_id,
            access_token=settings.whatsapp_access_token,
            language_code=settings.whatsapp_template_language,
            timeout_seconds=settings.transport_timeout_seconds,
        )
    if settings.transport_type == "twilio":
        return TwilioTransport(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_whatsapp_from,
            base_url=settings.twilio_base_url,
            timeout_seconds=settings.transport_timeout_seconds,
        )
    return StubTransport(enabled=settings.transport_enabled)


def build_orchestrator(
    settings: Settings,
    *,
    transport: MessageTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AutomationOrchestrator:
    return AutomationOrchestrator(
        repository=client_repo,
        ledger=trigger_ledger,
        result_log=result_log,
        transport=transport or _create_transport(settings),
        settings=settings,
        sleep=sleep,
    )


orchestrator: AutomationOrchestrator = build_orchestrator(_settings)


def reset_runtime_state_for_tests() -> None:
    client_repo.reset()
    trigger_ledger.reset()
    result_log.reset()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _result_item(result: DispatchResult) -> DispatchResultItem:
    return DispatchResultItem(
        result_id=result.result_id,
        subject_id=result.subject_id,
        subject_name=result.subject_name,
        organization_id=result.organization_id,
        contact_target_masked=mask_contact_target(result.address) if result.address else None,
        trigger_type=result.trigger_type,
        outcome=result.outcome,
        template_name=result.template_name,
        provider_message_id=result.provider_message_id,
        error_code=result.error_code,
        error_message=result.error_message,
        run_id=result.run_id,
        campaign_id=result.campaign_id,
        created_at=result.created_at,
    )


def _campaign_item(campaign: ScheduledCampaign) -> ScheduledCampaignItem:
    return ScheduledCampaignItem(
        campaign_id=campaign.campaign_id,
        organization_id=campaign.organization_id,
        title=campaign.title,
        message_text=campaign.message_text,
        target_subject_ids=list(campaign.target_subject_ids),
        scheduled_at=campaign.scheduled_at,
        is_sent=campaign.is_sent,
        sent_at=campaign.sent_at,
    )


def _template_record(template: MessageTemplate) -> TemplateRecord:
    return TemplateRecord(
        template_id=template.template_id,
        organization_id=template.organization_id,
        template_type=template.template_type,
        name=template.name,
        body=template.body,
        is_active=template.is_active,
    )


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


@router.post("/run", response_model=AutomationRunResponse)
def run_automation(payload: AutomationRunRequest | None = None) -> AutomationRunResponse:
    request_payload = payload or AutomationRunRequest()
    if request_payload.today is not None and not _settings.automation_allow_today_override:
        raise HTTPException(400, "today override is disabled (AUTOMATION_ALLOW_TODAY_OVERRIDE=false)")
    try:
        return orchestrator.run(request_payload.today, trigger="manual", phases=request_payload.phases)
    except AutomationAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get("/status", response_model=AutomationStatusResponse)
def get_automation_status() -> AutomationStatusResponse:
    state, last_run = orchestrator.status()
    return AutomationStatusResponse(state=state, last_run=last_run)


@router.post("/campaigns/bulk", response_model=BulkCampaignResponse)
def send_bulk_campaign(payload: BulkCampaignRequest) -> BulkCampaignResponse:
    recipients = [
        CampaignRecipient(
            subject_id=item.subject_id,
            phone=item.phone,
            name=item.name,
            fields=dict(item.fields),
        )
        for item in payload.recipients
    ]
    try:
        outcome = orchestrator.run_bulk_campaign(
            organization_id=payload.organization_id,
            recipients=recipients,
            template_type=payload.template_type,
            template_name=payload.template_name,
            message_text=payload.message_text,
        )
    except TemplateNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"template not found: {exc.args[0]}") from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return BulkCampaignResponse(
        campaign_id=outcome.campaign_id,
        recipient_count=len(recipients),
        sent_count=outcome.sent_count,
        failed_count=outcome.failed_count,
        results=[_result_item(result) for result in outcome.results],
    )


@router.post(
    "/campaigns/scheduled",
    response_model=ScheduledCampaignItem,
    status_code=status.HTTP_201_CREATED,
)
def create_scheduled_campaign(payload: ScheduledCampaignCreateRequest) -> ScheduledCampaignItem:
    campaign = client_repo.create_scheduled_campaign(
        organization_id=payload.organization_id,
        title=payload.title,
        message_text=payload.message_text,
        target_subject_ids=payload.target_subject_ids,
        scheduled_at=payload.scheduled_at,
    )
    return _campaign_item(campaign)


@router.get("/campaigns/scheduled", response_model=ScheduledCampaignListResponse)
def list_scheduled_campaigns(organization_id: str | None = None) -> ScheduledCampaignListResponse:
    return ScheduledCampaignListResponse(
        items=[_campaign_item(value) for value in client_repo.list_scheduled_campaigns(organization_id)]
    )


@router.post("/messages/send", response_model=DispatchResultItem)
def send_message(payload: SendMessageRequest) -> DispatchResultItem:
    try:
        result = orchestrator.send_single(
            organization_id=payload.organization_id,
            subject_id=payload.subject_id,
            phone=payload.phone,
            message_text=payload.message_text,
            template_name=payload.template_name,
            template_params=payload.template_params,
        )
    except SubjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"client not found: {payload.subject_id}") from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _result_item(result)


@router.get("/dispatch-results", response_model=DispatchResultListResponse)
def list_dispatch_results(
    outcome: DispatchOutcome | None = None,
    organization_id: str | None = None,
    run_id: str | None = None,
    campaign_id: str | None = None,
    limit: int = 100,
) -> DispatchResultListResponse:
    if limit < 1 or limit > 1000:
        raise HTTPException(400, "limit must be between 1 and 1000")
    rows = result_log.list_results(
        outcome=outcome,
        organization_id=organization_id,
        run_id=run_id,
        campaign_id=campaign_id,
        limit=limit,
    )
    return DispatchResultListResponse(items=[_result_item(row) for row in rows])


@router.get("/notifications", response_model=NotificationFeedResponse)
def get_notifications(organization_id: str | None = None, limit: int = 10) -> NotificationFeedResponse:
    today = orchestrator.today()
    now = _now_utc()
    items: list[NotificationItem] = []

    for result in result_log.list_results(outcome="failed", organization_id=organization_id, limit=3):
        items.append(
            NotificationItem(
                id=f"failed-{result.result_id}",
                kind="error",
                title="Message Failed",
                message=f"Failed to send message to {result.subject_name or 'client'}",
                created_at=result.created_at,
            )
        )
    for subject, remaining in orchestrator.scanner.upcoming_birthdays(today, organization_id=organization_id):
        when = "today" if remaining == 0 else ("tomorrow" if remaining == 1 else f"in {remaining} days")
        items.append(
            NotificationItem(
                id=f"birthday-{subject.subject_id}",
                kind="info",
                title="Upcoming Birthday",
                message=f"{subject.name}'s birthday is {when}",
                created_at=now,
            )
        )
    for assignment, remaining in orchestrator.scanner.expiring_packages(today, organization_id=organization_id):
        subject = client_repo.get_subject(assignment.subject_id)
        name = subject.name if subject is not None else assignment.subject_id
        when = "today" if remaining == 0 else ("tomorrow" if remaining == 1 else f"in {remaining} days")
        items.append(
            NotificationItem(
                id=f"expiring-{assignment.assignment_id}",
                kind="warning",
                title="Package Expiring",
                message=f"{name}'s {assignment.package_name} package expires {when}",
                created_at=now,
            )
        )

    items.sort(key=lambda value: value.created_at, reverse=True)
    return NotificationFeedResponse(items=items[: max(limit, 0)])


# ---------------------------------------------------------------------------
# Record upserts
# ---------------------------------------------------------------------------


@router.post("/subjects/upsert", response_model=UpsertResponse)
def upsert_subjects(payload: SubjectUpsertRequest) -> UpsertResponse:
    subjects = [
        Subject(
            subject_id=item.subject_id,
            organization_id=item.organization_id,
            name=item.name,
            whatsapp_number=item.whatsapp_number,
            phone=item.phone,
            email=item.email,
            date_of_birth=item.date_of_birth,
            fields=dict(item.fields),
        )
        for item in payload.subjects
    ]
    return UpsertResponse(processed_count=len(client_repo.upsert_subjects(subjects)))


@router.post("/packages/upsert", response_model=PackageAssignmentUpsertResponse)
def upsert_packages(payload: PackageAssignmentUpsertRequest) -> PackageAssignmentUpsertResponse:
    today = orchestrator.today()
    assignments = [
        PackageAssignment(
            assignment_id=item.assignment_id,
            subject_id=item.subject_id,
            organization_id=item.organization_id,
            package_id=item.package_id,
            package_name=item.package_name,
            start_date=item.start_date,
            end_date=item.end_date,
        )
        for item in payload.assignments
    ]
    assignments = [
        PackageAssignment(**{**value.__dict__, "status": value.status_on(today)}) for value in assignments
    ]
    saved = client_repo.upsert_package_assignments(assignments)
    return PackageAssignmentUpsertResponse(
        processed_count=len(saved),
        assignments=[
            PackageAssignmentRecord(
                assignment_id=value.assignment_id,
                subject_id=value.subject_id,
                organization_id=value.organization_id,
                package_id=value.package_id,
                package_name=value.package_name,
                start_date=value.start_date,
                end_date=value.end_date,
                status=value.status,  # type: ignore[arg-type]
            )
            for value in saved
        ],
    )


@router.post("/templates/upsert", response_model=TemplateListResponse)
def upsert_templates(payload: TemplateUpsertRequest) -> TemplateListResponse:
    templates = [
        MessageTemplate(
            template_id=item.template_id,
            organization_id=item.organization_id,
            template_type=item.template_type,
            name=item.name,
            body=item.body,
            is_active=item.is_active,
        )
        for item in payload.templates
    ]
    return TemplateListResponse(templates=[_template_record(value) for value in client_repo.upsert_templates(templates)])


@router.get("/templates", response_model=TemplateListResponse)
def list_templates(organization_id: str) -> TemplateListResponse:
    return TemplateListResponse(templates=[_template_record(value) for value in client_repo.list_templates(organization_id)])


@router.post("/templates/seed-defaults", response_model=TemplateListResponse)
def seed_templates(payload: TemplateSeedRequest) -> TemplateListResponse:
    seeded = seed_default_templates(client_repo, payload.organization_id)
    return TemplateListResponse(templates=[_template_record(value) for value in seeded])


@router.post("/tenants/upsert", response_model=TenantSettingsUpsertRequest)
def upsert_tenant(payload: TenantSettingsUpsertRequest) -> TenantSettingsUpsertRequest:
    tenant = client_repo.upsert_tenant_settings(
        TenantSettings(
            organization_id=payload.organization_id,
            organization_name=payload.organization_name,
            messaging_enabled=payload.messaging_enabled,
            renewal_link=payload.renewal_link,
        )
    )
    return TenantSettingsUpsertRequest(
        organization_id=tenant.organization_id,
        organization_name=tenant.organization_name,
        messaging_enabled=tenant.messaging_enabled,
        renewal_link=tenant.renewal_link,
    )
