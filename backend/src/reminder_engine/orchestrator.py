from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import Lock

from .config import Settings, resolve_timezone
from .dispatch import DispatchBatch, DispatchJob, DispatchWorker, TrackedTrigger
from .dispatch_log import DispatchResult, DispatchResultLog
from .ledger import TriggerLedger
from .models import AutomationRunResponse, OrchestratorState, PhaseName, PhaseSummary, RunTrigger
from .scanner import DueTrigger, ReminderScanner, ScanReport
from .store import (
    ClientRepository,
    ScheduledCampaign,
    Subject,
    SubjectNotFoundError,
    TenantSettings,
    normalize_address,
)
from .templates import PROVIDER_TEMPLATE_BY_TRIGGER, TemplateResolver, render
from .transport import MessageTransport, OutboundMessage

logger = logging.getLogger(__name__)

RUN_PHASES: tuple[PhaseName, ...] = ("package_status_refresh", "birthday", "expiry", "scheduled_campaigns")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AutomationAlreadyRunningError(RuntimeError):
    """Raised when a run is requested while another run is in progress."""


@dataclass(frozen=True)
class CampaignRecipient:
    subject_id: str | None = None
    phone: str | None = None
    name: str | None = None
    fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CampaignOutcome:
    campaign_id: str
    results: list[DispatchResult]

    @property
    def sent_count(self) -> int:
        return sum(1 for value in self.results if value.outcome == "sent")

    @property
    def failed_count(self) -> int:
        return sum(1 for value in self.results if value.outcome == "failed")


class AutomationOrchestrator:
    """Runs the daily automation pass and ad-hoc campaigns.

    Only one automation run may be in progress per instance. A second request
    while running is rejected with ``AutomationAlreadyRunningError``; it is
    never queued.
    """

    def __init__(
        self,
        *,
        repository: ClientRepository,
        ledger: TriggerLedger,
        result_log: DispatchResultLog,
        transport: MessageTransport,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _now_utc,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or Settings()
        self._repository = repository
        self._transport = transport
        self._clock = clock
        self._scanner = ReminderScanner(repository)
        self._resolver = TemplateResolver(repository)
        self._worker = DispatchWorker(
            transport=transport,
            ledger=ledger,
            result_log=result_log,
            delay_seconds=self._settings.dispatch_delay_seconds,
            sleep=sleep,
        )
        self._run_lock = Lock()
        self._state: OrchestratorState = "idle"
        self._last_run: AutomationRunResponse | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def scanner(self) -> ReminderScanner:
        return self._scanner

    def status(self) -> tuple[OrchestratorState, AutomationRunResponse | None]:
        return self._state, self._last_run

    def today(self) -> date:
        return self._clock().astimezone(resolve_timezone(self._settings.scheduler_timezone)).date()

    def run(
        self,
        today: date | None = None,
        *,
        trigger: RunTrigger = "manual",
        phases: Sequence[PhaseName] | None = None,
    ) -> AutomationRunResponse:
        """Run the automation pass, or only the named ``phases`` in their fixed order."""
        self._transport.ensure_configured()
        run_day = today or self.today()
        selected = set(phases) if phases else set(RUN_PHASES)
        if not self._run_lock.acquire(blocking=False):
            logger.info("automation run rejected: another run is in progress (trigger=%s)", trigger)
            raise AutomationAlreadyRunningError("automation run already in progress")
        self._state = "running"
        try:
            report = self._run_phases(run_day, trigger, [value for value in RUN_PHASES if value in selected])
            self._last_run = report
            return report
        finally:
            self._state = "idle"
            self._run_lock.release()

    def _run_phases(self, today: date, trigger: RunTrigger, selected: list[PhaseName]) -> AutomationRunResponse:
        run_id = f"run_{secrets.token_hex(8)}"
        started_at = self._clock()
        logger.info("automation run %s started: today=%s trigger=%s phases=%s", run_id, today, trigger, ",".join(selected))

        phases: list[PhaseSummary] = []
        ledger_warnings = 0
        steps: dict[PhaseName, Callable[[], tuple[PhaseSummary, int]]] = {
            "package_status_refresh": lambda: self._refresh_statuses(today),
            "birthday": lambda: self._dispatch_scan("birthday", self._scanner.scan_birthdays(today), today, run_id),
            "expiry": lambda: self._dispatch_scan("expiry", self._scanner.scan_expiries(today), today, run_id),
            "scheduled_campaigns": lambda: self._send_due_campaigns(run_id),
        }
        for phase in selected:
            try:
                summary, warnings = steps[phase]()
            except Exception as exc:
                logger.exception("automation run %s: phase %s failed", run_id, phase)
                summary, warnings = PhaseSummary(phase=phase, status="error", error_message=str(exc)), 0
            phases.append(summary)
            ledger_warnings += warnings

        finished_at = self._clock()
        report = AutomationRunResponse(
            success=all(value.status == "completed" for value in phases),
            run_id=run_id,
            trigger=trigger,
            today=today,
            started_at=started_at,
            finished_at=finished_at,
            sent_count=sum(value.sent_count for value in phases),
            failed_count=sum(value.failed_count for value in phases),
            skipped_count=sum(value.skipped_count for value in phases),
            omitted_count=sum(value.omitted_count for value in phases),
            ledger_warning_count=ledger_warnings,
            phases=phases,
        )
        logger.info(
            "automation run %s finished: sent=%d failed=%d skipped=%d omitted=%d",
            run_id,
            report.sent_count,
            report.failed_count,
            report.skipped_count,
            report.omitted_count,
        )
        return report

    def _refresh_statuses(self, today: date) -> tuple[PhaseSummary, int]:
        changed = self._repository.refresh_package_statuses(today)
        return PhaseSummary(phase="package_status_refresh", status="completed", updated_count=changed), 0

    def _dispatch_scan(
        self,
        phase: PhaseName,
        report: ScanReport,
        today: date,
        run_id: str,
    ) -> tuple[PhaseSummary, int]:
        for omission in report.omissions:
            logger.info(
                "omitted %s for subject %s: %s",
                omission.trigger_type,
                omission.subject_id,
                omission.reason,
            )
        jobs = [self._automation_job(due, today) for due in report.due]
        batch = self._worker.dispatch(jobs, run_id=run_id)
        return _phase_summary(phase, batch, due_count=len(report.due), omitted_count=report.omitted_count), batch.ledger_warnings

    def _tenant(self, organization_id: str) -> TenantSettings:
        tenant = self._repository.get_tenant_settings(organization_id)
        if tenant is not None:
            return tenant
        return TenantSettings(
            organization_id=organization_id,
            organization_name=self._settings.default_organization_name,
            renewal_link=self._settings.default_renewal_link,
        )

    def _automation_job(self, due: DueTrigger, today: date) -> DispatchJob:
        subject = due.subject
        tenant = self._tenant(subject.organization_id)
        extras: dict[str, object] = {
            "organization_name": tenant.organization_name,
            "renewal_link": tenant.renewal_link or self._settings.default_renewal_link,
        }
        if due.assignment is not None:
            extras.update(
                {
                    "plan_name": due.assignment.package_name,
                    "package_name": due.assignment.package_name,
                    "expiry_date": due.assignment.end_date.isoformat(),
                    "start_date": due.assignment.start_date.isoformat(),
                    "days_remaining": due.days_offset,
                }
            )

        template = self._resolver.resolve_for_trigger(subject.organization_id, due.trigger_type)
        if template is not None:
            message = OutboundMessage(body=render(template.body, subject, extras))
        elif due.assignment is None:
            message = OutboundMessage(
                template_name=PROVIDER_TEMPLATE_BY_TRIGGER[due.trigger_type],
                template_params=(subject.name, str(extras["organization_name"])),
            )
        else:
            message = OutboundMessage(
                template_name=PROVIDER_TEMPLATE_BY_TRIGGER[due.trigger_type],
                template_params=(
                    subject.name,
                    due.assignment.package_name or "plan",
                    due.assignment.end_date.isoformat(),
                    str(extras["renewal_link"]),
                ),
            )

        return DispatchJob(
            subject_id=subject.subject_id,
            subject_name=subject.name,
            organization_id=subject.organization_id,
            address=due.address,
            trigger_type=due.trigger_type,
            message=message,
            tracked=TrackedTrigger(
                subject_id=due.ledger_subject_id,
                trigger_type=due.trigger_type,
                trigger_date=today,
            ),
        )

    def _send_due_campaigns(self, run_id: str) -> tuple[PhaseSummary, int]:
        now = self._clock()
        due_campaigns = self._repository.list_due_campaigns(now)
        sent = failed = skipped = 0
        errors: list[str] = []
        for campaign in due_campaigns:
            tenant = self._repository.get_tenant_settings(campaign.organization_id)
            if tenant is None or not tenant.messaging_enabled:
                logger.info("scheduled campaign %s skipped: messaging disabled for tenant", campaign.campaign_id)
                skipped += 1
                continue
            if not campaign.target_subject_ids:
                logger.info("scheduled campaign %s has no target clients", campaign.campaign_id)
                skipped += 1
                continue
            # Claimed before sending: a campaign goes out at most once even if a later write fails.
            try:
                claimed = self._repository.claim_campaign(campaign.campaign_id, claimed_at=now)
            except Exception as exc:
                logger.exception("scheduled campaign %s could not be claimed", campaign.campaign_id)
                errors.append(f"{campaign.campaign_id}: {exc}")
                continue
            if not claimed:
                logger.info("scheduled campaign %s already claimed by another run", campaign.campaign_id)
                skipped += 1
                continue
            try:
                outcome = self._send_campaign(campaign, run_id)
            except Exception as exc:
                logger.exception("scheduled campaign %s failed after claim", campaign.campaign_id)
                errors.append(f"{campaign.campaign_id}: {exc}")
                continue
            sent += outcome.sent_count
            failed += outcome.failed_count
            logger.info(
                "scheduled campaign %r sent to %d clients (%d failed)",
                campaign.title,
                outcome.sent_count,
                outcome.failed_count,
            )
        summary = PhaseSummary(
            phase="scheduled_campaigns",
            status="error" if errors else "completed",
            due_count=len(due_campaigns),
            sent_count=sent,
            failed_count=failed,
            skipped_count=skipped,
            error_message="; ".join(errors) or None,
        )
        return summary, 0

    def _send_campaign(self, campaign: ScheduledCampaign, run_id: str) -> CampaignOutcome:
        recipients = [CampaignRecipient(subject_id=subject_id) for subject_id in campaign.target_subject_ids]
        jobs = self._campaign_jobs(campaign.organization_id, recipients, campaign.message_text)
        batch = self._worker.dispatch(jobs, run_id=run_id, campaign_id=campaign.campaign_id)
        return CampaignOutcome(campaign_id=campaign.campaign_id, results=batch.results)

    def run_bulk_campaign(
        self,
        *,
        organization_id: str,
        recipients: list[CampaignRecipient],
        template_type: str | None = None,
        template_name: str | None = None,
        message_text: str | None = None,
    ) -> CampaignOutcome:
        """Send one message per recipient, bypassing the scanner and the ledger.

        Raises ``TemplateNotFoundError`` before any send when the requested
        template does not exist.
        """
        self._transport.ensure_configured()
        if not message_text:
            template = self._resolver.require(organization_id, template_type=template_type, name=template_name)
            body = template.body
        else:
            body = message_text
        campaign_id = f"bulk_{secrets.token_hex(8)}"
        jobs = self._campaign_jobs(organization_id, recipients, body)
        batch = self._worker.dispatch(jobs, campaign_id=campaign_id)
        logger.info(
            "bulk campaign %s: recipients=%d sent=%d failed=%d",
            campaign_id,
            len(recipients),
            batch.sent_count,
            batch.failed_count,
        )
        return CampaignOutcome(campaign_id=campaign_id, results=batch.results)

    def _campaign_jobs(self, organization_id: str, recipients: list[CampaignRecipient], body: str) -> list[DispatchJob]:
        tenant = self._tenant(organization_id)
        base_extras: dict[str, object] = {
            "organization_name": tenant.organization_name,
            "renewal_link": tenant.renewal_link or self._settings.default_renewal_link,
        }
        jobs: list[DispatchJob] = []
        for recipient in recipients:
            extras = {**base_extras, **recipient.fields}
            if recipient.subject_id is not None:
                subject = self._repository.get_subject(recipient.subject_id)
                if subject is None:
                    jobs.append(
                        DispatchJob(
                            subject_id=recipient.subject_id,
                            subject_name=recipient.name or recipient.subject_id,
                            organization_id=organization_id,
                            address=None,
                            trigger_type="bulk_custom",
                            message=OutboundMessage(body=render(body, None, extras)),
                            unresolved_reason="Client not found",
                        )
                    )
                    continue
                address = subject.resolve_address() or _normalized_or_none(recipient.phone)
                jobs.append(
                    DispatchJob(
                        subject_id=subject.subject_id,
                        subject_name=subject.name,
                        organization_id=subject.organization_id,
                        address=address,
                        trigger_type="bulk_custom",
                        message=OutboundMessage(body=render(body, subject, extras)),
                    )
                )
                continue

            adhoc = Subject(
                subject_id="",
                organization_id=organization_id,
                name=recipient.name or "",
                phone=recipient.phone,
                fields=dict(recipient.fields),
            )
            jobs.append(
                DispatchJob(
                    subject_id=None,
                    subject_name=recipient.name or "",
                    organization_id=organization_id,
                    address=adhoc.resolve_address(),
                    trigger_type="bulk_custom",
                    message=OutboundMessage(body=render(body, adhoc, extras)),
                )
            )
        return jobs

    def send_single(
        self,
        *,
        organization_id: str | None = None,
        subject_id: str | None = None,
        phone: str | None = None,
        message_text: str | None = None,
        template_name: str | None = None,
        template_params: list[str] | None = None,
    ) -> DispatchResult:
        """Send one freeform text or provider template message."""
        self._transport.ensure_configured()
        subject: Subject | None = None
        if subject_id is not None:
            subject = self._repository.get_subject(subject_id)
            if subject is None:
                raise SubjectNotFoundError(subject_id)

        address = (subject.resolve_address() if subject is not None else None) or _normalized_or_none(phone)
        if template_name is not None:
            message = OutboundMessage(template_name=template_name, template_params=tuple(template_params or ()))
        else:
            message = OutboundMessage(body=render(message_text or "", subject))

        job = DispatchJob(
            subject_id=subject.subject_id if subject is not None else None,
            subject_name=subject.name if subject is not None else (phone or ""),
            organization_id=subject.organization_id if subject is not None else organization_id,
            address=address,
            trigger_type="bulk_custom",
            message=message,
        )
        batch = self._worker.dispatch([job])
        return batch.results[0]


def _normalized_or_none(value: str | None) -> str | None:
    normalized = normalize_address(value)
    if not any(ch.isdigit() for ch in normalized):
        return None
    return normalized


def _phase_summary(phase: PhaseName, batch: DispatchBatch, *, due_count: int, omitted_count: int) -> PhaseSummary:
    return PhaseSummary(
        phase=phase,
        status="completed",
        due_count=due_count,
        sent_count=batch.sent_count,
        failed_count=batch.failed_count,
        skipped_count=batch.skipped_count,
        omitted_count=omitted_count,
    )
