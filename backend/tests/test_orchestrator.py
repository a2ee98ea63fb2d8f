from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from reminder_engine.config import ConfigurationError, Settings
from reminder_engine.dispatch_log import InMemoryDispatchResultLog
from reminder_engine.ledger import InMemoryTriggerLedger
from reminder_engine.orchestrator import AutomationAlreadyRunningError, AutomationOrchestrator, CampaignRecipient
from reminder_engine.store import InMemoryClientRepository, MessageTemplate, PackageAssignment, Subject, TenantSettings
from reminder_engine.templates import TemplateNotFoundError
from reminder_engine.transport import OutboundMessage, StubTransport, TransportConfigurationError, TransportReceipt

TODAY = date(2026, 6, 10)
NOW = datetime(2026, 6, 10, 9, 0, tzinfo=timezone.utc)


class _Harness:
    def __init__(self, transport=None, repo=None, settings: Settings | None = None) -> None:
        self.repo = repo or InMemoryClientRepository()
        self.ledger = InMemoryTriggerLedger()
        self.result_log = InMemoryDispatchResultLog()
        self.transport = transport or StubTransport(enabled=True)
        self.sleeps: list[float] = []
        self.orchestrator = AutomationOrchestrator(
            repository=self.repo,
            ledger=self.ledger,
            result_log=self.result_log,
            transport=self.transport,
            settings=settings
            or Settings(default_organization_name="Iron Gym", default_renewal_link="https://renew.example"),
            clock=lambda: NOW,
            sleep=self.sleeps.append,
        )


def _seed(harness: _Harness) -> None:
    harness.repo.upsert_subjects(
        [
            Subject(
                subject_id="client-1",
                organization_id="org-1",
                name="Asha",
                whatsapp_number="+91 90000 00001",
                date_of_birth=date(1995, 6, 10),
            ),
            Subject(subject_id="client-2", organization_id="org-1", name="Ravi", phone="+91 90000 00002"),
        ]
    )
    harness.repo.upsert_package_assignments(
        [
            PackageAssignment(
                assignment_id="pkg-1",
                subject_id="client-2",
                organization_id="org-1",
                package_id="gold",
                package_name="Gold Monthly",
                start_date=date(2026, 5, 13),
                end_date=date(2026, 6, 13),
            )
        ]
    )


def test_run_sends_birthday_and_expiry_with_provider_template_fallback() -> None:
    harness = _Harness()
    _seed(harness)

    report = harness.orchestrator.run(TODAY)

    assert report.success
    assert report.sent_count == 2
    assert [phase.phase for phase in report.phases] == [
        "package_status_refresh",
        "birthday",
        "expiry",
        "scheduled_campaigns",
    ]
    sent = {address: message for address, message in harness.transport.sent}
    assert sent["+919000000001"] == OutboundMessage(template_name="birthday_1", template_params=("Asha", "Iron Gym"))
    assert sent["+919000000002"] == OutboundMessage(
        template_name="plan_expiry_3days",
        template_params=("Ravi", "Gold Monthly", "2026-06-13", "https://renew.example"),
    )
    assert harness.ledger.has_fired("client-1", "birthday", TODAY)
    assert harness.ledger.has_fired("pkg-1", "expiry_before_3d", TODAY)


def test_second_run_on_same_day_sends_nothing() -> None:
    harness = _Harness()
    _seed(harness)

    first = harness.orchestrator.run(TODAY)
    second = harness.orchestrator.run(TODAY)

    assert first.sent_count == 2
    assert second.sent_count == 0
    assert second.skipped_count == 2
    assert len(harness.transport.sent) == 2


def test_tenant_template_is_rendered_when_present() -> None:
    harness = _Harness()
    _seed(harness)
    harness.repo.upsert_tenant_settings(TenantSettings(organization_id="org-1", organization_name="Pulse Fitness"))
    harness.repo.upsert_templates(
        [
            MessageTemplate(
                template_id="t-1",
                organization_id="org-1",
                template_type="expiry_3_days_before",
                name="Soon",
                body="Hi {name}, {plan_name} ends {expiry_date}. {organization_name}",
            )
        ]
    )

    harness.orchestrator.run(TODAY)

    sent = {address: message for address, message in harness.transport.sent}
    assert sent["+919000000002"].body == "Hi Ravi, Gold Monthly ends 2026-06-13. Pulse Fitness"


def test_phase_failure_is_isolated() -> None:
    harness = _Harness()
    _seed(harness)

    def _boom(today: date) -> int:
        raise RuntimeError("status refresh failed")

    harness.repo.refresh_package_statuses = _boom  # type: ignore[method-assign]

    report = harness.orchestrator.run(TODAY)

    assert not report.success
    assert report.phases[0].status == "error"
    assert report.phases[0].error_message == "status refresh failed"
    assert report.sent_count == 2


def test_configuration_error_is_raised_before_running() -> None:
    class _Unconfigured(StubTransport):
        def ensure_configured(self) -> None:
            raise TransportConfigurationError("WhatsApp transport is missing credentials: WHATSAPP_ACCESS_TOKEN")

    harness = _Harness(transport=_Unconfigured(enabled=True))

    with pytest.raises(TransportConfigurationError):
        harness.orchestrator.run(TODAY)
    assert harness.orchestrator.state == "idle"


def test_concurrent_run_is_rejected() -> None:
    started = threading.Event()
    release = threading.Event()

    class _BlockingTransport:
        def ensure_configured(self) -> None:
            return None

        def send(self, address: str, message: OutboundMessage) -> TransportReceipt:
            started.set()
            release.wait(timeout=5)
            return TransportReceipt(provider_message_id="blocked-1", accepted_at=NOW)

    harness = _Harness(transport=_BlockingTransport())
    _seed(harness)
    worker = threading.Thread(target=harness.orchestrator.run, args=(TODAY,))
    worker.start()
    try:
        assert started.wait(timeout=5)
        assert harness.orchestrator.state == "running"
        with pytest.raises(AutomationAlreadyRunningError):
            harness.orchestrator.run(TODAY)
    finally:
        release.set()
        worker.join(timeout=5)

    state, last_run = harness.orchestrator.status()
    assert state == "idle"
    assert last_run is not None
    assert last_run.sent_count == 2


def test_scheduled_campaign_is_sent_once_and_respects_tenant_toggle() -> None:
    harness = _Harness()
    _seed(harness)
    harness.repo.upsert_tenant_settings(TenantSettings(organization_id="org-1", organization_name="Iron Gym"))
    harness.repo.upsert_tenant_settings(
        TenantSettings(organization_id="org-2", organization_name="Closed Gym", messaging_enabled=False)
    )
    due = harness.repo.create_scheduled_campaign(
        organization_id="org-1",
        title="Diwali offer",
        message_text="Hi {name}, 20% off at {organization_name}",
        target_subject_ids=["client-1", "client-2"],
        scheduled_at=NOW - timedelta(hours=1),
    )
    disabled = harness.repo.create_scheduled_campaign(
        organization_id="org-2",
        title="Muted",
        message_text="Hello",
        target_subject_ids=["client-1"],
        scheduled_at=NOW - timedelta(hours=1),
    )
    future = harness.repo.create_scheduled_campaign(
        organization_id="org-1",
        title="Later",
        message_text="Later",
        target_subject_ids=["client-1"],
        scheduled_at=NOW + timedelta(days=1),
    )

    first = harness.orchestrator.run(TODAY)
    second = harness.orchestrator.run(TODAY)

    campaign_phase = first.phases[3]
    assert campaign_phase.sent_count == 2
    assert campaign_phase.skipped_count == 1
    assert second.phases[3].sent_count == 0
    campaigns = {value.campaign_id: value for value in harness.repo.list_scheduled_campaigns()}
    assert campaigns[due.campaign_id].is_sent
    assert not campaigns[disabled.campaign_id].is_sent
    assert not campaigns[future.campaign_id].is_sent
    bodies = [message.body for _, message in harness.transport.sent if message.body]
    assert "Hi Asha, 20% off at Iron Gym" in bodies


def test_bulk_campaign_returns_one_result_per_recipient() -> None:
    harness = _Harness(transport=StubTransport(enabled=True, failing_addresses={"+919000000002"}))
    _seed(harness)
    harness.repo.upsert_subjects([Subject(subject_id="client-3", organization_id="org-1", name="Nope")])

    outcome = harness.orchestrator.run_bulk_campaign(
        organization_id="org-1",
        recipients=[
            CampaignRecipient(subject_id="client-1"),
            CampaignRecipient(subject_id="client-2"),
            CampaignRecipient(subject_id="client-3"),
            CampaignRecipient(subject_id="missing"),
            CampaignRecipient(phone="+44 7700 900123", name="Walk-in", fields={"offer": "free trial"}),
        ],
        message_text="Hi {name}, enjoy {offer}",
    )

    assert len(outcome.results) == 5
    assert [value.outcome for value in outcome.results] == ["sent", "failed", "failed", "failed", "sent"]
    assert outcome.results[2].error_message == "Client has no phone or WhatsApp number"
    assert outcome.results[3].error_message == "Client not found"
    assert outcome.results[4].message_body == "Hi Walk-in, enjoy free trial"
    assert all(value.trigger_type == "bulk_custom" for value in outcome.results)
    assert harness.ledger.list_records() == []
    # Bulk sends bypass the ledger, so repeating the campaign sends again.
    repeat = harness.orchestrator.run_bulk_campaign(
        organization_id="org-1",
        recipients=[CampaignRecipient(subject_id="client-1")],
        message_text="Hi {name}",
    )
    assert repeat.sent_count == 1


def test_bulk_campaign_with_unknown_template_fails_before_sending() -> None:
    harness = _Harness()
    _seed(harness)

    with pytest.raises(TemplateNotFoundError):
        harness.orchestrator.run_bulk_campaign(
            organization_id="org-1",
            recipients=[CampaignRecipient(subject_id="client-1")],
            template_type="promo",
        )
    assert harness.transport.sent == []


def test_send_single_provider_template() -> None:
    harness = _Harness()
    _seed(harness)

    result = harness.orchestrator.send_single(
        subject_id="client-2",
        template_name="plan_expiry_on",
        template_params=["Ravi", "Gold", "2026-06-13", "https://renew.example"],
    )

    assert result.outcome == "sent"
    assert result.template_name == "plan_expiry_on"
    assert harness.transport.sent[0][0] == "+919000000002"


class _ClaimFailingRepository(InMemoryClientRepository):
    def __init__(self) -> None:
        super().__init__()
        self.claims_fail = True

    def claim_campaign(self, campaign_id: str, *, claimed_at: datetime) -> bool:
        if self.claims_fail:
            raise RuntimeError("campaign write failed")
        return super().claim_campaign(campaign_id, claimed_at=claimed_at)


def _campaign_only(harness: _Harness) -> None:
    harness.repo.upsert_subjects([Subject(subject_id="client-a", organization_id="org-1", name="A", phone="+15550001")])
    harness.repo.upsert_tenant_settings(TenantSettings(organization_id="org-1", organization_name="Iron Gym"))
    harness.repo.create_scheduled_campaign(
        organization_id="org-1",
        title="Hello",
        message_text="hello {name}",
        target_subject_ids=["client-a"],
        scheduled_at=NOW - timedelta(minutes=1),
    )


def test_scheduled_campaign_is_never_resent_when_the_sent_flag_cannot_be_written() -> None:
    repo = _ClaimFailingRepository()
    harness = _Harness(repo=repo)
    _campaign_only(harness)

    for _ in range(3):
        report = harness.orchestrator.run(TODAY)
        assert report.phases[3].status == "error"
        assert "campaign write failed" in (report.phases[3].error_message or "")
    assert harness.transport.sent == []

    repo.claims_fail = False
    harness.orchestrator.run(TODAY)
    harness.orchestrator.run(TODAY)
    harness.orchestrator.run(TODAY)

    assert [(address, message.body) for address, message in harness.transport.sent] == [("+15550001", "hello A")]
    assert repo.list_scheduled_campaigns()[0].is_sent


def test_campaign_already_claimed_elsewhere_is_skipped() -> None:
    class _LostClaimRepository(InMemoryClientRepository):
        def claim_campaign(self, campaign_id: str, *, claimed_at: datetime) -> bool:
            return False

    harness = _Harness(repo=_LostClaimRepository())
    _campaign_only(harness)

    report = harness.orchestrator.run(TODAY)

    assert report.phases[3].status == "completed"
    assert report.phases[3].skipped_count == 1
    assert harness.transport.sent == []


def test_run_limited_to_selected_phases_keeps_fixed_order() -> None:
    harness = _Harness()
    _seed(harness)

    expiry_only = harness.orchestrator.run(TODAY, phases=["expiry"])

    assert [value.phase for value in expiry_only.phases] == ["expiry"]
    assert expiry_only.sent_count == 1
    assert not harness.ledger.has_fired("client-1", "birthday", TODAY)

    reordered = harness.orchestrator.run(TODAY, phases=["expiry", "birthday"])

    assert [value.phase for value in reordered.phases] == ["birthday", "expiry"]
    assert reordered.sent_count == 1
    assert reordered.skipped_count == 1


def test_unknown_scheduler_timezone_is_a_configuration_error() -> None:
    harness = _Harness(settings=Settings(scheduler_timezone="Mars/Olympus_Mons"))

    with pytest.raises(ConfigurationError, match="SCHEDULER_TIMEZONE"):
        harness.orchestrator.run()
    assert harness.orchestrator.state == "idle"
    # An explicit date does not need the timezone.
    assert harness.orchestrator.run(TODAY).success
