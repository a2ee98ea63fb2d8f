from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from fastapi.testclient import TestClient

from reminder_engine import api as api_module
from reminder_engine.config import Settings
from reminder_engine.main import create_app
from reminder_engine.orchestrator import AutomationAlreadyRunningError, AutomationOrchestrator
from reminder_engine.transport import StubTransport, TransportConfigurationError

NOW = datetime(2026, 6, 10, 9, 0, tzinfo=timezone.utc)
BASE = "/api/v1/automation"


def _install_orchestrator(transport=None) -> StubTransport:
    stub = transport or StubTransport(enabled=True, failing_addresses={"+919000000009"})
    api_module.orchestrator = AutomationOrchestrator(
        repository=api_module.client_repo,
        ledger=api_module.trigger_ledger,
        result_log=api_module.result_log,
        transport=stub,
        settings=Settings(default_organization_name="Iron Gym"),
        clock=lambda: NOW,
        sleep=lambda _: None,
    )
    return stub


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    api_module.reset_runtime_state_for_tests()
    monkeypatch.setattr(api_module, "_settings", Settings(automation_allow_today_override=True))
    monkeypatch.setattr(api_module, "orchestrator", api_module.orchestrator)
    _install_orchestrator()
    return TestClient(create_app())


def _seed(client: TestClient) -> None:
    tenant = client.post(
        f"{BASE}/tenants/upsert",
        json={"organization_id": "org-1", "organization_name": "Iron Gym", "renewal_link": "https://renew.example"},
    )
    assert tenant.status_code == 200
    subjects = client.post(
        f"{BASE}/subjects/upsert",
        json={
            "subjects": [
                {
                    "subject_id": "client-1",
                    "organization_id": "org-1",
                    "name": "Asha",
                    "whatsapp_number": "+91 90000 00001",
                    "date_of_birth": "1995-06-10",
                },
                {"subject_id": "client-2", "organization_id": "org-1", "name": "Ravi", "phone": "+91 90000 00002"},
                {"subject_id": "client-9", "organization_id": "org-1", "name": "Bounce", "phone": "+91 90000 00009"},
            ]
        },
    )
    assert subjects.status_code == 200
    assert subjects.json()["processed_count"] == 3
    packages = client.post(
        f"{BASE}/packages/upsert",
        json={
            "assignments": [
                {
                    "assignment_id": "pkg-1",
                    "subject_id": "client-2",
                    "organization_id": "org-1",
                    "package_id": "gold",
                    "package_name": "Gold Monthly",
                    "start_date": "2026-05-13",
                    "end_date": "2026-06-13",
                }
            ]
        },
    )
    assert packages.status_code == 200
    assert packages.json()["assignments"][0]["status"] == "expiring_soon"


def test_manual_run_is_safe_to_repeat(client: TestClient) -> None:
    _seed(client)
    seeded = client.post(f"{BASE}/templates/seed-defaults", json={"organization_id": "org-1"})
    assert seeded.status_code == 200
    assert len(seeded.json()["templates"]) == 4

    first = client.post(f"{BASE}/run", json={"today": "2026-06-10"})
    assert first.status_code == 200
    first_data = first.json()
    assert first_data["success"] is True
    assert first_data["run_id"].startswith("run_")
    assert first_data["sent_count"] == 2
    assert first_data["today"] == "2026-06-10"

    second = client.post(f"{BASE}/run", json={"today": "2026-06-10"})
    assert second.status_code == 200
    assert second.json()["sent_count"] == 0
    assert second.json()["skipped_count"] == 2

    status_resp = client.get(f"{BASE}/status")
    assert status_resp.status_code == 200
    assert status_resp.json()["state"] == "idle"
    assert status_resp.json()["last_run"]["run_id"] == second.json()["run_id"]

    results = client.get(f"{BASE}/dispatch-results", params={"run_id": first_data["run_id"]})
    items = results.json()["items"]
    assert {item["trigger_type"] for item in items} == {"birthday", "expiry_before_3d"}
    assert all(item["contact_target_masked"].startswith("***") for item in items)


def test_today_override_requires_flag(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(api_module, "_settings", Settings(automation_allow_today_override=False))

    response = client.post(f"{BASE}/run", json={"today": "2026-06-10"})

    assert response.status_code == 400


def test_run_rejected_while_running(client: TestClient) -> None:
    class _BusyOrchestrator:
        def run(self, today: date | None = None, *, trigger: str = "manual", phases=None):
            raise AutomationAlreadyRunningError("automation run already in progress")

    api_module.orchestrator = _BusyOrchestrator()  # type: ignore[assignment]

    response = client.post(f"{BASE}/run")

    assert response.status_code == 409


def test_run_with_missing_transport_credentials_returns_503(client: TestClient) -> None:
    class _Unconfigured(StubTransport):
        def ensure_configured(self) -> None:
            raise TransportConfigurationError("WhatsApp transport is missing credentials: WHATSAPP_ACCESS_TOKEN")

    _install_orchestrator(_Unconfigured(enabled=True))

    response = client.post(f"{BASE}/run")

    assert response.status_code == 503
    assert "WHATSAPP_ACCESS_TOKEN" in response.json()["detail"]


def test_bulk_campaign_reports_each_recipient(client: TestClient) -> None:
    _seed(client)

    response = client.post(
        f"{BASE}/campaigns/bulk",
        json={
            "organization_id": "org-1",
            "message_text": "Hi {name}, new batch at {organization_name}!",
            "recipients": [
                {"subject_id": "client-1"},
                {"subject_id": "client-9"},
                {"subject_id": "unknown"},
                {"phone": "+44 7700 900123", "name": "Walk-in"},
            ],
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["campaign_id"].startswith("bulk_")
    assert data["recipient_count"] == 4
    assert data["sent_count"] == 2
    assert data["failed_count"] == 2
    outcomes = [(item["subject_id"], item["outcome"]) for item in data["results"]]
    assert outcomes == [("client-1", "sent"), ("client-9", "failed"), ("unknown", "failed"), (None, "sent")]
    assert data["results"][2]["error_message"] == "Client not found"
    assert data["results"][0]["contact_target_masked"] == "***0001"

    failed = client.get(f"{BASE}/dispatch-results", params={"outcome": "failed"})
    assert len(failed.json()["items"]) == 2


def test_bulk_campaign_validation_and_unknown_template(client: TestClient) -> None:
    both = client.post(
        f"{BASE}/campaigns/bulk",
        json={
            "organization_id": "org-1",
            "message_text": "Hi",
            "template_type": "birthday",
            "recipients": [{"subject_id": "client-1"}],
        },
    )
    assert both.status_code == 422

    missing = client.post(
        f"{BASE}/campaigns/bulk",
        json={"organization_id": "org-1", "template_name": "Promo", "recipients": [{"subject_id": "client-1"}]},
    )
    assert missing.status_code == 404


def test_scheduled_campaign_create_list_and_send(client: TestClient) -> None:
    _seed(client)

    created = client.post(
        f"{BASE}/campaigns/scheduled",
        json={
            "organization_id": "org-1",
            "title": "Monsoon offer",
            "message_text": "Hi {name}, monsoon offer inside",
            "target_subject_ids": ["client-1", "client-1", "client-2"],
            "scheduled_at": "2026-06-10T08:00:00Z",
        },
    )
    assert created.status_code == 201
    assert created.json()["target_subject_ids"] == ["client-1", "client-2"]
    assert created.json()["is_sent"] is False

    run = client.post(f"{BASE}/run", json={"today": "2026-06-10"})
    assert run.status_code == 200
    campaign_phase = run.json()["phases"][3]
    assert campaign_phase["phase"] == "scheduled_campaigns"
    assert campaign_phase["sent_count"] == 2

    listed = client.get(f"{BASE}/campaigns/scheduled", params={"organization_id": "org-1"})
    assert listed.json()["items"][0]["is_sent"] is True


def test_single_send(client: TestClient) -> None:
    _seed(client)

    sent = client.post(f"{BASE}/messages/send", json={"subject_id": "client-2", "message_text": "Hello {name}"})
    assert sent.status_code == 200
    assert sent.json()["outcome"] == "sent"
    assert sent.json()["trigger_type"] == "bulk_custom"

    unknown = client.post(f"{BASE}/messages/send", json={"subject_id": "nobody", "message_text": "Hello"})
    assert unknown.status_code == 404

    invalid = client.post(f"{BASE}/messages/send", json={"phone": "+15550100", "message_text": "a", "template_name": "b"})
    assert invalid.status_code == 422


def test_notification_feed(client: TestClient) -> None:
    _seed(client)
    client.post(f"{BASE}/messages/send", json={"subject_id": "client-9", "message_text": "Hello"})

    response = client.get(f"{BASE}/notifications", params={"organization_id": "org-1"})

    assert response.status_code == 200
    kinds = sorted(item["kind"] for item in response.json()["items"])
    assert kinds == ["error", "info", "warning"]
    messages = {item["kind"]: item["message"] for item in response.json()["items"]}
    assert messages["info"] == "Asha's birthday is today"
    assert messages["warning"] == "Ravi's Gold Monthly package expires in 3 days"


def test_package_upsert_rejects_inverted_period(client: TestClient) -> None:
    response = client.post(
        f"{BASE}/packages/upsert",
        json={
            "assignments": [
                {
                    "assignment_id": "pkg-x",
                    "subject_id": "client-1",
                    "organization_id": "org-1",
                    "package_id": "gold",
                    "package_name": "Gold",
                    "start_date": "2026-06-10",
                    "end_date": "2026-06-01",
                }
            ]
        },
    )

    assert response.status_code == 422


def test_run_limited_to_requested_phases(client: TestClient) -> None:
    _seed(client)

    response = client.post(f"{BASE}/run", json={"today": "2026-06-10", "phases": ["expiry"]})

    assert response.status_code == 200
    data = response.json()
    assert [phase["phase"] for phase in data["phases"]] == ["expiry"]
    assert data["sent_count"] == 1

    combined = client.post(f"{BASE}/run", json={"today": "2026-06-10", "phases": ["birthday", "expiry"]})
    assert [phase["phase"] for phase in combined.json()["phases"]] == ["birthday", "expiry"]
    assert combined.json()["sent_count"] == 1
    assert combined.json()["skipped_count"] == 1

    unknown = client.post(f"{BASE}/run", json={"phases": ["marketing"]})
    assert unknown.status_code == 422
