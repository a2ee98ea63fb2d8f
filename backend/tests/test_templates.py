from __future__ import annotations

from datetime import date

import pytest

from reminder_engine.store import InMemoryClientRepository, MessageTemplate, Subject
from reminder_engine.templates import (
    DEFAULT_TEMPLATES,
    TemplateNotFoundError,
    TemplateResolver,
    render,
    seed_default_templates,
)


def _subject() -> Subject:
    return Subject(
        subject_id="client-1",
        organization_id="org-1",
        name="Asha",
        phone="+919876543210",
        date_of_birth=date(1992, 4, 2),
        fields={"batch": "Morning"},
    )


def test_render_prefers_extra_then_subject_fields() -> None:
    body = "Hi {name}, your {plan_name} ({batch}) ends {expiry_date}. Call {phone}."

    rendered = render(body, _subject(), {"plan_name": "Gold", "expiry_date": "2026-06-10", "name": "Asha K"})

    assert rendered == "Hi Asha K, your Gold (Morning) ends 2026-06-10. Call +919876543210."


def test_render_unknown_placeholders_become_empty() -> None:
    assert render("Hello {name}{missing}!", _subject()) == "Hello Asha!"


def test_render_is_lenient_with_malformed_input() -> None:
    assert render("{ name } {name", _subject()) == "{ name } {name"
    assert render("", _subject()) == ""
    assert render("Hi {name}", None, {"name": None}) == "Hi "


def test_seed_default_templates_creates_four_types_once() -> None:
    repo = InMemoryClientRepository()

    seeded = seed_default_templates(repo, "org-1")
    again = seed_default_templates(repo, "org-1")

    assert len(seeded) == len(DEFAULT_TEMPLATES) == 4
    assert {value.template_type for value in seeded} == {
        "birthday",
        "expiry_3_days_before",
        "expiry_on_date",
        "expiry_3_days_after",
    }
    assert len(again) == 4


def test_resolver_maps_trigger_to_active_tenant_template() -> None:
    repo = InMemoryClientRepository()
    repo.upsert_templates(
        [
            MessageTemplate(
                template_id="t-1",
                organization_id="org-1",
                template_type="expiry_on_date",
                name="Today",
                body="Expires today",
                is_active=False,
            ),
            MessageTemplate(
                template_id="t-2",
                organization_id="org-1",
                template_type="birthday",
                name="Wish",
                body="Happy birthday {name}",
            ),
        ]
    )
    resolver = TemplateResolver(repo)

    assert resolver.resolve_for_trigger("org-1", "birthday").template_id == "t-2"  # type: ignore[union-attr]
    assert resolver.resolve_for_trigger("org-1", "expiry_on") is None
    assert resolver.resolve_for_trigger("org-2", "birthday") is None
    with pytest.raises(TemplateNotFoundError):
        resolver.require("org-1", name="Today")
