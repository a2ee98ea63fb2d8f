from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from .store import ClientRepository, MessageTemplate, Subject

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")

# Tenant-defined template types used by the automated triggers.
TEMPLATE_TYPE_BY_TRIGGER: dict[str, str] = {
    "birthday": "birthday",
    "expiry_before_3d": "expiry_3_days_before",
    "expiry_on": "expiry_on_date",
    "expiry_after_3d": "expiry_3_days_after",
}

# Pre-approved provider templates sent when a tenant has no active template of its own.
PROVIDER_TEMPLATE_BY_TRIGGER: dict[str, str] = {
    "birthday": "birthday_1",
    "expiry_before_3d": "plan_expiry_3days",
    "expiry_on": "plan_expiry_on",
    "expiry_after_3d": "plan_expiry_3after",
}


class TemplateNotFoundError(KeyError):
    """Raised when a named or typed template does not exist for a tenant."""


def _subject_values(subject: Subject | None) -> dict[str, str]:
    if subject is None:
        return {}
    values = {key: str(value) for key, value in subject.fields.items()}
    values.update(
        {
            "name": subject.name,
            "phone": subject.phone or "",
            "whatsapp_number": subject.whatsapp_number or "",
            "email": subject.email or "",
            "date_of_birth": subject.date_of_birth.isoformat() if subject.date_of_birth else "",
        }
    )
    return values


def render(body: str, subject: Subject | None, extra: Mapping[str, object] | None = None) -> str:
    """Substitute ``{key}`` tokens in ``body``.

    Lookup order is ``extra`` then the subject's own values. Unknown keys render
    as an empty string; rendering never raises.
    """
    values = _subject_values(subject)
    overrides = dict(extra or {})

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in overrides and overrides[key] is not None:
            return str(overrides[key])
        return values.get(key, "")

    return _PLACEHOLDER_RE.sub(_replace, body or "")


@dataclass(frozen=True)
class DefaultTemplate:
    template_type: str
    name: str
    body: str


DEFAULT_TEMPLATES: tuple[DefaultTemplate, ...] = (
    DefaultTemplate(
        template_type="birthday",
        name="Birthday Greeting",
        body=(
            "Happy Birthday {name}!\n\n"
            "Wishing you a fantastic day filled with joy and good health. Enjoy your special day!\n\n"
            "Best regards,\n{organization_name}"
        ),
    ),
    DefaultTemplate(
        template_type="expiry_3_days_before",
        name="Plan Expiry Reminder (3 days)",
        body=(
            "Hi {name},\n\n"
            "This is a friendly reminder that your {plan_name} plan will expire in 3 days (on {expiry_date}).\n\n"
            "Please renew your membership to continue enjoying our services.\n\n"
            "Contact us if you need any assistance."
        ),
    ),
    DefaultTemplate(
        template_type="expiry_on_date",
        name="Plan Expiry Today",
        body=(
            "Hi {name},\n\n"
            "Your {plan_name} plan expires today. Please renew your membership to avoid any interruption in services.\n\n"
            "Visit us or contact our support team for renewal assistance."
        ),
    ),
    DefaultTemplate(
        template_type="expiry_3_days_after",
        name="Plan Expired Follow-up",
        body=(
            "Hi {name},\n\n"
            "We noticed your {plan_name} plan has expired 3 days ago. We miss having you with us!\n\n"
            "Please renew your membership to regain access to all our facilities and services.\n\n"
            "We're here to help with your renewal process."
        ),
    ),
)


def seed_default_templates(repository: ClientRepository, organization_id: str) -> list[MessageTemplate]:
    """Create the default templates for a tenant that has none; existing templates are left alone."""
    existing = repository.list_templates(organization_id)
    if existing:
        return existing
    templates = [
        MessageTemplate(
            template_id=f"{organization_id}:{default.template_type}",
            organization_id=organization_id,
            template_type=default.template_type,
            name=default.name,
            body=default.body,
            is_active=True,
        )
        for default in DEFAULT_TEMPLATES
    ]
    return repository.upsert_templates(templates)


class TemplateResolver:
    def __init__(self, repository: ClientRepository) -> None:
        self._repository = repository

    def resolve(self, organization_id: str, template_type: str) -> MessageTemplate | None:
        return self._repository.get_active_template(organization_id, template_type)

    def resolve_for_trigger(self, organization_id: str, trigger_type: str) -> MessageTemplate | None:
        template_type = TEMPLATE_TYPE_BY_TRIGGER.get(trigger_type)
        if template_type is None:
            return None
        return self.resolve(organization_id, template_type)

    def require(self, organization_id: str, *, template_type: str | None = None, name: str | None = None) -> MessageTemplate:
        if name is not None:
            template = self._repository.get_template_by_name(organization_id, name)
            if template is None:
                raise TemplateNotFoundError(name)
            return template
        if template_type is not None:
            template = self.resolve(organization_id, template_type)
            if template is None:
                raise TemplateNotFoundError(template_type)
            return template
        raise ValueError("template_type or name is required")
