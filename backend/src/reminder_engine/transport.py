from __future__ import annotations

import base64
import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from typing import Protocol

from .config import ConfigurationError
from .store import normalize_address


@dataclass(frozen=True)
class OutboundMessage:
    """Either a freeform ``body`` or a provider-side template reference."""

    body: str | None = None
    template_name: str | None = None
    template_params: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_template(self) -> bool:
        return self.template_name is not None


@dataclass(frozen=True)
class TransportReceipt:
    provider_message_id: str
    accepted_at: datetime


class TransportError(Exception):
    """Raised by a transport when the provider rejects or cannot accept a message."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class TransportConfigurationError(ConfigurationError):
    """Raised when the transport is missing credentials required to send."""


class MessageTransport(Protocol):
    def ensure_configured(self) -> None: ...

    def send(self, address: str, message: OutboundMessage) -> TransportReceipt: ...


class StubTransport:
    """Deterministic transport for local runs and tests.

    Addresses listed in ``failing_addresses`` are rejected with ``stub_delivery_failed``.
    """

    def __init__(self, *, enabled: bool, failing_addresses: set[str] | None = None) -> None:
        self._enabled = enabled
        self._failing = {normalize_address(value) for value in (failing_addresses or set())}
        self._counter = count(1)
        self.sent: list[tuple[str, OutboundMessage]] = []

    def ensure_configured(self) -> None:
        return None

    def send(self, address: str, message: OutboundMessage) -> TransportReceipt:
        accepted_at = datetime.now(timezone.utc)
        if not self._enabled:
            raise TransportError("transport_disabled", "Live message delivery is disabled")

        normalized = normalize_address(address)
        if normalized in self._failing:
            raise TransportError("stub_delivery_failed", "Stub transport forced failure for address")

        self.sent.append((normalized, message))
        return TransportReceipt(
            provider_message_id=f"stub-{normalized.lstrip('+')}-{next(self._counter):04d}",
            accepted_at=accepted_at,
        )


class WhatsAppCloudTransport:
    """WhatsApp Cloud API transport that delivers messages via HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        graph_version: str,
        phone_number_id: str,
        access_token: str,
        language_code: str = "en_US",
        timeout_seconds: int = 30,
    ) -> None:
        self._base_url = base_url.strip().rstrip("/")
        self._graph_version = graph_version.strip().strip("/")
        self._phone_number_id = phone_number_id.strip()
        self._access_token = access_token.strip()
        self._language_code = language_code.strip() or "en_US"
        self._timeout_seconds = timeout_seconds

    def ensure_configured(self) -> None:
        missing: list[str] = []
        if not self._base_url:
            missing.append("WHATSAPP_GRAPH_BASE_URL")
        if not self._graph_version:
            missing.append("WHATSAPP_GRAPH_VERSION")
        if not self._phone_number_id:
            missing.append("PHONE_NUMBER_ID")
        if not self._access_token:
            missing.append("WHATSAPP_ACCESS_TOKEN")
        if missing:
            raise TransportConfigurationError(
                "WhatsApp transport is missing credentials: " + ", ".join(missing)
            )

    def send(self, address: str, message: OutboundMessage) -> TransportReceipt:
        recipient = normalize_address(address)
        if not any(ch.isdigit() for ch in recipient):
            raise TransportError("invalid_address", "Recipient address has no digits")

        payload: dict[str, object] = {
            "messaging_product": "whatsapp",
            "to": recipient,
        }
        if message.is_template:
            payload["type"] = "template"
            payload["template"] = {
                "name": message.template_name,
                "language": {"code": self._language_code},
                "components": [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": value} for value in message.template_params],
                    }
                ],
            }
        else:
            payload["type"] = "text"
            payload["text"] = {"body": message.body or ""}

        response_data = self._post(payload)
        error = response_data.get("error")
        if isinstance(error, dict):
            raise TransportError(
                f"provider_{error.get('code', 'error')}",
                str(error.get("message") or "Provider rejected the message"),
            )
        messages = response_data.get("messages")
        message_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")
        if not isinstance(message_id, str) or not message_id:
            raise TransportError("missing_message_id", "Provider response did not include a message id")
        return TransportReceipt(provider_message_id=message_id, accepted_at=datetime.now(timezone.utc))

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        """Send a POST request to the Cloud API messages endpoint."""
        url = f"{self._base_url}/{self._graph_version}/{self._phone_number_id}/messages"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        return _open_json(request, self._timeout_seconds)


class TwilioTransport:
    """Legacy Twilio transport; form-encoded POST to the Messages API.

    Twilio only accepts freeform bodies here, so provider template references
    are rejected with ``template_unsupported``.
    """

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        timeout_seconds: int = 30,
    ) -> None:
        self._account_sid = account_sid.strip()
        self._auth_token = auth_token.strip()
        self._from_number = normalize_address(from_number)
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = timeout_seconds

    def ensure_configured(self) -> None:
        missing: list[str] = []
        if not self._account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self._auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self._from_number:
            missing.append("TWILIO_WHATSAPP_FROM")
        if missing:
            raise TransportConfigurationError("Twilio transport is missing credentials: " + ", ".join(missing))

    def send(self, address: str, message: OutboundMessage) -> TransportReceipt:
        recipient = normalize_address(address)
        if not any(ch.isdigit() for ch in recipient):
            raise TransportError("invalid_address", "Recipient address has no digits")
        if message.is_template:
            raise TransportError(
                "template_unsupported",
                f"Twilio transport cannot send provider template {message.template_name!r}",
            )

        response_data = self._post(
            {
                "To": f"whatsapp:{recipient}",
                "From": f"whatsapp:{self._from_number}",
                "Body": message.body or "",
            }
        )
        sid = response_data.get("sid")
        if not isinstance(sid, str) or not sid:
            raise TransportError("missing_message_id", "Provider response did not include a message sid")
        return TransportReceipt(provider_message_id=sid, accepted_at=datetime.now(timezone.utc))

    def _post(self, form: dict[str, str]) -> dict[str, object]:
        url = f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        credentials = base64.b64encode(f"{self._account_sid}:{self._auth_token}".encode("utf-8")).decode("ascii")
        request = urllib.request.Request(
            url,
            data=urllib.parse.urlencode(form).encode("utf-8"),
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            method="POST",
        )
        return _open_json(request, self._timeout_seconds)


def _open_json(request: urllib.request.Request, timeout_seconds: int) -> dict[str, object]:
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
    except urllib.error.HTTPError as exc:
        raise TransportError(
            error_code=f"http_{exc.code}",
            message=f"HTTP {exc.code}: {_provider_error_detail(exc) or exc.reason}",
        ) from exc
    except urllib.error.URLError as exc:
        raise TransportError(
            error_code="connection_error",
            message=f"Connection error: {exc.reason}",
        ) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise TransportError(
            error_code="timeout",
            message=f"Request timed out: {exc}",
        ) from exc
    except ValueError as exc:
        raise TransportError(
            error_code="invalid_response",
            message=f"Provider returned a non-JSON response: {exc}",
        ) from exc


def _provider_error_detail(exc: urllib.error.HTTPError) -> str | None:
    if exc.fp is None:
        return None
    try:
        parsed = json.loads(exc.read().decode("utf-8", errors="replace"))
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    # Graph API nests the detail under "error"; Twilio puts it at the top level.
    if isinstance(parsed.get("error"), dict):
        detail = parsed["error"].get("message")
    else:
        detail = parsed.get("message")
    return str(detail) if detail else None


def mask_contact_target(contact_target: str | None) -> str:
    if contact_target is None:
        return "***"
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
