from __future__ import annotations

import io
import json
import socket
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from reminder_engine.transport import (
    OutboundMessage,
    TransportConfigurationError,
    TransportError,
    WhatsAppCloudTransport,
    mask_contact_target,
)


def _make_transport(*, access_token: str = "test-token-abc123", phone_number_id: str = "1098765") -> WhatsAppCloudTransport:
    return WhatsAppCloudTransport(
        base_url="https://graph.example.test/",
        graph_version="v18.0",
        phone_number_id=phone_number_id,
        access_token=access_token,
        language_code="en_US",
    )


def _mock_response(body: dict[str, object], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("reminder_engine.transport.urllib.request.urlopen")
def test_text_message_payload(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": [{"id": "wamid.123"}]})

    receipt = _make_transport().send("+91 98765-43210", OutboundMessage(body="Hello Asha"))

    assert receipt.provider_message_id == "wamid.123"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://graph.example.test/v18.0/1098765/messages"
    assert request_arg.get_header("Authorization") == "Bearer test-token-abc123"
    assert request_arg.get_header("Content-type") == "application/json"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body == {
        "messaging_product": "whatsapp",
        "to": "+919876543210",
        "type": "text",
        "text": {"body": "Hello Asha"},
    }


@patch("reminder_engine.transport.urllib.request.urlopen")
def test_template_message_payload(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": [{"id": "wamid.456"}]})
    message = OutboundMessage(template_name="plan_expiry_on", template_params=("Ravi", "Gold", "2026-06-13", "https://r"))

    _make_transport().send("+919000000002", message)

    sent_body = json.loads(mock_urlopen.call_args[0][0].data.decode("utf-8"))
    assert sent_body["type"] == "template"
    assert sent_body["template"]["name"] == "plan_expiry_on"
    assert sent_body["template"]["language"] == {"code": "en_US"}
    parameters = sent_body["template"]["components"][0]["parameters"]
    assert [value["text"] for value in parameters] == ["Ravi", "Gold", "2026-06-13", "https://r"]


@patch("reminder_engine.transport.urllib.request.urlopen")
def test_http_error_carries_provider_detail(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://graph.example.test/v18.0/1098765/messages",
        code=400,
        msg="Bad Request",
        hdrs={},  # type: ignore[arg-type]
        fp=io.BytesIO(json.dumps({"error": {"message": "Template name does not exist"}}).encode("utf-8")),
    )

    with pytest.raises(TransportError) as excinfo:
        _make_transport().send("+919000000002", OutboundMessage(template_name="nope"))

    assert excinfo.value.error_code == "http_400"
    assert "Template name does not exist" in excinfo.value.message


@patch("reminder_engine.transport.urllib.request.urlopen")
def test_http_500_without_body(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://graph.example.test/v18.0/1098765/messages",
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    with pytest.raises(TransportError) as excinfo:
        _make_transport().send("+919000000002", OutboundMessage(body="Hi"))

    assert excinfo.value.error_code == "http_500"
    assert "500" in excinfo.value.message


@patch("reminder_engine.transport.urllib.request.urlopen")
def test_connection_error_and_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")
    with pytest.raises(TransportError) as excinfo:
        _make_transport().send("+919000000002", OutboundMessage(body="Hi"))
    assert excinfo.value.error_code == "connection_error"

    mock_urlopen.side_effect = socket.timeout("timed out")
    with pytest.raises(TransportError) as excinfo:
        _make_transport().send("+919000000002", OutboundMessage(body="Hi"))
    assert excinfo.value.error_code == "timeout"
    assert "timed out" in excinfo.value.message


@patch("reminder_engine.transport.urllib.request.urlopen")
def test_response_without_message_id_is_an_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": []})

    with pytest.raises(TransportError) as excinfo:
        _make_transport().send("+919000000002", OutboundMessage(body="Hi"))

    assert excinfo.value.error_code == "missing_message_id"


@patch("reminder_engine.transport.urllib.request.urlopen")
def test_address_without_digits_is_rejected_before_request(mock_urlopen: MagicMock) -> None:
    with pytest.raises(TransportError) as excinfo:
        _make_transport().send("not-a-number", OutboundMessage(body="Hi"))

    assert excinfo.value.error_code == "invalid_address"
    mock_urlopen.assert_not_called()


def test_ensure_configured_lists_missing_credentials() -> None:
    with pytest.raises(TransportConfigurationError, match="PHONE_NUMBER_ID, WHATSAPP_ACCESS_TOKEN"):
        _make_transport(access_token="", phone_number_id="").ensure_configured()

    _make_transport().ensure_configured()


def test_mask_contact_target() -> None:
    assert mask_contact_target("+919876543210") == "***3210"
    assert mask_contact_target("asha@example.com") == "a***@example.com"
    assert mask_contact_target(None) == "***"
