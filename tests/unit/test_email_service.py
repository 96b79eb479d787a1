"""
Tests for SendGrid email delivery.
"""

import json

import httpx
import pytest

from app.services.email_service import SENDGRID_SEND_URL, EmailSendError, EmailService


def _service(handler, api_key="sg-key"):
    return EmailService(
        api_key=api_key,
        sender_email="reports@example.com",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_send_email_returns_message_id():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(202, headers={"X-Message-Id": "sg-message-1"})

    result = await _service(handler).send_email("user@example.com", "Your report", "<h1>Hi</h1>")

    assert result == {"message_id": "sg-message-1"}
    assert seen["url"] == SENDGRID_SEND_URL
    assert seen["auth"] == "Bearer sg-key"
    assert seen["payload"]["personalizations"] == [{"to": [{"email": "user@example.com"}]}]
    assert seen["payload"]["from"]["email"] == "reports@example.com"
    assert seen["payload"]["content"] == [{"type": "text/html", "value": "<h1>Hi</h1>"}]


@pytest.mark.asyncio
async def test_rejected_send_raises():
    def handler(request):
        return httpx.Response(400, json={"errors": [{"message": "bad from address"}]})

    with pytest.raises(EmailSendError) as exc_info:
        await _service(handler).send_email("user@example.com", "s", "<p></p>")

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_network_error_raises():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(EmailSendError):
        await _service(handler).send_email("user@example.com", "s", "<p></p>")


@pytest.mark.asyncio
async def test_unconfigured_service_raises(monkeypatch):
    monkeypatch.setattr("app.services.email_service.settings.SENDGRID_API_KEY", None)

    with pytest.raises(EmailSendError, match="not configured"):
        await _service(lambda request: httpx.Response(202), api_key=None).send_email(
            "user@example.com", "s", "<p></p>"
        )
