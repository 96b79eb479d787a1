"""
Tests for the reconnection sweep: who gets notified and what the email links to.
"""

import pytest

from app.services.email_service import EmailSendError
from app.services.reconnection_service import RECONNECT_SUBJECT, ReconnectionNotifier


@pytest.fixture
def flagged_store(token_store):
    token_store.add(
        email="ada@example.com", user_id="user-1", provider="gmail", access_token="a",
        expires_at=None, needs_reconnection=True,
    )
    token_store.add(
        user_id="user-1", provider="spotify", access_token="a", expires_at=None,
        needs_reconnection=True,
    )
    token_store.add(user_id="user-1", provider="fitbit", access_token="a", expires_at=None)
    token_store.add(
        email="bob@example.com", user_id="user-2", provider="fitbit", access_token="b",
        expires_at=None,
    )
    return token_store


@pytest.fixture
def notifier(flagged_store, email_sender):
    return ReconnectionNotifier(
        store=flagged_store, sender=email_sender, web_app_url="https://app.example.com/"
    )


@pytest.mark.asyncio
async def test_pending_groups_flagged_providers_per_user(notifier):
    [notice] = await notifier.pending()

    assert notice.user_id == "user-1"
    assert notice.email == "ada@example.com"
    assert notice.providers == ["gmail", "spotify"]


@pytest.mark.asyncio
async def test_notify_all_emails_each_flagged_user_once(notifier, email_sender):
    result = await notifier.notify_all()

    assert result.as_dict() == {"total_users": 1, "notifications_sent": 1, "errors": 0}
    [sent] = email_sender.sent
    assert sent["to"] == "ada@example.com"
    assert sent["subject"] == RECONNECT_SUBJECT
    assert "https://app.example.com/api/integrations/gmail/connect?" in sent["html"]
    assert "https://app.example.com/api/integrations/spotify/connect?" in sent["html"]
    assert "fitbit" not in sent["html"]


@pytest.mark.asyncio
async def test_send_failure_is_counted(notifier, email_sender):
    email_sender.error = EmailSendError("SendGrid returned HTTP 500", status_code=500)

    result = await notifier.notify_all()

    assert result.notifications_sent == 0
    assert result.errors == 1


@pytest.mark.asyncio
async def test_nothing_flagged(token_store, email_sender):
    token_store.add(email="bob@example.com", user_id="user-2", provider="fitbit", access_token="b", expires_at=None)

    result = await ReconnectionNotifier(store=token_store, sender=email_sender).notify_all()

    assert result.total_users == 0
    assert email_sender.sent == []


def test_reconnect_url_marks_auto_reconnect():
    notifier = ReconnectionNotifier(store=object(), sender=object(), web_app_url="https://app.example.com")

    url = notifier.reconnect_url("google-calendar")

    assert url.startswith("https://app.example.com/api/integrations/google-calendar/connect?")
    assert "autoReconnect=true" in url
    assert "returnTo=%2Fintegrations" in url
