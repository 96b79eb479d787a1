"""
Integration token and email log routes for the authenticated user.
"""

from datetime import date

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.models.domain.report_domain import EmailLogEntry, EmailStatus, ReportType
from app.routes import email_logs, integrations
from app.services.providers.base import InvalidGrantError
from app.services.providers.registry import ProviderRegistry
from app.services.reconnection_service import ReconnectionNotifier, get_reconnection_notifier
from app.services.token_lifecycle_service import (
    TokenLifecycleManager,
    get_token_lifecycle_manager,
)

NOW = 1_700_000_000
USER = "user-123"


@pytest.fixture
def manager(token_store, make_adapter, clock):
    registry = ProviderRegistry(
        {
            "fitbit": make_adapter("fitbit"),
            "gmail": make_adapter(
                "gmail", refresh_error=InvalidGrantError("revoked", "gmail", error_code="invalid_grant")
            ),
        }
    )
    token_store.add(user_id=USER, provider="fitbit", access_token="f", refresh_token="fr", expires_at=NOW - 10)
    token_store.add(
        email="user@example.com", user_id=USER, provider="gmail", access_token="g", refresh_token="gr",
        expires_at=NOW - 10,
    )
    # Another user's token must never show up
    token_store.add(user_id="someone-else", provider="fitbit", access_token="x", expires_at=None)
    return TokenLifecycleManager(store=token_store, providers=registry, clock=clock)


@pytest.fixture
def app(manager, token_store, email_sender, email_log_memory, apply_auth_override):
    app = FastAPI()
    app.include_router(integrations.router)
    app.include_router(email_logs.router)
    app.dependency_overrides[get_token_lifecycle_manager] = lambda: manager
    app.dependency_overrides[email_logs.get_email_log_service] = lambda: email_log_memory
    app.dependency_overrides[get_reconnection_notifier] = lambda: ReconnectionNotifier(
        store=token_store, sender=email_sender, web_app_url="https://app.example.com"
    )
    apply_auth_override(app)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def test_refresh_tokens(client, token_store):
    response = client.post("/integrations/refresh-tokens")

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == USER
    assert data["refreshed"] == 1
    assert data["failed"] == 1
    outcomes = {o["provider"]: o for o in data["outcomes"]}
    assert outcomes["gmail"]["reconnection_required"] is True
    assert outcomes["fitbit"]["new_expires_at"] == NOW + 3600
    assert token_store.current(USER, "gmail").needs_reconnection is True


def test_token_status_lists_attention_needed(client):
    client.post("/integrations/refresh-tokens")

    response = client.get("/integrations/token-status")

    assert response.status_code == 200
    data = response.json()
    assert sorted(t["provider"] for t in data["tokens"]) == ["fitbit", "gmail"]
    assert data["needs_attention"] == ["gmail"]


def test_email_logs_and_stats(client, email_log_memory):
    for i, status in enumerate([EmailStatus.SENT, EmailStatus.FAILED]):
        email_log_memory.entries.append(
            EmailLogEntry(
                id=f"log-{i}",
                user_id=USER,
                recipient_email="user@example.com",
                report_type=ReportType.DAILY,
                report_date=date(2024, 3, 1 + i),
                status=status,
            )
        )

    logs = client.get("/email/logs", params={"limit": 1})
    stats = client.get("/email/stats")

    assert logs.status_code == 200
    assert logs.json()["count"] == 1
    assert logs.json()["limit"] == 1
    assert stats.json()["sent"] == 1
    assert stats.json()["failed"] == 1
    assert stats.json()["success_rate"] == 50.0


def test_email_logs_limit_is_bounded(client):
    response = client.get("/email/logs", params={"limit": 1000})
    assert response.status_code == 422


def test_routes_require_user_auth(manager, email_log_memory):
    app = FastAPI()
    app.include_router(integrations.router)
    app.include_router(email_logs.router)
    app.dependency_overrides[get_token_lifecycle_manager] = lambda: manager
    unauthenticated = TestClient(app)

    assert unauthenticated.post("/integrations/refresh-tokens").status_code in (401, 403)
    assert unauthenticated.get("/email/stats").status_code in (401, 403)


def test_reconnection_sweep_notifies_flagged_users(client, cron_headers, email_sender):
    # The gmail refresh token is rejected, which flags it
    client.post("/integrations/refresh-tokens")

    listing = client.get("/integrations/reconnections", headers=cron_headers)
    sweep = client.post("/integrations/reconnections/notify", headers=cron_headers)

    assert listing.status_code == 200
    assert listing.json() == {
        "total_users": 1,
        "users": [{"user_id": USER, "email": "user@example.com", "providers": ["gmail"]}],
    }
    assert sweep.status_code == 200
    assert sweep.json() == {"total_users": 1, "notifications_sent": 1, "errors": 0}
    assert [sent["to"] for sent in email_sender.sent] == ["user@example.com"]


def test_reconnection_sweep_requires_cron_secret(client, email_sender):
    # The user bearer override does not stand in for the cron secret
    response = client.post(
        "/integrations/reconnections/notify", headers={"Authorization": "Bearer user-token"}
    )

    assert response.status_code == 401
    assert email_sender.sent == []
