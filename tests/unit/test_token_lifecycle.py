"""
Tests for the token lifecycle manager.
"""

import asyncio

import pytest

from app.services.providers.base import InvalidGrantError, TransientProviderError
from app.services.providers.registry import ProviderRegistry
from app.services.providers.spotify import SpotifyAdapter
from app.services.token_lifecycle_service import (
    LEASE_KEY_PREFIX,
    NO_REFRESH_TOKEN,
    RECONNECTION_REQUIRED,
    TokenLifecycleManager,
)

NOW = 1_700_000_000
USER = "user-1"


@pytest.fixture
def build_manager(token_store, clock):
    def _build(*adapters, redis=None, lease_wait_seconds=1.0):
        return TokenLifecycleManager(
            store=token_store,
            providers=ProviderRegistry({adapter.name: adapter for adapter in adapters}),
            redis=redis,
            clock=clock,
            lease_wait_seconds=lease_wait_seconds,
        )

    return _build


@pytest.mark.asyncio
async def test_legacy_token_is_valid_without_network_call(token_store, make_adapter, build_manager):
    gmail = make_adapter("gmail")
    token_store.add(user_id=USER, provider="gmail", access_token="a", refresh_token="r", expires_at=None)

    outcomes = await build_manager(gmail).ensure_fresh_tokens(USER)

    assert len(outcomes) == 1
    assert outcomes[0].success is True
    assert outcomes[0].refreshed is False
    assert gmail.refresh_calls == []


@pytest.mark.asyncio
async def test_unexpired_token_untouched(token_store, make_adapter, build_manager):
    fitbit = make_adapter("fitbit")
    token_store.add(user_id=USER, provider="fitbit", access_token="a", refresh_token="r", expires_at=NOW + 600)

    outcomes = await build_manager(fitbit).ensure_fresh_tokens(USER)

    assert outcomes[0].success is True
    assert outcomes[0].new_expires_at == NOW + 600
    assert fitbit.refresh_calls == []


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_stored(token_store, make_adapter, build_manager):
    gmail = make_adapter("gmail")
    token_store.add(user_id=USER, provider="gmail", access_token="old", refresh_token="r1", expires_at=NOW - 10)

    outcomes = await build_manager(gmail).ensure_fresh_tokens(USER)

    assert outcomes[0].success is True
    assert outcomes[0].refreshed is True
    assert outcomes[0].new_expires_at == NOW + 3600
    stored = token_store.current(USER, "gmail")
    assert stored.access_token == "gmail-access-1"
    assert stored.refresh_token == "r1"
    assert stored.expires_at > NOW


@pytest.mark.asyncio
async def test_invalid_grant_flags_reconnection(token_store, make_adapter, build_manager):
    gmail = make_adapter(
        "gmail", refresh_error=InvalidGrantError("revoked", "gmail", error_code="invalid_grant")
    )
    token_store.add(user_id=USER, provider="gmail", access_token="old", refresh_token="r1", expires_at=NOW - 10)

    outcomes = await build_manager(gmail).ensure_fresh_tokens(USER)

    assert outcomes[0].success is False
    assert outcomes[0].error == RECONNECTION_REQUIRED
    assert outcomes[0].reconnection_required is True
    assert token_store.current(USER, "gmail").needs_reconnection is True


@pytest.mark.asyncio
async def test_transient_failure_leaves_token_unchanged(token_store, make_adapter, build_manager):
    spotify = make_adapter(
        "spotify", refresh_error=TransientProviderError("HTTP 503", "spotify", status_code=503)
    )
    before = token_store.add(
        user_id=USER, provider="spotify", access_token="old", refresh_token="r1", expires_at=NOW - 10
    )

    outcomes = await build_manager(spotify).ensure_fresh_tokens(USER)

    assert outcomes[0].success is False
    assert outcomes[0].reconnection_required is False
    assert token_store.current(USER, "spotify") == before


@pytest.mark.asyncio
async def test_missing_client_credentials_do_not_flag_token(token_store, build_manager):
    before = token_store.add(
        user_id=USER, provider="spotify", access_token="old", refresh_token="r1", expires_at=NOW - 10
    )

    outcomes = await build_manager(SpotifyAdapter(None, None)).ensure_fresh_tokens(USER)

    assert outcomes[0].success is False
    assert outcomes[0].reconnection_required is False
    assert "not configured" in outcomes[0].error
    assert token_store.current(USER, "spotify") == before
    assert token_store.current(USER, "spotify").needs_reconnection is False


@pytest.mark.asyncio
async def test_expired_without_refresh_token(token_store, make_adapter, build_manager):
    fitbit = make_adapter("fitbit")
    token_store.add(user_id=USER, provider="fitbit", access_token="old", refresh_token=None, expires_at=NOW - 10)

    outcomes = await build_manager(fitbit).ensure_fresh_tokens(USER)

    assert outcomes[0].success is False
    assert outcomes[0].error == NO_REFRESH_TOKEN
    assert outcomes[0].reconnection_required is True
    assert fitbit.refresh_calls == []
    assert token_store.current(USER, "fitbit").needs_reconnection is False


@pytest.mark.asyncio
async def test_flagged_token_is_never_refreshed(token_store, make_adapter, build_manager):
    gmail = make_adapter("gmail")
    token_store.add(
        user_id=USER,
        provider="gmail",
        access_token="old",
        refresh_token="r1",
        expires_at=NOW - 10,
        needs_reconnection=True,
    )

    outcomes = await build_manager(gmail).ensure_fresh_tokens(USER)

    assert outcomes[0].error == RECONNECTION_REQUIRED
    assert gmail.refresh_calls == []


@pytest.mark.asyncio
async def test_concurrent_passes_refresh_once(token_store, make_adapter, build_manager):
    fitbit = make_adapter("fitbit", refresh_delay=0.05)
    token_store.add(user_id=USER, provider="fitbit", access_token="old", refresh_token="r1", expires_at=NOW - 10)
    manager = build_manager(fitbit)

    results = await asyncio.gather(*(manager.ensure_fresh_tokens(USER) for _ in range(4)))

    assert len(fitbit.refresh_calls) == 1
    assert all(outcomes[0].success for outcomes in results)
    assert sum(outcomes[0].refreshed for outcomes in results) == 1


@pytest.mark.asyncio
async def test_redis_lease_released_after_refresh(token_store, make_adapter, build_manager, fake_redis):
    gmail = make_adapter("gmail")
    token_store.add(user_id=USER, provider="gmail", access_token="old", refresh_token="r1", expires_at=NOW - 10)

    outcomes = await build_manager(gmail, redis=fake_redis).ensure_fresh_tokens(USER)

    assert outcomes[0].refreshed is True
    assert not any(key.startswith(LEASE_KEY_PREFIX) for key in fake_redis.store)


@pytest.mark.asyncio
async def test_lease_held_elsewhere_skips_refresh(token_store, make_adapter, build_manager, fake_redis):
    gmail = make_adapter("gmail")
    token_store.add(user_id=USER, provider="gmail", access_token="old", refresh_token="r1", expires_at=NOW - 10)
    fake_redis.store[f"{LEASE_KEY_PREFIX}:{USER}:gmail"] = "other-worker"

    outcomes = await build_manager(gmail, redis=fake_redis, lease_wait_seconds=0.1).ensure_fresh_tokens(USER)

    assert outcomes[0].success is False
    assert gmail.refresh_calls == []
    # Foreign lease is not ours to release
    assert fake_redis.store[f"{LEASE_KEY_PREFIX}:{USER}:gmail"] == "other-worker"


@pytest.mark.asyncio
async def test_partial_failure_keeps_working_integration(token_store, make_adapter, build_manager):
    gmail = make_adapter(
        "gmail", refresh_error=InvalidGrantError("revoked", "gmail", error_code="invalid_grant")
    )
    fitbit = make_adapter("fitbit")
    token_store.add(user_id=USER, provider="gmail", access_token="g", refresh_token="gr", expires_at=NOW - 10)
    token_store.add(user_id=USER, provider="fitbit", access_token="f", refresh_token="fr", expires_at=NOW - 10)
    manager = build_manager(gmail, fitbit)

    assert await manager.has_working_integration(USER) is True

    usable = await manager.usable_tokens(USER)
    assert [token.provider for token in usable] == ["fitbit"]


@pytest.mark.asyncio
async def test_refresh_within_refreshes_ahead_of_expiry(token_store, make_adapter, build_manager):
    spotify = make_adapter("spotify")
    token_store.add(user_id=USER, provider="spotify", access_token="a", refresh_token="r", expires_at=NOW + 600)
    manager = build_manager(spotify)

    outcomes = await manager.ensure_fresh_tokens(USER)
    assert outcomes[0].refreshed is False

    outcomes = await manager.ensure_fresh_tokens(USER, refresh_within=900)
    assert outcomes[0].refreshed is True
    assert spotify.refresh_calls == ["r"]


@pytest.mark.asyncio
async def test_has_valid_integrations(token_store, make_adapter, build_manager):
    manager = build_manager(make_adapter("gmail"))
    token_store.add(
        user_id=USER, provider="gmail", access_token="a", expires_at=NOW - 10, needs_reconnection=True
    )

    assert await manager.has_valid_integrations(USER) is False
    assert await manager.has_valid_integrations("nobody") is False

    token_store.add(user_id=USER, provider="fitbit", access_token="b", expires_at=None)
    assert await manager.has_valid_integrations(USER) is True


@pytest.mark.asyncio
async def test_user_without_tokens(build_manager, make_adapter):
    manager = build_manager(make_adapter("gmail"))

    assert await manager.ensure_fresh_tokens("nobody") == []
    assert await manager.has_working_integration("nobody") is False


@pytest.mark.asyncio
async def test_token_statuses(token_store, make_adapter, build_manager):
    token_store.add(user_id=USER, provider="fitbit", access_token="a", refresh_token="r", expires_at=NOW + 2 * 86400)
    token_store.add(user_id=USER, provider="gmail", access_token="b", refresh_token=None, expires_at=NOW - 10)
    token_store.add(user_id=USER, provider="spotify", access_token="c", expires_at=None)

    statuses = {s.provider: s for s in await build_manager(make_adapter("fitbit")).get_token_statuses(USER)}

    assert statuses["fitbit"].is_expiring_soon is True
    assert statuses["fitbit"].days_until_expiry == 2
    assert statuses["fitbit"].can_auto_refresh is True
    assert statuses["gmail"].is_expired is True
    assert statuses["gmail"].can_auto_refresh is False
    assert statuses["spotify"].is_expired is False
    assert statuses["spotify"].expires_at is None
