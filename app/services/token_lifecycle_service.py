"""
Token Lifecycle Manager.

Keeps each user's integration tokens usable across all providers:
- legacy tokens (no expires_at) are valid forever, no network call
- expired tokens with a refresh token are refreshed through the provider adapter
- InvalidGrant flags the row for reconnection; transient errors leave state untouched

A single (user, provider) is never refreshed twice at once. Within a process an
asyncio.Lock serializes callers; across processes a Redis lease (SET NX EX)
does, when Redis is configured. The row is re-read after both are held so a
refresh already done by the previous holder is not repeated.
"""

import asyncio
import uuid
import weakref
from collections.abc import Callable

from app.infrastructure.observability.logging import get_logger
from app.models.domain.token_domain import (
    IntegrationToken,
    RefreshOutcome,
    TokenStatus,
    now_epoch,
)
from app.services.infrastructure.redis_client import FastRedisClient, fast_redis
from app.services.providers.base import (
    InvalidGrantError,
    ProviderNotConfiguredError,
    TransientProviderError,
    UnsupportedProviderError,
)
from app.services.providers.registry import ProviderRegistry, get_provider_registry
from app.services.token_service import TokenService, token_service

logger = get_logger(__name__)

RECONNECTION_REQUIRED = "reconnection required"
NO_REFRESH_TOKEN = "no refresh token available"

LEASE_KEY_PREFIX = "token-refresh-lease"
LEASE_TTL_SECONDS = 30
LEASE_WAIT_SECONDS = 15.0
LEASE_POLL_INTERVAL = 0.25


class TokenLifecycleManager:
    def __init__(
        self,
        store: TokenService | None = None,
        providers: ProviderRegistry | None = None,
        redis: FastRedisClient | None = None,
        clock: Callable[[], int] = now_epoch,
        lease_ttl_seconds: int = LEASE_TTL_SECONDS,
        lease_wait_seconds: float = LEASE_WAIT_SECONDS,
    ):
        self.store = store or token_service
        self._providers = providers
        if redis is None and fast_redis.configured:
            redis = fast_redis
        self.redis = redis
        self.clock = clock
        self.lease_ttl_seconds = lease_ttl_seconds
        self.lease_wait_seconds = lease_wait_seconds
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def providers(self) -> ProviderRegistry:
        if self._providers is None:
            self._providers = get_provider_registry()
        return self._providers

    def _lock_for(self, user_id: str, provider: str) -> asyncio.Lock:
        key = (user_id, provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def ensure_fresh_tokens(
        self, user_id: str, refresh_within: int = 0
    ) -> list[RefreshOutcome]:
        """
        Refresh every expired token for the user, concurrently across providers.

        Args:
            user_id: owner of the tokens
            refresh_within: also refresh tokens expiring within this many seconds
                (0 means only already-expired tokens)

        Returns:
            One RefreshOutcome per token row
        """
        tokens = await self.store.list_user_tokens(user_id)
        if not tokens:
            logger.info("No integration tokens for user", user_id=user_id)
            return []

        outcomes = await asyncio.gather(
            *(self._ensure_fresh(token, refresh_within) for token in tokens)
        )

        failed = [o for o in outcomes if not o.success]
        logger.info(
            "Token freshness pass complete",
            user_id=user_id,
            providers=len(outcomes),
            refreshed=sum(1 for o in outcomes if o.refreshed),
            failed=len(failed),
            reconnection_required=[o.provider for o in failed if o.reconnection_required],
        )
        return list(outcomes)

    async def has_working_integration(self, user_id: str) -> bool:
        """Refresh what can be refreshed, then re-read and check for a usable token."""
        await self.ensure_fresh_tokens(user_id)
        return bool(await self.usable_tokens(user_id))

    async def usable_tokens(self, user_id: str) -> list[IntegrationToken]:
        """Tokens that can be used against their provider right now (fresh read)."""
        now = self.clock()
        tokens = await self.store.list_user_tokens(user_id)
        return [t for t in tokens if t.is_usable(now)]

    async def has_valid_integrations(self, user_id: str) -> bool:
        """Cheap pre-enqueue check: any token not flagged for reconnection. No network calls."""
        return await self.store.has_unflagged_token(user_id)

    async def get_token_statuses(self, user_id: str) -> list[TokenStatus]:
        now = self.clock()
        tokens = await self.store.list_user_tokens(user_id)
        return [TokenStatus.from_token(token, now) for token in tokens]

    # ------------------------------------------------------------------
    # Per token
    # ------------------------------------------------------------------

    def _needs_refresh(self, token: IntegrationToken, refresh_within: int) -> bool:
        if token.expires_at is None:
            return False
        return token.expires_at <= self.clock() + refresh_within

    async def _ensure_fresh(self, token: IntegrationToken, refresh_within: int) -> RefreshOutcome:
        if token.needs_reconnection:
            return RefreshOutcome(
                provider=token.provider,
                success=False,
                error=RECONNECTION_REQUIRED,
                reconnection_required=True,
            )

        # Legacy tokens without expiry are valid by definition
        if not self._needs_refresh(token, refresh_within):
            return RefreshOutcome(
                provider=token.provider, success=True, new_expires_at=token.expires_at
            )

        if not token.refresh_token:
            logger.warning(
                "Expired token has no refresh token", user_id=token.user_id, provider=token.provider
            )
            return RefreshOutcome(
                provider=token.provider,
                success=False,
                error=NO_REFRESH_TOKEN,
                reconnection_required=True,
            )

        return await self._refresh_serialized(token.user_id, token.provider, refresh_within)

    async def _refresh_serialized(
        self, user_id: str, provider: str, refresh_within: int
    ) -> RefreshOutcome:
        async with self._lock_for(user_id, provider):
            lease_id = None
            if self.redis is not None:
                lease_id = await self._acquire_lease(user_id, provider)
                if lease_id is None:
                    return await self._outcome_after_foreign_refresh(user_id, provider)

            try:
                current = await self.store.get_token(user_id, provider)
                if current is None:
                    return RefreshOutcome(
                        provider=provider, success=False, error="token no longer exists"
                    )
                if current.needs_reconnection:
                    return RefreshOutcome(
                        provider=provider,
                        success=False,
                        error=RECONNECTION_REQUIRED,
                        reconnection_required=True,
                    )
                if not self._needs_refresh(current, refresh_within):
                    logger.debug(
                        "Token already refreshed by another caller",
                        user_id=user_id,
                        provider=provider,
                    )
                    return RefreshOutcome(
                        provider=provider, success=True, new_expires_at=current.expires_at
                    )
                if not current.refresh_token:
                    return RefreshOutcome(
                        provider=provider,
                        success=False,
                        error=NO_REFRESH_TOKEN,
                        reconnection_required=True,
                    )
                return await self._refresh(current)
            finally:
                if lease_id is not None:
                    await self._release_lease(user_id, provider, lease_id)

    async def _refresh(self, token: IntegrationToken) -> RefreshOutcome:
        user_id, provider = token.user_id, token.provider
        logger.info("Refreshing integration token", user_id=user_id, provider=provider)

        try:
            refreshed = await self.providers.refresh(provider, token.refresh_token)
        except InvalidGrantError as e:
            await self.store.mark_needs_reconnection(user_id, provider, str(e))
            return RefreshOutcome(
                provider=provider,
                success=False,
                error=RECONNECTION_REQUIRED,
                reconnection_required=True,
            )
        except TransientProviderError as e:
            logger.warning(
                "Transient refresh failure", user_id=user_id, provider=provider, error=str(e)
            )
            return RefreshOutcome(provider=provider, success=False, error=str(e))
        except UnsupportedProviderError as e:
            logger.error("No adapter for provider", user_id=user_id, provider=provider)
            return RefreshOutcome(provider=provider, success=False, error=str(e))
        except ProviderNotConfiguredError as e:
            # Deployment problem, the stored refresh token is still good
            logger.error("Provider OAuth client not configured", user_id=user_id, provider=provider)
            return RefreshOutcome(provider=provider, success=False, error=str(e))

        await self.store.store_refreshed(user_id, provider, refreshed, scope=token.scope)
        return RefreshOutcome(
            provider=provider,
            success=True,
            refreshed=True,
            new_expires_at=refreshed.expires_at,
        )

    async def _outcome_after_foreign_refresh(self, user_id: str, provider: str) -> RefreshOutcome:
        """Another process held the lease for the whole wait; report what it left behind."""
        current = await self.store.get_token(user_id, provider)
        if current is not None and current.is_usable(self.clock()):
            return RefreshOutcome(provider=provider, success=True, new_expires_at=current.expires_at)
        return RefreshOutcome(
            provider=provider, success=False, error="refresh in progress in another worker"
        )

    # ------------------------------------------------------------------
    # Redis lease
    # ------------------------------------------------------------------

    def _lease_key(self, user_id: str, provider: str) -> str:
        return f"{LEASE_KEY_PREFIX}:{user_id}:{provider}"

    async def _acquire_lease(self, user_id: str, provider: str) -> str | None:
        key = self._lease_key(user_id, provider)
        lease_id = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lease_wait_seconds

        while True:
            if await self.redis.set_if_absent(key, lease_id, self.lease_ttl_seconds):
                return lease_id
            if loop.time() >= deadline:
                logger.warning(
                    "Timed out waiting for refresh lease", user_id=user_id, provider=provider
                )
                return None
            await asyncio.sleep(LEASE_POLL_INTERVAL)

    async def _release_lease(self, user_id: str, provider: str, lease_id: str) -> None:
        try:
            await self.redis.delete_if_value(self._lease_key(user_id, provider), lease_id)
        except Exception as e:
            # Lease expires on its own after its TTL
            logger.warning(
                "Failed to release refresh lease",
                user_id=user_id,
                provider=provider,
                error=str(e),
            )


_manager: TokenLifecycleManager | None = None


def get_token_lifecycle_manager() -> TokenLifecycleManager:
    global _manager
    if _manager is None:
        _manager = TokenLifecycleManager()
    return _manager
