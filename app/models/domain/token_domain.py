# models/domain/token_domain.py
"""
Integration token domain models.

Expiry is kept as epoch seconds. A token without expires_at is a legacy
non-expiring token and is always treated as valid.
"""

import time
from enum import Enum

from pydantic import BaseModel, Field

EXPIRING_SOON_SECONDS = 7 * 24 * 3600


class Provider(str, Enum):
    FITBIT = "fitbit"
    GMAIL = "gmail"
    GOOGLE_CALENDAR = "google-calendar"
    GOOGLE_TASKS = "google-tasks"
    SPOTIFY = "spotify"


def now_epoch() -> int:
    return int(time.time())


class IntegrationToken(BaseModel):
    """One decrypted OAuth credential, unique per (user_id, provider)."""

    user_id: str
    provider: str
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None
    scope: str = ""
    needs_reconnection: bool = False

    def is_expired(self, now: int | None = None) -> bool:
        """Legacy tokens never expire."""
        if self.expires_at is None:
            return False
        current = now if now is not None else now_epoch()
        return self.expires_at <= current

    def is_usable(self, now: int | None = None) -> bool:
        """Safe to call the provider API with this access token right now."""
        return bool(self.access_token) and not self.needs_reconnection and not self.is_expired(now)


class RefreshedToken(BaseModel):
    """Result of a successful provider refresh call."""

    access_token: str
    refresh_token: str | None = None
    expires_at: int
    scope: str | None = None


class RefreshOutcome(BaseModel):
    """Per-provider result of a refresh pass. Failures carry the classified reason."""

    provider: str
    success: bool
    refreshed: bool = False
    new_expires_at: int | None = None
    error: str | None = None
    reconnection_required: bool = False


class TokenStatus(BaseModel):
    """Operator view of one token's expiry state."""

    provider: str
    is_expired: bool
    is_expiring_soon: bool
    days_until_expiry: int | None
    expires_at: int | None
    has_refresh_token: bool
    can_auto_refresh: bool
    needs_reconnection: bool

    @classmethod
    def from_token(cls, token: IntegrationToken, now: int | None = None) -> "TokenStatus":
        current = now if now is not None else now_epoch()
        expires_at = token.expires_at
        is_expired = token.is_expired(current)
        is_expiring_soon = (
            expires_at is not None and current < expires_at < current + EXPIRING_SOON_SECONDS
        )
        days = -(-(expires_at - current) // 86400) if expires_at is not None else None
        has_refresh = bool(token.refresh_token)
        return cls(
            provider=token.provider,
            is_expired=is_expired,
            is_expiring_soon=is_expiring_soon,
            days_until_expiry=days,
            expires_at=expires_at,
            has_refresh_token=has_refresh,
            can_auto_refresh=(
                has_refresh and not token.needs_reconnection and (is_expired or is_expiring_soon)
            ),
            needs_reconnection=token.needs_reconnection,
        )


class ReconnectionNotice(BaseModel):
    """A user with one or more integrations flagged for reconnection."""

    user_id: str
    email: str
    providers: list[str]


class ProviderData(BaseModel):
    """Raw data pulled from one provider for the report window."""

    provider: str
    data: dict = Field(default_factory=dict)
