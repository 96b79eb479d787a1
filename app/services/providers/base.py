"""
Shared provider adapter machinery.

Every provider implements the same two operations behind ProviderAdapter:
refresh a token, and fetch the data a report needs for a date window.
Provider error responses are classified here, once, into
TransientProviderError / InvalidGrantError / ProviderAccessDeniedError.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import httpx

from app.infrastructure.observability.logging import get_logger
from app.models.domain.token_domain import RefreshedToken, now_epoch

logger = get_logger(__name__)

INVALID_GRANT_CODES = {"invalid_grant", "unauthorized_client", "invalid_client"}
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_EXPIRES_IN = 3600


class ProviderError(Exception):
    """Base for classified provider failures."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.error_code = error_code


class TransientProviderError(ProviderError):
    """Network failure, timeout, 429 or 5xx. Retry later with the same refresh token."""


class InvalidGrantError(ProviderError):
    """The refresh token itself is dead; the user has to re-authorize."""


class ProviderAccessDeniedError(ProviderError):
    """The provider rejected a data request (401/403) with an otherwise valid token."""


class UnsupportedProviderError(ProviderError):
    """No adapter is registered for the provider name."""


class ProviderNotConfiguredError(ProviderError):
    """The OAuth client id or secret for the provider is missing from settings."""


def extract_error_code(payload: Any) -> str | None:
    """
    Pull the OAuth error code out of a token endpoint error body.

    Understands RFC 6749 bodies ({"error": "invalid_grant"}) and Fitbit's
    {"errors": [{"errorType": "invalid_grant"}]}.
    """
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        # Spotify API errors: {"error": {"status": 400, "message": "..."}}
        message = error.get("message")
        return message if isinstance(message, str) else None
    errors = payload.get("errors")
    if isinstance(errors, list):
        for item in errors:
            if isinstance(item, dict) and isinstance(item.get("errorType"), str):
                return item["errorType"]
    return None


def classify_token_error(provider: str, response: httpx.Response) -> ProviderError:
    """Map a failed token endpoint response onto the provider error taxonomy."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    error_code = extract_error_code(payload)
    message = f"{provider} refresh failed: HTTP {response.status_code}"
    if error_code:
        message = f"{message} ({error_code})"

    if error_code and error_code.lower() in INVALID_GRANT_CODES:
        return InvalidGrantError(
            message, provider, status_code=response.status_code, error_code=error_code
        )

    return TransientProviderError(
        message, provider, status_code=response.status_code, error_code=error_code
    )


def window_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """UTC datetimes covering [start 00:00, end+1 00:00)."""
    start_dt = datetime.combine(start, time.min, tzinfo=UTC)
    end_dt = datetime.combine(end + timedelta(days=1), time.min, tzinfo=UTC)
    return start_dt, end_dt


class ProviderAdapter(ABC):
    """
    Uniform interface over one OAuth provider.

    Subclasses declare the token endpoint, how the refresh request is
    authenticated, whether refresh tokens rotate, and how report data is fetched.
    """

    name: str
    token_url: str

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        *,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], int] = now_epoch,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.transport = transport
        self.clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    @abstractmethod
    def _refresh_request(self, refresh_token: str) -> tuple[dict[str, str], httpx.Auth | None]:
        """Form body and optional client auth for the refresh call."""

    def _resolve_refresh_token(self, payload: dict, previous: str) -> str:
        """Keep the rotated refresh token when returned, otherwise the prior one."""
        return payload.get("refresh_token") or previous

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """
        Exchange a refresh token for a new access token.

        Raises:
            InvalidGrantError: provider says the refresh token is unusable
            TransientProviderError: network error, timeout or retryable status
            ProviderNotConfiguredError: client credentials are not set
        """
        if not refresh_token:
            raise InvalidGrantError("Refresh token is empty", self.name, error_code="invalid_grant")
        if not self.configured:
            raise ProviderNotConfiguredError(f"{self.name} OAuth client is not configured", self.name)

        data, auth = self._refresh_request(refresh_token)
        response = await self._post_with_retry(data, auth)

        if response.status_code != 200:
            error = classify_token_error(self.name, response)
            logger.warning(
                "Provider refresh rejected",
                provider=self.name,
                status_code=response.status_code,
                error_code=error.error_code,
                classification=type(error).__name__,
            )
            raise error

        try:
            payload = response.json()
        except ValueError as e:
            raise TransientProviderError(
                f"{self.name} refresh returned invalid JSON", self.name, status_code=200
            ) from e

        access_token = payload.get("access_token")
        if not access_token:
            raise TransientProviderError(
                f"{self.name} refresh response missing access_token", self.name, status_code=200
            )

        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        new_refresh_token = self._resolve_refresh_token(payload, refresh_token)

        logger.info(
            "Provider token refreshed",
            provider=self.name,
            expires_in=expires_in,
            rotated=new_refresh_token != refresh_token,
        )

        return RefreshedToken(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_at=self.clock() + expires_in,
            scope=payload.get("scope"),
        )

    async def _post_with_retry(
        self, data: dict[str, str], auth: httpx.Auth | None
    ) -> httpx.Response:
        """POST to the token endpoint, retrying network errors and retryable statuses."""
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        async with self._client() as client:
            for attempt in range(self.max_retries + 1):
                try:
                    response = await client.post(
                        self.token_url, data=data, headers=headers, auth=auth
                    )
                except httpx.RequestError as exc:
                    if attempt == self.max_retries:
                        raise TransientProviderError(
                            f"Network error during {self.name} refresh: {exc}", self.name
                        ) from exc
                    logger.warning(
                        "Provider refresh request error, retrying",
                        provider=self.name,
                        attempt=attempt + 1,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                else:
                    if response.status_code not in RETRY_STATUS_CODES or attempt == self.max_retries:
                        return response
                    logger.warning(
                        "Provider refresh transient status, retrying",
                        provider=self.name,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                    )

                await asyncio.sleep(self.backoff_base * (2**attempt))

        raise TransientProviderError(f"{self.name} refresh failed: retries exhausted", self.name)

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_data(self, access_token: str, start: date, end: date) -> dict[str, Any]:
        """Fetch the provider's report data for the inclusive window [start, end]."""

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        access_token: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Authenticated GET with provider error classification."""
        try:
            response = await client.get(
                url, params=params, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.RequestError as exc:
            raise TransientProviderError(
                f"Network error fetching {self.name} data: {exc}", self.name
            ) from exc

        if response.status_code in (401, 403):
            raise ProviderAccessDeniedError(
                f"{self.name} rejected data request: HTTP {response.status_code}",
                self.name,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise TransientProviderError(
                f"{self.name} data request failed: HTTP {response.status_code}",
                self.name,
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()
