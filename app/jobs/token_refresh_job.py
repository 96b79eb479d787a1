"""
Proactive integration token refresh.

Refreshes tokens shortly before they expire so report jobs rarely have to
refresh on the critical path. Each user goes through the lifecycle manager,
so this job and a concurrently running report job never double-refresh.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.token_domain import RefreshOutcome
from app.services.token_lifecycle_service import TokenLifecycleManager, get_token_lifecycle_manager
from app.services.token_service import TokenService, TokenServiceError, token_service

logger = get_logger(__name__)

MAX_USERS_PER_RUN = 1000
BATCH_SIZE = 50
MAX_CONCURRENT_REFRESHES = 10
REFRESH_TIMEOUT_SECONDS = 30  # one user's whole refresh pass
BATCH_PAUSE_SECONDS = 1.0


class TokenRefreshJobError(Exception):
    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@dataclass
class RefreshRunMetrics:
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    users_processed: int = 0
    tokens_refreshed: int = 0
    refresh_failures: int = 0
    reconnections_required: int = 0
    processing_errors: int = 0
    total_duration_seconds: float = 0.0

    def add_outcomes(self, outcomes: list[RefreshOutcome]) -> None:
        self.users_processed += 1
        self.tokens_refreshed += sum(1 for o in outcomes if o.refreshed)
        self.refresh_failures += sum(1 for o in outcomes if not o.success)
        self.reconnections_required += sum(
            1 for o in outcomes if not o.success and o.reconnection_required
        )

    def add_error(self) -> None:
        self.users_processed += 1
        self.processing_errors += 1

    def finish(self) -> None:
        self.total_duration_seconds = (datetime.now(UTC) - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["start_time"] = data.pop("started_at").isoformat()
        data["total_duration_seconds"] = round(self.total_duration_seconds, 2)
        data["job_run"] = "token_refresh"
        return data


class TokenRefreshJob:
    """
    Selects users with tokens expiring inside the buffer and refreshes them in
    batches, with bounded concurrency and a per-user timeout.
    """

    def __init__(
        self,
        manager: TokenLifecycleManager | None = None,
        store: TokenService | None = None,
        buffer_minutes: int | None = None,
        batch_size: int = BATCH_SIZE,
    ):
        self._manager = manager
        self.store = store or token_service
        self.buffer_seconds = (
            buffer_minutes if buffer_minutes is not None else settings.TOKEN_REFRESH_BUFFER_MINUTES
        ) * 60
        self.batch_size = batch_size
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_metrics: RefreshRunMetrics | None = None

    @property
    def manager(self) -> TokenLifecycleManager:
        if self._manager is None:
            self._manager = get_token_lifecycle_manager()
        return self._manager

    async def run_once(self) -> dict:
        """
        One pass over every user with an expiring token.

        Per-user failures are counted, never raised.

        Raises:
            TokenRefreshJobError: the expiring-user lookup itself failed
        """
        if self.is_running:
            logger.warning("Token refresh job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        metrics = RefreshRunMetrics()
        try:
            user_ids = await self._expiring_users()
            if user_ids:
                logger.info(
                    "Found users with expiring tokens",
                    user_count=len(user_ids),
                    buffer_seconds=self.buffer_seconds,
                )
                await self._refresh_in_batches(user_ids, metrics)
            else:
                logger.info("No tokens found requiring refresh")
        finally:
            self.is_running = False

        metrics.finish()
        self.last_metrics = metrics
        self.last_run_time = datetime.now(UTC)
        logger.info("Token refresh job completed", **metrics.to_dict())
        return metrics.to_dict()

    async def _expiring_users(self) -> list[str]:
        expires_before = self.manager.clock() + self.buffer_seconds
        try:
            return await self.store.users_with_expiring_tokens(
                expires_before, limit=MAX_USERS_PER_RUN
            )
        except TokenServiceError as e:
            logger.error("Token service error getting expiring users", error=str(e))
            raise TokenRefreshJobError(
                f"Failed to get expiring users: {e}", operation="get_expiring_users"
            ) from e

    async def _refresh_in_batches(self, user_ids: list[str], metrics: RefreshRunMetrics) -> None:
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_REFRESHES)

        async def bounded(user_id: str) -> None:
            async with semaphore:
                await self._refresh_user(user_id, metrics)

        for start in range(0, len(user_ids), self.batch_size):
            if start:
                # Spread provider load between batches
                await asyncio.sleep(BATCH_PAUSE_SECONDS)
            batch = user_ids[start : start + self.batch_size]
            logger.debug("Processing batch", offset=start, batch_size=len(batch))
            await asyncio.gather(*(bounded(user_id) for user_id in batch))

    async def _refresh_user(self, user_id: str, metrics: RefreshRunMetrics) -> None:
        started = time.monotonic()
        try:
            outcomes = await asyncio.wait_for(
                self.manager.ensure_fresh_tokens(user_id, refresh_within=self.buffer_seconds),
                timeout=REFRESH_TIMEOUT_SECONDS,
            )
        except Exception as e:
            error = (
                f"Token refresh timed out after {REFRESH_TIMEOUT_SECONDS}s"
                if isinstance(e, TimeoutError)
                else f"Unexpected error: {type(e).__name__}: {e}"
            )
            metrics.add_error()
            logger.error("Token refresh processing error", user_id=user_id, error=error)
            return

        metrics.add_outcomes(outcomes)
        logger.debug(
            "User tokens processed",
            user_id=user_id,
            refreshed=sum(1 for o in outcomes if o.refreshed),
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )


async def start_token_refresh_scheduler():
    """Loop forever, one pass per interval. Run by app.jobs.worker."""
    job = TokenRefreshJob()
    interval = settings.TOKEN_REFRESH_INTERVAL_MINUTES
    logger.info("Starting token refresh job scheduler", interval_minutes=interval)

    while True:
        try:
            await job.run_once()
        except Exception as e:
            logger.error(
                "Error in token refresh job scheduler", error=str(e), error_type=type(e).__name__
            )
        await asyncio.sleep(interval * 60)
