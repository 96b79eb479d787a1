"""
Report Orchestrator: one report job from duplicate check to email.

Steps, each a possible exit:
1. report already exists          -> skipped("already exists"), sending its email if
                                      no earlier attempt did
2. refresh tokens, none usable     -> skipped("no working integrations")
3. fetch data per usable provider  (access denied drops that provider only)
4. generate and persist the report (insert-if-absent)
5. email, gated by the dispatch log; never fails the job

Exceptions from steps 3-4 propagate to the job queue, which retries them.
"""

import asyncio

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.report_domain import (
    EmailStatus,
    JobResult,
    JobStatus,
    Report,
    ReportJob,
)
from app.models.domain.token_domain import IntegrationToken, ProviderData
from app.services.email_log_service import EmailLogService, email_log_service
from app.services.email_service import EmailService, email_service
from app.services.providers.base import ProviderAccessDeniedError, UnsupportedProviderError
from app.services.providers.registry import ProviderRegistry, get_provider_registry
from app.services.queue.errors import DuplicateWorkError, NoIntegrationsError
from app.services.report_generation import ReportGenerator, report_generator, report_subject
from app.services.report_store import ReportStore, report_store
from app.services.token_lifecycle_service import (
    TokenLifecycleManager,
    get_token_lifecycle_manager,
)

logger = get_logger(__name__)

ALREADY_EXISTS = "already exists"
NO_WORKING_INTEGRATIONS = "no working integrations"
EMAIL_INTERRUPTED = "send interrupted before completion"


class ReportOrchestrator:
    def __init__(
        self,
        tokens: TokenLifecycleManager | None = None,
        reports: ReportStore | None = None,
        email_logs: EmailLogService | None = None,
        email_sender: EmailService | None = None,
        generator: ReportGenerator | None = None,
        providers: ProviderRegistry | None = None,
        sender_email: str | None = None,
    ):
        self.tokens = tokens or get_token_lifecycle_manager()
        self.reports = reports or report_store
        self.email_logs = email_logs or email_log_service
        self.email_sender = email_sender or email_service
        self.generator = generator or report_generator
        self._providers = providers
        self.sender_email = sender_email or settings.SENDER_EMAIL

    @property
    def providers(self) -> ProviderRegistry:
        if self._providers is None:
            self._providers = get_provider_registry()
        return self._providers

    async def process(self, job: ReportJob) -> JobResult:
        try:
            return await self._process(job)
        except DuplicateWorkError as e:
            return JobResult(
                status=JobStatus.SKIPPED, job_id=job.job_id, reason=str(e), report_id=e.report_id
            )
        except NoIntegrationsError as e:
            return JobResult(status=JobStatus.SKIPPED, job_id=job.job_id, reason=str(e))

    async def _process(self, job: ReportJob) -> JobResult:
        # 1. Duplicate guard; an earlier attempt may have stopped before its email went out
        existing = await self.reports.get_existing(job.user_id, job.report_date, job.report_type)
        if existing is not None:
            logger.info(
                "Report already exists, skipping",
                job_id=job.job_id,
                user_id=job.user_id,
                report_id=existing.id,
            )
            if not await self.email_logs.find_sent(job.user_id, job.report_date, job.report_type):
                logger.info("Resuming unsent report email", job_id=job.job_id, report_id=existing.id)
                await self._dispatch_email(
                    job, existing, report_subject(job.report_type, job.report_date)
                )
            raise DuplicateWorkError(ALREADY_EXISTS, job_id=job.job_id, report_id=existing.id)

        # 2. Tokens; the usable set is re-read after the refresh pass
        await self.tokens.ensure_fresh_tokens(job.user_id)
        usable = await self.tokens.usable_tokens(job.user_id)
        if not usable:
            logger.info("No working integrations, skipping", job_id=job.job_id, user_id=job.user_id)
            raise NoIntegrationsError(NO_WORKING_INTEGRATIONS, job_id=job.job_id)

        # 3. Provider data
        provider_data = await self._fetch_provider_data(job, usable)

        # 4. Generate and persist
        generated = await self.generator.generate_report(
            job.user_id, provider_data, job.report_date, job.report_type
        )
        report = await self.reports.save_report(
            job.user_id, job.report_date, job.report_type, generated
        )

        # 5. Email
        email_status = await self._dispatch_email(job, report, generated.subject)

        logger.info(
            "Report job completed",
            job_id=job.job_id,
            user_id=job.user_id,
            report_id=report.id,
            providers=[d.provider for d in provider_data],
            email_status=email_status.value if email_status else None,
        )
        return JobResult(
            status=JobStatus.COMPLETED,
            job_id=job.job_id,
            report_id=report.id,
            email_status=email_status,
            providers_used=[d.provider for d in provider_data],
        )

    async def _fetch_provider_data(
        self, job: ReportJob, tokens: list[IntegrationToken]
    ) -> list[ProviderData]:
        start, end = job.window()

        async def fetch(token: IntegrationToken) -> ProviderData | None:
            try:
                adapter = self.providers.get(token.provider)
                data = await adapter.fetch_data(token.access_token, start, end)
            except (ProviderAccessDeniedError, UnsupportedProviderError) as e:
                logger.warning(
                    "Provider contributed no data",
                    job_id=job.job_id,
                    user_id=job.user_id,
                    provider=token.provider,
                    error=str(e),
                )
                return None
            return ProviderData(provider=token.provider, data=data)

        results = await asyncio.gather(*(fetch(token) for token in tokens))
        return [item for item in results if item is not None]

    async def _dispatch_email(
        self, job: ReportJob, report: Report, subject: str
    ) -> EmailStatus | None:
        """
        Send the report email at most once. Failures are logged, never raised.

        A deadline that cancels the send releases the pending row as failed so
        the retry can claim it again.
        """
        log_id = None
        delivered = False
        try:
            if await self.email_logs.find_sent(job.user_id, job.report_date, job.report_type):
                logger.info("Report email already sent", job_id=job.job_id, report_id=report.id)
                return EmailStatus.SENT

            log_id = await self.email_logs.claim_pending(
                user_id=job.user_id,
                recipient_email=job.user_email,
                sender_email=self.sender_email,
                subject=subject,
                report_type=job.report_type,
                report_date=job.report_date,
            )
            if log_id is None:
                # Another attempt holds the pending row or already sent it
                return EmailStatus.PENDING

            result = await self.email_sender.send_email(job.user_email, subject, report.html)
            delivered = True
            await asyncio.shield(self.email_logs.mark_sent(log_id, result.get("message_id")))
            return EmailStatus.SENT

        except asyncio.CancelledError:
            if log_id is not None and not delivered:
                logger.warning(
                    "Report email interrupted", job_id=job.job_id, report_id=report.id, log_id=log_id
                )
                await asyncio.shield(self._record_email_failure(log_id, EMAIL_INTERRUPTED))
            raise

        except Exception as e:
            logger.error(
                "Report email failed",
                job_id=job.job_id,
                user_id=job.user_id,
                report_id=report.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if log_id is not None and not delivered:
                await self._record_email_failure(log_id, str(e))
            return EmailStatus.FAILED

    async def _record_email_failure(self, log_id: str, error: str) -> None:
        try:
            await self.email_logs.mark_failed(log_id, error)
        except Exception as mark_error:
            logger.error("Failed to record email failure", log_id=log_id, error=str(mark_error))


_orchestrator: ReportOrchestrator | None = None


def get_report_orchestrator() -> ReportOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ReportOrchestrator()
    return _orchestrator
