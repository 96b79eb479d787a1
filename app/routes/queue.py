"""Report job queue routes: triggers, webhook ingestion and job status."""

import json

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import ValidationError

from app.auth.verify import cron_auth_dependency
from app.infrastructure.observability.logging import get_logger
from app.models.api.queue_request import FanOutRequest, GenerateReportRequest, WebhookJobPayload
from app.models.api.queue_response import (
    EnqueueResponse,
    FanOutResponse,
    JobStatusResponse,
    WebhookResponse,
)
from app.models.domain.report_domain import ReportJob, ReportType, generate_job_id, utc_today
from app.services.queue.errors import JobInProgressError, SignatureInvalidError
from app.services.queue.job_queue import ReportJobQueue, get_job_queue
from app.services.queue.signature import SIGNATURE_HEADER, WebhookSignatureVerifier
from app.services.report_scheduling_service import enqueue_scheduled_reports

logger = get_logger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


def get_signature_verifier() -> WebhookSignatureVerifier:
    return WebhookSignatureVerifier()


@router.post(
    "/generate-report",
    response_model=EnqueueResponse,
    dependencies=[Depends(cron_auth_dependency)],
)
async def generate_report(
    request: GenerateReportRequest,
    queue: ReportJobQueue = Depends(get_job_queue),
):
    """
    Enqueue one user's report.

    The optional job_id is the idempotency key: re-posting the same job_id
    returns `skipped` instead of generating or emailing again.
    """
    try:
        job = ReportJob(
            job_id=request.job_id or generate_job_id(request.user_id),
            user_id=request.user_id,
            user_email=request.user_email,
            report_type=request.report_type,
            report_date=request.report_date or utc_today(),
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        ) from None

    try:
        result = await queue.enqueue(job)
    except Exception as e:
        logger.error(
            "Enqueue failed",
            job_id=job.job_id,
            user_id=job.user_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Failed to enqueue report job"
        ) from None

    logger.info(
        "Report job submitted",
        job_id=job.job_id,
        user_id=job.user_id,
        status=result.status.value,
        reason=result.reason,
    )
    return EnqueueResponse.from_result(result)


async def _fan_out(report_type: ReportType, request: FanOutRequest | None) -> FanOutResponse:
    report_date = request.report_date if request else None
    try:
        summary = await enqueue_scheduled_reports(report_type, report_date)
    except Exception as e:
        logger.error(
            "Scheduled fan-out failed",
            report_type=report_type.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Failed to schedule reports"
        ) from None

    return FanOutResponse(
        report_type=report_type.value,
        date=summary.report_date.isoformat(),
        users=len(summary.results),
        counts=summary.counts,
        results=[EnqueueResponse.from_result(r) for r in summary.results],
    )


@router.post(
    "/generate-daily",
    response_model=FanOutResponse,
    dependencies=[Depends(cron_auth_dependency)],
)
async def generate_daily(request: FanOutRequest | None = Body(default=None)):
    """Cron trigger: daily report for every user with a valid integration."""
    return await _fan_out(ReportType.DAILY, request)


@router.post(
    "/generate-weekly",
    response_model=FanOutResponse,
    dependencies=[Depends(cron_auth_dependency)],
)
async def generate_weekly(request: FanOutRequest | None = Body(default=None)):
    """Cron trigger: weekly report for every user with a valid integration."""
    return await _fan_out(ReportType.WEEKLY, request)


@router.post("/process", response_model=WebhookResponse)
async def process_delivery(
    request: Request,
    verifier: WebhookSignatureVerifier = Depends(get_signature_verifier),
    queue: ReportJobQueue = Depends(get_job_queue),
):
    """
    Webhook ingestion for queued jobs.

    The signature is checked against the raw body before anything else.
    Processed jobs answer 200 even when the job failed; the failure is in
    the job status, and a transport retry would only hit the dedup cache.
    A retry that overlaps a still-running first delivery gets 503.
    """
    raw_body = await request.body()

    try:
        verifier.verify(request.headers.get(SIGNATURE_HEADER), raw_body)
    except SignatureInvalidError as e:
        logger.warning("Rejected webhook delivery", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        ) from None

    try:
        payload = WebhookJobPayload.model_validate(json.loads(raw_body))
        job = ReportJob.model_validate(payload.job)
    except (ValueError, ValidationError) as e:
        logger.error("Malformed webhook payload", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed job payload"
        ) from None

    redelivered = payload.redelivered or request.headers.get("Upstash-Retried", "0") not in ("", "0")
    try:
        result = await queue.handle_delivery(job, redelivered=redelivered)
    except JobInProgressError as e:
        # Transport retries non-2xx answers
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
            headers={"Retry-After": str(e.retry_after)},
        ) from None

    return WebhookResponse(
        status=result.status.value,
        job_id=result.job_id,
        reason=result.reason,
        report_id=result.report_id,
    )


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    dependencies=[Depends(cron_auth_dependency)],
)
async def get_job_status(job_id: str, queue: ReportJobQueue = Depends(get_job_queue)):
    state = await queue.get_job_status(job_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobStatusResponse(
        job_id=state.job_id,
        status=state.status,
        error=state.error,
        attempts=state.attempts,
        report_id=state.report_id,
        updated_at=state.updated_at,
    )
