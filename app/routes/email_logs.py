"""Email dispatch log routes for the authenticated user."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import current_user_id
from app.infrastructure.observability.logging import get_logger
from app.models.api.queue_response import EmailLogsResponse, EmailStatsResponse
from app.services.email_log_service import EmailLogService, email_log_service

logger = get_logger(__name__)

router = APIRouter(prefix="/email", tags=["email"])


def get_email_log_service() -> EmailLogService:
    return email_log_service


@router.get("/logs", response_model=EmailLogsResponse)
async def list_email_logs(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(current_user_id),
    logs: EmailLogService = Depends(get_email_log_service),
):
    try:
        entries = await logs.get_user_logs(user_id, limit=limit, offset=offset)
    except Exception as e:
        logger.error("Email log listing failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to load email logs"
        ) from None
    return EmailLogsResponse(logs=entries, count=len(entries), limit=limit, offset=offset)


@router.get("/stats", response_model=EmailStatsResponse)
async def email_stats(
    user_id: str = Depends(current_user_id),
    logs: EmailLogService = Depends(get_email_log_service),
):
    try:
        stats = await logs.get_user_stats(user_id)
    except Exception as e:
        logger.error("Email stats failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to load email stats"
        ) from None
    return EmailStatsResponse(**stats)
