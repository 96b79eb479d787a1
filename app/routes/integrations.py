"""Integration token routes for the authenticated user, plus the cron reconnection sweep."""

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import cron_auth_dependency, current_user_id
from app.infrastructure.observability.logging import get_logger
from app.models.api.queue_response import (
    ReconnectionListResponse,
    ReconnectionSweepResponse,
    RefreshTokensResponse,
    TokenStatusResponse,
)
from app.services.reconnection_service import ReconnectionNotifier, get_reconnection_notifier
from app.services.token_lifecycle_service import (
    TokenLifecycleManager,
    get_token_lifecycle_manager,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


@router.post("/refresh-tokens", response_model=RefreshTokensResponse)
async def refresh_tokens(
    user_id: str = Depends(current_user_id),
    manager: TokenLifecycleManager = Depends(get_token_lifecycle_manager),
):
    """
    Refresh every expired token for the caller.

    Tokens whose refresh token was rejected come back with
    reconnection_required=true and stay flagged until re-authorized.
    """
    try:
        outcomes = await manager.ensure_fresh_tokens(user_id)
    except Exception as e:
        logger.error(
            "Token refresh request failed",
            user_id=user_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to refresh tokens"
        ) from None

    return RefreshTokensResponse(
        user_id=user_id,
        refreshed=sum(1 for o in outcomes if o.refreshed),
        failed=sum(1 for o in outcomes if not o.success),
        outcomes=outcomes,
    )


@router.get("/token-status", response_model=TokenStatusResponse)
async def token_status(
    user_id: str = Depends(current_user_id),
    manager: TokenLifecycleManager = Depends(get_token_lifecycle_manager),
):
    try:
        statuses = await manager.get_token_statuses(user_id)
    except Exception as e:
        logger.error(
            "Token status request failed",
            user_id=user_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read token status"
        ) from None

    return TokenStatusResponse(
        user_id=user_id,
        tokens=statuses,
        needs_attention=[
            s.provider
            for s in statuses
            if s.needs_reconnection or (s.is_expired and not s.has_refresh_token)
        ],
    )


@router.get(
    "/reconnections",
    response_model=ReconnectionListResponse,
    dependencies=[Depends(cron_auth_dependency)],
)
async def list_reconnections(
    notifier: ReconnectionNotifier = Depends(get_reconnection_notifier),
):
    """Every user with integrations flagged for reconnection."""
    users = await notifier.pending()
    return ReconnectionListResponse(total_users=len(users), users=users)


@router.post(
    "/reconnections/notify",
    response_model=ReconnectionSweepResponse,
    dependencies=[Depends(cron_auth_dependency)],
)
async def notify_reconnections(
    notifier: ReconnectionNotifier = Depends(get_reconnection_notifier),
):
    """Cron entry point: email each flagged user their reconnect links."""
    try:
        result = await notifier.notify_all()
    except Exception as e:
        logger.error(
            "Reconnection sweep failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process reconnections",
        ) from None

    return ReconnectionSweepResponse(**result.as_dict())
