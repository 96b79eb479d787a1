# app/models/api/queue_response.py
"""
Report queue, integration and email log API response models.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.domain.report_domain import EmailLogEntry, EnqueueResult, JobStatus
from app.models.domain.token_domain import ReconnectionNotice, RefreshOutcome, TokenStatus


class EnqueueResponse(BaseModel):
    status: str = Field(..., description="enqueued, rejected, completed, skipped or failed")
    job_id: str
    reason: str | None = None
    report_id: str | None = None

    @classmethod
    def from_result(cls, result: EnqueueResult) -> "EnqueueResponse":
        return cls(
            status=result.status.value,
            job_id=result.job_id,
            reason=result.reason,
            report_id=result.report_id,
        )


class FanOutResponse(BaseModel):
    report_type: str
    date: str
    users: int = Field(..., description="Users considered")
    counts: dict[str, int] = Field(default_factory=dict, description="Results by status")
    results: list[EnqueueResponse] = Field(default_factory=list)


class JobStatusResponse(BaseModel):
    job_id: str
    status: JobStatus
    error: str | None = None
    attempts: int = 0
    report_id: str | None = None
    updated_at: datetime | None = None


class WebhookResponse(BaseModel):
    status: str
    job_id: str
    reason: str | None = None
    report_id: str | None = None


class RefreshTokensResponse(BaseModel):
    user_id: str
    refreshed: int
    failed: int
    outcomes: list[RefreshOutcome]


class TokenStatusResponse(BaseModel):
    user_id: str
    tokens: list[TokenStatus]
    needs_attention: list[str] = Field(
        default_factory=list, description="Providers that are expired or flagged for reconnection"
    )


class ReconnectionListResponse(BaseModel):
    total_users: int
    users: list[ReconnectionNotice]


class ReconnectionSweepResponse(BaseModel):
    total_users: int
    notifications_sent: int
    errors: int


class EmailLogsResponse(BaseModel):
    logs: list[EmailLogEntry]
    count: int
    limit: int
    offset: int


class EmailStatsResponse(BaseModel):
    total: int = 0
    sent: int = 0
    failed: int = 0
    pending: int = 0
    daily_sent: int = 0
    weekly_sent: int = 0
    success_rate: float = 0.0
    last_sent_at: datetime | None = None
