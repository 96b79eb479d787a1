# app/models/api/queue_request.py
"""
Report queue API request models.
Used by routes for input validation.
"""

from datetime import date

from pydantic import BaseModel, ConfigDict, Field

from app.models.domain.report_domain import ReportType


class GenerateReportRequest(BaseModel):
    """Manual or admin trigger for one user's report."""

    user_id: str = Field(..., min_length=1, description="User to generate the report for")
    user_email: str = Field(..., min_length=3, description="Recipient address")
    report_type: ReportType = Field(default=ReportType.DAILY, description="daily or weekly")
    job_id: str | None = Field(default=None, description="Idempotency key; generated when absent")
    report_date: date | None = Field(
        default=None, alias="date", description="Report date (default: today UTC)"
    )

    model_config = ConfigDict(populate_by_name=True)


class FanOutRequest(BaseModel):
    """Cron fan-out over every user with a valid integration."""

    report_date: date | None = Field(
        default=None, alias="date", description="Report date (default: today UTC)"
    )

    model_config = ConfigDict(populate_by_name=True)


class WebhookJobPayload(BaseModel):
    """Body delivered by the queue transport to POST /queue/process."""

    job: dict = Field(..., description="Serialized ReportJob")
    timestamp: int = Field(..., description="Publish time, epoch seconds")
    redelivered: bool = Field(default=False)
