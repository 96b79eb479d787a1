# models/domain/report_domain.py
"""Report job, report and email log domain models."""

import uuid
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ReportType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED)


class EmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def utc_today() -> date:
    return datetime.now(UTC).date()


def generate_job_id(user_id: str) -> str:
    return f"report-{user_id}-{uuid.uuid4().hex[:12]}"


def scheduled_job_id(report_type: "ReportType", user_id: str, report_date: date) -> str:
    """Deterministic id so a re-fired cron maps onto the same job."""
    return f"{report_type.value}-{user_id}-{report_date.isoformat()}"


class ReportJob(BaseModel):
    """A request to generate and email one report."""

    job_id: str
    user_id: str
    user_email: str
    report_type: ReportType = ReportType.DAILY
    report_date: date = Field(default_factory=utc_today)
    attempts: int = 0

    @field_validator("job_id", "user_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("user_email")
    @classmethod
    def _looks_like_email(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("invalid email address")
        return value

    def window(self) -> tuple[date, date]:
        """Inclusive date range the report covers."""
        if self.report_type == ReportType.WEEKLY:
            return self.report_date - timedelta(days=6), self.report_date
        return self.report_date, self.report_date

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class JobResult(BaseModel):
    """Terminal result of one job execution."""

    status: JobStatus
    job_id: str
    report_id: str | None = None
    reason: str | None = None
    email_status: EmailStatus | None = None
    providers_used: list[str] = Field(default_factory=list)


class Report(BaseModel):
    """Persisted report reference. Content is opaque to the engine."""

    id: str
    user_id: str
    date: date
    kind: ReportType
    score: int | None = None
    content: dict[str, Any] = Field(default_factory=dict)
    html: str = ""
    created_at: datetime | None = None


class GeneratedReport(BaseModel):
    """What the report generator hands back before persistence."""

    subject: str
    score: int | None = None
    content: dict[str, Any] = Field(default_factory=dict)
    html: str


class EmailLogEntry(BaseModel):
    id: str
    user_id: str
    recipient_email: str
    report_type: ReportType
    report_date: date
    status: EmailStatus
    subject: str = ""
    message_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JobState(BaseModel):
    """Queue-side bookkeeping for one job id, exposed to operators."""

    job_id: str
    status: JobStatus
    user_id: str | None = None
    report_type: ReportType | None = None
    attempts: int = 0
    error: str | None = None
    report_id: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EnqueueStatus(str, Enum):
    ENQUEUED = "enqueued"
    REJECTED = "rejected"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class EnqueueResult(BaseModel):
    """What a trigger gets back from the job queue."""

    status: EnqueueStatus
    job_id: str
    reason: str | None = None
    report_id: str | None = None

    @classmethod
    def from_job_result(cls, result: JobResult) -> "EnqueueResult":
        return cls(
            status=EnqueueStatus(result.status.value),
            job_id=result.job_id,
            reason=result.reason,
            report_id=result.report_id,
        )
