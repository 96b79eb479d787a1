"""
Email dispatch log.

One row per send attempt for a report. The partial unique index
email_logs_one_active_per_report allows at most one pending-or-sent row per
(user, report_date, report_type), so claim_pending is an atomic "am I the
sender" check and a report is never emailed twice.
"""

from datetime import date

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.report_domain import EmailLogEntry, ReportType

logger = get_logger(__name__)

# A pending row older than this belongs to a worker that died mid-send
STALE_PENDING_MINUTES = 10

_LOG_COLUMNS = """
    id::text AS id, user_id::text AS user_id, recipient_email, subject,
    report_type, report_date, status, message_id, error, created_at, updated_at
"""


class EmailLogError(Exception):
    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class EmailLogService:
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find_sent(
        self, user_id: str, report_date: date, report_type: ReportType
    ) -> EmailLogEntry | None:
        row = await fetch_one(
            f"""
            SELECT {_LOG_COLUMNS} FROM email_logs
            WHERE user_id = %s AND report_date = %s AND report_type = %s AND status = 'sent'
            """,
            (user_id, report_date, report_type.value),
        )
        return EmailLogEntry(**row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def claim_pending(
        self,
        user_id: str,
        recipient_email: str,
        sender_email: str,
        subject: str,
        report_type: ReportType,
        report_date: date,
    ) -> str | None:
        """
        Create the pending row for this report's email.

        Returns:
            The new log id, or None when another attempt is in flight or already sent
        """
        try:
            await execute_query(
                """
                UPDATE email_logs
                SET status = 'failed', error = 'abandoned while pending', updated_at = NOW()
                WHERE user_id = %s AND report_date = %s AND report_type = %s
                  AND status = 'pending'
                  AND updated_at < NOW() - make_interval(mins => %s)
                """,
                (user_id, report_date, report_type.value, STALE_PENDING_MINUTES),
            )
            row = await fetch_one(
                """
                INSERT INTO email_logs (
                    user_id, recipient_email, sender_email, subject,
                    report_type, report_date, status
                ) VALUES (%s, %s, %s, %s, %s, %s, 'pending')
                ON CONFLICT (user_id, report_date, report_type)
                    WHERE status IN ('pending', 'sent')
                DO NOTHING
                RETURNING id::text AS id
                """,
                (
                    user_id,
                    recipient_email,
                    sender_email,
                    subject,
                    report_type.value,
                    report_date,
                ),
            )
        except DatabaseError as e:
            raise EmailLogError(f"Failed to claim email log: {e}", user_id=user_id) from e

        if not row:
            logger.info(
                "Email already claimed for report",
                user_id=user_id,
                report_date=report_date.isoformat(),
                report_type=report_type.value,
            )
            return None
        return row["id"]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_sent(self, log_id: str, message_id: str | None) -> None:
        await execute_query(
            """
            UPDATE email_logs
            SET status = 'sent', message_id = %s, error = NULL, updated_at = NOW()
            WHERE id = %s
            """,
            (message_id, log_id),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_failed(self, log_id: str, error: str) -> None:
        await execute_query(
            """
            UPDATE email_logs
            SET status = 'failed', error = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (error[:1000], log_id),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_user_logs(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[EmailLogEntry]:
        rows = await fetch_all(
            f"""
            SELECT {_LOG_COLUMNS} FROM email_logs
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (user_id, limit, offset),
        )
        return [EmailLogEntry(**row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_user_stats(self, user_id: str) -> dict:
        """Counts by status and report type, plus the last successful send."""
        row = await fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'sent') AS sent,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                COUNT(*) FILTER (WHERE report_type = 'daily' AND status = 'sent') AS daily_sent,
                COUNT(*) FILTER (WHERE report_type = 'weekly' AND status = 'sent') AS weekly_sent,
                MAX(updated_at) FILTER (WHERE status = 'sent') AS last_sent_at
            FROM email_logs
            WHERE user_id = %s
            """,
            (user_id,),
        )
        stats = dict(row or {})
        total = stats.get("total") or 0
        sent = stats.get("sent") or 0
        stats["success_rate"] = round(sent / total * 100, 1) if total else 0.0
        return stats


email_log_service = EmailLogService()

