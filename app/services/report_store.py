"""
Report store and duplicate guard.

A report is identified by (user_id, date, kind). Reads here are side-effect
free; save_report inserts only if no report with that identity exists and
always returns the row that won.
"""

from datetime import date

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.report_domain import GeneratedReport, Report, ReportType

logger = get_logger(__name__)

_REPORT_COLUMNS = "id::text AS id, user_id::text AS user_id, date, kind, score, content, html, created_at"


class ReportStoreError(Exception):
    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class ReportStore:
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_existing(self, user_id: str, report_date: date, kind: ReportType) -> Report | None:
        try:
            row = await fetch_one(
                f"SELECT {_REPORT_COLUMNS} FROM reports WHERE user_id = %s AND date = %s AND kind = %s",
                (user_id, report_date, kind.value),
            )
        except DatabaseError as e:
            raise ReportStoreError(f"Failed to read report: {e}", user_id=user_id) from e
        return Report(**row) if row else None

    async def report_exists(self, user_id: str, report_date: date, kind: ReportType) -> bool:
        return await self.get_existing(user_id, report_date, kind) is not None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def save_report(
        self, user_id: str, report_date: date, kind: ReportType, generated: GeneratedReport
    ) -> Report:
        """Insert if absent. A concurrent writer's row is returned instead of a duplicate."""
        try:
            row = await fetch_one(
                f"""
                INSERT INTO reports (user_id, date, kind, score, content, html)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, date, kind) DO NOTHING
                RETURNING {_REPORT_COLUMNS}
                """,
                (
                    user_id,
                    report_date,
                    kind.value,
                    generated.score,
                    Jsonb(generated.content),
                    generated.html,
                ),
            )
        except DatabaseError as e:
            raise ReportStoreError(f"Failed to save report: {e}", user_id=user_id) from e

        if row:
            logger.info(
                "Report saved",
                user_id=user_id,
                report_id=row["id"],
                report_date=report_date.isoformat(),
                kind=kind.value,
            )
            return Report(**row)

        existing = await self.get_existing(user_id, report_date, kind)
        if existing is None:
            raise ReportStoreError("Report insert conflicted but no row found", user_id=user_id)
        logger.info(
            "Report already saved by concurrent job",
            user_id=user_id,
            report_id=existing.id,
            report_date=report_date.isoformat(),
            kind=kind.value,
        )
        return existing


report_store = ReportStore()
