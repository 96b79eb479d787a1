"""
Report generation collaborator.

The orchestrator only needs `generate_report(user_id, provider_data, date, kind)`.
The default implementation produces a plain summary; scoring and rich
rendering live behind the same call in a separate generator.
"""

from datetime import date
from html import escape
from typing import Protocol

from app.models.domain.report_domain import GeneratedReport, ReportType
from app.models.domain.token_domain import ProviderData


def report_subject(kind: ReportType, report_date: date) -> str:
    label = "Daily" if kind == ReportType.DAILY else "Weekly"
    return f"Your MetricLog {label} Report - {report_date.isoformat()}"


class ReportGenerator(Protocol):
    async def generate_report(
        self,
        user_id: str,
        provider_data: list[ProviderData],
        report_date: date,
        kind: ReportType,
    ) -> GeneratedReport: ...


class SummaryReportGenerator:
    async def generate_report(
        self,
        user_id: str,
        provider_data: list[ProviderData],
        report_date: date,
        kind: ReportType,
    ) -> GeneratedReport:
        label = "Daily" if kind == ReportType.DAILY else "Weekly"
        content = {item.provider: item.data for item in provider_data}

        sections = []
        for provider, data in content.items():
            rows = "".join(
                f"<li>{escape(str(key))}: {escape(str(value))}</li>"
                for key, value in data.items()
                if not isinstance(value, list | dict)
            )
            sections.append(f"<h2>{escape(provider)}</h2><ul>{rows}</ul>")

        html = (
            f"<h1>{label} report for {report_date.isoformat()}</h1>"
            + ("".join(sections) or "<p>No data available.</p>")
        )
        return GeneratedReport(
            subject=report_subject(kind, report_date),
            content={"providers": content, "kind": kind.value, "date": report_date.isoformat()},
            html=html,
        )


report_generator = SummaryReportGenerator()
