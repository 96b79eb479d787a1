"""
Reconnection sweep.

Integrations whose refresh token was rejected stay flagged until the user
re-authorizes them. This sweep finds every user with flagged integrations
and emails them one link per provider to the web app's connect page.
"""

from html import escape
from urllib.parse import urlencode

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.token_domain import ReconnectionNotice
from app.services.email_service import EmailSendError, EmailService, email_service
from app.services.token_service import TokenService, token_service

logger = get_logger(__name__)

RECONNECT_SUBJECT = "Action Required: Reconnect Your Integrations"


class ReconnectionSweepResult:
    def __init__(self, total_users: int = 0, notifications_sent: int = 0, errors: int = 0):
        self.total_users = total_users
        self.notifications_sent = notifications_sent
        self.errors = errors

    def as_dict(self) -> dict[str, int]:
        return {
            "total_users": self.total_users,
            "notifications_sent": self.notifications_sent,
            "errors": self.errors,
        }


class ReconnectionNotifier:
    def __init__(
        self,
        store: TokenService | None = None,
        sender: EmailService | None = None,
        web_app_url: str | None = None,
    ):
        self.store = store or token_service
        self.sender = sender or email_service
        self.web_app_url = (web_app_url or settings.WEB_APP_URL).rstrip("/")

    def reconnect_url(self, provider: str) -> str:
        query = urlencode({"returnTo": "/integrations", "autoReconnect": "true"})
        return f"{self.web_app_url}/api/integrations/{provider}/connect?{query}"

    def render(self, notice: ReconnectionNotice) -> str:
        links = "".join(
            f'<li><a href="{escape(self.reconnect_url(provider))}">Reconnect {escape(provider)}</a></li>'
            for provider in notice.providers
        )
        return (
            "<p>Some of your MetricLog integrations stopped working and need to be "
            "reconnected before they can appear in your reports again.</p>"
            f"<ul>{links}</ul>"
        )

    async def pending(self) -> list[ReconnectionNotice]:
        return await self.store.users_needing_reconnection()

    async def notify_all(self) -> ReconnectionSweepResult:
        """
        Email every user with flagged integrations.

        A failed send is counted and logged; the rest of the sweep continues.
        Users stay in the sweep until they reconnect.
        """
        notices = await self.pending()
        result = ReconnectionSweepResult(total_users=len(notices))
        if not notices:
            logger.info("No users need reconnection notifications")
            return result

        for notice in notices:
            try:
                await self.sender.send_email(notice.email, RECONNECT_SUBJECT, self.render(notice))
            except EmailSendError as e:
                result.errors += 1
                logger.error(
                    "Reconnection notification failed",
                    user_id=notice.user_id,
                    providers=notice.providers,
                    error=str(e),
                    status_code=e.status_code,
                )
                continue
            result.notifications_sent += 1
            logger.info(
                "Reconnection notification sent",
                user_id=notice.user_id,
                providers=notice.providers,
            )

        logger.info("Reconnection sweep finished", **result.as_dict())
        return result


def get_reconnection_notifier() -> ReconnectionNotifier:
    return ReconnectionNotifier()
