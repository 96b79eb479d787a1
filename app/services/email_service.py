"""
Report email delivery through the SendGrid v3 Mail Send API.
"""

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailSendError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EmailService:
    def __init__(
        self,
        api_key: str | None = None,
        sender_email: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or settings.SENDGRID_API_KEY
        self.sender_email = sender_email or settings.SENDER_EMAIL
        self.timeout = timeout
        self.transport = transport

    async def send_email(self, to: str, subject: str, html: str) -> dict[str, str | None]:
        """
        Send one HTML email.

        Returns:
            {"message_id": ...} from SendGrid's X-Message-Id header

        Raises:
            EmailSendError: not configured, network failure or non-2xx response
        """
        if not self.api_key:
            raise EmailSendError("SENDGRID_API_KEY not configured")

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender_email, "name": "MetricLog"},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.RequestError as e:
            logger.error("Email send network error", error=str(e), error_type=type(e).__name__)
            raise EmailSendError(f"Network error sending email: {e}") from e

        if response.status_code >= 300:
            logger.error(
                "Email send rejected",
                status_code=response.status_code,
                body=response.text[:300],
            )
            raise EmailSendError(
                f"SendGrid returned HTTP {response.status_code}", status_code=response.status_code
            )

        message_id = response.headers.get("X-Message-Id")
        logger.info("Email sent", message_id=message_id, subject=subject)
        return {"message_id": message_id}


email_service = EmailService()
