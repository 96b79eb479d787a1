"""
Webhook signature verification (Upstash QStash format).

The Upstash-Signature header is an HS256 JWT signed with the current or the
next signing key. Its `body` claim is the base64url SHA-256 of the raw request
body, so the signature covers the exact bytes received. Verification happens
before the body is parsed.
"""

import base64
import hashlib
import hmac

import jwt

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.queue.errors import SignatureInvalidError

logger = get_logger(__name__)

SIGNATURE_HEADER = "Upstash-Signature"
SIGNATURE_ISSUER = "Upstash"
CLOCK_LEEWAY_SECONDS = 30


def body_hash(body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode("ascii").rstrip("=")


class WebhookSignatureVerifier:
    def __init__(
        self,
        current_key: str | None = None,
        next_key: str | None = None,
        expected_url: str | None = None,
    ):
        self.current_key = current_key if current_key is not None else settings.QSTASH_CURRENT_SIGNING_KEY
        self.next_key = next_key if next_key is not None else settings.QSTASH_NEXT_SIGNING_KEY
        self.expected_url = expected_url

    @property
    def keys(self) -> list[str]:
        return [key for key in (self.current_key, self.next_key) if key]

    def verify(self, signature: str | None, body: bytes) -> dict:
        """
        Verify a signature against the raw body.

        Returns:
            The decoded claims

        Raises:
            SignatureInvalidError: missing header, no key configured, bad token or body mismatch
        """
        if not signature:
            raise SignatureInvalidError("Missing signature header")
        if not self.keys:
            raise SignatureInvalidError("No webhook signing key configured")

        last_error: Exception | None = None
        for key in self.keys:
            try:
                claims = jwt.decode(
                    signature,
                    key,
                    algorithms=["HS256"],
                    issuer=SIGNATURE_ISSUER,
                    leeway=CLOCK_LEEWAY_SECONDS,
                    options={"require": ["iss", "exp", "body"], "verify_aud": False},
                )
            except jwt.InvalidTokenError as e:
                last_error = e
                continue

            if self.expected_url and claims.get("sub") != self.expected_url:
                raise SignatureInvalidError("Signature subject does not match webhook URL")

            claimed = str(claims.get("body", "")).rstrip("=")
            if not hmac.compare_digest(claimed, body_hash(body)):
                raise SignatureInvalidError("Body hash mismatch")

            return claims

        logger.warning("Webhook signature rejected", error=str(last_error))
        raise SignatureInvalidError(f"Invalid signature: {last_error}")
