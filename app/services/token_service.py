"""
Token Service: persistence for integration OAuth tokens.

Tokens are Fernet-encrypted at rest and keyed by (user_id, provider). Every
write is an upsert on that key, so concurrent writers for different providers
never conflict and a refresh replaces the row in one statement.
"""

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.token_domain import IntegrationToken, RefreshedToken, ReconnectionNotice
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_oauth_tokens,
    encrypt_oauth_tokens,
)

logger = get_logger(__name__)

# Batch size for the proactive refresh sweep
EXPIRING_USERS_BATCH_SIZE = 100

_TOKEN_COLUMNS = """
    user_id::text AS user_id, provider, access_token, refresh_token,
    expires_at, scope, needs_reconnection
"""


class TokenServiceError(Exception):
    """Custom exception for token store operations."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


def _row_to_token(row: dict) -> IntegrationToken:
    access_token, refresh_token = decrypt_oauth_tokens(
        encrypted_access=row["access_token"], encrypted_refresh=row["refresh_token"]
    )
    return IntegrationToken(
        user_id=row["user_id"],
        provider=row["provider"],
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=row["expires_at"],
        scope=row["scope"] or "",
        needs_reconnection=row["needs_reconnection"],
    )


class TokenService:
    """Reads and writes IntegrationToken rows."""

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_user_tokens(self, user_id: str) -> list[IntegrationToken]:
        """
        All decryptable tokens for a user.

        A row that cannot be decrypted is logged and left out; it can never be
        used against the provider and the user has to reconnect it.
        """
        try:
            rows = await fetch_all(
                f"SELECT {_TOKEN_COLUMNS} FROM integration_tokens "
                "WHERE user_id = %s ORDER BY provider",
                (user_id,),
            )
        except DatabaseError as e:
            logger.error("Database error listing tokens", user_id=user_id, error=str(e))
            raise TokenServiceError(f"Database error listing tokens: {e}", user_id=user_id) from e

        tokens = []
        for row in rows:
            try:
                tokens.append(_row_to_token(row))
            except EncryptionError as e:
                logger.error(
                    "Token decryption failed",
                    user_id=user_id,
                    provider=row["provider"],
                    error=str(e),
                )
        return tokens

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_token(self, user_id: str, provider: str) -> IntegrationToken | None:
        try:
            row = await fetch_one(
                f"SELECT {_TOKEN_COLUMNS} FROM integration_tokens "
                "WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            if not row:
                logger.debug("No token found", user_id=user_id, provider=provider)
                return None
            return _row_to_token(row)

        except EncryptionError as e:
            logger.error(
                "Token decryption failed", user_id=user_id, provider=provider, error=str(e)
            )
            raise TokenServiceError(
                f"Token decryption failed: {e}", user_id=user_id, recoverable=False
            ) from e
        except DatabaseError as e:
            logger.error(
                "Database error retrieving token",
                user_id=user_id,
                provider=provider,
                error=str(e),
            )
            raise TokenServiceError(f"Database error retrieving token: {e}", user_id=user_id) from e

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def upsert_token(self, token: IntegrationToken) -> None:
        """Insert or replace the whole row for (user_id, provider)."""
        try:
            encrypted_access, encrypted_refresh = encrypt_oauth_tokens(
                access_token=token.access_token, refresh_token=token.refresh_token
            )
            await execute_query(
                """
                INSERT INTO integration_tokens (
                    user_id, provider, access_token, refresh_token,
                    expires_at, scope, needs_reconnection, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
                ON CONFLICT (user_id, provider)
                DO UPDATE SET
                    access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at = EXCLUDED.expires_at,
                    scope = EXCLUDED.scope,
                    needs_reconnection = EXCLUDED.needs_reconnection,
                    last_refresh_error = NULL,
                    updated_at = NOW()
                """,
                (
                    token.user_id,
                    token.provider,
                    encrypted_access,
                    encrypted_refresh,
                    token.expires_at,
                    token.scope,
                    token.needs_reconnection,
                ),
            )
        except EncryptionError as e:
            raise TokenServiceError(
                f"Token encryption failed: {e}", user_id=token.user_id, recoverable=False
            ) from e
        except DatabaseError as e:
            logger.error(
                "Database error storing token",
                user_id=token.user_id,
                provider=token.provider,
                error=str(e),
            )
            raise TokenServiceError(
                f"Database error storing token: {e}", user_id=token.user_id
            ) from e

    async def store_refreshed(
        self, user_id: str, provider: str, refreshed: RefreshedToken, scope: str = ""
    ) -> IntegrationToken:
        """Persist a successful refresh. Clears any reconnection flag."""
        token = IntegrationToken(
            user_id=user_id,
            provider=provider,
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token,
            expires_at=refreshed.expires_at,
            scope=refreshed.scope or scope,
            needs_reconnection=False,
        )
        await self.upsert_token(token)
        logger.info(
            "Refreshed token stored",
            user_id=user_id,
            provider=provider,
            expires_at=refreshed.expires_at,
        )
        return token

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_needs_reconnection(self, user_id: str, provider: str, reason: str) -> bool:
        try:
            affected = await execute_query(
                """
                UPDATE integration_tokens
                SET needs_reconnection = TRUE, last_refresh_error = %s, updated_at = NOW()
                WHERE user_id = %s AND provider = %s
                """,
                (reason[:500], user_id, provider),
            )
        except DatabaseError as e:
            raise TokenServiceError(
                f"Database error flagging reconnection: {e}", user_id=user_id
            ) from e

        logger.warning(
            "Integration flagged for reconnection",
            user_id=user_id,
            provider=provider,
            reason=reason,
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def has_unflagged_token(self, user_id: str) -> bool:
        row = await fetch_one(
            """
            SELECT EXISTS (
                SELECT 1 FROM integration_tokens
                WHERE user_id = %s AND needs_reconnection = FALSE
            ) AS has_token
            """,
            (user_id,),
        )
        return bool(row and row["has_token"])

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def users_with_expiring_tokens(
        self, expires_before: int, limit: int = EXPIRING_USERS_BATCH_SIZE
    ) -> list[str]:
        """Users owning at least one refreshable token that expires before the given epoch."""
        rows = await fetch_all(
            """
            SELECT DISTINCT user_id::text AS user_id
            FROM integration_tokens
            WHERE expires_at IS NOT NULL
              AND expires_at <= %s
              AND refresh_token IS NOT NULL
              AND needs_reconnection = FALSE
            ORDER BY user_id
            LIMIT %s
            """,
            (expires_before, limit),
        )
        return [row["user_id"] for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def users_with_valid_integrations(self) -> list[dict]:
        """Users with at least one token not flagged for reconnection, with their email."""
        return await fetch_all(
            """
            SELECT u.id::text AS user_id, u.email
            FROM users u
            WHERE EXISTS (
                SELECT 1 FROM integration_tokens t
                WHERE t.user_id = u.id AND t.needs_reconnection = FALSE
            )
            ORDER BY u.id
            """
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def users_needing_reconnection(self) -> list[ReconnectionNotice]:
        """Users with flagged integrations, one entry per user listing the flagged providers."""
        rows = await fetch_all(
            """
            SELECT u.id::text AS user_id, u.email,
                   array_agg(t.provider ORDER BY t.provider) AS providers
            FROM integration_tokens t
            JOIN users u ON u.id = t.user_id
            WHERE t.needs_reconnection = TRUE
            GROUP BY u.id, u.email
            ORDER BY u.id
            """
        )
        return [ReconnectionNotice.model_validate(row) for row in rows]


token_service = TokenService()
