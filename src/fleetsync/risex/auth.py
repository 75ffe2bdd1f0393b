"""
Rise-X OAuth credential lifecycle: store, refresh just-in-time, revoke.

Tokens are persisted only as TokenVault ciphertext on RiseXConnection. The
access token is refreshed when it is within REFRESH_BUFFER of expiry:

    get_valid_access_token(user)
      no connection / inactive      -> None
      expires_at - 5min > now       -> decrypt + return stored token
      else refresh grant
        2xx                         -> persist new tokens, return access token
        error response              -> deactivate connection, None
        no response (network)       -> None, connection left active

A deactivated connection stays inactive until the user authorizes again
(store_connection is the only path back to active), so a rejected refresh
token is never retried.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from fleetsync.models.connection import RiseXConnection
from fleetsync.models.sync import utc_now
from fleetsync.risex.client import RiseXClient, UpstreamUnavailableError
from fleetsync.risex.vault import TokenVault

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_EXPIRES_IN = 3600


# ── Exceptions ────────────────────────────────────────────────────────────────

class CredentialUnavailableError(RuntimeError):
    """Raised when a sync needs a token and the user has no usable one."""


class AuthorizationFailedError(RuntimeError):
    """Raised when the token endpoint rejects an authorization code."""


# ── Main class ────────────────────────────────────────────────────────────────

class TokenManager:
    """
    Sole writer of RiseXConnection rows.

    Args:
        engine: SQLAlchemy engine.
        vault: TokenVault used for every token read and write.
        client: RiseXClient (or AsyncMock in tests).
    """

    def __init__(self, engine, vault: TokenVault, client: RiseXClient):
        self.engine = engine
        self.vault = vault
        self.client = client
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_connection(self, user_id: str) -> Optional[RiseXConnection]:
        with Session(self.engine) as s:
            return s.exec(
                select(RiseXConnection).where(RiseXConnection.user_id == user_id)
            ).first()

    def has_active_connection(self, user_id: str) -> bool:
        conn = self.get_connection(user_id)
        return bool(conn and conn.is_active)

    def connections_needing_sync(
        self, older_than_minutes: int = 15, limit: int = 50
    ) -> List[str]:
        """
        User ids of active connections not synced within the window.

        Never-synced connections come first, then oldest sync first.
        """
        cutoff = utc_now() - timedelta(minutes=older_than_minutes)
        with Session(self.engine) as s:
            rows = s.exec(
                select(RiseXConnection)
                .where(RiseXConnection.is_active == True)  # noqa: E712
                .where(
                    or_(
                        RiseXConnection.last_sync_at == None,  # noqa: E711
                        RiseXConnection.last_sync_at < cutoff,
                    )
                )
                .order_by(
                    RiseXConnection.last_sync_at.asc().nulls_first(),
                    RiseXConnection.id,
                )
                .limit(limit)
            ).all()
        return [row.user_id for row in rows]

    # ── Authorization ─────────────────────────────────────────────────────────

    def store_connection(
        self,
        user_id: str,
        token_response: Dict[str, Any],
        profile: Optional[Dict[str, Any]] = None,
    ) -> RiseXConnection:
        """
        Encrypt and upsert an active connection for `user_id`.

        Args:
            token_response: Token endpoint body (access_token, refresh_token,
                expires_in, token_type, scope).
            profile: Optional userinfo body (sub, email).

        Raises:
            AuthorizationFailedError: if the response carries no access token.
        """
        access_token = token_response.get("access_token")
        if not access_token:
            raise AuthorizationFailedError("Token response has no access_token")

        profile = profile or {}
        now = utc_now()
        expires_in = int(token_response.get("expires_in") or DEFAULT_EXPIRES_IN)
        refresh_token = token_response.get("refresh_token")

        with Session(self.engine) as s:
            conn = s.exec(
                select(RiseXConnection).where(RiseXConnection.user_id == user_id)
            ).first()
            if conn is None:
                conn = RiseXConnection(
                    user_id=user_id,
                    access_token_encrypted="",
                    token_expires_at=now,
                    connected_at=now,
                )
            conn.access_token_encrypted = self.vault.encrypt(access_token)
            conn.refresh_token_encrypted = (
                self.vault.encrypt(refresh_token) if refresh_token else None
            )
            conn.token_expires_at = now + timedelta(seconds=expires_in)
            conn.token_type = token_response.get("token_type") or "Bearer"
            conn.scopes = token_response.get("scope") or ""
            conn.upstream_user_id = profile.get("sub") or conn.upstream_user_id
            conn.upstream_email = profile.get("email") or conn.upstream_email
            conn.is_active = True
            conn.deactivated_reason = None
            conn.deactivated_at = None
            conn.updated_at = now
            s.add(conn)
            s.commit()
            s.refresh(conn)

        logger.info("Stored Rise-X connection for user %s", user_id)
        return conn

    async def complete_authorization(
        self, user_id: str, code: str, redirect_uri: str, code_verifier: str
    ) -> RiseXConnection:
        """
        Exchange an authorization code, fetch the profile, store the connection.

        Raises:
            AuthorizationFailedError: if the code exchange is rejected.
            UpstreamUnavailableError: if the token endpoint is unreachable.
        """
        response = await self.client.exchange_code(code, redirect_uri, code_verifier)
        if not response.ok or not isinstance(response.body, dict):
            raise AuthorizationFailedError(
                f"Code exchange failed: {response.error_message()}"
            )

        profile = None
        try:
            info = await self.client.get_user_info(response.body["access_token"])
            if info.ok and isinstance(info.body, dict):
                profile = info.body
        except (UpstreamUnavailableError, KeyError) as exc:
            logger.warning("Could not fetch Rise-X profile for %s: %s", user_id, exc)

        return self.store_connection(user_id, response.body, profile)

    # ── Token access ──────────────────────────────────────────────────────────

    @staticmethod
    def _needs_refresh(conn: RiseXConnection, now: datetime) -> bool:
        return now > conn.token_expires_at - REFRESH_BUFFER

    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        """Return a usable access token for `user_id`, refreshing if due."""
        conn = self.get_connection(user_id)
        if conn is None or not conn.is_active:
            return None
        if not self._needs_refresh(conn, utc_now()):
            token = self.vault.decrypt(conn.access_token_encrypted)
            if token is None:
                self.mark_connection_inactive(user_id, "Stored access token unreadable")
            return token

        lock = self._refresh_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            # Another task may have refreshed while we waited
            conn = self.get_connection(user_id)
            if conn is None or not conn.is_active:
                return None
            if not self._needs_refresh(conn, utc_now()):
                return self.vault.decrypt(conn.access_token_encrypted)
            return await self._refresh(conn)

    async def _refresh(self, conn: RiseXConnection) -> Optional[str]:
        user_id = conn.user_id
        refresh_token = self.vault.decrypt(conn.refresh_token_encrypted)
        if refresh_token is None:
            self.mark_connection_inactive(user_id, "Refresh token missing or unreadable")
            return None

        try:
            response = await self.client.refresh_token(refresh_token)
        except UpstreamUnavailableError as exc:
            logger.warning("Token refresh for %s could not reach Rise-X: %s", user_id, exc)
            return None

        if not response.ok or not isinstance(response.body, dict) \
                or not response.body.get("access_token"):
            reason = f"Token refresh failed: {response.error_message()}"
            logger.warning("%s (user %s)", reason, user_id)
            self.mark_connection_inactive(user_id, reason)
            return None

        body = response.body
        now = utc_now()
        with Session(self.engine) as s:
            db_conn = s.get(RiseXConnection, conn.id)
            db_conn.access_token_encrypted = self.vault.encrypt(body["access_token"])
            if body.get("refresh_token"):
                db_conn.refresh_token_encrypted = self.vault.encrypt(body["refresh_token"])
            db_conn.token_expires_at = now + timedelta(
                seconds=int(body.get("expires_in") or DEFAULT_EXPIRES_IN)
            )
            if body.get("token_type"):
                db_conn.token_type = body["token_type"]
            if body.get("scope"):
                db_conn.scopes = body["scope"]
            db_conn.last_token_refresh_at = now
            db_conn.updated_at = now
            s.add(db_conn)
            s.commit()

        logger.info("Refreshed Rise-X token for user %s", user_id)
        return body["access_token"]

    # ── State changes ─────────────────────────────────────────────────────────

    def mark_connection_inactive(self, user_id: str, reason: str) -> None:
        now = utc_now()
        with Session(self.engine) as s:
            conn = s.exec(
                select(RiseXConnection).where(RiseXConnection.user_id == user_id)
            ).first()
            if conn is None:
                return
            conn.is_active = False
            conn.deactivated_reason = reason
            conn.deactivated_at = now
            conn.updated_at = now
            s.add(conn)
            s.commit()
        logger.warning("Deactivated Rise-X connection for %s: %s", user_id, reason)

    def update_last_sync(self, user_id: str) -> None:
        with Session(self.engine) as s:
            conn = s.exec(
                select(RiseXConnection).where(RiseXConnection.user_id == user_id)
            ).first()
            if conn is None:
                return
            conn.last_sync_at = utc_now()
            s.add(conn)
            s.commit()

    async def disconnect(self, user_id: str) -> bool:
        """
        Revoke upstream (best effort) and delete the connection.

        Returns:
            True if a connection existed.
        """
        conn = self.get_connection(user_id)
        if conn is None:
            return False

        token = self.vault.decrypt(conn.access_token_encrypted)
        if token:
            try:
                response = await self.client.revoke_token(token)
                if not response.ok:
                    logger.warning(
                        "Rise-X revocation for %s returned %s", user_id, response.status
                    )
            except UpstreamUnavailableError as exc:
                logger.warning("Rise-X revocation for %s failed: %s", user_id, exc)

        with Session(self.engine) as s:
            db_conn = s.get(RiseXConnection, conn.id)
            if db_conn is not None:
                s.delete(db_conn)
                s.commit()
        self._refresh_locks.pop(user_id, None)
        logger.info("Disconnected Rise-X for user %s", user_id)
        return True
