from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from pydantic import BaseModel

from deploy_agent.backend.core.errors import (
    AuthError,
    InternalFault,
    InvalidCredentials,
    MalformedToken,
    SessionNotFound,
    TokenError,
)
from deploy_agent.backend.core.tokens import TokenCodec, refresh_fingerprint
from deploy_agent.backend.services.credential_store import CredentialVerifier
from deploy_agent.backend.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class TokenPair(BaseModel):
    identity: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime


@contextmanager
def _internal_faults(op: str) -> Iterator[None]:
    """Anything that is not the caller's fault becomes InternalFault."""
    try:
        yield
    except (AuthError, InternalFault):
        raise
    except Exception as e:
        logger.exception("%s failed", op)
        raise InternalFault(f"{op} failed") from e


class SessionService:
    """
    login / refresh / logout over the credential store, token codec and
    session registry.

    Session states: absent -> active (login) -> active (each refresh; new jti,
    same created_at) -> absent (logout, revoke, sweep or lifetime exceeded).
    """

    def __init__(
        self,
        credentials: CredentialVerifier,
        codec: TokenCodec,
        registry: SessionRegistry,
        *,
        refresh_ttl: timedelta,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.credentials = credentials
        self.codec = codec
        self.registry = registry
        self.refresh_ttl = refresh_ttl
        self.clock = clock

    def _issue_pair(self, identity: str, now: datetime) -> tuple[TokenPair, str]:
        access, access_exp = self.codec.issue_access(identity, now)
        refresh, token_id, refresh_exp = self.codec.issue_refresh(identity, now)
        pair = TokenPair(
            identity=identity,
            access_token=access,
            access_expires_at=access_exp,
            refresh_token=refresh,
            refresh_expires_at=refresh_exp,
        )
        return pair, token_id

    def login(self, username: str, password: str, user_agent: Optional[str] = None) -> TokenPair:
        """
        Verify credentials, mint both tokens, register the session.
        Unknown user and wrong password both surface as a bare InvalidCredentials.
        """
        try:
            identity = self.credentials.verify(username, password)
        except InvalidCredentials as e:
            logger.info("login rejected for %r (%s)", username, type(e).__name__)
            raise InvalidCredentials("invalid credentials") from None

        now = self.clock()
        with _internal_faults("login"):
            pair, token_id = self._issue_pair(identity.username, now)
            self.registry.create(
                identity.username, refresh_fingerprint(token_id), user_agent, now=now
            )
        logger.info("login: %s", identity.username)
        return pair

    def refresh(self, refresh_token: Optional[str], user_agent: Optional[str] = None) -> TokenPair:
        """
        Registry lookup first (a consumed or revoked token is rejected even if
        its signature still verifies), then signature and expiry. A known
        session whose token fails verification is revoked.
        On success the old session is gone before the new pair is returned.
        """
        now = self.clock()
        token_id = self.codec.peek_token_id(refresh_token)
        refresh_id = refresh_fingerprint(token_id)

        with _internal_faults("refresh"):
            session = self.registry.lookup(refresh_id)
        if session is None:
            logger.warning("refresh rejected: no session (replayed, revoked, swept or unknown)")
            raise SessionNotFound("no session for refresh token")

        try:
            claims = self.codec.verify_refresh(refresh_token, now)
            if claims.identity != session.identity:
                raise MalformedToken("refresh token subject does not match session owner")
        except TokenError as e:
            self.registry.revoke(refresh_id)
            logger.warning(
                "refresh token for %s failed verification (%s: %s); session revoked",
                session.identity, type(e).__name__, e,
            )
            raise

        if session.is_expired(now, self.refresh_ttl):
            self.registry.revoke(refresh_id)
            logger.info("refresh rejected: session for %s exceeded its lifetime", session.identity)
            raise SessionNotFound("session exceeded its lifetime")

        with _internal_faults("refresh"):
            pair, new_token_id = self._issue_pair(session.identity, now)
            self.registry.rotate(
                refresh_id, refresh_fingerprint(new_token_id), user_agent, now=now
            )
        logger.info("refresh: rotated session for %s", session.identity)
        return pair

    def logout(self, refresh_token: Optional[str]) -> bool:
        """
        Best effort: the token is not verified, only used to find the session.
        Returns whether a session was removed.
        """
        try:
            token_id = self.codec.peek_token_id(refresh_token)
        except TokenError:
            return False
        with _internal_faults("logout"):
            removed = self.registry.revoke(refresh_fingerprint(token_id))
        if removed:
            logger.info("logout: session revoked")
        return removed

    def revoke_all(self, identity: str) -> int:
        """Log out everywhere."""
        with _internal_faults("revoke_all"):
            return self.registry.revoke_all_for(identity)
