from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Literal, Tuple, Union

from jose import jwt
from jose.exceptions import JOSEError, JWTClaimsError
from pydantic import ValidationError

from deploy_agent.backend.core.config import Settings
from deploy_agent.backend.core.errors import (
    BadSignature,
    ExpiredToken,
    InternalFault,
    MalformedToken,
    MissingToken,
)
from deploy_agent.backend.models.claims import AccessClaims, RefreshClaims

logger = logging.getLogger(__name__)

Family = Literal["access", "refresh"]
Clock = Callable[[], datetime]

TOKEN_ID_BYTES = 32  # 256 bits, hex encoded


# ---- 공통 ----
def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def refresh_fingerprint(token_id: str) -> str:
    """Registry key for a refresh token: one-way digest of its jti."""
    return sha256_hex(token_id)


def new_token_id() -> str:
    return secrets.token_hex(TOKEN_ID_BYTES)


class TokenCodec:
    """
    Signs and verifies the two token families with independent keys.
    Holds only read-only configuration, so it is safe to share across threads.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        algorithm: str = "HS256",
        clock: Clock = _utcnow,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets: Dict[str, str] = {"access": access_secret, "refresh": refresh_secret}
        self._ttl_seconds: Dict[str, int] = {
            "access": int(access_ttl.total_seconds()),
            "refresh": int(refresh_ttl.total_seconds()),
        }
        self.algorithm = algorithm
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = _utcnow) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=settings.access_token_duration,
            refresh_ttl=settings.refresh_token_duration,
            algorithm=settings.jwt_algorithm,
            clock=clock,
        )

    def _make_jwt(
        self, payload: Dict[str, Any], family: Family, now: datetime | None
    ) -> Tuple[str, datetime]:
        issued = int((now or self.clock()).timestamp())
        exp = issued + self._ttl_seconds[family]
        to_encode = payload.copy()
        to_encode["typ"] = family
        to_encode["iat"] = issued
        to_encode["exp"] = exp
        try:
            token = jwt.encode(to_encode, self._secrets[family], algorithm=self.algorithm)
        except JOSEError as e:
            logger.exception("failed to sign %s token", family)
            raise InternalFault(f"failed to sign {family} token") from e
        return token, datetime.fromtimestamp(exp, tz=timezone.utc)

    # ---- Access Token ----
    def issue_access(self, identity: str, now: datetime | None = None) -> Tuple[str, datetime]:
        return self._make_jwt({"sub": identity}, "access", now)

    # ---- Refresh Token ----
    def issue_refresh(
        self, identity: str, now: datetime | None = None
    ) -> Tuple[str, str, datetime]:
        token_id = new_token_id()
        token, exp = self._make_jwt({"sub": identity, "jti": token_id}, "refresh", now)
        return token, token_id, exp

    # ---- 검증 ----
    def verify(
        self, token: str | None, family: Family, now: datetime | None = None
    ) -> Union[AccessClaims, RefreshClaims]:
        """
        Checks, in order: decodable, signature, family, claim shape, expiry.
        Valid iff now < exp.
        """
        if not token:
            raise MissingToken(f"no {family} token presented")

        try:
            jwt.get_unverified_claims(token)
        except JOSEError as e:
            raise MalformedToken(f"undecodable {family} token: {e}") from e

        try:
            payload = jwt.decode(
                token,
                self._secrets[family],
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTClaimsError as e:
            raise MalformedToken(f"invalid {family} claims: {e}") from e
        except JOSEError as e:
            raise BadSignature(f"{family} signature rejected: {e}") from e

        if payload.get("typ") != family:
            raise MalformedToken(f"expected a {family} token, got {payload.get('typ')!r}")

        model = AccessClaims if family == "access" else RefreshClaims
        try:
            claims = model.model_validate(payload)
        except ValidationError as e:
            raise MalformedToken(f"invalid {family} claims: {e.error_count()} error(s)") from e

        current = now or self.clock()
        if not current < claims.exp:
            raise ExpiredToken(f"{family} token expired at {claims.exp.isoformat()}")
        return claims

    def verify_access(self, token: str | None, now: datetime | None = None) -> AccessClaims:
        return self.verify(token, "access", now)  # type: ignore[return-value]

    def verify_refresh(self, token: str | None, now: datetime | None = None) -> RefreshClaims:
        return self.verify(token, "refresh", now)  # type: ignore[return-value]

    @staticmethod
    def peek_token_id(token: str | None) -> str:
        """
        jti of a refresh token WITHOUT verifying it. Only for registry lookups;
        the token is verified afterwards.
        """
        if not token:
            raise MissingToken("no refresh token presented")
        try:
            claims = jwt.get_unverified_claims(token)
        except JOSEError as e:
            raise MalformedToken(f"undecodable refresh token: {e}") from e
        jti = claims.get("jti")
        if not isinstance(jti, str) or not jti:
            raise MalformedToken("refresh token has no jti")
        return jti


# ---- 쿠키 ----
def set_auth_cookies(response, settings: Settings, access_token: str, refresh_token: str) -> None:
    # 개발에서 http라면 ENVIRONMENT != production 이어야 쿠키가 전송됨
    response.set_cookie(
        key=settings.access_cookie_name,
        value=access_token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
        max_age=settings.access_max_age,
    )
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path=settings.refresh_cookie_path,
        max_age=settings.refresh_max_age,
    )


def clear_auth_cookies(response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.access_cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )
