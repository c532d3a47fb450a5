# deploy_agent/backend/core/config.py
from __future__ import annotations

import re
from datetime import timedelta
from typing import Any, Dict, List

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deploy_agent.backend.core.errors import ConfigurationError

MIN_PASSWORD_LENGTH = 8
BCRYPT_MAX_BYTES = 72
HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def parse_duration(value: str) -> timedelta:
    """
    "90s", "5m", "168h", "1h30m", "7d" or a bare number of seconds.
    """
    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    if _NUMBER_RE.fullmatch(text):
        return timedelta(seconds=float(text))

    total = 0.0
    pos = 0
    for m in _DURATION_PART_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=total)


def _check_password(label: str, password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"{label} must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"{label} must not exceed {BCRYPT_MAX_BYTES} bytes")


class Settings(BaseSettings):
    # ---- 실행 환경 ----
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # JWT
    jwt_access_secret: str = Field(..., alias="JWT_ACCESS_SECRET")
    jwt_refresh_secret: str = Field(..., alias="JWT_REFRESH_SECRET")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_duration: timedelta = Field(timedelta(minutes=5), alias="ACCESS_TOKEN_DURATION")
    refresh_token_duration: timedelta = Field(timedelta(days=7), alias="REFRESH_TOKEN_DURATION")
    session_sweep_interval: timedelta = Field(timedelta(hours=1), alias="SESSION_SWEEP_INTERVAL")

    # identities
    admin_username: str = Field(..., alias="ADMIN_USERNAME")
    admin_password: str = Field(..., alias="ADMIN_PASSWORD")
    extra_users: Dict[str, str] = Field(default_factory=dict, alias="EXTRA_USERS")
    bcrypt_rounds: int = Field(10, ge=4, le=15, alias="BCRYPT_ROUNDS")

    # cookies / http
    access_cookie_name: str = Field("access_token", alias="ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = Field("refresh_token", alias="REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = Field("/auth/refresh", alias="REFRESH_COOKIE_PATH")
    cors_allow_origins: str = Field(
        "http://localhost:3000,http://localhost:5173", alias="CORS_ALLOW_ORIGINS"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator(
        "access_token_duration",
        "refresh_token_duration",
        "session_sweep_interval",
        mode="before",
    )
    @classmethod
    def _coerce_duration(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_duration(v)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return timedelta(seconds=v)
        return v

    @field_validator("jwt_access_secret", "jwt_refresh_secret", "admin_username")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("jwt_algorithm")
    @classmethod
    def _hmac_only(cls, v: str) -> str:
        v = v.upper()
        if v not in HMAC_ALGORITHMS:
            raise ValueError(f"must be one of {', '.join(HMAC_ALGORITHMS)}")
        return v

    @field_validator("admin_password")
    @classmethod
    def _admin_password_strength(cls, v: str) -> str:
        _check_password("ADMIN_PASSWORD", v)
        return v

    @field_validator("extra_users")
    @classmethod
    def _extra_users_valid(cls, v: Dict[str, str]) -> Dict[str, str]:
        for username, password in v.items():
            if not username.strip():
                raise ValueError("EXTRA_USERS usernames must not be empty")
            _check_password(f"EXTRA_USERS password for {username!r}", password)
        return v

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        for name in ("access_token_duration", "refresh_token_duration", "session_sweep_interval"):
            if getattr(self, name) < timedelta(seconds=1):
                raise ValueError(f"{name} must be at least one second")
        # tokens and cookies carry whole seconds
        if self.access_max_age >= self.refresh_max_age:
            raise ValueError("ACCESS_TOKEN_DURATION must be shorter than REFRESH_TOKEN_DURATION")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if self.admin_username in self.extra_users:
            raise ValueError("EXTRA_USERS must not redefine ADMIN_USERNAME")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def access_max_age(self) -> int:
        return int(self.access_token_duration.total_seconds())

    @property
    def refresh_max_age(self) -> int:
        return int(self.refresh_token_duration.total_seconds())

    def seed_users(self) -> Dict[str, str]:
        users = {self.admin_username: self.admin_password}
        users.update(self.extra_users)
        return users


def load_settings(**overrides: Any) -> Settings:
    """Build settings or abort startup with ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        # input values are left out: they may contain secrets
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"invalid configuration: {problems}") from e
