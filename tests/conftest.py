from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from deploy_agent.backend.core.config import Settings, load_settings  # noqa: E402
from deploy_agent.backend.core.tokens import TokenCodec  # noqa: E402
from deploy_agent.backend.services.auth_service import SessionService  # noqa: E402
from deploy_agent.backend.services.credential_store import InMemoryCredentialStore  # noqa: E402
from deploy_agent.backend.services.session_registry import SessionRegistry  # noqa: E402

ADMIN_USER = "admin"
ADMIN_PASSWORD = "correct-pw"

_ENV_KEYS = (
    "ENVIRONMENT",
    "LOG_LEVEL",
    "JWT_ACCESS_SECRET",
    "JWT_REFRESH_SECRET",
    "JWT_ALGORITHM",
    "ACCESS_TOKEN_DURATION",
    "REFRESH_TOKEN_DURATION",
    "SESSION_SWEEP_INTERVAL",
    "ADMIN_USERNAME",
    "ADMIN_PASSWORD",
    "EXTRA_USERS",
    "BCRYPT_ROUNDS",
    "ACCESS_COOKIE_NAME",
    "REFRESH_COOKIE_NAME",
    "REFRESH_COOKIE_PATH",
    "CORS_ALLOW_ORIGINS",
)


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now += timedelta(**kwargs)
            return self._now


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        jwt_access_secret="test-access-secret",
        jwt_refresh_secret="test-refresh-secret",
        admin_username=ADMIN_USER,
        admin_password=ADMIN_PASSWORD,
        bcrypt_rounds=4,
        access_token_duration="5m",
        refresh_token_duration="168h",
    )
    values.update(overrides)
    return load_settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def codec(settings, clock) -> TokenCodec:
    return TokenCodec.from_settings(settings, clock=clock)


@pytest.fixture
def registry(clock) -> SessionRegistry:
    reg = SessionRegistry(clock=clock)
    yield reg
    reg.shutdown()


@pytest.fixture
def credentials(settings) -> InMemoryCredentialStore:
    return InMemoryCredentialStore.from_settings(settings)


@pytest.fixture
def service(credentials, codec, registry, settings, clock) -> SessionService:
    return SessionService(
        credentials,
        codec,
        registry,
        refresh_ttl=settings.refresh_token_duration,
        clock=clock,
    )
