from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from jose import jwt

from conftest import ADMIN_PASSWORD, ADMIN_USER, make_settings
from deploy_agent.backend.core.errors import (
    AuthError,
    BadSignature,
    ExpiredToken,
    InternalFault,
    InvalidCredentials,
    MalformedToken,
    MissingToken,
    SessionNotFound,
)
from deploy_agent.backend.core.tokens import TokenCodec, refresh_fingerprint
from deploy_agent.backend.services.auth_service import SessionService
from deploy_agent.backend.services.credential_store import InMemoryCredentialStore
from deploy_agent.backend.services.session_registry import SessionRegistry


def _session_of(service, refresh_token):
    return service.registry.lookup(refresh_fingerprint(TokenCodec.peek_token_id(refresh_token)))


# ---- login ----
def test_login_issues_two_independent_tokens_and_registers_session(service, codec):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD, "pytest-agent")

    assert pair.access_token != pair.refresh_token
    assert codec.verify_access(pair.access_token).identity == ADMIN_USER
    assert codec.verify_refresh(pair.refresh_token).identity == ADMIN_USER
    assert pair.access_expires_at < pair.refresh_expires_at

    session = _session_of(service, pair.refresh_token)
    assert session is not None
    assert session.identity == ADMIN_USER
    assert session.user_agent == "pytest-agent"
    assert service.registry.count() == 1


def test_registry_never_holds_the_raw_refresh_token(service):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD)
    token_id = TokenCodec.peek_token_id(pair.refresh_token)
    session = _session_of(service, pair.refresh_token)

    assert session.refresh_id not in (pair.refresh_token, token_id)
    assert pair.refresh_token not in repr(service.registry._sessions)


def test_login_failures_are_indistinguishable(service):
    with pytest.raises(InvalidCredentials) as wrong_pw:
        service.login(ADMIN_USER, "wrong-password")
    with pytest.raises(InvalidCredentials) as unknown:
        service.login("nobody", ADMIN_PASSWORD)

    assert type(wrong_pw.value) is InvalidCredentials
    assert type(unknown.value) is InvalidCredentials
    assert str(wrong_pw.value) == str(unknown.value)
    assert service.registry.count() == 0


def test_registry_fault_is_internal_not_unauthorized(service, monkeypatch):
    def broken_create(*args, **kwargs):
        raise RuntimeError("registry on fire")

    monkeypatch.setattr(service.registry, "create", broken_create)

    with pytest.raises(InternalFault) as excinfo:
        service.login(ADMIN_USER, ADMIN_PASSWORD)
    assert not isinstance(excinfo.value, AuthError)


# ---- refresh ----
def test_refresh_rotates_and_old_token_is_dead(service, codec, clock):
    first = service.login(ADMIN_USER, ADMIN_PASSWORD)
    clock.advance(minutes=1)

    second = service.refresh(first.refresh_token)

    assert second.refresh_token != first.refresh_token
    assert codec.verify_access(second.access_token).identity == ADMIN_USER
    assert service.registry.count() == 1
    assert _session_of(service, first.refresh_token) is None

    # still correctly signed and unexpired, but consumed
    assert codec.verify_refresh(first.refresh_token).identity == ADMIN_USER
    with pytest.raises(SessionNotFound):
        service.refresh(first.refresh_token)

    # the replay attempt does not disturb the live session
    third = service.refresh(second.refresh_token)
    assert third.identity == ADMIN_USER


def test_rotation_carries_created_at_forward(service, clock):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD, "ua-1")
    created = _session_of(service, pair.refresh_token).created_at
    clock.advance(hours=3)

    rotated = service.refresh(pair.refresh_token, "ua-2")
    session = _session_of(service, rotated.refresh_token)

    assert session.created_at == created
    assert session.last_used_at == clock()
    assert session.user_agent == "ua-2"


def test_session_lifetime_is_bounded_across_rotations(service, clock):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD)
    clock.advance(days=6)
    pair = service.refresh(pair.refresh_token)

    clock.advance(days=2)  # token has 5 days left, the session is 8 days old
    with pytest.raises(SessionNotFound):
        service.refresh(pair.refresh_token)
    assert service.registry.count() == 0


def test_expired_refresh_token_revokes_session(service, clock):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD)
    clock.advance(days=7, seconds=1)

    with pytest.raises(ExpiredToken):
        service.refresh(pair.refresh_token)
    assert service.registry.count() == 0


def test_forged_refresh_token_with_live_jti_revokes_session(service, clock):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD)
    token_id = TokenCodec.peek_token_id(pair.refresh_token)
    iat = int(clock().timestamp())
    forged = jwt.encode(
        {"sub": ADMIN_USER, "jti": token_id, "typ": "refresh", "iat": iat, "exp": iat + 3600},
        "attacker-key",
        algorithm="HS256",
    )

    with pytest.raises(BadSignature):
        service.refresh(forged)
    # compromise signal: the genuine token is dead too
    with pytest.raises(SessionNotFound):
        service.refresh(pair.refresh_token)


def test_access_token_cannot_be_used_to_refresh(service):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD)

    with pytest.raises(MalformedToken):
        service.refresh(pair.access_token)
    assert service.registry.count() == 1


@pytest.mark.parametrize("token", [None, "", "garbage"])
def test_refresh_rejects_missing_or_undecodable(service, token):
    with pytest.raises((MissingToken, MalformedToken)):
        service.refresh(token)


def test_revoke_all_kills_every_outstanding_refresh_token(service):
    pairs = [service.login(ADMIN_USER, ADMIN_PASSWORD) for _ in range(3)]

    assert service.revoke_all(ADMIN_USER) == 3
    for pair in pairs:
        with pytest.raises(SessionNotFound):
            service.refresh(pair.refresh_token)


# ---- logout ----
def test_logout_revokes_and_is_idempotent(service):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD)

    assert service.logout(pair.refresh_token) is True
    assert service.logout(pair.refresh_token) is False
    with pytest.raises(SessionNotFound):
        service.refresh(pair.refresh_token)


@pytest.mark.parametrize("token", [None, "", "not-a-token"])
def test_logout_tolerates_junk(service, token):
    assert service.logout(token) is False


# ---- concurrency ----
def test_concurrent_logins_for_distinct_identities(clock):
    m = 24
    users = {f"user-{i}": f"password-{i}" for i in range(m)}
    settings = make_settings(extra_users=users)
    service = SessionService(
        InMemoryCredentialStore.from_settings(settings),
        TokenCodec.from_settings(settings, clock=clock),
        SessionRegistry(clock=clock),
        refresh_ttl=settings.refresh_token_duration,
        clock=clock,
    )
    barrier = threading.Barrier(m)
    errors = []

    def worker(name, password):
        barrier.wait()
        try:
            service.login(name, password)
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=item) for item in users.items()]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert service.registry.count() == m
    for name in users:
        assert service.registry.count_for(name) == 1


def test_concurrent_refresh_with_same_token_has_one_winner(service):
    pair = service.login(ADMIN_USER, ADMIN_PASSWORD)
    n = 12
    barrier = threading.Barrier(n)
    wins, rejections = [], []

    def worker():
        barrier.wait()
        try:
            wins.append(service.refresh(pair.refresh_token))
        except AuthError as e:
            rejections.append(e)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(rejections) == n - 1
    assert all(isinstance(e, SessionNotFound) for e in rejections)
    assert service.registry.count() == 1
    assert _session_of(service, wins[0].refresh_token) is not None


def test_refresh_ttl_follows_settings(service, settings):
    assert service.refresh_ttl == settings.refresh_token_duration == timedelta(days=7)
