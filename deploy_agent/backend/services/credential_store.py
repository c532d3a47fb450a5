from __future__ import annotations

import logging
import threading
from typing import Dict, Protocol

import bcrypt

from deploy_agent.backend.core.config import BCRYPT_MAX_BYTES, Settings
from deploy_agent.backend.core.errors import BadPassword, IdentityExists, UnknownIdentity
from deploy_agent.backend.models.identity import Identity

logger = logging.getLogger(__name__)


class CredentialVerifier(Protocol):
    """What the session service needs from an identity store."""

    def verify(self, username: str, password: str) -> Identity: ...

    def exists(self, username: str) -> bool: ...


class InMemoryCredentialStore:
    """
    username -> bcrypt hash, seeded once at startup.
    verify() only reads; add() is an administrative helper and is serialized.
    """

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds
        self._users: Dict[str, Identity] = {}
        self._add_lock = threading.Lock()
        # unknown usernames are checked against this so both failure paths cost the same
        self._dummy_hash = bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt(rounds))

    @classmethod
    def from_settings(cls, settings: Settings) -> "InMemoryCredentialStore":
        store = cls(rounds=settings.bcrypt_rounds)
        for username, password in settings.seed_users().items():
            store.add(username, password)
            logger.info("user initialized: %s", username)
        return store

    def add(self, username: str, password: str) -> Identity:
        if not username:
            raise ValueError("username must not be empty")
        secret = password.encode("utf-8")
        if len(secret) > BCRYPT_MAX_BYTES:
            raise ValueError(f"password exceeds {BCRYPT_MAX_BYTES} bytes")

        with self._add_lock:
            if username in self._users:
                raise IdentityExists(f"user already exists: {username}")
            identity = Identity(
                username=username,
                password_hash=bcrypt.hashpw(secret, bcrypt.gensalt(self.rounds)),
            )
            self._users[username] = identity
        return identity

    def verify(self, username: str, password: str) -> Identity:
        identity = self._users.get(username)
        secret = password.encode("utf-8")
        too_long = len(secret) > BCRYPT_MAX_BYTES
        if too_long:
            secret = secret[:BCRYPT_MAX_BYTES]

        if identity is None:
            bcrypt.checkpw(secret, self._dummy_hash)
            raise UnknownIdentity(username)

        if not bcrypt.checkpw(secret, identity.password_hash) or too_long:
            raise BadPassword(username)
        return identity

    def exists(self, username: str) -> bool:
        return username in self._users

    def count(self) -> int:
        return len(self._users)
