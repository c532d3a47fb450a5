from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Session(BaseModel):
    """
    Server-side record of one live refresh token.
    - refresh_id: sha256 fingerprint of the refresh token's jti (registry key)
    - created_at: carried forward across rotations (session continuity)
    - last_used_at: time of the login or rotation that produced this entry
    """
    model_config = ConfigDict(frozen=True)

    identity: str
    refresh_id: str
    created_at: datetime
    last_used_at: datetime
    user_agent: Optional[str] = None

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def is_expired(self, now: datetime, max_age: timedelta) -> bool:
        return self.age(now) > max_age
