from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AccessClaims(BaseModel):
    """Lives only inside a signed access token; never stored server-side."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sub: str = Field(min_length=1)
    typ: Literal["access"] = "access"
    iat: datetime
    exp: datetime

    @property
    def identity(self) -> str:
        return self.sub


class RefreshClaims(BaseModel):
    """
    jti: random per issuance (256 bits, hex). The session registry is keyed by
    a digest of it, never by the token string itself.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sub: str = Field(min_length=1)
    jti: str = Field(min_length=1)
    typ: Literal["refresh"] = "refresh"
    iat: datetime
    exp: datetime

    @property
    def identity(self) -> str:
        return self.sub

    @property
    def token_id(self) -> str:
        return self.jti
