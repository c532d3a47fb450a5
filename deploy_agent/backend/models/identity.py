from pydantic import BaseModel, ConfigDict


class Identity(BaseModel):
    """Immutable once created; never deleted."""
    model_config = ConfigDict(frozen=True)

    username: str
    password_hash: bytes  # bcrypt, salt embedded
