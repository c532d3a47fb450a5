import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from deploy_agent.backend.core.config import Settings
from deploy_agent.backend.core.errors import TokenError
from deploy_agent.backend.core.tokens import TokenCodec
from deploy_agent.backend.services.auth_service import SessionService

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_codec(request: Request) -> TokenCodec:
    return request.app.state.token_codec


def get_session_service(request: Request) -> SessionService:
    return request.app.state.session_service


def _extract_jwt(request: Request, settings: Settings, token: str | None) -> str | None:
    return token or request.cookies.get(settings.access_cookie_name)


def authenticate(codec: TokenCodec, token: str | None) -> str:
    """Identity behind an access token, or a TokenError subclass."""
    return codec.verify_access(token).identity


def get_current_user(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
    settings: Settings = Depends(get_settings),
    codec: TokenCodec = Depends(get_token_codec),
) -> str:
    """
    Strict auth dependency. Every failure (missing, malformed, expired, forged)
    gets the same 401; the reason is only logged.
    """
    try:
        identity = authenticate(codec, _extract_jwt(request, settings, token))
    except TokenError as e:
        logger.info("unauthorized %s %s: %s", request.method, request.url.path, type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # request.state is per request; nothing leaks between calls
    request.state.identity = identity
    return identity
