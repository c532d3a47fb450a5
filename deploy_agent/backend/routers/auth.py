from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from deploy_agent.backend.core.config import Settings
from deploy_agent.backend.core.errors import AuthError, InvalidCredentials
from deploy_agent.backend.core.tokens import clear_auth_cookies, set_auth_cookies
from deploy_agent.backend.dependencies.auth import (
    get_current_user,
    get_session_service,
    get_settings,
)
from deploy_agent.backend.services.auth_service import SessionService


auth_router = APIRouter(prefix="/auth", tags=["auth"])


# ──────────────────────────────────────────────────────────────────────────────
# Pydantic 모델
# ──────────────────────────────────────────────────────────────────────────────
class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    authenticated: bool = True
    username: str


class RefreshResponse(BaseModel):
    message: str = "Token refreshed successfully"
    expires_in: int  # seconds


class MeResponse(BaseModel):
    username: str
    authenticated: bool = True


class SessionsResponse(BaseModel):
    username: str
    active_sessions: int
    total_sessions: int


# ──────────────────────────────────────────────────────────────────────────────
# 로그인
# ──────────────────────────────────────────────────────────────────────────────
@auth_router.post("/login", response_model=LoginResponse)
def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    service: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
):
    try:
        pair = service.login(body.username, body.password, request.headers.get("user-agent"))
    except InvalidCredentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    set_auth_cookies(response, settings, pair.access_token, pair.refresh_token)
    return LoginResponse(username=pair.identity)


# ──────────────────────────────────────────────────────────────────────────────
# Refresh Token rotation
# ──────────────────────────────────────────────────────────────────────────────
@auth_router.post("/refresh", response_model=RefreshResponse)
def refresh(
    request: Request,
    response: Response,
    service: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
):
    """
    Rotate the refresh cookie and issue a new access cookie.
    On any failure both cookies are cleared.
    """
    try:
        pair = service.refresh(
            request.cookies.get(settings.refresh_cookie_name),
            request.headers.get("user-agent"),
        )
    except AuthError:
        # HTTPException would drop the cookie headers, so build the 401 here
        failed = JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Invalid or expired refresh token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
        clear_auth_cookies(failed, settings)
        return failed

    set_auth_cookies(response, settings, pair.access_token, pair.refresh_token)
    return RefreshResponse(expires_in=settings.access_max_age)


# ──────────────────────────────────────────────────────────────────────────────
# 로그아웃
# ──────────────────────────────────────────────────────────────────────────────
@auth_router.post("/logout")
def logout(
    request: Request,
    response: Response,
    service: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
):
    """
    Revoke the session behind the refresh cookie, if one was sent, and clear
    both cookies. Also mounted under the refresh cookie's path (see main.py).
    """
    service.logout(request.cookies.get(settings.refresh_cookie_name))
    clear_auth_cookies(response, settings)
    return {"message": "Logged out successfully"}


@auth_router.post("/logout-all")
def logout_all(
    response: Response,
    username: str = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
    settings: Settings = Depends(get_settings),
):
    revoked = service.revoke_all(username)
    clear_auth_cookies(response, settings)
    return {"message": "All sessions revoked", "revoked": revoked}


# ──────────────────────────────────────────────────────────────────────────────
# 현재 사용자
# ──────────────────────────────────────────────────────────────────────────────
@auth_router.get("/me", response_model=MeResponse)
def me(username: str = Depends(get_current_user)):
    return MeResponse(username=username)


@auth_router.get("/sessions", response_model=SessionsResponse)
def sessions(
    username: str = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    return SessionsResponse(
        username=username,
        active_sessions=service.registry.count_for(username),
        total_sessions=service.registry.count(),
    )
