"""
Authentication API routes for registration, login and logout.

Tokens are opaque session ids. Clients send them back in the
``x-auth-token`` header (the CLI), as a bearer token, or via the HTTP-only
session cookie set on login (browsers).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from nex_registry.core.dependencies import get_db_manager, request_token, require_user
from nex_registry.domain.models import AuthUser, CredentialsRequest
from nex_registry.services.authentication import (
    SESSION_COOKIE_NAME,
    clear_session,
    create_session,
    create_user,
    verify_user_password,
)
from nex_registry.storage.db_manager import DatabaseManager


router = APIRouter()


def _user_payload(user: AuthUser) -> dict:
    return {"id": user.user_id, "username": user.username, "role": user.role}


def _issue_session(db: DatabaseManager, response: Response, user: AuthUser) -> dict:
    session = create_session(db, user.username)
    config = db.get_repository_config()
    # httponly=True keeps the token away from page scripts; samesite="lax"
    # still allows normal navigation.
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session.session_id,
        httponly=True,
        max_age=config.session_max_age_days * 24 * 3600,
        samesite="lax",
    )
    return {"token": session.session_id, "user": _user_payload(user)}


@router.post("/register")
async def register(
    body: CredentialsRequest,
    response: Response,
    db: DatabaseManager = Depends(get_db_manager),
) -> dict:
    """
    Create an account and log it in.

    The first account created on a fresh registry is the administrator;
    every later account is a regular user.

    Returns:
        ``{"token": ..., "user": {...}}``; 400 if the username is taken.
    """
    try:
        user = create_user(db, body.username, body.password)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A user with that username already exists.",
        )
    return _issue_session(db, response, user)


@router.post("/login")
async def login(
    body: CredentialsRequest,
    response: Response,
    db: DatabaseManager = Depends(get_db_manager),
) -> dict:
    """
    Verify credentials and return a fresh token.
    """
    if not verify_user_password(db, body.username, body.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password.",
        )

    user = next(u for u in db.get_auth_store().users if u.username == body.username)
    return _issue_session(db, response, user)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    db: DatabaseManager = Depends(get_db_manager),
) -> dict:
    """
    Forget the caller's session. Always succeeds, even without a session.
    """
    clear_session(db, request_token(request))
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"msg": "Logged out"}


@router.get("/me")
async def me(user: AuthUser = Depends(require_user)) -> dict:
    return _user_payload(user)
