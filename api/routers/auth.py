import logging
from typing import Annotated

import redis
from fastapi import APIRouter, Body, Depends, Request, Response
from sqlmodel import Session

from api.db import models
from api.db.crud import user as user_crud
from api.utils import auth
from api.utils.config import Settings
from api.utils.dependencies import get_redis, get_session, get_settings
from api.utils.errors import UnauthorizedError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["auth"],
    responses={404: {"description": "Not found"}},
)


def set_auth_cookies(
    response: Response, tokens: models.TokenPair, settings: Settings
) -> None:
    response.set_cookie(
        key=auth.ACCESS_COOKIE,
        value=tokens.access_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    response.set_cookie(
        key=auth.REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for key in (auth.ACCESS_COOKIE, auth.REFRESH_COOKIE):
        response.delete_cookie(
            key=key, httponly=True, secure=settings.COOKIE_SECURE, samesite="lax"
        )


@router.post("/login")
def login(
    response: Response,
    credentials: models.LoginRequest,
    session: Annotated[Session, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> models.ApiResponse[models.LoginResult]:
    user = auth.authenticate_user(session, credentials.identifier, credentials.password)
    # Cookies are only set once the refresh token has been stored
    tokens = auth.issue_token_pair(session, user, settings)
    set_auth_cookies(response, tokens, settings)
    logger.info("User %s logged in", user.user_id)
    return models.ApiResponse(
        data=models.LoginResult(
            user=models.UserSafe.model_validate(user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        ),
        message="User logged in successfully",
    )


@router.post("/logout")
def logout(
    response: Response,
    current_user: Annotated[models.User, Depends(auth.get_current_user)],
    payload: Annotated[models.TokenPayload, Depends(auth.get_access_payload)],
    session: Annotated[Session, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    redis_client: Annotated[redis.Redis, Depends(get_redis)],
) -> models.ApiResponse[None]:
    # A Redis failure must leave the stored refresh token untouched
    auth.revoke_token(redis_client, payload)
    user_crud.set_refresh_token(session, current_user, None)
    clear_auth_cookies(response, settings)
    logger.info("User %s logged out", current_user.user_id)
    return models.ApiResponse(message="User logged out")


@router.post("/refresh")
def refresh_tokens(
    request: Request,
    response: Response,
    session: Annotated[Session, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    body: Annotated[models.RefreshRequest | None, Body()] = None,
) -> models.ApiResponse[models.TokenPair]:
    refresh_token = request.cookies.get(auth.REFRESH_COOKIE) or (
        body.refresh_token if body else None
    )
    if not refresh_token:
        raise UnauthorizedError("Refresh token missing")
    user, tokens = auth.rotate_tokens(
        session=session, refresh_token=refresh_token, settings=settings
    )
    set_auth_cookies(response, tokens, settings)
    logger.info("Rotated tokens for user %s", user.user_id)
    return models.ApiResponse(data=tokens, message="Access token refreshed")
