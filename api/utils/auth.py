import hmac
import logging
from datetime import UTC, datetime, timedelta
from typing import Annotated, Literal
from uuid import uuid4

import jwt
import redis
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from api.db import models
from api.db.crud import user as user_crud
from api.utils import passwords
from api.utils.config import Settings
from api.utils.dependencies import get_redis, get_session, get_settings
from api.utils.errors import InternalError, UnauthorizedError

logger = logging.getLogger(__name__)

# auto_error is off so a missing header can fall back to the cookie
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)
ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
INVALID_CREDENTIALS = "Invalid user credentials"


def authenticate_user(session: Session, identifier: str, password: str) -> models.User:
    """
    Authenticate a user by username or email and password.

    Unknown identifiers and wrong passwords fail the same way, so the caller
    cannot tell which of the two was wrong.
    """
    user = user_crud.get_user_by_identifier(session, identifier)
    if user is None:
        passwords.verify_password(password, passwords.DUMMY_HASH)
        raise UnauthorizedError(INVALID_CREDENTIALS)
    if not passwords.verify_password(password, user.hashed_password):
        raise UnauthorizedError(INVALID_CREDENTIALS)
    return user


def create_token(
    user: models.User,
    token_type: Literal["access", "refresh"],
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT token with 'sub' matching the user_id.

    Args:
        user (models.User): The user the token is issued for.
        token_type (Literal["access", "refresh"]): The type of token to create.
        settings (Settings): App settings containing secrets and token lifetimes.
        expires_delta (timedelta | None): Override of the configured lifetime.
    Returns:
        str: The encoded JWT token.
    """
    now = datetime.now(UTC)
    if token_type == "access":  # nosec B105
        exp = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    elif token_type == "refresh":  # nosec B105
        exp = timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    else:
        raise ValueError("Invalid token type")
    if expires_delta is not None:
        exp = expires_delta
    to_encode = {
        "token_type": token_type,
        "jti": str(uuid4()),
        "sub": user.user_id,
        "iat": now,
        "exp": now + exp,
    }
    if token_type == "access":  # nosec B105
        to_encode |= {"username": user.username, "email": user.email}
    return jwt.encode(
        to_encode, key=settings.get_secret(token_type), algorithm=settings.ALGORITHM
    )


def validate_token(
    token: str,
    token_type: Literal["access", "refresh"],
    settings: Settings,
) -> models.TokenPayload:
    """
    Validate a JWT token and return its payload.

    Args:
        token (str): The JWT token to validate.
        token_type (Literal["access", "refresh"]): The expected type of the token.
        settings (Settings): App settings containing secrets and algorithm.
    Returns:
        models.TokenPayload: The decoded token payload.
    """
    try:
        payload = models.TokenPayload.model_validate(
            jwt.decode(
                token,
                settings.get_secret(token_type),
                algorithms=[settings.ALGORITHM],
                options={"require": ["exp", "iat", "sub", "jti"]},
            )
        )
    except (InvalidTokenError, ValidationError) as e:
        logger.debug("Rejected %s token: %s", token_type, e)
        raise UnauthorizedError(f"Invalid or expired {token_type} token")
    if payload.token_type != token_type:
        raise UnauthorizedError(f"Invalid or expired {token_type} token")
    return payload


def issue_token_pair(
    session: Session, user: models.User, settings: Settings
) -> models.TokenPair:
    """
    Mint an access/refresh pair and store the refresh token on the user.

    If storing fails an InternalError propagates and the tokens must not be
    handed out.
    """
    tokens = models.TokenPair(
        access_token=create_token(user=user, token_type="access", settings=settings),  # nosec B106
        refresh_token=create_token(user=user, token_type="refresh", settings=settings),  # nosec B106
    )
    user_crud.set_refresh_token(session, user, tokens.refresh_token)
    return tokens


def rotate_tokens(
    session: Session, refresh_token: str, settings: Settings
) -> tuple[models.User, models.TokenPair]:
    """Exchange the current refresh token for a new pair. The old one stops working."""
    payload = validate_token(
        token=refresh_token, token_type="refresh", settings=settings  # nosec B106
    )
    user = session.get(models.User, payload.sub)
    if user is None:
        raise UnauthorizedError("Invalid refresh token")
    if not user.refresh_token or not hmac.compare_digest(
        user.refresh_token.encode(), refresh_token.encode()
    ):
        raise UnauthorizedError("Refresh token is expired or used")
    return user, issue_token_pair(session, user, settings)


###
# Access token revocation
###
def _revoked_key(jti: str) -> str:
    return f"revoked:{jti}"


def revoke_token(redis_client: redis.Redis, payload: models.TokenPayload) -> None:
    """Deny the token until it would have expired anyway."""
    remaining = int((payload.exp - datetime.now(UTC)).total_seconds())
    if remaining <= 0:
        return
    try:
        redis_client.set(_revoked_key(payload.jti), 1, ex=remaining)
    except redis.RedisError:
        logger.exception("Could not revoke access token %s", payload.jti)
        raise InternalError("Something went wrong while revoking the access token")


def is_token_revoked(redis_client: redis.Redis, jti: str) -> bool:
    return bool(redis_client.exists(_revoked_key(jti)))


###
# Request dependencies
###
def extract_tokens(request: Request, bearer: str | None) -> list[str]:
    """Candidate access tokens: the cookie first, then the Bearer header."""
    tokens = [token for token in (request.cookies.get(ACCESS_COOKIE), bearer) if token]
    if not tokens:
        raise UnauthorizedError("Unauthorized request")
    return tokens


def get_access_payload(
    request: Request,
    bearer: Annotated[str | None, Depends(oauth2_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
    redis_client: Annotated[redis.Redis, Depends(get_redis)],
) -> models.TokenPayload:
    """
    Validate the first candidate token that checks out. A stale cookie falls
    back to the header; the last candidate's error is the one reported.
    """
    *fallbacks, last = extract_tokens(request, bearer)
    payload = None
    for token in fallbacks:
        try:
            payload = validate_token(
                token=token, token_type="access", settings=settings  # nosec B106
            )
            break
        except UnauthorizedError:
            logger.debug("Access token cookie rejected, trying the Bearer header")
    if payload is None:
        payload = validate_token(
            token=last, token_type="access", settings=settings  # nosec B106
        )
    if is_token_revoked(redis_client, payload.jti):
        raise UnauthorizedError("Access token has been revoked")
    return payload


def get_current_user(
    request: Request,
    payload: Annotated[models.TokenPayload, Depends(get_access_payload)],
    session: Annotated[Session, Depends(get_session)],
) -> models.User:
    """Resolve the access token to a user and attach it to the request."""
    user = session.get(models.User, payload.sub)
    if user is None:
        raise UnauthorizedError("Invalid access token")
    request.state.user = user
    return user
