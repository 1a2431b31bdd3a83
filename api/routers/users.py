import logging
from typing import Annotated

import redis
from fastapi import APIRouter, Depends, Response, status
from sqlmodel import Session

from api.db import models
from api.db.crud import user as user_crud
from api.routers.auth import clear_auth_cookies
from api.utils import passwords
from api.utils.auth import get_access_payload, get_current_user, revoke_token
from api.utils.config import Settings
from api.utils.dependencies import get_redis, get_session, get_settings
from api.utils.errors import BadRequestError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/users",
    tags=["users"],
    responses={404: {"description": "Not found"}},
)


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_user(
    user: models.UserCreate,
    session: Annotated[Session, Depends(get_session)],
) -> models.ApiResponse[models.UserSafe]:
    db_user = user_crud.create_user(session=session, user=user)
    logger.info("Registered user %s", db_user.user_id)
    return models.ApiResponse(
        status_code=status.HTTP_201_CREATED,
        data=models.UserSafe.model_validate(db_user),
        message="User registered successfully",
    )


@router.get("/me")
def read_me(
    current_user: Annotated[models.User, Depends(get_current_user)],
) -> models.ApiResponse[models.UserSafe]:
    return models.ApiResponse(
        data=models.UserSafe.model_validate(current_user),
        message="Current user fetched successfully",
    )


@router.patch("/me")
def update_me(
    current_user: Annotated[models.User, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
    user_update: models.UserUpdate,
) -> models.ApiResponse[models.UserSafe]:
    user = user_crud.update_user(session, current_user, user_update)
    return models.ApiResponse(
        data=models.UserSafe.model_validate(user),
        message="Account details updated successfully",
    )


@router.post("/me/password")
def change_password(
    current_user: Annotated[models.User, Depends(get_current_user)],
    session: Annotated[Session, Depends(get_session)],
    change: models.PasswordChange,
) -> models.ApiResponse[None]:
    if not passwords.verify_password(change.old_password, current_user.hashed_password):
        raise BadRequestError("Invalid old password")
    user_crud.set_password(session, current_user, change.new_password)
    return models.ApiResponse(message="Password changed successfully")


@router.delete("/me")
def delete_me(
    response: Response,
    current_user: Annotated[models.User, Depends(get_current_user)],
    payload: Annotated[models.TokenPayload, Depends(get_access_payload)],
    session: Annotated[Session, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    redis_client: Annotated[redis.Redis, Depends(get_redis)],
) -> models.ApiResponse[models.ResourceDeleteResponse]:
    user_id = current_user.user_id
    revoke_token(redis_client, payload)
    user_crud.delete_user(session=session, user_id=user_id)
    clear_auth_cookies(response, settings)
    return models.ApiResponse(
        data=models.ResourceDeleteResponse(resource_type="user", resource_id=user_id),
        message="Account deleted",
    )
