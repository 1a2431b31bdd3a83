from datetime import UTC, datetime
from typing import Any, Generic, Literal, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator, model_validator
from pydantic import Field as PydanticField
from sqlalchemy import DateTime
from sqlmodel import Column, Field, SQLModel
from typing_extensions import Self

T = TypeVar("T")

###
# Envelopes
###


class ApiResponse(BaseModel, Generic[T]):
    """Standard success envelope. ``success`` follows the status code."""

    model_config = ConfigDict(populate_by_name=True)

    status_code: int = PydanticField(default=200, alias="statusCode")
    data: T | None = None
    message: str = "Success"
    success: bool = True

    @model_validator(mode="after")
    def _success_from_status(self) -> Self:
        self.success = self.status_code < 400
        return self


class ApiErrorResponse(BaseModel):
    """Standard failure envelope."""

    model_config = ConfigDict(populate_by_name=True)

    status_code: int = PydanticField(alias="statusCode")
    message: str
    errors: list[Any] = []
    data: None = None
    success: Literal[False] = False


###
# Utility Models
###


class ApplicationInfo(SQLModel):
    app_name: str
    version: str


class HealthCheck(SQLModel):
    status: str
    timestamp: datetime


class ResourceDeleteResponse(SQLModel):
    resource_type: str
    resource_id: str


###
# Token
###
class TokenPayload(SQLModel):
    token_type: Literal["access", "refresh"]
    jti: str
    sub: str
    iat: datetime
    exp: datetime
    # Only embedded in access tokens
    username: str | None = None
    email: str | None = None


class RefreshRequest(SQLModel):
    refresh_token: str | None = None


class TokenPair(SQLModel):
    access_token: str
    refresh_token: str


###
# User
###
class UserBase(SQLModel):
    username: str = Field(unique=True, index=True, min_length=1, max_length=64)
    email: str = Field(unique=True, index=True, max_length=254)
    display_name: str | None = None

    @field_validator("username", "email", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class UserCreate(UserBase):
    # username
    # display_name
    email: EmailStr = Field(max_length=254)
    password: str = Field(min_length=8)


class UserSafe(UserBase):
    """
    Everything but the hashed password and the refresh token.
    - user_id
    - username
    - email
    - display_name
    - created_at
    - updated_at

    """

    # username
    # email
    # display_name
    user_id: str = Field(
        default_factory=lambda: str(uuid4()), primary_key=True, index=True
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class User(UserSafe, table=True):
    """
    User model.

    This is the class representing the User table in the database.
    This should never be part of a serialized response. Use UserSafe for that
    purpose.

    - user_id
    - username
    - email
    - display_name
    - hashed_password
    - refresh_token
    - created_at
    - updated_at

    """

    # username
    # email
    # display_name
    # user_id
    # created_at
    # updated_at
    hashed_password: str
    refresh_token: str | None = None


class UserUpdate(SQLModel):
    display_name: str | None = None
    email: EmailStr | None = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PasswordChange(SQLModel):
    old_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8)


class LoginRequest(SQLModel):
    username: str | None = None
    email: EmailStr | None = None
    password: str = Field(min_length=1)

    @model_validator(mode="after")
    def _require_identifier(self) -> Self:
        if not self.username and not self.email:
            raise ValueError("username or email is required")
        return self

    @property
    def identifier(self) -> str:
        return (self.username or str(self.email)).strip().lower()


class LoginResult(SQLModel):
    user: UserSafe
    access_token: str
    refresh_token: str


###
# Metadata
###

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = SQLModel.metadata
metadata.naming_convention = NAMING_CONVENTION
target_metadata = metadata
