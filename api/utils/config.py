import os
import secrets
import warnings
from pathlib import Path
from typing import Annotated, Any, Literal

from dotenv import load_dotenv
from pydantic import AnyUrl, BeforeValidator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self

if os.environ.get("ENVIRONMENT") == "test":
    # Alembic has no dotenv support, so we need to load the test env file manually
    load_dotenv(Path(__file__).resolve().parents[2] / ".env.test", override=True)


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )
    APP_NAME: str = "Auth API Boilerplate"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["local", "test", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000
    CORS_ORIGIN: Annotated[list[AnyUrl] | str, BeforeValidator(parse_cors)] = []
    # sqlite file name, or a full SQLAlchemy URL
    DATABASE: str = "app.db"
    # Authentication settings
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_SECRET: str = secrets.token_urlsafe(32)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_SECRET: str = secrets.token_urlsafe(32)
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    FIRST_USER: str = "admin"
    FIRST_USER_EMAIL: str = "admin@example.com"
    FIRST_USER_PASS: str = "changethis"
    # Access token revocation list
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def DATABASE_URL(self) -> str:
        if "://" in self.DATABASE:
            return self.DATABASE
        return f"sqlite:///./{self.DATABASE}"

    @property
    def COOKIE_SECURE(self) -> bool:
        return self.ENVIRONMENT == "production"

    def _complain(self, message: str) -> None:
        if self.ENVIRONMENT == "local":
            warnings.warn(message, stacklevel=1)
        elif self.ENVIRONMENT == "test":
            print(f"WARNING: {message}")
        else:
            raise ValueError(message)

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        if value == "changethis":
            self._complain(f'The value of {var_name} is "changethis"')

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("ACCESS_TOKEN_SECRET", self.ACCESS_TOKEN_SECRET)
        self._check_default_secret("REFRESH_TOKEN_SECRET", self.REFRESH_TOKEN_SECRET)
        self._check_default_secret("FIRST_USER_PASS", self.FIRST_USER_PASS)
        # A leaked refresh secret must not be enough to mint access tokens
        if self.ACCESS_TOKEN_SECRET == self.REFRESH_TOKEN_SECRET:
            self._complain("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self

    def get_secret(self, token_type: Literal["access", "refresh"]) -> str:
        """Return the signing secret for the given token type."""
        if token_type == "access":  # nosec B105
            return self.ACCESS_TOKEN_SECRET
        if token_type == "refresh":  # nosec B105
            return self.REFRESH_TOKEN_SECRET
        raise ValueError("Invalid token type")
