import logging
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, or_, select

from api.db.models import User, UserCreate, UserUpdate
from api.utils import passwords
from api.utils.errors import ConflictError, InternalError

logger = logging.getLogger(__name__)


def create_user(session: Session, user: UserCreate) -> User:
    if get_user_by_identifier(session, user.username) or get_user_by_identifier(
        session, user.email
    ):
        raise ConflictError("User with email or username already exists")
    db_user = User.model_validate(
        user, update={"hashed_password": passwords.get_password_hash(user.password)}
    )
    session.add(db_user)
    try:
        session.commit()
    except IntegrityError:
        # Lost a race against a concurrent registration
        session.rollback()
        raise ConflictError("User with email or username already exists")
    session.refresh(db_user)
    return db_user


def get_user_by_username(session: Session, username: str) -> User | None:
    return session.exec(select(User).where(User.username == username)).one_or_none()


def get_user_by_identifier(session: Session, identifier: str) -> User | None:
    """Look a user up by username or email."""
    identifier = identifier.strip().lower()
    return session.exec(
        select(User).where(or_(User.username == identifier, User.email == identifier))
    ).first()


def update_user(session: Session, user: User, data: UserUpdate) -> User:
    user_data = data.model_dump(exclude_unset=True, exclude_none=True)
    if "email" in user_data and user_data["email"] != user.email:
        # Login matches one identifier against both columns
        existing = get_user_by_identifier(session, user_data["email"])
        if existing is not None and existing.user_id != user.user_id:
            raise ConflictError("Email is already in use")
    user.sqlmodel_update(user_data, update={"updated_at": datetime.now(UTC)})
    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError("Email is already in use")
    session.refresh(user)
    return user


def set_password(session: Session, user: User, password: str) -> User:
    """Replace the password and drop the stored refresh token with it."""
    user.hashed_password = passwords.get_password_hash(password)
    user.refresh_token = None
    user.updated_at = datetime.now(UTC)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def set_refresh_token(session: Session, user: User, refresh_token: str | None) -> User:
    """
    Persist the user's single active refresh token, replacing any previous one.
    Passing None clears it.
    """
    user_id = user.user_id
    user.refresh_token = refresh_token
    user.updated_at = datetime.now(UTC)
    session.add(user)
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not store refresh token for user %s", user_id)
        raise InternalError(
            "Something went wrong while generating refresh and access token"
        )
    session.refresh(user)
    return user


def delete_user(session: Session, user_id: str) -> None:
    user = session.get(User, user_id)
    session.delete(user)
    session.commit()
