import logging

from sqlmodel import Session

from api.db.crud import user as user_crud
from api.db.models import UserCreate
from api.db.session import build_engine
from api.utils.config import Settings
from api.utils.dependencies import load_settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_user(session: Session, settings: Settings) -> None:
    if not user_crud.get_user_by_identifier(session, settings.FIRST_USER):
        user_in = UserCreate(
            username=settings.FIRST_USER,
            email=settings.FIRST_USER_EMAIL,
            password=settings.FIRST_USER_PASS,
        )
        user_crud.create_user(session=session, user=user_in)
        logger.info("Created first user %s", settings.FIRST_USER)


def init(settings: Settings | None = None) -> None:
    settings = settings or load_settings()
    engine = build_engine(settings)
    try:
        with Session(engine) as session:
            init_user(session, settings)
    finally:
        engine.dispose()


def main() -> None:
    logger.info("Creating initial data")
    init()
    logger.info("Initial data created")


if __name__ == "__main__":
    main()
