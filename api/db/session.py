import logging

import sqlalchemy.exc as exc
from sqlalchemy import Engine
from sqlmodel import create_engine

from api.utils.config import Settings

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> Engine:
    database_url = settings.DATABASE_URL
    connect_args = (
        {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )
    try:
        return create_engine(
            database_url,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    except exc.ArgumentError:
        logger.error("Error creating engine: %s", database_url)
        raise
