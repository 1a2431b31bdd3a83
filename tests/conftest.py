import os
from collections.abc import Generator
from threading import Thread

# Must be set before the app is imported so .env.test is picked up
os.environ["ENVIRONMENT"] = "test"

import pytest  # noqa: E402
from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402
from fakeredis import TcpFakeServer  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from api.db.session import build_engine  # noqa: E402
from api.initial_data import init  # noqa: E402
from api.main import app  # noqa: E402
from api.utils.config import Settings  # noqa: E402
from api.utils.dependencies import load_settings  # noqa: E402
from tests.utils.auth import get_user_headers  # noqa: E402

# function: the default scope, the fixture is destroyed at the end of the test.
# class: the fixture is destroyed during teardown of the last test in the class.
# module: the fixture is destroyed during teardown of the last test in the module.
# package: the fixture is destroyed during teardown of the last test in the package.
# session: the fixture is destroyed at the end of the test session.

engine = build_engine(load_settings())


@pytest.fixture(scope="module")
def settings() -> Settings:
    return load_settings()


@pytest.fixture
def session() -> Generator[Session]:
    with Session(engine) as db_session:
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise
        finally:
            db_session.close()


@pytest.fixture(scope="module")
def client() -> Generator:
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def clear_cookies(client: TestClient) -> None:
    client.cookies.clear()


@pytest.fixture(scope="session", autouse=True)
def redis_server() -> Generator:
    settings = load_settings()
    server = TcpFakeServer((settings.REDIS_HOST, settings.REDIS_PORT), server_type="redis")
    thread = Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()


# Apply migrations at beginning and end of each test class
@pytest.fixture(autouse=True, scope="class")
def setup() -> Generator:
    config = Config("alembic.ini")
    command.upgrade(config, "head")
    init()
    yield
    command.downgrade(config, "base")


@pytest.fixture
def user_headers(client: TestClient, session: Session) -> dict[str, str]:
    return get_user_headers(client=client, db=session, username="jim")
