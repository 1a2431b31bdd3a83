import time
from datetime import timedelta
from threading import Thread

import jwt
import pytest
import redis
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from api.main import app
from api.utils import auth, passwords
from api.utils.config import Settings
from tests.utils import random_lower_string
from tests.utils.auth import login_user
from tests.utils.user import create_random_user


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_with_correct_password(
        self, client: TestClient, session: Session
    ) -> None:
        password = random_lower_string()
        user = create_random_user(session, password=password)
        response = client.post(
            "/auth/login",
            json={"username": user.username, "password": password},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["statusCode"] == 200
        assert body["success"] is True
        data = body["data"]
        assert data["user"]["user_id"] == user.user_id
        assert "hashed_password" not in data["user"]
        assert "refresh_token" not in data["user"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert response.cookies["access_token"] == data["access_token"]
        assert response.cookies["refresh_token"] == data["refresh_token"]

    def test_login_cookies_are_http_only(
        self, client: TestClient, session: Session
    ) -> None:
        password = random_lower_string()
        user = create_random_user(session, password=password)
        response = client.post(
            "/auth/login",
            json={"username": user.username, "password": password},
        )
        set_cookies = response.headers.get_list("set-cookie")
        assert len(set_cookies) == 2
        for cookie in set_cookies:
            assert "HttpOnly" in cookie
            assert "samesite=lax" in cookie.lower()
            # Only production sets Secure
            assert "Secure" not in cookie

    def test_login_with_email(self, client: TestClient, session: Session) -> None:
        password = random_lower_string()
        user = create_random_user(session, password=password)
        response = client.post(
            "/auth/login",
            json={"email": user.email.upper(), "password": password},
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == user.username

    def test_login_with_incorrect_password(
        self, client: TestClient, session: Session
    ) -> None:
        password = random_lower_string()
        user = create_random_user(session, password=password)

        response = client.post(
            "/auth/login",
            json={"username": user.username, "password": "wrongpassword"},
        )
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["data"] is None
        assert "access_token" not in response.cookies
        assert "refresh_token" not in response.cookies

    def test_unknown_user_looks_like_wrong_password(
        self, client: TestClient, session: Session
    ) -> None:
        user = create_random_user(session)
        wrong_password = client.post(
            "/auth/login",
            json={"username": user.username, "password": "wrongpassword"},
        )
        unknown_user = client.post(
            "/auth/login",
            json={"username": random_lower_string(), "password": "wrongpassword"},
        )
        assert wrong_password.status_code == unknown_user.status_code == 401
        assert wrong_password.json() == unknown_user.json()

    def test_login_without_identifier(self, client: TestClient) -> None:
        response = client.post("/auth/login", json={"password": "whatever"})
        assert response.status_code == 400
        assert response.json()["success"] is False


class TestTokenStoreSync:
    def test_refresh_token_is_stored(self, client: TestClient, session: Session) -> None:
        login = login_user(client, session)
        assert login["response"].status_code == 200
        user = login["user"]
        session.refresh(user)
        assert user.refresh_token == login["response"].json()["data"]["refresh_token"]

    def test_second_login_replaces_refresh_token(
        self, client: TestClient, session: Session
    ) -> None:
        password = random_lower_string()
        user = create_random_user(session, password=password)
        credentials = {"username": user.username, "password": password}

        first = client.post("/auth/login", json=credentials).json()["data"]
        second = client.post("/auth/login", json=credentials).json()["data"]

        assert first["refresh_token"] != second["refresh_token"]
        session.refresh(user)
        assert user.refresh_token == second["refresh_token"]

    def test_store_failure_fails_login(
        self, client: TestClient, session: Session, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        password = random_lower_string()
        user = create_random_user(session, password=password)

        def broken_commit(self: Session) -> None:
            raise OperationalError("UPDATE user", {}, Exception("database is locked"))

        with monkeypatch.context() as m:
            m.setattr(Session, "commit", broken_commit)
            response = client.post(
                "/auth/login",
                json={"username": user.username, "password": password},
            )

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["data"] is None
        assert "access_token" not in response.cookies
        assert "refresh_token" not in response.cookies
        session.refresh(user)
        assert user.refresh_token is None


class TestTokenVerifier:
    def test_refresh_token_cannot_be_used_as_access_token(
        self, client: TestClient, session: Session
    ) -> None:
        login = login_user(client, session)
        refresh_token = login["response"].json()["data"]["refresh_token"]
        client.cookies.clear()
        response = client.get("/users/me", headers=bearer(refresh_token))
        assert response.status_code == 401

    def test_expired_access_token(
        self, client: TestClient, session: Session, settings: Settings
    ) -> None:
        user = create_random_user(session)
        token = auth.create_token(
            user=user,
            token_type="access",  # nosec B106
            settings=settings,
            expires_delta=timedelta(seconds=-30),
        )
        response = client.get("/users/me", headers=bearer(token))
        assert response.status_code == 401
        assert response.json()["statusCode"] == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_token_signed_with_wrong_secret(
        self, client: TestClient, session: Session, settings: Settings
    ) -> None:
        user = create_random_user(session)
        token = auth.create_token(user=user, token_type="access", settings=settings)  # nosec B106
        claims = jwt.decode(token, options={"verify_signature": False})
        forged = jwt.encode(claims, "not-the-access-secret", algorithm="HS256")
        response = client.get("/users/me", headers=bearer(forged))
        assert response.status_code == 401

    def test_token_for_deleted_user(
        self, client: TestClient, session: Session, settings: Settings
    ) -> None:
        user = create_random_user(session)
        token = auth.create_token(user=user, token_type="access", settings=settings)  # nosec B106
        session.delete(user)
        session.commit()
        response = client.get("/users/me", headers=bearer(token))
        assert response.status_code == 401

    def test_invalid_token(self, client: TestClient) -> None:
        response = client.get("/users/me", headers=bearer("invalidtoken"))
        assert response.status_code == 401

    def test_cookie_takes_precedence_over_header(
        self, client: TestClient, session: Session
    ) -> None:
        login = login_user(client, session)
        assert login["response"].status_code == 200
        response = client.get("/users/me", headers=bearer("invalidtoken"))
        assert response.status_code == 200

    def test_stale_cookie_falls_back_to_header(
        self, client: TestClient, session: Session
    ) -> None:
        login = login_user(client, session)
        access_token = login["response"].json()["data"]["access_token"]
        client.cookies.clear()
        client.cookies.set("access_token", "stale-token")

        response = client.get("/users/me", headers=bearer(access_token))
        assert response.status_code == 200
        assert response.json()["data"]["user_id"] == login["user"].user_id

        response = client.get("/users/me", headers=bearer("invalidtoken"))
        assert response.status_code == 401


class TestLogout:
    def test_logout(self, client: TestClient, session: Session, settings: Settings) -> None:
        login = login_user(client, session)
        data = login["response"].json()["data"]
        client.cookies.clear()

        response = client.post("/auth/logout", headers=bearer(data["access_token"]))
        assert response.status_code == 200
        assert response.json()["success"] is True

        user = login["user"]
        session.refresh(user)
        assert user.refresh_token is None

        jti = auth.validate_token(
            token=data["access_token"], token_type="access", settings=settings  # nosec B106
        ).jti
        assert auth.is_token_revoked(app.state.redis, jti)

        # The access token no longer works, nor does the refresh token
        response = client.get("/users/me", headers=bearer(data["access_token"]))
        assert response.status_code == 401
        response = client.post(
            "/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert response.status_code == 401

    def test_logout_clears_cookies(self, client: TestClient, session: Session) -> None:
        login_user(client, session)
        response = client.post("/auth/logout")
        assert response.status_code == 200
        set_cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith("access_token=") for c in set_cookies)
        assert any(c.startswith("refresh_token=") for c in set_cookies)
        assert all("Max-Age=0" in c for c in set_cookies)

    def test_logout_unauthenticated(self, client: TestClient) -> None:
        response = client.post("/auth/logout")
        assert response.status_code == 401

    def test_logout_when_revocation_fails(
        self, client: TestClient, session: Session, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        login = login_user(client, session)
        data = login["response"].json()["data"]
        client.cookies.clear()

        def broken_set(*args, **kwargs) -> None:
            raise redis.ConnectionError("Connection refused")

        with monkeypatch.context() as m:
            m.setattr(app.state.redis, "set", broken_set)
            response = client.post("/auth/logout", headers=bearer(data["access_token"]))

        assert response.status_code == 500
        assert response.json()["success"] is False
        # Nothing was half-done: the stored refresh token is untouched
        user = login["user"]
        session.refresh(user)
        assert user.refresh_token == data["refresh_token"]
        response = client.get("/users/me", headers=bearer(data["access_token"]))
        assert response.status_code == 200


class TestTokenRefresh:
    def test_refresh_tokens(
        self, client: TestClient, session: Session, settings: Settings
    ) -> None:
        login = login_user(client, session)
        assert login["response"].status_code == 200
        old = login["response"].json()["data"]

        # The refresh cookie from the login is still in the jar
        response = client.post("/auth/refresh")
        assert response.status_code == 200
        new = response.json()["data"]
        assert response.cookies["refresh_token"] == new["refresh_token"]
        assert response.cookies["access_token"] == new["access_token"]

        old_jti = auth.validate_token(
            token=old["refresh_token"], token_type="refresh", settings=settings  # nosec B106
        ).jti
        new_jti = auth.validate_token(
            token=new["refresh_token"], token_type="refresh", settings=settings  # nosec B106
        ).jti
        assert old_jti != new_jti

        user = login["user"]
        session.refresh(user)
        assert user.refresh_token == new["refresh_token"]

    def test_rotated_refresh_token_is_rejected(
        self, client: TestClient, session: Session
    ) -> None:
        login = login_user(client, session)
        old_refresh = login["response"].json()["data"]["refresh_token"]
        client.cookies.clear()

        first = client.post("/auth/refresh", json={"refresh_token": old_refresh})
        assert first.status_code == 200
        client.cookies.clear()

        reused = client.post("/auth/refresh", json={"refresh_token": old_refresh})
        assert reused.status_code == 401
        assert reused.json()["message"] == "Refresh token is expired or used"

    def test_refresh_with_missing_token(self, client: TestClient) -> None:
        response = client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["message"] == "Refresh token missing"

    def test_refresh_with_access_token(
        self, client: TestClient, session: Session
    ) -> None:
        login = login_user(client, session)
        access_token = login["response"].json()["data"]["access_token"]
        client.cookies.clear()

        response = client.post("/auth/refresh", json={"refresh_token": access_token})
        assert response.status_code == 401

    def test_refresh_tokens_deleted_user(
        self, client: TestClient, session: Session
    ) -> None:
        login = login_user(client, session)
        refresh_token = login["response"].json()["data"]["refresh_token"]
        client.cookies.clear()

        session.delete(login["user"])
        session.commit()

        response = client.post("/auth/refresh", json={"refresh_token": refresh_token})
        assert response.status_code == 401


class TestConcurrency:
    def test_login_does_not_block_other_requests(
        self, client: TestClient, session: Session, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        password = random_lower_string()
        user = create_random_user(session, password=password)
        verify_password = passwords.verify_password

        def slow_verify_password(plain_password: str, hashed_password: str) -> bool:
            time.sleep(0.5)
            return verify_password(plain_password, hashed_password)

        monkeypatch.setattr(passwords, "verify_password", slow_verify_password)

        results = {}

        def login() -> None:
            results["login"] = client.post(
                "/auth/login",
                json={"username": user.username, "password": password},
            )

        thread = Thread(target=login)
        thread.start()
        time.sleep(0.1)
        started = time.perf_counter()
        health = client.get("/health")
        elapsed = time.perf_counter() - started
        thread.join()

        assert health.status_code == 200
        assert results["login"].status_code == 200
        # /health answered while the password check was still running
        assert elapsed < 0.3
