# tests/conftest.py
from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

os.environ.setdefault("PYTEST_RUNNING", "true")

from cid_portal.core.settings import Settings
from cid_portal.db.session import Base
from cid_portal.db.session import get_db as app_get_session
from cid_portal.main import create_app
from cid_portal.models import User
from cid_portal.services.audit import AuditLogger
from cid_portal.services.registry import SecurityServices, build_services
from cid_portal.services.store import MemoryStore

TEST_DB_URL = "sqlite://"
BASE_URL = "https://localhost"
CAPTCHA_ANSWER = "K7M3P"
DEFAULT_PASSWORD = "Str0ng!Passw0rd"


class FakeClock:
    """Manually advanced wall clock shared by every service under test."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    """Isolated settings: temp directories, plaintext passwords, no background worker."""
    return Settings(
        environment="test",
        session_secret="test-session-secret",
        database_url=TEST_DB_URL,
        log_dir=str(tmp_path / "logs"),
        keys_dir=str(tmp_path / "keys"),
        upload_dir=str(tmp_path / "uploads"),
        enable_password_encryption=False,
        maintenance_enabled=False,
        store_backend="memory",
    )


@pytest.fixture()
def make_store(clock: FakeClock) -> Callable[[str], MemoryStore]:
    def _make(namespace: str = "test") -> MemoryStore:
        return MemoryStore(namespace, clock=clock)

    return _make


@pytest.fixture()
def audit(test_settings: Settings, clock: FakeClock) -> AuditLogger:
    logger = AuditLogger(test_settings, clock=clock)
    logger.initialize()
    return logger


@pytest.fixture()
def engine() -> Iterator[Engine]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def services(test_settings: Settings, clock: FakeClock) -> SecurityServices:
    return build_services(test_settings, clock=clock)


@pytest.fixture()
def app(test_settings: Settings, services: SecurityServices, db_session: Session) -> Iterator[FastAPI]:
    application = create_app(test_settings, services, create_schema=False)

    def _get_session_override() -> Iterator[Session]:
        yield db_session

    application.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield application
    finally:
        application.dependency_overrides.clear()


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url=BASE_URL) as test_client:
        yield test_client


@pytest.fixture()
def make_user(db_session: Session, services: SecurityServices) -> Callable[..., User]:
    """Persist a user whose password is ``DEFAULT_PASSWORD`` unless overridden."""

    def _make(
        username: str = "officer",
        *,
        password: str = DEFAULT_PASSWORD,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        user = User(
            username=username,
            email=f"{username}@tspolice.gov.in",
            password_hash=services.passwords.hash(password),
            first_name="Test",
            last_name="Officer",
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def known_captcha(services: SecurityServices, monkeypatch: pytest.MonkeyPatch) -> str:
    """Make every issued CAPTCHA carry ``CAPTCHA_ANSWER``."""
    monkeypatch.setattr(services.captcha, "_generate_text", lambda: CAPTCHA_ANSWER)
    return CAPTCHA_ANSWER


def make_request(
    path: str = "/",
    *,
    method: str = "GET",
    headers: dict[str, str | None] | None = None,
    client_ip: str = "10.0.0.5",
    scheme: str = "https",
) -> Request:
    """Build a bare Starlette request for exercising services without the app."""
    merged: dict[str, str | None] = {"host": "localhost", "user-agent": "pytest-agent"}
    merged.update(headers or {})
    scope = {
        "type": "http",
        "method": method,
        "scheme": scheme,
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in merged.items()
            if value is not None
        ],
        "client": (client_ip, 50000),
        "server": ("localhost", 443 if scheme == "https" else 80),
    }
    return Request(scope)


def issue_captcha(client: TestClient) -> str:
    response = client.get("/api/captcha")
    assert response.status_code == 200, response.text
    return response.json()["id"]


def login_payload(
    client: TestClient,
    username: str,
    password: str = DEFAULT_PASSWORD,
    **extra: Any,
) -> dict[str, Any]:
    payload = {
        "username": username,
        "password": password,
        "captchaSessionId": issue_captcha(client),
        "captchaInput": CAPTCHA_ANSWER,
    }
    payload.update(extra)
    return payload


@pytest.fixture()
def login(client: TestClient, known_captcha: str) -> Callable[..., Any]:
    """POST a complete login form and return the response."""

    def _login(username: str, password: str = DEFAULT_PASSWORD, **extra: Any):
        return client.post("/api/login", json=login_payload(client, username, password, **extra))

    return _login


@pytest.fixture()
def admin_client(client: TestClient, make_user, login) -> TestClient:
    make_user("chief", role="admin")
    response = login("chief")
    assert response.status_code == 200, response.text
    return client
