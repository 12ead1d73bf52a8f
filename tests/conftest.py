from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
import uuid

import email_validator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
import yaml

import src.api.main as api_main
from src.capabilities.catalog import load_plugin_catalog, parse_plugin_catalog, sync_plugin_catalog
from src.core.config import get_settings
from src.orgs.service import add_org_member, create_org_with_owner
from src.storage.db import Base, get_session, load_models
from src.storage.models import Org, Store, User
from src.storage.security import encrypt_credentials, get_credentials_key, hash_password


# Allow the reserved ".test" domain used by fixture email addresses.
email_validator.TEST_ENVIRONMENT = True

CATALOG_PATH = Path(__file__).resolve().parents[1] / "config" / "plugin_contracts.yaml"


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script
        if numkeys != 1:
            raise ValueError("Expected one key")
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0


@dataclass
class ApiTestContext:
    client: TestClient
    session_factory: sessionmaker
    org_id: str
    access_token: str
    owner_user_id: str

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


def build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def build_file_sqlite_session_factory(path: Path) -> sessionmaker:
    """Pooled engine over a database file, so threads get real separate connections."""

    load_models()
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def seed_plugin_catalog(session) -> int:
    content = yaml.safe_load(CATALOG_PATH.read_text(encoding="utf-8"))
    return sync_plugin_catalog(session, parse_plugin_catalog(content))


def create_store(
    session,
    *,
    org_id: str,
    platform: str,
    webhook_secret: Optional[str] = None,
) -> Store:
    store = Store(
        org_id=org_id,
        name=f"{platform}-{uuid.uuid4().hex[:6]}",
        platform=platform,
        credentials_encrypted=encrypt_credentials({"webhook_secret": webhook_secret}) if webhook_secret else None,
    )
    session.add(store)
    session.commit()
    return store


def create_member(session, *, org_id: str, role: str, password: str = "member-pass-123") -> User:
    user = User(email=f"{role}-{uuid.uuid4().hex[:8]}@opshub.test", password_hash=hash_password(password))
    session.add(user)
    session.flush()
    add_org_member(session, org_id=org_id, user_id=user.id, role=role)
    return user


def login(client: TestClient, *, email: str, password: str, org_id: str) -> str:
    response = client.post("/auth/login", json={"email": email, "password": password, "org_id": org_id})
    assert response.status_code == 200
    return response.json()["access_token"]


def _bootstrap_org(client: TestClient, *, owner_email: str, owner_password: str) -> str:
    suffix = uuid.uuid4().hex[:8]
    response = client.post(
        "/orgs",
        json={
            "name": f"acme-{suffix}",
            "slug": f"acme-{suffix}",
            "owner_email": owner_email,
            "owner_password": owner_password,
        },
    )
    assert response.status_code == 201
    return response.json()["org_id"]


def create_api_test_context(monkeypatch) -> ApiTestContext:
    monkeypatch.setenv("SECRET_KEY", "opshub-test-secret-key-with-enough-length")
    monkeypatch.setenv("ENV", "test")
    get_settings.cache_clear()
    get_credentials_key.cache_clear()

    session_factory = build_sqlite_session_factory()

    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    api_main.app.dependency_overrides[get_session] = override_get_session
    client = TestClient(api_main.app)

    owner_email = f"owner-{uuid.uuid4().hex[:8]}@opshub.test"
    owner_password = "owner-pass-123"
    org_id = _bootstrap_org(client, owner_email=owner_email, owner_password=owner_password)
    token = login(client, email=owner_email, password=owner_password, org_id=org_id)

    with session_factory() as session:
        seed_plugin_catalog(session)
        owner = session.scalar(select(User).where(User.email == owner_email))
        owner_user_id = owner.id

    return ApiTestContext(
        client=client,
        session_factory=session_factory,
        org_id=org_id,
        access_token=token,
        owner_user_id=owner_user_id,
    )


def teardown_api_test_context() -> None:
    api_main.app.dependency_overrides.clear()
    get_settings.cache_clear()
    get_credentials_key.cache_clear()
    load_plugin_catalog.cache_clear()


def create_org(session, *, name: Optional[str] = None) -> Org:
    suffix = uuid.uuid4().hex[:8]
    org, _ = create_org_with_owner(
        session,
        name=name or f"org-{suffix}",
        slug=f"org-{suffix}",
        owner_email=f"owner-{suffix}@opshub.test",
        owner_password="owner-pass-123",
    )
    return org
