from __future__ import annotations

import json
import os
from collections.abc import Generator

# Settings 需要的必填项，必须在导入 tiergate 之前设置
os.environ.setdefault("PROJECT_NAME", "tiergate-test")
os.environ.setdefault("POSTGRES_SERVER", "localhost")
os.environ.setdefault("POSTGRES_USER", "postgres")
os.environ.setdefault("POSTGRES_PASSWORD", "test-password")
os.environ.setdefault("POSTGRES_DB", "tiergate")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("SQUARE_WEBHOOK_SIGNATURE_KEY", "test-square-signature-key")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine, delete  # noqa: E402

from tiergate.api.deps import get_db  # noqa: E402
from tiergate.core import redis as core_redis  # noqa: E402
from tiergate.core.tiers import CATALOG_PATH, TierModel  # noqa: E402
from tiergate.main import app  # noqa: E402
from tiergate.models import (  # noqa: E402
    AuditLog,
    Entitlement,
    PendingEntitlement,
    Profile,
    TierOverride,
    WebhookEvent,
)
from tiergate.services import tier_cache  # noqa: E402
from tiergate.services.notifier import MockNotifier  # noqa: E402


class FakeRedis:
    """只实现用到的命令：get / set(nx, ex) / delete / eval(释放锁)"""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.store.get(key)

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    def eval(self, _script: str, _numkeys: int, key: str, value: str) -> int:
        if self.store.get(key) == value:
            del self.store[key]
            return 1
        return 0


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        # Clean tables after each test (children first).
        session.exec(delete(AuditLog))
        session.exec(delete(WebhookEvent))
        session.exec(delete(PendingEntitlement))
        session.exec(delete(Entitlement))
        session.exec(delete(TierOverride))
        session.exec(delete(Profile))
        session.commit()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(core_redis, "get_redis", lambda: fake)
    monkeypatch.setattr(tier_cache, "get_redis", lambda: fake)
    return fake


@pytest.fixture()
def notifier(monkeypatch) -> MockNotifier:
    mock = MockNotifier()
    monkeypatch.setattr("tiergate.api.routes.cron.get_notifier", lambda: mock)
    monkeypatch.setattr("tiergate.worker.tasks.get_notifier", lambda: mock)
    return mock


@pytest.fixture(scope="function")
def client(engine, db) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def x1_model() -> TierModel:
    """在真实目录基础上增加一个 X1 -> (tier_starter, starter) 的映射"""
    data = json.loads(CATALOG_PATH.read_text(encoding="utf-8"))
    data["payment_links"] = {"X1": {"product_key": "tier_starter", "tier": "starter"}}
    return TierModel.from_dict(data)

