from __future__ import annotations
# ruff: noqa: E402

import sys
import uuid
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

API_ROOT = Path(__file__).resolve().parents[1]
WORKER_ROOT = Path(__file__).resolve().parents[2] / "worker"
if str(API_ROOT) not in sys.path:
    sys.path.insert(0, str(API_ROOT))
if str(WORKER_ROOT) not in sys.path:
    sys.path.insert(0, str(WORKER_ROOT))

from app.db import get_db, get_session_factory
from app.main import app
from app.models import Account, Base, Collection, Membership, Record, RecordStatus, Role, User
from app.routers.meta_webhook import get_webhook_redis
from app.services.push_channel import MobileChannelRegistry, get_push_registry
from app.services.sheets_client import MockSheetsClient, get_sheets_client
from app.tenancy import RequestContext

TEST_USER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
TEST_ACCOUNT_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
OTHER_ACCOUNT_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
MEMBER_USER_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")
OTHER_USER_ID = uuid.UUID("eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee")


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        del ex
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def delete(self, key: str) -> int:
        return 1 if self.data.pop(key, None) is not None else 0

    def ping(self) -> bool:
        return True


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    # Driver-level autocommit lets every session share the single in-memory
    # connection; SAVEPOINTs still nest inside it.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        isolation_level="AUTOCOMMIT",
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture()
def seeded_context(db_session: Session) -> dict[str, str]:
    db_session.add_all(
        [
            User(id=TEST_USER_ID, email="admin@leadsync.local", full_name="Admin User"),
            User(id=MEMBER_USER_ID, email="agent@leadsync.local", full_name="Field Agent"),
            User(id=OTHER_USER_ID, email="other@leadsync.local", full_name="Other Admin"),
        ]
    )
    db_session.flush()
    db_session.add_all(
        [
            Account(id=TEST_ACCOUNT_ID, name="Integration Account", admin_user_id=TEST_USER_ID),
            Account(id=OTHER_ACCOUNT_ID, name="Other Account", admin_user_id=OTHER_USER_ID),
        ]
    )
    db_session.flush()
    db_session.add_all(
        [
            Membership(account_id=TEST_ACCOUNT_ID, user_id=TEST_USER_ID, role=Role.ADMIN),
            Membership(account_id=TEST_ACCOUNT_ID, user_id=MEMBER_USER_ID, role=Role.MEMBER),
            Membership(account_id=OTHER_ACCOUNT_ID, user_id=OTHER_USER_ID, role=Role.ADMIN),
        ]
    )
    db_session.commit()
    return {
        "X-LeadSync-User-Id": str(TEST_USER_ID),
        "X-LeadSync-Account-Id": str(TEST_ACCOUNT_ID),
        "X-LeadSync-Role": Role.ADMIN.value,
    }


@pytest.fixture()
def member_headers(seeded_context: dict[str, str]) -> dict[str, str]:
    return {
        "X-LeadSync-User-Id": str(MEMBER_USER_ID),
        "X-LeadSync-Account-Id": str(TEST_ACCOUNT_ID),
        "X-LeadSync-Role": Role.MEMBER.value,
    }


@pytest.fixture()
def other_headers(seeded_context: dict[str, str]) -> dict[str, str]:
    return {
        "X-LeadSync-User-Id": str(OTHER_USER_ID),
        "X-LeadSync-Account-Id": str(OTHER_ACCOUNT_ID),
        "X-LeadSync-Role": Role.ADMIN.value,
    }


@pytest.fixture()
def admin_context(seeded_context: dict[str, str]) -> RequestContext:
    return RequestContext(current_user_id=TEST_USER_ID, current_account_id=TEST_ACCOUNT_ID, current_role=Role.ADMIN)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def sheets() -> MockSheetsClient:
    return MockSheetsClient()


@pytest.fixture()
def push_registry() -> MobileChannelRegistry:
    return MobileChannelRegistry()


@pytest.fixture()
def api_overrides(
    session_factory: sessionmaker[Session],
    fake_redis: FakeRedis,
    sheets: MockSheetsClient,
    push_registry: MobileChannelRegistry,
) -> Generator[None, None, None]:
    def _get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_webhook_redis] = lambda: fake_redis
    app.dependency_overrides[get_sheets_client] = lambda: sheets
    app.dependency_overrides[get_push_registry] = lambda: push_registry
    yield
    app.dependency_overrides.clear()


def make_collection(db: Session, account_id: uuid.UUID = TEST_ACCOUNT_ID, **fields: Any) -> Collection:
    values: dict[str, Any] = {
        "name": "Manual Leads",
        "description": "",
        "dynamic_field_names": [],
    }
    values.update(fields)
    collection = Collection(account_id=account_id, user_id=TEST_USER_ID, **values)
    db.add(collection)
    db.commit()
    return collection


def make_record(db: Session, collection: Collection, position: int, **fields: Any) -> Record:
    values: dict[str, Any] = {
        "display_name": f"Lead {position}",
        "organization_name": "N/A",
        "phone_number": f"98765{position:05d}",
        "status": RecordStatus.NEW,
        "extra_fields": {},
    }
    values.update(fields)
    record = Record(
        account_id=collection.account_id,
        collection_id=collection.id,
        user_id=TEST_USER_ID,
        position=position,
        **values,
    )
    db.add(record)
    db.commit()
    return record
