import asyncio
import json
import os
import uuid
from typing import List, Optional

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./assistant_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.main import app
from app.core import models
from app.core.config import settings
from app.core.database import Base, get_db
from app.core.schemas import SchemaAllowList, TableAllowance
from app.core.security import create_access_token, hash_password
from app.api.endpoints.assistant import get_assistant
from app.ai_feature.backend import GenerationBackend
from app.ai_feature.errors import GenerationUnavailable
from app.ai_feature.schema import SchemaCatalog
from app.ai_feature.service import build_assistant

# Business tables owned by the host application, not by our ORM metadata
BUSINESS_DDL = [
    """CREATE TABLE customer_groups (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL
    )""",
    """CREATE TABLE customers (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT,
        tc_no TEXT,
        group_id INTEGER REFERENCES customer_groups(id),
        created_at TEXT
    )""",
    """CREATE TABLE customer_credentials (
        id INTEGER PRIMARY KEY,
        customer_id INTEGER REFERENCES customers(id),
        username TEXT,
        password TEXT
    )""",
    """CREATE TABLE transactions (
        id INTEGER PRIMARY KEY,
        customer_id INTEGER REFERENCES customers(id),
        amount NUMERIC,
        description TEXT,
        transaction_date TEXT
    )""",
]

SEED = [
    "INSERT INTO customer_groups (id, name) VALUES (1, 'Retail'), (2, 'Wholesale')",
    """INSERT INTO customers (id, name, email, tc_no, group_id, created_at) VALUES
        (1, 'Ayse Yilmaz', 'ayse@example.com', '12345678901', 1, '2024-01-10'),
        (2, 'Mehmet Kaya', 'mehmet@example.com', '10987654321', 2, '2024-02-15'),
        (3, 'Zeynep Demir', 'zeynep@example.com', '11223344556', 1, '2024-03-20')""",
    "INSERT INTO customer_credentials (id, customer_id, username, password) VALUES (1, 1, 'ayse', 'hunter2')",
    """INSERT INTO transactions (id, customer_id, amount, description, transaction_date) VALUES
        (1, 1, 150, 'Paid with card 4111111111111111', '2024-04-01'),
        (2, 1, 250, 'Invoice 2024-001', '2024-04-02'),
        (3, 2, 75, 'Transfer from TR330006100519786457841326', '2024-04-03')""",
]

TEST_ALLOW_LIST = SchemaAllowList(
    tables={
        "customer_groups": TableAllowance(),
        "customers": TableAllowance(exclude=["tc_no"]),
        "transactions": TableAllowance(),
        "users": TableAllowance(columns=["id", "name", "email", "role", "created_at"]),
    }
)


def sql_reply(query: str, explanation: str = "Looks up the requested data.") -> str:
    return json.dumps({"requires_sql": True, "query": query, "explanation": explanation})


def direct_reply(explanation: str = "No data needed.") -> str:
    return json.dumps({"requires_sql": False, "query": "", "explanation": explanation})


class SlowReply:
    def __init__(self, seconds: float):
        self.seconds = seconds


class FakeBackend(GenerationBackend):
    """Scripted backend: replies are consumed in order, exceptions are raised."""

    def __init__(self, replies: Optional[List] = None):
        self.replies = list(replies or [])
        self.calls: List[dict] = []

    def queue(self, *replies):
        self.replies.extend(replies)

    async def complete(self, messages, *, temperature, max_tokens=None, json_mode=False):
        self.calls.append(
            {"messages": messages, "temperature": temperature, "json_mode": json_mode}
        )
        if not self.replies:
            raise GenerationUnavailable("No scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, SlowReply):
            await asyncio.sleep(reply.seconds)
            return direct_reply()
        if isinstance(reply, BaseException):
            raise reply
        return reply


# A fresh SQLite file per test
@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assistant.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for statement in BUSINESS_DDL + SEED:
            await conn.exec_driver_sql(statement)
    yield engine
    await engine.dispose()


# Second engine on the same file, like the read-only role in production
@pytest_asyncio.fixture
async def readonly_engine(tmp_path, db_engine):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assistant.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def catalog(readonly_engine):
    return await SchemaCatalog.from_database(readonly_engine, TEST_ALLOW_LIST, "public")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def assistant(session_factory, readonly_engine, catalog, backend):
    return build_assistant(settings, session_factory, readonly_engine, catalog, backend=backend)


async def _add_user(session_factory, role: str) -> models.User:
    async with session_factory() as session:
        user = models.User(
            name=f"{role} {uuid.uuid4().hex[:4]}",
            email=f"{role}_{uuid.uuid4().hex[:8]}@example.com",
            password=hash_password("password123"),
            role="admin" if role == "admin" else "user",
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


# User
@pytest_asyncio.fixture
async def test_user(session_factory):
    return await _add_user(session_factory, "user")


# Somebody else
@pytest_asyncio.fixture
async def other_user(session_factory):
    return await _add_user(session_factory, "other")


# Admin
@pytest_asyncio.fixture
async def test_admin(session_factory):
    return await _add_user(session_factory, "admin")


@pytest.fixture
def auth_headers_user(test_user):
    token = create_access_token({"user_id": test_user.id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_other(other_user):
    token = create_access_token({"user_id": other_user.id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_admin(test_admin):
    token = create_access_token({"user_id": test_admin.id})
    return {"Authorization": f"Bearer {token}"}


# Client, the lifespan is not run: the assistant comes from the fixtures
@pytest_asyncio.fixture
async def client(session_factory, assistant):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_assistant] = lambda: assistant

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
