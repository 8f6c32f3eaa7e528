"""Shared pytest fixtures for all tests."""
import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

# ===== ENVIRONMENT (must be set before the app is imported) =====

_TEST_DIR = tempfile.mkdtemp(prefix="panel_tests_")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/panel_test.db"
)
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ["BILLING_SCHEDULER_ENABLED"] = "false"
os.environ["DB_CREATE_TABLES"] = "false"
os.environ.setdefault("LOG_DIR", f"{_TEST_DIR}/logs")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.database import Base, get_db
from app.config import settings
from app.core.dependencies import get_provisioner, get_supervisor
from app.core.exceptions import SupervisorError
from app.core.security import get_password_hash
from app.models.deployment import Deployment
from app.models.payment_request import PaymentRequest
from app.models.transaction import Transaction
from app.models.user import User
from app.services.deployment_service import DeploymentService
from app.services.provisioner import TemplateProvisioner


TEST_DATABASE_URL = settings.DATABASE_URL


# ===== SESSION-SCOPED DATABASE SETUP =====

@pytest.fixture(scope="session")
def test_engine():
    """Create tables once for the whole run, drop them afterwards."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    async def _drop():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    asyncio.run(_create())
    yield engine
    asyncio.run(_drop())


@pytest.fixture(scope="session")
def TestSessionLocal(test_engine):
    """Create session maker for tests."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ===== DEPENDENCY OVERRIDE =====

@pytest.fixture(scope="session", autouse=True)
def override_get_db(TestSessionLocal):
    """Override FastAPI's get_db dependency and every module-level session factory."""
    async def _override_get_db():
        async with TestSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    from app.core import middleware
    from app import database
    original_session = database.AsyncSessionLocal
    database.AsyncSessionLocal = TestSessionLocal
    middleware.AsyncSessionLocal = TestSessionLocal

    yield

    # Restore original
    app.dependency_overrides.clear()
    database.AsyncSessionLocal = original_session
    middleware.AsyncSessionLocal = original_session


# ===== FAKE PROCESS SUPERVISOR =====

class FakeSupervisor:
    """In-memory ProcessSupervisor that records calls and can be told to fail."""

    def __init__(self):
        self.running: dict[str, Path] = {}
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.fail_start = False
        self.fail_stop = False
        self.start_delay = 0.0

    async def start(self, name, working_dir, env):
        await asyncio.sleep(self.start_delay)
        if self.fail_start:
            raise SupervisorError(f"cannot start {name}")
        self.started.append(name)
        self.running[name] = Path(working_dir)
        return name

    async def stop(self, name):
        await asyncio.sleep(0)
        if self.fail_stop:
            raise SupervisorError(f"cannot stop {name}")
        self.stopped.append(name)
        self.running.pop(name, None)


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def bot_template(tmp_path) -> Path:
    """A small bot template with sensitive subtrees that must never be copied."""
    template = tmp_path / "template"
    (template / "mayel" / "session").mkdir(parents=True)
    (template / "mayel" / "temp").mkdir(parents=True)
    (template / "mayel" / "plugins").mkdir(parents=True)
    (template / "node_modules" / "dep").mkdir(parents=True)

    (template / "index.js").write_text("console.log('bot');")
    (template / "package.json").write_text('{"name": "bot"}')
    (template / "mayel" / "plugins" / "ping.js").write_text("module.exports = {};")
    (template / "mayel" / "session" / "creds.json").write_text('{"secret": true}')
    (template / "mayel" / "temp" / "upload.bin").write_text("tmp")
    (template / "store.db").write_text("sqlite")
    (template / "node_modules" / "dep" / "index.js").write_text("")
    return template


@pytest.fixture
def provisioner(tmp_path, bot_template) -> TemplateProvisioner:
    return TemplateProvisioner(
        template_dir=str(bot_template),
        bots_dir=str(tmp_path / "bots"),
    )


@pytest.fixture(autouse=True)
def override_side_effects(supervisor, provisioner):
    """Route every request through the fake supervisor and a tmp_path provisioner."""
    app.dependency_overrides[get_supervisor] = lambda: supervisor
    app.dependency_overrides[get_provisioner] = lambda: provisioner
    yield
    app.dependency_overrides.pop(get_supervisor, None)
    app.dependency_overrides.pop(get_provisioner, None)


# ===== FUNCTION-SCOPED CLEANUP =====

@pytest.fixture(scope="function", autouse=True)
async def cleanup_database(TestSessionLocal):
    """Clean all tables after each test."""
    yield

    async with TestSessionLocal() as session:
        async with session.begin():
            await session.execute(PaymentRequest.__table__.delete())
            await session.execute(Transaction.__table__.delete())
            await session.execute(Deployment.__table__.delete())
            await session.execute(User.__table__.delete())


# ===== SHARED FIXTURES =====

@pytest.fixture
async def client():
    """Create test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db_session(TestSessionLocal):
    """Get database session."""
    async with TestSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@pytest.fixture
def create_user(TestSessionLocal):
    """Factory inserting a user whose balance is backed by a matching credit."""
    counter = {"n": 0}

    async def _create(coins: int = 0, username: str | None = None, phone: str | None = None) -> User:
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        async with TestSessionLocal() as session:
            user = User(
                username=username,
                email=f"{username}@example.com",
                name=username.title(),
                phone=phone,
                hashed_password=get_password_hash("TestPass123!"),
                coins=coins,
            )
            session.add(user)
            await session.flush()
            if coins:
                session.add(
                    Transaction(user_id=user.id, amount=coins, type="credit", description="Seed")
                )
            await session.commit()
            await session.refresh(user)
            return user

    return _create


@pytest.fixture
def service_factory(TestSessionLocal, supervisor, provisioner):
    """Open a DeploymentService on its own session (one per simulated request)."""

    @asynccontextmanager
    async def _factory(**kwargs):
        async with TestSessionLocal() as session:
            yield DeploymentService(session, supervisor, provisioner, **kwargs)

    return _factory


@pytest.fixture
def ledger_state(TestSessionLocal):
    """Return (balance, sum of transactions, transaction count) for a user."""

    async def _state(user_id: int) -> tuple[int, int, int]:
        async with TestSessionLocal() as session:
            coins = await session.scalar(select(User.coins).where(User.id == user_id))
            total = await session.scalar(
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    Transaction.user_id == user_id
                )
            )
            count = await session.scalar(
                select(func.count(Transaction.id)).where(Transaction.user_id == user_id)
            )
            return coins, int(total), count

    return _state


@pytest.fixture
async def registered_user(client: AsyncClient):
    """Register a user and return credentials."""
    credentials = {
        "username": "testuser",
        "email": "testuser@example.com",
        "name": "Test User",
        "password": "TestPass123!",
    }
    await client.post("/register", json=credentials)
    return credentials


@pytest.fixture
async def auth_token(registered_user: dict, client: AsyncClient):
    """Get JWT token for authenticated requests."""
    response = await client.post(
        "/login",
        json={
            "login": registered_user["username"],
            "password": registered_user["password"],
        },
    )
    return response.json()["access_token"]


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": settings.ADMIN_API_KEY}
