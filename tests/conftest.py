"""Test fixtures and configuration."""

import logging
import os
import sys

# Must be set before reconciler.config builds its settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
import structlog  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from reconciler import models  # noqa: E402,F401
from reconciler.database import Base, get_db  # noqa: E402
from reconciler.services import scoring  # noqa: E402


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def reset_reconciliation_config(monkeypatch):
    """Every test starts from the YAML defaults, free of env overrides."""
    for name in (
        "RECONCILIATION_MIN_CONFIDENCE",
        "RECONCILIATION_BULK_THRESHOLD",
        "RECONCILIATION_GROUP_BY_EMAIL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(scoring, "_config_cache", None)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """In-memory SQLite engine with the full schema.

    pysqlite's own transaction handling breaks SAVEPOINT, so the driver is
    put in autocommit mode and SQLAlchemy emits BEGIN itself.
    """
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(db_engine):
    """Session inside a transaction that is rolled back after the test.

    ``join_transaction_mode="create_savepoint"`` turns commits and rollbacks
    made by the code under test into savepoint operations, so routers can
    commit freely without leaking state.
    """
    connection = await db_engine.connect()
    transaction = await connection.begin()
    session = AsyncSession(
        bind=connection,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    await session.close()
    await transaction.rollback()
    await connection.close()


@pytest_asyncio.fixture(scope="function")
async def client(db):
    """Async test client whose requests share the test session."""
    from reconciler.main import app

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)
