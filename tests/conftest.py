"""Shared test fixtures."""
from datetime import timedelta
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from fleetsync.models.connection import RiseXConnection
from fleetsync.models.records import Asset, BiofoulingAssessment, Flow, WorkItem  # noqa: F401
from fleetsync.models.sync import SyncLog, SyncState, utc_now  # noqa: F401
from fleetsync.config import Settings
from fleetsync.risex.vault import TokenVault

TEST_KEY = bytes(range(32))

FLOW_A = "flow-a"
FLOW_B = "flow-b"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="vault")
def vault_fixture() -> TokenVault:
    return TokenVault(TEST_KEY)


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Two workflows, one registry, no retry delay."""
    return Settings(
        database_url="sqlite://",
        token_encryption_key="",
        flow_origin_ids=[FLOW_A, FLOW_B],
        asset_registries={"reg-1": "RAN Assets"},
        historic_retry_delay_seconds=0.0,
        sync_run_timeout_seconds=5.0,
        historic_run_timeout_seconds=5.0,
    )


@pytest.fixture(name="seeded_connection")
def seeded_connection_fixture(engine, vault) -> RiseXConnection:
    """An active connection for user-1 whose token is far from expiry."""
    conn = RiseXConnection(
        user_id="user-1",
        upstream_email="diver@example.com",
        access_token_encrypted=vault.encrypt("access-1"),
        refresh_token_encrypted=vault.encrypt("refresh-1"),
        token_expires_at=utc_now() + timedelta(hours=1),
        scopes="openid profile offline_access",
    )
    with Session(engine) as s:
        s.add(conn)
        s.commit()
        s.refresh(conn)
    return conn
