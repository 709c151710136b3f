"""Pytest configuration and fixtures."""

import os
import time
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["FEE_PAYER_PRIVATE_KEY"] = ""

from fakes import (  # noqa: E402
    AUTOCOMPOUND_VAULT,
    CHAIN_ID,
    FEE_PAYER,
    FEE_PAYER_KEY,
    ORCHESTRATOR,
    PYT_TOKEN,
    SENDER,
    SY_VAULT,
    TOKEN,
    YIELD_SET,
    FakeClock,
    FakeLedger,
)

from feerelay.auth.verifier import AuthorizationVerifier  # noqa: E402
from feerelay.chain.relay import RelayExecutor  # noqa: E402
from feerelay.chain.submission import clear_payer_locks  # noqa: E402
from feerelay.config import Settings  # noqa: E402
from feerelay.ledger.models import Base  # noqa: E402
from feerelay.services import create_services, transfer_domain  # noqa: E402
from feerelay.services.quote_service import QuoteEngine  # noqa: E402
from feerelay.store import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_payer_locks():
    """Locks bind to the loop that first waits on them."""
    clear_payer_locks()
    yield
    clear_payer_locks()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        chain_id=CHAIN_ID,
        fee_payer_private_key=FEE_PAYER_KEY,
        receipt_timeout=0.3,
        receipt_poll_interval=0.01,
        submission_lock_timeout=5,
        token_address=TOKEN,
        sy_vault_address=SY_VAULT,
        orchestrator_address=ORCHESTRATOR,
        pyt_address=PYT_TOKEN,
        autocompound_vault_address=AUTOCOMPOUND_VAULT,
        yield_set_address=YIELD_SET,
    )


@pytest.fixture
def ledger() -> FakeLedger:
    """Ledger with a funded fee payer and a sender holding 500 tokens."""
    fake = FakeLedger()
    fake.native[FEE_PAYER.lower()] = 100 * 10**18
    fake.tokens[SENDER.lower()] = 500 * 10**6
    return fake


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(time.time())


@pytest.fixture
def relay(ledger, settings) -> RelayExecutor:
    return RelayExecutor(
        ledger,
        FEE_PAYER_KEY,
        chain_id=CHAIN_ID,
        receipt_timeout=settings.receipt_timeout,
        poll_interval=settings.receipt_poll_interval,
        low_balance_threshold=Decimal("1"),
        lock_timeout=settings.submission_lock_timeout,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def services(settings, store, ledger, relay, clock, session_factory):
    """Fully wired services over the fake ledger and in-memory database."""
    return create_services(
        settings,
        store=store,
        rpc=ledger,
        relay=relay,
        verifier=AuthorizationVerifier(clock=clock),
        quotes=QuoteEngine(store, clock=clock),
        session_factory=session_factory,
    )


@pytest.fixture
def domain(settings):
    return transfer_domain(settings)
