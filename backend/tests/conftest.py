"""
Shared fixtures: in-memory SQLite with savepoint support, engine settings,
fake payout gateways, and a TestClient wired to the test database.
"""
import os
import sys
from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Never touch a real database from tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from royalty.config import EngineSettings
from royalty.database import Base, build_engine
from royalty.errors import ChannelTimeout, PayoutChannelFailure
from royalty.models import db_models  # noqa: F401
from royalty.models.db_models import CreatorProfileDB, LedgerAccountDB
from royalty.models.domain import StreamEventData
from royalty.services.engine import RoyaltyEngine
from royalty.services.payouts import PayoutGateway


# =============================================================================
# FAKES
# =============================================================================

class FakeGateway(PayoutGateway):
    """
    Scripted payout API.

    outcomes maps channel name -> "paid" | "pending" | "timeout" | "fail".
    """

    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.calls = []

    def send(self, channel, payload):
        self.calls.append((channel, payload))
        outcome = self.outcomes.get(channel, "paid")
        if outcome == "timeout":
            raise ChannelTimeout(channel, "simulated timeout")
        if outcome == "fail":
            raise PayoutChannelFailure(channel, "simulated decline")
        return {"id": f"{channel}_{payload['payout_id']}", "status": outcome}


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def db_engine():
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# ENGINE
# =============================================================================

@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def crypto_gateway():
    return FakeGateway()


@pytest.fixture
def engine(settings, gateway, crypto_gateway):
    return RoyaltyEngine(settings, payment_gateway=gateway, crypto_gateway=crypto_gateway)


@pytest.fixture
def client(engine, session_factory):
    """
    TestClient against the module-level app without running its lifespan.

    API tests must not keep a transaction open on the `db` fixture while a
    request runs: the in-memory database is a single shared connection.
    """
    from fastapi.testclient import TestClient
    from royalty.database import get_db
    from royalty.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.engine = engine
    yield TestClient(app)
    app.dependency_overrides.clear()


# =============================================================================
# HELPERS
# =============================================================================

def make_profile(db, creator_id, **fields):
    now = datetime(2024, 1, 1)
    profile = CreatorProfileDB(creator_id=creator_id, created_at=now, updated_at=now, **fields)
    db.add(profile)
    db.flush()
    return profile


def stream(creator_id, occurred_at, duration=45.0, fraud_score=0.1, **kwargs):
    return StreamEventData(
        creator_id=creator_id,
        viewer_id=kwargs.pop("viewer_id", "viewer-1"),
        duration_seconds=duration,
        fraud_score=fraud_score,
        occurred_at=occurred_at,
        **kwargs,
    )


def assert_ledger_invariant(db, account_id):
    account = db.get(LedgerAccountDB, account_id, populate_existing=True)
    assert account.balance_cents >= 0
    assert account.reserved_cents >= 0
    assert (
        account.balance_cents + account.reserved_cents
        == account.total_earned_cents - account.total_paid_out_cents
    )
    return account
