"""
Shared fixtures for the behavior engine test suite.

Every test gets its own in-memory SQLite database and a service whose batcher
runs inline, so nothing here needs external services or background threads.
"""

import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from behavior_engine.auth import create_access_token
from behavior_engine.config import Settings
from behavior_engine.database import build_engine, build_session_factory, init_db
from behavior_engine.models import Experiment, ExperimentStatus, ExperimentType, ExperimentVariant
from behavior_engine.service import EngagementService


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock; callable like time.monotonic or now_ms."""

    def __init__(self, start=0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, amount):
        self.now += amount


@pytest.fixture
def clock():
    return FakeClock(start=1_700_000_000_000)


@pytest.fixture
def seconds_clock():
    return FakeClock(start=1000.0)


# ---------------------------------------------------------------------------
# Database and service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings():
    return Settings(
        jwt_secret_key="test-secret-key",
        database_url="sqlite://",
        batch_background_flush=False,
        batch_processing_delay_seconds=0,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def service(test_settings, engine):
    svc = EngagementService(test_settings, engine=engine)
    svc.start()
    yield svc
    svc.shutdown()


@pytest.fixture
def client(test_settings, engine):
    """TestClient whose lifespan starts and drains its own service."""
    from behavior_engine.main import create_app

    app = create_app(EngagementService(test_settings, engine=engine))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('test-admin', role='admin')}"}


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {create_access_token('test-user', role='user')}"}


# ---------------------------------------------------------------------------
# Experiment fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_experiment(session_factory):
    """
    Create an experiment directly in the database and return its id.

    `variants` is a list of (slug, traffic_percentage, is_control) tuples,
    optionally with a fourth is_active element.
    """
    counter = {"n": 0}

    def _make(
        variants=(("control", 50, True), ("treatment", 50, False)),
        status=ExperimentStatus.ACTIVE,
        traffic_allocation=100,
        start_date=None,
        end_date=None,
    ):
        counter["n"] += 1
        db = session_factory()
        try:
            experiment = Experiment(
                slug=f"experiment-{counter['n']}",
                name=f"Experiment {counter['n']}",
                type=ExperimentType.CTA,
                target_entity="home",
                traffic_allocation=traffic_allocation,
                status=status,
                start_date=start_date,
                end_date=end_date,
            )
            experiment.variants = [
                ExperimentVariant(
                    slug=v[0],
                    name=v[0].title(),
                    traffic_percentage=v[1],
                    is_control=v[2],
                    is_active=v[3] if len(v) > 3 else True,
                    configuration={"label": v[0]},
                )
                for v in variants
            ]
            db.add(experiment)
            db.commit()
            return experiment.id
        finally:
            db.close()

    return _make


@pytest.fixture
def past():
    return datetime.utcnow() - timedelta(days=7)


@pytest.fixture
def future():
    return datetime.utcnow() + timedelta(days=7)
