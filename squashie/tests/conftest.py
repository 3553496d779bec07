"""
Shared fixtures: throwaway SQLite database, offline LLM mode.
"""

import os

import pytest


@pytest.fixture(autouse=True)
def offline_llm(monkeypatch):
    """Mediation runs on deterministic fallbacks unless a test injects a client."""
    from squashie.config import get_settings
    from squashie.llm_client import reset_llm_client

    monkeypatch.setenv("LLM_MODE", "none")
    get_settings.cache_clear()
    reset_llm_client()
    yield
    get_settings.cache_clear()
    reset_llm_client()


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from squashie.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "squashie_test.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def bus():
    from squashie.events import NotificationBus

    bus = NotificationBus(max_queue_size=50)
    yield bus
    bus.close()


@pytest.fixture
def notifier(sqlalchemy_db, bus):
    from squashie.rewards import RewardNotifier

    return RewardNotifier(bus)


@pytest.fixture
def engine(sqlalchemy_db, notifier):
    from squashie.engine import ConflictEngine
    from squashie.mediator import MediationService

    return ConflictEngine(mediator=MediationService(), notifier=notifier)
