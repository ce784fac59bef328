"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from levelbot.config import LevelingConfig, TierConfig
from levelbot.database.models import Base


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all levelbot tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def leveling() -> LevelingConfig:
    """Default leveling config with two tiers (rank 3 and rank 7)."""
    return LevelingConfig(
        tiers=(
            TierConfig(rank=7, role_id=700, daily_cap=35000),
            TierConfig(rank=3, role_id=300, daily_cap=20000),
        ),
    )


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
