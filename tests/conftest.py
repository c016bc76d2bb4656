"""Shared fixtures: SQLite database, frozen settings and collaborator fakes"""
from decimal import Decimal
from typing import Dict, Optional

import pytest

from hive_rewards.config import Settings
from hive_rewards.db import Database
from hive_rewards.models.contribution import CycleInfo, Question, QuestionType
from hive_rewards.models.db import Cycle
from hive_rewards.services.collaborators import (
    HoldProvider, InMemoryQuestionBank, SqlCycleProvider, SqlUsageCounter, UsageCounter
)
from hive_rewards.services.escrow import StakeStore
from hive_rewards.services.job_queue import JobQueue
from hive_rewards.services.rewards_pool import RewardsPool


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class FakeHoldProvider(HoldProvider):
    def __init__(self, holds: Optional[Dict[str, Decimal]] = None):
        self.holds = dict(holds or {})

    def get_wallet_hold(self, wallet_address: str) -> Decimal:
        return Decimal(str(self.holds.get(wallet_address, 0)))


class FakeUsageCounter(UsageCounter):
    def __init__(self, counts: Optional[Dict[str, int]] = None):
        self.counts = dict(counts or {})
        self.calls = []

    def get_usage_count(self, ref_id: str) -> int:
        self.calls.append(ref_id)
        return self.counts.get(ref_id, 0)


def add_cycle(database: Database, number: int, active: bool = True) -> CycleInfo:
    with database.session() as session:
        cycle = Cycle(cycle_number=number, is_active=active)
        session.add(cycle)
        session.flush()
        return CycleInfo(id=cycle.id, number=cycle.cycle_number)


def mcq(question_id: str, complexity: int = 3, correct_index: int = 0) -> Question:
    return Question(id=question_id, complexity=complexity, question_type=QuestionType.MCQ, correct_index=correct_index)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'hive.db'}")
    db.init()
    yield db
    db.dispose()


@pytest.fixture
def cycle(database) -> CycleInfo:
    return add_cycle(database, 7)


@pytest.fixture
def cycle_provider(database) -> SqlCycleProvider:
    return SqlCycleProvider(database)


@pytest.fixture
def usage_counter(database) -> SqlUsageCounter:
    return SqlUsageCounter(database)


@pytest.fixture
def queue(database) -> JobQueue:
    return JobQueue(database)


@pytest.fixture
def stakes(database) -> StakeStore:
    return StakeStore(database)


@pytest.fixture
def pool(database, queue) -> RewardsPool:
    return RewardsPool(database, queue)


@pytest.fixture
def question_bank() -> InMemoryQuestionBank:
    return InMemoryQuestionBank()
