"""Interfaces for collaborators owned by other subsystems, plus SQL-backed
implementations for the ones whose tables live in this database."""
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy import select, update

from hive_rewards.db import Database
from hive_rewards.models.contribution import CycleInfo, Question
from hive_rewards.models.db import CorpusItemUsage, Cycle, utcnow

logger = logging.getLogger(__name__)


class CycleProvider(ABC):
    """Cycle management"""

    @abstractmethod
    def get_current_cycle(self) -> Optional[CycleInfo]:
        """Return the active cycle, if any"""


class HoldProvider(ABC):
    """On-chain wallet holdings"""

    @abstractmethod
    def get_wallet_hold(self, wallet_address: str) -> Decimal:
        """Return the wallet's token balance"""


class TransferSigner(ABC):
    """Holder of the vault key that signs and submits outgoing token transfers"""

    @abstractmethod
    def transfer(
            self,
            source_owner: str,
            destination_owner: str,
            mint: str,
            amount: Decimal,
            decimals: int,
            reference: str
    ) -> str:
        """
        Move amount of mint between the owners' token accounts

        reference is stable per ledger entry, so a retried call for the same
        entry must not produce a second transfer.

        Returns:
            The confirmed transaction signature

        Raises:
            TransientInfraError: If the outcome is unknown or the transfer was
                rejected; the caller retries
        """


class QuestionBank(ABC):
    """Read-only question lookups used for grading"""

    @abstractmethod
    def get_question(self, question_id: str) -> Optional[Question]:
        """Return the stored question with its correct answer"""


class UsageCounter(ABC):
    """Per-cycle usage of approved corpus items"""

    @abstractmethod
    def get_usage_count(self, ref_id: str) -> int:
        """Return the usage count for an item, 0 when unknown"""


class InMemoryQuestionBank(QuestionBank):
    """Question bank backed by a dict, for tools and tests"""

    def __init__(self, questions: Iterable[Question] = ()):
        self._questions: Dict[str, Question] = {q.id: q for q in questions}

    def add(self, question: Question) -> None:
        self._questions[question.id] = question

    def get_question(self, question_id: str) -> Optional[Question]:
        return self._questions.get(question_id)


class SqlCycleProvider(CycleProvider):
    """Reads the active cycle from the cycles table"""

    def __init__(self, database: Database):
        self.database = database

    def get_current_cycle(self) -> Optional[CycleInfo]:
        with self.database.session() as session:
            cycle = session.scalars(
                select(Cycle).where(Cycle.is_active.is_(True)).order_by(Cycle.cycle_number.desc()).limit(1)
            ).first()
            if cycle is None:
                return None
            return CycleInfo(id=cycle.id, number=cycle.cycle_number)


class SqlUsageCounter(UsageCounter):
    """Usage counters stored in corpus_item_usage"""

    def __init__(self, database: Database):
        self.database = database

    def get_usage_count(self, ref_id: str) -> int:
        with self.database.session() as session:
            usage = session.get(CorpusItemUsage, ref_id)
            return usage.usage_count_cycle if usage else 0

    def increment_usage(self, ref_ids: Iterable[str]) -> None:
        """Count one use of each item in the current cycle"""
        ref_ids = list(ref_ids)
        if not ref_ids:
            return
        now = utcnow()
        with self.database.session() as session:
            for ref_id in ref_ids:
                usage = session.get(CorpusItemUsage, ref_id, with_for_update=True)
                if usage is None:
                    session.add(CorpusItemUsage(
                        ref_id=ref_id,
                        usage_count_cycle=1,
                        last_used_at=now,
                        updated_at=now
                    ))
                else:
                    usage.usage_count_cycle += 1
                    usage.last_used_at = now
                    usage.updated_at = now

    def reset_cycle_usage(self) -> int:
        """Zero every counter at the start of a cycle"""
        with self.database.session() as session:
            result = session.execute(
                update(CorpusItemUsage).values(usage_count_cycle=0, updated_at=utcnow())
            )
            logger.info(f"Reset usage counters for {result.rowcount} corpus items")
            return result.rowcount
