"""Explicit wiring of the settlement services"""
import logging
from typing import Optional

from hive_rewards.config import Settings
from hive_rewards.db import Database
from hive_rewards.db_config import DatabaseManager
from hive_rewards.progression import Progression
from hive_rewards.scoring import ShareCalculator
from hive_rewards.services.collaborators import (
    CycleProvider, HoldProvider, InMemoryQuestionBank, QuestionBank, SqlCycleProvider, SqlUsageCounter, TransferSigner,
    UsageCounter
)
from hive_rewards.services.deposits import DepositVerifier
from hive_rewards.services.escrow import StakeStore
from hive_rewards.services.fees import FeeService
from hive_rewards.services.job_queue import JobQueue
from hive_rewards.services.payouts import PayoutEngine
from hive_rewards.services.rankup import RankupService
from hive_rewards.services.rewards_pool import TRANSFER_JOB_TYPE, PoolTransferHandler, RewardsPool
from hive_rewards.services.shares import ShareRecorder
from hive_rewards.services.solana import SolanaHoldProvider, SolanaRPC, TransferSignerClient
from hive_rewards.services.worker import JobWorker

logger = logging.getLogger(__name__)


class Container:
    """
    Builds every service once from a Settings instance

    Collaborators owned by other subsystems (question bank, hold lookup, cycle
    management, usage counters) can be passed in; otherwise the SQL or chain
    backed defaults are used.
    """

    def __init__(
            self,
            settings: Settings,
            database: Optional[Database] = None,
            question_bank: Optional[QuestionBank] = None,
            hold_provider: Optional[HoldProvider] = None,
            cycle_provider: Optional[CycleProvider] = None,
            usage_counter: Optional[UsageCounter] = None,
            rpc: Optional[SolanaRPC] = None,
            transfer_signer: Optional[TransferSigner] = None
    ):
        self.settings = settings
        chain = settings.chain

        if database is None:
            database = Database(DatabaseManager.get_connection_string(settings))
        self.database = database

        self.rpc = rpc or SolanaRPC(chain.rpc_url, timeout=chain.rpc_timeout)
        if transfer_signer is None and chain.transfer_signer_url and chain.transfer_signer_api_key:
            transfer_signer = TransferSignerClient(
                chain.transfer_signer_url,
                chain.transfer_signer_api_key,
                timeout=chain.rpc_timeout
            )
        self.transfer_signer = transfer_signer

        self.cycle_provider = cycle_provider or SqlCycleProvider(database)
        self.usage_counter = usage_counter or SqlUsageCounter(database)
        self.hold_provider = hold_provider or SolanaHoldProvider(self.rpc, chain.mint_address)
        self.question_bank = question_bank or InMemoryQuestionBank()

        self.calculator = ShareCalculator(settings.rewards)
        self.progression = Progression(settings.progression)

        worker_settings = settings.job_worker
        self.queue = JobQueue(database, default_max_attempts=worker_settings.max_attempts)
        self.shares = ShareRecorder(database, self.calculator, settings.rewards)
        self.payouts = PayoutEngine(database, self.calculator, self.usage_counter, settings.rewards)
        self.stakes = StakeStore(database)
        self.pool = RewardsPool(database, self.queue)
        self.rankup = RankupService(
            database,
            self.stakes,
            self.progression,
            self.hold_provider,
            self.question_bank,
            self.cycle_provider,
            self.pool,
            settings.rankup
        )
        self.fees = FeeService(database, self.stakes, self.pool, self.cycle_provider, settings.economy)
        self.deposits = DepositVerifier(database, self.rpc, chain, self.stakes)

        self.worker = JobWorker(self.queue, worker_settings)
        self.worker.register(
            TRANSFER_JOB_TYPE,
            PoolTransferHandler(database, settings.rewards, chain, self.transfer_signer)
        )
