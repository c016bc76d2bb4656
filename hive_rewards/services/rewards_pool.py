"""
Rewards pool bookkeeping

Value entering the pool is recorded in the rewards pool ledger first and moved
on chain afterwards by a 'rewards_pool_transfer' job. A transfer failure never
removes the ledger entry; it only changes the entry's status.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hive_rewards.config import ChainSettings, RewardsSettings
from hive_rewards.db import Database
from hive_rewards.errors import PermanentJobFailure, TransientInfraError
from hive_rewards.models.contribution import PoolEntryStatus, PoolSource
from hive_rewards.models.db import LegacyRewardsPool, RewardsPoolLedgerEntry, to_amount, utcnow
from hive_rewards.services.job_queue import JobQueue
from hive_rewards.services.collaborators import TransferSigner

logger = logging.getLogger(__name__)

TRANSFER_JOB_TYPE = 'rewards_pool_transfer'


class RewardsPool:
    """Pool ledger writes and transfer scheduling"""

    def __init__(self, database: Database, queue: JobQueue):
        self.database = database
        self.queue = queue

    def record_pool_deposit(
            self,
            session: Session,
            source: PoolSource,
            amount: Decimal,
            wallet_pubkey: Optional[str] = None,
            cycle_id: Optional[str] = None
    ) -> str:
        """Record value entering the pool; returns the ledger entry id"""
        entry = RewardsPoolLedgerEntry(
            source=PoolSource(source).value,
            amount=to_amount(amount),
            wallet_pubkey=wallet_pubkey,
            cycle_id=cycle_id,
            status=PoolEntryStatus.RECORDED.value
        )
        session.add(entry)
        session.flush()
        return entry.id

    def add_to_legacy_pool(self, session: Session, amount: Decimal) -> Decimal:
        """Add to the single-row legacy accumulator; returns the new total"""
        pool = session.get(LegacyRewardsPool, 1, with_for_update=True)
        if pool is None:
            pool = LegacyRewardsPool(id=1, total_amount=Decimal("0"))
            session.add(pool)
        pool.total_amount = to_amount(Decimal(pool.total_amount or 0) + Decimal(amount))
        pool.updated_at = utcnow()
        session.flush()
        return pool.total_amount

    def record_forfeit(
            self,
            session: Session,
            amount: Decimal,
            wallet_pubkey: str,
            cycle_id: Optional[str]
    ) -> Optional[str]:
        """
        Record a forfeited stake inside the caller's transaction

        The ledger insert runs in a savepoint; if it fails the amount goes to
        the legacy accumulator instead so the forfeit is never lost.

        Returns:
            The ledger entry id, or None when the legacy fallback was used
        """
        try:
            with session.begin_nested():
                return self.record_pool_deposit(session, PoolSource.FORFEIT, amount, wallet_pubkey, cycle_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record pool deposit for {wallet_pubkey}, using legacy pool: {e}")
            self.add_to_legacy_pool(session, amount)
            return None

    def schedule_transfer(self, ledger_entry_id: str) -> Optional[str]:
        """Enqueue the transfer job; failures are logged and leave the entry 'recorded'"""
        try:
            return self.queue.enqueue(TRANSFER_JOB_TYPE, {'ledger_entry_id': ledger_entry_id})
        except SQLAlchemyError as e:
            logger.error(f"Failed to enqueue pool transfer for ledger entry {ledger_entry_id}: {e}")
            return None

    def requeue_pending_transfers(self) -> List[str]:
        """Enqueue a transfer job for every entry still waiting or failed"""
        with self.database.session() as session:
            entry_ids = session.scalars(
                select(RewardsPoolLedgerEntry.id)
                .where(RewardsPoolLedgerEntry.status.in_((
                    PoolEntryStatus.PENDING_TRANSFER.value,
                    PoolEntryStatus.FAILED.value
                )))
                .order_by(RewardsPoolLedgerEntry.created_at)
            ).all()

        job_ids = [self.queue.enqueue(TRANSFER_JOB_TYPE, {'ledger_entry_id': entry_id}) for entry_id in entry_ids]
        logger.info(f"Requeued {len(job_ids)} pool transfers")
        return job_ids

    def get_entry(self, ledger_entry_id: str) -> Optional[RewardsPoolLedgerEntry]:
        with self.database.session() as session:
            return session.get(RewardsPoolLedgerEntry, ledger_entry_id)

    def get_legacy_total(self) -> Decimal:
        with self.database.session() as session:
            pool = session.get(LegacyRewardsPool, 1)
            return Decimal(pool.total_amount) if pool else Decimal("0")


class PoolTransferHandler:
    """
    Job handler moving a pool ledger entry's amount from the vault to the
    rewards wallet

    - transfers disabled or not configured → 'pending_transfer', job succeeds
    - signer failure → 'failed', error re-raised so the queue retries
    - success → 'transferred' with the signature as tx_ref
    """

    def __init__(
            self,
            database: Database,
            rewards: RewardsSettings,
            chain: ChainSettings,
            signer: Optional[TransferSigner] = None
    ):
        self.database = database
        self.rewards = rewards
        self.chain = chain
        self.signer = signer

    def _set_status(self, entry_id: str, status: PoolEntryStatus, tx_ref: Optional[str] = None) -> None:
        values = {'status': status.value, 'updated_at': utcnow()}
        if tx_ref:
            values['tx_ref'] = tx_ref
        with self.database.session() as session:
            session.execute(
                update(RewardsPoolLedgerEntry)
                .where(RewardsPoolLedgerEntry.id == entry_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    def _missing_config(self) -> List[str]:
        missing = []
        if not self.chain.rewards_wallet_address:
            missing.append('REWARDS_WALLET_ADDRESS')
        if not self.chain.vault_address:
            missing.append('HIVE_VAULT_ADDRESS')
        if not self.chain.mint_address:
            missing.append('HIVE_MINT')
        if self.signer is None:
            missing.append('TRANSFER_SIGNER_URL')
        return missing

    def __call__(self, payload: Dict[str, Any]) -> None:
        entry_id = payload.get('ledger_entry_id')
        if not entry_id:
            raise PermanentJobFailure("Missing ledger_entry_id in payload", code="invalid_payload")

        with self.database.session() as session:
            entry = session.get(RewardsPoolLedgerEntry, entry_id)
            if entry is None:
                raise PermanentJobFailure(f"Ledger entry {entry_id} not found", code="ledger_entry_not_found")
            status = entry.status
            amount = Decimal(entry.amount)

        if status == PoolEntryStatus.TRANSFERRED.value:
            logger.info(f"Pool entry {entry_id} already transferred")
            return

        if not self.rewards.pool_transfer_enabled:
            self._set_status(entry_id, PoolEntryStatus.PENDING_TRANSFER)
            logger.info(f"Pool transfer disabled, entry {entry_id} left pending")
            return

        missing = self._missing_config()
        if missing:
            self._set_status(entry_id, PoolEntryStatus.PENDING_TRANSFER)
            logger.warning(f"Pool transfer not configured ({', '.join(missing)}), entry {entry_id} left pending")
            return

        try:
            signature = self.signer.transfer(
                source_owner=self.chain.vault_address,
                destination_owner=self.chain.rewards_wallet_address,
                mint=self.chain.mint_address,
                amount=amount,
                decimals=self.chain.token_decimals,
                reference=entry_id
            )
        except TransientInfraError:
            self._set_status(entry_id, PoolEntryStatus.FAILED)
            raise

        self._set_status(entry_id, PoolEntryStatus.TRANSFERRED, tx_ref=signature)
        logger.info(f"Transferred {amount} from vault to rewards wallet for entry {entry_id}: {signature}")
