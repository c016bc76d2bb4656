"""
Stake buckets and their ledger

A wallet's stake sits in three buckets: available, escrowed (held against an
active rank-up trial or an unsettled attempt fee) and locked (kept after a
passed trial until its unlock cycle). Every change to a bucket appends a
StakeLedgerEntry tagged with that bucket, so each bucket equals the running
sum of its entries.

Methods taking a session run inside the caller's transaction; the wallet row is
locked with SELECT ... FOR UPDATE so concurrent settlements for the same wallet
serialize.
"""
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hive_rewards.db import Database
from hive_rewards.errors import InsufficientFundsError, ValidationError
from hive_rewards.models.contribution import StakeBucket
from hive_rewards.models.db import StakeLedgerEntry, StakeLock, WalletBalance, to_amount, utcnow

logger = logging.getLogger(__name__)

BUCKET_COLUMNS = {
    StakeBucket.AVAILABLE: 'available_stake',
    StakeBucket.ESCROWED: 'escrowed_stake',
    StakeBucket.LOCKED: 'locked_stake',
}


class StakeStore:
    """Wallet balance store with an append-only stake ledger"""

    def __init__(self, database: Database):
        self.database = database

    def get_or_create_balance(self, session: Session, wallet_address: str, lock: bool = True) -> WalletBalance:
        """Fetch the wallet row, creating it at level 1 with empty buckets"""
        stmt = select(WalletBalance).where(WalletBalance.wallet_address == wallet_address)
        if lock:
            stmt = stmt.with_for_update()
        balance = session.scalars(stmt).first()
        if balance is not None:
            return balance

        try:
            with session.begin_nested():
                balance = WalletBalance(
                    wallet_address=wallet_address,
                    level=1,
                    available_stake=Decimal("0"),
                    escrowed_stake=Decimal("0"),
                    locked_stake=Decimal("0"),
                    rankup_fail_streak=0
                )
                session.add(balance)
        except IntegrityError:
            # created concurrently
            balance = session.scalars(stmt).one()
        return balance

    def _move(
            self,
            session: Session,
            balance: WalletBalance,
            bucket: StakeBucket,
            delta: Decimal,
            reason: str,
            tx_ref: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None
    ) -> StakeLedgerEntry:
        column = BUCKET_COLUMNS[bucket]
        current = Decimal(getattr(balance, column) or 0)
        new_value = to_amount(current + delta)
        if new_value < 0:
            raise InsufficientFundsError(
                f"Insufficient {bucket.value} stake: has {current}, needs {-delta}",
                code=f"insufficient_{bucket.value}_stake",
                details={'required': str(to_amount(-delta)), 'current': str(to_amount(current))}
            )

        setattr(balance, column, new_value)
        balance.updated_at = utcnow()
        entry = StakeLedgerEntry(
            wallet_address=balance.wallet_address,
            bucket=bucket.value,
            amount=to_amount(delta),
            balance_after=new_value,
            reason=reason,
            tx_ref=tx_ref,
            metadata_=metadata or {}
        )
        session.add(entry)
        return entry

    def adjust_stake(
            self,
            session: Session,
            wallet_address: str,
            delta: Decimal,
            reason: str,
            tx_ref: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None
    ) -> WalletBalance:
        """
        Add a signed amount to the available bucket

        Raises:
            InsufficientFundsError: If the bucket would go negative
        """
        balance = self.get_or_create_balance(session, wallet_address)
        self._move(session, balance, StakeBucket.AVAILABLE, to_amount(delta), reason, tx_ref, metadata)
        session.flush()
        return balance

    def escrow(
            self,
            session: Session,
            balance: WalletBalance,
            amount: Decimal,
            metadata: Optional[Dict[str, Any]] = None,
            reason: str = 'rankup_escrow',
            tx_ref: Optional[str] = None
    ) -> None:
        """available → escrowed; tx_ref tags the available entry"""
        amount = self._positive(amount)
        self._move(session, balance, StakeBucket.AVAILABLE, -amount, reason, tx_ref=tx_ref, metadata=metadata)
        self._move(session, balance, StakeBucket.ESCROWED, amount, reason, metadata=metadata)

    def refund_escrow(
            self,
            session: Session,
            balance: WalletBalance,
            amount: Decimal,
            reason: str,
            tx_ref: Optional[str] = None,
            metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """escrowed → available"""
        amount = self._positive(amount)
        self._move(session, balance, StakeBucket.ESCROWED, -amount, reason, metadata=metadata)
        self._move(session, balance, StakeBucket.AVAILABLE, amount, reason, tx_ref=tx_ref, metadata=metadata)

    def release_to_locked(
            self,
            session: Session,
            balance: WalletBalance,
            amount: Decimal,
            locked_cycle: int,
            unlock_cycle: int,
            trial_id: Optional[str] = None
    ) -> StakeLock:
        """escrowed → locked, keyed by the cycle it unlocks in"""
        amount = self._positive(amount)
        metadata = {'trial_id': trial_id, 'locked_cycle': locked_cycle, 'unlock_cycle': unlock_cycle}
        self._move(session, balance, StakeBucket.ESCROWED, -amount, 'rankup_lock', metadata=metadata)
        self._move(session, balance, StakeBucket.LOCKED, amount, 'rankup_lock', metadata=metadata)

        lock = StakeLock(
            wallet_address=balance.wallet_address,
            trial_id=trial_id,
            amount=amount,
            locked_cycle=locked_cycle,
            unlock_cycle=unlock_cycle
        )
        session.add(lock)
        return lock

    def forfeit_escrow(
            self,
            session: Session,
            balance: WalletBalance,
            amount: Decimal,
            metadata: Optional[Dict[str, Any]] = None,
            reason: str = 'rankup_forfeit',
            tx_ref: Optional[str] = None
    ) -> Decimal:
        """Remove escrowed stake entirely; the caller accounts for it in the rewards pool"""
        amount = self._positive(amount)
        self._move(session, balance, StakeBucket.ESCROWED, -amount, reason, tx_ref=tx_ref, metadata=metadata)
        return amount

    def _positive(self, amount) -> Decimal:
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Stake amount must be positive", code="invalid_amount")
        return amount

    def get_balance(self, wallet_address: str) -> Optional[WalletBalance]:
        with self.database.session() as session:
            return session.scalars(
                select(WalletBalance).where(WalletBalance.wallet_address == wallet_address)
            ).first()

    def get_ledger(self, wallet_address: str, bucket: Optional[StakeBucket] = None) -> List[StakeLedgerEntry]:
        """Ledger entries for a wallet, oldest first"""
        stmt = select(StakeLedgerEntry).where(StakeLedgerEntry.wallet_address == wallet_address)
        if bucket is not None:
            stmt = stmt.where(StakeLedgerEntry.bucket == StakeBucket(bucket).value)
        stmt = stmt.order_by(StakeLedgerEntry.created_at, StakeLedgerEntry.id)
        with self.database.session() as session:
            return list(session.scalars(stmt).all())

    def locked_by_cycle(self, wallet_address: str) -> Dict[int, Decimal]:
        """Outstanding locked stake grouped by unlock cycle"""
        with self.database.session() as session:
            locks = session.scalars(
                select(StakeLock).where(
                    StakeLock.wallet_address == wallet_address,
                    StakeLock.unlocked_at.is_(None)
                )
            ).all()

        totals: Dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
        for lock in locks:
            totals[lock.unlock_cycle] += Decimal(lock.amount)
        return dict(totals)

    def release_matured_locks(self, current_cycle_number: int) -> int:
        """
        Return locks whose unlock cycle has been reached to available stake

        Returns:
            Number of locks released
        """
        now = utcnow()
        released = 0
        with self.database.session() as session:
            locks = session.scalars(
                select(StakeLock)
                .where(StakeLock.unlocked_at.is_(None), StakeLock.unlock_cycle <= current_cycle_number)
                .order_by(StakeLock.wallet_address, StakeLock.created_at)
                .with_for_update()
            ).all()

            for lock in locks:
                balance = self.get_or_create_balance(session, lock.wallet_address)
                metadata = {'lock_id': lock.id, 'trial_id': lock.trial_id, 'cycle': current_cycle_number}
                amount = Decimal(lock.amount)
                self._move(session, balance, StakeBucket.LOCKED, -amount, 'lock_release', metadata=metadata)
                self._move(session, balance, StakeBucket.AVAILABLE, amount, 'lock_release', metadata=metadata)
                lock.unlocked_at = now
                released += 1

        if released:
            logger.info(f"Released {released} matured stake locks at cycle {current_cycle_number}")
        return released
