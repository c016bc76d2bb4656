"""SQLAlchemy database models for the reward accounting and settlement engine"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN

from sqlalchemy import (
    Boolean, Column, DateTime, Index, Integer, JSON, Numeric, String, Text, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# All monetary and share columns use this precision
AMOUNT = Numeric(18, 8)
SCORE = Numeric(10, 4)
EIGHT_PLACES = Decimal("0.00000001")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def to_amount(value) -> Decimal:
    """Quantize a number to the 8-place fixed precision used for storage"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(EIGHT_PLACES, rounding=ROUND_HALF_EVEN)


class Job(Base):
    """
    Asynchronous task owned by the queue until it reaches a terminal state.
    Succeeded jobs are removed by retention cleanup.
    """
    __tablename__ = 'jobs'

    id = Column(String, primary_key=True, default=new_id)
    type = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default='pending')
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    run_at = Column(DateTime, nullable=False, default=utcnow)
    locked_at = Column(DateTime, nullable=True)
    locked_by = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('ix_jobs_status_run_at', 'status', 'run_at'),
    )


class ContributionShare(Base):
    """
    Share record written at approval time.
    Contributor rows get final_shares at payout time; reviewer rows get it immediately.
    """
    __tablename__ = 'contribution_shares'

    id = Column(String, primary_key=True, default=new_id)
    cycle_id = Column(String, nullable=False, index=True)
    wallet_pubkey = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False)
    ref_id = Column(String, nullable=True)
    difficulty_score = Column(SCORE, nullable=False)
    quality_score = Column(SCORE, nullable=False)
    base_shares = Column(AMOUNT, nullable=False)
    usage_score_snapshot = Column(SCORE, nullable=True)
    usage_score = Column(SCORE, nullable=True)
    final_shares = Column(AMOUNT, nullable=True)
    self_review_unchecked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CyclePayout(Base):
    """One payout per wallet per partition per cycle; never mutated"""
    __tablename__ = 'cycle_payouts'

    id = Column(String, primary_key=True, default=new_id)
    cycle_id = Column(String, nullable=False, index=True)
    wallet_pubkey = Column(String, nullable=False, index=True)
    partition = Column(String, nullable=False)
    shares = Column(AMOUNT, nullable=False)
    payout_amount = Column(AMOUNT, nullable=False)
    status = Column(String, nullable=False, default='calculated')
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('cycle_id', 'wallet_pubkey', 'partition', name='uq_cycle_payouts_cycle_wallet_partition'),
    )


class RewardsPoolLedgerEntry(Base):
    """Value entering the rewards pool, with its transfer status"""
    __tablename__ = 'rewards_pool_ledger'

    id = Column(String, primary_key=True, default=new_id)
    source = Column(String, nullable=False)
    amount = Column(AMOUNT, nullable=False)
    wallet_pubkey = Column(String, nullable=True, index=True)
    cycle_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default='recorded')
    tx_ref = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class LegacyRewardsPool(Base):
    """Single-row accumulator used when pool ledger bookkeeping fails"""
    __tablename__ = 'legacy_rewards_pool'

    id = Column(Integer, primary_key=True, default=1)
    total_amount = Column(AMOUNT, nullable=False, default=Decimal("0"))
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class StakeLedgerEntry(Base):
    """
    Append-only audit trail of stake mutations.
    Each bucket of a wallet balance equals the running sum of its entries.
    """
    __tablename__ = 'stake_ledger'

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False, index=True)
    bucket = Column(String, nullable=False, default='available')
    amount = Column(AMOUNT, nullable=False)
    balance_after = Column(AMOUNT, nullable=False)
    reason = Column(String, nullable=False)
    tx_ref = Column(String, nullable=True, unique=True)
    metadata_ = Column('metadata', JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class StakeLock(Base):
    """Stake locked after a passed trial, released once its unlock cycle is reached"""
    __tablename__ = 'stake_locks'

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False, index=True)
    trial_id = Column(String, nullable=True)
    amount = Column(AMOUNT, nullable=False)
    locked_cycle = Column(Integer, nullable=False)
    unlock_cycle = Column(Integer, nullable=False)
    unlocked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RankupTrial(Base):
    """Timed skill trial backing a level promotion"""
    __tablename__ = 'rankup_trials'

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False, index=True)
    from_level = Column(Integer, nullable=False)
    to_level = Column(Integer, nullable=False)
    required_hold = Column(AMOUNT, nullable=False)
    required_stake = Column(AMOUNT, nullable=False)
    hold_at_start = Column(AMOUNT, nullable=False)
    stake_at_start = Column(AMOUNT, nullable=False)
    trial_stake_amount = Column(AMOUNT, nullable=False)
    question_count = Column(Integer, nullable=False, default=20)
    min_accuracy = Column(Numeric(5, 4), nullable=False)
    min_avg_difficulty = Column(Numeric(4, 2), nullable=False)
    status = Column(String, nullable=False, default='active')
    correct_count = Column(Integer, nullable=True)
    total_count = Column(Integer, nullable=True)
    accuracy = Column(Numeric(5, 4), nullable=True)
    avg_difficulty = Column(Numeric(4, 2), nullable=True)
    failed_reason = Column(Text, nullable=True)
    forfeited_amount = Column(AMOUNT, nullable=True)
    rollback_applied = Column(Boolean, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # At most one active trial per wallet
        Index(
            'uq_rankup_trials_one_active',
            'wallet_address',
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class WalletBalance(Base):
    """Per-wallet stake buckets, level and rank-up fail streak"""
    __tablename__ = 'wallet_balances'

    id = Column(String, primary_key=True, default=new_id)
    wallet_address = Column(String, nullable=False, unique=True)
    level = Column(Integer, nullable=False, default=1)
    available_stake = Column(AMOUNT, nullable=False, default=Decimal("0"))
    escrowed_stake = Column(AMOUNT, nullable=False, default=Decimal("0"))
    locked_stake = Column(AMOUNT, nullable=False, default=Decimal("0"))
    rankup_fail_streak = Column(Integer, nullable=False, default=0)
    rankup_fail_streak_target_level = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Cycle(Base):
    """Accounting epoch; only one is active at a time"""
    __tablename__ = 'cycles'

    id = Column(String, primary_key=True, default=new_id)
    cycle_number = Column(Integer, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)


class CorpusItemUsage(Base):
    """Per-cycle usage counter for an approved corpus item"""
    __tablename__ = 'corpus_item_usage'

    ref_id = Column(String, primary_key=True)
    usage_count_cycle = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
