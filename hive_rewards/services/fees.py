"""
Attempt fees

A fee sized by difficulty is reserved from available stake into escrow when an
attempt is submitted. Once the attempt is scored the fee is settled: the part
kept goes to the rewards pool and the rest is refunded to available stake.
Ledger entries carry 'attempt:<id>:<step>' tx refs, so each step is written at
most once per attempt.
"""
import logging
from decimal import Decimal
from typing import Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from hive_rewards.config import EconomySettings
from hive_rewards.db import Database
from hive_rewards.errors import ConflictError, NotFoundError, ValidationError
from hive_rewards.models.contribution import Difficulty, PoolSource
from hive_rewards.models.db import StakeLedgerEntry, to_amount
from hive_rewards.models.results import FeeSettlement
from hive_rewards.services.collaborators import CycleProvider
from hive_rewards.services.escrow import StakeStore
from hive_rewards.services.rewards_pool import RewardsPool

logger = logging.getLogger(__name__)

FEE_MULTIPLIERS = {
    Difficulty.LOW.value: Decimal("0.5"),
    Difficulty.MEDIUM.value: Decimal("1"),
    Difficulty.HIGH.value: Decimal("2"),
    Difficulty.EXTREME.value: Decimal("4"),
}


def calculate_fee_settlement(
        fee: Decimal,
        score_pct: float,
        passed: bool,
        min_partial_cost_pct: float
) -> FeeSettlement:
    """
    Split a fee into cost and refund

    A failed attempt costs the whole fee and a perfect score costs nothing.
    Any other pass costs the missed fraction, never less than
    min_partial_cost_pct.
    """
    if not passed:
        cost_pct = 1.0
    elif score_pct == 1.0:
        cost_pct = 0.0
    else:
        cost_pct = max(min_partial_cost_pct, 1.0 - score_pct)

    fee = to_amount(fee)
    cost = to_amount(fee * Decimal(str(cost_pct)))
    return FeeSettlement(fee=fee, cost_pct=cost_pct, cost=cost, refund=fee - cost)


def _ref(attempt_id: str, step: str) -> str:
    return f"attempt:{attempt_id}:{step}"


class FeeService:
    """Reserves attempt fees and settles them against the attempt score"""

    def __init__(
            self,
            database: Database,
            stakes: StakeStore,
            pool: RewardsPool,
            cycle_provider: CycleProvider,
            settings: EconomySettings
    ):
        self.database = database
        self.stakes = stakes
        self.pool = pool
        self.cycle_provider = cycle_provider
        self.settings = settings

    def fee_for_difficulty(self, difficulty: Union[Difficulty, str]) -> Decimal:
        """Base fee scaled by the difficulty tier; unknown tiers pay the base fee"""
        key = difficulty.value if isinstance(difficulty, Difficulty) else str(difficulty)
        multiplier = FEE_MULTIPLIERS.get(key)
        if multiplier is None:
            logger.warning(f"Unknown difficulty {key!r}, charging the base fee")
            multiplier = Decimal("1")
        return to_amount(Decimal(str(self.settings.base_fee)) * multiplier)

    def fee_schedule(self) -> Dict[str, Decimal]:
        return {tier.value: self.fee_for_difficulty(tier) for tier in Difficulty}

    def is_passed(self, score_pct: float) -> bool:
        return score_pct >= self.settings.pass_threshold

    def reserve_fee(self, wallet_address: str, difficulty: Union[Difficulty, str], attempt_id: str) -> Decimal:
        """
        Move the attempt fee from available stake into escrow

        Raises:
            InsufficientFundsError: If available stake is below the fee
            ConflictError: If a fee was already reserved for the attempt
        """
        fee = self.fee_for_difficulty(difficulty)
        metadata = {'attempt_id': attempt_id, 'difficulty': str(getattr(difficulty, 'value', difficulty))}
        try:
            with self.database.session() as session:
                balance = self.stakes.get_or_create_balance(session, wallet_address)
                self.stakes.escrow(
                    session,
                    balance,
                    fee,
                    metadata=metadata,
                    reason='fee_reserve',
                    tx_ref=_ref(attempt_id, 'reserve')
                )
        except IntegrityError:
            raise ConflictError("Fee already reserved for this attempt", code="fee_already_reserved")

        logger.info(f"Reserved fee {fee} from {wallet_address} for attempt {attempt_id}")
        return fee

    def settle_fee(self, wallet_address: str, attempt_id: str, score_pct: float) -> FeeSettlement:
        """
        Settle a reserved fee: refund the earned part and pool the rest

        Raises:
            ValidationError: If score_pct is outside 0..1
            NotFoundError: If no fee was reserved for the attempt by this wallet
            ConflictError: If the fee was already settled
        """
        if not 0.0 <= score_pct <= 1.0:
            raise ValidationError("Score must be between 0 and 1", code="invalid_score")

        cycle = self.cycle_provider.get_current_cycle()
        refund_ref = _ref(attempt_id, 'refund')
        cost_ref = _ref(attempt_id, 'cost')
        pool_entry_id: Optional[str] = None

        try:
            with self.database.session() as session:
                balance = self.stakes.get_or_create_balance(session, wallet_address)
                reserve = session.scalars(
                    select(StakeLedgerEntry).where(StakeLedgerEntry.tx_ref == _ref(attempt_id, 'reserve'))
                ).first()
                if reserve is None or reserve.wallet_address != wallet_address:
                    raise NotFoundError("No fee reserved for this attempt", code="fee_not_reserved")

                settled = session.scalars(
                    select(StakeLedgerEntry.id).where(StakeLedgerEntry.tx_ref.in_((refund_ref, cost_ref))).limit(1)
                ).first()
                if settled is not None:
                    raise ConflictError("Fee already settled for this attempt", code="fee_already_settled")

                passed = self.is_passed(score_pct)
                settlement = calculate_fee_settlement(
                    -Decimal(reserve.amount), score_pct, passed, self.settings.min_partial_cost_pct
                )
                metadata = {'attempt_id': attempt_id, 'score_pct': score_pct, 'cost_pct': settlement.cost_pct}

                if settlement.refund > 0:
                    self.stakes.refund_escrow(
                        session, balance, settlement.refund, 'fee_refund', tx_ref=refund_ref, metadata=metadata
                    )
                if settlement.cost > 0:
                    self.stakes.forfeit_escrow(
                        session, balance, settlement.cost, metadata=metadata, reason='fee_cost', tx_ref=cost_ref
                    )
                    pool_entry_id = self.pool.record_pool_deposit(
                        session, PoolSource.OTHER, settlement.cost, wallet_address, cycle.id if cycle else None
                    )
        except IntegrityError:
            raise ConflictError("Fee already settled for this attempt", code="fee_already_settled")

        settlement.pool_entry_id = pool_entry_id
        logger.info(
            f"Settled fee for attempt {attempt_id} ({wallet_address}): "
            f"cost {settlement.cost}, refund {settlement.refund}"
        )
        if pool_entry_id:
            self.pool.schedule_transfer(pool_entry_id)
        return settlement
