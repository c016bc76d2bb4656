"""Cycle payout calculation"""
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from hive_rewards.config import RewardsSettings
from hive_rewards.db import Database
from hive_rewards.models.contribution import POOL_COUNTED_STATUSES, PayoutPartition, ShareSource
from hive_rewards.models.db import (
    ContributionShare, Cycle, CyclePayout, RewardsPoolLedgerEntry, to_amount
)
from hive_rewards.models.results import PayoutResult, WalletRewards
from hive_rewards.scoring import ShareCalculator
from hive_rewards.services.collaborators import CycleProvider, UsageCounter

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class PayoutAborted(Exception):
    """Calculation stopped before any payout row was written"""


class PayoutEngine:
    """
    Splits a cycle's rewards pool between contributors and reviewers in
    proportion to their shares. Runs once per cycle; later calls return the
    existing result without recomputing.
    """

    def __init__(
            self,
            database: Database,
            calculator: ShareCalculator,
            usage_counter: UsageCounter,
            settings: RewardsSettings
    ):
        self.database = database
        self.calculator = calculator
        self.usage_counter = usage_counter
        self.settings = settings

    def _existing_payout_count(self, session, cycle_id: str) -> int:
        return session.scalar(
            select(func.count()).select_from(CyclePayout).where(CyclePayout.cycle_id == cycle_id)
        ) or 0

    def _already_calculated(self, cycle_id: str, count: int) -> PayoutResult:
        return PayoutResult(
            cycle_id=cycle_id,
            success=True,
            already_calculated=True,
            payout_count=count,
            error="Payouts already calculated for this cycle"
        )

    def _usage_counts(self, cycle_id: str) -> Dict[str, int]:
        """Usage counts, read now, for contributor rows still lacking final shares"""
        with self.database.session() as session:
            ref_ids = session.scalars(
                select(ContributionShare.ref_id).distinct().where(
                    ContributionShare.cycle_id == cycle_id,
                    ContributionShare.source != ShareSource.REVIEW_REWARD.value,
                    ContributionShare.final_shares.is_(None),
                    ContributionShare.ref_id.is_not(None)
                )
            ).all()

        return self._lookup_usage(ref_ids)

    def _lookup_usage(self, ref_ids) -> Dict[str, int]:
        counts = {}
        for ref_id in ref_ids:
            try:
                counts[ref_id] = self.usage_counter.get_usage_count(ref_id)
            except Exception as e:
                logger.warning(f"Usage lookup failed for {ref_id}, treating as unused: {e}")
                counts[ref_id] = 0
        return counts

    def calculate_payouts(self, cycle_id: str) -> PayoutResult:
        """
        Calculate and record payouts for a cycle

        Contributor final shares = clamp(base_shares × usage_score) are
        computed and frozen here for rows that don't have them yet. Each
        partition's pool fraction is divided by wallet share; a partition with
        no shares is skipped and its fraction reported as unallocated.

        Returns:
            PayoutResult; success is False when nothing was written
        """
        with self.database.session() as session:
            existing = self._existing_payout_count(session, cycle_id)
        if existing:
            return self._already_calculated(cycle_id, existing)

        usage_counts = self._usage_counts(cycle_id)

        try:
            with self.database.session() as session:
                # Serialize concurrent calculations for the same cycle
                session.execute(select(Cycle.id).where(Cycle.id == cycle_id).with_for_update())
                existing = self._existing_payout_count(session, cycle_id)
                if existing:
                    return self._already_calculated(cycle_id, existing)

                result = self._calculate(session, cycle_id, usage_counts)

        except PayoutAborted as e:
            logger.warning(f"Payout calculation aborted for cycle {cycle_id}: {e}")
            return PayoutResult(cycle_id=cycle_id, success=False, error=str(e))
        except IntegrityError:
            # Another process wrote the payouts first
            with self.database.session() as session:
                existing = self._existing_payout_count(session, cycle_id)
            return self._already_calculated(cycle_id, existing)
        except SQLAlchemyError as e:
            logger.error(f"Database error calculating payouts for cycle {cycle_id}: {e}", exc_info=True)
            return PayoutResult(cycle_id=cycle_id, success=False, error="Failed to calculate payouts")

        logger.info(
            f"Calculated {result.payout_count} payouts for cycle {cycle_id}: "
            f"pool={result.total_pool} shares={result.total_shares}"
        )
        return result

    def _calculate(self, session, cycle_id: str, usage_counts: Dict[str, int]) -> PayoutResult:
        amounts = session.scalars(
            select(RewardsPoolLedgerEntry.amount).where(
                RewardsPoolLedgerEntry.cycle_id == cycle_id,
                RewardsPoolLedgerEntry.status.in_(POOL_COUNTED_STATUSES)
            )
        ).all()
        total_pool = sum((Decimal(a) for a in amounts), ZERO)

        contributor_pct, reviewer_pct = self.settings.normalized_split()
        pools = {
            PayoutPartition.CONTRIBUTOR: total_pool * Decimal(str(contributor_pct)),
            PayoutPartition.REVIEWER: total_pool * Decimal(str(reviewer_pct)),
        }

        records = session.scalars(
            select(ContributionShare)
            .where(ContributionShare.cycle_id == cycle_id)
            .order_by(ContributionShare.created_at, ContributionShare.id)
            .with_for_update()
        ).all()
        if not records:
            raise PayoutAborted("No shares found for this cycle")

        # rows recorded after the usage prefetch
        late_ref_ids = sorted({
            record.ref_id for record in records
            if record.source != ShareSource.REVIEW_REWARD.value
            and record.final_shares is None
            and record.ref_id is not None
            and record.ref_id not in usage_counts
        })
        if late_ref_ids:
            logger.info(f"Looking up usage for {len(late_ref_ids)} items recorded during calculation of {cycle_id}")
            usage_counts = {**usage_counts, **self._lookup_usage(late_ref_ids)}

        wallet_shares: Dict[PayoutPartition, Dict[str, Decimal]] = {
            PayoutPartition.CONTRIBUTOR: OrderedDict(),
            PayoutPartition.REVIEWER: OrderedDict(),
        }

        for record in records:
            if record.source == ShareSource.REVIEW_REWARD.value:
                partition = PayoutPartition.REVIEWER
                shares = Decimal(record.final_shares if record.final_shares is not None else record.base_shares)
            else:
                partition = PayoutPartition.CONTRIBUTOR
                if record.final_shares is None:
                    usage_score = self.calculator.usage_score(usage_counts.get(record.ref_id, 0))
                    final = self.calculator.final_shares(float(record.base_shares), usage_score)
                    record.usage_score = Decimal(str(usage_score)).quantize(Decimal("0.0001"))
                    record.final_shares = to_amount(final)
                shares = Decimal(record.final_shares)

            partition_map = wallet_shares[partition]
            partition_map[record.wallet_pubkey] = partition_map.get(record.wallet_pubkey, ZERO) + shares

        totals = {p: sum(m.values(), ZERO) for p, m in wallet_shares.items()}
        total_shares = totals[PayoutPartition.CONTRIBUTOR] + totals[PayoutPartition.REVIEWER]
        if total_shares <= 0:
            raise PayoutAborted("Total shares calculated to zero")

        payouts: List[CyclePayout] = []
        unallocated = ZERO
        for partition, partition_map in wallet_shares.items():
            partition_total = totals[partition]
            if partition_total <= 0:
                unallocated += pools[partition]
                continue
            for wallet, shares in partition_map.items():
                payouts.append(CyclePayout(
                    cycle_id=cycle_id,
                    wallet_pubkey=wallet,
                    partition=partition.value,
                    shares=to_amount(shares),
                    payout_amount=to_amount(pools[partition] * shares / partition_total),
                    status='calculated'
                ))

        session.add_all(payouts)
        session.flush()

        return PayoutResult(
            cycle_id=cycle_id,
            success=True,
            payout_count=len(payouts),
            total_pool=to_amount(total_pool),
            total_shares=to_amount(total_shares),
            unallocated=to_amount(unallocated)
        )

    def get_wallet_rewards(self, wallet_pubkey: str, cycle_provider: CycleProvider) -> WalletRewards:
        """Current cycle shares, the payout if already calculated and the last 10 payouts"""
        current_cycle = cycle_provider.get_current_cycle()
        summary = WalletRewards(wallet_pubkey=wallet_pubkey)

        with self.database.session() as session:
            if current_cycle:
                rows = session.execute(
                    select(ContributionShare.final_shares, ContributionShare.base_shares).where(
                        ContributionShare.cycle_id == current_cycle.id,
                        ContributionShare.wallet_pubkey == wallet_pubkey
                    )
                ).all()
                # contributor rows without final shares count at their base value until payout
                summary.current_cycle_shares = to_amount(
                    sum((Decimal(final if final is not None else base) for final, base in rows), ZERO)
                )

                payouts = session.scalars(
                    select(CyclePayout.payout_amount).where(
                        CyclePayout.cycle_id == current_cycle.id,
                        CyclePayout.wallet_pubkey == wallet_pubkey
                    )
                ).all()
                if payouts:
                    summary.estimated_payout = to_amount(sum((Decimal(p) for p in payouts), ZERO))

            recent = session.execute(
                select(CyclePayout, Cycle.cycle_number)
                .outerjoin(Cycle, Cycle.id == CyclePayout.cycle_id)
                .where(CyclePayout.wallet_pubkey == wallet_pubkey)
                .order_by(CyclePayout.created_at.desc())
                .limit(10)
            ).all()
            summary.recent_payouts = [
                {
                    'cycle_id': payout.cycle_id,
                    'cycle_number': cycle_number or 0,
                    'partition': payout.partition,
                    'payout_amount': Decimal(payout.payout_amount),
                    'status': payout.status,
                    'created_at': payout.created_at,
                }
                for payout, cycle_number in recent
            ]

        return summary
