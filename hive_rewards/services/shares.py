"""Recording contribution shares at approval time"""
import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from hive_rewards.config import RewardsSettings
from hive_rewards.db import Database
from hive_rewards.errors import ValidationError
from hive_rewards.models.contribution import QualitySignals, ShareSource
from hive_rewards.models.db import ContributionShare, to_amount
from hive_rewards.scoring import ShareCalculator

logger = logging.getLogger(__name__)

FOUR_PLACES = Decimal("0.0001")


def _score(value: float) -> Decimal:
    return Decimal(str(value)).quantize(FOUR_PLACES)


class ShareRecorder:
    """Writes ContributionShare rows when content or reviews are approved"""

    def __init__(self, database: Database, calculator: ShareCalculator, settings: RewardsSettings):
        self.database = database
        self.calculator = calculator
        self.settings = settings

    def record_shares(
            self,
            cycle_id: str,
            wallet_pubkey: str,
            source: ShareSource,
            ref_id: Optional[str],
            difficulty_score: float,
            quality_score: float,
            usage_count_snapshot: Optional[int] = None
    ) -> str:
        """
        Record contributor shares for an approved item

        base_shares = difficulty × quality is fixed now; the usage multiplier
        and final shares are applied at payout time. A usage snapshot, when
        given, is stored for reference only.

        Returns:
            The share record id
        """
        source = ShareSource(source)
        if source == ShareSource.REVIEW_REWARD:
            raise ValidationError("Reviewer shares must be recorded with record_reviewer_shares",
                                  code="invalid_share_source")
        if not cycle_id or not wallet_pubkey:
            raise ValidationError("cycle_id and wallet_pubkey are required", code="missing_fields")

        snapshot = None
        if usage_count_snapshot is not None:
            snapshot = _score(self.calculator.usage_score(usage_count_snapshot))

        record = ContributionShare(
            cycle_id=cycle_id,
            wallet_pubkey=wallet_pubkey,
            source=source.value,
            ref_id=ref_id,
            difficulty_score=_score(difficulty_score),
            quality_score=_score(quality_score),
            base_shares=to_amount(difficulty_score * quality_score),
            usage_score_snapshot=snapshot,
            final_shares=None
        )
        with self.database.session() as session:
            session.add(record)
            session.flush()
            record_id = record.id

        logger.info(f"Recorded {record.base_shares} base shares for {wallet_pubkey} in cycle {cycle_id} ({source.value})")
        return record_id

    def record_approval(
            self,
            cycle_id: str,
            wallet_pubkey: str,
            ref_id: str,
            complexity: int,
            signals: Optional[QualitySignals] = None,
            source: ShareSource = ShareSource.CONTENT_APPROVED
    ) -> str:
        """Compute difficulty and quality from raw signals, then record shares"""
        breakdown = self.calculator.base_shares(complexity, signals)
        return self.record_shares(
            cycle_id,
            wallet_pubkey,
            source,
            ref_id,
            breakdown.difficulty_score,
            breakdown.quality_score
        )

    def record_reviewer_shares(
            self,
            cycle_id: str,
            ref_id: str,
            reviewer_wallets: Sequence[str],
            submitter_wallet: Optional[str],
            complexity: int
    ) -> List[str]:
        """
        Record fixed reviewer shares for each approving reviewer

        A reviewer whose wallet equals the submitter's earns nothing unless
        self-review is enabled. Legacy events without a submitter wallet are
        recorded with self_review_unchecked set.

        Returns:
            Ids of the rows written
        """
        allow_self_review = self.settings.allow_self_review
        shares = to_amount(self.calculator.reviewer_shares(complexity))
        difficulty = _score(self.calculator.difficulty_score(complexity))

        records = []
        for reviewer in dict.fromkeys(reviewer_wallets):
            if not allow_self_review and submitter_wallet and reviewer == submitter_wallet:
                logger.info(f"Self-review skipped for reviewer rewards: {reviewer} on item {ref_id}")
                continue

            unchecked = not allow_self_review and not submitter_wallet
            if unchecked:
                logger.warning(
                    f"Cannot enforce self-review protection: no submitter wallet recorded "
                    f"for item {ref_id} (reviewer {reviewer})"
                )

            records.append(ContributionShare(
                cycle_id=cycle_id,
                wallet_pubkey=reviewer,
                source=ShareSource.REVIEW_REWARD.value,
                ref_id=ref_id,
                difficulty_score=difficulty,
                quality_score=_score(1.0),
                base_shares=shares,
                usage_score=_score(1.0),
                final_shares=shares,
                self_review_unchecked=unchecked
            ))

        if not records:
            return []

        with self.database.session() as session:
            session.add_all(records)
            session.flush()
            ids = [r.id for r in records]

        logger.info(f"Recorded reviewer shares for {len(ids)} reviewers on item {ref_id}")
        return ids
