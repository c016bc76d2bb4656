"""Contribution share scoring"""
import math
from dataclasses import dataclass
from typing import Optional

from hive_rewards.config import RewardsSettings
from hive_rewards.models.contribution import QualitySignals

@dataclass
class ShareBreakdown:
    """Detailed breakdown of a contributor's base shares"""
    difficulty_score: float
    quality_score: float
    base_shares: float


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class ShareCalculator:
    """Calculates contributor and reviewer shares from approval signals"""

    def __init__(self, settings: RewardsSettings):
        self.settings = settings

    def difficulty_score(self, complexity: float) -> float:
        """Map complexity 1-5 onto [1.0, 2.0]: 1→1.0, 3→1.4, 5→1.8"""
        return clamp(0.8 + 0.2 * complexity, 1.0, 2.0)

    def quality_score(
            self,
            auto_review_score: Optional[float] = None,
            approve_count: Optional[int] = None,
            total_count: Optional[int] = None
    ) -> float:
        """Quality from auto-review and reviewer consensus, clamped to [0.5, 1.5]"""
        score = 1.0

        if auto_review_score is not None and 0.0 <= auto_review_score <= 1.0:
            score = 0.8 + auto_review_score * 0.4

        if approve_count is not None and total_count:
            ratio = approve_count / total_count
            if ratio >= 0.8:
                score += 0.3 * (ratio - 0.8) / 0.2
            elif ratio < 0.5:
                score -= 0.2 * (0.5 - ratio) / 0.5

        return clamp(score, 0.5, 1.5)

    def usage_score(self, usage_count: float) -> float:
        """Diminishing-returns usage multiplier, capped by configuration"""
        return min(self.settings.usage_max, 1 + math.log(1 + max(usage_count, 0)))

    def base_shares(self, complexity: float, signals: Optional[QualitySignals] = None) -> ShareBreakdown:
        """Shares fixed at approval time, before any usage multiplier"""
        signals = signals or QualitySignals()
        difficulty = self.difficulty_score(complexity)
        quality = self.quality_score(
            signals.auto_review_score,
            signals.approve_count,
            signals.total_count
        )
        return ShareBreakdown(
            difficulty_score=difficulty,
            quality_score=quality,
            base_shares=difficulty * quality
        )

    def final_shares(self, base_shares: float, usage_score: float) -> float:
        """Contributor shares at payout time, clamped to the configured range"""
        return clamp(base_shares * usage_score, self.settings.shares_min, self.settings.shares_max)

    def reviewer_shares(self, complexity: float) -> float:
        """Fixed reviewer shares: 1 + 0.25 per complexity point, clamped to [1, 3]"""
        return clamp(1 + 0.25 * complexity, 1.0, 3.0)
