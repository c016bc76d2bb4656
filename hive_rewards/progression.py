"""Level requirement curves for wallet hold and vault stake"""
from decimal import Decimal, ROUND_HALF_UP

from hive_rewards.config import ProgressionSettings
from hive_rewards.models.contribution import LevelRequirements

TWO_PLACES = Decimal("0.01")


class Progression:
    """
    Requirements per level.

    Wallet hold grows linearly (base + level * hold_scale); vault stake grows
    quadratically (base + level^2 * stake_scale) so that the stake at the
    maximum level equals the configured target.
    """

    def __init__(self, settings: ProgressionSettings):
        self.settings = settings

    def _check_level(self, level: int) -> None:
        if level < 1:
            raise ValueError("Level must be at least 1")

    def required_wallet_hold(self, level: int) -> float:
        self._check_level(level)
        return self.settings.min_hive_access + level * self.settings.hold_scale

    def required_vault_stake(self, level: int) -> float:
        self._check_level(level)
        return self.settings.min_hive_access + level * level * self.settings.effective_stake_scale

    def requirements(self, level: int) -> LevelRequirements:
        """Requirements rounded to 2 decimals"""
        return LevelRequirements(
            level=level,
            wallet_hold=Decimal(str(self.required_wallet_hold(level))).quantize(TWO_PLACES, ROUND_HALF_UP),
            vault_stake=Decimal(str(self.required_vault_stake(level))).quantize(TWO_PLACES, ROUND_HALF_UP),
        )
