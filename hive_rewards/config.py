"""Application configuration and environment settings"""
import secrets
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RewardsSettings(BaseModel, frozen=True):
    """Share formula caps and pool split"""
    contributor_pct: float = Field(..., description="Fraction of the pool paid to contributors")
    reviewer_pct: float = Field(..., description="Fraction of the pool paid to reviewers")
    usage_max: float = Field(..., description="Cap on the usage multiplier")
    shares_min: float = Field(..., description="Lower clamp for contributor final shares")
    shares_max: float = Field(..., description="Upper clamp for contributor final shares")
    allow_self_review: bool = Field(..., description="Allow reviewers to earn on their own submissions")
    pool_transfer_enabled: bool = Field(..., description="Attempt transfers of forfeits to the rewards wallet")

    def normalized_split(self) -> tuple[float, float]:
        """Contributor/reviewer fractions, normalized when they don't sum to 1.0"""
        total = self.contributor_pct + self.reviewer_pct
        if total <= 0:
            raise ValueError("Reward pool percentages must be positive")
        if abs(total - 1.0) > 0.01:
            return self.contributor_pct / total, self.reviewer_pct / total
        return self.contributor_pct, self.reviewer_pct


class ProgressionSettings(BaseModel, frozen=True):
    """Level requirement curve parameters"""
    min_hive_access: float
    max_level: int
    target_max_vault_stake: float
    hold_scale: float
    stake_scale: Optional[float] = None

    @property
    def effective_stake_scale(self) -> float:
        # vault stake at max level lands exactly on the target unless overridden
        if self.stake_scale is not None:
            return self.stake_scale
        return (self.target_max_vault_stake - self.min_hive_access) / (self.max_level * self.max_level)


class RankupSettings(BaseModel, frozen=True):
    """Rank-up trial parameters"""
    lock_cycles: int
    question_count: int
    min_accuracy: float
    min_avg_difficulty: float
    fail_streak_rollback: int


class EconomySettings(BaseModel, frozen=True):
    """Attempt fee schedule and settlement"""
    base_fee: Decimal = Field(..., description="Fee for a medium difficulty attempt")
    pass_threshold: float = Field(..., description="Score at or above which an attempt passes")
    min_partial_cost_pct: float = Field(..., description="Smallest fraction of the fee kept on an imperfect pass")


class JobWorkerSettings(BaseModel, frozen=True):
    """Background worker settings"""
    enabled: bool
    poll_interval_ms: int
    instance_id: str
    retention_days: int
    max_attempts: int
    stale_lock_minutes: int


class ChainSettings(BaseModel, frozen=True):
    """Solana RPC and vault settings"""
    rpc_url: str
    rpc_timeout: float
    vault_address: Optional[str]
    mint_address: Optional[str]
    rewards_wallet_address: Optional[str]
    token_decimals: int
    deposit_epsilon: Decimal
    transfer_signer_url: Optional[str]
    transfer_signer_api_key: Optional[str]


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Database settings
    DATABASE_URL: Optional[str] = Field(None, description="Full SQLAlchemy database URL")
    DB_HOST: str = Field("localhost", description="Database host")
    DB_PORT: str = Field("5432", description="Database port")
    DB_NAME: str = Field("hive", description="Database name")
    DB_USER: str = Field("hive", description="Database user")
    DB_PASSWORD: Optional[str] = Field(None, description="Database password")
    DB_SSL_MODE: str = Field("prefer", description="libpq sslmode")

    LOG_LEVEL: str = Field("INFO", description="Root log level")

    # Reward settings
    REWARDS_CONTRIBUTOR_PCT: float = 0.85
    REWARDS_REVIEWER_PCT: float = 0.15
    REWARDS_USAGE_MAX: float = 3.0
    REWARDS_SHARES_MIN: float = 0.25
    REWARDS_SHARES_MAX: float = 10.0
    REWARDS_REVIEWER_SELF_REVIEW: bool = False
    REWARDS_POOL_TRANSFER_ENABLED: bool = False

    # Progression settings
    MIN_HIVE_ACCESS: float = 50.0
    PROG_MAX_LEVEL: int = 100
    PROG_TARGET_MAX_VAULT_STAKE: float = 10000.0
    PROG_HOLD_SCALE: float = 5.0
    PROG_STAKE_SCALE: Optional[float] = None

    # Rank-up settings
    RANKUP_LOCK_CYCLES: int = 4
    RANKUP_QUESTION_COUNT: int = 20
    RANKUP_MIN_ACCURACY: float = 0.8
    RANKUP_MIN_AVG_DIFFICULTY: float = 3.0
    RANKUP_FAIL_STREAK_ROLLBACK: int = 3

    # Attempt fee settings
    ECON_BASE_FEE_HIVE: Decimal = Decimal("1")
    ECON_PASS_THRESHOLD: float = 0.70
    ECON_MIN_PARTIAL_COST_PCT: float = 0.05

    # Job worker settings
    JOB_WORKER_ENABLED: bool = True
    JOB_WORKER_POLL_MS: int = 2000
    JOB_WORKER_INSTANCE_ID: Optional[str] = Field(None, description="Stable worker id for multi-instance deployments")
    JOB_RETENTION_DAYS: int = 7
    JOB_MAX_ATTEMPTS: int = 5
    JOB_STALE_LOCK_MINUTES: int = 15

    # Chain settings
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    SOLANA_RPC_TIMEOUT: float = 30.0
    HIVE_VAULT_ADDRESS: Optional[str] = None
    HIVE_MINT: Optional[str] = None
    REWARDS_WALLET_ADDRESS: Optional[str] = None
    HIVE_DECIMALS: int = 6
    DEPOSIT_AMOUNT_EPSILON: Decimal = Decimal("0.00000001")
    TRANSFER_SIGNER_URL: Optional[str] = Field(None, description="Service that signs vault transfers")
    TRANSFER_SIGNER_API_KEY: Optional[str] = Field(None, description="API key for the transfer signer")

    @property
    def rewards(self) -> RewardsSettings:
        return RewardsSettings(
            contributor_pct=self.REWARDS_CONTRIBUTOR_PCT,
            reviewer_pct=self.REWARDS_REVIEWER_PCT,
            usage_max=self.REWARDS_USAGE_MAX,
            shares_min=self.REWARDS_SHARES_MIN,
            shares_max=self.REWARDS_SHARES_MAX,
            allow_self_review=self.REWARDS_REVIEWER_SELF_REVIEW,
            pool_transfer_enabled=self.REWARDS_POOL_TRANSFER_ENABLED,
        )

    @property
    def progression(self) -> ProgressionSettings:
        return ProgressionSettings(
            min_hive_access=self.MIN_HIVE_ACCESS,
            max_level=self.PROG_MAX_LEVEL,
            target_max_vault_stake=self.PROG_TARGET_MAX_VAULT_STAKE,
            hold_scale=self.PROG_HOLD_SCALE,
            stake_scale=self.PROG_STAKE_SCALE,
        )

    @property
    def rankup(self) -> RankupSettings:
        return RankupSettings(
            lock_cycles=self.RANKUP_LOCK_CYCLES,
            question_count=self.RANKUP_QUESTION_COUNT,
            min_accuracy=self.RANKUP_MIN_ACCURACY,
            min_avg_difficulty=self.RANKUP_MIN_AVG_DIFFICULTY,
            fail_streak_rollback=self.RANKUP_FAIL_STREAK_ROLLBACK,
        )

    @property
    def economy(self) -> EconomySettings:
        return EconomySettings(
            base_fee=self.ECON_BASE_FEE_HIVE,
            pass_threshold=self.ECON_PASS_THRESHOLD,
            min_partial_cost_pct=self.ECON_MIN_PARTIAL_COST_PCT,
        )

    @property
    def job_worker(self) -> JobWorkerSettings:
        """Worker settings; generates an instance id when none is configured"""
        return JobWorkerSettings(
            enabled=self.JOB_WORKER_ENABLED,
            poll_interval_ms=self.JOB_WORKER_POLL_MS,
            instance_id=self.JOB_WORKER_INSTANCE_ID or f"worker-{secrets.token_hex(4)}",
            retention_days=self.JOB_RETENTION_DAYS,
            max_attempts=self.JOB_MAX_ATTEMPTS,
            stale_lock_minutes=self.JOB_STALE_LOCK_MINUTES,
        )

    @property
    def chain(self) -> ChainSettings:
        return ChainSettings(
            rpc_url=self.SOLANA_RPC_URL,
            rpc_timeout=self.SOLANA_RPC_TIMEOUT,
            vault_address=self.HIVE_VAULT_ADDRESS,
            mint_address=self.HIVE_MINT,
            rewards_wallet_address=self.REWARDS_WALLET_ADDRESS,
            token_decimals=self.HIVE_DECIMALS,
            deposit_epsilon=self.DEPOSIT_AMOUNT_EPSILON,
            transfer_signer_url=self.TRANSFER_SIGNER_URL,
            transfer_signer_api_key=self.TRANSFER_SIGNER_API_KEY,
        )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        frozen=True
    )

# Fields never written to logs
SECRET_FIELDS = {'DATABASE_URL', 'DB_PASSWORD', 'TRANSFER_SIGNER_API_KEY', 'SOLANA_RPC_URL', 'TRANSFER_SIGNER_URL'}
