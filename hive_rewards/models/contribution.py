"""Domain models for contributions, trials and deposits"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ShareSource(str, Enum):
    """Event kinds that produce contribution shares"""
    CONTENT_APPROVED = "content_approved"
    REVIEW_REWARD = "review_reward"
    OTHER = "other"


class PayoutPartition(str, Enum):
    CONTRIBUTOR = "contributor"
    REVIEWER = "reviewer"


class PoolSource(str, Enum):
    FORFEIT = "forfeit"
    OTHER = "other"


class PoolEntryStatus(str, Enum):
    RECORDED = "recorded"
    PENDING_TRANSFER = "pending_transfer"
    TRANSFERRED = "transferred"
    FAILED = "failed"


# Ledger statuses whose amounts count toward a cycle's pool
POOL_COUNTED_STATUSES = (
    PoolEntryStatus.RECORDED.value,
    PoolEntryStatus.PENDING_TRANSFER.value,
    PoolEntryStatus.TRANSFERRED.value,
)


class TrialStatus(str, Enum):
    ACTIVE = "active"
    PASSED = "passed"
    FAILED = "failed"


class StakeBucket(str, Enum):
    AVAILABLE = "available"
    ESCROWED = "escrowed"
    LOCKED = "locked"


class Difficulty(str, Enum):
    """Attempt difficulty tiers"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class QuestionType(str, Enum):
    MCQ = "mcq"
    NUMERIC = "numeric"


@dataclass
class CycleInfo:
    """Current accounting cycle as reported by cycle management"""
    id: str
    number: int


@dataclass
class QualitySignals:
    """Review signals feeding the quality score"""
    auto_review_score: Optional[float] = None
    approve_count: Optional[int] = None
    total_count: Optional[int] = None


@dataclass
class LevelRequirements:
    """Hold and stake a wallet needs to reach a level"""
    level: int
    wallet_hold: Decimal
    vault_stake: Decimal


@dataclass
class Question:
    """Question bank record used for server-side grading"""
    id: str
    complexity: int
    question_type: QuestionType = QuestionType.MCQ
    correct_index: Optional[int] = None
    numeric_answer: Optional[str] = None
    numeric_tolerance: Optional[float] = None


@dataclass
class GradeSummary:
    """Aggregate grading of a trial submission"""
    correct_count: int
    total_count: int
    accuracy: float
    avg_difficulty: float
    results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TokenTransfer:
    """A parsed SPL token transfer instruction"""
    source: str
    destination: str
    authority: str
    mint: str
    raw_amount: Optional[int]
    ui_amount: Optional[Decimal]
    decimals: Optional[int]
    kind: str
