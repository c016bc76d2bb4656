"""Result models returned to the HTTP surface and operator tooling"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class PayoutResult(BaseModel):
    """
    Outcome of a cycle payout calculation.

    Attributes:
        success: False when the calculation aborted without writes
        already_calculated: True when payouts existed and nothing was recomputed
        payout_count: Number of payout rows for the cycle
        total_pool: Pool amount summed from the ledger
        total_shares: Contributor plus reviewer shares
        unallocated: Pool fraction of a partition nobody earned shares in
        error: Human readable reason for a failure or a no-op
    """
    cycle_id: str
    success: bool
    already_calculated: bool = False
    payout_count: int = 0
    total_pool: Decimal = Decimal("0")
    total_shares: Decimal = Decimal("0")
    unallocated: Decimal = Decimal("0")
    error: Optional[str] = None


class TrialView(BaseModel):
    """Public view of a rank-up trial"""
    id: str
    wallet_address: str
    from_level: int
    to_level: int
    question_count: int
    min_accuracy: float
    min_avg_difficulty: float
    trial_stake_amount: Decimal
    status: str


class TrialOutcome(BaseModel):
    """Result of completing a rank-up trial"""
    trial_id: str
    result: str
    correct_count: int
    total_count: int
    accuracy: float
    avg_difficulty: float
    new_level: int
    fail_streak: int
    rollback_applied: bool = False
    failed_reason: Optional[str] = None
    forfeited_amount: Decimal = Decimal("0")
    pool_entry_id: Optional[str] = None
    question_results: List[Dict[str, Any]] = []


class DepositVerification(BaseModel):
    """
    Outcome of verifying an on-chain deposit.

    verified_amount is taken from the vault token account balance delta when
    the transaction metadata carries it; amount_source records which path
    produced it ('balance_delta' or 'instruction').
    """
    valid: bool
    error_code: Optional[str] = None
    error: Optional[str] = None
    verified_amount: Optional[Decimal] = None
    amount_source: Optional[str] = None
    sender: Optional[str] = None
    sender_owner: Optional[str] = None
    receiver: Optional[str] = None
    mint: Optional[str] = None


class WalletRewards(BaseModel):
    """Rewards summary for a wallet"""
    wallet_pubkey: str
    current_cycle_shares: Decimal = Decimal("0")
    estimated_payout: Optional[Decimal] = None
    recent_payouts: List[Dict[str, Any]] = []


class FeeSettlement(BaseModel):
    """Split of a reserved attempt fee into the part kept and the part refunded"""
    fee: Decimal
    cost_pct: float
    cost: Decimal
    refund: Decimal
    pool_entry_id: Optional[str] = None
