"""Error taxonomy for settlement operations.

Every error carries a stable machine-readable ``code`` and a human message.
Messages are shown to users, so they must never include RPC endpoints,
credentials or other internal configuration.
"""
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base class for all settlement errors"""
    default_code = "settlement_error"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {'error': self.code, 'message': self.message}
        payload.update(self.details)
        return payload


class ValidationError(SettlementError):
    """Malformed request, rejected before any state change"""
    default_code = "validation_error"


class NotFoundError(ValidationError):
    """Referenced record does not exist"""
    default_code = "not_found"


class ConflictError(SettlementError):
    """Duplicate or stale operation, rejected without side effects"""
    default_code = "conflict"


class InsufficientFundsError(SettlementError):
    """Hold, stake or escrow shortfall"""
    default_code = "insufficient_funds"


class VerificationFailedError(SettlementError):
    """On-chain verification failed; nothing is credited"""
    default_code = "verification_failed"


class TransientInfraError(SettlementError):
    """RPC timeout or transfer failure; the caller should retry"""
    default_code = "transient_infra_error"


class PermanentJobFailure(SettlementError):
    """A job that must not be retried"""
    default_code = "permanent_job_failure"
