"""
Drops Ledger for Gym Rewards

This module provides:
- Global and per-gym drops balances with an append-only transaction log
- Atomic, row-locked balance mutations with (account, kind, reference) idempotency
- Reward redemption lifecycle: pending -> confirmed / cancelled
- Challenge progress tracking that pays bounties into the ledger
"""

from .challenges import ChallengeTracker
from .errors import (
    AccountInactiveError,
    AccountNotFoundError,
    DuplicateApplicationError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransitionError,
    LedgerServiceError,
    NotFoundError,
    OutOfStockError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    TransientFailureError,
    UnavailableError,
)
from .models import (
    ChallengeCadence,
    RedemptionStatus,
    Transaction,
    TransactionKind,
    Redemption,
    Reward,
    Challenge,
)
from .redemptions import RedemptionService
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "AccountInactiveError",
    "AccountNotFoundError",
    "Challenge",
    "ChallengeCadence",
    "ChallengeTracker",
    "DuplicateApplicationError",
    "InMemoryStorage",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidTransitionError",
    "LedgerService",
    "LedgerServiceError",
    "NotFoundError",
    "OutOfStockError",
    "Redemption",
    "RedemptionNotFoundError",
    "RedemptionService",
    "RedemptionStatus",
    "Reward",
    "RewardNotFoundError",
    "Transaction",
    "TransactionKind",
    "TransientFailureError",
    "UnavailableError",
]
