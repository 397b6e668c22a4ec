from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


ANY_MACHINE = "any"


class TransactionKind(str, Enum):
    EARN_SESSION = "earn-session"
    EARN_CHALLENGE = "earn-challenge"
    SPEND_REDEMPTION = "spend-redemption"
    REFUND = "refund"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ChallengeCadence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    STREAK = "streak"
    ONE_TIME = "one-time"


class ApplyRequest(BaseModel):
    account_id: UUID
    amount: int = Field(..., description="Signed drops; negative for a debit")
    kind: TransactionKind
    reference_id: Optional[str] = Field(default=None, description="Session, challenge or redemption id")
    gym_id: Optional[UUID] = None
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "account_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 15,
            "kind": "earn-session",
            "reference_id": "session-2026-10-18-0001",
            "gym_id": "770e8400-e29b-41d4-a716-446655440002",
        }
    })


class CreateRedemptionRequest(BaseModel):
    account_id: UUID
    reward_id: UUID
    gym_id: UUID


class ConfirmRedemptionRequest(BaseModel):
    staff_id: str


class CancelRedemptionRequest(BaseModel):
    staff_id: str
    reason: Optional[str] = None


class RecordMinutesRequest(BaseModel):
    account_id: UUID
    gym_id: UUID
    machine_type: str
    minutes: int = Field(..., gt=0)


class Account(BaseModel):
    account_id: UUID
    global_balance: int = 0
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GymMembership(BaseModel):
    account_id: UUID
    gym_id: UUID
    local_balance: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    transaction_id: UUID
    account_id: UUID
    amount: int
    kind: TransactionKind
    reference_id: Optional[str] = None
    gym_id: Optional[UUID] = None
    balance_after: int
    sequence: int
    description: str
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class Reward(BaseModel):
    reward_id: UUID
    gym_id: UUID
    name: str
    price: int = Field(..., gt=0)
    stock: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)

    def has_stock(self) -> bool:
        return self.stock is None or self.stock > 0


class Redemption(BaseModel):
    redemption_id: UUID
    account_id: UUID
    reward_id: UUID
    gym_id: UUID
    amount_spent: int
    code: str
    status: RedemptionStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    cancel_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_confirm(self) -> bool:
        return self.status == RedemptionStatus.PENDING

    def can_cancel(self) -> bool:
        return self.status == RedemptionStatus.PENDING


class Challenge(BaseModel):
    challenge_id: UUID
    gym_id: UUID
    name: str
    cadence: ChallengeCadence
    required_minutes: int = Field(..., gt=0)
    machine_type_filter: str = ANY_MACHINE
    bounty_amount: int = Field(..., ge=0)
    start_date: date
    end_date: date
    is_active: bool = True
    streak_days: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(from_attributes=True)

    def matches_machine(self, machine_type: str) -> bool:
        wanted = self.machine_type_filter.lower()
        return wanted == ANY_MACHINE or wanted == machine_type.lower()

    def is_running(self, today: date) -> bool:
        return self.is_active and self.start_date <= today <= self.end_date


class ChallengeProgress(BaseModel):
    account_id: UUID
    challenge_id: UUID
    period_start: date
    current_minutes: int = 0
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    daily_minutes: dict[date, int] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class CompletionResult(BaseModel):
    challenge_id: UUID
    challenge_name: str
    completed_now: bool
    drops_awarded: int
    current_minutes: int
    required_minutes: int


class ActiveChallenge(BaseModel):
    challenge_id: UUID
    challenge_name: str
    cadence: ChallengeCadence
    machine_type_filter: str
    required_minutes: int
    bounty_amount: int
    current_minutes: int
    is_completed: bool
    progress_percentage: int


class ChallengeStats(BaseModel):
    challenge_id: UUID
    challenge_name: str
    participants: int
    completions: int
    drops_paid: int


class BalanceSummary(BaseModel):
    account_id: UUID
    global_balance: int
    local_balances: dict[UUID, int] = Field(default_factory=dict)
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class TransactionHistory(BaseModel):
    account_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: int


class AuditReport(BaseModel):
    account_id: UUID
    global_balance: int
    ledger_total: int
    local_mismatches: dict[UUID, tuple[int, int]] = Field(
        default_factory=dict, description="gym_id -> (local_balance, ledger_total)"
    )
    is_consistent: bool
