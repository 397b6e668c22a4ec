import secrets
import string
from functools import partial
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from .config import Settings, get_settings
from .errors import (
    InvalidTransitionError,
    OutOfStockError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    TransientFailureError,
)
from .models import Redemption, RedemptionStatus, Reward, TransactionKind
from .service import LedgerService
from .storage import UniqueViolation, account_key, redemption_key, reward_key

logger = structlog.get_logger("ledger.redemptions")

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_code(prefix: str = "RED", length: int = 8) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def normalize_code(code: str) -> str:
    return code.strip().upper()


class RedemptionService:
    """Exchanges drops for catalog rewards.

    ``pending`` moves to ``confirmed`` or ``cancelled``; both are terminal.
    The debit, the stock decrement and the redemption row are written in a
    single unit of work.
    """

    def __init__(
        self,
        ledger: LedgerService,
        settings: Optional[Settings] = None,
        code_factory: Optional[Callable[[], str]] = None,
    ):
        settings = settings or get_settings()
        self.ledger = ledger
        self.storage = ledger.storage
        self.code_attempts = settings.redemption_code_attempts
        self.code_factory = code_factory or partial(
            generate_code, settings.redemption_code_prefix, settings.redemption_code_length
        )

    def create(self, account_id: UUID, reward_id: UUID, gym_id: UUID) -> Redemption:
        # Codes are drawn before any lock is taken; a clash on insert rolls the
        # whole unit back and the next attempt starts over with a fresh code.
        for attempt in range(1, self.code_attempts + 1):
            code = normalize_code(self.code_factory())
            try:
                return self._create_once(account_id, reward_id, gym_id, code)
            except UniqueViolation as exc:
                if exc.index != "redemption_code":
                    raise
                logger.warning(
                    "redemption_code_collision",
                    gym_id=str(gym_id),
                    attempt=attempt,
                )
        raise TransientFailureError(
            f"Could not allocate a unique redemption code after {self.code_attempts} attempts"
        )

    def _create_once(self, account_id: UUID, reward_id: UUID, gym_id: UUID, code: str) -> Redemption:
        with self.storage.transaction(account_key(account_id), reward_key(reward_id)):
            reward = self._load_reward(reward_id, gym_id)
            if not reward.has_stock():
                raise OutOfStockError(f"Reward {reward_id} is out of stock")

            redemption_id = uuid4()
            self.ledger.apply(
                account_id,
                -reward.price,
                TransactionKind.SPEND_REDEMPTION,
                reference_id=str(redemption_id),
                gym_id=gym_id,
                description=f"Redeemed: {reward.name}",
            )
            if reward.stock is not None:
                self.storage.update_reward(reward_id, stock=reward.stock - 1)

            row = self.storage.insert_redemption({
                "redemption_id": redemption_id,
                "account_id": account_id,
                "reward_id": reward_id,
                "gym_id": gym_id,
                "amount_spent": reward.price,
                "code": code,
                "status": RedemptionStatus.PENDING,
                "created_at": self.ledger.clock(),
                "resolved_at": None,
                "resolved_by": None,
                "cancel_reason": None,
            })
            redemption = Redemption(**row)

        logger.info(
            "redemption_created",
            redemption_id=str(redemption.redemption_id),
            account_id=str(account_id),
            reward_id=str(reward_id),
            gym_id=str(gym_id),
            amount_spent=redemption.amount_spent,
        )
        return redemption

    def confirm(self, redemption_id: UUID, staff_id: str) -> Redemption:
        with self.storage.transaction(redemption_key(redemption_id)):
            redemption = self.get(redemption_id)
            if not redemption.can_confirm():
                raise InvalidTransitionError(
                    f"Cannot confirm redemption in {redemption.status.value} state"
                )
            row = self.storage.update_redemption(
                redemption_id,
                status=RedemptionStatus.CONFIRMED,
                resolved_at=self.ledger.clock(),
                resolved_by=staff_id,
            )
            redemption = Redemption(**row)

        logger.info("redemption_confirmed", redemption_id=str(redemption_id), staff_id=staff_id)
        return redemption

    def cancel(self, redemption_id: UUID, staff_id: str, reason: Optional[str] = None) -> Redemption:
        """Cancel a pending redemption and refund the drops.

        Reward stock is left as it is; restocking is a manual decision.
        """
        account_id = self.get(redemption_id).account_id

        with self.storage.transaction(account_key(account_id), redemption_key(redemption_id)):
            redemption = self.get(redemption_id)
            if not redemption.can_cancel():
                raise InvalidTransitionError(
                    f"Cannot cancel redemption in {redemption.status.value} state"
                )
            self.ledger.apply(
                redemption.account_id,
                redemption.amount_spent,
                TransactionKind.REFUND,
                reference_id=str(redemption_id),
                gym_id=redemption.gym_id,
                description=f"Refund: {reason}" if reason else None,
            )
            row = self.storage.update_redemption(
                redemption_id,
                status=RedemptionStatus.CANCELLED,
                resolved_at=self.ledger.clock(),
                resolved_by=staff_id,
                cancel_reason=reason,
            )
            redemption = Redemption(**row)

        logger.info(
            "redemption_cancelled",
            redemption_id=str(redemption_id),
            staff_id=staff_id,
            refunded=redemption.amount_spent,
        )
        return redemption

    def validate(self, code: str, gym_id: UUID) -> Redemption:
        row = self.storage.find_redemption_by_code(gym_id, normalize_code(code))
        if not row:
            raise RedemptionNotFoundError(f"Redemption code {normalize_code(code)} not found at this gym")
        return Redemption(**row)

    def get(self, redemption_id: UUID) -> Redemption:
        row = self.storage.get_redemption(redemption_id)
        if not row:
            raise RedemptionNotFoundError(f"Redemption {redemption_id} not found")
        return Redemption(**row)

    def list_for_gym(self, gym_id: UUID, status: Optional[RedemptionStatus] = None) -> list[Redemption]:
        redemptions = [Redemption(**r) for r in self.storage.redemptions_at(gym_id)]
        if status:
            redemptions = [r for r in redemptions if r.status == status]
        redemptions.sort(key=lambda r: r.created_at, reverse=True)
        return redemptions

    def list_for_account(self, account_id: UUID) -> list[Redemption]:
        redemptions = [Redemption(**r) for r in self.storage.redemptions_for(account_id)]
        redemptions.sort(key=lambda r: r.created_at, reverse=True)
        return redemptions

    def _load_reward(self, reward_id: UUID, gym_id: UUID) -> Reward:
        row = self.storage.get_reward(reward_id)
        if not row or not row["is_active"] or row["gym_id"] != gym_id:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return Reward(**row)
