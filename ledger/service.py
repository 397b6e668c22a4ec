from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Optional, Union
from uuid import UUID, uuid4

import structlog

from .errors import (
    AccountInactiveError,
    AccountNotFoundError,
    DuplicateApplicationError,
    InsufficientBalanceError,
    InvalidAmountError,
)
from .models import (
    Account,
    AuditReport,
    BalanceSummary,
    Transaction,
    TransactionHistory,
    TransactionKind,
)
from .storage import InMemoryStorage, UniqueViolation, account_key

logger = structlog.get_logger("ledger.service")

DEFAULT_DESCRIPTIONS = {
    TransactionKind.EARN_SESSION: "Workout session reward",
    TransactionKind.EARN_CHALLENGE: "Challenge bounty",
    TransactionKind.SPEND_REDEMPTION: "Reward redemption",
    TransactionKind.REFUND: "Redemption refund",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """The only writer of account and gym balances.

    Each ``apply`` checks the balance, moves it and appends the matching log
    entry in one unit of work under the account's row lock.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.clock = clock or utcnow

    def open_account(self, account_id: UUID) -> Account:
        with self.storage.transaction(account_key(account_id)):
            existing = self.storage.get_account(account_id)
            if existing:
                return Account(**existing)
            row = self.storage.insert_account({
                "account_id": account_id,
                "global_balance": 0,
                "is_active": True,
                "created_at": self.clock(),
            })
            account = Account(**row)
        logger.info("account_opened", account_id=str(account_id))
        return account

    def deactivate_account(self, account_id: UUID) -> Account:
        with self.storage.transaction(account_key(account_id)):
            self._require_account(account_id)
            account = Account(**self.storage.update_account(account_id, is_active=False))
        logger.info("account_deactivated", account_id=str(account_id))
        return account

    def get_account(self, account_id: UUID) -> Account:
        return Account(**self._require_account(account_id))

    def apply(
        self,
        account_id: UUID,
        amount: int,
        kind: Union[TransactionKind, str],
        reference_id: Optional[str] = None,
        gym_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        if amount == 0:
            raise InvalidAmountError("Amount must be non-zero")
        kind = TransactionKind(kind)

        with self.storage.transaction(account_key(account_id)):
            account = self._require_account(account_id)
            # a deactivated account only accepts refunds
            if not account["is_active"] and kind != TransactionKind.REFUND:
                raise AccountInactiveError(f"Account {account_id} is deactivated")

            if reference_id is not None and self.storage.find_application(account_id, kind, reference_id):
                raise DuplicateApplicationError(
                    f"{kind.value} already applied for reference {reference_id}"
                )

            new_balance = account["global_balance"] + amount
            membership = self.storage.get_membership(account_id, gym_id) if gym_id else None
            new_local = (membership["local_balance"] if membership else 0) + amount

            if new_balance < 0:
                raise InsufficientBalanceError(
                    f"Balance {account['global_balance']} cannot cover {-amount} drops"
                )
            if gym_id is not None and new_local < 0:
                raise InsufficientBalanceError(
                    f"Gym balance {new_local - amount} cannot cover {-amount} drops at gym {gym_id}"
                )

            now = self.clock()
            try:
                entry = self.storage.append_transaction({
                    "transaction_id": uuid4(),
                    "account_id": account_id,
                    "amount": amount,
                    "kind": kind,
                    "reference_id": reference_id,
                    "gym_id": gym_id,
                    "balance_after": new_balance,
                    "description": description or DEFAULT_DESCRIPTIONS[kind],
                    "created_at": now,
                    "metadata": {},
                })
            except UniqueViolation as exc:
                raise DuplicateApplicationError(
                    f"{kind.value} already applied for reference {reference_id}"
                ) from exc

            self.storage.update_account(account_id, global_balance=new_balance)
            if gym_id is not None:
                if membership is None:
                    self.storage.insert_membership({
                        "account_id": account_id,
                        "gym_id": gym_id,
                        "local_balance": new_local,
                        "created_at": now,
                    })
                else:
                    self.storage.update_membership(account_id, gym_id, local_balance=new_local)

            transaction = Transaction(**entry)

        logger.info(
            "ledger_applied",
            account_id=str(account_id),
            amount=amount,
            kind=kind.value,
            reference_id=reference_id,
            gym_id=str(gym_id) if gym_id else None,
            balance_after=new_balance,
        )
        return transaction

    def get_balance(self, account_id: UUID) -> BalanceSummary:
        with self.storage.transaction(account_key(account_id)):
            account = self._require_account(account_id)
            entries = self.storage.transactions_for(account_id)
            local_balances = {
                m["gym_id"]: m["local_balance"] for m in self.storage.memberships_for(account_id)
            }
            global_balance = account["global_balance"]

        return BalanceSummary(
            account_id=account_id,
            global_balance=global_balance,
            local_balances=local_balances,
            total_entries=len(entries),
            last_transaction_at=entries[-1]["created_at"] if entries else None,
        )

    def get_local_balance(self, account_id: UUID, gym_id: UUID) -> int:
        self._require_account(account_id)
        membership = self.storage.get_membership(account_id, gym_id)
        return membership["local_balance"] if membership else 0

    def get_history(
        self,
        account_id: UUID,
        limit: int = 50,
        offset: int = 0,
        gym_id: Optional[UUID] = None,
    ) -> TransactionHistory:
        with self.storage.transaction(account_key(account_id)):
            account = self._require_account(account_id)
            rows = self.storage.transactions_for(account_id, gym_id)
            current_balance = account["global_balance"]

        entries = [Transaction(**e) for e in rows]
        entries.sort(key=lambda e: e.sequence, reverse=True)

        return TransactionHistory(
            account_id=account_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=current_balance,
        )

    def audit(self, account_id: UUID) -> AuditReport:
        """Recompute global and per-gym balances from the log."""
        with self.storage.transaction(account_key(account_id)):
            account = self._require_account(account_id)
            entries = self.storage.transactions_for(account_id)
            memberships = self.storage.memberships_for(account_id)

        ledger_total = sum(e["amount"] for e in entries)
        per_gym: dict[UUID, int] = defaultdict(int)
        for entry in entries:
            if entry["gym_id"] is not None:
                per_gym[entry["gym_id"]] += entry["amount"]

        mismatches = {}
        for membership in memberships:
            expected = per_gym.pop(membership["gym_id"], 0)
            if membership["local_balance"] != expected:
                mismatches[membership["gym_id"]] = (membership["local_balance"], expected)
        for gym_id, expected in per_gym.items():
            if expected != 0:
                mismatches[gym_id] = (0, expected)

        consistent = account["global_balance"] == ledger_total and not mismatches
        if not consistent:
            logger.error(
                "ledger_audit_mismatch",
                account_id=str(account_id),
                global_balance=account["global_balance"],
                ledger_total=ledger_total,
                gyms=[str(g) for g in mismatches],
            )
        return AuditReport(
            account_id=account_id,
            global_balance=account["global_balance"],
            ledger_total=ledger_total,
            local_mismatches=mismatches,
            is_consistent=consistent,
        )

    def _require_account(self, account_id: UUID) -> dict:
        account = self.storage.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account
