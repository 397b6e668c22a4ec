"""
In-process storage for the drops ledger.

Tables are plain dicts keyed by primary key, the way a row store would hand
them back. Every mutation of ledger state happens inside a unit of work
opened with ``InMemoryStorage.transaction``:

- row locks are taken in one global (sorted) order and held until the
  outermost unit finishes;
- every write is journaled, and any exception undoes the journal in reverse
  before it propagates, so nothing partially commits;
- a nested ``transaction`` call joins the unit already open on the thread.

Catalog rows (rewards, challenges) are owned by the surrounding system and
are inserted without a unit of work.
"""

import itertools
import threading
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

import structlog

from .errors import TransientFailureError, UnavailableError

logger = structlog.get_logger("ledger.storage")

DEFAULT_LOCK_TIMEOUT = 5.0


class StorageFault(Exception):
    """A write could not be persisted."""


class UniqueViolation(Exception):
    def __init__(self, index: str, key: Any):
        super().__init__(f"duplicate key in {index}: {key}")
        self.index = index
        self.key = key


def account_key(account_id: UUID) -> str:
    return f"account:{account_id}"


def reward_key(reward_id: UUID) -> str:
    return f"reward:{reward_id}"


def redemption_key(redemption_id: UUID) -> str:
    return f"redemption:{redemption_id}"


def progress_key(account_id: UUID, challenge_id: UUID) -> str:
    return f"progress:{account_id}:{challenge_id}"


class RowLock:
    """A row lock plus the number of units holding or waiting on it."""

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class UnitOfWork:
    def __init__(self):
        self.lock_keys: set[str] = set()
        self._held: list[tuple[str, threading.Lock]] = []
        self._undo: list[Callable[[], None]] = []

    def hold(self, key: str, lock: threading.Lock) -> None:
        self.lock_keys.add(key)
        self._held.append((key, lock))

    def record(self, undo: Callable[[], None]) -> None:
        self._undo.append(undo)

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def release(self, forget: Callable[[str], None]) -> None:
        while self._held:
            key, lock = self._held.pop()
            lock.release()
            forget(key)
        self.lock_keys.clear()


class InMemoryStorage:
    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.accounts: dict[UUID, dict] = {}
        self.memberships: dict[tuple[UUID, UUID], dict] = {}
        self.transactions: list[dict] = []
        self.rewards: dict[UUID, dict] = {}
        self.redemptions: dict[UUID, dict] = {}
        self.challenges: dict[UUID, dict] = {}
        self.progress: dict[tuple[UUID, UUID, date], dict] = {}
        self.application_index: dict[tuple[UUID, str, str], UUID] = {}
        self.code_index: dict[tuple[UUID, str], UUID] = {}
        self.available = True
        self.lock_timeout = lock_timeout

        self._locks: dict[str, RowLock] = {}
        self._registry_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._local = threading.local()

    @contextmanager
    def transaction(self, *lock_keys: str) -> Iterator[UnitOfWork]:
        unit = getattr(self._local, "unit", None)
        if unit is not None:
            self._acquire(unit, lock_keys)
            yield unit
            return

        if not self.available:
            raise UnavailableError("ledger storage is unavailable")

        unit = UnitOfWork()
        self._local.unit = unit
        try:
            self._acquire(unit, lock_keys)
            yield unit
        except StorageFault as exc:
            unit.rollback()
            logger.warning("unit_of_work_rolled_back", reason="storage_fault", error=str(exc))
            raise TransientFailureError("storage fault, the operation was rolled back") from exc
        except BaseException as exc:
            unit.rollback()
            logger.debug("unit_of_work_rolled_back", reason=type(exc).__name__)
            raise
        finally:
            self._local.unit = None
            unit.release(self._forget_lock)

    def _acquire(self, unit: UnitOfWork, lock_keys: tuple[str, ...]) -> None:
        for key in sorted(set(lock_keys) - unit.lock_keys):
            lock = self._lock_for(key)
            if not lock.acquire(timeout=self.lock_timeout):
                self._forget_lock(key)
                logger.warning("row_lock_timeout", lock_key=key, timeout=self.lock_timeout)
                raise TransientFailureError(f"Timed out waiting for {key}")
            unit.hold(key, lock)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            row_lock = self._locks.setdefault(key, RowLock())
            row_lock.users += 1
            return row_lock.lock

    def _forget_lock(self, key: str) -> None:
        # drop the registry entry once no unit holds or waits on it
        with self._registry_lock:
            row_lock = self._locks[key]
            row_lock.users -= 1
            if row_lock.users == 0:
                del self._locks[key]

    def _journal(self, undo: Callable[[], None]) -> None:
        unit = getattr(self._local, "unit", None)
        if unit is None:
            raise RuntimeError("ledger writes must run inside storage.transaction()")
        unit.record(undo)

    def _update(self, row: dict, fields: dict) -> dict:
        previous = {name: row[name] for name in fields}
        self._journal(lambda: row.update(previous))
        row.update(fields)
        return row

    # accounts

    def get_account(self, account_id: UUID) -> Optional[dict]:
        return self.accounts.get(account_id)

    def insert_account(self, row: dict) -> dict:
        account_id = row["account_id"]
        if account_id in self.accounts:
            raise UniqueViolation("accounts", account_id)
        self._journal(lambda: self.accounts.pop(account_id, None))
        self.accounts[account_id] = row
        return row

    def update_account(self, account_id: UUID, **fields) -> dict:
        return self._update(self.accounts[account_id], fields)

    # gym memberships

    def get_membership(self, account_id: UUID, gym_id: UUID) -> Optional[dict]:
        return self.memberships.get((account_id, gym_id))

    def memberships_for(self, account_id: UUID) -> list[dict]:
        return [m for m in self.memberships.values() if m["account_id"] == account_id]

    def insert_membership(self, row: dict) -> dict:
        key = (row["account_id"], row["gym_id"])
        if key in self.memberships:
            raise UniqueViolation("gym_memberships", key)
        self._journal(lambda: self.memberships.pop(key, None))
        self.memberships[key] = row
        return row

    def update_membership(self, account_id: UUID, gym_id: UUID, **fields) -> dict:
        return self._update(self.memberships[(account_id, gym_id)], fields)

    # transaction log

    def find_application(self, account_id: UUID, kind: str, reference_id: str) -> Optional[UUID]:
        return self.application_index.get((account_id, kind, reference_id))

    def append_transaction(self, row: dict) -> dict:
        """Append to the log, assigning the next sequence number.

        Raises ``UniqueViolation`` when (account, kind, reference) was
        already applied; nothing is written in that case.
        """
        index_key = None
        if row.get("reference_id") is not None:
            index_key = (row["account_id"], row["kind"], row["reference_id"])

        with self._write_lock:
            if index_key is not None and index_key in self.application_index:
                raise UniqueViolation("transactions_application", index_key)
            self._journal(lambda: self._remove_transaction(row, index_key))
            row["sequence"] = next(self._sequence)
            self.transactions.append(row)
            if index_key is not None:
                self.application_index[index_key] = row["transaction_id"]
        return row

    def _remove_transaction(self, row: dict, index_key: Optional[tuple]) -> None:
        with self._write_lock:
            if row in self.transactions:
                self.transactions.remove(row)
            if index_key is not None:
                self.application_index.pop(index_key, None)

    def transactions_for(self, account_id: UUID, gym_id: Optional[UUID] = None) -> list[dict]:
        with self._write_lock:
            rows = [t for t in self.transactions if t["account_id"] == account_id]
        if gym_id is not None:
            rows = [t for t in rows if t["gym_id"] == gym_id]
        return rows

    def transactions_of_kind(self, kind: str) -> list[dict]:
        with self._write_lock:
            return [t for t in self.transactions if t["kind"] == kind]

    # rewards

    def add_reward(self, row: dict) -> dict:
        self.rewards[row["reward_id"]] = row
        return row

    def get_reward(self, reward_id: UUID) -> Optional[dict]:
        return self.rewards.get(reward_id)

    def update_reward(self, reward_id: UUID, **fields) -> dict:
        return self._update(self.rewards[reward_id], fields)

    # redemptions

    def insert_redemption(self, row: dict) -> dict:
        code_key = (row["gym_id"], row["code"])
        with self._write_lock:
            if code_key in self.code_index:
                raise UniqueViolation("redemption_code", code_key)
            self._journal(lambda: self._remove_redemption(row["redemption_id"], code_key))
            self.redemptions[row["redemption_id"]] = row
            self.code_index[code_key] = row["redemption_id"]
        return row

    def _remove_redemption(self, redemption_id: UUID, code_key: tuple) -> None:
        with self._write_lock:
            self.redemptions.pop(redemption_id, None)
            self.code_index.pop(code_key, None)

    def get_redemption(self, redemption_id: UUID) -> Optional[dict]:
        return self.redemptions.get(redemption_id)

    def find_redemption_by_code(self, gym_id: UUID, code: str) -> Optional[dict]:
        redemption_id = self.code_index.get((gym_id, code))
        return self.redemptions.get(redemption_id) if redemption_id else None

    def update_redemption(self, redemption_id: UUID, **fields) -> dict:
        return self._update(self.redemptions[redemption_id], fields)

    def redemptions_at(self, gym_id: UUID) -> list[dict]:
        return [r for r in list(self.redemptions.values()) if r["gym_id"] == gym_id]

    def redemptions_for(self, account_id: UUID) -> list[dict]:
        return [r for r in list(self.redemptions.values()) if r["account_id"] == account_id]

    # challenges

    def add_challenge(self, row: dict) -> dict:
        self.challenges[row["challenge_id"]] = row
        return row

    def get_challenge(self, challenge_id: UUID) -> Optional[dict]:
        return self.challenges.get(challenge_id)

    def challenges_at(self, gym_id: UUID) -> list[dict]:
        return [c for c in list(self.challenges.values()) if c["gym_id"] == gym_id]

    def get_progress(self, account_id: UUID, challenge_id: UUID, period_start: date) -> Optional[dict]:
        return self.progress.get((account_id, challenge_id, period_start))

    def insert_progress(self, row: dict) -> dict:
        key = (row["account_id"], row["challenge_id"], row["period_start"])
        if key in self.progress:
            raise UniqueViolation("challenge_progress", key)
        self._journal(lambda: self.progress.pop(key, None))
        self.progress[key] = row
        return row

    def update_progress(self, account_id: UUID, challenge_id: UUID, period_start: date, **fields) -> dict:
        return self._update(self.progress[(account_id, challenge_id, period_start)], fields)

    def progress_for_challenge(self, challenge_id: UUID) -> list[dict]:
        return [p for p in list(self.progress.values()) if p["challenge_id"] == challenge_id]
