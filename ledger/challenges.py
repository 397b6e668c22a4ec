from datetime import date, datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog

from .errors import AccountInactiveError, DuplicateApplicationError, InvalidAmountError
from .models import (
    ActiveChallenge,
    Challenge,
    ChallengeCadence,
    ChallengeProgress,
    ChallengeStats,
    CompletionResult,
    TransactionKind,
)
from .service import LedgerService
from .storage import account_key, progress_key

logger = structlog.get_logger("ledger.challenges")

DEFAULT_STREAK_DAYS = 3


def cadence_window(challenge: Challenge, today: date) -> tuple[date, date]:
    """Date range whose minutes count towards the challenge today."""
    if challenge.cadence == ChallengeCadence.DAILY:
        return today, today
    if challenge.cadence == ChallengeCadence.WEEKLY:
        monday = today - timedelta(days=today.weekday())
        return monday, monday + timedelta(days=6)
    if challenge.cadence == ChallengeCadence.STREAK:
        days = challenge.streak_days or DEFAULT_STREAK_DAYS
        return today - timedelta(days=days - 1), today
    return challenge.start_date, challenge.end_date


def period_start(challenge: Challenge, today: date) -> date:
    """Key of the progress row; one row per daily/weekly period, one per challenge otherwise."""
    if challenge.cadence in (ChallengeCadence.DAILY, ChallengeCadence.WEEKLY):
        return cadence_window(challenge, today)[0]
    return challenge.start_date


def bounty_reference(challenge: Challenge, period: date) -> str:
    if challenge.cadence in (ChallengeCadence.DAILY, ChallengeCadence.WEEKLY):
        return f"{challenge.challenge_id}:{period.isoformat()}"
    return str(challenge.challenge_id)


def pays_challenge(reference_id: Optional[str], challenge: Challenge) -> bool:
    """Whether a bounty reference belongs to the challenge, in any period."""
    if reference_id is None:
        return False
    prefix = str(challenge.challenge_id)
    return reference_id == prefix or reference_id.startswith(prefix + ":")


def streak_minutes(challenge: Challenge, daily_minutes: dict[date, int], today: date) -> tuple[int, bool]:
    """Minutes inside the rolling window and whether every day in it qualified."""
    start, end = cadence_window(challenge, today)
    days = [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
    total = sum(daily_minutes.get(day, 0) for day in days)
    met = all(daily_minutes.get(day, 0) >= challenge.required_minutes for day in days)
    return total, met


class ChallengeTracker:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def record_minutes(
        self,
        account_id: UUID,
        gym_id: UUID,
        machine_type: str,
        minutes: int,
    ) -> list[CompletionResult]:
        if minutes <= 0:
            raise InvalidAmountError("Minutes must be positive")

        self._require_active(account_id)

        now = self.ledger.clock()
        today = now.date()
        candidates = [
            c for c in self._running_challenges(gym_id, today) if c.matches_machine(machine_type)
        ]
        if not candidates:
            return []

        lock_keys = [account_key(account_id)]
        lock_keys += [progress_key(account_id, c.challenge_id) for c in candidates]

        results = []
        with self.storage.transaction(*lock_keys):
            # re-read under the account lock
            self._require_active(account_id)
            for challenge in candidates:
                result = self._contribute(account_id, challenge, minutes, now)
                if result is not None:
                    results.append(result)

        for result in results:
            if result.completed_now:
                logger.info(
                    "challenge_completed",
                    account_id=str(account_id),
                    challenge_id=str(result.challenge_id),
                    drops_awarded=result.drops_awarded,
                )
        return results

    def _contribute(
        self,
        account_id: UUID,
        challenge: Challenge,
        minutes: int,
        now: datetime,
    ) -> Optional[CompletionResult]:
        today = now.date()
        period = period_start(challenge, today)
        row = self.storage.get_progress(account_id, challenge.challenge_id, period)
        if row is None:
            row = self.storage.insert_progress({
                "account_id": account_id,
                "challenge_id": challenge.challenge_id,
                "period_start": period,
                "current_minutes": 0,
                "is_completed": False,
                "completed_at": None,
                "daily_minutes": {},
            })
        progress = ChallengeProgress(**row)
        if progress.is_completed:
            return None

        fields = {}
        if challenge.cadence == ChallengeCadence.STREAK:
            window_start = cadence_window(challenge, today)[0]
            daily = {day: m for day, m in progress.daily_minutes.items() if day >= window_start}
            daily[today] = daily.get(today, 0) + minutes
            current, completed = streak_minutes(challenge, daily, today)
            fields["daily_minutes"] = daily
        else:
            current = progress.current_minutes + minutes
            completed = current >= challenge.required_minutes
        fields["current_minutes"] = current

        awarded = 0
        if completed:
            fields["is_completed"] = True
            fields["completed_at"] = now
            awarded = self._pay_bounty(account_id, challenge, period)

        self.storage.update_progress(account_id, challenge.challenge_id, period, **fields)
        return CompletionResult(
            challenge_id=challenge.challenge_id,
            challenge_name=challenge.name,
            completed_now=completed,
            drops_awarded=awarded,
            current_minutes=current,
            required_minutes=challenge.required_minutes,
        )

    def _pay_bounty(self, account_id: UUID, challenge: Challenge, period: date) -> int:
        if challenge.bounty_amount <= 0:
            return 0
        try:
            self.ledger.apply(
                account_id,
                challenge.bounty_amount,
                TransactionKind.EARN_CHALLENGE,
                reference_id=bounty_reference(challenge, period),
                gym_id=challenge.gym_id,
                description=f"Challenge completed: {challenge.name}",
            )
        except DuplicateApplicationError:
            logger.info(
                "challenge_bounty_already_paid",
                account_id=str(account_id),
                challenge_id=str(challenge.challenge_id),
            )
            return 0
        return challenge.bounty_amount

    def active_challenges(
        self,
        account_id: UUID,
        gym_id: UUID,
        machine_type: Optional[str] = None,
    ) -> list[ActiveChallenge]:
        today = self.ledger.clock().date()
        active = []
        for challenge in self._running_challenges(gym_id, today):
            if machine_type and not challenge.matches_machine(machine_type):
                continue
            row = self.storage.get_progress(
                account_id, challenge.challenge_id, period_start(challenge, today)
            )
            progress = ChallengeProgress(**row) if row else None

            current = progress.current_minutes if progress else 0
            if progress and challenge.cadence == ChallengeCadence.STREAK and not progress.is_completed:
                current, _ = streak_minutes(challenge, progress.daily_minutes, today)

            completed = bool(progress and progress.is_completed)
            percentage = 100 if completed else min(100, current * 100 // challenge.required_minutes)
            active.append(ActiveChallenge(
                challenge_id=challenge.challenge_id,
                challenge_name=challenge.name,
                cadence=challenge.cadence,
                machine_type_filter=challenge.machine_type_filter,
                required_minutes=challenge.required_minutes,
                bounty_amount=challenge.bounty_amount,
                current_minutes=current,
                is_completed=completed,
                progress_percentage=percentage,
            ))
        return active

    def completion_stats(self, gym_id: UUID) -> list[ChallengeStats]:
        payouts = self.storage.transactions_of_kind(TransactionKind.EARN_CHALLENGE)
        stats = []
        for row in self.storage.challenges_at(gym_id):
            challenge = Challenge(**row)
            progress = self.storage.progress_for_challenge(challenge.challenge_id)
            completions = sum(1 for p in progress if p["is_completed"])
            paid = sum(t["amount"] for t in payouts if pays_challenge(t["reference_id"], challenge))
            stats.append(ChallengeStats(
                challenge_id=challenge.challenge_id,
                challenge_name=challenge.name,
                participants=len({p["account_id"] for p in progress}),
                completions=completions,
                drops_paid=paid,
            ))
        stats.sort(key=lambda s: s.completions, reverse=True)
        return stats

    def _require_active(self, account_id: UUID) -> None:
        if not self.ledger.get_account(account_id).is_active:
            raise AccountInactiveError(f"Account {account_id} is deactivated")

    def _running_challenges(self, gym_id: UUID, today: date) -> list[Challenge]:
        challenges = [Challenge(**row) for row in self.storage.challenges_at(gym_id)]
        return [c for c in challenges if c.is_running(today)]
