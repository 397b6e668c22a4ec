from datetime import date, datetime, timezone
from uuid import UUID, uuid4

import pytest

from ledger.challenges import ChallengeTracker
from ledger.config import Settings
from ledger.models import ANY_MACHINE, ChallengeCadence
from ledger.redemptions import RedemptionService
from ledger.service import LedgerService
from ledger.storage import InMemoryStorage


ACCOUNT_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_ACCOUNT_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
GYM_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
OTHER_GYM_ID = UUID("880e8400-e29b-41d4-a716-446655440003")


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    # Saturday
    return FixedClock(datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(lock_timeout_seconds=2.0)


@pytest.fixture
def storage(settings):
    return InMemoryStorage(lock_timeout=settings.lock_timeout_seconds)


@pytest.fixture
def ledger(storage, clock):
    service = LedgerService(storage, clock=clock)
    service.open_account(ACCOUNT_ID)
    service.open_account(OTHER_ACCOUNT_ID)
    return service


@pytest.fixture
def redemptions(ledger, settings):
    return RedemptionService(ledger, settings)


@pytest.fixture
def tracker(ledger):
    return ChallengeTracker(ledger)


def add_reward(storage, price=50, stock=None, gym_id=GYM_ID, is_active=True, name="Protein Shake"):
    return storage.add_reward({
        "reward_id": uuid4(),
        "gym_id": gym_id,
        "name": name,
        "price": price,
        "stock": stock,
        "is_active": is_active,
    })["reward_id"]


def add_challenge(
    storage,
    required_minutes=30,
    bounty_amount=20,
    cadence=ChallengeCadence.ONE_TIME,
    machine_type=ANY_MACHINE,
    gym_id=GYM_ID,
    start_date=date(2026, 10, 1),
    end_date=date(2026, 10, 31),
    streak_days=None,
    is_active=True,
    name="Cardio Month",
):
    return storage.add_challenge({
        "challenge_id": uuid4(),
        "gym_id": gym_id,
        "name": name,
        "cadence": cadence,
        "required_minutes": required_minutes,
        "machine_type_filter": machine_type,
        "bounty_amount": bounty_amount,
        "start_date": start_date,
        "end_date": end_date,
        "is_active": is_active,
        "streak_days": streak_days,
    })["challenge_id"]
