"""Shared fixtures: an emulated document store seeded with a referrer and a referred user."""

import pytest

from token_ledger.cache import PageCache
from token_ledger.config import Settings
from token_ledger.referrals import ReferralService
from token_ledger.storage import InMemoryStorage
from token_ledger.tokens import TokenService

REFERRER_ID = "u-referrer"
REFERRED_ID = "u-referred"
ADMIN_ID = "admin-1"
REFERRAL_CODE = "JOHN2024"


def seed_users(storage: InMemoryStorage) -> None:
    storage.set("users", REFERRER_ID, {
        "email": "referrer@example.com",
        "displayName": "John Referrer",
        "balance": 0,
        "referralCode": REFERRAL_CODE,
    })
    storage.set("users", REFERRED_ID, {
        "email": "referred@example.com",
        "displayName": "Jane Referred",
        "balance": 0,
        "referralCode": "JANE2024",
    })


@pytest.fixture
def settings():
    return Settings(_env_file=None, admin_user_ids="")


@pytest.fixture
def storage():
    storage = InMemoryStorage()
    seed_users(storage)
    return storage


@pytest.fixture
def cache():
    return PageCache()


@pytest.fixture
def token_service(storage, cache, settings):
    return TokenService(storage, cache, settings)


@pytest.fixture
def referral_service(storage, cache, settings):
    return ReferralService(storage, cache, settings)
