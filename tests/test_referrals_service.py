"""Referral codes, registration and exactly-once reward issuance."""

import asyncio
import re

import pytest

from loyalty_ledger.core.exceptions import (
    CodeGenerationExhausted,
    ConflictError,
    DuplicateReferral,
    InvalidAmount,
    NotFoundError,
    ReferralCodeNotFound,
    ReferralLimitReached,
    SelfReferralNotAllowed,
)
from loyalty_ledger.models import PointReason, Profile, ReferralStatus
from loyalty_ledger.services import referrals as referrals_module
from loyalty_ledger.services.container import build_services
from loyalty_ledger.services.referrals import generate_referral_code
from loyalty_ledger.stores.base import StoreError, Stores
from loyalty_ledger.stores.memory import (
    MemoryAuditStore,
    MemoryLedgerStore,
    MemoryProfileStore,
    MemoryReferralStore,
    MemoryUserDirectory,
    MemoryWalletStore,
)

pytestmark = pytest.mark.asyncio


class FlakyLedgerStore(MemoryLedgerStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_bonus_inserts = 0

    async def insert_entry(self, entry) -> None:
        if entry.reason is PointReason.REFERRAL_BONUS and self.fail_bonus_inserts:
            self.fail_bonus_inserts -= 1
            raise StoreError("insert timed out")
        await super().insert_entry(entry)


class BudgetedReferralStore(MemoryReferralStore):
    """Status writes fail once the budget is spent; None means unlimited."""

    def __init__(self) -> None:
        super().__init__()
        self.status_writes_left: int | None = None

    async def update_status(self, referral_id, status, points_earned, **kwargs) -> bool:
        if self.status_writes_left is not None:
            if self.status_writes_left <= 0:
                raise StoreError("update timed out")
            self.status_writes_left -= 1
        return await super().update_status(referral_id, status, points_earned, **kwargs)


@pytest.fixture
def stores() -> Stores:
    profiles = MemoryProfileStore()
    return Stores(
        profiles=profiles,
        ledger=FlakyLedgerStore(),
        wallets=MemoryWalletStore(),
        referrals=BudgetedReferralStore(),
        directory=MemoryUserDirectory(profiles),
        audit=MemoryAuditStore(),
    )


async def _bonus_entries(stores: Stores, user_id: str):
    return [e for e in await stores.ledger.list_entries(user_id) if e.reason is PointReason.REFERRAL_BONUS]


@pytest.mark.parametrize(
    "name,prefix",
    [
        ("Amina Keita", "AMI"),
        ("jo", "JOU"),
        ("", "USR"),
        (None, "USR"),
        ("42 Logistics", "LOG"),
        ("X-Y", "XYU"),
    ],
)
async def test_generate_referral_code_prefix(name, prefix):
    code = generate_referral_code(name)
    assert re.fullmatch(rf"{prefix}[0-9A-Z]{{5}}", code)


async def test_resolve_code_generates_once(services, stores, make_user):
    await make_user("u1", full_name="Moussa Diop")
    code = await services.referrals.resolve_code_or_generate("u1", "Moussa Diop")
    assert code.startswith("MOU")
    assert await stores.profiles.read_referral_code("u1") == code
    assert await services.referrals.resolve_code_or_generate("u1", "Someone Else") == code


async def test_resolve_code_falls_back_to_profile_name(services, make_user):
    await make_user("u1", full_name="Fatou Ndiaye")
    assert (await services.referrals.resolve_code_or_generate("u1")).startswith("FAT")


async def test_resolve_code_retries_on_collision(services, stores, make_user, monkeypatch):
    await stores.profiles.create_profile(Profile(user_id="other", referral_code="ABCTAKEN"))
    await make_user("u1", full_name="Abc")
    candidates = iter(["ABCTAKEN", "ABCTAKEN", "ABCFRESH"])
    monkeypatch.setattr(referrals_module, "generate_referral_code", lambda name: next(candidates))
    assert await services.referrals.resolve_code_or_generate("u1", "Abc") == "ABCFRESH"


async def test_resolve_code_exhausted(services, stores, make_user, monkeypatch, settings):
    await stores.profiles.create_profile(Profile(user_id="other", referral_code="ABCTAKEN"))
    await make_user("u1", full_name="Abc")
    calls = []

    def _taken(name):
        calls.append(name)
        return "ABCTAKEN"

    monkeypatch.setattr(referrals_module, "generate_referral_code", _taken)
    with pytest.raises(CodeGenerationExhausted):
        await services.referrals.resolve_code_or_generate("u1", "Abc")
    assert len(calls) == settings.referral_code_attempts
    assert await stores.profiles.read_referral_code("u1") is None


async def test_resolve_code_unknown_user(services):
    with pytest.raises(NotFoundError):
        await services.referrals.resolve_code_or_generate("ghost", "Ghost")


async def test_register_referral_pending(services, stores, make_user):
    await make_user("ref")
    await make_user("new")
    referral = await services.referrals.register_referral("ref", "new")
    assert referral.status is ReferralStatus.PENDING
    assert referral.points_earned == 0
    assert (await stores.profiles.get_profile("new")).referred_by == "ref"


async def test_user_can_only_be_referred_once(services, make_user):
    for uid in ("ref", "ref2", "new"):
        await make_user(uid)
    await services.referrals.register_referral("ref", "new")
    with pytest.raises(DuplicateReferral):
        await services.referrals.register_referral("ref2", "new")


async def test_self_referral_rejected(services, make_user):
    await make_user("u1")
    with pytest.raises(SelfReferralNotAllowed):
        await services.referrals.register_referral("u1", "u1")


async def test_referral_limit(stores, settings, make_user):
    services = build_services(stores, settings.model_copy(update={"max_referrals_per_user": 2}))
    await make_user("ref")
    for uid in ("a", "b", "c"):
        await make_user(uid)
    await services.referrals.register_referral("ref", "a")
    await services.referrals.register_referral("ref", "b")
    with pytest.raises(ReferralLimitReached):
        await services.referrals.register_referral("ref", "c")


async def test_register_by_code_is_case_insensitive(services, make_user):
    await make_user("ref", full_name="Awa")
    await make_user("new")
    code = await services.referrals.resolve_code_or_generate("ref")
    referral = await services.referrals.register_by_code("new", f"  {code.lower()} ")
    assert referral.referrer_id == "ref"


async def test_register_by_unknown_code(services, make_user):
    await make_user("new")
    with pytest.raises(ReferralCodeNotFound):
        await services.referrals.register_by_code("new", "NOPE1234")


async def test_find_referrer_by_code(services, make_user):
    await make_user("ref")
    code = await services.referrals.resolve_code_or_generate("ref")
    assert await services.referrals.find_referrer_by_code(code.lower()) == "ref"
    assert await services.referrals.find_referrer_by_code("ZZZ00000") is None
    assert await services.referrals.find_referrer_by_code("   ") is None


async def test_qualify_without_referral_is_noop(services, stores, make_user):
    await make_user("solo")
    assert await services.referrals.qualify("solo", "first_shipment:s1") is None
    assert stores.ledger.entries == []


async def test_qualify_rewards_referrer_once(services, stores, make_user, settings):
    await make_user("ref", points=5)
    await make_user("new")
    referral = await services.referrals.register_referral("ref", "new")

    rewarded = await services.referrals.qualify("new", "first_shipment:s1")
    assert rewarded.id == referral.id
    assert rewarded.status is ReferralStatus.REWARDED
    assert rewarded.points_earned == settings.referral_bonus_points

    assert await services.referrals.qualify("new", "first_shipment:s2") is None

    bonuses = await _bonus_entries(stores, "ref")
    assert len(bonuses) == 1
    assert bonuses[0].related_id == referral.id
    assert bonuses[0].amount == settings.referral_bonus_points
    assert await services.ledger.get_balance("ref") == 5 + settings.referral_bonus_points
    stored = await stores.referrals.find_by_referred_id("new")
    assert stored.status is ReferralStatus.REWARDED
    assert stored.points_earned == settings.referral_bonus_points
    assert stored.qualifying_event == "first_shipment:s1"


async def test_concurrent_qualify_issues_one_bonus(services, stores, make_user):
    await make_user("ref")
    await make_user("new")
    await services.referrals.register_referral("ref", "new")
    results = await asyncio.gather(
        *[services.referrals.qualify("new", "first_shipment:s1", bonus_amount=500) for _ in range(5)]
    )
    assert sum(r is not None for r in results) == 1
    assert len(await _bonus_entries(stores, "ref")) == 1
    assert await services.ledger.get_balance("ref") == 500


async def test_failed_bonus_returns_referral_to_pending(services, stores, make_user):
    await make_user("ref")
    await make_user("new")
    await services.referrals.register_referral("ref", "new")
    stores.ledger.fail_bonus_inserts = 1

    with pytest.raises(StoreError):
        await services.referrals.qualify("new", "first_shipment:s1", bonus_amount=100)
    reverted = await stores.referrals.find_by_referred_id("new")
    assert reverted.status is ReferralStatus.PENDING
    assert reverted.points_earned == 0
    assert reverted.qualifying_event is None
    assert reverted.rewarded_at is None
    assert await services.ledger.get_balance("ref") == 0

    # Redelivered event succeeds.
    assert await services.referrals.qualify("new", "first_shipment:s1", bonus_amount=100) is not None
    assert await services.ledger.get_balance("ref") == 100


async def test_reward_is_recorded_in_a_single_status_write(services, stores, make_user):
    await make_user("ref")
    await make_user("new")
    await services.referrals.register_referral("ref", "new")
    stores.referrals.status_writes_left = 1

    rewarded = await services.referrals.qualify("new", "first_shipment:s1", bonus_amount=100)
    assert rewarded.points_earned == 100
    stored = await stores.referrals.find_by_referred_id("new")
    assert stored.status is ReferralStatus.REWARDED
    assert stored.points_earned == 100
    assert stored.qualifying_event == "first_shipment:s1"
    assert stored.rewarded_at is not None
    assert (await services.referrals.referral_stats("ref")).total_points == 100

    # Redelivery finds nothing pending and credits nothing.
    assert await services.referrals.qualify("new", "first_shipment:s1", bonus_amount=100) is None
    assert await services.ledger.get_balance("ref") == 100


async def test_qualify_rejects_bad_bonus(services, make_user):
    await make_user("ref")
    await make_user("new")
    await services.referrals.register_referral("ref", "new")
    with pytest.raises(InvalidAmount):
        await services.referrals.qualify("new", "first_shipment:s1", bonus_amount=0)


async def test_program_disabled(stores, settings, make_user):
    services = build_services(stores, settings.model_copy(update={"referral_program_enabled": False}))
    await make_user("ref", full_name="Ref")
    await make_user("new")
    code = await services.referrals.resolve_code_or_generate("ref")
    assert await services.referrals.register_by_code("new", code) is None
    assert await services.referrals.qualify("new", "first_shipment:s1") is None


async def test_enroll_user_links_referrer(services, stores, make_user):
    await make_user("ref", full_name="Ibrahima Sow")
    code = await services.referrals.resolve_code_or_generate("ref")
    profile = await services.referrals.enroll_user(
        Profile(user_id="new", full_name="Khady Fall", email="Khady@Example.com"),
        referral_code_used=code,
    )
    assert profile.referral_code.startswith("KHA")
    assert profile.referred_by == "ref"
    assert profile.email == "khady@example.com"
    assert (await stores.referrals.find_pending_by_referred_id("new")).referrer_id == "ref"


async def test_enroll_user_ignores_unknown_code(services, stores):
    profile = await services.referrals.enroll_user(Profile(user_id="new", full_name="Lamine"), "BOGUS999")
    assert profile.referred_by is None
    assert await stores.referrals.find_by_referred_id("new") is None


async def test_enroll_user_twice(services):
    await services.referrals.enroll_user(Profile(user_id="new"))
    with pytest.raises(ConflictError):
        await services.referrals.enroll_user(Profile(user_id="new"))


async def test_referral_stats(services, make_user):
    await make_user("ref")
    for uid in ("a", "b", "c"):
        await make_user(uid)
        await services.referrals.register_referral("ref", uid)
    await services.referrals.qualify("a", "first_shipment:s1", bonus_amount=100)
    stats = await services.referrals.referral_stats("ref")
    assert stats.total == 3
    assert stats.pending == 2
    assert stats.completed == 1
    assert stats.total_points == 100
    listed = await services.referrals.list_referrals("ref")
    assert {r.referred_id for r in listed} == {"a", "b", "c"}
