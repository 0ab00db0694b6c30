"""Referral codes, referral lifecycle and exactly-once bonus issuance."""

import re
import secrets
import string
from datetime import datetime

from loyalty_ledger.core.config import Settings, get_settings
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
from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.core.retry import retry_read
from loyalty_ledger.models import PointReason, Profile, Referral, ReferralStats, ReferralStatus
from loyalty_ledger.services.ledger import PointsLedger
from loyalty_ledger.stores.base import ProfileStore, ReferralStore

log = get_logger(__name__)

CODE_PREFIX_LEN = 3
CODE_SUFFIX_LEN = 5
_SUFFIX_ALPHABET = string.digits + string.ascii_uppercase


def generate_referral_code(full_name: str | None) -> str:
    """Three letters from the name (padded with USR) plus a random base36 suffix, e.g. AMIK3Z9Q."""
    letters = re.sub(r"[^a-zA-Z]", "", full_name or "").upper()
    prefix = (letters + "USR")[:CODE_PREFIX_LEN] if len(letters) < CODE_PREFIX_LEN else letters[:CODE_PREFIX_LEN]
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(CODE_SUFFIX_LEN))
    return f"{prefix}{suffix}"


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


class ReferralResolver:
    def __init__(
        self,
        ledger: PointsLedger,
        profiles: ProfileStore,
        referrals: ReferralStore,
        settings: Settings | None = None,
    ) -> None:
        self.ledger = ledger
        self.profiles = profiles
        self.referrals = referrals
        self.settings = settings or get_settings()

    async def _require_profile(self, user_id: str) -> Profile:
        profile = await retry_read("get_profile", self.profiles.get_profile, user_id)
        if not profile:
            raise NotFoundError("User not found", code="USER_NOT_FOUND", details={"user_id": user_id})
        return profile

    async def resolve_code_or_generate(self, user_id: str, full_name: str | None = None) -> str:
        """Return user's referral code; generate and save if missing."""
        profile = await self._require_profile(user_id)
        if profile.referral_code:
            return profile.referral_code
        attempts = self.settings.referral_code_attempts
        for attempt in range(1, attempts + 1):
            code = generate_referral_code(full_name if full_name is not None else profile.full_name)
            if await self.profiles.write_referral_code(user_id, code):
                log.info("referral_code_generated", user_id=user_id, code=code)
                return code
            # Either the code is taken or a concurrent call already assigned one.
            existing = await retry_read("read_referral_code", self.profiles.read_referral_code, user_id)
            if existing:
                return existing
            log.warning("referral_code_collision", user_id=user_id, attempt=attempt)
        raise CodeGenerationExhausted(attempts)

    async def find_referrer_by_code(self, code: str) -> str | None:
        code = normalize_code(code)
        if not code:
            return None
        return await retry_read("find_user_id_by_referral_code", self.profiles.find_user_id_by_referral_code, code)

    async def register_referral(self, referrer_id: str, referred_id: str) -> Referral:
        """Link a new signup to its referrer. A user can only be referred once, ever."""
        if referrer_id == referred_id:
            raise SelfReferralNotAllowed()
        await self._require_profile(referrer_id)
        await self._require_profile(referred_id)
        if await retry_read("find_by_referred_id", self.referrals.find_by_referred_id, referred_id):
            raise DuplicateReferral(referred_id)
        limit = self.settings.max_referrals_per_user
        if limit and await retry_read("count_by_referrer", self.referrals.count_by_referrer, referrer_id) >= limit:
            raise ReferralLimitReached(referrer_id, limit)

        referral = Referral(referrer_id=referrer_id, referred_id=referred_id)
        if not await self.referrals.insert_referral(referral):
            raise DuplicateReferral(referred_id)
        await self.profiles.set_referred_by(referred_id, referrer_id)
        log.info("referral_registered", referral_id=referral.id, referrer_id=referrer_id, referred_id=referred_id)
        return referral

    async def register_by_code(self, referred_id: str, code: str) -> Referral | None:
        """Register a referral from a code typed at signup. None when the program is switched off."""
        if not self.settings.referral_program_enabled:
            log.info("referral_program_disabled", referred_id=referred_id)
            return None
        referrer_id = await self.find_referrer_by_code(code)
        if not referrer_id:
            raise ReferralCodeNotFound(normalize_code(code))
        return await self.register_referral(referrer_id, referred_id)

    async def enroll_user(self, profile: Profile, referral_code_used: str | None = None) -> Profile:
        """
        Create the profile for a new signup, give it a referral code and link its referrer.
        An unknown referral code does not block signup.
        """
        if not await self.profiles.create_profile(profile.model_copy(update={"loyalty_points": 0, "referral_code": None})):
            raise ConflictError("User already enrolled", code="USER_EXISTS", details={"user_id": profile.user_id})
        await self.resolve_code_or_generate(profile.user_id, profile.full_name)
        if referral_code_used:
            try:
                await self.register_by_code(profile.user_id, referral_code_used)
            except (ReferralCodeNotFound, SelfReferralNotAllowed, ReferralLimitReached) as e:
                log.info("signup_referral_ignored", user_id=profile.user_id, code=e.code)
        return await self._require_profile(profile.user_id)

    async def qualify(
        self,
        referred_id: str,
        qualifying_event: str,
        bonus_amount: int | None = None,
    ) -> Referral | None:
        """
        Reward the referrer of referred_id once its qualifying action happened (e.g. first shipment).
        No-op (None) when the user was not referred or the referral was already rewarded.
        Safe to call repeatedly: the pending->rewarded transition is claimed with a conditional update.
        """
        if not self.settings.referral_program_enabled:
            log.info("referral_program_disabled", referred_id=referred_id)
            return None
        bonus = self.settings.referral_bonus_points if bonus_amount is None else bonus_amount
        if isinstance(bonus, bool) or not isinstance(bonus, int) or bonus <= 0:
            raise InvalidAmount("Referral bonus must be a positive integer", details={"bonus": repr(bonus)})

        referral = await retry_read("find_pending_by_referred_id", self.referrals.find_pending_by_referred_id, referred_id)
        if referral is None:
            return None

        rewarded_at = datetime.utcnow()
        claimed = await self.referrals.update_status(
            referral.id,
            ReferralStatus.REWARDED,
            points_earned=bonus,
            expected_status=ReferralStatus.PENDING,
            qualifying_event=qualifying_event,
            rewarded_at=rewarded_at,
        )
        if not claimed:
            log.info("referral_already_rewarded", referral_id=referral.id, referred_id=referred_id)
            return None

        try:
            await self.ledger.append_entry(
                referral.referrer_id,
                bonus,
                PointReason.REFERRAL_BONUS,
                metadata={"referred_id": referred_id, "event": qualifying_event},
                related_id=referral.id,
                idempotency_key=f"referral_bonus:{referral.id}",
            )
        except BaseException:
            reverted = await self.referrals.update_status(
                referral.id, ReferralStatus.PENDING, points_earned=0, expected_status=ReferralStatus.REWARDED
            )
            if reverted:
                log.warning("referral_reward_reverted", referral_id=referral.id)
            else:
                log.critical("referral_reward_stuck", referral_id=referral.id)
            raise

        log.info(
            "referral_rewarded",
            referral_id=referral.id,
            referrer_id=referral.referrer_id,
            referred_id=referred_id,
            points=bonus,
        )
        return referral.model_copy(update={
            "status": ReferralStatus.REWARDED,
            "points_earned": bonus,
            "qualifying_event": qualifying_event,
            "rewarded_at": rewarded_at,
        })

    async def list_referrals(self, user_id: str) -> list[Referral]:
        """Referrals made by user, newest first."""
        return await retry_read("list_by_referrer", self.referrals.list_by_referrer, user_id)

    async def referral_stats(self, user_id: str) -> ReferralStats:
        refs = await self.list_referrals(user_id)
        return ReferralStats(
            total=len(refs),
            pending=sum(1 for r in refs if r.status == ReferralStatus.PENDING),
            completed=sum(1 for r in refs if r.status in (ReferralStatus.COMPLETED, ReferralStatus.REWARDED)),
            total_points=sum(r.points_earned for r in refs),
        )
