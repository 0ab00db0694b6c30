"""Shared FastAPI dependencies."""

from functools import lru_cache

from fastapi import Depends, Request

from loyalty_ledger.core.exceptions import ForbiddenError, UnauthorizedError
from loyalty_ledger.models import Profile
from loyalty_ledger.services.container import LoyaltyServices, build_services
from loyalty_ledger.stores.base import get_stores

# Set by the API gateway after it authenticated the session.
USER_ID_HEADER = "X-User-ID"


@lru_cache
def _default_services() -> LoyaltyServices:
    return build_services(get_stores())


async def get_services() -> LoyaltyServices:
    return _default_services()


async def get_current_user(request: Request, services: LoyaltyServices = Depends(get_services)) -> Profile:
    """Dependency: resolve the caller's profile from the gateway header."""
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not user_id:
        raise UnauthorizedError("Not authenticated")
    profile = await services.stores.profiles.get_profile(user_id)
    if not profile:
        raise UnauthorizedError("User not found")
    return profile


async def require_admin(user: Profile = Depends(get_current_user)) -> Profile:
    """Dependency: require current user to have role admin."""
    if user.role != "admin":
        raise ForbiddenError("Admin only")
    return user
