import os
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory stores, no MongoDB or Redis needed
os.environ.setdefault("STORE_BACKEND", "memory")

from loyalty_ledger.core.config import Settings, get_settings  # noqa: E402
from loyalty_ledger.models import PointReason, Profile  # noqa: E402
from loyalty_ledger.services.container import LoyaltyServices, build_services  # noqa: E402
from loyalty_ledger.stores.base import Stores  # noqa: E402
from loyalty_ledger.stores.memory import build_memory_stores  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return get_settings().model_copy(update={"store_retry_backoff_s": 0.0})


@pytest.fixture
def stores() -> Stores:
    return build_memory_stores()


@pytest.fixture
def services(stores: Stores, settings: Settings) -> LoyaltyServices:
    return build_services(stores, settings)


@pytest.fixture
def make_user(stores: Stores, services: LoyaltyServices) -> Callable[..., Awaitable[Profile]]:
    """Create a profile and seed its balance through the ledger so the invariant holds."""

    async def _make(
        user_id: str,
        points: int = 0,
        email: str | None = None,
        full_name: str = "",
        role: str = "client",
    ) -> Profile:
        profile = Profile(user_id=user_id, email=email or f"{user_id}@example.com", full_name=full_name, role=role)
        assert await stores.profiles.create_profile(profile)
        if points:
            await services.ledger.append_entry(user_id, points, PointReason.OTHER, {"source": "seed"})
        return await stores.profiles.get_profile(user_id)

    return _make


@pytest_asyncio.fixture
async def client(services: LoyaltyServices) -> AsyncGenerator[AsyncClient, None]:
    from loyalty_ledger.deps import get_services
    from loyalty_ledger.main import app

    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
