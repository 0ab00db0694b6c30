import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from loyalty_ledger.core.config import get_settings
from loyalty_ledger.db.documents import (
    AuditLogDocument,
    PointTransactionDocument,
    ProfileDocument,
    ReferralDocument,
    WalletDocument,
)

DOCUMENT_MODELS = [
    ProfileDocument,
    PointTransactionDocument,
    WalletDocument,
    ReferralDocument,
    AuditLogDocument,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=False, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
