"""Wire the ledger engine, referral resolver and conversion service onto one set of stores."""

from dataclasses import dataclass

from loyalty_ledger.core.config import Settings, get_settings
from loyalty_ledger.services.conversions import ConversionService
from loyalty_ledger.services.ledger import PointsLedger
from loyalty_ledger.services.referrals import ReferralResolver
from loyalty_ledger.stores.base import Stores


@dataclass
class LoyaltyServices:
    stores: Stores
    ledger: PointsLedger
    referrals: ReferralResolver
    conversions: ConversionService


def build_services(stores: Stores, settings: Settings | None = None) -> LoyaltyServices:
    settings = settings or get_settings()
    ledger = PointsLedger(stores.profiles, stores.ledger, stores.audit, settings)
    return LoyaltyServices(
        stores=stores,
        ledger=ledger,
        referrals=ReferralResolver(ledger, stores.profiles, stores.referrals, settings),
        conversions=ConversionService(
            ledger, stores.profiles, stores.wallets, stores.directory, stores.audit, settings
        ),
    )
