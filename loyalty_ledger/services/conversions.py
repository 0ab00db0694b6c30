"""User-initiated point movements: conversion to wallet credit and peer-to-peer transfers."""

from decimal import Decimal, InvalidOperation

from loyalty_ledger.core.audit import log_event
from loyalty_ledger.core.config import Settings, get_settings
from loyalty_ledger.core.exceptions import (
    BelowMinimumConversion,
    InvalidAmount,
    RecipientNotFound,
    SelfTransferNotAllowed,
)
from loyalty_ledger.core.logging import get_logger
from loyalty_ledger.core.retry import retry_read
from loyalty_ledger.models import ConversionResult, PointReason, TransferResult, WalletSummary, new_id
from loyalty_ledger.services.ledger import PointsLedger
from loyalty_ledger.stores.base import AuditStore, ProfileStore, UserDirectory, WalletStore

log = get_logger(__name__)


def _positive_points(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount("Points amount must be a positive integer", details={"amount": repr(amount)})
    return amount


def _rate(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmount("Invalid conversion rate", details={"conversion_rate": repr(value)}) from None
    if not rate.is_finite() or rate <= 0:
        raise InvalidAmount("Conversion rate must be positive", details={"conversion_rate": str(rate)})
    return rate


class ConversionService:
    def __init__(
        self,
        ledger: PointsLedger,
        profiles: ProfileStore,
        wallets: WalletStore,
        directory: UserDirectory,
        audit: AuditStore,
        settings: Settings | None = None,
    ) -> None:
        self.ledger = ledger
        self.profiles = profiles
        self.wallets = wallets
        self.directory = directory
        self.audit = audit
        self.settings = settings or get_settings()

    async def convert_to_wallet(
        self,
        user_id: str,
        points: int,
        conversion_rate: Decimal | int | float | str | None = None,
    ) -> ConversionResult:
        """
        Debit points and credit points * rate to the wallet.
        The rate is captured now; the debit happens first and is reversed if the wallet credit fails.
        """
        points = _positive_points(points)
        minimum = self.settings.min_conversion_points
        if points < minimum:
            raise BelowMinimumConversion(points, minimum)
        rate = _rate(self.settings.point_value if conversion_rate is None else conversion_rate)
        credit = Decimal(points) * rate

        debit = await self.ledger.append_entry(
            user_id,
            -points,
            PointReason.WALLET_CONVERSION,
            metadata={"conversion_rate": str(rate), "wallet_credit": str(credit)},
        )
        try:
            wallet_balance = await self.wallets.adjust_balance(user_id, credit)
        except BaseException as e:
            log.warning("wallet_credit_failed", user_id=user_id, entry_id=debit.entry.id, error=repr(e))
            await self.ledger.compensate(debit.entry, cause="wallet_credit_failed")
            raise

        log.info(
            "points_converted",
            user_id=user_id,
            points=points,
            conversion_rate=str(rate),
            wallet_credit=str(credit),
            points_balance=debit.balance,
        )
        await log_event(
            self.audit, user_id, "points_converted", "point_transaction", debit.entry.id,
            {"points": points, "conversion_rate": str(rate), "wallet_credit": str(credit)},
        )
        return ConversionResult(
            entry=debit.entry,
            points_converted=points,
            conversion_rate=rate,
            wallet_credit=credit,
            points_balance=debit.balance,
            wallet_balance=wallet_balance,
        )

    async def transfer_points(self, sender_id: str, recipient_identifier: str, amount: int) -> TransferResult:
        """
        Move points from sender to the user behind recipient_identifier (email or user id).
        Both entries share transfer_id; if the credit fails the debit is reversed.
        """
        amount = _positive_points(amount)
        identifier = (recipient_identifier or "").strip()
        if not identifier:
            raise RecipientNotFound(identifier)
        recipient_id = await retry_read(
            "find_user_id_by_identifier", self.directory.find_user_id_by_identifier, identifier
        )
        if recipient_id is None:
            raise RecipientNotFound(identifier)
        if recipient_id == sender_id:
            raise SelfTransferNotAllowed()
        sender = await retry_read("get_profile", self.profiles.get_profile, sender_id)

        transfer_id = new_id()
        sent = await self.ledger.append_entry(
            sender_id,
            -amount,
            PointReason.TRANSFER_SENT,
            metadata={"recipient": identifier, "recipient_id": recipient_id, "transfer_id": transfer_id},
            related_id=transfer_id,
        )
        try:
            received = await self.ledger.append_entry(
                recipient_id,
                amount,
                PointReason.TRANSFER_RECEIVED,
                metadata={
                    "sender": (sender.email if sender and sender.email else sender_id),
                    "sender_id": sender_id,
                    "transfer_id": transfer_id,
                },
                related_id=transfer_id,
            )
        except BaseException as e:
            log.warning("transfer_credit_failed", transfer_id=transfer_id, recipient_id=recipient_id, error=repr(e))
            await self.ledger.compensate(sent.entry, cause="transfer_credit_failed")
            raise

        log.info(
            "points_transferred",
            transfer_id=transfer_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            amount=amount,
        )
        await log_event(
            self.audit, sender_id, "points_transferred", "transfer", transfer_id,
            {"recipient_id": recipient_id, "amount": amount},
        )
        return TransferResult(
            transfer_id=transfer_id,
            amount=amount,
            recipient_id=recipient_id,
            sent=sent.entry,
            received=received.entry,
            sender_balance=sent.balance,
            recipient_balance=received.balance,
        )

    async def wallet_summary(self, user_id: str) -> WalletSummary:
        wallet = await retry_read("get_wallet", self.wallets.get_wallet, user_id)
        return WalletSummary(
            user_id=user_id,
            balance=wallet.balance if wallet else Decimal("0"),
            currency=wallet.currency if wallet else self.settings.wallet_currency,
            point_value=self.settings.point_value,
            min_conversion_points=self.settings.min_conversion_points,
        )
