from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from settlement_engine.core.context import SettlementContext
from settlement_engine.db.models.accounting import Account, LedgerEntry
from settlement_engine.db.models.enums import LedgerRefType, OwnerType
from settlement_engine.db.models.settlement import (
    CommissionRecord,
    PlatformCommission,
    SettlementBatch,
    SettlementItem,
)
from settlement_engine.db.models.users import User
from settlement_engine.db.session import insert_if_absent
from settlement_engine.services.allocation import LEDGER_QUANTUM, AllocationItem, AllocationResult
from settlement_engine.services.commission import CommissionService
from settlement_engine.services.valuation import RateSnapshot

logger = logging.getLogger(__name__)

PLATFORM_OWNER_ID = 1


@dataclass(frozen=True)
class LedgerCommitResult:
    items_written: int
    payouts_written: int
    commissions_written: int
    platform_rows_written: int

    @property
    def is_replay(self) -> bool:
        return self.items_written == 0 and self.payouts_written == 0


def ensure_account(db: Session, *, owner_type: OwnerType, owner_id: int, currency: str) -> Account:
    insert_if_absent(
        db,
        Account,
        {"owner_type": owner_type, "owner_id": owner_id, "currency": currency, "balance": Decimal("0")},
        conflict_columns=("owner_type", "owner_id", "currency"),
    )
    account = db.scalar(
        select(Account).where(
            Account.owner_type == owner_type,
            Account.owner_id == owner_id,
            Account.currency == currency,
        )
    )
    if account is None:
        raise RuntimeError(f"account {owner_type.value}:{owner_id}:{currency} missing after insert")
    return account


def credit_account(db: Session, *, owner_type: OwnerType, owner_id: int, currency: str, amount: Decimal) -> None:
    if amount == 0:
        return
    account = ensure_account(db, owner_type=owner_type, owner_id=owner_id, currency=currency)
    db.execute(update(Account).where(Account.id == account.id).values(balance=Account.balance + amount))


def append_ledger_entry(
    db: Session,
    *,
    user_id: int,
    ref_type: LedgerRefType,
    ref_id: str,
    currency: str,
    amount: Decimal,
    event_time: datetime,
    amount_native: Decimal | None = None,
    amount_display: Decimal | None = None,
    tx_hash: str | None = None,
    remark: str | None = None,
) -> bool:
    """Insert one ledger row keyed by (user_id, ref_type, ref_id); duplicates are a no-op."""

    return insert_if_absent(
        db,
        LedgerEntry,
        {
            "user_id": user_id,
            "ref_type": ref_type,
            "ref_id": ref_id,
            "currency": currency,
            "amount": amount,
            "amount_native": amount_native,
            "amount_display": amount_display,
            "tx_hash": tx_hash,
            "remark": remark,
            "event_time": event_time,
        },
        conflict_columns=("user_id", "ref_type", "ref_id"),
    )


class LedgerWriter:
    """Writes one allocated batch; the caller owns the surrounding transaction."""

    def __init__(self, commission_service: CommissionService) -> None:
        self.commission_service = commission_service

    def commit_batch(
        self,
        db: Session,
        ctx: SettlementContext,
        *,
        batch: SettlementBatch,
        allocation: AllocationResult,
        snapshot: RateSnapshot,
        event_time: datetime,
    ) -> LedgerCommitResult:
        currency = snapshot.accounting_unit
        inviters = self._inviters(db, [item.user_id for item in allocation.items])
        items_written = payouts_written = commissions_written = platform_rows_written = 0

        for item in allocation.items:
            if insert_if_absent(
                db,
                SettlementItem,
                {
                    "batch_id": batch.id,
                    "user_id": item.user_id,
                    "score": item.score,
                    "gross_share": item.gross_share,
                    "commission_share": item.commission_share,
                    "net_share": item.net_share,
                },
                conflict_columns=("batch_id", "user_id"),
            ):
                items_written += 1

            if item.net_share > 0 and append_ledger_entry(
                db,
                user_id=item.user_id,
                ref_type=LedgerRefType.MINING_PAYOUT,
                ref_id=batch.batch_key,
                currency=currency,
                amount=item.net_share,
                amount_native=snapshot.to_native(item.net_share),
                amount_display=snapshot.to_display(item.net_share),
                tx_hash=batch.batch_key,
                remark=f"{ctx.pool_source} {ctx.coin} payhash settlement",
                event_time=event_time,
            ):
                payouts_written += 1
                credit_account(
                    db, owner_type=OwnerType.USER, owner_id=item.user_id, currency=currency, amount=item.net_share
                )

            inviter_amount, wrote_commission = self._pay_inviter(
                db,
                batch=batch,
                item=item,
                inviter_id=inviters.get(item.user_id),
                snapshot=snapshot,
                event_time=event_time,
            )
            commissions_written += int(wrote_commission)

            platform_amount = item.commission_share - inviter_amount
            if item.commission_share > 0 and insert_if_absent(
                db,
                PlatformCommission,
                {
                    "batch_id": batch.id,
                    "user_id": item.user_id,
                    "original_amount": item.gross_share,
                    "platform_rate": allocation.commission_rate,
                    "commission_amount": item.commission_share,
                    "inviter_amount": inviter_amount,
                    "platform_amount": platform_amount,
                    "currency": currency,
                },
                conflict_columns=("batch_id", "user_id"),
            ):
                platform_rows_written += 1
                credit_account(
                    db,
                    owner_type=OwnerType.SYSTEM,
                    owner_id=PLATFORM_OWNER_ID,
                    currency=currency,
                    amount=platform_amount,
                )

        result = LedgerCommitResult(
            items_written=items_written,
            payouts_written=payouts_written,
            commissions_written=commissions_written,
            platform_rows_written=platform_rows_written,
        )
        logger.info(
            "ledger batch written batch_key=%s items=%s payouts=%s commissions=%s platform=%s",
            batch.batch_key,
            items_written,
            payouts_written,
            commissions_written,
            platform_rows_written,
            extra=ctx.log_extra(),
        )
        return result

    def _inviters(self, db: Session, user_ids: list[int]) -> dict[int, int]:
        if not user_ids:
            return {}
        rows = db.execute(
            select(User.id, User.inviter_id).where(User.id.in_(user_ids), User.inviter_id.is_not(None))
        ).all()
        return {user_id: inviter_id for user_id, inviter_id in rows if inviter_id != user_id}

    def _pay_inviter(
        self,
        db: Session,
        *,
        batch: SettlementBatch,
        item: AllocationItem,
        inviter_id: int | None,
        snapshot: RateSnapshot,
        event_time: datetime,
    ) -> tuple[Decimal, bool]:
        """Pay the inviter out of the item's platform commission, never beyond it."""

        if inviter_id is None or item.commission_share <= 0:
            return Decimal("0"), False
        rate = self.commission_service.rate_for_user(db, inviter_id)
        if rate <= 0:
            return Decimal("0"), False
        amount = min(
            (item.gross_share * rate).quantize(LEDGER_QUANTUM, rounding=ROUND_DOWN),
            item.commission_share,
        )
        if amount <= 0:
            return Decimal("0"), False

        currency = snapshot.accounting_unit
        wrote_record = insert_if_absent(
            db,
            CommissionRecord,
            {
                "batch_id": batch.id,
                "user_id": inviter_id,
                "invitee_id": item.user_id,
                "source_amount": item.gross_share,
                "commission_rate": rate,
                "commission_amount": amount,
                "currency": currency,
            },
            conflict_columns=("batch_id", "invitee_id"),
        )
        if not wrote_record:
            existing = db.scalar(
                select(CommissionRecord.commission_amount).where(
                    CommissionRecord.batch_id == batch.id,
                    CommissionRecord.invitee_id == item.user_id,
                )
            )
            return (existing if existing is not None else amount), False

        if append_ledger_entry(
            db,
            user_id=inviter_id,
            ref_type=LedgerRefType.INVITE_COMMISSION,
            ref_id=f"{batch.batch_key}:{item.user_id}",
            currency=currency,
            amount=amount,
            amount_native=snapshot.to_native(amount),
            amount_display=snapshot.to_display(amount),
            tx_hash=batch.batch_key,
            remark=f"invite commission from user {item.user_id}",
            event_time=event_time,
        ):
            credit_account(db, owner_type=OwnerType.USER, owner_id=inviter_id, currency=currency, amount=amount)
        return amount, True
