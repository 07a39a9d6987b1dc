"""Proportional revenue allocation with exact conservation.

Every amount is a multiple of ``LEDGER_QUANTUM``. Shares are truncated with
``ROUND_DOWN`` and the leftover units go to the largest fractional remainders
(ties by ascending user id). Commission is also truncated with ``ROUND_DOWN``
and net is gross minus commission, so both sums reconcile exactly.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, localcontext

from settlement_engine.core.errors import ConservationViolation, InvalidAllocationInput

LEDGER_QUANTUM = Decimal("0.00000001")
_PRECISION = 60


@dataclass(frozen=True)
class AllocationItem:
    user_id: int
    score: int
    gross_share: Decimal
    commission_share: Decimal
    net_share: Decimal


@dataclass(frozen=True)
class AllocationResult:
    gross_amount: Decimal
    commission_rate: Decimal
    total_score: int
    items: tuple[AllocationItem, ...]

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_gross(self) -> Decimal:
        return sum((item.gross_share for item in self.items), Decimal("0"))

    @property
    def total_commission(self) -> Decimal:
        return sum((item.commission_share for item in self.items), Decimal("0"))

    @property
    def total_net(self) -> Decimal:
        return sum((item.net_share for item in self.items), Decimal("0"))


def _validate(gross_amount: Decimal, scores: Mapping[int, int], commission_rate: Decimal) -> None:
    if gross_amount < 0:
        raise InvalidAllocationInput(f"gross amount {gross_amount} is negative")
    if gross_amount != gross_amount.quantize(LEDGER_QUANTUM, rounding=ROUND_DOWN):
        raise InvalidAllocationInput(f"gross amount {gross_amount} is finer than the ledger unit")
    if not Decimal("0") <= commission_rate <= Decimal("1"):
        raise InvalidAllocationInput(f"commission rate {commission_rate} is outside [0, 1]")
    negative = sorted(user_id for user_id, score in scores.items() if score < 0)
    if negative:
        raise InvalidAllocationInput(f"negative scores for users {negative}")


def split_commission(gross_share: Decimal, commission_rate: Decimal) -> tuple[Decimal, Decimal]:
    commission = (gross_share * commission_rate).quantize(LEDGER_QUANTUM, rounding=ROUND_DOWN)
    return commission, gross_share - commission


def verify_conservation(result: AllocationResult) -> None:
    if result.is_empty:
        return
    if result.total_gross != result.gross_amount:
        raise ConservationViolation(
            f"sum of gross shares {result.total_gross} != batch gross {result.gross_amount}"
        )
    if result.total_net + result.total_commission != result.total_gross:
        raise ConservationViolation(
            f"net {result.total_net} + commission {result.total_commission} != gross {result.total_gross}"
        )
    for item in result.items:
        if item.gross_share < 0 or item.commission_share < 0 or item.net_share < 0:
            raise ConservationViolation(f"negative share for user {item.user_id}")


def allocate(
    gross_amount: Decimal,
    scores: Mapping[int, int],
    commission_rate: Decimal,
) -> AllocationResult:
    _validate(gross_amount, scores, commission_rate)

    participants = sorted((user_id, int(score)) for user_id, score in scores.items() if score > 0)
    total_score = sum(score for _, score in participants)
    if total_score == 0:
        return AllocationResult(
            gross_amount=gross_amount,
            commission_rate=commission_rate,
            total_score=0,
            items=(),
        )

    with localcontext() as context:
        context.prec = _PRECISION
        truncated: dict[int, Decimal] = {}
        remainders: list[tuple[Decimal, int]] = []
        for user_id, score in participants:
            ideal = gross_amount * Decimal(score) / Decimal(total_score)
            share = ideal.quantize(LEDGER_QUANTUM, rounding=ROUND_DOWN)
            truncated[user_id] = share
            remainders.append((ideal - share, user_id))

        leftover_units = int((gross_amount - sum(truncated.values(), Decimal("0"))) / LEDGER_QUANTUM)
        if leftover_units < 0 or leftover_units > len(participants):
            raise ConservationViolation(f"leftover of {leftover_units} units cannot be distributed")

        remainders.sort(key=lambda entry: (-entry[0], entry[1]))
        for _, user_id in remainders[:leftover_units]:
            truncated[user_id] += LEDGER_QUANTUM

        items = []
        for user_id, score in participants:
            gross_share = truncated[user_id]
            commission, net = split_commission(gross_share, commission_rate)
            items.append(
                AllocationItem(
                    user_id=user_id,
                    score=score,
                    gross_share=gross_share,
                    commission_share=commission,
                    net_share=net,
                )
            )

    result = AllocationResult(
        gross_amount=gross_amount,
        commission_rate=commission_rate,
        total_score=total_score,
        items=tuple(items),
    )
    verify_conservation(result)
    return result
