"""Refund allocation for credit notes.

A refund is spread over the original invoice's goods lines in proportion to
each line's share of their total. Every share is rounded to whole minor units
and the rounding remainder lands on the largest line, so the allocated lines
always add up to the refund amount exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from xerosync.domain.xero import statuses

REFUND_DESCRIPTION = "Refund"


@dataclass(frozen=True)
class SourceLine:
    line_item_type: str
    description: str
    line_amount: int
    account_code: str | None = None
    item_id: str | None = None


@dataclass(frozen=True)
class CreditLine:
    line_item_type: str
    description: str
    amount: int
    account_code: str | None = None
    item_id: str | None = None


def allocate_refund(
    source_lines: list[SourceLine],
    refund_amount: int,
    *,
    fallback_account_code: str,
    fallback_description: str = REFUND_DESCRIPTION,
) -> list[CreditLine]:
    if refund_amount <= 0:
        raise ValueError("invalid_refund_amount")

    weighted = [line for line in source_lines if line.line_amount > 0]
    base_total = sum(line.line_amount for line in weighted)
    if base_total <= 0:
        return [
            CreditLine(
                line_item_type=statuses.LINE_TYPE_REFUND,
                description=fallback_description,
                amount=refund_amount,
                account_code=fallback_account_code,
            )
        ]

    refund = Decimal(refund_amount)
    total = Decimal(base_total)
    shares = [
        int((refund * Decimal(line.line_amount) / total).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        for line in weighted
    ]
    remainder = refund_amount - sum(shares)
    if remainder:
        largest = max(range(len(weighted)), key=lambda index: weighted[index].line_amount)
        shares[largest] += remainder

    return [
        CreditLine(
            line_item_type=line.line_item_type,
            description=f"Refund - {line.description}",
            amount=share,
            account_code=line.account_code or fallback_account_code,
            item_id=line.item_id,
        )
        for line, share in zip(weighted, shares)
        if share != 0
    ]


def build_credit_note_reference(
    payment_id: str,
    *,
    reason: str | None = None,
    original_external_id: str | None = None,
) -> str:
    reference = f"Refund for Payment {payment_id[:8]}"
    if reason:
        reference += f" - {reason[:100]}"
    if original_external_id:
        reference += f" (Inv: {original_external_id})"
    return reference
