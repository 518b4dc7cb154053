from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

from xerosync.domain.xero import statuses
from xerosync.domain.xero.db_models import XeroInvoice, XeroInvoiceLineItem, XeroPayment

CENTS = Decimal("100")
TWO_PLACES = Decimal("0.01")


def cents_to_decimal(cents: int) -> Decimal:
    """Convert integer minor units to the decimal amount Xero expects (5000 -> 50.00)."""
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise TypeError("amounts must be integer minor units")
    return (Decimal(cents) / CENTS).quantize(TWO_PLACES)


def to_xero_amount(cents: int) -> str:
    return f"{cents_to_decimal(cents):.2f}"


def line_items_total(lines: list[XeroInvoiceLineItem]) -> int:
    return sum(line.line_amount for line in lines)


def _line_item_payload(line: XeroInvoiceLineItem) -> dict:
    payload: dict = {
        "Description": line.description,
        "Quantity": line.quantity,
        "UnitAmount": to_xero_amount(line.unit_amount),
        "LineAmount": to_xero_amount(line.line_amount),
        "TaxType": line.tax_type or statuses.TAX_TYPE_NONE,
    }
    if line.account_code:
        payload["AccountCode"] = line.account_code
    return payload


def validate_line_items(invoice: XeroInvoice) -> None:
    if not invoice.line_items:
        raise ValueError("invoice_has_no_line_items")
    for line in invoice.line_items:
        if line.quantity * line.unit_amount != line.line_amount:
            raise ValueError("line_amount_mismatch")
    if line_items_total(invoice.line_items) != invoice.net_amount:
        raise ValueError("line_item_sum_mismatch")


def build_invoice_payload(
    invoice: XeroInvoice,
    *,
    contact_id: str,
    currency_code: str,
    due_days: int,
) -> dict:
    validate_line_items(invoice)
    metadata = invoice.staging_metadata or {}
    issue_date = (invoice.staged_at.date() if invoice.staged_at else date.today())
    payload: dict = {
        "Type": statuses.INVOICE_TYPE_SALE,
        "Contact": {"ContactID": contact_id},
        "Date": issue_date.isoformat(),
        "DueDate": (issue_date + timedelta(days=due_days)).isoformat(),
        "LineAmountTypes": "NoTax",
        "LineItems": [_line_item_payload(line) for line in invoice.line_items],
        "Status": statuses.XERO_STATUS_AUTHORISED,
        "CurrencyCode": currency_code,
    }
    reference = metadata.get("processor_reference") or metadata.get("payment_id")
    if reference:
        payload["Reference"] = str(reference)
    return payload


def build_credit_note_payload(
    credit_note: XeroInvoice,
    *,
    contact_id: str,
    currency_code: str,
    reference: str | None = None,
) -> dict:
    validate_line_items(credit_note)
    issue_date = (credit_note.staged_at.date() if credit_note.staged_at else date.today())
    payload: dict = {
        "Type": statuses.INVOICE_TYPE_CREDIT,
        "Contact": {"ContactID": contact_id},
        "Date": issue_date.isoformat(),
        "LineAmountTypes": "NoTax",
        "LineItems": [_line_item_payload(line) for line in credit_note.line_items],
        "Status": statuses.XERO_STATUS_AUTHORISED,
        "CurrencyCode": currency_code,
    }
    if reference:
        payload["Reference"] = reference
    return payload


def build_payment_payload(payment: XeroPayment, *, external_invoice_id: str, payment_date: date) -> dict:
    if payment.amount_paid <= 0:
        raise ValueError("payment_amount_not_positive")
    payload: dict = {
        "Invoice": {"InvoiceID": external_invoice_id},
        "Account": {"Code": payment.bank_account_code},
        "Amount": to_xero_amount(payment.amount_paid),
        "Date": payment_date.isoformat(),
    }
    if payment.reference:
        payload["Reference"] = payment.reference
    return payload


def build_contact_payload(
    *,
    name: str,
    first_name: str,
    last_name: str,
    email: str | None,
    member_number: str | None,
) -> dict:
    payload: dict = {"Name": name, "FirstName": first_name, "LastName": last_name}
    if email:
        payload["EmailAddress"] = email
    if member_number:
        payload["AccountNumber"] = member_number
    return payload
