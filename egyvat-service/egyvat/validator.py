"""
Egyptian Tax Authority validation rules.

This module implements:
- Format and checksum checks for tax numbers, national IDs, passports,
  GS1/EGS codes and activity codes
- Invoice-level rules producing coded errors (ETA-001 .. ETA-010)
- Invoice number generation and customer type detection

Invalid data never raises; every failing rule appends one error.

The main entrypoints are:
- `validate_invoice` for a single invoice
- `validate_invoices` for a batch, including a summary
"""

from __future__ import annotations

import random
import re
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .schema import (
    BulkValidationReport,
    CustomerType,
    Invoice,
    InvoiceValidationError,
    InvoiceValidationResult,
    ValidationSummary,
)


TAX_NUMBER_RE = re.compile(r"[0-9]{9}")
TAX_NUMBER_WEIGHTS = (9, 8, 7, 6, 5, 4, 3, 2, 1)
NATIONAL_ID_RE = re.compile(r"[0-9]{14}")
PASSPORT_RE = re.compile(r"[A-Z0-9]{6,20}", re.IGNORECASE)
GS1_CODE_RE = re.compile(r"[0-9]{8,16}")
ACTIVITY_CODE_RE = re.compile(r"[0-9]{4,5}")

# 88 is used for births abroad.
GOVERNORATE_CODES = frozenset(
    [1, 2, 3, 4]
    + list(range(11, 20))
    + list(range(21, 30))
    + list(range(31, 36))
    + [88]
)

ALLOWED_VAT_RATES = (Decimal("0"), Decimal("14"))

DEFAULT_GS1_CODE = "10000000"

# (keywords, EGS code); first match wins.
GS1_KEYWORDS: Sequence[Tuple[Tuple[str, ...], str]] = (
    (("software", "برمجيات"), "6220100000"),
    (("consulting", "استشارات"), "7020100000"),
    (("training", "تدريب"), "8559100000"),
    (("hardware", "computer"), "4741000000"),
    (("medical", "طبي"), "8620100000"),
    (("legal", "قانوني"), "6910100000"),
    (("accounting", "محاسبة"), "6920100000"),
    (("engineering", "هندسة"), "7112100000"),
    (("construction", "بناء"), "4100100000"),
    (("food", "طعام"), "5610100000"),
    (("transport", "نقل"), "4922100000"),
)


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def is_valid_tax_number(value: Optional[str]) -> bool:
    """
    A tax number is exactly 9 digits whose weighted sum is divisible by 11.
    """
    if _is_blank(value) or not TAX_NUMBER_RE.fullmatch(value):
        return False
    total = sum(int(digit) * weight for digit, weight in zip(value, TAX_NUMBER_WEIGHTS))
    return total % 11 == 0


def is_valid_national_id(value: Optional[str]) -> bool:
    """
    Check the structure of a 14-digit national ID.

    Layout: century(1) + YY(2) + MM(2) + DD(2) + governorate(2) + sequence.
    The day is not cross-checked against the length of the month.
    """
    if _is_blank(value) or not NATIONAL_ID_RE.fullmatch(value):
        return False

    if value[0] not in ("2", "3"):
        return False

    month = int(value[3:5])
    if not 1 <= month <= 12:
        return False

    day = int(value[5:7])
    if not 1 <= day <= 31:
        return False

    return int(value[7:9]) in GOVERNORATE_CODES


def is_valid_passport_number(value: Optional[str]) -> bool:
    if _is_blank(value):
        return False
    return bool(PASSPORT_RE.fullmatch(value))


def is_valid_gs1_code(value: Optional[str]) -> bool:
    if _is_blank(value):
        return False
    return bool(GS1_CODE_RE.fullmatch(value))


def is_valid_activity_code(value: Optional[str]) -> bool:
    if _is_blank(value):
        return False
    return bool(ACTIVITY_CODE_RE.fullmatch(value))


def determine_customer_type(
    tax_number: Optional[str],
    national_id: Optional[str],
    passport_number: Optional[str],
) -> CustomerType:
    """
    Pick the customer type from whichever credential is valid.

    Falls back to B2C when none is valid; the invoice validator then
    reports the missing credential.
    """
    if is_valid_tax_number(tax_number):
        return CustomerType.B2B
    if is_valid_national_id(national_id):
        return CustomerType.B2C
    if is_valid_passport_number(passport_number):
        return CustomerType.FOREIGN
    return CustomerType.B2C


def generate_invoice_number(
    prefix: str = "INV",
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Build ``PREFIX-yyyyMMdd-HHmmss-NNNN`` from the UTC clock and a random suffix.

    Uniqueness is probabilistic; collisions are for the storage layer to reject.
    """
    now = now or datetime.now(timezone.utc)
    rng = rng or random.Random()
    stamp = now.astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{prefix}-{stamp}-{rng.randint(1000, 9999)}"


def map_to_gs1_code(description: Optional[str]) -> str:
    """
    Best-effort mapping of a line description to a common EGS code.
    """
    text = (description or "").lower()
    for keywords, code in GS1_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return code
    return DEFAULT_GS1_CODE


def _validate_customer(invoice: Invoice) -> Optional[InvoiceValidationError]:
    customer = invoice.customer

    if customer.type == CustomerType.B2B:
        if not is_valid_tax_number(customer.tax_number):
            return InvoiceValidationError(
                code="ETA-002",
                field="customer.tax_number",
                message="B2B customer must have a valid 9-digit tax number",
            )
        return None

    if customer.type == CustomerType.B2C:
        if not (
            is_valid_national_id(customer.national_id)
            or is_valid_passport_number(customer.passport_number)
        ):
            return InvoiceValidationError(
                code="ETA-003",
                field="customer.national_id",
                message=(
                    "B2C customer must have a valid 14-digit national ID "
                    "or passport number"
                ),
            )
        return None

    if not is_valid_passport_number(customer.passport_number):
        return InvoiceValidationError(
            code="ETA-003",
            field="customer.passport_number",
            message="Foreign customer must have a valid passport number",
        )
    return None


def validate_invoice(invoice: Invoice) -> List[InvoiceValidationError]:
    """
    Validate a single invoice against the Authority's rules.

    Parameters
    ----------
    invoice:
        Invoice instance to validate.

    Returns
    -------
    list of InvoiceValidationError
        Every failing rule, in rule order. Empty when the invoice is valid.
    """
    errors: List[InvoiceValidationError] = []

    # --- Parties ---
    if not is_valid_tax_number(invoice.supplier.tax_number):
        errors.append(
            InvoiceValidationError(
                code="ETA-001",
                field="supplier.tax_number",
                message="Supplier must have a valid 9-digit Egyptian tax number",
            )
        )

    customer_error = _validate_customer(invoice)
    if customer_error is not None:
        errors.append(customer_error)

    # --- Lines ---
    if not invoice.lines:
        errors.append(
            InvoiceValidationError(
                code="ETA-004",
                field="lines",
                message="Invoice must contain at least one line item",
            )
        )

    for i, line in enumerate(invoice.lines):
        if not is_valid_gs1_code(line.gs1_code):
            errors.append(
                InvoiceValidationError(
                    code="ETA-005",
                    field=f"lines[{i}].gs1_code",
                    message=f"Line {i + 1}: Invalid GS1/EGS code format",
                )
            )

        if line.quantity <= 0:
            errors.append(
                InvoiceValidationError(
                    code="ETA-006",
                    field=f"lines[{i}].quantity",
                    message=f"Line {i + 1}: Quantity must be positive",
                )
            )

        if line.unit_price < 0:
            errors.append(
                InvoiceValidationError(
                    code="ETA-007",
                    field=f"lines[{i}].unit_price",
                    message=f"Line {i + 1}: Unit price cannot be negative",
                )
            )

        if line.vat_rate not in ALLOWED_VAT_RATES:
            errors.append(
                InvoiceValidationError(
                    code="ETA-008",
                    field=f"lines[{i}].vat_rate",
                    message=f"Line {i + 1}: VAT rate must be 14% or 0% (exempt)",
                )
            )

    # --- Totals ---
    if invoice.total_amount <= 0:
        errors.append(
            InvoiceValidationError(
                code="ETA-009",
                field="total_amount",
                message="Invoice total must be positive",
            )
        )

    if not is_valid_activity_code(invoice.supplier.activity_code):
        errors.append(
            InvoiceValidationError(
                code="ETA-010",
                field="supplier.activity_code",
                message="Invalid ETA activity code",
            )
        )

    return errors


def _detect_duplicates(invoices: Sequence[Invoice]) -> Dict[str, int]:
    """
    Count invoice numbers that appear more than once in the batch.
    """
    counter: Counter = Counter(inv.invoice_number for inv in invoices if inv.invoice_number)
    return {number: count for number, count in counter.items() if count > 1}


def validate_invoices(invoices: List[Invoice]) -> BulkValidationReport:
    """
    Validate a list of invoices and return detailed results plus a summary.

    Invoice numbers must be unique, so repeated numbers within the batch are
    flagged on every invoice that carries them.
    """
    per_invoice_results: List[InvoiceValidationResult] = []
    duplicates = _detect_duplicates(invoices)

    for invoice in invoices:
        errors = validate_invoice(invoice)
        if invoice.invoice_number in duplicates:
            errors.append(
                InvoiceValidationError(
                    code="DUPLICATE_INVOICE",
                    field="invoice_number",
                    message="Invoice number appears more than once in the batch.",
                )
            )
        per_invoice_results.append(
            InvoiceValidationResult(
                invoice_id=invoice.invoice_number or None,
                is_valid=not errors,
                errors=errors,
            )
        )

    total_invoices = len(per_invoice_results)
    invalid_invoices = sum(1 for r in per_invoice_results if not r.is_valid)

    error_counter: Counter = Counter()
    for r in per_invoice_results:
        for e in r.errors:
            error_counter[e.code] += 1

    summary = ValidationSummary(
        total_invoices=total_invoices,
        valid_invoices=total_invoices - invalid_invoices,
        invalid_invoices=invalid_invoices,
        top_errors=[code for code, _ in error_counter.most_common(5)],
    )

    return BulkValidationReport(results=per_invoice_results, summary=summary)
