"""
Adapters from invoice creation requests to the internal ``Invoice``.

Two request shapes are accepted:
- ``CreateInvoiceRequest``: nested customer and a list of lines, tax rate as
  a fraction (0.14)
- ``InvoiceRequest``: the older flat shape with one line and any of the
  three customer credentials

Both end up in ``create_invoice``, which attaches the configured supplier,
assigns an invoice number and runs the Authority validation rules.
"""

from __future__ import annotations

import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .config import Settings
from .exceptions import RequestValidationError
from .schema import Customer, CustomerType, Invoice, InvoiceLine, InvoiceStatus
from .validator import (
    determine_customer_type,
    generate_invoice_number,
    is_valid_national_id,
    is_valid_passport_number,
    is_valid_tax_number,
    map_to_gs1_code,
    validate_invoice,
)


DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d", "%m/%d/%Y")


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CustomerInput(_RequestModel):
    name: str = ""
    tax_number: str = ""
    address: str = ""


class LineItemInput(_RequestModel):
    description: str = ""
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    tax_rate: Decimal = Field(default=Decimal("0.14"), description="Fraction, e.g. 0.14.")


class CreateInvoiceRequest(_RequestModel):
    customer: CustomerInput = Field(default_factory=CustomerInput)
    issue_date: str = ""
    lines: List[LineItemInput] = Field(default_factory=list)


class InvoiceRequest(_RequestModel):
    """The flat, single-line request shape."""

    customer_name: str = ""
    customer_tax_number: Optional[str] = None
    customer_national_id: Optional[str] = None
    customer_passport_number: Optional[str] = None
    customer_address: Optional[str] = None

    item_description: str = ""
    item_code: Optional[str] = None
    gs1_code: Optional[str] = None
    unit_type: Optional[str] = None

    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    discount_rate: Decimal = Field(default=Decimal("0"), description="Percent, e.g. 10.")


CreateRequest = Union[CreateInvoiceRequest, InvoiceRequest]


def _parse_issue_date(value: Optional[str]) -> Optional[datetime]:
    """
    Best-effort parser for the issue date; naive values are taken as UTC.
    """
    if not value or not value.strip():
        return None
    text = value.strip()
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _format_pydantic_errors(exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return messages


def parse_create_request(payload: Any) -> CreateRequest:
    """
    Pick the request shape and parse it.

    The nested shape is recognised by a ``customer`` object together with a
    ``lines`` array; anything else is read as the flat shape.
    """
    if not isinstance(payload, dict):
        raise RequestValidationError("Invalid request body", ["Request body must be a JSON object"])

    nested = isinstance(payload.get("customer"), dict) and isinstance(payload.get("lines"), list)
    model = CreateInvoiceRequest if nested else InvoiceRequest
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError("Invalid request body", _format_pydantic_errors(exc))


def check_request(request: CreateRequest) -> List[str]:
    """
    Request-level checks run before an invoice is built. Returns every problem.
    """
    errors: List[str] = []

    if isinstance(request, CreateInvoiceRequest):
        customer = request.customer
        if _is_blank(customer.name):
            errors.append("Customer name is required")
        if _is_blank(customer.address):
            errors.append("Customer address is required")
        if _is_blank(customer.tax_number):
            errors.append("Customer tax number is required")
        elif not is_valid_tax_number(customer.tax_number):
            errors.append("Customer tax number must be a valid 9-digit tax number")

        if _is_blank(request.issue_date):
            errors.append("Issue date is required")
        elif _parse_issue_date(request.issue_date) is None:
            errors.append("Issue date must be a valid date")

        if not request.lines:
            errors.append("At least one line item is required")

        for i, line in enumerate(request.lines, start=1):
            if _is_blank(line.description):
                errors.append(f"Line {i}: Description is required")
            if line.quantity <= 0:
                errors.append(f"Line {i}: Quantity must be positive")
            if line.unit_price <= 0:
                errors.append(f"Line {i}: Unit price must be positive")
            if line.tax_rate < 0 or line.tax_rate > 1:
                errors.append(
                    f"Line {i}: Tax rate must be between 0 and 1 (e.g., 0.14 for 14%)"
                )
        return errors

    if _is_blank(request.customer_name):
        errors.append("Customer name is required")
    if request.quantity <= 0:
        errors.append("Quantity must be positive")
    if request.unit_price <= 0:
        errors.append("Unit price must be positive")
    if _is_blank(request.item_description):
        errors.append("Item description is required")

    has_valid_id = (
        is_valid_tax_number(request.customer_tax_number)
        or is_valid_national_id(request.customer_national_id)
        or is_valid_passport_number(request.customer_passport_number)
    )
    if not has_valid_id:
        errors.append(
            "Customer must have a valid tax number (9 digits), "
            "national ID (14 digits) or passport"
        )
    return errors


def _build_from_nested(request: CreateInvoiceRequest) -> Invoice:
    issue_datetime = _parse_issue_date(request.issue_date) or datetime.now(timezone.utc)
    return Invoice(
        issue_datetime=issue_datetime,
        customer=Customer(
            name=request.customer.name,
            tax_number=request.customer.tax_number,
            address=request.customer.address,
            type=CustomerType.B2B,
        ),
        lines=[
            InvoiceLine(
                description=line.description,
                item_code=f"ITEM{index:03d}",
                gs1_code=map_to_gs1_code(line.description),
                unit_type="EA",
                quantity=line.quantity,
                unit_price=line.unit_price,
                vat_rate=line.tax_rate * 100,
            )
            for index, line in enumerate(request.lines, start=1)
        ],
    )


def _build_from_flat(request: InvoiceRequest) -> Invoice:
    customer_type = determine_customer_type(
        request.customer_tax_number,
        request.customer_national_id,
        request.customer_passport_number,
    )
    gross = request.quantity * request.unit_price
    return Invoice(
        customer=Customer(
            name=request.customer_name,
            tax_number=request.customer_tax_number,
            national_id=request.customer_national_id,
            passport_number=request.customer_passport_number,
            address=request.customer_address,
            type=customer_type,
        ),
        lines=[
            InvoiceLine(
                description=request.item_description,
                item_code=request.item_code or "ITEM001",
                gs1_code=request.gs1_code or map_to_gs1_code(request.item_description),
                unit_type=request.unit_type or "EA",
                quantity=request.quantity,
                unit_price=request.unit_price,
                discount_rate=request.discount_rate,
                discount_amount=gross * request.discount_rate / 100,
                vat_rate=Decimal("14"),
            )
        ],
    )


def create_invoice(
    request: CreateRequest,
    settings: Settings,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> Invoice:
    """
    Build a new invoice from a request and run the validation rules on it.

    The invoice starts as ``Validated`` when it passes every rule and as
    ``Draft`` (carrying its errors) otherwise.

    Raises
    ------
    RequestValidationError
        If the request itself is incomplete.
    """
    errors = check_request(request)
    if errors:
        raise RequestValidationError("Validation failed", errors)

    if isinstance(request, CreateInvoiceRequest):
        invoice = _build_from_nested(request)
    else:
        invoice = _build_from_flat(request)

    invoice.supplier = settings.supplier()
    invoice.invoice_number = generate_invoice_number(now=now, rng=rng)
    invoice.validation_errors = validate_invoice(invoice)
    invoice.status = InvoiceStatus.DRAFT if invoice.validation_errors else InvoiceStatus.VALIDATED
    return invoice
