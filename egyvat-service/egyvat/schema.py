"""
Data models for Egyptian VAT invoices and their validation output.

All components (validator, lifecycle, Authority client, API, CLI) share
these Pydantic models so the invoice value handed between them has one
contract. Amounts are ``Decimal`` so line arithmetic stays exact.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStatus(str, Enum):
    """Position of an invoice in the Authority submission workflow."""

    DRAFT = "Draft"
    VALIDATED = "Validated"
    SUBMITTING = "Submitting"
    SUBMITTED = "Submitted"
    VALID = "Valid"
    INVALID = "Invalid"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"


class CustomerType(str, Enum):
    B2B = "B2B"
    B2C = "B2C"
    FOREIGN = "Foreign"


class ValidationSeverity(str, Enum):
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"


class Supplier(BaseModel):
    """
    The issuing company. Fixed per deployment and built from settings.
    """

    name: str = Field(default="", description="Legal name of the supplier.")
    tax_number: str = Field(default="", description="9-digit Egyptian tax number.")
    address: str = Field(default="", description="Street address of the supplier.")
    activity_code: str = Field(
        default="", description="4-5 digit Authority activity code."
    )
    branch_id: str = Field(default="0", description="Branch ID, '0' is the main branch.")


class Customer(BaseModel):
    """
    The receiving party. Which credential is required depends on ``type``.
    """

    name: str = Field(default="", description="Name of the customer.")
    tax_number: Optional[str] = Field(
        default=None, description="9-digit tax number (B2B customers)."
    )
    national_id: Optional[str] = Field(
        default=None, description="14-digit national ID (B2C customers)."
    )
    passport_number: Optional[str] = Field(
        default=None, description="Passport number (foreign customers)."
    )
    address: Optional[str] = Field(default=None, description="Customer address.")
    type: CustomerType = Field(default=CustomerType.B2C)


class InvoiceLine(BaseModel):
    """
    A single line item. Net, VAT and total amounts are derived, never stored.
    """

    description: str = Field(default="", description="Description of the goods or service.")
    item_code: str = Field(default="", description="Internal item code.")
    gs1_code: str = Field(default="10000000", description="GS1/EGS classification code.")
    unit_type: str = Field(default="EA", description="Unit of measure, e.g. EA or KG.")
    quantity: Decimal = Field(default=Decimal("0"))
    unit_price: Decimal = Field(default=Decimal("0"))
    discount_rate: Decimal = Field(default=Decimal("0"))
    discount_amount: Decimal = Field(default=Decimal("0"))
    vat_rate: Decimal = Field(
        default=Decimal("14"), description="VAT rate in percent (14 or 0)."
    )

    @computed_field
    @property
    def net_amount(self) -> Decimal:
        return self.quantity * self.unit_price - self.discount_amount

    @computed_field
    @property
    def vat_amount(self) -> Decimal:
        return self.net_amount * self.vat_rate / Decimal(100)

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return self.net_amount


class InvoiceValidationError(BaseModel):
    """
    Represents a single validation error for an invoice.
    """

    code: str = Field(..., description="Stable error code, e.g. 'ETA-001'.")
    message: str = Field(..., description="Human-readable description of the error.")
    field: str = Field(default="", description="Path of the offending field.")
    severity: ValidationSeverity = Field(default=ValidationSeverity.ERROR)


class Invoice(BaseModel):
    """
    The invoice aggregate.

    The lifecycle mutates a copy of this value and hands it back; callers
    own persistence. Lines may be empty on the model itself so that the
    validator can report the problem instead of failing to parse.
    """

    invoice_number: str = Field(default="", description="Unique invoice number.")
    uuid: str = Field(default_factory=lambda: str(uuid4()))
    issue_datetime: datetime = Field(default_factory=utcnow)
    document_type: str = Field(default="I", description="I=Invoice, C=Credit, D=Debit.")
    document_type_version: str = Field(default="1.0")
    currency: str = Field(default="EGP")
    exchange_rate: Decimal = Field(default=Decimal("1.0"))

    supplier: Supplier = Field(default_factory=Supplier)
    customer: Customer = Field(default_factory=Customer)
    lines: List[InvoiceLine] = Field(default_factory=list)

    status: InvoiceStatus = Field(default=InvoiceStatus.DRAFT)
    eta_submission_id: Optional[str] = None
    eta_submission_date: Optional[datetime] = None
    eta_response: Optional[str] = None
    eta_long_id: Optional[str] = None
    eta_internal_id: Optional[str] = None
    eta_acceptance_date: Optional[datetime] = None
    eta_rejection_reasons: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    validation_errors: List[InvoiceValidationError] = Field(default_factory=list)
    submission_attempts: int = Field(default=0, ge=0)
    last_submission_attempt: Optional[datetime] = None

    @computed_field
    @property
    def sub_total(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0"))

    @computed_field
    @property
    def total_vat_amount(self) -> Decimal:
        return sum((line.vat_amount for line in self.lines), Decimal("0"))

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return self.sub_total + self.total_vat_amount

    @property
    def total_discount_amount(self) -> Decimal:
        return sum((line.discount_amount for line in self.lines), Decimal("0"))


class InvoiceValidationResult(BaseModel):
    """
    Validation result for a single invoice.
    """

    invoice_id: Optional[str] = Field(
        default=None,
        description="Identifier for the invoice, usually the invoice_number.",
    )
    is_valid: bool = Field(..., description="True if invoice passed all checks.")
    errors: List[InvoiceValidationError] = Field(
        default_factory=list, description="List of validation errors."
    )


class ValidationSummary(BaseModel):
    """
    Aggregate summary for validating multiple invoices.
    """

    total_invoices: int = Field(..., description="Total number of invoices checked.")
    valid_invoices: int = Field(
        ..., description="Number of invoices that passed all checks."
    )
    invalid_invoices: int = Field(
        ..., description="Number of invoices that failed at least one check."
    )
    top_errors: List[str] = Field(
        default_factory=list,
        description="Most common error codes across all invoices.",
    )


class BulkValidationReport(BaseModel):
    """
    Structure used when returning a full validation report for many invoices.
    """

    results: List[InvoiceValidationResult] = Field(
        default_factory=list, description="Per-invoice validation results."
    )
    summary: ValidationSummary = Field(
        ..., description="High-level validation statistics."
    )
