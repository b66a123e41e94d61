"""
Shared fixtures for unit and integration tests.
"""

import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from egyvat.authority import SubmissionResult
from egyvat.config import Settings
from egyvat.schema import (
    Customer,
    CustomerType,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    Supplier,
)


FIXED_NOW = datetime(2024, 3, 5, 14, 7, 9, tzinfo=timezone.utc)

# Weighted sums 165 and 11, both divisible by 11.
SUPPLIER_TAX_NUMBER = "123456789"
CUSTOMER_TAX_NUMBER = "100000002"


class FixedRandom(random.Random):
    """Random generator whose ``random()`` always returns ``value``."""

    def __init__(self, value: float):
        super().__init__(1234)
        self.value = value

    def random(self):
        return self.value


ACCEPT = 0.0
REJECT = 0.99


class FakeGateway:
    """
    Stand-in for the Authority client that records every call.
    """

    def __init__(self, submit=None, status=None, cancel=None, demo=False):
        self.demo = demo
        self.submit_result = submit or SubmissionResult(
            success=True,
            submission_id="sub-1",
            status="Valid",
            long_id="ETA2024030512345",
            internal_id="INTABCDEF01",
            raw_response="{}",
        )
        self.status_result = status or SubmissionResult(success=True, status="in progress")
        self.cancel_result = cancel or SubmissionResult(success=True, status="Cancelled")
        self.calls = []

    async def submit(self, invoice):
        self.calls.append(("submit", invoice.invoice_number))
        return self.submit_result

    async def get_status(self, submission_id):
        self.calls.append(("get_status", submission_id))
        return self.status_result

    async def cancel(self, long_id):
        self.calls.append(("cancel", long_id))
        return self.cancel_result


def build_invoice(**overrides) -> Invoice:
    """Build an invoice that passes every validation rule."""
    data = dict(
        invoice_number="INV-20240305-140709-1234",
        issue_datetime=FIXED_NOW,
        supplier=Supplier(
            name="Test Company Ltd",
            tax_number=SUPPLIER_TAX_NUMBER,
            address="123 Business St, Cairo, Egypt",
            activity_code="4620",
        ),
        customer=Customer(
            name="Nile Trading Co",
            tax_number=CUSTOMER_TAX_NUMBER,
            address="5 Tahrir Sq, Cairo",
            type=CustomerType.B2B,
        ),
        lines=[
            InvoiceLine(
                description="Software license",
                item_code="ITEM001",
                gs1_code="6220100000",
                quantity=Decimal("2"),
                unit_price=Decimal("500"),
                vat_rate=Decimal("14"),
            )
        ],
        status=InvoiceStatus.DRAFT,
    )
    data.update(overrides)
    return Invoice(**data)


@pytest.fixture
def invoice() -> Invoice:
    return build_invoice()


@pytest.fixture
def settings() -> Settings:
    """Demo-mode settings with no artificial latency."""
    return Settings(
        _env_file=None,
        eta_client_id="",
        eta_client_secret="",
        environment="",
        demo_mode=True,
        demo_delay_seconds=0,
    )


@pytest.fixture
def live_settings() -> Settings:
    """Settings that talk to a real (test) Authority endpoint."""
    return Settings(
        _env_file=None,
        eta_api_url="http://127.0.0.1:1",
        eta_client_id="client-id",
        eta_client_secret="client-secret",
        environment="test",
        demo_mode=False,
        demo_delay_seconds=0,
        request_timeout_seconds=5,
    )
