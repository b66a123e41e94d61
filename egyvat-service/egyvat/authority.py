"""
Client for the Egyptian Tax Authority invoicing API.

Operations:
- authenticate: OAuth2 client-credentials token
- submit: POST /documentsubmissions
- get_status: GET /documentsubmissions/{uuid}
- cancel: PUT /documents/{longId}/state

Every operation returns a ``SubmissionResult``. Transport errors, timeouts,
non-2xx answers and undecodable bodies are turned into ``success=False``
results; nothing is raised to the caller.

In demo mode no request leaves the process. Outcomes are drawn from the
injected random generator so tests can force acceptance or rejection.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import Settings
from .schema import Invoice, utcnow


logger = logging.getLogger(__name__)

TOKEN_SCOPE = "InvoicingAPI"
CANCEL_REASON = "Cancelled by issuer"
DEMO_RESPONSE = "DEMO_MODE_RESPONSE"
DEMO_REJECTION_CODE = "DEMO"
DEMO_REJECTION_MESSAGE = "Sample validation error for testing"


class DocumentState(str, Enum):
    """Local reading of the Authority's textual document status."""

    VALID = "valid"
    INVALID = "invalid"
    PROCESSING = "processing"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenResponse(_WireModel):
    access_token: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("accessToken", "access_token")
    )
    token_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("tokenType", "token_type")
    )
    expires_in: int = Field(
        default=0, validation_alias=AliasChoices("expiresIn", "expires_in")
    )


class SubmissionResponse(_WireModel):
    submission_uuid: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("submissionUuid", "submissionUUID")
    )
    acceptance_status: Optional[str] = Field(
        default=None, validation_alias="acceptanceStatus"
    )
    valid_messages: List[Any] = Field(default_factory=list, validation_alias="validMessages")
    error_messages: List[Any] = Field(default_factory=list, validation_alias="errorMessages")

    @field_validator("valid_messages", "error_messages", mode="before")
    @classmethod
    def _null_as_empty(cls, v):
        return v if isinstance(v, list) else []


class AuthorityValidationError(_WireModel):
    """One error reported by the Authority for a rejected document."""

    code: str = "UNKNOWN"
    message: str = "Unknown error"
    target: str = ""
    property_path: str = Field(default="", validation_alias=AliasChoices("propertyPath", "property_path"))

    @field_validator("code", "message", "target", "property_path", mode="before")
    @classmethod
    def _coerce_text(cls, v, info):
        if v is None:
            return cls.model_fields[info.field_name].default
        return str(v)


class ValidationResults(_WireModel):
    status: Optional[str] = None
    errors: List[AuthorityValidationError] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)

    @field_validator("errors", mode="before")
    @classmethod
    def _keep_error_objects(cls, v):
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]


class StatusDocument(_WireModel):
    """
    The submission resource returned by ``GET /documentsubmissions/{uuid}``.

    Every field is optional; a partial or oddly shaped document still parses.
    """

    status: Optional[str] = None
    long_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("longId", "long_id"))
    internal_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("internalId", "internal_id")
    )
    validation_results: Optional[ValidationResults] = Field(
        default=None, validation_alias=AliasChoices("validationResults", "validation_results")
    )

    @field_validator("status", "long_id", "internal_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)

    @field_validator("validation_results", mode="before")
    @classmethod
    def _drop_malformed_results(cls, v):
        return v if isinstance(v, dict) else None


class SubmissionResult(BaseModel):
    """Outcome of one Authority operation."""

    success: bool
    submission_id: Optional[str] = None
    long_id: Optional[str] = None
    internal_id: Optional[str] = None
    status: Optional[str] = None
    raw_response: Optional[str] = None
    error_message: Optional[str] = None
    status_code: Optional[int] = None
    validation_errors: List[AuthorityValidationError] = Field(default_factory=list)

    @property
    def state(self) -> DocumentState:
        text = (self.status or "").strip().lower()
        if text == DocumentState.VALID.value:
            return DocumentState.VALID
        if text == DocumentState.INVALID.value:
            return DocumentState.INVALID
        return DocumentState.PROCESSING

    def rejection_reasons(self) -> List[str]:
        return [f"{e.code}: {e.message}" for e in self.validation_errors]

    @classmethod
    def failure(cls, message: str, status_code: Optional[int] = None) -> "SubmissionResult":
        return cls(success=False, error_message=message, status_code=status_code)


def _amount(value: Decimal) -> float:
    return float(value)


def _format_issued(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _receiver_identity(invoice: Invoice) -> tuple:
    customer = invoice.customer
    if customer.tax_number:
        return customer.tax_number, "TRN"
    if customer.national_id:
        return customer.national_id, "NAT"
    if customer.passport_number:
        return customer.passport_number, "PAS"
    return "", "NAT"


def to_wire_document(invoice: Invoice) -> Dict[str, Any]:
    """
    Convert an invoice to the Authority's document submission schema.
    """
    supplier = invoice.supplier
    customer = invoice.customer
    receiver_id, receiver_type = _receiver_identity(invoice)
    total_discount = _amount(invoice.total_discount_amount)

    invoice_lines = []
    for line in invoice.lines:
        invoice_lines.append(
            {
                "description": line.description,
                "itemType": "EGS",
                "itemCode": line.item_code,
                "unitType": line.unit_type,
                "quantity": _amount(line.quantity),
                "salesTotal": _amount(line.net_amount),
                "total": _amount(line.line_total),
                "valueDifference": 0,
                "totalTaxableFees": 0,
                "netTotal": _amount(line.net_amount),
                "itemsDiscount": _amount(line.discount_amount),
                "unitValue": {
                    "currencySold": invoice.currency,
                    "amountEGP": _amount(line.unit_price),
                },
                "discount": {
                    "rate": _amount(line.discount_rate),
                    "amount": _amount(line.discount_amount),
                },
                "taxableItems": [
                    {
                        "taxType": "T1",
                        "amount": _amount(line.vat_amount),
                        "subType": "V009",
                        "rate": _amount(line.vat_rate),
                    }
                ],
            }
        )

    return {
        "issuer": {
            "name": supplier.name,
            "id": supplier.tax_number,
            "type": "TRN",
            "address": {
                "branchID": supplier.branch_id or "0",
                "governate": "CAI",
                "regionCity": "Cairo",
                "street": supplier.address,
                "buildingNumber": "1",
                "country": "EG",
            },
            "activityCode": supplier.activity_code,
        },
        "receiver": {
            "name": customer.name,
            "id": receiver_id,
            "type": receiver_type,
            "address": {
                "country": "EG",
                "governate": "CAI",
                "regionCity": "Cairo",
                "street": customer.address or "Unknown",
            },
        },
        "documentType": invoice.document_type,
        "documentTypeVersion": invoice.document_type_version,
        "dateTimeIssued": _format_issued(invoice.issue_datetime),
        "taxpayerActivityCode": supplier.activity_code,
        "internalID": invoice.invoice_number,
        "invoiceLines": invoice_lines,
        "totalDiscountAmount": total_discount,
        "totalSalesAmount": _amount(invoice.sub_total),
        "netAmount": _amount(invoice.sub_total),
        "taxTotals": [{"taxType": "T1", "amount": _amount(invoice.total_vat_amount)}],
        "totalAmount": _amount(invoice.total_amount),
        "extraDiscountAmount": 0,
        "totalItemsDiscountAmount": total_discount,
    }


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "request timed out"
    return str(exc) or exc.__class__.__name__


class AuthorityClient:
    """
    Talks to the Authority, or simulates it in demo mode.

    ``rng`` decides demo outcomes and seeds the synthesized identifiers;
    pass a seeded ``random.Random`` (or any object with ``random``,
    ``randint`` and ``getrandbits``) for deterministic behaviour.
    """

    def __init__(
        self,
        settings: Settings,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.rng = rng or random.Random()
        self.clock = clock

    @property
    def demo(self) -> bool:
        return self.settings.is_demo

    # ---------------- Helpers ----------------

    def _url(self, path: str) -> str:
        return self.settings.eta_api_url.rstrip("/") + path

    def _session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds)
        return aiohttp.ClientSession(timeout=timeout)

    def _new_uuid(self) -> str:
        return str(uuid.UUID(int=self.rng.getrandbits(128), version=4))

    def _new_long_id(self) -> str:
        return f"ETA{self.clock():%Y%m%d}{self.rng.randint(100000, 999999)}"

    def _new_internal_id(self) -> str:
        return f"INT{self._new_uuid()[:8].upper()}"

    def _credentials_missing(self) -> bool:
        return not (self.settings.eta_client_id and self.settings.eta_client_secret)

    async def _simulate_latency(self) -> None:
        await asyncio.sleep(self.settings.demo_delay_seconds)

    async def _fetch_token(self, session: aiohttp.ClientSession) -> Optional[str]:
        payload = {
            "grant_type": "client_credentials",
            "client_id": self.settings.eta_client_id,
            "client_secret": self.settings.eta_client_secret,
            "scope": TOKEN_SCOPE,
        }
        async with session.post(self._url("/connect/token"), json=payload) as response:
            body = await response.text()
            if not 200 <= response.status < 300:
                logger.warning("Token request rejected with HTTP %s", response.status)
                return None
        token = TokenResponse.model_validate_json(body or "{}")
        return token.access_token or None

    # ---------------- Public API ----------------

    async def authenticate(self) -> Optional[str]:
        """
        Fetch a bearer token. Returns ``None`` when authentication fails.
        """
        if self.demo:
            return "demo-token"
        try:
            async with self._session() as session:
                return await self._fetch_token(session)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Authentication with the Authority failed: %s", _describe(exc))
            return None

    async def submit(self, invoice: Invoice) -> SubmissionResult:
        """
        Submit an invoice document.

        A 2xx answer yields the submission UUID and the initial acceptance
        status (``Accepted`` is reported as ``Valid``; missing means
        ``Submitted``).
        """
        if self.demo:
            return await self._demo_submit(invoice)

        if self._credentials_missing():
            return SubmissionResult.failure(
                "Authority API credentials not configured. "
                "Set ETA_CLIENT_ID and ETA_CLIENT_SECRET."
            )

        document = to_wire_document(invoice)
        logger.info("Submitting invoice %s to the Authority", invoice.invoice_number)
        try:
            async with self._session() as session:
                token = await self._fetch_token(session)
                if not token:
                    return SubmissionResult.failure("Failed to authenticate with the Authority")

                headers = {"Authorization": f"Bearer {token}"}
                async with session.post(
                    self._url("/documentsubmissions"), json=document, headers=headers
                ) as response:
                    body = await response.text()
                    status_code = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.error("Submission of %s failed: %s", invoice.invoice_number, _describe(exc))
            return SubmissionResult.failure(f"Failed to submit to the Authority: {_describe(exc)}")

        if not 200 <= status_code < 300:
            logger.error("Authority rejected submission of %s with HTTP %s", invoice.invoice_number, status_code)
            return SubmissionResult.failure(
                f"Authority API error: {status_code} - {body}", status_code=status_code
            )

        try:
            parsed = SubmissionResponse.model_validate_json(body or "{}")
        except ValueError as exc:
            return SubmissionResult.failure(
                f"Failed to read Authority response: {_describe(exc)}", status_code=status_code
            )

        status = parsed.acceptance_status or "Submitted"
        return SubmissionResult(
            success=True,
            submission_id=parsed.submission_uuid,
            status="Valid" if status == "Accepted" else status,
            long_id=self._new_long_id(),
            internal_id=self._new_internal_id(),
            raw_response=body,
            status_code=status_code,
        )

    async def get_status(self, submission_id: str) -> SubmissionResult:
        """
        Fetch the current state of a submission.

        For invalid documents the nested ``validationResults.errors`` list is
        parsed on a best-effort basis.
        """
        if self.demo:
            await self._simulate_latency()
            return SubmissionResult(
                success=True,
                submission_id=submission_id,
                status="Valid",
                long_id=self._new_long_id(),
                internal_id=self._new_internal_id(),
                raw_response=DEMO_RESPONSE,
            )

        logger.info("Checking Authority status of submission %s", submission_id)
        try:
            async with self._session() as session:
                token = await self._fetch_token(session)
                if not token:
                    return SubmissionResult.failure("Failed to authenticate with the Authority")

                headers = {"Authorization": f"Bearer {token}"}
                async with session.get(
                    self._url(f"/documentsubmissions/{submission_id}"), headers=headers
                ) as response:
                    body = await response.text()
                    status_code = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.error("Status check for %s failed: %s", submission_id, _describe(exc))
            return SubmissionResult.failure(f"Error getting invoice status: {_describe(exc)}")

        if not 200 <= status_code < 300:
            return SubmissionResult.failure(
                f"Failed to get status: {status_code}", status_code=status_code
            )

        try:
            document = StatusDocument.model_validate_json(body or "{}")
        except ValueError as exc:
            return SubmissionResult.failure(
                f"Failed to read Authority response: {_describe(exc)}", status_code=status_code
            )

        errors = document.validation_results.errors if document.validation_results else []
        return SubmissionResult(
            success=True,
            submission_id=submission_id,
            status=document.status or "Unknown",
            long_id=document.long_id,
            internal_id=document.internal_id,
            raw_response=body,
            status_code=status_code,
            validation_errors=errors,
        )

    async def cancel(self, long_id: str, reason: str = CANCEL_REASON) -> SubmissionResult:
        """
        Ask the Authority to cancel an accepted document.
        """
        if self.demo:
            await self._simulate_latency()
            return SubmissionResult(success=True, long_id=long_id, status="Cancelled")

        logger.info("Cancelling document %s with the Authority", long_id)
        try:
            async with self._session() as session:
                token = await self._fetch_token(session)
                if not token:
                    return SubmissionResult.failure("Failed to authenticate with the Authority")

                headers = {"Authorization": f"Bearer {token}"}
                payload = {"status": "cancelled", "reason": reason}
                async with session.put(
                    self._url(f"/documents/{long_id}/state"), json=payload, headers=headers
                ) as response:
                    body = await response.text()
                    status_code = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.error("Cancellation of %s failed: %s", long_id, _describe(exc))
            return SubmissionResult.failure(f"Error cancelling invoice: {_describe(exc)}")

        if not 200 <= status_code < 300:
            return SubmissionResult.failure(
                f"Failed to cancel: {status_code}", status_code=status_code
            )
        return SubmissionResult(
            success=True,
            long_id=long_id,
            status="Cancelled",
            raw_response=body,
            status_code=status_code,
        )

    # ---------------- Demo mode ----------------

    async def _demo_submit(self, invoice: Invoice) -> SubmissionResult:
        logger.info("DEMO MODE: simulating submission of %s", invoice.invoice_number)
        await self._simulate_latency()

        result = SubmissionResult(
            success=True,
            submission_id=self._new_uuid(),
            long_id=self._new_long_id(),
            internal_id=self._new_internal_id(),
            raw_response=DEMO_RESPONSE,
        )
        if self.rng.random() < self.settings.demo_acceptance_probability:
            result.status = "Valid"
        else:
            result.status = "Invalid"
            result.validation_errors = [
                AuthorityValidationError(
                    code=DEMO_REJECTION_CODE, message=DEMO_REJECTION_MESSAGE
                )
            ]
        return result
