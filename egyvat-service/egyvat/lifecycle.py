"""
Invoice lifecycle state machine.

    Draft -> Validated -> Submitting -> Submitted -> Valid | Invalid -> Cancelled

``Rejected`` is terminal and only reached by exceeding the submission
attempt ceiling. ``Invalid`` returns to ``Validated`` through ``resubmit``.

``InvoiceLifecycle.apply`` receives an invoice value, never touches storage,
and returns an ``ActionOutcome`` holding the mutated copy. Actions that are
not allowed in the current state return ``applied=False`` together with the
untouched input invoice.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from .authority import AuthorityClient, DocumentState, SubmissionResult
from .config import Settings
from .schema import Invoice, InvoiceStatus, ValidationSeverity, utcnow
from .validator import validate_invoice


logger = logging.getLogger(__name__)

DEFAULT_MAX_SUBMISSION_ATTEMPTS = 3


class Action(str, Enum):
    VALIDATE = "validate"
    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    CHECK_STATUS = "check_status"
    CANCEL = "cancel"


ALLOWED_STATES: Dict[Action, FrozenSet[InvoiceStatus]] = {
    Action.VALIDATE: frozenset({InvoiceStatus.DRAFT, InvoiceStatus.INVALID}),
    Action.SUBMIT: frozenset({InvoiceStatus.VALIDATED, InvoiceStatus.INVALID}),
    Action.RESUBMIT: frozenset({InvoiceStatus.INVALID}),
    Action.CHECK_STATUS: frozenset({InvoiceStatus.SUBMITTED}),
    Action.CANCEL: frozenset(
        {
            InvoiceStatus.DRAFT,
            InvoiceStatus.VALIDATED,
            InvoiceStatus.INVALID,
            InvoiceStatus.VALID,
        }
    ),
}

# Cancelled without asking the Authority.
LOCAL_CANCEL_STATES = frozenset(
    {InvoiceStatus.DRAFT, InvoiceStatus.VALIDATED, InvoiceStatus.INVALID}
)


class SubmissionGateway(Protocol):
    """What the lifecycle needs from the Authority client."""

    demo: bool

    async def submit(self, invoice: Invoice) -> SubmissionResult: ...

    async def get_status(self, submission_id: str) -> SubmissionResult: ...

    async def cancel(self, long_id: str) -> SubmissionResult: ...


class ActionOutcome(BaseModel):
    """
    Result of applying one action to one invoice.

    ``applied`` is False when the action was refused before any state was
    touched; callers only need to persist applied outcomes.
    """

    success: bool
    message: str
    invoice: Invoice
    applied: bool = Field(default=True)


Result = Tuple[bool, str]


class InvoiceLifecycle:
    def __init__(
        self,
        client: SubmissionGateway,
        max_submission_attempts: int = DEFAULT_MAX_SUBMISSION_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.max_submission_attempts = max_submission_attempts
        self.clock = clock
        self._handlers = {
            Action.VALIDATE: self._validate,
            Action.SUBMIT: self._submit,
            Action.RESUBMIT: self._resubmit,
            Action.CHECK_STATUS: self._check_status,
            Action.CANCEL: self._cancel,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[SubmissionGateway] = None,
        rng: Optional[random.Random] = None,
    ) -> "InvoiceLifecycle":
        return cls(
            client or AuthorityClient(settings, rng=rng),
            max_submission_attempts=settings.max_submission_attempts,
        )

    async def apply(self, invoice: Invoice, action: str) -> ActionOutcome:
        """
        Apply ``action`` to ``invoice`` and return the outcome.

        Unknown actions and actions not allowed in the current state are
        refused with ``success=False`` and the invoice left as it was.
        """
        try:
            if isinstance(action, Action):
                act = action
            else:
                act = Action(str(action or "").strip().lower())
        except ValueError:
            return ActionOutcome(
                success=False, message="Invalid action", invoice=invoice, applied=False
            )

        refusal = self._guard(act, invoice)
        if refusal is not None:
            logger.info(
                "Refused %s on invoice %s (%s): %s",
                act.value,
                invoice.invoice_number,
                invoice.status.value,
                refusal,
            )
            return ActionOutcome(success=False, message=refusal, invoice=invoice, applied=False)

        working = invoice.model_copy(deep=True)
        success, message = await self._handlers[act](working)
        logger.info(
            "Applied %s to invoice %s: %s -> %s (%s)",
            act.value,
            invoice.invoice_number,
            invoice.status.value,
            working.status.value,
            message,
        )
        return ActionOutcome(success=success, message=message, invoice=working)

    # ---------------- Guards ----------------

    def _guard(self, action: Action, invoice: Invoice) -> Optional[str]:
        status = invoice.status
        allowed = status in ALLOWED_STATES[action]

        if action == Action.VALIDATE and not allowed:
            return f"Cannot validate invoice in {status.value} status"

        if action == Action.SUBMIT and not allowed:
            if status == InvoiceStatus.VALID:
                return "Invoice already accepted by the Authority"
            return f"Invoice must be validated first (current: {status.value})"

        if action == Action.RESUBMIT and not allowed:
            return f"Only invalid invoices can be resubmitted (current: {status.value})"

        if action == Action.CHECK_STATUS and (not allowed or not invoice.eta_submission_id):
            return "Can only check status for submitted invoices"

        if action == Action.CANCEL:
            if not allowed:
                return f"Cannot cancel invoice in {status.value} status"
            if status == InvoiceStatus.VALID and not invoice.eta_long_id:
                return "Accepted invoice has no Authority long ID to cancel"

        return None

    def _demo_prefix(self) -> str:
        return "[DEMO MODE] " if self.client.demo else ""

    # ---------------- Actions ----------------

    async def _validate(self, invoice: Invoice) -> Result:
        invoice.validation_errors = validate_invoice(invoice)

        if invoice.validation_errors:
            invoice.status = InvoiceStatus.DRAFT
            critical = sum(
                1 for e in invoice.validation_errors if e.severity == ValidationSeverity.CRITICAL
            )
            errors = sum(
                1 for e in invoice.validation_errors if e.severity == ValidationSeverity.ERROR
            )
            return False, f"Validation failed: {critical} critical, {errors} errors"

        invoice.status = InvoiceStatus.VALIDATED
        return True, "Invoice validated successfully - ready for submission"

    async def _submit(self, invoice: Invoice) -> Result:
        invoice.submission_attempts += 1
        invoice.last_submission_attempt = self.clock()

        if invoice.submission_attempts > self.max_submission_attempts:
            invoice.status = InvoiceStatus.REJECTED
            logger.warning(
                "Invoice %s rejected after %d submission attempts",
                invoice.invoice_number,
                invoice.submission_attempts - 1,
            )
            return False, "Maximum submission attempts exceeded"

        invoice.status = InvoiceStatus.SUBMITTING
        logger.info(
            "Submitting invoice %s (attempt %d)",
            invoice.invoice_number,
            invoice.submission_attempts,
        )
        result = await self.client.submit(invoice)

        if not result.success:
            invoice.status = InvoiceStatus.INVALID
            reason = result.error_message or "Unknown error"
            invoice.eta_rejection_reasons.append(reason)
            logger.error("Submission of %s failed: %s", invoice.invoice_number, reason)
            return False, f"Submission failed: {reason}"

        now = self.clock()
        invoice.eta_submission_id = result.submission_id
        invoice.eta_submission_date = now
        invoice.eta_response = result.raw_response
        invoice.eta_long_id = result.long_id
        invoice.eta_internal_id = result.internal_id

        state = result.state
        if state == DocumentState.VALID:
            invoice.status = InvoiceStatus.VALID
            invoice.eta_acceptance_date = now
            invoice.eta_rejection_reasons = []
            return True, f"{self._demo_prefix()}Invoice accepted by the Authority. Long ID: {result.long_id}"

        if state == DocumentState.INVALID:
            invoice.status = InvoiceStatus.INVALID
            invoice.eta_rejection_reasons = result.rejection_reasons()
            return False, (
                f"{self._demo_prefix()}Invoice rejected by the Authority with "
                f"{len(invoice.eta_rejection_reasons)} errors"
            )

        invoice.status = InvoiceStatus.SUBMITTED
        return True, "Invoice submitted to the Authority - awaiting validation"

    async def _resubmit(self, invoice: Invoice) -> Result:
        invoice.eta_rejection_reasons = []
        invoice.validation_errors = validate_invoice(invoice)

        if invoice.validation_errors:
            invoice.status = InvoiceStatus.DRAFT
            return False, "Revalidation failed - fix errors before resubmitting"

        invoice.status = InvoiceStatus.VALIDATED
        return await self._submit(invoice)

    async def _check_status(self, invoice: Invoice) -> Result:
        invoice.last_submission_attempt = self.clock()
        result = await self.client.get_status(invoice.eta_submission_id)

        if not result.success:
            return False, result.error_message or "Failed to check status"

        if result.raw_response is not None:
            invoice.eta_response = result.raw_response

        state = result.state
        if state == DocumentState.VALID:
            invoice.status = InvoiceStatus.VALID
            invoice.eta_acceptance_date = self.clock()
            invoice.eta_long_id = result.long_id or invoice.eta_long_id
            invoice.eta_internal_id = result.internal_id or invoice.eta_internal_id
            invoice.eta_rejection_reasons = []
            return True, f"Invoice accepted by the Authority. Long ID: {invoice.eta_long_id}"

        if state == DocumentState.INVALID:
            invoice.status = InvoiceStatus.INVALID
            invoice.eta_rejection_reasons = result.rejection_reasons()
            return True, (
                f"Invoice rejected by the Authority with "
                f"{len(invoice.eta_rejection_reasons)} errors"
            )

        return True, f"Invoice still being processed by the Authority (status: {result.status})"

    async def _cancel(self, invoice: Invoice) -> Result:
        if invoice.status in LOCAL_CANCEL_STATES:
            invoice.status = InvoiceStatus.CANCELLED
            return True, "Invoice cancelled successfully"

        invoice.last_submission_attempt = self.clock()
        result = await self.client.cancel(invoice.eta_long_id)
        if not result.success:
            logger.error(
                "Authority cancellation of %s failed: %s",
                invoice.invoice_number,
                result.error_message,
            )
            return False, f"Failed to cancel with the Authority: {result.error_message}"

        invoice.status = InvoiceStatus.CANCELLED
        return True, "Invoice cancelled with the Authority successfully"
