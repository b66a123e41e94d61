"""
Unit tests for the invoice lifecycle state machine.

The Authority is replaced by ``FakeGateway`` except in the demo-mode tests,
which drive the real client with a forced random generator.
"""

import asyncio
import itertools

import pytest

from egyvat.authority import AuthorityClient, AuthorityValidationError, SubmissionResult
from egyvat.lifecycle import Action, InvoiceLifecycle
from egyvat.schema import InvoiceStatus

from conftest import ACCEPT, FIXED_NOW, REJECT, FakeGateway, FixedRandom, build_invoice


ALLOWED = {
    ("validate", InvoiceStatus.DRAFT),
    ("validate", InvoiceStatus.INVALID),
    ("submit", InvoiceStatus.VALIDATED),
    ("submit", InvoiceStatus.INVALID),
    ("resubmit", InvoiceStatus.INVALID),
    ("check_status", InvoiceStatus.SUBMITTED),
    ("cancel", InvoiceStatus.DRAFT),
    ("cancel", InvoiceStatus.VALIDATED),
    ("cancel", InvoiceStatus.INVALID),
    ("cancel", InvoiceStatus.VALID),
}


def _run(lifecycle, invoice, action):
    return asyncio.run(lifecycle.apply(invoice, action))


def _lifecycle(gateway=None):
    return InvoiceLifecycle(gateway or FakeGateway(), clock=lambda: FIXED_NOW)


def _failed_submit():
    return FakeGateway(submit=SubmissionResult.failure("Authority API error: 503 - unavailable"))


@pytest.mark.parametrize(
    "action,status",
    [
        (a.value, s)
        for a, s in itertools.product(Action, InvoiceStatus)
        if (a.value, s) not in ALLOWED
    ],
)
def test_guard_refuses_every_unlisted_pair(action, status):
    gateway = FakeGateway()
    invoice = build_invoice(
        status=status, eta_submission_id="sub-1", eta_long_id="ETA2024030512345"
    )
    before = invoice.model_dump()

    outcome = _run(_lifecycle(gateway), invoice, action)

    assert outcome.success is False
    assert outcome.applied is False
    assert outcome.invoice is invoice
    assert invoice.model_dump() == before
    assert gateway.calls == []


def test_unknown_action_is_refused(invoice):
    outcome = _run(_lifecycle(), invoice, "approve")

    assert outcome.success is False
    assert outcome.message == "Invalid action"
    assert outcome.invoice.status == InvoiceStatus.DRAFT


def test_action_names_are_case_insensitive(invoice):
    outcome = _run(_lifecycle(), invoice, " Validate ")
    assert outcome.success is True


def test_action_enum_members_are_accepted(invoice):
    outcome = _run(_lifecycle(), invoice, Action.VALIDATE)

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.VALIDATED


def test_submit_on_accepted_invoice_says_so():
    outcome = _run(_lifecycle(), build_invoice(status=InvoiceStatus.VALID), "submit")
    assert outcome.message == "Invoice already accepted by the Authority"


def test_validate_success(invoice):
    outcome = _run(_lifecycle(), invoice, "validate")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.VALIDATED
    assert outcome.invoice.validation_errors == []
    # The input value is not mutated.
    assert invoice.status == InvoiceStatus.DRAFT


def test_validate_failure_returns_to_draft():
    invoice = build_invoice(status=InvoiceStatus.INVALID, lines=[])

    outcome = _run(_lifecycle(), invoice, "validate")

    assert outcome.success is False
    assert outcome.applied is True
    assert outcome.invoice.status == InvoiceStatus.DRAFT
    assert [e.code for e in outcome.invoice.validation_errors] == ["ETA-004", "ETA-009"]
    assert outcome.message == "Validation failed: 0 critical, 2 errors"


def test_submit_accepted():
    gateway = FakeGateway()
    invoice = build_invoice(status=InvoiceStatus.VALIDATED)

    outcome = _run(_lifecycle(gateway), invoice, "submit")

    updated = outcome.invoice
    assert outcome.success is True
    assert updated.status == InvoiceStatus.VALID
    assert updated.submission_attempts == 1
    assert updated.last_submission_attempt == FIXED_NOW
    assert updated.eta_submission_id == "sub-1"
    assert updated.eta_long_id == "ETA2024030512345"
    assert updated.eta_internal_id == "INTABCDEF01"
    assert updated.eta_acceptance_date == FIXED_NOW
    assert "ETA2024030512345" in outcome.message
    assert gateway.calls == [("submit", invoice.invoice_number)]


def test_submit_rejected_by_authority():
    gateway = FakeGateway(
        submit=SubmissionResult(
            success=True,
            submission_id="sub-2",
            status="Invalid",
            validation_errors=[
                AuthorityValidationError(code="E1", message="Bad receiver"),
                AuthorityValidationError(code="E2", message="Bad total"),
            ],
        )
    )

    outcome = _run(_lifecycle(gateway), build_invoice(status=InvoiceStatus.VALIDATED), "submit")

    assert outcome.success is False
    assert outcome.applied is True
    assert outcome.invoice.status == InvoiceStatus.INVALID
    assert outcome.invoice.eta_rejection_reasons == ["E1: Bad receiver", "E2: Bad total"]


def test_submit_still_processing():
    gateway = FakeGateway(submit=SubmissionResult(success=True, submission_id="sub-3", status="Submitted"))

    outcome = _run(_lifecycle(gateway), build_invoice(status=InvoiceStatus.VALIDATED), "submit")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.SUBMITTED
    assert outcome.invoice.eta_submission_id == "sub-3"


def test_submit_transport_failure_marks_invalid():
    outcome = _run(_lifecycle(_failed_submit()), build_invoice(status=InvoiceStatus.VALIDATED), "submit")

    assert outcome.success is False
    assert outcome.invoice.status == InvoiceStatus.INVALID
    assert outcome.invoice.eta_rejection_reasons == ["Authority API error: 503 - unavailable"]
    assert "503" in outcome.message


def test_attempt_ceiling_rejects_fourth_submit():
    gateway = _failed_submit()
    lifecycle = _lifecycle(gateway)
    invoice = build_invoice(status=InvoiceStatus.VALIDATED)

    for attempt in range(1, 4):
        outcome = _run(lifecycle, invoice, "submit")
        invoice = outcome.invoice
        assert invoice.status == InvoiceStatus.INVALID
        assert invoice.submission_attempts == attempt

    assert len(gateway.calls) == 3

    outcome = _run(lifecycle, invoice, "submit")

    assert outcome.success is False
    assert outcome.message == "Maximum submission attempts exceeded"
    assert outcome.invoice.status == InvoiceStatus.REJECTED
    assert len(gateway.calls) == 3

    # Rejected is terminal.
    for action in Action:
        assert _run(lifecycle, outcome.invoice, action.value).applied is False
    assert len(gateway.calls) == 3


def test_attempt_ceiling_is_configurable():
    gateway = _failed_submit()
    lifecycle = InvoiceLifecycle(gateway, max_submission_attempts=1)

    first = _run(lifecycle, build_invoice(status=InvoiceStatus.VALIDATED), "submit")
    second = _run(lifecycle, first.invoice, "submit")

    assert second.invoice.status == InvoiceStatus.REJECTED
    assert len(gateway.calls) == 1


def test_resubmit_revalidates_and_submits():
    gateway = FakeGateway()
    invoice = build_invoice(
        status=InvoiceStatus.INVALID,
        submission_attempts=1,
        eta_rejection_reasons=["old reason"],
    )

    outcome = _run(_lifecycle(gateway), invoice, "resubmit")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.VALID
    assert outcome.invoice.submission_attempts == 2
    assert outcome.invoice.eta_rejection_reasons == []
    assert len(gateway.calls) == 1


def test_resubmit_with_validation_errors_goes_back_to_draft():
    gateway = FakeGateway()
    invoice = build_invoice(status=InvoiceStatus.INVALID, lines=[], eta_rejection_reasons=["old"])

    outcome = _run(_lifecycle(gateway), invoice, "resubmit")

    assert outcome.success is False
    assert outcome.invoice.status == InvoiceStatus.DRAFT
    assert outcome.invoice.eta_rejection_reasons == []
    assert outcome.invoice.validation_errors
    assert gateway.calls == []


def test_resubmit_counts_towards_ceiling():
    gateway = _failed_submit()
    invoice = build_invoice(status=InvoiceStatus.INVALID, submission_attempts=3)

    outcome = _run(_lifecycle(gateway), invoice, "resubmit")

    assert outcome.invoice.status == InvoiceStatus.REJECTED
    assert gateway.calls == []


def test_check_status_requires_submission_id():
    gateway = FakeGateway()
    invoice = build_invoice(status=InvoiceStatus.SUBMITTED, eta_submission_id=None)

    outcome = _run(_lifecycle(gateway), invoice, "check_status")

    assert outcome.applied is False
    assert outcome.message == "Can only check status for submitted invoices"
    assert gateway.calls == []


def test_check_status_valid():
    gateway = FakeGateway(
        status=SubmissionResult(success=True, status="valid", long_id="ETA-LONG", internal_id="INT-1")
    )
    invoice = build_invoice(status=InvoiceStatus.SUBMITTED, eta_submission_id="sub-9")

    outcome = _run(_lifecycle(gateway), invoice, "check_status")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.VALID
    assert outcome.invoice.eta_long_id == "ETA-LONG"
    assert outcome.invoice.eta_acceptance_date == FIXED_NOW
    assert outcome.invoice.last_submission_attempt == FIXED_NOW
    assert gateway.calls == [("get_status", "sub-9")]


def test_check_status_invalid():
    gateway = FakeGateway(
        status=SubmissionResult(
            success=True,
            status="Invalid",
            validation_errors=[AuthorityValidationError(code="GS1", message="Unknown item")],
        )
    )
    invoice = build_invoice(status=InvoiceStatus.SUBMITTED, eta_submission_id="sub-9")

    outcome = _run(_lifecycle(gateway), invoice, "check_status")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.INVALID
    assert outcome.invoice.eta_rejection_reasons == ["GS1: Unknown item"]


def test_check_status_unrecognised_status_leaves_state():
    gateway = FakeGateway(status=SubmissionResult(success=True, status="in progress"))
    invoice = build_invoice(status=InvoiceStatus.SUBMITTED, eta_submission_id="sub-9")

    outcome = _run(_lifecycle(gateway), invoice, "check_status")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.SUBMITTED
    assert "in progress" in outcome.message


def test_check_status_failure():
    gateway = FakeGateway(status=SubmissionResult.failure("Failed to get status: 500"))
    invoice = build_invoice(status=InvoiceStatus.SUBMITTED, eta_submission_id="sub-9")

    outcome = _run(_lifecycle(gateway), invoice, "check_status")

    assert outcome.success is False
    assert outcome.message == "Failed to get status: 500"
    assert outcome.invoice.status == InvoiceStatus.SUBMITTED


@pytest.mark.parametrize(
    "status", [InvoiceStatus.DRAFT, InvoiceStatus.VALIDATED, InvoiceStatus.INVALID]
)
def test_local_cancel(status):
    gateway = FakeGateway()

    outcome = _run(_lifecycle(gateway), build_invoice(status=status), "cancel")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.CANCELLED
    assert gateway.calls == []


def test_cancel_accepted_invoice_with_authority():
    gateway = FakeGateway()
    invoice = build_invoice(status=InvoiceStatus.VALID, eta_long_id="ETA-LONG")

    outcome = _run(_lifecycle(gateway), invoice, "cancel")

    assert outcome.success is True
    assert outcome.invoice.status == InvoiceStatus.CANCELLED
    assert gateway.calls == [("cancel", "ETA-LONG")]


def test_cancel_accepted_invoice_stays_valid_when_authority_refuses():
    gateway = FakeGateway(cancel=SubmissionResult.failure("Failed to cancel: 409"))
    invoice = build_invoice(status=InvoiceStatus.VALID, eta_long_id="ETA-LONG")

    outcome = _run(_lifecycle(gateway), invoice, "cancel")

    assert outcome.success is False
    assert outcome.invoice.status == InvoiceStatus.VALID
    assert "409" in outcome.message


def test_cancel_accepted_invoice_without_long_id_is_refused():
    gateway = FakeGateway()
    invoice = build_invoice(status=InvoiceStatus.VALID, eta_long_id=None)

    outcome = _run(_lifecycle(gateway), invoice, "cancel")

    assert outcome.applied is False
    assert gateway.calls == []


def test_demo_mode_forced_accept(settings):
    client = AuthorityClient(settings, rng=FixedRandom(ACCEPT))
    lifecycle = InvoiceLifecycle.from_settings(settings, client=client)

    for _ in range(5):
        outcome = _run(lifecycle, build_invoice(status=InvoiceStatus.VALIDATED), "submit")
        assert outcome.invoice.status == InvoiceStatus.VALID
        assert outcome.message.startswith("[DEMO MODE]")
        assert outcome.invoice.eta_long_id.startswith("ETA")
        assert outcome.invoice.eta_internal_id.startswith("INT")


def test_demo_mode_forced_reject(settings):
    client = AuthorityClient(settings, rng=FixedRandom(REJECT))
    lifecycle = InvoiceLifecycle.from_settings(settings, client=client)

    for _ in range(5):
        outcome = _run(lifecycle, build_invoice(status=InvoiceStatus.VALIDATED), "submit")
        assert outcome.success is False
        assert outcome.invoice.status == InvoiceStatus.INVALID
        assert len(outcome.invoice.eta_rejection_reasons) == 1
