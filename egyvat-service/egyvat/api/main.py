"""
FastAPI application for the EgyVAT invoicing service.

Endpoints
---------
- GET  /health
- POST /invoices                    (create, either request shape)
- GET  /invoices
- GET  /invoices/{invoice_number}
- PUT  /invoices/{invoice_number}   (body: {"action": "..."})
- POST /validate-json               (batch validation report, nothing stored)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..adapters import create_invoice, parse_create_request
from ..authority import AuthorityClient
from ..config import Settings
from ..exceptions import (
    EgyVATError,
    InvoiceConflictError,
    InvoiceNotFoundError,
    RequestValidationError,
)
from ..lifecycle import Action, InvoiceLifecycle, SubmissionGateway
from ..repository import InMemoryInvoiceRepository, InvoiceRepository
from ..schema import BulkValidationReport, Invoice, InvoiceStatus, utcnow
from ..validator import validate_invoices

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred processing your request"
LIST_LIMIT = 100


class ApiResponse(BaseModel):
    """
    Envelope shared by every invoice endpoint.
    """

    success: bool
    message: str = ""
    data: Any = None
    errors: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class ActionRequest(BaseModel):
    action: Optional[str] = None


def _respond(
    status_code: int,
    success: bool,
    message: str,
    data: Any = None,
    errors: Optional[List[str]] = None,
) -> JSONResponse:
    body = ApiResponse(success=success, message=message, data=data, errors=errors or [])
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _dump(invoice: Invoice) -> dict:
    return invoice.model_dump(mode="json")


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[InvoiceRepository] = None,
    client: Optional[SubmissionGateway] = None,
) -> FastAPI:
    settings = settings or Settings()
    repository = repository or InMemoryInvoiceRepository()
    lifecycle = InvoiceLifecycle(
        client or AuthorityClient(settings),
        max_submission_attempts=settings.max_submission_attempts,
    )

    app = FastAPI(title="EgyVAT Invoicing Service", version="1.0.0")
    app.state.settings = settings
    app.state.repository = repository
    app.state.lifecycle = lifecycle

    # Basic CORS configuration (can be tightened in production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def handle_bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _respond(400, False, exc.message, errors=exc.errors)

    @app.exception_handler(InvoiceNotFoundError)
    async def handle_not_found(request: Request, exc: InvoiceNotFoundError) -> JSONResponse:
        logger.warning(str(exc))
        return _respond(404, False, exc.message)

    @app.exception_handler(InvoiceConflictError)
    async def handle_conflict(request: Request, exc: InvoiceConflictError) -> JSONResponse:
        logger.warning(str(exc))
        return _respond(409, False, exc.message)

    @app.exception_handler(EgyVATError)
    async def handle_service_error(request: Request, exc: EgyVATError) -> JSONResponse:
        logger.error("Service error on %s %s: %s", request.method, request.url.path, exc)
        return _respond(400, False, exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = GENERIC_ERROR_MESSAGE if settings.is_production else str(exc)
        return _respond(500, False, message, errors=["Internal server error"])

    @app.get("/health")
    async def health() -> dict:
        """
        Simple health-check endpoint.
        """
        return {"status": "ok", "demo": settings.is_demo}

    @app.post("/invoices")
    async def create_invoice_endpoint(payload: Any = Body(...)) -> JSONResponse:
        """
        Create an invoice from either request shape and run the validation rules.
        """
        invoice = create_invoice(parse_create_request(payload), settings)
        repository.put(invoice)
        logger.info("Invoice %s: %s", invoice.status.value, invoice.invoice_number)

        if invoice.status == InvoiceStatus.VALIDATED:
            message = "Invoice created and validated successfully"
        else:
            message = f"Invoice created with {len(invoice.validation_errors)} validation errors"
        return _respond(200, True, message, _dump(invoice))

    @app.get("/invoices")
    async def list_invoices() -> JSONResponse:
        invoices = repository.list(limit=LIST_LIMIT)
        data = {"invoices": [_dump(inv) for inv in invoices], "total": len(invoices)}
        return _respond(200, True, f"Retrieved {len(invoices)} invoices", data)

    @app.get("/invoices/{invoice_number}")
    async def get_invoice(invoice_number: str) -> JSONResponse:
        invoice = repository.get(invoice_number)
        return _respond(200, True, "Invoice retrieved successfully", _dump(invoice))

    @app.put("/invoices/{invoice_number}")
    async def apply_action(invoice_number: str, body: ActionRequest) -> JSONResponse:
        """
        Apply a lifecycle action. Every change the lifecycle made is stored,
        failed submissions included, so attempt counting survives restarts.
        """
        if not body.action or not body.action.strip():
            actions = ", ".join(a.value for a in Action)
            return _respond(400, False, f"Action required ({actions})")

        invoice = repository.get(invoice_number)
        outcome = await lifecycle.apply(invoice, body.action)

        if outcome.applied:
            updated = outcome.invoice
            updated.updated_at = utcnow()
            repository.put(updated, expected_updated_at=invoice.updated_at)
            logger.info("Invoice %s status: %s", updated.invoice_number, updated.status.value)

        if not outcome.success:
            errors = [e.message for e in outcome.invoice.validation_errors]
            return _respond(400, False, outcome.message, _dump(outcome.invoice), errors)
        return _respond(200, True, outcome.message, _dump(outcome.invoice))

    @app.post("/validate-json", response_model=BulkValidationReport)
    async def validate_json(invoices: List[Invoice]) -> BulkValidationReport:
        """
        Validate JSON payload representing one or more invoices.

        Body should be a JSON array of invoice objects following the Invoice schema.
        """
        return validate_invoices(invoices)

    return app


app = create_app()

# For local development convenience:
#   uvicorn egyvat.api.main:app --reload
