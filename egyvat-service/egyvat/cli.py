"""
Command-line interface for the EgyVAT invoicing service.

Usage examples:
    python -m egyvat.cli create --input request.json --output output/invoice.json
    python -m egyvat.cli validate --input output/invoices.json --report output/validation_report.json
    python -m egyvat.cli apply --input output/invoice.json --action submit
    python -m egyvat.cli number --prefix INV
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from .adapters import create_invoice, parse_create_request
from .config import Settings
from .exceptions import RequestValidationError
from .lifecycle import InvoiceLifecycle
from .schema import BulkValidationReport, Invoice
from .validator import generate_invoice_number, validate_invoices

app = typer.Typer(help="Egyptian VAT invoice validation and submission CLI.")


def _ensure_parent_directory(path: Path) -> None:
    """
    Ensure the parent directory for a file path exists.
    """
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)


def _read_json(path: Path):
    if not path.exists():
        typer.echo(f"Input JSON not found: {path}", err=True)
        raise typer.Exit(code=1)
    try:
        return json.loads(path.read_text(encoding="utf-8") or "null")
    except json.JSONDecodeError as exc:
        typer.echo(f"Input is not valid JSON: {path} ({exc})", err=True)
        raise typer.Exit(code=1)


def _load_invoice(obj, path: Path) -> Invoice:
    try:
        return Invoice.model_validate(obj)
    except ValidationError as exc:
        typer.echo(f"Invalid invoice in {path}:", err=True)
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()))
            typer.echo(f"  - {location}: {error.get('msg')}", err=True)
        raise typer.Exit(code=1)


def _write_json(path: Path, data) -> None:
    _ensure_parent_directory(path)
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)


@app.command()
def create(
    input: str = typer.Option(
        ...,
        "--input",
        help="JSON file holding an invoice creation request (either shape).",
    ),
    output: str = typer.Option(
        "output/invoice.json",
        "--output",
        help="Path to write the created invoice as JSON.",
    ),
) -> None:
    """
    Build an invoice from a creation request and validate it.
    """
    payload = _read_json(Path(input))
    try:
        invoice = create_invoice(parse_create_request(payload), Settings())
    except RequestValidationError as exc:
        typer.echo(exc.message, err=True)
        for error in exc.errors:
            typer.echo(f"  - {error}", err=True)
        raise typer.Exit(code=1)

    output_path = Path(output)
    _write_json(output_path, invoice.model_dump(mode="json"))
    typer.echo(f"Created invoice {invoice.invoice_number} ({invoice.status.value}) at {output_path}")
    for error in invoice.validation_errors:
        typer.echo(f"  {error.code} {error.field}: {error.message}")


@app.command()
def validate(
    input: str = typer.Option(
        "output/invoices.json",
        "--input",
        help="JSON file containing one invoice or a list of invoices.",
    ),
    report: str = typer.Option(
        "output/validation_report.json",
        "--report",
        help="Path to write the validation report as JSON.",
    ),
) -> None:
    """
    Validate invoice JSON against the Authority's rules.
    """
    invoices_data = _read_json(Path(input)) or []
    if isinstance(invoices_data, dict):
        invoices_data = [invoices_data]
    invoices = [_load_invoice(obj, Path(input)) for obj in invoices_data]

    report_obj: BulkValidationReport = validate_invoices(invoices)

    _write_json(Path(report), report_obj.model_dump(mode="json"))

    # Print summary to CLI
    summary = report_obj.summary
    typer.echo(f"Total invoices: {summary.total_invoices}")
    typer.echo(f"Valid invoices: {summary.valid_invoices}")
    typer.echo(f"Invalid invoices: {summary.invalid_invoices}")
    typer.echo(f"Top errors: {', '.join(summary.top_errors) if summary.top_errors else 'None'}")

    # Exit non-zero if there are invalid invoices
    if summary.invalid_invoices > 0:
        raise typer.Exit(code=2)


@app.command()
def apply(
    input: str = typer.Option(
        ...,
        "--input",
        help="JSON file containing the invoice.",
    ),
    action: str = typer.Option(
        ...,
        "--action",
        help="validate, submit, resubmit, check_status or cancel.",
    ),
    output: Optional[str] = typer.Option(
        None,
        "--output",
        help="Where to write the updated invoice (defaults to --input).",
    ),
) -> None:
    """
    Apply one lifecycle action to an invoice file.
    """
    input_path = Path(input)
    invoice = _load_invoice(_read_json(input_path), input_path)

    lifecycle = InvoiceLifecycle.from_settings(Settings())
    outcome = asyncio.run(lifecycle.apply(invoice, action))

    if outcome.applied:
        output_path = Path(output) if output else input_path
        _write_json(output_path, outcome.invoice.model_dump(mode="json"))

    typer.echo(f"[{outcome.invoice.status.value}] {outcome.message}")
    for reason in outcome.invoice.eta_rejection_reasons:
        typer.echo(f"  - {reason}")

    if not outcome.success:
        raise typer.Exit(code=1)


@app.command()
def number(
    prefix: str = typer.Option("INV", "--prefix", help="Invoice number prefix."),
) -> None:
    """
    Print a freshly generated invoice number.
    """
    typer.echo(generate_invoice_number(prefix))


def main() -> None:
    """
    Entrypoint used when executing as a module.
    """
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    app()


if __name__ == "__main__":
    main()
