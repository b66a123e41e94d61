"""
Exceptions raised at the storage and request boundaries.

Validation problems, workflow-guard failures and Authority failures are
reported as values, not exceptions; see ``schema``, ``lifecycle`` and
``authority``.
"""


class EgyVATError(Exception):
    """Base exception for all service errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class InvoiceNotFoundError(EgyVATError):
    """No invoice is stored under the requested number."""
    pass


class InvoiceConflictError(EgyVATError):
    """The stored invoice changed since it was read."""
    pass


class RequestValidationError(EgyVATError):
    """An invoice creation request is malformed or incomplete."""

    def __init__(self, message: str, errors: list = None, details: dict = None):
        super().__init__(message, details)
        self.errors = list(errors or [])
