"""
Custom exception classes and FastAPI exception handlers.

Why custom exceptions?
  The service layer raises domain-specific errors (like InsufficientFundsError)
  without importing HTTP concepts. The handler layer translates them into
  HTTP responses with a stable `error_type`, so a client can tell
  "retry with the same Idempotency-Key" apart from "fix the request".

Exception hierarchy:
    BankAPIError (base)
    ├── ValidationError               — bad amount, currency, account pair, ...
    ├── AccountNotFoundError          — account id / number doesn't exist
    ├── AccountInactiveError          — account is not in the active state
    ├── InsufficientFundsError        — debit would overdraw available funds
    ├── UnauthorizedAccessError       — caller doesn't own the resource
    ├── IdempotencyKeyConflictError   — key reused with a different body
    ├── ConcurrencyConflictError      — lock/serialization contention (retryable)
    ├── DestinationNotFoundError      — external bank account unknown
    ├── ExternalGatewayTimeoutError   — settlement gateway too slow (retryable)
    ├── ExternalGatewayFailureError   — settlement gateway errored (retryable)
    ├── LoanNotFoundError
    ├── LoanNotActiveError
    ├── TransactionNotFoundError
    └── InvalidTransactionStateError  — status transition not allowed

Every error carries:
  - status_code: HTTP status used by the handler
  - error_type: stable machine-readable code
  - retryable: True only when nothing was committed and the *same* request
    may safely be sent again
"""

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class BankAPIError(Exception):
    """Base exception for all ledger domain errors."""

    status_code: int = 400
    error_type: str = "bank_api_error"
    retryable: bool = False

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)

    def extra_fields(self) -> dict:
        """Additional fields merged into the JSON error body."""
        return {}

    def to_payload(self) -> dict:
        return {
            "success": False,
            "message": self.detail,
            "error_type": self.error_type,
            "retryable": self.retryable,
            **self.extra_fields(),
        }


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class ValidationError(BankAPIError):
    """Raised when a request is well-formed JSON but violates a business rule."""

    status_code = 422
    error_type = "validation_error"

    def __init__(self, detail: str, error_type: str | None = None):
        if error_type:
            self.error_type = error_type
        super().__init__(detail)


class AccountNotFoundError(BankAPIError):
    """Raised when a requested account does not exist."""

    status_code = 404
    error_type = "account_not_found"

    def __init__(self, account_ref: uuid.UUID | str):
        self.account_ref = account_ref
        super().__init__(f"Account {account_ref} not found")


class AccountInactiveError(BankAPIError):
    """Raised when an account exists but is not active."""

    status_code = 422
    error_type = "account_inactive"

    def __init__(self, account_id: uuid.UUID, status: str):
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} is {status}")


class InsufficientFundsError(BankAPIError):
    """
    Raised when a debit would exceed the account's available balance.

    Attributes:
        account_id: The account that lacks sufficient funds.
        requested_cents: The amount the caller tried to debit.
        available_cents: The available balance at the time of the check.
    """

    status_code = 422
    error_type = "insufficient_funds"

    def __init__(
        self,
        account_id: uuid.UUID,
        requested_cents: int,
        available_cents: int,
    ):
        self.account_id = account_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        super().__init__(
            f"Insufficient funds: requested {requested_cents} cents, "
            f"available {available_cents} cents"
        )

    def extra_fields(self) -> dict:
        return {
            "requested_cents": self.requested_cents,
            "available_cents": self.available_cents,
        }


class UnauthorizedAccessError(BankAPIError):
    """Raised when a user attempts to access a resource they don't own."""

    status_code = 403
    error_type = "unauthorized_access"

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class IdempotencyKeyConflictError(BankAPIError):
    """Raised when an Idempotency-Key is reused for a different request body."""

    status_code = 409
    error_type = "idempotency_key_conflict"

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f"Idempotency-Key {key!r} was already used with a different request"
        )


class ConcurrencyConflictError(BankAPIError):
    """Raised when lock contention outlasts the retry budget. Safe to retry."""

    status_code = 409
    error_type = "concurrency_conflict"
    retryable = True

    def __init__(self, detail: str = "The resource is busy, retry the request"):
        super().__init__(detail)


class DestinationNotFoundError(BankAPIError):
    """Raised when the settlement gateway cannot find the destination account."""

    status_code = 404
    error_type = "destination_not_found"

    def __init__(self, account_number: str, bank_code: str):
        self.account_number = account_number
        self.bank_code = bank_code
        super().__init__(
            f"Destination account {account_number} not found at bank {bank_code}"
        )


class ExternalGatewayTimeoutError(BankAPIError):
    """Raised when the settlement gateway does not answer in time."""

    status_code = 504
    error_type = "external_gateway_timeout"
    retryable = True

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Settlement gateway timeout after {timeout_seconds}s")


class ExternalGatewayFailureError(BankAPIError):
    """Raised when the settlement gateway errors or returns garbage."""

    status_code = 502
    error_type = "external_gateway_failure"
    retryable = True

    def __init__(self, detail: str = "Settlement gateway error"):
        super().__init__(detail)


class LoanNotFoundError(BankAPIError):
    """Raised when a loan does not exist or isn't visible to the caller."""

    status_code = 404
    error_type = "loan_not_found"

    def __init__(self, loan_id: uuid.UUID):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class LoanNotActiveError(BankAPIError):
    """Raised when a payment or lifecycle step needs a loan in another state."""

    status_code = 422
    error_type = "loan_not_active"

    def __init__(self, loan_id: uuid.UUID, status: str):
        self.loan_id = loan_id
        self.status = status
        super().__init__(f"Loan {loan_id} is {status}")


class TransactionNotFoundError(BankAPIError):
    """Raised when a transaction id or reference does not exist."""

    status_code = 404
    error_type = "transaction_not_found"

    def __init__(self, transaction_ref: uuid.UUID | str):
        self.transaction_ref = transaction_ref
        super().__init__(f"Transaction {transaction_ref} not found")


class InvalidTransactionStateError(BankAPIError):
    """Raised when a transaction cannot make the requested status transition."""

    status_code = 409
    error_type = "invalid_transaction_state"

    def __init__(self, reference: str, status: str, action: str):
        self.reference = reference
        self.status = status
        super().__init__(f"Cannot {action} transaction {reference} in status {status}")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def error_response(exc: BankAPIError) -> JSONResponse:
    """Render a domain error as the standard failure envelope."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Every domain exception maps to its own status code and the same
    envelope: {"success": false, "message", "error_type", "retryable"}.
    Schema validation failures use the same envelope with an "errors" list.

    This is called once during app startup in main.py.
    """

    @app.exception_handler(BankAPIError)
    async def bank_api_error_handler(
        request: Request, exc: BankAPIError
    ) -> JSONResponse:
        if exc.retryable:
            logger.warning(
                "Retryable ledger error",
                extra={"error_type": exc.error_type, "path": request.url.path},
            )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "message": "Request validation failed",
                "error_type": "validation_error",
                "retryable": False,
                "errors": jsonable_encoder(exc.errors()),
            },
        )
