# Overview: Domain error taxonomy for stock and order operations.

from __future__ import annotations


class StockError(Exception):
    """
    Base class for domain errors raised by the inventory and order services.

    http_status and code are what the API layer reports; details carries
    structured context (e.g. which products were short).
    """
    http_status = 400
    code = "stock_error"
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": str(self), "code": self.code, "details": self.details}
        if self.retryable:
            payload["retryable"] = True
        return payload


class ValidationError(StockError):
    """400-level input problem."""
    code = "validation_error"


class InvalidQuantity(StockError):
    """Non-positive input quantity, or a change that would drive a batch below zero."""
    code = "invalid_quantity"


class PaymentError(StockError):
    code = "payment_error"


class NotFound(StockError):
    http_status = 404
    code = "not_found"


class InsufficientStock(StockError):
    """Requested quantity exceeds sellable stock at commit time."""
    http_status = 409
    code = "insufficient_stock"


class InvalidStateTransition(StockError):
    http_status = 409
    code = "invalid_state_transition"


class DuplicateBatchCode(StockError):
    http_status = 409
    code = "duplicate_batch_code"


class OrderLimitExceeded(StockError):
    http_status = 409
    code = "order_limit_exceeded"


class ConcurrencyConflict(StockError):
    """Retries exhausted without a consistent read/write; the caller may retry."""
    http_status = 503
    code = "concurrency_conflict"
    retryable = True


class LedgerInvariantViolation(StockError):
    """
    Internal consistency check failed.

    Bug-class error: routes log it with full context and return a generic
    500 instead of the message.
    """
    http_status = 500
    code = "ledger_invariant_violation"
