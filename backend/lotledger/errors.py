# Overview: Domain error taxonomy for the lot ledger.

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures. Routes translate these to JSON errors."""
    code = "ledger_error"
    status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": str(self), "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidOperation(LedgerError):
    """400-level: wrong line kind, bad quantity, product mismatch."""
    code = "invalid_operation"
    status = 400


class ProductNotFound(LedgerError):
    code = "product_not_found"
    status = 404


class LotNotFound(LedgerError):
    code = "lot_not_found"
    status = 404


class LineNotFound(LedgerError):
    code = "line_not_found"
    status = 404


class TradeNotFound(LedgerError):
    code = "trade_not_found"
    status = 404


class ProductionNotFound(LedgerError):
    code = "production_not_found"
    status = 404


class InsufficientLotQuantity(LedgerError):
    """A lot would go below zero remaining."""
    code = "insufficient_lot_quantity"
    status = 409


class InsufficientStock(LedgerError):
    """Strict allocation could not satisfy the full requested quantity."""
    code = "insufficient_stock"
    status = 409


class LotInUse(LedgerError):
    """Lot is referenced by matches or production inputs and cannot be removed."""
    code = "lot_in_use"
    status = 409


class AlreadyMatched(LedgerError):
    code = "already_matched"
    status = 409


class AmbiguousReturnCandidate(LedgerError):
    code = "ambiguous_return_candidate"
    status = 409


class OverReturnDetected(LedgerError):
    code = "over_return_detected"
    status = 409


class DriftDetected(LedgerError):
    """The aggregate cache disagrees with the lot store; raised only on request."""
    code = "drift_detected"
    status = 409

    def __init__(self, message: str, report=None):
        super().__init__(message, details=report.to_dict() if report is not None else None)
        self.report = report


class TransactionConflict(LedgerError):
    """Contention persisted after bounded retries; safe for the caller to retry."""
    code = "transaction_conflict"
    status = 503
