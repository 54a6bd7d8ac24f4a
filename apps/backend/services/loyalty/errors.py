"""
Loyalty Errors
==============

Error taxonomy for the loyalty engine.

Every error carries an HTTP-ish status code and a stable machine code so
routes can render envelopes without inspecting exception types.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CoreError(Exception):
    code = "error"

    def __init__(self, message: str, status_code: int = 400, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class InvalidAmount(CoreError):
    code = "invalid_amount"

    def __init__(self, message: str = "Amount must be a positive integer", **details: Any):
        super().__init__(message, 400, details)


class InsufficientPoints(CoreError):
    code = "insufficient_points"

    def __init__(self, customer_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient points: requested {requested}, available {available}",
            400,
            {"customer_id": customer_id, "requested": requested, "available": available},
        )


class UnknownCustomer(CoreError):
    code = "unknown_customer"

    def __init__(self, customer_id: str):
        super().__init__(f"Customer not found: {customer_id}", 404, {"customer_id": customer_id})


class InvalidRuleDefinition(CoreError):
    code = "invalid_rule_definition"

    def __init__(self, message: str, path: str = "rules"):
        super().__init__(f"{path}: {message}", 422, {"path": path})


class DuplicateSegment(CoreError):
    code = "duplicate_segment"

    def __init__(self, segment_key: str):
        super().__init__(f"Segment already exists: {segment_key}", 409, {"segment_key": segment_key})


class AlreadyAwarded(CoreError):
    code = "already_awarded"

    def __init__(self, customer_id: str, year: int):
        super().__init__(
            f"Birthday bonus already awarded for {year}",
            409,
            {"customer_id": customer_id, "year": year},
        )


class NoPendingTierChange(CoreError):
    code = "no_pending_tier_change"

    def __init__(self, customer_id: str):
        super().__init__("No pending tier change to confirm", 404, {"customer_id": customer_id})


class ConcurrentModificationRetry(CoreError):
    """
    Raised by the store when the account version moved under us.
    The orchestrator retries these; they only escape once retries run out.
    """
    code = "concurrent_modification"

    def __init__(self, customer_id: str, expected_version: int, actual_version: int):
        super().__init__(
            "Account was modified concurrently, retry the operation",
            409,
            {
                "customer_id": customer_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class LedgerInconsistency(CoreError):
    code = "ledger_inconsistency"

    def __init__(self, customer_id: str, stored_balance: int, replayed_balance: int):
        super().__init__(
            "Stored balance disagrees with ledger replay; writes halted for this customer",
            500,
            {
                "customer_id": customer_id,
                "stored_balance": stored_balance,
                "replayed_balance": replayed_balance,
            },
        )


class RetriesExhausted(CoreError):
    """
    The customer's account kept changing under us; the caller should retry later.
    """
    code = "retry_later"

    def __init__(self, customer_id: str, attempts: int, retry_after_seconds: int = 1):
        super().__init__(
            "Account is busy, retry the request shortly",
            503,
            {
                "customer_id": customer_id,
                "attempts": attempts,
                "retry_after_seconds": retry_after_seconds,
            },
        )
