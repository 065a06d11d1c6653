"""Shared error envelope and the coordinator's exception hierarchy.

We keep error messages consistent across coordinator, service and stations:
every `LedgerError` knows its wire `code` and can render itself as an
`ErrorResponse`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if self.details:
            msg["details"] = self.details
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg


class LedgerError(Exception):
    """Base class for every failure a command can report to a station."""

    code = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, self.message, self.details or None)


class ValidationError(LedgerError):
    """Malformed command input. Nothing was written."""

    code = "bad_request"


class NotFound(LedgerError):
    code = "not_found"


class StudentNotFound(NotFound):
    def __init__(self, student_id: str) -> None:
        super().__init__(f"Student {student_id} not found", details={"student_id": student_id})
        self.student_id = student_id


class DistributionNotFound(NotFound):
    def __init__(self, distribution_id: int) -> None:
        super().__init__(
            f"Distribution {distribution_id} not found",
            details={"distribution_id": distribution_id},
        )
        self.distribution_id = distribution_id


class InsufficientPayment(LedgerError):
    """Tender below the amount owed.

    Carries the shortfall so the cash station can ask for more bills without
    discarding what was already entered.
    """

    code = "insufficient_payment"

    def __init__(self, settlement: Any) -> None:
        super().__init__(
            f"Insufficient payment: short by {settlement.shortfall}",
            details={
                "total": str(settlement.total),
                "owed": str(settlement.owed),
                "shortfall": str(settlement.shortfall),
            },
        )
        self.settlement = settlement
        self.shortfall = settlement.shortfall


class AlreadyVerified(LedgerError):
    """Raised inside a verify transaction to abort it without writing.

    The coordinator turns this into a successful no-op; callers never see it.
    """

    code = "already_verified"

    def __init__(self, distribution: Any) -> None:
        super().__init__(f"Distribution {distribution.id} already verified")
        self.distribution = distribution


class StoreUnavailable(LedgerError):
    """Transient persistence failure. Retried by the coordinator."""

    code = "store_unavailable"
