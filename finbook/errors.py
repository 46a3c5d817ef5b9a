from __future__ import annotations

from typing import Any, Optional


class FinbookError(Exception):
    """Base class for errors raised by finbook."""


class ReportError(FinbookError):
    """An error surfaced while building a report.

    Carries the owner, report type and period so callers can decide on a
    retry policy without parsing the message.
    """

    def __init__(
        self,
        message: str,
        *,
        owner_id: Optional[int] = None,
        report_type: Optional[str] = None,
        period: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.owner_id = owner_id
        self.report_type = report_type
        self.period = period

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "owner_id": self.owner_id,
            "report_type": self.report_type,
            "period": self.period,
        }


class InvalidPeriodError(ReportError, ValueError):
    """Raised for a non-positive year or a month outside 1..12."""


class StoreUnavailableError(ReportError):
    """Raised when the transaction store fails or does not answer in time."""


class DivisionByZeroError(ReportError, ZeroDivisionError):
    """Raised by the utilization guard when a budget amount is zero."""
