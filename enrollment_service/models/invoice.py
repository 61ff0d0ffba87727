from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class Invoice:
    """Fiscal record for an enrollment.

    Re-submitting fiscal data produces a new row instead of mutating the
    previous one, so one enrollment may own several invoices.
    """

    id: int
    enrollment_id: int
    billing_id: int
    amount_paid: Decimal
    payment_verified: bool = False
    invoice_number: str = ""


@dataclass(frozen=True, slots=True)
class LmsEnrollmentLink:
    """Where an enrollment lives on the LMS side, once matriculated."""

    enrollment_id: int
    lms_user_id: int
    lms_course_id: int
    lms_username: str
    status: str = "enrolled"  # enrolled|unenrolled
