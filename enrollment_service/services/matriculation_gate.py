from __future__ import annotations

import logging

from enrollment_service.core.errors import Conflict
from enrollment_service.core.metrics import MATRICULATION_ATTEMPTS
from enrollment_service.services.payment_gate import PaymentGate, has_verified_payment

logger = logging.getLogger(__name__)


class MatriculationGate:
    """Allows false -> true on `matriculated` only for a paid enrollment.

    Meant to run inside the enrollment's locked unit of work, so invoices
    are read FOR SHARE and cannot change between the check and the write.
    """

    def __init__(self, payments: PaymentGate) -> None:
        self._payments = payments

    async def check(
        self, enrollment_id: int, *, current: bool, requested: bool | None
    ) -> None:
        if not requested or current:
            return

        invoices = await self._payments.list_invoices_for_enrollment(
            enrollment_id, for_share=True
        )
        if not invoices:
            MATRICULATION_ATTEMPTS.labels(result="gate_rejected").inc()
            logger.info("Matriculation refused enrollment=%d: no invoice", enrollment_id)
            raise Conflict(f"no invoice exists for enrollment {enrollment_id}")

        if not has_verified_payment(invoices):
            MATRICULATION_ATTEMPTS.labels(result="gate_rejected").inc()
            logger.info(
                "Matriculation refused enrollment=%d: %d invoice(s), none verified",
                enrollment_id,
                len(invoices),
            )
            raise Conflict(f"payment not verified for enrollment {enrollment_id}")
