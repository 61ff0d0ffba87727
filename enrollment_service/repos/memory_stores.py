from __future__ import annotations

from enrollment_service.repos.channel_repo import InMemoryChannelDirectory
from enrollment_service.repos.enrollment_repo import InMemoryEnrollmentRepo
from enrollment_service.repos.invoice_repo import InMemoryInvoiceRepo
from enrollment_service.repos.lms_link_repo import InMemoryLmsLinkRepo
from enrollment_service.repos.reference_repo import InMemoryReferenceRepo


class InMemoryStores:
    """Process-local stores used when DATABASE_URL is not configured."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.references = InMemoryReferenceRepo()
        self.enrollments = InMemoryEnrollmentRepo()
        self.invoices = InMemoryInvoiceRepo()
        self.lms_links = InMemoryLmsLinkRepo()
        self.channels = InMemoryChannelDirectory()


memory = InMemoryStores()
