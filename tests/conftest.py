from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import enrollment_service` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from enrollment_service.main import app  # noqa: E402
from enrollment_service.models.course import Course  # noqa: E402
from enrollment_service.models.discount import Discount  # noqa: E402
from enrollment_service.models.invoice import Invoice  # noqa: E402
from enrollment_service.models.participant import (  # noqa: E402
    BillingRecord,
    Person,
    Receipt,
)
from enrollment_service.repos.channel_repo import InMemoryChannelDirectory  # noqa: E402
from enrollment_service.repos.enrollment_repo import InMemoryEnrollmentRepo  # noqa: E402
from enrollment_service.repos.invoice_repo import InMemoryInvoiceRepo  # noqa: E402
from enrollment_service.repos.lms_link_repo import InMemoryLmsLinkRepo  # noqa: E402
from enrollment_service.repos.memory_stores import memory  # noqa: E402
from enrollment_service.repos.reference_repo import InMemoryReferenceRepo  # noqa: E402
from enrollment_service.services import token_service  # noqa: E402
from enrollment_service.services.enrollment_orchestrator import (  # noqa: E402
    EnrollmentOrchestrator,
)
from enrollment_service.services.lms_client import (  # noqa: E402
    InMemoryLmsClient,
    lms_client,
)
from enrollment_service.services.notification_sender import (  # noqa: E402
    InMemoryNotificationSender,
    notification_sender,
)
from enrollment_service.services.task_queue import (  # noqa: E402
    InMemoryTaskQueue,
    task_queue,
)

COURSE = Course(
    id=1,
    name="Python Fundamentals",
    short_name="PY-101 2026",
    start_date=date(2026, 3, 2),
    end_date=date(2026, 6, 30),
)
PERSON = Person(
    id=1,
    national_id="1712345678",
    first_names="Ana María",
    last_names="Torres Vega",
    email="ana.torres@example.com",
)
BILLING = BillingRecord(id=1, business_name="Ana Torres", tax_id="1712345678001")
DISCOUNT = Discount(id=1, name="Early bird", percentage=Decimal("15.00"))


def seed_references(refs: InMemoryReferenceRepo) -> None:
    """Course 1, person 1, billing 1, receipts 1-3, discount 1."""
    refs.add_course(COURSE)
    refs.add_person(PERSON)
    refs.add_billing(BILLING)
    for receipt_id in (1, 2, 3):
        refs.add_receipt(Receipt(id=receipt_id, file_name=f"receipt-{receipt_id}.pdf"))
    refs.add_discount(DISCOUNT)


def verified_invoice(enrollment_id: int, invoice_id: int = 1) -> Invoice:
    return Invoice(
        id=invoice_id,
        enrollment_id=enrollment_id,
        billing_id=BILLING.id,
        amount_paid=Decimal("250.00"),
        payment_verified=True,
        invoice_number=f"001-001-{invoice_id:09d}",
    )


# ---------------------------------------------------------------------------
# Orchestrator harness for service-level tests
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    orchestrator: EnrollmentOrchestrator
    references: InMemoryReferenceRepo
    enrollments: InMemoryEnrollmentRepo
    invoices: InMemoryInvoiceRepo
    lms: InMemoryLmsClient
    lms_links: InMemoryLmsLinkRepo
    channels: InMemoryChannelDirectory
    sender: InMemoryNotificationSender
    tasks: InMemoryTaskQueue


def make_harness(
    *,
    unenroll_policy: str = "proceed",
    lms: InMemoryLmsClient | None = None,
    sender: InMemoryNotificationSender | None = None,
    enrollments: InMemoryEnrollmentRepo | None = None,
    invoices: InMemoryInvoiceRepo | None = None,
    lms_links: InMemoryLmsLinkRepo | None = None,
    timeout: float = 5.0,
) -> Harness:
    references = InMemoryReferenceRepo()
    seed_references(references)
    parts = {
        "references": references,
        "enrollments": enrollments or InMemoryEnrollmentRepo(),
        "invoices": invoices or InMemoryInvoiceRepo(),
        "lms": lms or InMemoryLmsClient(),
        "lms_links": lms_links or InMemoryLmsLinkRepo(),
        "channels": InMemoryChannelDirectory(),
        "sender": sender or InMemoryNotificationSender(),
        "tasks": InMemoryTaskQueue(),
    }
    orchestrator = EnrollmentOrchestrator(
        references=parts["references"],
        enrollments=parts["enrollments"],
        invoices=parts["invoices"],
        lms=parts["lms"],
        lms_links=parts["lms_links"],
        channels=parts["channels"],
        notifications=parts["sender"],
        tasks=parts["tasks"],
        timeout=timeout,
        unenroll_policy=unenroll_policy,  # type: ignore[arg-type]
    )
    return Harness(orchestrator=orchestrator, **parts)


@pytest.fixture
def harness() -> Harness:
    return make_harness()


# ---------------------------------------------------------------------------
# Module-level singletons used by the app
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_memory_stores() -> None:
    memory.reset()
    seed_references(memory.references)


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    """Clear task queues between tests."""
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_lms_client() -> None:
    if isinstance(lms_client, InMemoryLmsClient):
        lms_client.enrolled.clear()
        lms_client.calls.clear()
        lms_client.fail_enroll = None
        lms_client.fail_unenroll = None


@pytest.fixture(autouse=True)
def reset_notification_sender() -> None:
    if isinstance(notification_sender, InMemoryNotificationSender):
        notification_sender.sent.clear()
        notification_sender.fail_with = None
        notification_sender.result = True
        notification_sender.configured = False


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


@pytest.fixture
def token() -> str:
    """Token with default role (user)."""
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    return mint_token(username="test-admin", roles=["admin"])


@pytest.fixture
def accountant_token() -> str:
    return mint_token(username="test-accountant", roles=["accountant"])


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
