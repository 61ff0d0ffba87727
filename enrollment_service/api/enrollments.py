"""Enrollment endpoints.

  POST   /v1/enrollments        → create (any authenticated user)
  GET    /v1/enrollments        → paginated list (admin, accountant)
  GET    /v1/enrollments/{id}   → one enrollment (admin, accountant)
  PATCH  /v1/enrollments/{id}   → discount / matriculation (admin)
  DELETE /v1/enrollments/{id}   → unenroll from LMS, then delete (admin)

Domain errors are rendered by the AppError handler in main.py.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict

from enrollment_service.api.dependencies import (
    get_orchestrator,
    require_any_role,
    require_user,
)
from enrollment_service.models.enrollment import (
    EnrollmentDetail,
    EnrollmentPage,
    EnrollmentPatch,
)
from enrollment_service.models.principal import Principal
from enrollment_service.services.enrollment_orchestrator import EnrollmentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/enrollments", tags=["enrollments"])

Orchestrator = Annotated[EnrollmentOrchestrator, Depends(get_orchestrator)]
_require_staff = require_any_role({"admin", "accountant"})
_require_admin = require_any_role({"admin"})


class EnrollmentIn(BaseModel):
    course_id: int
    person_id: int
    billing_id: int
    receipt_id: int


class EnrollmentPatchIn(BaseModel):
    discount_id: int | None = None
    matriculated: bool | None = None


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CourseOut(_FromAttributes):
    id: int
    name: str
    short_name: str
    start_date: date
    end_date: date


class PersonOut(_FromAttributes):
    id: int
    national_id: str
    first_names: str
    last_names: str
    email: str


class BillingOut(_FromAttributes):
    id: int
    business_name: str
    tax_id: str


class ReceiptOut(_FromAttributes):
    id: int
    file_name: str
    uploaded_at: datetime | None = None


class DiscountOut(_FromAttributes):
    id: int
    name: str
    percentage: Decimal


class EnrollmentOut(BaseModel):
    id: int
    matriculated: bool
    enrolled_at: datetime
    version: int
    course: CourseOut
    person: PersonOut
    billing: BillingOut
    receipt: ReceiptOut
    discount: DiscountOut | None = None

    @classmethod
    def from_detail(cls, detail: EnrollmentDetail) -> EnrollmentOut:
        e = detail.enrollment
        return cls(
            id=e.id,
            matriculated=e.matriculated,
            enrolled_at=e.enrolled_at,
            version=e.version,
            course=CourseOut.model_validate(detail.course),
            person=PersonOut.model_validate(detail.person),
            billing=BillingOut.model_validate(detail.billing),
            receipt=ReceiptOut.model_validate(detail.receipt),
            discount=(
                DiscountOut.model_validate(detail.discount)
                if detail.discount is not None
                else None
            ),
        )


class EnrollmentPageOut(BaseModel):
    items: list[EnrollmentOut]
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def from_page(cls, page: EnrollmentPage) -> EnrollmentPageOut:
        return cls(
            items=[EnrollmentOut.from_detail(d) for d in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
            total_pages=page.total_pages,
        )


@router.post("", response_model=EnrollmentOut, status_code=status.HTTP_201_CREATED)
async def create_enrollment(
    body: EnrollmentIn,
    principal: Annotated[Principal, Depends(require_user)],
    orchestrator: Orchestrator,
) -> EnrollmentOut:
    logger.info("Enrollment create requested by user=%s", principal.user_id)
    detail = await orchestrator.create(
        course_id=body.course_id,
        person_id=body.person_id,
        billing_id=body.billing_id,
        receipt_id=body.receipt_id,
    )
    return EnrollmentOut.from_detail(detail)


@router.get("", response_model=EnrollmentPageOut)
async def list_enrollments(
    _principal: Annotated[Principal, Depends(_require_staff)],
    orchestrator: Orchestrator,
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int, Query()] = 10,
    order_by: Annotated[str, Query()] = "enrolled_at",
    order: Annotated[str, Query()] = "asc",
) -> EnrollmentPageOut:
    result = await orchestrator.list(
        page=page, limit=limit, order_by=order_by, order=order
    )
    return EnrollmentPageOut.from_page(result)


@router.get("/{enrollment_id}", response_model=EnrollmentOut)
async def get_enrollment(
    enrollment_id: int,
    _principal: Annotated[Principal, Depends(_require_staff)],
    orchestrator: Orchestrator,
) -> EnrollmentOut:
    return EnrollmentOut.from_detail(await orchestrator.get(enrollment_id))


@router.patch("/{enrollment_id}", response_model=EnrollmentOut)
async def update_enrollment(
    enrollment_id: int,
    body: EnrollmentPatchIn,
    principal: Annotated[Principal, Depends(_require_admin)],
    orchestrator: Orchestrator,
) -> EnrollmentOut:
    logger.info(
        "Enrollment=%d update requested by user=%s fields=%s",
        enrollment_id,
        principal.user_id,
        sorted(body.model_dump(exclude_none=True)),
    )
    detail = await orchestrator.update(
        enrollment_id,
        EnrollmentPatch(discount_id=body.discount_id, matriculated=body.matriculated),
    )
    return EnrollmentOut.from_detail(detail)


@router.delete("/{enrollment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_enrollment(
    enrollment_id: int,
    principal: Annotated[Principal, Depends(_require_admin)],
    orchestrator: Orchestrator,
) -> Response:
    logger.info(
        "Enrollment=%d delete requested by user=%s", enrollment_id, principal.user_id
    )
    await orchestrator.delete(enrollment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
