"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in enrollment_service/models/.
Repos convert between SQLAlchemy rows and domain dataclasses.

Course, person, billing, receipt, discount, invoice and messaging channel
rows are owned by other parts of the platform; this service only reads
them.  It owns enrollments and lms_enrollments.
"""

from __future__ import annotations

import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from enrollment_service.db.engine import Base

# --- Referenced entities (read-only here) ---


class CourseRow(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    short_name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)


class PersonRow(Base):
    __tablename__ = "persons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    national_id: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    first_names: Mapped[str] = mapped_column(String(255), nullable=False)
    last_names: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)


class BillingRecordRow(Base):
    __tablename__ = "billing_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(20), nullable=False)


class ReceiptRow(Base):
    __tablename__ = "receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    uploaded_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class DiscountRow(Base):
    __tablename__ = "discounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)


class MessagingChannelRow(Base):
    __tablename__ = "messaging_channels"

    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id"), primary_key=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    invitation_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


# --- Owned by this service ---


class EnrollmentRow(Base):
    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id"), nullable=False
    )
    person_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("persons.id"), nullable=False
    )
    billing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("billing_records.id"), nullable=False
    )
    receipt_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("receipts.id"), unique=True, nullable=False
    )
    discount_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("discounts.id"), nullable=True
    )
    matriculated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    enrolled_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("course_id", "person_id", name="uq_enrollments_course_person"),
    )


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    enrollment_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    billing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("billing_records.id"), nullable=False
    )
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")


class LmsEnrollmentRow(Base):
    __tablename__ = "lms_enrollments"

    enrollment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("enrollments.id", ondelete="CASCADE"), primary_key=True
    )
    lms_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lms_course_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lms_username: Mapped[str] = mapped_column(String(320), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="enrolled"
    )  # enrolled|unenrolled
