"""initial enrollment schema

Revision ID: 3c9e51b7d2a0
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c9e51b7d2a0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("short_name", sa.String(length=100), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
    )
    op.create_table(
        "persons",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("national_id", sa.String(length=20), nullable=False, unique=True),
        sa.Column("first_names", sa.String(length=255), nullable=False),
        sa.Column("last_names", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
    )
    op.create_table(
        "billing_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("business_name", sa.String(length=255), nullable=False),
        sa.Column("tax_id", sa.String(length=20), nullable=False),
    )
    op.create_table(
        "receipts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "discounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
    )
    op.create_table(
        "messaging_channels",
        sa.Column(
            "course_id", sa.Integer(), sa.ForeignKey("courses.id"), primary_key=True
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("invitation_link", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("course_id", sa.Integer(), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("person_id", sa.Integer(), sa.ForeignKey("persons.id"), nullable=False),
        sa.Column(
            "billing_id",
            sa.Integer(),
            sa.ForeignKey("billing_records.id"),
            nullable=False,
        ),
        sa.Column(
            "receipt_id",
            sa.Integer(),
            sa.ForeignKey("receipts.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("discount_id", sa.Integer(), sa.ForeignKey("discounts.id"), nullable=True),
        sa.Column("matriculated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint(
            "course_id", "person_id", name="uq_enrollments_course_person"
        ),
    )
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "billing_id",
            sa.Integer(),
            sa.ForeignKey("billing_records.id"),
            nullable=False,
        ),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "payment_verified", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("invoice_number", sa.String(length=64), nullable=False, server_default=""),
    )
    op.create_index("ix_invoices_enrollment_id", "invoices", ["enrollment_id"])
    op.create_table(
        "lms_enrollments",
        sa.Column(
            "enrollment_id",
            sa.Integer(),
            sa.ForeignKey("enrollments.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("lms_user_id", sa.Integer(), nullable=False),
        sa.Column("lms_course_id", sa.Integer(), nullable=False),
        sa.Column("lms_username", sa.String(length=320), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="enrolled"),
    )


def downgrade() -> None:
    op.drop_table("lms_enrollments")
    op.drop_index("ix_invoices_enrollment_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("enrollments")
    op.drop_table("messaging_channels")
    op.drop_table("discounts")
    op.drop_table("receipts")
    op.drop_table("billing_records")
    op.drop_table("persons")
    op.drop_table("courses")
