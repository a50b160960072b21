"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - Integer autoincrement primary keys: the customer id is the token carried
    in the WhatsApp button link (/r/{id}), so it must stay short.
  - (company_id, phone_number) is unique regardless of is_active, so a
    deactivated customer can never be re-enrolled.
  - Rows are never deleted; deactivation flips is_active.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Companies
# ──────────────────────────────────────────────────────────────

class CompanyRow(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    review_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    customers: Mapped[list["ReviewCustomerRow"]] = relationship(back_populates="company")


# ──────────────────────────────────────────────────────────────
#  Review customers
# ──────────────────────────────────────────────────────────────

class ReviewCustomerRow(Base):
    __tablename__ = "review_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False)

    stage0_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    stage1_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    stage2_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    company: Mapped["CompanyRow"] = relationship(back_populates="customers")

    __table_args__ = (
        UniqueConstraint("company_id", "phone_number", name="uq_review_customers_company_phone"),
        Index("ix_review_customers_pending", "is_active", "stage0_sent", "stage1_sent", "stage2_sent"),
        Index("ix_review_customers_created", "created_at"),
    )
