"""
SqlReviewStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Notes:
  - SQLite hands back naive datetimes for DateTime(timezone=True); every row
    is converted to UTC-aware before it leaves the store.
  - Stage flags are set with a single UPDATE guarded on the flag being off,
    so a concurrent writer can never switch one back.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError

from core.exceptions import CompanyNameTakenError, DuplicateCustomerError
from database.models import CompanyRow, ReviewCustomerRow
from database.session import get_session
from database.store_base import BaseReviewStore
from models.schemas import Company, ReviewCustomer, ReviewStage

logger = structlog.get_logger()

_COMPANY_COLUMNS = {
    "name": "name", "review_link": "review_link",
    "contact_email": "contact_email", "active": "is_active",
}

_FLAG_COLUMNS = {
    ReviewStage.INITIAL: ReviewCustomerRow.stage0_sent,
    ReviewStage.FIRST_REMINDER: ReviewCustomerRow.stage1_sent,
    ReviewStage.FINAL_REMINDER: ReviewCustomerRow.stage2_sent,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlReviewStore(BaseReviewStore):
    """
    Persistent review store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    backend_name = "sql"

    # ── Company operations ─────────────────────────────────

    async def create_company(self, name: str, review_link: Optional[str] = None,
                             contact_email: Optional[str] = None) -> Company:
        if await self.find_company_by_name(name):
            raise CompanyNameTakenError(name)
        try:
            async with get_session() as db:
                row = CompanyRow(name=name, review_link=review_link, contact_email=contact_email)
                db.add(row)
                await db.flush()
                return self._row_to_company(row)
        except IntegrityError:
            raise CompanyNameTakenError(name)

    async def update_company(self, company_id: int, **fields) -> Optional[Company]:
        new_name = fields.get("name")
        if new_name:
            taken = await self.find_company_by_name(new_name)
            if taken and taken.id != company_id:
                raise CompanyNameTakenError(new_name)
        async with get_session() as db:
            row = await db.get(CompanyRow, company_id)
            if not row or not row.is_active:
                return None
            for key, value in fields.items():
                column = _COMPANY_COLUMNS.get(key)
                if column:
                    setattr(row, column, value)
            await db.flush()
            return self._row_to_company(row)

    async def get_company(self, company_id: int, include_inactive: bool = False) -> Optional[Company]:
        async with get_session() as db:
            row = await db.get(CompanyRow, company_id)
            if not row or not (row.is_active or include_inactive):
                return None
            return self._row_to_company(row)

    async def find_company_by_name(self, name: str) -> Optional[Company]:
        async with get_session() as db:
            stmt = select(CompanyRow).where(CompanyRow.name == name)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_company(row) if row else None

    async def list_companies(self) -> list[Company]:
        async with get_session() as db:
            stmt = select(CompanyRow).where(CompanyRow.is_active.is_(True)).order_by(CompanyRow.id)
            result = await db.execute(stmt)
            return [self._row_to_company(r) for r in result.scalars()]

    async def deactivate_company(self, company_id: int) -> Optional[Company]:
        async with get_session() as db:
            row = await db.get(CompanyRow, company_id)
            if not row or not row.is_active:
                return None
            row.is_active = False
            await db.flush()
            logger.info("company_deactivated", company_id=company_id)
            return self._row_to_company(row)

    # ── Customer operations ────────────────────────────────

    async def create_customer(self, company_id: int, phone_number: str,
                              created_at: Optional[datetime] = None) -> ReviewCustomer:
        try:
            async with get_session() as db:
                row = ReviewCustomerRow(
                    company_id=company_id,
                    phone_number=phone_number,
                    created_at=created_at or datetime.now(timezone.utc),
                    stage0_sent=False, stage1_sent=False, stage2_sent=False,
                    is_active=True,
                )
                db.add(row)
                await db.flush()
                return self._row_to_customer(row)
        except IntegrityError:
            # Lost a race with a concurrent enrollment of the same number
            logger.info("customer_insert_conflict", company_id=company_id, phone=phone_number)
            raise DuplicateCustomerError(company_id, phone_number)

    async def get_customer(self, customer_id: int) -> Optional[ReviewCustomer]:
        async with get_session() as db:
            row = await db.get(ReviewCustomerRow, customer_id)
            return self._row_to_customer(row) if row else None

    async def find_customer(self, company_id: int, phone_number: str) -> Optional[ReviewCustomer]:
        async with get_session() as db:
            stmt = select(ReviewCustomerRow).where(and_(
                ReviewCustomerRow.company_id == company_id,
                ReviewCustomerRow.phone_number == phone_number,
            ))
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_customer(row) if row else None

    async def list_customers(self, company_id: int) -> list[ReviewCustomer]:
        async with get_session() as db:
            stmt = (
                select(ReviewCustomerRow)
                .where(ReviewCustomerRow.company_id == company_id)
                .order_by(ReviewCustomerRow.created_at.desc(), ReviewCustomerRow.id.desc())
            )
            result = await db.execute(stmt)
            return [self._row_to_customer(r) for r in result.scalars()]

    async def list_due(self, stage: ReviewStage,
                       cutoff: Optional[datetime] = None) -> list[ReviewCustomer]:
        conditions = [
            ReviewCustomerRow.is_active.is_(True),
            _FLAG_COLUMNS[stage].is_(False),
        ]
        if stage.prerequisite is not None:
            conditions.append(_FLAG_COLUMNS[stage.prerequisite].is_(True))
            if cutoff is not None:
                conditions.append(ReviewCustomerRow.created_at <= cutoff)

        async with get_session() as db:
            stmt = select(ReviewCustomerRow).where(and_(*conditions)).order_by(ReviewCustomerRow.id)
            result = await db.execute(stmt)
            return [self._row_to_customer(r) for r in result.scalars()]

    async def mark_stage_sent(self, customer_id: int, stage: ReviewStage) -> None:
        column = _FLAG_COLUMNS[stage]
        async with get_session() as db:
            stmt = (
                update(ReviewCustomerRow)
                .where(and_(ReviewCustomerRow.id == customer_id, column.is_(False)))
                .values({column.key: True})
            )
            await db.execute(stmt)

    async def deactivate_customer(self, customer_id: int) -> Optional[ReviewCustomer]:
        async with get_session() as db:
            row = await db.get(ReviewCustomerRow, customer_id)
            if not row:
                return None
            row.is_active = False
            await db.flush()
            return self._row_to_customer(row)

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_company(row: CompanyRow) -> Company:
        return Company(
            id=row.id, name=row.name,
            contact_email=row.contact_email,
            review_link=row.review_link,
            created_at=_as_utc(row.created_at),
            active=row.is_active,
        )

    @staticmethod
    def _row_to_customer(row: ReviewCustomerRow) -> ReviewCustomer:
        return ReviewCustomer(
            id=row.id,
            phone_number=row.phone_number,
            company_id=row.company_id,
            created_at=_as_utc(row.created_at),
            stage0_sent=row.stage0_sent,
            stage1_sent=row.stage1_sent,
            stage2_sent=row.stage2_sent,
            active=row.is_active,
        )
