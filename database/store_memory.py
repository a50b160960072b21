"""
InMemoryReviewStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlReviewStore
  - Safe within a single asyncio event loop (no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import itertools
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from core.exceptions import CompanyNameTakenError, DuplicateCustomerError
from database.store_base import BaseReviewStore
from models.schemas import Company, ReviewCustomer, ReviewStage

logger = structlog.get_logger()

_COMPANY_FIELDS = ("name", "review_link", "contact_email", "active")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryReviewStore(BaseReviewStore):
    """
    Full-featured in-memory store with the same interface as SqlReviewStore.
    Keeps plain dicts internally and hands out fresh model copies.
    """

    backend_name = "memory"

    def __init__(self):
        self._companies: dict[int, dict[str, Any]] = {}     # id → company dict
        self._customers: dict[int, dict[str, Any]] = {}     # id → customer dict
        self._company_ids = itertools.count(1)
        self._customer_ids = itertools.count(1)

        # Indexes
        self._phone_index: dict[tuple[int, str], int] = {}  # (company_id, phone) → customer_id
        logger.info("inmemory_store_initialized")

    # ── Companies ─────────────────────────────────────────

    async def create_company(self, name: str, review_link: Optional[str] = None,
                             contact_email: Optional[str] = None) -> Company:
        if await self.find_company_by_name(name):
            raise CompanyNameTakenError(name)
        data = {
            "id": next(self._company_ids), "name": name,
            "review_link": review_link, "contact_email": contact_email,
            "created_at": _utcnow(), "active": True,
        }
        self._companies[data["id"]] = data
        return Company(**data)

    async def update_company(self, company_id: int, **fields) -> Optional[Company]:
        data = self._companies.get(company_id)
        if not data or not data["active"]:
            return None
        new_name = fields.get("name")
        if new_name and new_name != data["name"]:
            taken = await self.find_company_by_name(new_name)
            if taken and taken.id != company_id:
                raise CompanyNameTakenError(new_name)
        data.update({k: v for k, v in fields.items() if k in _COMPANY_FIELDS})
        return Company(**data)

    async def get_company(self, company_id: int, include_inactive: bool = False) -> Optional[Company]:
        data = self._companies.get(company_id)
        if not data or not (data["active"] or include_inactive):
            return None
        return Company(**data)

    async def find_company_by_name(self, name: str) -> Optional[Company]:
        for data in self._companies.values():
            if data["name"] == name:
                return Company(**data)
        return None

    async def list_companies(self) -> list[Company]:
        return [Company(**d) for d in self._companies.values() if d["active"]]

    async def deactivate_company(self, company_id: int) -> Optional[Company]:
        data = self._companies.get(company_id)
        if not data or not data["active"]:
            return None
        data["active"] = False
        return Company(**data)

    # ── Customers ─────────────────────────────────────────

    async def create_customer(self, company_id: int, phone_number: str,
                              created_at: Optional[datetime] = None) -> ReviewCustomer:
        key = (company_id, phone_number)
        if key in self._phone_index:
            raise DuplicateCustomerError(company_id, phone_number)
        data = {
            "id": next(self._customer_ids),
            "phone_number": phone_number,
            "company_id": company_id,
            "created_at": created_at or _utcnow(),
            "stage0_sent": False, "stage1_sent": False, "stage2_sent": False,
            "active": True,
        }
        self._customers[data["id"]] = data
        self._phone_index[key] = data["id"]
        return ReviewCustomer(**data)

    async def get_customer(self, customer_id: int) -> Optional[ReviewCustomer]:
        data = self._customers.get(customer_id)
        return ReviewCustomer(**data) if data else None

    async def find_customer(self, company_id: int, phone_number: str) -> Optional[ReviewCustomer]:
        cid = self._phone_index.get((company_id, phone_number))
        return await self.get_customer(cid) if cid else None

    async def list_customers(self, company_id: int) -> list[ReviewCustomer]:
        rows = [d for d in self._customers.values() if d["company_id"] == company_id]
        rows.sort(key=lambda d: (d["created_at"], d["id"]), reverse=True)
        return [ReviewCustomer(**d) for d in rows]

    async def list_due(self, stage: ReviewStage,
                       cutoff: Optional[datetime] = None) -> list[ReviewCustomer]:
        prereq = stage.prerequisite
        due = []
        for cid in sorted(self._customers):
            d = self._customers[cid]
            if not d["active"] or d[stage.flag]:
                continue
            if prereq is not None:
                if not d[prereq.flag]:
                    continue
                if cutoff is not None and d["created_at"] > cutoff:
                    continue
            due.append(ReviewCustomer(**d))
        return due

    async def mark_stage_sent(self, customer_id: int, stage: ReviewStage) -> None:
        data = self._customers.get(customer_id)
        if data:
            data[stage.flag] = True

    async def deactivate_customer(self, customer_id: int) -> Optional[ReviewCustomer]:
        data = self._customers.get(customer_id)
        if not data:
            return None
        data["active"] = False
        return ReviewCustomer(**data)

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "companies": len(self._companies),
            "customers": len(self._customers),
            "active_customers": sum(1 for d in self._customers.values() if d["active"]),
        }
