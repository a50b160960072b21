"""
Abstract Review Store — Interface for all storage backends.

Implementations:
  - SqlReviewStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryReviewStore (dict-based, single-process, no persistence)

The store is the only state shared between the intake path and the
scheduler. Every customer mutation is a single-row update, and a stage flag
can only ever be switched on.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import Company, ReviewCustomer, ReviewStage


class BaseReviewStore(ABC):
    """Interface that all review store backends must implement."""

    backend_name: str = ""

    # ── Companies ─────────────────────────────────────────────

    @abstractmethod
    async def create_company(self, name: str, review_link: Optional[str] = None,
                             contact_email: Optional[str] = None) -> Company:
        ...

    @abstractmethod
    async def update_company(self, company_id: int, **fields) -> Optional[Company]:
        """Returns None if the id is unknown or the company was deleted."""
        ...

    @abstractmethod
    async def get_company(self, company_id: int, include_inactive: bool = False) -> Optional[Company]:
        """Soft-deleted companies read as missing unless include_inactive."""
        ...

    @abstractmethod
    async def find_company_by_name(self, name: str) -> Optional[Company]:
        """Any company with this name, active or not (names stay reserved)."""
        ...

    @abstractmethod
    async def list_companies(self) -> list[Company]:
        ...

    @abstractmethod
    async def deactivate_company(self, company_id: int) -> Optional[Company]:
        """Soft delete. Returns None if the id is unknown or already inactive."""
        ...

    # ── Customers ─────────────────────────────────────────────

    @abstractmethod
    async def create_customer(self, company_id: int, phone_number: str,
                              created_at: Optional[datetime] = None) -> ReviewCustomer:
        """Insert a new customer. Raises DuplicateCustomerError if (company, phone) exists."""
        ...

    @abstractmethod
    async def get_customer(self, customer_id: int) -> Optional[ReviewCustomer]:
        """Lookup by id, active or not."""
        ...

    @abstractmethod
    async def find_customer(self, company_id: int, phone_number: str) -> Optional[ReviewCustomer]:
        """Lookup by (company, canonical phone), active or not."""
        ...

    @abstractmethod
    async def list_customers(self, company_id: int) -> list[ReviewCustomer]:
        """All customers of a company, newest first."""
        ...

    @abstractmethod
    async def list_due(self, stage: ReviewStage,
                       cutoff: Optional[datetime] = None) -> list[ReviewCustomer]:
        """
        Active customers whose next stage is `stage`, ordered by id.
        For stages 1 and 2 only customers created at or before `cutoff`.
        """
        ...

    @abstractmethod
    async def mark_stage_sent(self, customer_id: int, stage: ReviewStage) -> None:
        ...

    @abstractmethod
    async def deactivate_customer(self, customer_id: int) -> Optional[ReviewCustomer]:
        """Set active=False. Returns None only if the id is unknown."""
        ...
