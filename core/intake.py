"""
Intake Handler — enrolls customers and fires stage 0 inline.

Flow for POST /api/review/customer:
    split batch → company exists → company has review link
    → per number: normalize → duplicate check (active or not) → create
    → send stage 0 now → set stage0_sent on success

A failed inline send never fails the enrollment: the record stays at
stage0_sent=False and the scheduler retries it on its next tick.

Also serves deactivation and redirect lookups for the /r/{id} link.
"""
from __future__ import annotations

import structlog
from typing import Union

from core.dispatch import StageDispatcher
from core.exceptions import (
    CompanyNotFoundError, CustomerNotFoundError, DuplicateCustomerError,
    EnrollmentValidationError, MissingReviewLinkError, ReviewLinkNotFoundError,
)
from database.store_base import BaseReviewStore
from models.schemas import EnrollmentResult, ReviewCustomer, ReviewStage
from utils.phone import normalize_phone, split_phone_batch

logger = structlog.get_logger()


class IntakeHandler:

    def __init__(self, store: BaseReviewStore, dispatcher: StageDispatcher, country_code: str = "91"):
        self.store = store
        self.dispatcher = dispatcher
        self.country_code = country_code

    async def enroll(self, company_id: int, phone_numbers: Union[str, list[str]]) -> EnrollmentResult:
        """
        Enroll one or more phone numbers for a company.

        Accepts a comma-separated string or a list. Raises only for problems
        with the request as a whole; per-number problems land in the
        invalid / duplicates buckets.
        """
        if isinstance(phone_numbers, str):
            raw_numbers = split_phone_batch(phone_numbers)
        else:
            raw_numbers = [p.strip() for p in phone_numbers if p and p.strip()]

        if not raw_numbers:
            raise EnrollmentValidationError(
                "At least one phone number is required. Provide a single number "
                "or comma-separated values (e.g. 9876543210, 9876543211)."
            )

        company = await self.store.get_company(company_id)
        if company is None:
            raise CompanyNotFoundError(company_id)
        if not company.has_review_link:
            raise MissingReviewLinkError(company_id)

        result = EnrollmentResult()
        for raw in raw_numbers:
            phone = normalize_phone(raw, self.country_code)
            if phone is None:
                result.invalid.append(raw)
                continue

            if await self.store.find_customer(company_id, phone):
                result.duplicates.append(raw)
                continue

            try:
                customer = await self.store.create_customer(company_id, phone)
            except DuplicateCustomerError:
                result.duplicates.append(raw)
                continue

            if await self.dispatcher.send(customer, company, ReviewStage.INITIAL):
                await self.store.mark_stage_sent(customer.id, ReviewStage.INITIAL)
                customer = customer.model_copy(update={"stage0_sent": True})
                logger.info("review_stage_sent", customer_id=customer.id,
                            phone=customer.phone_number, stage=0, source="intake")
            else:
                logger.warning("review_stage0_deferred", customer_id=customer.id,
                               phone=customer.phone_number,
                               reason="inline send failed, scheduler will retry")

            result.added.append(customer)

        logger.info("review_enrollment_complete", company_id=company_id,
                    added=len(result.added), invalid=len(result.invalid),
                    duplicates=len(result.duplicates))
        return result

    async def deactivate(self, customer_id: int) -> ReviewCustomer:
        """Stop future messages. Permanent and idempotent."""
        customer = await self.store.deactivate_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(customer_id)
        logger.info("review_customer_deactivated", customer_id=customer_id)
        return customer

    async def resolve_review_link(self, customer_id: int) -> str:
        """Review page for a button click; deactivated customers and deleted companies still resolve."""
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            logger.warning("review_redirect_customer_missing", customer_id=customer_id)
            raise ReviewLinkNotFoundError("Review link not found", customer_id)

        company = await self.store.get_company(customer.company_id, include_inactive=True)
        if company is None or not company.has_review_link:
            logger.warning("review_redirect_link_missing", customer_id=customer_id,
                           company_id=customer.company_id)
            raise ReviewLinkNotFoundError("Review link not configured", customer_id)

        logger.info("review_redirect", customer_id=customer_id, company_id=company.id)
        return company.review_link.strip()

    async def get_customer(self, customer_id: int) -> ReviewCustomer:
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(customer_id)
        return customer

    async def list_customers(self, company_id: int) -> list[ReviewCustomer]:
        if await self.store.get_company(company_id) is None:
            raise CompanyNotFoundError(company_id)
        return await self.store.list_customers(company_id)
