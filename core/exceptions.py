"""
Error hierarchy for review enrollment and lookup.

Validation errors are reported synchronously to the caller and carry the HTTP
status the API layer answers with. Delivery failures are never raised: the
channel reports them as a False result and the scheduler retries later.
"""
from __future__ import annotations

from typing import Any, Optional


class ReviewBoxError(Exception):
    """Base class for all service errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class EnrollmentValidationError(ReviewBoxError):
    status_code = 400


class CompanyNotFoundError(ReviewBoxError):
    status_code = 404

    def __init__(self, company_id: int):
        super().__init__("Company not found", {"company_id": company_id})


class MissingReviewLinkError(ReviewBoxError):
    status_code = 400

    def __init__(self, company_id: int):
        super().__init__(
            "Company does not have a review link configured. "
            "Please update the company's review link first.",
            {"company_id": company_id},
        )


class CompanyNameTakenError(ReviewBoxError):
    status_code = 400

    def __init__(self, name: str):
        super().__init__("Company name already exists", {"name": name})


class CustomerNotFoundError(ReviewBoxError):
    status_code = 404

    def __init__(self, customer_id: int):
        super().__init__("Review customer not found", {"customer_id": customer_id})


class DuplicateCustomerError(ReviewBoxError):
    """(company, phone) is already enrolled, active or not."""
    status_code = 409

    def __init__(self, company_id: int, phone_number: str):
        super().__init__(
            "Customer already enrolled for this company",
            {"company_id": company_id, "phone_number": phone_number},
        )


class ReviewLinkNotFoundError(ReviewBoxError):
    status_code = 404

    def __init__(self, message: str = "Review link not found", customer_id: Optional[int] = None):
        super().__init__(message, {"customer_id": customer_id})
