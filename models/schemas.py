"""
Core data models for the ReviewBox service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ReviewStage(IntEnum):
    """The three messages of a review-request sequence."""
    INITIAL = 0             # sent on enrollment
    FIRST_REMINDER = 1      # "day 1"
    FINAL_REMINDER = 2      # "day 3"

    @property
    def flag(self) -> str:
        return f"stage{self.value}_sent"

    @property
    def prerequisite(self) -> Optional["ReviewStage"]:
        return ReviewStage(self.value - 1) if self.value > 0 else None


# ──────────────────────────────────────────────────────────────
#  Company — owner of the review destination
# ──────────────────────────────────────────────────────────────

class Company(BaseModel):
    id: int
    name: str
    contact_email: Optional[str] = None
    review_link: Optional[str] = None         # Google Business Profile review URL
    created_at: datetime = Field(default_factory=_utcnow)
    active: bool = True

    @property
    def has_review_link(self) -> bool:
        return bool(self.review_link and self.review_link.strip())


# ──────────────────────────────────────────────────────────────
#  ReviewCustomer — one recipient of the sequence
# ──────────────────────────────────────────────────────────────

class ReviewCustomer(BaseModel):
    id: int
    phone_number: str                         # canonical digits, country code included
    company_id: int
    created_at: datetime = Field(default_factory=_utcnow)
    stage0_sent: bool = False
    stage1_sent: bool = False
    stage2_sent: bool = False
    active: bool = True

    def is_sent(self, stage: ReviewStage) -> bool:
        return getattr(self, stage.flag)

    @property
    def next_stage(self) -> Optional[ReviewStage]:
        for stage in ReviewStage:
            if not self.is_sent(stage):
                return stage
        return None


# ──────────────────────────────────────────────────────────────
#  OutboundMessage — composed template payload, never persisted
# ──────────────────────────────────────────────────────────────

class OutboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_name: str
    language_code: str
    body_params: tuple[str, ...] = ()         # body is always sent, even when empty
    button_suffix: Optional[str] = None       # URL button {{1}}, the customer id
    header_image_link: Optional[str] = None
    header_image_id: Optional[str] = None     # wins over header_image_link

    @property
    def header_image(self) -> Optional[dict[str, str]]:
        """Image reference for the header component, id preferred over link."""
        if self.header_image_id and self.header_image_id.strip():
            return {"id": self.header_image_id.strip()}
        if self.header_image_link and self.header_image_link.strip():
            return {"link": self.header_image_link.strip()}
        return None


# ──────────────────────────────────────────────────────────────
#  EnrollmentResult — per-number outcome of a batch enrollment
# ──────────────────────────────────────────────────────────────

class EnrollmentResult(BaseModel):
    added: list[ReviewCustomer] = []
    invalid: list[str] = []
    duplicates: list[str] = []
