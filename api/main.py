"""
FastAPI Application — review enrollment API + redirect + scheduler host.

Provides:
- Enrollment, lookup and deactivation of review customers
- Public /r/{id} redirect used by the WhatsApp "leave a review" button
- Minimal company management (create, update, soft delete)
- Health endpoint with scheduler and channel state
- Lifespan hosting the background review scheduler
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Annotated, Callable, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import AnyUrl, BaseModel, EmailStr, Field, UrlConstraints, field_validator

from channels.whatsapp_adapter import WhatsAppChannel
from config.settings import Settings, get_settings, validate_settings
from core.composer import MessageComposer
from core.dispatch import StageDispatcher
from core.exceptions import CompanyNotFoundError, ReviewBoxError
from core.intake import IntakeHandler
from core.scheduler import ReviewScheduler
from database.session import close_db, init_db
from database.store_base import BaseReviewStore
from database.store_factory import create_store

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class AddReviewCustomerRequest(BaseModel):
    company_id: int
    phone_number: str = Field(..., max_length=1000)    # single or comma-separated


ReviewLink = Annotated[AnyUrl, UrlConstraints(max_length=500, allowed_schemes=["http", "https"])]


class CompanyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    contact_email: Optional[EmailStr] = None
    review_link: Optional[ReviewLink] = None

    @field_validator("contact_email", "review_link", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def store_fields(self) -> dict:
        return {
            "name": self.name,
            "contact_email": self.contact_email,
            "review_link": str(self.review_link) if self.review_link else None,
        }


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseReviewStore] = None,
    channel: Optional[WhatsAppChannel] = None,
    start_scheduler: bool = True,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or create_store({
        "store_backend": settings.database.store_backend,
        "url": settings.database.url,
        "echo": settings.debug,
    })
    channel = channel or WhatsAppChannel(settings.whatsapp)

    dispatcher = StageDispatcher(MessageComposer(settings.whatsapp), channel, settings.whatsapp)
    intake = IntakeHandler(store, dispatcher, country_code=settings.phone.country_code)
    scheduler_kwargs = {"clock": clock} if clock else {}
    scheduler = ReviewScheduler(store, dispatcher, settings.schedule, **scheduler_kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        validate_settings(settings)
        if store.backend_name == "sql":
            await init_db()
        if not settings.whatsapp.has_credentials:
            logger.warning("whatsapp_not_configured",
                           hint="set WHATSAPP_API_KEY and WHATSAPP_PHONE_NUMBER_ID")
        if start_scheduler:
            await scheduler.start()

        logger.info("reviewbox_started", app=settings.app_name, store=store.backend_name)
        yield

        await scheduler.stop()
        await channel.close()
        if store.backend_name == "sql":
            await close_db()
        logger.info("reviewbox_stopped")

    app = FastAPI(
        title="ReviewBox API",
        description="Automated WhatsApp review-request sequences",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.channel = channel
    app.state.intake = intake
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReviewBoxError)
    async def reviewbox_error_handler(request: Request, exc: ReviewBoxError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.message, "details": exc.details},
        )

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": store.backend_name,
            "scheduler": scheduler.health(),
            "whatsapp": channel.health(),
        }

    # ══════════════════════════════════════════════════════════
    #  REVIEW CUSTOMERS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/review/customer", status_code=201)
    async def add_customers(req: AddReviewCustomerRequest):
        result = await intake.enroll(req.company_id, req.phone_number)
        return result.model_dump(mode="json")

    @app.get("/api/review/customers/{company_id}")
    async def list_customers(company_id: int):
        customers = await intake.list_customers(company_id)
        return [c.model_dump(mode="json") for c in customers]

    @app.get("/api/review/customer/{customer_id}")
    async def get_customer(customer_id: int):
        customer = await intake.get_customer(customer_id)
        return customer.model_dump(mode="json")

    @app.delete("/api/review/customer/{customer_id}")
    async def deactivate_customer(customer_id: int):
        await intake.deactivate(customer_id)
        return {"message": "Customer deactivated. No further review messages will be sent."}

    @app.get("/r/{customer_id}")
    async def redirect_to_review(customer_id: int):
        link = await intake.resolve_review_link(customer_id)
        return RedirectResponse(link, status_code=302)

    # ══════════════════════════════════════════════════════════
    #  COMPANIES
    # ══════════════════════════════════════════════════════════

    @app.get("/api/company")
    async def list_companies():
        return [c.model_dump(mode="json") for c in await store.list_companies()]

    @app.get("/api/company/{company_id}")
    async def get_company(company_id: int):
        company = await store.get_company(company_id)
        if company is None:
            raise CompanyNotFoundError(company_id)
        return company.model_dump(mode="json")

    @app.post("/api/company")
    async def create_company(req: CompanyRequest):
        company = await store.create_company(**req.store_fields())
        logger.info("company_created", company_id=company.id, name=company.name)
        return company.model_dump(mode="json")

    @app.put("/api/company/{company_id}")
    async def update_company(company_id: int, req: CompanyRequest):
        company = await store.update_company(company_id, **req.store_fields())
        if company is None:
            raise CompanyNotFoundError(company_id)
        return company.model_dump(mode="json")

    @app.delete("/api/company/{company_id}")
    async def delete_company(company_id: int):
        # Soft delete: enrolled customers stop receiving messages, sent links keep redirecting
        if await store.deactivate_company(company_id) is None:
            raise CompanyNotFoundError(company_id)
        logger.info("company_deleted", company_id=company_id)
        return {"message": "Company deleted successfully"}

    return app


app = create_app()
