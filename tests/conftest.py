"""Shared test fixtures for ReviewBox."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Callable, Optional, Union

import httpx
import pytest

from channels.whatsapp_adapter import WhatsAppChannel
from config.settings import ScheduleConfig, WhatsAppConfig
from core.composer import MessageComposer
from core.dispatch import StageDispatcher
from database.store_memory import InMemoryReviewStore

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
REVIEW_LINK = "https://g.co/x"


async def no_sleep(_seconds: float) -> None:
    return None


class FakeWhatsAppApi:
    """
    Scripted stand-in for the messaging gateway, mounted via httpx.MockTransport.

    `responses` is consumed in order; each entry is a status code or an
    exception instance to raise. Once exhausted, `default` is returned.
    """

    def __init__(self, responses: Optional[list[Union[int, Exception]]] = None, default: int = 200):
        self.responses = list(responses or [])
        self.default = default
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if self.responses else self.default
        if isinstance(outcome, Exception):
            raise outcome
        body = {"messages": [{"id": f"wamid.{len(self.requests)}"}]} if outcome < 300 else {"error": {"code": outcome}}
        return httpx.Response(outcome, json=body)

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class StubChannel:
    """Records composed messages without any HTTP; phones in `failing` get False."""

    def __init__(self, failing: Optional[set[str]] = None, raising: Optional[set[str]] = None):
        self.failing = failing or set()
        self.raising = raising or set()
        self.texts: list[tuple[str, str]] = []
        self.sent: list[tuple[str, object]] = []

    async def send_text(self, phone, body):
        self.texts.append((phone, body))
        return True

    async def send_message(self, phone, message):
        if phone in self.raising:
            raise RuntimeError("gateway exploded")
        self.sent.append((phone, message))
        return phone not in self.failing

    async def close(self):
        pass

    def health(self):
        return {"configured": True, "sent": len(self.sent)}


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def wa_config() -> WhatsAppConfig:
    return WhatsAppConfig(
        base_url="https://alots.io/v20.0",
        phone_number_id="1234567890",
        api_key="test-key",
        day0_header_image_link="https://cdn.example.com/day0.jpg",
        template_languages={"dreamers_solar_msg_1": "mr"},
    )


@pytest.fixture
def schedule_config() -> ScheduleConfig:
    return ScheduleConfig(
        polling_interval_seconds=0.01,
        stage1_delay_minutes=1440,
        stage2_delay_minutes=4320,
        shutdown_grace_seconds=1.0,
    )


@pytest.fixture
def store() -> InMemoryReviewStore:
    return InMemoryReviewStore()


@pytest.fixture
def fake_api() -> FakeWhatsAppApi:
    return FakeWhatsAppApi()


@pytest.fixture
def make_channel(wa_config) -> Callable[..., WhatsAppChannel]:
    def _make(api: FakeWhatsAppApi, config: Optional[WhatsAppConfig] = None) -> WhatsAppChannel:
        return WhatsAppChannel(config or wa_config, client=api.client(), sleep=no_sleep)
    return _make


@pytest.fixture
def make_dispatcher(wa_config) -> Callable[..., StageDispatcher]:
    def _make(channel, config: Optional[WhatsAppConfig] = None) -> StageDispatcher:
        config = config or wa_config
        return StageDispatcher(MessageComposer(config), channel, config, sleep=no_sleep)
    return _make
