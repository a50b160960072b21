"""
WhatsApp Channel — WhatsApp Business Cloud API (Omni / alots.io gateway).

Provides:
- Free-form text messages
- Template messages with optional image header, body parameters and a
  dynamic URL button
- Bearer-token auth against {base_url}/{phone_number_id}/messages
- Single-retry policy: one more attempt after a fixed delay on 429/500/503/504,
  a network error or a connection dropped mid-response; timeouts and other
  rejections fail immediately

Public send methods return True/False and never raise for transport or API
errors. The scheduler's polling loop is the coarse retry for anything that
still fails here.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, wait_fixed,
)

from channels.base import (
    ChannelMetrics, DeliveryError, PermanentDeliveryError, TransientDeliveryError,
)
from config.settings import WhatsAppConfig
from models.schemas import OutboundMessage

logger = structlog.get_logger()

CHANNEL = "whatsapp"
MAX_ATTEMPTS = 2
TRANSIENT_STATUS_CODES = frozenset({429, 500, 503, 504})

# Connection-level failures; a dropped connection with no response counts too
RETRYABLE_ERRORS = (TransientDeliveryError, httpx.NetworkError, httpx.RemoteProtocolError)


# ══════════════════════════════════════════════════════════════
#  PAYLOAD BUILDERS
# ══════════════════════════════════════════════════════════════

def build_text_payload(phone: str, body: str) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": phone,
        "type": "text",
        "text": {"body": body},
    }


def build_template_components(
    body_params: Sequence[str],
    button_suffix: Optional[str] = None,
    header_image: Optional[dict[str, str]] = None,
) -> list[dict[str, Any]]:
    """
    Components in the order the API expects: header → body → button.

    `header_image` is the media reference as sent, {"id": ...} or {"link": ...}.
    """
    components: list[dict[str, Any]] = []

    if header_image:
        components.append({
            "type": "header",
            "parameters": [{"type": "image", "image": header_image}],
        })

    # Templates with a static body still need the component present
    components.append({
        "type": "body",
        "parameters": [{"type": "text", "text": p} for p in body_params],
    })

    if button_suffix and button_suffix.strip():
        components.append({
            "type": "button",
            "sub_type": "url",
            "index": "0",
            "parameters": [{"type": "text", "text": button_suffix}],
        })

    return components


def build_template_payload(
    phone: str, template_name: str, language_code: str,
    components: list[dict[str, Any]],
) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": phone,
        "type": "template",
        "template": {
            "name": template_name,
            "language": {"code": language_code},
            "components": components,
        },
    }


# ══════════════════════════════════════════════════════════════
#  WHATSAPP CHANNEL
# ══════════════════════════════════════════════════════════════

class WhatsAppChannel:
    """
    Outbound WhatsApp client.

    Usage:
        channel = WhatsAppChannel(settings.whatsapp)
        ok = await channel.send_template("919876543210", "review_reminder_day1",
                                         ["Acme", "https://g.page/r/..."], "42")
        await channel.close()
    """

    def __init__(
        self,
        config: WhatsAppConfig,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self.metrics = ChannelMetrics(CHANNEL)

    @property
    def messages_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/{self.config.phone_number_id}/messages"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    # ── Send ──────────────────────────────────────────────────

    async def send_text(self, phone: str, body: str) -> bool:
        """Send a free-form text (used to open the conversation before a template)."""
        if not self.config.has_credentials:
            logger.warning("whatsapp_credentials_missing", to=phone, kind="text")
            return False

        logger.info("whatsapp_text_sending", to=phone, text=body)
        return await self._post(build_text_payload(phone, body), to=phone, kind="text")

    async def send_template(
        self,
        phone: str,
        template_name: str,
        body_params: Sequence[str],
        button_suffix: Optional[str] = None,
        header_image: Optional[dict[str, str]] = None,
        language_code: Optional[str] = None,
    ) -> bool:
        """Send a pre-approved template message."""
        if not self.config.has_credentials:
            logger.warning("whatsapp_credentials_missing", to=phone, kind="template",
                           template=template_name)
            return False

        components = build_template_components(body_params, button_suffix, header_image)
        payload = build_template_payload(
            phone, template_name, language_code or self.config.language_code, components,
        )
        logger.info("whatsapp_template_sending", to=phone, template=template_name)
        logger.debug("whatsapp_payload", payload=payload)
        return await self._post(payload, to=phone, kind="template", template=template_name)

    async def send_message(self, phone: str, message: OutboundMessage) -> bool:
        """Send a composed OutboundMessage."""
        return await self.send_template(
            phone,
            message.template_name,
            list(message.body_params),
            button_suffix=message.button_suffix,
            header_image=message.header_image,
            language_code=message.language_code,
        )

    # ── Transport + retry ─────────────────────────────────────

    async def _post(self, payload: dict[str, Any], **log_ctx: Any) -> bool:
        start = time.monotonic()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=wait_fixed(self.config.retry_delay_seconds),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=self._before_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt(payload, attempt.retry_state.attempt_number, log_ctx)
        except DeliveryError as e:
            self.metrics.record_failure(str(e))
            return False
        except httpx.TimeoutException as e:
            logger.error("whatsapp_timeout", error=repr(e), **log_ctx)
            self.metrics.record_failure("timeout")
            return False
        except httpx.HTTPError as e:
            logger.error("whatsapp_http_error", error=repr(e), **log_ctx)
            self.metrics.record_failure(type(e).__name__)
            return False

        self.metrics.record_send((time.monotonic() - start) * 1000)
        logger.info("whatsapp_sent", **log_ctx)
        return True

    async def _attempt(self, payload: dict[str, Any], attempt: int, log_ctx: dict[str, Any]) -> None:
        response = await self._get_client().post(
            self.messages_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )
        if response.is_success:
            return

        logger.warning("whatsapp_api_error", status_code=response.status_code,
                       attempt=attempt, response=response.text, **log_ctx)
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientDeliveryError(response.status_code, CHANNEL)
        raise PermanentDeliveryError(response.status_code, CHANNEL)

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self.metrics.record_retry()
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("whatsapp_retrying",
                       attempt=retry_state.attempt_number,
                       delay_s=self.config.retry_delay_seconds,
                       error=repr(error))

    # ── Health ────────────────────────────────────────────────

    def health(self) -> dict[str, Any]:
        return {
            "configured": self.config.has_credentials,
            **self.metrics.to_dict(),
        }
