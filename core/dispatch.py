"""
Stage dispatch — compose and deliver one review stage to one customer.

Shared by the intake path (inline stage 0) and the scheduler (stage 0
retries, stages 1 and 2). Returns whether the message was accepted by the
API; persisting the flag is the caller's job.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Awaitable, Callable

from channels.whatsapp_adapter import WhatsAppChannel
from config.settings import WhatsAppConfig
from core.composer import MessageComposer
from models.schemas import Company, ReviewCustomer, ReviewStage

logger = structlog.get_logger()


class StageDispatcher:

    def __init__(
        self,
        composer: MessageComposer,
        channel: WhatsAppChannel,
        config: WhatsAppConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.composer = composer
        self.channel = channel
        self.config = config
        self._sleep = sleep

    async def send(self, customer: ReviewCustomer, company: Company, stage: ReviewStage) -> bool:
        if stage is ReviewStage.INITIAL and self.config.send_opening_text:
            # Result ignored: the template is what counts as delivery
            await self.channel.send_text(customer.phone_number, self.config.opening_text)
            await self._sleep(self.config.retry_delay_seconds)

        message = self.composer.compose(customer, company, stage)
        sent = await self.channel.send_message(customer.phone_number, message)
        if not sent:
            logger.warning("review_stage_not_sent",
                           customer_id=customer.id, phone=customer.phone_number,
                           stage=int(stage), template=message.template_name)
        return sent
