"""
Review Scheduler — background loop that drives every customer through the
review sequence.

Runs as a background task inside the FastAPI lifespan.

Each tick:
    snapshot the three due-sets from the store
      stage 0: active, stage0 not sent                      (retry of intake)
      stage 1: active, stage0 sent, stage1 not, created_at <= now - stage1 delay
      stage 2: active, stage1 sent, stage2 not, created_at <= now - stage2 delay
    → compose + send each customer in id order
    → set the stage flag only after the API accepted the message

Failures leave the flag off, so the customer is simply due again next tick.
The intake path may send stage 0 at the same moment a tick does; that rare
duplicate message is an accepted risk, there is no cross-process lock.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config.settings import ScheduleConfig
from core.dispatch import StageDispatcher
from database.store_base import BaseReviewStore
from models.schemas import Company, ReviewCustomer, ReviewStage

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewScheduler:
    """
    Polls the review store and sends whatever is due.

    Configure poll interval and delays in settings:
        schedule:
          polling_interval_seconds: 3600
          stage1_delay_minutes: 1440
          stage2_delay_minutes: 4320
    """

    def __init__(
        self,
        store: BaseReviewStore,
        dispatcher: StageDispatcher,
        config: ScheduleConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.config = config
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.last_cycle: dict[str, int] = {}
        self.last_cycle_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="review_scheduler")
        logger.info("review_scheduler_started",
                    interval_s=self.config.polling_interval_seconds,
                    stage1_delay_min=self.config.stage1_delay_minutes,
                    stage2_delay_min=self.config.stage2_delay_minutes)

    async def stop(self) -> None:
        """
        Ask the loop to stop and wait for it.

        An in-flight send is allowed to finish; the loop exits before the next
        customer. Only if that takes longer than the grace period is the task
        cancelled.
        """
        self._stop_event.set()
        task, self._task = self._task, None
        if task and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.config.shutdown_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("review_scheduler_stop_timeout",
                               grace_s=self.config.shutdown_grace_seconds)
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("review_scheduler_stopped")

    async def _poll_loop(self) -> None:
        """Main polling loop — runs until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("review_cycle_error", error=str(e), error_type=type(e).__name__)

            try:
                await asyncio.wait_for(self._stop_event.wait(),
                                       timeout=self.config.polling_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Single tick over all three stages.

        Returns counts: {"stage0": N, "stage1": N, "stage2": N, "failed": N, "skipped": N}
        """
        now = now or self._clock()
        stats = {"stage0": 0, "stage1": 0, "stage2": 0, "failed": 0, "skipped": 0}
        logger.debug("review_cycle_started", now=now.isoformat())

        cutoffs = {
            ReviewStage.INITIAL: None,
            ReviewStage.FIRST_REMINDER: now - timedelta(minutes=self.config.stage1_delay_minutes),
            ReviewStage.FINAL_REMINDER: now - timedelta(minutes=self.config.stage2_delay_minutes),
        }

        # Snapshot first so a customer lands in at most one due-set per tick
        due_sets: list[tuple[ReviewStage, list[ReviewCustomer]]] = []
        for stage, cutoff in cutoffs.items():
            due = await self.store.list_due(stage, cutoff)
            if due:
                logger.info("review_stage_due", stage=int(stage), count=len(due),
                            cutoff=cutoff.isoformat() if cutoff else None)
            due_sets.append((stage, due))

        companies: dict[int, Optional[Company]] = {}
        for stage, due in due_sets:
            for customer in due:
                if self._stop_event.is_set():
                    logger.info("review_cycle_interrupted", stage=int(stage))
                    return self._finish(stats, now)
                await self._process_customer(customer, stage, companies, stats)

        return self._finish(stats, now)

    async def _process_customer(
        self,
        customer: ReviewCustomer,
        stage: ReviewStage,
        companies: dict[int, Optional[Company]],
        stats: dict[str, int],
    ) -> None:
        try:
            if customer.company_id not in companies:
                companies[customer.company_id] = await self.store.get_company(customer.company_id)
            company = companies[customer.company_id]

            if company is None or not company.has_review_link:
                logger.warning("review_customer_skipped",
                               customer_id=customer.id, company_id=customer.company_id,
                               reason="company unavailable or has no review link")
                stats["skipped"] += 1
                return

            if await self.dispatcher.send(customer, company, stage):
                await self.store.mark_stage_sent(customer.id, stage)
                stats[f"stage{int(stage)}"] += 1
                logger.info("review_stage_sent", customer_id=customer.id,
                            phone=customer.phone_number, stage=int(stage))
            else:
                stats["failed"] += 1
                logger.warning("review_stage_retry_next_cycle", customer_id=customer.id,
                               phone=customer.phone_number, stage=int(stage))
        except Exception as e:
            stats["failed"] += 1
            logger.error("review_customer_error", customer_id=customer.id,
                         stage=int(stage), error=str(e))

    def _finish(self, stats: dict[str, int], now: datetime) -> dict[str, int]:
        self.last_cycle = stats
        self.last_cycle_at = now
        if any(stats.values()):
            logger.info("review_cycle_complete", **stats)
        return stats

    def health(self) -> dict:
        return {
            "running": self.running,
            "interval_s": self.config.polling_interval_seconds,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_cycle": self.last_cycle,
        }
