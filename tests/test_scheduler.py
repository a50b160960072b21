"""
Tests for stage dispatch and the review scheduler.

Covers:
  - Opening text before stage 0
  - Due-set timing and the 1439/1440 minute boundary
  - One stage per customer per tick, in order
  - Flags set only after acceptance, never cleared
  - Inactive customers, deleted companies and companies without a review
    link are skipped
  - Per-customer failure isolation
  - Background loop start/stop
"""
import asyncio
import pytest
from dataclasses import replace
from datetime import timedelta

from core.scheduler import ReviewScheduler
from models.schemas import Company, ReviewCustomer, ReviewStage

from conftest import REVIEW_LINK, T0, FakeWhatsAppApi, StubChannel


def minutes(n):
    return timedelta(minutes=n)


# ──────────────────────────────────────────────────────────────
#  StageDispatcher
# ──────────────────────────────────────────────────────────────

class TestStageDispatcher:
    @pytest.fixture
    def company(self):
        return Company(id=1, name="Dreamers Solar", review_link=REVIEW_LINK)

    @pytest.fixture
    def customer(self):
        return ReviewCustomer(id=7, phone_number="919876543210", company_id=1)

    @pytest.mark.asyncio
    async def test_sends_composed_template(self, make_dispatcher, customer, company):
        channel = StubChannel()
        assert await make_dispatcher(channel).send(customer, company, ReviewStage.FIRST_REMINDER) is True
        phone, msg = channel.sent[0]
        assert phone == "919876543210"
        assert msg.template_name == "review_reminder_day1"
        assert msg.button_suffix == "7"
        assert channel.texts == []

    @pytest.mark.asyncio
    async def test_opening_text_before_stage0_only(self, make_dispatcher, wa_config, customer, company):
        channel = StubChannel()
        dispatcher = make_dispatcher(channel, replace(wa_config, send_opening_text=True))
        await dispatcher.send(customer, company, ReviewStage.INITIAL)
        await dispatcher.send(customer, company, ReviewStage.FIRST_REMINDER)
        assert channel.texts == [("919876543210", "Hi")]
        assert len(channel.sent) == 2

    @pytest.mark.asyncio
    async def test_opening_text_goes_over_the_wire_first(self, make_channel, make_dispatcher,
                                                         wa_config, customer, company):
        config = replace(wa_config, send_opening_text=True)
        api = FakeWhatsAppApi()
        dispatcher = make_dispatcher(make_channel(api, config), config)
        assert await dispatcher.send(customer, company, ReviewStage.INITIAL) is True
        assert [p["type"] for p in api.payloads] == ["text", "template"]

    @pytest.mark.asyncio
    async def test_failure_reported(self, make_dispatcher, customer, company):
        channel = StubChannel(failing={"919876543210"})
        assert await make_dispatcher(channel).send(customer, company, ReviewStage.INITIAL) is False


# ──────────────────────────────────────────────────────────────
#  ReviewScheduler.run_cycle
# ──────────────────────────────────────────────────────────────

class TestSchedulerCycle:
    @pytest.fixture
    def channel(self):
        return StubChannel()

    @pytest.fixture
    def scheduler(self, store, channel, make_dispatcher, schedule_config):
        return ReviewScheduler(store, make_dispatcher(channel), schedule_config, clock=lambda: T0)

    @pytest.mark.asyncio
    async def test_stage0_retried_for_unsent(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)

        stats = await scheduler.run_cycle(T0)
        assert stats["stage0"] == 1
        assert (await store.get_customer(c.id)).stage0_sent is True
        assert channel.sent[0][1].template_name == "dreamers_solar_msg_1"

    @pytest.mark.asyncio
    async def test_stage1_boundary(self, store, scheduler):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        await store.mark_stage_sent(c.id, ReviewStage.INITIAL)

        stats = await scheduler.run_cycle(T0 + minutes(1439))
        assert stats["stage1"] == 0
        assert (await store.get_customer(c.id)).stage1_sent is False

        stats = await scheduler.run_cycle(T0 + minutes(1440))
        assert stats["stage1"] == 1
        assert (await store.get_customer(c.id)).stage1_sent is True

    @pytest.mark.asyncio
    async def test_stage2_boundary(self, store, scheduler):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        await store.mark_stage_sent(c.id, ReviewStage.INITIAL)
        await store.mark_stage_sent(c.id, ReviewStage.FIRST_REMINDER)

        assert (await scheduler.run_cycle(T0 + minutes(4319)))["stage2"] == 0
        assert (await scheduler.run_cycle(T0 + minutes(4320)))["stage2"] == 1

    @pytest.mark.asyncio
    async def test_one_stage_per_tick_in_order(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        late = T0 + timedelta(days=10)

        seen = []
        for _ in range(4):
            await scheduler.run_cycle(late)
            current = await store.get_customer(c.id)
            seen.append((current.stage0_sent, current.stage1_sent, current.stage2_sent))

        assert seen == [
            (True, False, False),
            (True, True, False),
            (True, True, True),
            (True, True, True),
        ]
        assert [m.template_name for _, m in channel.sent] == [
            "dreamers_solar_msg_1", "review_reminder_day1", "review_reminder_day3",
        ]

    @pytest.mark.asyncio
    async def test_reminder_carries_company_and_customer_id(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        await store.mark_stage_sent(c.id, ReviewStage.INITIAL)

        await scheduler.run_cycle(T0 + timedelta(days=1))
        msg = channel.sent[0][1]
        assert msg.body_params == ("Acme", REVIEW_LINK)
        assert msg.button_suffix == str(c.id)

    @pytest.mark.asyncio
    async def test_failed_send_leaves_flag_for_next_tick(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        channel.failing.add("919876543210")

        stats = await scheduler.run_cycle(T0)
        assert stats["failed"] == 1
        assert (await store.get_customer(c.id)).stage0_sent is False

        channel.failing.clear()
        await scheduler.run_cycle(T0)
        assert (await store.get_customer(c.id)).stage0_sent is True

    @pytest.mark.asyncio
    async def test_inactive_customers_skipped(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        await store.deactivate_customer(c.id)

        stats = await scheduler.run_cycle(T0 + timedelta(days=10))
        assert channel.sent == []
        assert stats == {"stage0": 0, "stage1": 0, "stage2": 0, "failed": 0, "skipped": 0}

    @pytest.mark.asyncio
    async def test_company_without_link_skipped(self, store, scheduler, channel):
        company = await store.create_company("No Link Co")
        c = await store.create_customer(company.id, "919876543210", created_at=T0)

        stats = await scheduler.run_cycle(T0)
        assert stats["skipped"] == 1
        assert channel.sent == []
        assert (await store.get_customer(c.id)).stage0_sent is False

    @pytest.mark.asyncio
    async def test_deleted_company_customers_skipped(self, store, scheduler, channel):
        gone = await store.create_company("Gone Co", review_link=REVIEW_LINK)
        kept = await store.create_company("Acme", review_link=REVIEW_LINK)
        await store.create_customer(gone.id, "919876543210", created_at=T0)
        c2 = await store.create_customer(kept.id, "919876543211", created_at=T0)
        await store.deactivate_company(gone.id)

        stats = await scheduler.run_cycle(T0)
        assert stats["skipped"] == 1
        assert stats["stage0"] == 1
        assert [phone for phone, _ in channel.sent] == [c2.phone_number]

    @pytest.mark.asyncio
    async def test_error_for_one_customer_does_not_block_others(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        bad = await store.create_customer(company.id, "919000000001", created_at=T0)
        good = await store.create_customer(company.id, "919000000002", created_at=T0)
        channel.raising.add("919000000001")

        stats = await scheduler.run_cycle(T0)
        assert stats["failed"] == 1
        assert stats["stage0"] == 1
        assert (await store.get_customer(bad.id)).stage0_sent is False
        assert (await store.get_customer(good.id)).stage0_sent is True

    @pytest.mark.asyncio
    async def test_processed_in_id_order(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        for phone in ("919000000003", "919000000001", "919000000002"):
            await store.create_customer(company.id, phone, created_at=T0)

        await scheduler.run_cycle(T0)
        assert [p for p, _ in channel.sent] == ["919000000003", "919000000001", "919000000002"]

    @pytest.mark.asyncio
    async def test_flags_never_cleared(self, store, scheduler, channel):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        await scheduler.run_cycle(T0)
        channel.failing.add("919876543210")

        await scheduler.run_cycle(T0 + timedelta(days=10))
        current = await store.get_customer(c.id)
        assert current.stage0_sent is True
        assert current.stage1_sent is False

    @pytest.mark.asyncio
    async def test_health_records_last_cycle(self, store, scheduler):
        await scheduler.run_cycle(T0)
        health = scheduler.health()
        assert health["running"] is False
        assert health["last_cycle_at"] == T0.isoformat()
        assert health["last_cycle"]["stage0"] == 0


# ──────────────────────────────────────────────────────────────
#  ReviewScheduler background loop
# ──────────────────────────────────────────────────────────────

class TestSchedulerLoop:
    @pytest.mark.asyncio
    async def test_start_polls_and_stop_exits(self, store, make_dispatcher, schedule_config):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        scheduler = ReviewScheduler(store, make_dispatcher(StubChannel()), schedule_config,
                                    clock=lambda: T0)

        await scheduler.start()
        assert scheduler.running is True
        for _ in range(100):
            if (await store.get_customer(c.id)).stage0_sent:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert scheduler.running is False
        assert (await store.get_customer(c.id)).stage0_sent is True

    @pytest.mark.asyncio
    async def test_cycle_errors_do_not_kill_loop(self, store, make_dispatcher, schedule_config):
        scheduler = ReviewScheduler(store, make_dispatcher(StubChannel()), schedule_config,
                                    clock=lambda: T0)
        calls = 0
        original = store.list_due

        async def flaky_list_due(stage, cutoff=None):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("database unavailable")
            return await original(stage, cutoff)

        store.list_due = flaky_list_due
        await scheduler.start()
        for _ in range(100):
            if calls > 3:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        assert calls > 3

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_send(self, store, make_dispatcher, schedule_config):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        started = asyncio.Event()

        class SlowChannel(StubChannel):
            async def send_message(self, phone, message):
                started.set()
                await asyncio.sleep(0.05)
                return await super().send_message(phone, message)

        scheduler = ReviewScheduler(store, make_dispatcher(SlowChannel()), schedule_config,
                                    clock=lambda: T0)
        await scheduler.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await scheduler.stop()
        assert (await store.get_customer(c.id)).stage0_sent is True

    @pytest.mark.asyncio
    async def test_stop_cancels_after_grace(self, store, make_dispatcher, schedule_config):
        company = await store.create_company("Acme", review_link=REVIEW_LINK)
        c = await store.create_customer(company.id, "919876543210", created_at=T0)
        started = asyncio.Event()

        class HungChannel(StubChannel):
            async def send_message(self, phone, message):
                started.set()
                await asyncio.sleep(60)
                return True

        config = replace(schedule_config, shutdown_grace_seconds=0.05)
        scheduler = ReviewScheduler(store, make_dispatcher(HungChannel()), config, clock=lambda: T0)
        await scheduler.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await scheduler.stop()
        assert scheduler.running is False
        assert (await store.get_customer(c.id)).stage0_sent is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, store, make_dispatcher, schedule_config):
        scheduler = ReviewScheduler(store, make_dispatcher(StubChannel()), schedule_config)
        await scheduler.start()
        task = scheduler._task
        await scheduler.start()
        assert scheduler._task is task
        await scheduler.stop()
