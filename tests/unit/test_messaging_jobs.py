"""Unit tests for the messaging cron orchestrator."""

import pytest
import time
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

from fakes import InMemorySettingsStore
from mail_jobs.messaging_jobs import (
    AUTO_REPLY_JOB_TYPE,
    DISPATCH_JOB_TYPE,
    MessagingCron,
    compute_slot_key,
    should_schedule_auto_reply,
)
from mail_jobs.models import JobStatus, MessagingSettings
from mail_jobs.registry import JobRegistry


def _settings(user_id="user-1", **kwargs):
    params = dict(imap_host="imap.example.com", smtp_host="smtp.example.com")
    params.update(kwargs)
    return MessagingSettings(user_id=user_id, **params)


@pytest.fixture
def cron(job_service, scheduled_service, settings_store, inbox_sweeper, logger):
    return MessagingCron(
        job_service, scheduled_service, settings_store, inbox_sweeper, logger=logger
    )


def test_compute_slot_key():
    """Test that a slot is floor(epoch_ms / interval_ms)."""
    reference = datetime(2024, 6, 1, 12, 0, 30, tzinfo=timezone.utc)
    epoch_ms = int(reference.timestamp() * 1000)

    assert compute_slot_key(reference, 60_000) == epoch_ms // 60_000
    assert compute_slot_key(reference, 60_000) == compute_slot_key(
        reference + timedelta(seconds=29), 60_000
    )
    assert compute_slot_key(reference + timedelta(seconds=30), 60_000) == (
        compute_slot_key(reference, 60_000) + 1
    )


@pytest.fixture
def non_utc_local_time(monkeypatch):
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "Europe/Paris")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def test_compute_slot_key_treats_naive_time_as_utc(non_utc_local_time, fixed_now):
    naive = fixed_now.replace(tzinfo=None)

    assert compute_slot_key(naive, 60_000) == compute_slot_key(fixed_now, 60_000)


def test_permanent_auto_reply_always_qualifies(fixed_now):
    assert should_schedule_auto_reply(_settings(auto_reply_enabled=True), fixed_now)


def test_disabled_settings_never_qualify(fixed_now):
    assert not should_schedule_auto_reply(_settings(), fixed_now)


def test_vacation_window_is_inclusive_of_whole_days():
    settings = _settings(
        vacation_mode_enabled=True,
        vacation_start_date=date(2024, 6, 1),
        vacation_end_date=date(2024, 6, 3),
    )

    assert should_schedule_auto_reply(
        settings, datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)
    )
    assert should_schedule_auto_reply(
        settings, datetime(2024, 6, 3, 23, 59, 59, tzinfo=timezone.utc)
    )
    assert not should_schedule_auto_reply(
        settings, datetime(2024, 6, 4, 0, 0, tzinfo=timezone.utc)
    )
    assert not should_schedule_auto_reply(
        settings, datetime(2024, 5, 31, 23, 59, tzinfo=timezone.utc)
    )


def test_vacation_without_dates_does_not_qualify(fixed_now):
    settings = _settings(vacation_mode_enabled=True, vacation_start_date=date(2024, 6, 1))

    assert not should_schedule_auto_reply(settings, fixed_now)


def test_vacation_with_inverted_dates_does_not_qualify(fixed_now):
    settings = _settings(
        vacation_mode_enabled=True,
        vacation_start_date=date(2024, 6, 5),
        vacation_end_date=date(2024, 6, 1),
    )

    assert not should_schedule_auto_reply(settings, fixed_now)


@pytest.mark.asyncio
async def test_cron_tick_enqueues_and_runs_dispatch(cron, job_store, fixed_now):
    """Test that one tick enqueues the dispatch job and runs it."""
    summary = await cron.run_messaging_cron_tick(now=fixed_now)

    scheduled = summary["scheduled"]["scheduled_emails"]
    assert scheduled["deduped"] is False
    assert summary["scheduled"]["auto_replies"] == {
        "requested": 0,
        "enqueued": 0,
        "deduped": 0,
    }
    assert summary["queue"]["processed"] == 1
    assert summary["queue"]["completed"] == 1
    assert summary["timestamp"] == fixed_now.isoformat()

    job = await job_store.find_job_by_dedupe_key(
        DISPATCH_JOB_TYPE, f"scheduled:{compute_slot_key(fixed_now, 60_000)}"
    )
    assert str(job.id) == scheduled["job_id"]
    assert job.status == JobStatus.SUCCEEDED
    assert job.priority == 100


@pytest.mark.asyncio
async def test_cron_tick_is_idempotent_within_slot(cron, job_store, fixed_now):
    """Test that repeated ticks in one slot enqueue nothing new."""
    await cron.run_messaging_cron_tick(now=fixed_now)
    second = await cron.run_messaging_cron_tick(now=fixed_now + timedelta(seconds=10))

    assert second["scheduled"]["scheduled_emails"]["deduped"] is True
    assert second["queue"]["processed"] == 0
    assert len(job_store.jobs) == 1


@pytest.mark.asyncio
async def test_cron_tick_next_slot_enqueues_again(cron, job_store, fixed_now):
    await cron.run_messaging_cron_tick(now=fixed_now)
    await cron.run_messaging_cron_tick(now=fixed_now + timedelta(minutes=1))

    assert len(job_store.jobs) == 2


@pytest.mark.asyncio
async def test_cron_tick_enqueues_auto_replies(
    job_service, scheduled_service, inbox_sweeper, job_store, fixed_now
):
    """Test that eligible users get one sweep job per slot."""
    settings_store = InMemorySettingsStore(
        [
            _settings("always", auto_reply_enabled=True),
            _settings(
                "vacation",
                vacation_mode_enabled=True,
                vacation_start_date=date(2024, 5, 30),
                vacation_end_date=date(2024, 6, 2),
            ),
            _settings(
                "back",
                vacation_mode_enabled=True,
                vacation_start_date=date(2024, 5, 1),
                vacation_end_date=date(2024, 5, 2),
            ),
            _settings("no-smtp", auto_reply_enabled=True, smtp_host=None),
        ]
    )
    cron = MessagingCron(job_service, scheduled_service, settings_store, inbox_sweeper)

    summary = await cron.run_messaging_cron_tick(now=fixed_now)

    assert summary["scheduled"]["auto_replies"] == {
        "requested": 4,
        "enqueued": 2,
        "deduped": 0,
    }
    assert sorted(inbox_sweeper.sweeps) == [("always", "skip"), ("vacation", "skip")]
    slot = compute_slot_key(fixed_now, 60_000)
    job = await job_store.find_job_by_dedupe_key(AUTO_REPLY_JOB_TYPE, f"always:{slot}")
    assert job.payload == {"user_id": "always", "bootstrap_mode": "skip"}
    assert job.priority == 50
    assert job.retry_backoff_ms == 120_000

    again = await cron.run_messaging_cron_tick(now=fixed_now)
    assert again["scheduled"]["auto_replies"]["deduped"] == 2


@pytest.mark.asyncio
async def test_dispatch_runs_before_auto_replies(
    job_service, scheduled_service, job_store, fixed_now
):
    order = []

    class RecordingSweeper:
        async def sweep(self, user_id, bootstrap_mode):
            order.append("sweep")

    async def dispatch(now=None):
        order.append("dispatch")
        return await real_dispatch(now)

    real_dispatch = scheduled_service.run_dispatch_cycle
    scheduled_service.run_dispatch_cycle = dispatch
    cron = MessagingCron(
        job_service,
        scheduled_service,
        InMemorySettingsStore([_settings(auto_reply_enabled=True)]),
        RecordingSweeper(),
    )

    await cron.run_messaging_cron_tick(now=fixed_now)

    assert order == ["dispatch", "sweep"]


@pytest.mark.asyncio
async def test_auto_reply_handler_rejects_missing_user(cron):
    handler = cron.registry.get_handler(AUTO_REPLY_JOB_TYPE)

    with pytest.raises(ValueError):
        await handler({"job": None, "logger": cron.logger}, {"user_id": ""})


@pytest.mark.asyncio
async def test_auto_reply_handler_passes_bootstrap_mode(cron, inbox_sweeper):
    handler = cron.registry.get_handler(AUTO_REPLY_JOB_TYPE)

    await handler({}, {"user_id": "u", "bootstrap_mode": "process"})
    await handler({}, {"user_id": "v", "bootstrap_mode": "bogus"})

    assert inbox_sweeper.sweeps == [("u", "process"), ("v", "skip")]


@pytest.mark.asyncio
async def test_cron_drain_includes_extra_handlers(
    job_service, scheduled_service, settings_store, inbox_sweeper, job_store, fixed_now
):
    """Test that merged handler types are drained by the tick."""
    extra = JobRegistry()
    handler = AsyncMock()
    extra.register("billing.sendInvoiceEmail", handler)
    cron = MessagingCron(
        job_service,
        scheduled_service,
        settings_store,
        inbox_sweeper,
        extra_handlers=extra,
    )
    await job_service.enqueue(
        type="billing.sendInvoiceEmail", payload={}, run_at=fixed_now - timedelta(minutes=1)
    )
    await job_service.enqueue(type="unrelated.job", run_at=fixed_now - timedelta(minutes=1))

    summary = await cron.run_messaging_cron_tick(now=fixed_now)

    assert summary["queue"]["processed"] == 2
    handler.assert_awaited_once()
    unrelated = (await job_store.list_jobs(type="unrelated.job"))[0]
    assert unrelated.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_cron_tick_accepts_naive_now(cron, job_store, non_utc_local_time, fixed_now):
    """Test that a naive `now` is read as UTC for the slot and the run time."""
    summary = await cron.run_messaging_cron_tick(now=fixed_now.replace(tzinfo=None))

    assert summary["queue"]["completed"] == 1
    assert summary["timestamp"] == fixed_now.isoformat()
    job = await job_store.find_job_by_dedupe_key(
        DISPATCH_JOB_TYPE, f"scheduled:{compute_slot_key(fixed_now, 60_000)}"
    )
    assert job.run_at == fixed_now

    again = await cron.run_messaging_cron_tick(now=fixed_now)
    assert again["scheduled"]["scheduled_emails"]["deduped"] is True
