"""Unit tests for the cron trigger CLI."""

import asyncio
import logging
import pytest
from unittest.mock import AsyncMock, MagicMock

from mail_jobs.cron_main import main, parse_args, run_cron_loop
from mail_jobs.errors import RemoteHttpError
from mail_jobs.http_client import CronHttpClient


def test_parse_args_defaults(monkeypatch):
    monkeypatch.setenv("MAIL_JOBS_BASE_URL", "https://app.example.com")
    monkeypatch.delenv("CRON_SECRET_TOKEN", raising=False)

    args = parse_args([])

    assert args.url == "https://app.example.com"
    assert args.token is None
    assert args.interval_seconds == 60.0
    assert args.once is False


def test_parse_args_explicit():
    args = parse_args(
        ["--url", "http://localhost:8000", "--token", "t", "--interval-seconds", "5", "--once"]
    )

    assert args.url == "http://localhost:8000"
    assert args.token == "t"
    assert args.interval_seconds == 5.0
    assert args.once is True


def test_main_without_url_exits(monkeypatch):
    monkeypatch.delenv("MAIL_JOBS_BASE_URL", raising=False)

    with pytest.raises(SystemExit) as exc_info:
        main([])

    assert exc_info.value.code == 1


@pytest.mark.asyncio
async def test_run_cron_loop_once():
    """Test a single tick."""
    client = MagicMock(spec=CronHttpClient)
    client.trigger_tick = AsyncMock(return_value={"queue": {"processed": 3}})

    failures = await run_cron_loop(
        client, 60, logging.getLogger(__name__), asyncio.Event(), once=True
    )

    assert failures == 0
    client.trigger_tick.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_cron_loop_survives_failures_until_shutdown():
    """Test that a failing tick does not stop the loop."""
    shutdown_event = asyncio.Event()
    calls = []

    async def trigger_tick():
        calls.append(1)
        if len(calls) == 3:
            shutdown_event.set()
        raise RemoteHttpError(502, "bad gateway")

    client = MagicMock(spec=CronHttpClient)
    client.trigger_tick = trigger_tick

    failures = await run_cron_loop(
        client, 0.01, logging.getLogger(__name__), shutdown_event
    )

    assert failures == 3
    assert len(calls) == 3
