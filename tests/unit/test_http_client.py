"""Unit tests for HTTP client."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp

from mail_jobs.errors import RemoteHttpError
from mail_jobs.http_client import CronHttpClient


def _session_returning(status, body="", data=None):
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=body)
    resp.json = AsyncMock(return_value=data)
    session = MagicMock()
    session.post.return_value.__aenter__.return_value = resp
    session.post.return_value.__aexit__.return_value = False
    return session


@pytest.mark.asyncio
async def test_trigger_tick_success():
    """Test that a tick summary is returned."""
    client = CronHttpClient("https://app.example.com/", token="s3cret")
    summary = {"queue": {"processed": 2}}
    session = _session_returning(200, data=summary)

    with patch("aiohttp.ClientSession") as mock_session:
        mock_session.return_value.__aenter__.return_value = session
        mock_session.return_value.__aexit__.return_value = False
        result = await client.trigger_tick()

    assert result == summary
    assert session.post.call_args.args[0] == "https://app.example.com/cron/messaging"
    assert session.post.call_args.kwargs["headers"] == {"Authorization": "Bearer s3cret"}


@pytest.mark.asyncio
async def test_trigger_tick_without_token_sends_no_auth_header():
    client = CronHttpClient("https://app.example.com")
    session = _session_returning(200, data={})

    with patch("aiohttp.ClientSession") as mock_session:
        mock_session.return_value.__aenter__.return_value = session
        mock_session.return_value.__aexit__.return_value = False
        await client.trigger_tick()

    assert session.post.call_args.kwargs["headers"] == {}


@pytest.mark.asyncio
async def test_trigger_tick_unauthorized():
    """Test that a rejected token raises RemoteHttpError."""
    client = CronHttpClient("https://app.example.com", token="wrong")
    session = _session_returning(401, body='{"detail":"Unauthorized"}')

    with patch("aiohttp.ClientSession") as mock_session:
        mock_session.return_value.__aenter__.return_value = session
        mock_session.return_value.__aexit__.return_value = False
        with pytest.raises(RemoteHttpError) as exc_info:
            await client.trigger_tick()

    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_trigger_tick_server_error():
    client = CronHttpClient("https://app.example.com")
    session = _session_returning(500, body="Internal Server Error")

    with patch("aiohttp.ClientSession") as mock_session:
        mock_session.return_value.__aenter__.return_value = session
        mock_session.return_value.__aexit__.return_value = False
        with pytest.raises(RemoteHttpError) as exc_info:
            await client.trigger_tick()

    assert exc_info.value.status_code == 500
    assert exc_info.value.response_body == "Internal Server Error"


@pytest.mark.asyncio
async def test_trigger_tick_network_error():
    """Test that network errors surface as status 0."""
    client = CronHttpClient("https://app.example.com")
    session = MagicMock()
    session.post.side_effect = aiohttp.ClientConnectionError("refused")

    with patch("aiohttp.ClientSession") as mock_session:
        mock_session.return_value.__aenter__.return_value = session
        mock_session.return_value.__aexit__.return_value = False
        with pytest.raises(RemoteHttpError) as exc_info:
            await client.trigger_tick()

    assert exc_info.value.status_code == 0
