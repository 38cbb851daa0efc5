"""
Tests for the sync HTTP client with a mocked aiohttp session.
"""

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from scholartrack.client.sync_client import SyncClient, SyncError, ServerUnavailableError


def fake_response(status=200, body=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body if body is not None else {})
    response.text = AsyncMock(return_value=text)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def healthy():
    return fake_response(body={"status": "ok", "timestamp": "2024-09-01T09:00:00Z"})


@pytest.fixture
def session():
    mock_session = MagicMock()
    mock_session.close = AsyncMock()
    return mock_session


@pytest.fixture
def client(session):
    return SyncClient("http://localhost:5000/api/", session=session)


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_healthy_server(self, client, session):
        session.request = MagicMock(return_value=healthy())
        assert await client.health_check() is True
        session.request.assert_called_once_with("GET", "http://localhost:5000/api/health", json=None)

    @pytest.mark.asyncio
    async def test_unreachable_server(self, client, session):
        session.request = MagicMock(side_effect=aiohttp.ClientConnectionError("connection refused"))
        assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_error_status(self, client, session):
        session.request = MagicMock(return_value=fake_response(status=503, text="maintenance"))
        assert await client.health_check() is False


class TestDownSync:

    @pytest.mark.asyncio
    async def test_checks_health_before_pulling(self, client, session):
        data = {"students": [], "classes": [], "transactions": []}
        session.request = MagicMock(side_effect=[
            healthy(),
            fake_response(body={"message": "Data retrieved successfully", "data": data}),
        ])

        assert await client.down_sync() == data
        urls = [call.args[1] for call in session.request.call_args_list]
        assert urls == ["http://localhost:5000/api/health", "http://localhost:5000/api/sync/down"]

    @pytest.mark.asyncio
    async def test_unavailable_server_is_not_pulled(self, client, session):
        session.request = MagicMock(side_effect=aiohttp.ClientConnectionError("connection refused"))

        with pytest.raises(ServerUnavailableError):
            await client.down_sync()
        assert session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_missing_data_payload(self, client, session):
        session.request = MagicMock(side_effect=[healthy(), fake_response(body={"message": "?"})])
        with pytest.raises(SyncError):
            await client.down_sync()


class TestUpAndFullSync:

    @pytest.mark.asyncio
    async def test_up_sync_posts_dataset(self, client, session):
        dataset = {"students": [], "classes": [{"id": "c1", "name": "Period 1", "createdAt": "2024-09-01"}]}
        session.request = MagicMock(return_value=fake_response(body={"synced": {"classes": 1}}))

        response = await client.up_sync(dataset)

        assert response["synced"]["classes"] == 1
        session.request.assert_called_once_with("POST", "http://localhost:5000/api/sync/up", json=dataset)

    @pytest.mark.asyncio
    async def test_server_error_carries_status(self, client, session):
        session.request = MagicMock(return_value=fake_response(status=500, text="boom"))

        with pytest.raises(SyncError) as exc_info:
            await client.up_sync({})

        assert exc_info.value.status_code == 500
        assert not isinstance(exc_info.value, ServerUnavailableError)

    @pytest.mark.asyncio
    async def test_conflict_status(self, client, session):
        session.request = MagicMock(return_value=fake_response(status=409, text='{"detail": "conflict"}'))
        with pytest.raises(SyncError) as exc_info:
            await client.up_sync({})
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_other_client_errors(self, client, session):
        session.request = MagicMock(side_effect=aiohttp.ClientPayloadError("truncated body"))
        with pytest.raises(SyncError) as exc_info:
            await client.up_sync({})
        assert not isinstance(exc_info.value, ServerUnavailableError)

    @pytest.mark.asyncio
    async def test_full_sync_requires_data(self, client, session):
        session.request = MagicMock(return_value=fake_response(body={"synced": {}}))
        with pytest.raises(SyncError):
            await client.full_sync({})

    @pytest.mark.asyncio
    async def test_full_sync(self, client, session):
        body = {"synced": {"students": 0}, "data": {"students": []}}
        session.request = MagicMock(return_value=fake_response(body=body))
        assert await client.full_sync({}) == body


class TestSessionOwnership:

    @pytest.mark.asyncio
    async def test_injected_session_is_not_closed(self, session):
        async with SyncClient("http://localhost:5000/api", session=session):
            pass
        session.close.assert_not_awaited()
