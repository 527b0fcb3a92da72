"""Tests for delivery record and queue endpoints."""

from datetime import date

import pytest
from httpx import AsyncClient

from greeter.models.delivery_record import DeliveryStatus
from greeter.models.queued_message import QueueName

pytestmark = pytest.mark.asyncio


class TestDeliveries:
    """Tests for GET /api/deliveries."""

    async def test_get_delivery(self, client: AsyncClient, services, user_factory):
        user = await user_factory()
        record = await services.tracker.create(user.id, date(2024, 3, 15))

        response = await client.get(f"/api/deliveries/{record.key}")

        assert response.status_code == 200
        data = response.json()
        assert data["key"] == f"{user.id}_2024-03-15"
        assert data["userId"] == str(user.id)
        assert data["status"] == "PENDING"
        assert data["attempts"] == 0

    async def test_get_missing_delivery(self, client: AsyncClient):
        response = await client.get("/api/deliveries/nobody_2024-03-15")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    async def test_list_failed_by_default(self, client: AsyncClient, services, user_factory):
        failed = await user_factory(first_name="Failed")
        pending = await user_factory(first_name="Pending")
        record = await services.tracker.create(failed.id, date(2024, 3, 15))
        await services.tracker.create(pending.id, date(2024, 3, 15))
        await services.tracker.advance_status(record.key, DeliveryStatus.FAILED, error="HTTP 500")

        response = await client.get("/api/deliveries")

        assert response.status_code == 200
        data = response.json()
        assert [r["key"] for r in data] == [record.key]
        assert data[0]["lastError"] == "HTTP 500"

    async def test_list_by_status(self, client: AsyncClient, services, user_factory):
        user = await user_factory()
        await services.tracker.create(user.id, date(2024, 3, 15))

        response = await client.get("/api/deliveries", params={"status": "PENDING"})

        assert len(response.json()) == 1

    async def test_list_unknown_status(self, client: AsyncClient):
        response = await client.get("/api/deliveries", params={"status": "LOST"})

        assert response.status_code == 400


class TestQueueDepths:
    """Tests for GET /api/queues."""

    async def test_empty_queues(self, client: AsyncClient):
        response = await client.get("/api/queues")

        assert response.status_code == 200
        assert response.json() == {"main": 0, "deadLetter": 0}

    async def test_counts_messages(self, client: AsyncClient, services):
        await services.transport.enqueue(QueueName.MAIN, {"n": 1})
        await services.transport.enqueue(QueueName.MAIN, {"n": 2})
        await services.transport.enqueue(QueueName.DEAD_LETTER, {"n": 3})

        response = await client.get("/api/queues")

        assert response.json() == {"main": 2, "deadLetter": 1}
