"""Tests for rate limiting on user registration."""

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.asyncio


def _user(i: int) -> dict:
    return {
        "firstName": f"User{i}",
        "lastName": "Test",
        "birthday": "1990-03-15",
        "location": "Europe/Paris",
    }


class TestRateLimiting:
    """Tests for rate limiting on POST /api/users."""

    async def test_rate_limit_allows_normal_usage(self, client: AsyncClient):
        """Should allow requests within rate limit."""
        for i in range(5):
            response = await client.post("/api/users", json=_user(i))
            assert response.status_code == 201

    async def test_rate_limit_blocks_excessive_requests(self, client: AsyncClient):
        """Should block requests exceeding 30/minute."""
        statuses = []
        for i in range(31):
            response = await client.post("/api/users", json=_user(i))
            statuses.append(response.status_code)

        assert statuses[:30] == [201] * 30
        assert statuses[30] == 429

    async def test_rate_limit_error_body(self, client: AsyncClient):
        """Should return the standard error body when rate limited."""
        for i in range(30):
            await client.post("/api/users", json=_user(i))

        response = await client.post("/api/users", json=_user(30))

        assert response.status_code == 429
        data = response.json()
        assert data["code"] == "rate_limited"
        assert "too many requests" in data["message"].lower()

    async def test_rate_limit_does_not_affect_reads(self, client: AsyncClient):
        """Listing users is not limited by registration."""
        for i in range(31):
            await client.post("/api/users", json=_user(i))

        response = await client.get("/api/users")

        assert response.status_code == 200
