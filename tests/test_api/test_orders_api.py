"""Tests for the orders and health API routes."""

from __future__ import annotations

import pytest

from marketplace_escrow.api.routes import health

from conftest import BUYER, PROVIDER, STRANGER


class TestOrdersAPI:
    @pytest.mark.asyncio
    async def test_create_and_get(self, client) -> None:
        created = await client.post(
            "/api/orders",
            json={
                "providerIds": [PROVIDER],
                "jobIds": ["job_1"],
                "agreedPrice": 1500.5,
                "currency": "eur",
            },
            headers={"X-User-ID": BUYER},
        )

        assert created.status_code == 201, created.text
        order = created.json()
        assert order["buyerId"] == BUYER
        assert order["currency"] == "EUR"
        assert order["agreedPrice"] == 1500.5
        assert order["status"] == "active"
        assert order["escrowFunded"] is False
        assert order["metadata"] is None
        assert order["version"] == 1

        fetched = await client.get(
            f"/api/orders/{order['id']}", headers={"X-User-ID": PROVIDER}
        )
        assert fetched.status_code == 200
        assert fetched.json()["id"] == order["id"]

    @pytest.mark.asyncio
    async def test_create_validation(self, client) -> None:
        response = await client.post(
            "/api/orders",
            json={"providerIds": [], "agreedPrice": 10, "currency": "USD"},
            headers={"X-User-ID": BUYER},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unsupported_currency(self, client) -> None:
        response = await client.post(
            "/api/orders",
            json={"providerIds": [PROVIDER], "agreedPrice": 10, "currency": "XYZ"},
            headers={"X-User-ID": BUYER},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_lifecycle_conflicts(self, client) -> None:
        created = await client.post(
            "/api/orders",
            json={"providerIds": [PROVIDER], "agreedPrice": 100, "currency": "USD"},
            headers={"X-User-ID": BUYER},
        )
        order_id = created.json()["id"]

        forbidden = await client.get(
            f"/api/orders/{order_id}", headers={"X-User-ID": STRANGER}
        )
        assert forbidden.status_code == 403

        disputed = await client.post(
            f"/api/orders/{order_id}/dispute",
            json={"reason": "no response"},
            headers={"X-User-ID": BUYER},
        )
        assert disputed.json()["status"] == "disputed"
        assert disputed.json()["metadata"] == {"disputeReason": "no response"}

        conflict = await client.post(
            f"/api/orders/{order_id}/cancel", headers={"X-User-ID": BUYER}
        )
        assert conflict.status_code == 409
        assert conflict.json()["error"] == "INVALID_STATE_TRANSITION"


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client, db_engine, fake_redis, monkeypatch) -> None:
        monkeypatch.setattr(health, "get_engine", lambda: db_engine)
        monkeypatch.setattr(health, "get_redis", lambda: fake_redis)

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "version": "0.1.0",
            "database": "healthy",
            "redis": "healthy",
        }

    @pytest.mark.asyncio
    async def test_degraded_without_redis(self, client, db_engine, monkeypatch) -> None:
        def no_redis():
            raise RuntimeError("Redis not initialized")

        monkeypatch.setattr(health, "get_engine", lambda: db_engine)
        monkeypatch.setattr(health, "get_redis", no_redis)

        response = await client.get("/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["database"] == "healthy"
