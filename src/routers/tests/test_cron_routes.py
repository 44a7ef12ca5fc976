"""Tests for the cron-triggered inactivity sync endpoint."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.config import Settings
from src.wearables.tests.conftest import (
    NOW,
    OTHER_USER_ID,
    TEST_USER_ID,
    FakeAccountRepository,
    FakeFitbitAPI,
    make_account,
)

CRON_URL = "/api/v1/cron/fitbit-sync"
AUTH = {"Authorization": "Bearer cron-s3cr3t"}


class TestCronAuth:
    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer nope"}, {"Authorization": "cron-s3cr3t"}])
    def test_rejected_before_any_work(
        self,
        client: TestClient,
        accounts: FakeAccountRepository,
        fitbit_api: FakeFitbitAPI,
        headers: dict[str, str],
    ) -> None:
        accounts.add(make_account(last_synced_at=NOW - timedelta(days=12)))

        response = client.get(CRON_URL, headers=headers)

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}
        assert "list_inactive" not in accounts.calls
        assert fitbit_api.requests == []

    def test_unset_secret_rejects(
        self, client: TestClient, settings: Settings, accounts: FakeAccountRepository
    ) -> None:
        settings.cron_secret = None
        response = client.get(CRON_URL, headers={"Authorization": "Bearer "})
        assert response.status_code == 401
        assert "list_inactive" not in accounts.calls


class TestCronRun:
    def test_syncs_inactive_accounts(
        self,
        client: TestClient,
        accounts: FakeAccountRepository,
        fitbit_api: FakeFitbitAPI,
    ) -> None:
        accounts.add(make_account(TEST_USER_ID, last_synced_at=NOW - timedelta(days=12)))
        accounts.add(make_account(OTHER_USER_ID, last_synced_at=NOW - timedelta(days=1)))
        fitbit_api.failures["/spo2/"] = 500

        response = client.get(CRON_URL, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "processed": 1,
            "successCount": 0,
            "failCount": 1,
            "results": [{"userIndex": 1, "success": False, "error": "Fitbit returned 500"}],
        }
        assert accounts.accounts[TEST_USER_ID].last_synced_at == NOW
        assert accounts.accounts[OTHER_USER_ID].last_synced_at == NOW - timedelta(days=1)

    def test_results_never_carry_user_ids(
        self, client: TestClient, accounts: FakeAccountRepository
    ) -> None:
        accounts.add(make_account(TEST_USER_ID, last_synced_at=NOW - timedelta(days=12)))

        response = client.get(CRON_URL, headers=AUTH)

        assert response.json()["results"] == [{"userIndex": 1, "success": True}]
        assert str(TEST_USER_ID) not in response.text

    def test_empty_batch(self, client: TestClient) -> None:
        response = client.get(CRON_URL, headers=AUTH)
        assert response.json() == {
            "success": True,
            "processed": 0,
            "successCount": 0,
            "failCount": 0,
            "results": [],
        }

    def test_scheduler_failure(self, app: FastAPI, client: TestClient) -> None:
        scheduler = AsyncMock()
        scheduler.run.side_effect = RuntimeError("pool exhausted")
        app.state.batch_scheduler = scheduler

        response = client.get(CRON_URL, headers=AUTH)

        assert response.status_code == 500
        assert response.json() == {"error": "Cron job failed"}


class TestHealth:
    def test_reports_database(self, client: TestClient) -> None:
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
