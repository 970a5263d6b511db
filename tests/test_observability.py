from __future__ import annotations

import io
import json

import pytest
from httpx import ASGITransport, AsyncClient
from loguru import logger

from storefront_rewards.app import create_app
from storefront_rewards.core.logging import configure_logging
from storefront_rewards.core.settings import settings
from storefront_rewards.observability.rewards import get_rewards_store
from storefront_rewards.observability.tracing import parse_otlp_headers


def test_rewards_store_snapshot_counts_events() -> None:
    store = get_rewards_store()

    store.record_bracket_completion(2000)
    store.record_bracket_completion(0, custom_tier=True)
    store.record_badge_award("first-order")
    store.record_spin("points")
    store.record_referral_event("converted")
    store.record_milestone_award("first-purchase")
    store.record_pipeline_run(degraded=True, failed_steps=["badges"])

    snapshot = store.snapshot().as_dict()
    assert snapshot["brackets"] == {"cycles_completed": 2, "points_awarded": 2000, "custom_tier": 1}
    assert snapshot["badges"] == {"total_awarded": 1, "badge:first-order": 1}
    assert snapshot["spins"] == {"total": 1, "reward:points": 1}
    assert snapshot["referrals"] == {"converted": 1}
    assert snapshot["milestones"]["milestone:first-purchase"] == 1
    assert snapshot["pipeline"] == {"runs": 1, "degraded": 1, "failed:badges": 1}

    store.reset()
    assert store.snapshot().as_dict()["brackets"] == {}


def test_parse_otlp_headers() -> None:
    assert parse_otlp_headers(None) is None
    assert parse_otlp_headers("") is None
    assert parse_otlp_headers("authorization=Bearer abc, x-team = rewards,broken") == {
        "authorization": "Bearer abc",
        "x-team": "rewards",
    }


@pytest.mark.asyncio
async def test_rewards_snapshot_requires_key(reward_catalog) -> None:
    app = create_app(catalog=reward_catalog)

    previous_key = settings.checkout_api_key
    settings.checkout_api_key = "snapshot-key"

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            denied = await client.get("/api/v1/observability/rewards")
            allowed = await client.get(
                "/api/v1/observability/rewards",
                headers={"X-API-Key": "snapshot-key"},
            )
        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json()["pipeline"] == {}
    finally:
        settings.checkout_api_key = previous_key


@pytest.mark.asyncio
async def test_catalog_dependency_reports_unloaded_catalog() -> None:
    app = create_app()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/rewards/tiers")

    assert response.status_code == 503


def test_json_logs_promote_reward_context() -> None:
    buffer = io.StringIO()
    configure_logging(service_name="storefront-rewards", environment="test", version="0.0.0", stream=buffer)

    logger.bind(user_id="user-1", order_id="order-9", attempt=2).warning("Bracket cycle changed concurrently")
    try:
        raise RuntimeError("badge store offline")
    except RuntimeError:
        logger.bind(user_id="user-1").exception("Reward step failed", step="badges")

    first, second = [json.loads(line) for line in buffer.getvalue().splitlines()]
    assert first["service"] == "storefront-rewards"
    assert first["level"] == "warning"
    assert first["user_id"] == "user-1"
    assert first["order_id"] == "order-9"
    assert first["context"] == {"attempt": 2}
    assert "error" not in first

    assert second["step"] == "badges"
    assert "context" not in second
    assert second["error"] == {"type": "RuntimeError", "message": "badge store offline"}
