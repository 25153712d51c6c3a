"""API tests for the REST and webhook endpoints."""
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.auth import create_access_token
from utils.factories import ProviderEventFactory, encode, sign


@pytest.mark.asyncio
async def test_health(async_client: AsyncClient) -> None:
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_balance_and_transactions(async_client: AsyncClient) -> None:
    balance = await async_client.get("/v1/balance")
    transactions = await async_client.get("/v1/balance/transactions", params={"page_size": 10})
    reconciliation = await async_client.get("/v1/balance/reconciliation")

    assert balance.status_code == 200
    assert Decimal(balance.json()["balance"]) == Decimal("50")
    assert transactions.json()["total"] == 1
    assert transactions.json()["items"][0]["type"] == "adjustment"
    assert reconciliation.json()["is_consistent"] is True


@pytest.mark.asyncio
async def test_requests_without_a_token_are_rejected(async_client: AsyncClient, user) -> None:
    from usage_billing.api.deps import get_current_user
    from usage_billing.main import app

    user_id = user.id
    app.dependency_overrides.pop(get_current_user)

    anonymous = await async_client.get("/v1/balance")
    forged = await async_client.get("/v1/balance", headers={"Authorization": "Bearer not-a-token"})
    authed = await async_client.get(
        "/v1/balance", headers={"Authorization": f"Bearer {create_access_token(user_id)}"}
    )

    assert anonymous.status_code == 401
    assert forged.status_code == 401
    assert authed.status_code == 200
    assert authed.json()["user_id"] == str(user_id)


@pytest.mark.asyncio
async def test_sandbox_session_lifecycle(async_client: AsyncClient) -> None:
    started = await async_client.post("/v1/usage/sandbox/sessions", json={"sandbox_id": "sbx_api"})
    assert started.status_code == 201
    session = started.json()

    end_time = datetime.fromisoformat(session["start_time"]) + timedelta(seconds=90)
    ended = await async_client.post(
        f"/v1/usage/sandbox/sessions/{session['session_id']}/end",
        json={"end_time": end_time.isoformat()},
    )

    assert ended.status_code == 200
    assert Decimal(ended.json()["provider_cost_usd"]) == Decimal("0.00336")
    assert Decimal(ended.json()["balance_after"]) == Decimal("49.99664")


@pytest.mark.asyncio
async def test_ending_unknown_session_returns_conflict(async_client: AsyncClient) -> None:
    response = await async_client.post(f"/v1/usage/sandbox/sessions/{uuid4()}/end")

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "InsufficientContextError"
    assert body["details"][0]["code"] == "insufficient_context"


@pytest.mark.asyncio
async def test_metering_endpoints(async_client: AsyncClient) -> None:
    deployment = await async_client.post("/v1/usage/deployments", json={"deployment_id": "dpl_api"})
    ai = await async_client.post(
        "/v1/usage/ai",
        json={"model_id": "anthropic/claude-sonnet-4.5", "input_tokens": 10000, "output_tokens": 2000},
    )
    breakdown = await async_client.get("/v1/usage/breakdown")

    assert deployment.status_code == 201
    assert Decimal(deployment.json()["provider_cost_usd"]) == Decimal("0.01")
    assert ai.status_code == 201
    assert Decimal(ai.json()["balance_charged_usd"]) == Decimal("0.06")
    resources = {item["resource"] for item in breakdown.json()["items"] if item["count"]}
    assert resources == {"deployment", "ai"}


@pytest.mark.asyncio
async def test_invalid_body_returns_422(async_client: AsyncClient) -> None:
    response = await async_client.post("/v1/usage/ai", json={"input_tokens": -1})

    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_plan_change_endpoints(async_client: AsyncClient, user, plans, make_subscription) -> None:
    await make_subscription(user, plans["STARTER"])
    pro_id = str(plans["PRO"].id)

    preview = await async_client.get("/v1/subscription/proration-preview", params={"new_plan_id": pro_id})
    assert preview.status_code == 200
    assert Decimal(preview.json()["immediate_charge"]) == Decimal("75")

    changed = await async_client.post("/v1/subscription/change-plan", json={"new_plan_id": pro_id})
    assert changed.status_code == 200
    assert changed.json()["plan_id"] == pro_id
    assert changed.json()["payment_transaction_id"] is not None

    pending = await async_client.get("/v1/subscription/pending-change")
    assert pending.status_code == 200
    assert pending.json() is None

    cancel = await async_client.delete("/v1/subscription/pending-change")
    assert cancel.status_code == 400

    grace = await async_client.get("/v1/subscription/grace-period")
    assert grace.json()["is_in_grace_period"] is False


@pytest.mark.asyncio
async def test_plan_preview_without_subscription_is_not_found(async_client: AsyncClient, plans) -> None:
    response = await async_client.get(
        "/v1/subscription/proration-preview", params={"new_plan_id": str(plans["PRO"].id)}
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_webhook_signature_checks(async_client: AsyncClient, webhook_secret: str) -> None:
    body = encode(ProviderEventFactory.payment(event="order.paid"))

    missing = await async_client.post("/webhooks/payments", content=body)
    mismatch = await async_client.post(
        "/webhooks/payments", content=body, headers={"x-provider-signature": sign(body, "other")}
    )
    garbage = b"{not json"
    malformed = await async_client.post(
        "/webhooks/payments", content=garbage, headers={"x-provider-signature": sign(garbage, webhook_secret)}
    )

    assert missing.status_code == 401
    assert mismatch.status_code == 403
    assert malformed.status_code == 400


@pytest.mark.asyncio
async def test_webhook_topup_is_acknowledged_and_credited(
    async_client: AsyncClient, db_session: AsyncSession, user, webhook_secret: str
) -> None:
    event = ProviderEventFactory.payment(
        notes={"user_id": str(user.id), "purchase_type": "balance_topup", "requested_balance": "25"},
        amount_minor=2750,
    )
    body = encode(event)
    headers = {"x-provider-signature": sign(body, webhook_secret), "x-provider-event-id": "evt_api_1"}

    first = await async_client.post("/webhooks/payments", content=body, headers=headers)
    replay = await async_client.post("/webhooks/payments", content=body, headers=headers)
    balance = await async_client.get("/v1/balance")

    assert first.status_code == 200
    assert first.json() == {"received": True}
    assert replay.status_code == 200
    assert Decimal(balance.json()["balance"]) == Decimal("75")


@pytest.mark.asyncio
async def test_offset_aware_timestamps_are_read_as_utc(async_client: AsyncClient) -> None:
    started = await async_client.post("/v1/usage/sandbox/sessions", json={"sandbox_id": "sbx_tz"})
    session = started.json()
    start = datetime.fromisoformat(session["start_time"])

    ended = await async_client.post(
        f"/v1/usage/sandbox/sessions/{session['session_id']}/end",
        json={"end_time": (start + timedelta(seconds=90)).isoformat() + "Z"},
    )
    storage = await async_client.post(
        "/v1/usage/storage",
        json={
            "size_gb": "1",
            "period_start": "2025-03-01T05:30:00+05:30",
            "period_end": "2025-04-01T00:00:00Z",
        },
    )
    breakdown = await async_client.get("/v1/usage/breakdown", params={"since": "2025-01-01T00:00:00Z"})

    assert ended.status_code == 200
    assert Decimal(ended.json()["provider_cost_usd"]) == Decimal("0.00336")
    assert storage.status_code == 201
    assert breakdown.status_code == 200
    assert {item["resource"] for item in breakdown.json()["items"] if item["count"]} == {"sandbox", "storage"}


@pytest.mark.asyncio
async def test_offset_end_time_before_start_is_rejected(async_client: AsyncClient) -> None:
    started = await async_client.post("/v1/usage/sandbox/sessions", json={"sandbox_id": "sbx_tz_early"})
    session = started.json()
    start = datetime.fromisoformat(session["start_time"])

    # Same wall-clock time at +05:30 is five and a half hours before the start
    early = start.replace(microsecond=0).isoformat() + "+05:30"
    response = await async_client.post(
        f"/v1/usage/sandbox/sessions/{session['session_id']}/end", json={"end_time": early}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"
