import json
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
import stripe
from sqlmodel import select

from scopegen import billing
from scopegen.db import CreditLedger, Subscription, User, WebhookEvent, get_session, utcnow
from scopegen.errors import ApiError

pytestmark = pytest.mark.asyncio


def checkout_event(event_id="evt_1", product_type="pack", user_id="user-1", **extra):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "metadata": {"userId": user_id, "productType": product_type},
                **extra,
            }
        },
    }


def run_between(monkeypatch, method, hook):
    """Run ``hook`` once, right after the first ``session.<method>`` call made by billing."""
    original = billing.get_session
    fired = []

    @asynccontextmanager
    async def session_factory():
        async with original() as session:
            real = getattr(session, method)

            async def wrapped(*args, **kwargs):
                result = await real(*args, **kwargs)
                if not fired:
                    fired.append(True)
                    await hook()
                return result

            setattr(session, method, wrapped)
            yield session

    monkeypatch.setattr(billing, "get_session", session_factory)
    return fired


async def test_grant_credits_is_idempotent_per_reference(make_user):
    await make_user("user-1")
    assert await billing.grant_credits("user-1", 10, "pack", reference_id="cs_1") == 10
    assert await billing.grant_credits("user-1", 10, "pack", reference_id="cs_1") == 10
    assert await billing.grant_credits("user-1", 2, "manual") == 12

    entries = await billing.list_ledger("user-1")
    assert [entry.change_amount for entry in entries] == [2, 10]
    assert entries[0].balance_after == 12


async def test_grant_credits_drops_expired_balance(make_user):
    await make_user(
        "user-1",
        proposal_credits=4,
        credits_expire_at=utcnow() - timedelta(days=1),
    )
    balance = await billing.grant_credits("user-1", 1, "manual")
    assert balance == 1
    async with get_session() as session:
        user = await session.get(User, "user-1")
    assert user.credits_expire_at is None


async def test_grant_credits_only_extends_expiry(make_user):
    later = utcnow() + timedelta(days=100)
    sooner = utcnow() + timedelta(days=10)
    await make_user("user-1")
    await billing.grant_credits("user-1", 1, "pack", expires_at=later)
    await billing.grant_credits("user-1", 1, "pack", expires_at=sooner)
    status = await billing.get_status("user-1")
    assert status["availableCredits"] == 2
    assert status["creditsExpireAt"] == later


async def test_deduct_credit_consumes_and_records(make_user):
    await make_user("user-1", proposal_credits=1)
    assert await billing.deduct_credit("user-1", reference_id="42") == 0
    with pytest.raises(billing.InsufficientCredits):
        await billing.deduct_credit("user-1", reference_id="43")

    entries = await billing.list_ledger("user-1")
    assert len(entries) == 1
    assert entries[0].source == "deduction"
    assert entries[0].reference_id == "42"


async def test_grant_keeps_deduction_committed_meanwhile(make_user, monkeypatch):
    await make_user("user-1", proposal_credits=5)

    async def unlock_elsewhere():
        await billing.deduct_credit("user-1", reference_id="77")

    fired = run_between(monkeypatch, "get", unlock_elsewhere)
    assert await billing.grant_credits("user-1", 10, "manual") == 14
    assert fired == [True]

    async with get_session() as session:
        user = await session.get(User, "user-1")
    assert user.proposal_credits == 14
    entries = await billing.list_ledger("user-1")
    assert sorted((entry.source, entry.balance_after) for entry in entries) == [("deduction", 4), ("manual", 14)]


async def test_grant_recorded_by_concurrent_delivery_is_not_doubled(make_user, monkeypatch):
    await make_user("user-1", proposal_credits=10)

    async def deliver_elsewhere():
        async with get_session() as session:
            session.add(
                CreditLedger(user_id="user-1", change_amount=10, balance_after=10, source="pack", reference_id="cs_9")
            )
            await session.commit()

    fired = run_between(monkeypatch, "exec", deliver_elsewhere)
    assert await billing.grant_credits("user-1", 10, "pack", reference_id="cs_9") == 10
    assert fired == [True]
    assert len(await billing.list_ledger("user-1")) == 1


async def test_deduction_is_charged_once_per_reference(make_user):
    await make_user("user-1", proposal_credits=3)
    assert await billing.deduct_credit("user-1", reference_id="42") == 2
    assert await billing.deduct_credit("user-1", reference_id="42") == 2
    assert len(await billing.list_ledger("user-1")) == 1


async def test_deduct_credit_refuses_expired_credits(make_user):
    await make_user(
        "user-1",
        proposal_credits=3,
        credits_expire_at=utcnow() - timedelta(minutes=1),
    )
    with pytest.raises(billing.InsufficientCredits):
        await billing.deduct_credit("user-1")
    assert (await billing.get_status("user-1"))["availableCredits"] == 0


async def test_status_reports_trial(make_user):
    await make_user("user-1", trial_ends_at=utcnow() + timedelta(days=3))
    status = await billing.get_status("user-1")
    assert status["isTrialing"] is True
    assert status["canAccessPremiumFeatures"] is True
    assert status["hasActiveSubscription"] is False


async def test_pack_checkout_grants_expiring_credits_once(make_user):
    await make_user("user-1")
    assert await billing.process_event(checkout_event()) == "success"
    assert await billing.process_event(checkout_event()) == "duplicate"

    status = await billing.get_status("user-1")
    assert status["availableCredits"] == 10
    assert status["creditsExpireAt"] > utcnow() + timedelta(days=179)


async def test_subscription_lifecycle(make_user):
    await make_user("user-1")
    event = checkout_event("evt_sub", "pro", subscription="sub_1", customer="cus_1")
    assert await billing.process_event(event) == "success"
    status = await billing.get_status("user-1")
    assert status["hasActiveSubscription"] is True
    assert status["plan"] == "pro"

    updated = {
        "id": "evt_upd",
        "type": "customer.subscription.updated",
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "past_due",
                "current_period_end": 1893456000,
                "cancel_at_period_end": True,
            }
        },
    }
    await billing.process_event(updated)
    status = await billing.get_status("user-1")
    assert status["hasActiveSubscription"] is False
    assert status["status"] == "past_due"
    assert status["cancelAtPeriodEnd"] is True

    deleted = {"id": "evt_del", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}}}
    await billing.process_event(deleted)
    async with get_session() as session:
        subscription = (await session.exec(select(Subscription))).first()
        user = await session.get(User, "user-1")
    assert subscription.status == "canceled"
    assert user.subscription_plan is None
    assert user.stripe_customer_id == "cus_1"


async def test_failed_event_is_retried(make_user):
    event = checkout_event("evt_retry", user_id="late-user")
    assert await billing.process_event(event) == "error"
    await make_user("late-user")
    assert await billing.process_event(event) == "success"
    async with get_session() as session:
        record = await session.get(WebhookEvent, 1)
        ledger = await session.get(CreditLedger, 1)
    assert record.processing_result == "success"
    assert record.error_message is None
    assert ledger.user_id == "late-user"


async def test_unknown_event_is_ignored(database):
    assert await billing.process_event({"id": "evt_x", "type": "invoice.paid", "data": {"object": {}}}) == "ignored"


async def test_handle_webhook_verifies_signature(database, monkeypatch, make_user):
    await make_user("user-1")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    payload = json.dumps(checkout_event("evt_sig", "single")).encode()

    def reject(payload, signature, secret):
        raise stripe.SignatureVerificationError("bad signature", signature)

    monkeypatch.setattr(stripe.Webhook, "construct_event", reject)
    with pytest.raises(ApiError) as excinfo:
        await billing.handle_webhook(payload, "t=1,v1=bad")
    assert excinfo.value.status_code == 400

    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, signature, secret: {})
    assert await billing.handle_webhook(payload, "t=1,v1=good") == "success"
    assert (await billing.get_status("user-1"))["availableCredits"] == 1


async def test_checkout_requires_configuration(make_user):
    await make_user("user-1")
    with pytest.raises(ApiError) as excinfo:
        await billing.create_checkout_session("user-1", "pack", base_url="https://app.example.com")
    assert excinfo.value.status_code == 503


async def test_checkout_session_parameters(make_user, monkeypatch):
    await make_user("user-1")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test")
    captured = {}

    class FakeSession:
        id = "cs_123"
        url = "https://checkout.stripe.com/pay/cs_123"

    def create(**params):
        captured.update(params)
        return FakeSession()

    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    result = await billing.create_checkout_session("user-1", "crew", base_url="https://app.example.com")
    assert result == {"sessionId": "cs_123", "url": "https://checkout.stripe.com/pay/cs_123"}
    assert captured["mode"] == "subscription"
    assert captured["metadata"] == {"userId": "user-1", "productType": "crew"}
    assert captured["customer_email"] == "user-1@example.com"
    price_data = captured["line_items"][0]["price_data"]
    assert price_data["unit_amount"] == 7900
    assert price_data["recurring"] == {"interval": "month"}
