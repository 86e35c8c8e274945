import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import stripe
from sqlalchemy import case, literal, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from scopegen import monitoring
from scopegen.db import CreditLedger, Subscription, User, UTCDateTime, WebhookEvent, get_session, utcnow
from scopegen.errors import ApiError

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
PACK_CREDIT_LIFETIME = timedelta(days=180)

PRODUCTS: Dict[str, Dict[str, Any]] = {
    "single": {"mode": "payment", "name": "Single proposal credit", "amount": 900, "credits": 1},
    "pack": {"mode": "payment", "name": "10 proposal credits", "amount": 3900, "credits": 10},
    "pro": {"mode": "subscription", "name": "ScopeGen Pro", "amount": 2900, "plan": "pro"},
    "crew": {"mode": "subscription", "name": "ScopeGen Crew", "amount": 7900, "plan": "crew"},
}


class InsufficientCredits(Exception):
    """Raised when a user has no unexpired proposal credits left."""


def _credits_available(user: User, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    if user.credits_expire_at and user.credits_expire_at <= now:
        return 0
    return user.proposal_credits or 0


async def _latest_subscription(session, user_id: str) -> Optional[Subscription]:
    return (
        await session.exec(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.updated_at.desc(), Subscription.id.desc())
            .limit(1)
        )
    ).first()


async def get_status(user_id: str) -> Dict[str, Any]:
    now = utcnow()
    async with get_session() as session:
        user = await session.get(User, user_id)
        subscription = await _latest_subscription(session, user_id)

    has_subscription = bool(subscription and subscription.status in ACTIVE_SUBSCRIPTION_STATUSES)
    is_trialing = bool(user and user.trial_ends_at and user.trial_ends_at > now)
    return {
        "hasActiveSubscription": has_subscription,
        "canAccessPremiumFeatures": has_subscription or is_trialing,
        "plan": subscription.plan if has_subscription else None,
        "status": subscription.status if subscription else None,
        "currentPeriodEnd": subscription.current_period_end if subscription else None,
        "isTrialing": is_trialing,
        "trialEndsAt": user.trial_ends_at if user else None,
        "availableCredits": _credits_available(user, now) if user else 0,
        "creditsExpireAt": user.credits_expire_at if user else None,
        "cancelAtPeriodEnd": bool(subscription and subscription.cancel_at_period_end),
    }


async def _balance(session, user_id: str) -> int:
    user = await session.get(User, user_id, populate_existing=True)
    return user.proposal_credits if user else 0


async def grant_credits(
    user_id: str,
    amount: int,
    source: str,
    *,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    description: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> int:
    """Add credits and write a ledger entry; returns the resulting balance.

    Grants carrying a ``reference_id`` are applied once per ``(reference_id, source)``.
    Expiry only ever moves forward. The balance is incremented in SQL so a
    deduction committed meanwhile is never overwritten.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")

    async with get_session() as session:
        user = await session.get(User, user_id)
        if not user:
            raise ApiError(404, "NOT_FOUND", "User not found")

        if reference_id:
            already = (
                await session.exec(
                    select(CreditLedger).where(
                        CreditLedger.reference_id == reference_id,
                        CreditLedger.source == source,
                    )
                )
            ).first()
            if already:
                return user.proposal_credits

        now = utcnow()
        # expired balance does not carry over
        await session.execute(
            update(User)
            .where(User.id == user_id, User.credits_expire_at.is_not(None), User.credits_expire_at <= now)
            .values(proposal_credits=0, credits_expire_at=None)
            .execution_options(synchronize_session=False)
        )
        values: Dict[str, Any] = {"proposal_credits": User.proposal_credits + amount, "updated_at": now}
        if expires_at:
            expires = literal(expires_at, UTCDateTime())
            values["credits_expire_at"] = case(
                (or_(User.credits_expire_at.is_(None), User.credits_expire_at < expires), expires),
                else_=User.credits_expire_at,
            )
        await session.execute(
            update(User).where(User.id == user_id).values(**values).execution_options(synchronize_session=False)
        )
        balance = await _balance(session, user_id)
        session.add(
            CreditLedger(
                user_id=user_id,
                change_amount=amount,
                balance_after=balance,
                source=source,
                reference_id=reference_id,
                reference_type=reference_type,
                description=description,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            # a concurrent delivery already applied this reference
            await session.rollback()
            return await _balance(session, user_id)

    monitoring.log_event("billing.credits.granted", userId=user_id, amount=amount, source=source, balance=balance)
    return balance


async def deduct_credit(user_id: str, reference_id: Optional[str] = None) -> int:
    """Atomically consume one unexpired credit; returns the remaining balance.

    A reference that was already charged is not charged again.
    """
    now = utcnow()
    statement = (
        update(User)
        .where(
            User.id == user_id,
            User.proposal_credits > 0,
            or_(User.credits_expire_at.is_(None), User.credits_expire_at > now),
        )
        .values(proposal_credits=User.proposal_credits - 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    async with get_session() as session:
        result = await session.execute(statement)
        if result.rowcount != 1:
            await session.rollback()
            raise InsufficientCredits("No proposal credits available")
        balance = await _balance(session, user_id)
        session.add(
            CreditLedger(
                user_id=user_id,
                change_amount=-1,
                balance_after=balance,
                source="deduction",
                reference_id=reference_id,
                reference_type="proposal" if reference_id else None,
                description="Proposal unlock",
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return await _balance(session, user_id)
        return balance


async def list_ledger(user_id: str, limit: int = 50) -> List[CreditLedger]:
    async with get_session() as session:
        return (
            await session.exec(
                select(CreditLedger)
                .where(CreditLedger.user_id == user_id)
                .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
                .limit(limit)
            )
        ).all()


def _configure_stripe() -> None:
    secret = os.getenv("STRIPE_SECRET_KEY")
    if not secret:
        raise ApiError(503, "INTERNAL", "Payments are not configured")
    stripe.api_key = secret


async def create_checkout_session(user_id: str, product_type: str, *, base_url: str) -> Dict[str, str]:
    product = PRODUCTS.get(product_type)
    if not product:
        raise ApiError(400, "INVALID_INPUT", f"Unknown product type: {product_type}")
    _configure_stripe()

    async with get_session() as session:
        user = await session.get(User, user_id)
    if not user:
        raise ApiError(404, "NOT_FOUND", "User not found")

    price_data: Dict[str, Any] = {
        "currency": "usd",
        "unit_amount": product["amount"],
        "product_data": {"name": product["name"]},
    }
    if product["mode"] == "subscription":
        price_data["recurring"] = {"interval": "month"}

    params: Dict[str, Any] = {
        "mode": product["mode"],
        "line_items": [{"price_data": price_data, "quantity": 1}],
        "success_url": f"{base_url}/billing?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/billing?checkout=cancelled",
        "client_reference_id": user_id,
        "metadata": {"userId": user_id, "productType": product_type},
    }
    if user.stripe_customer_id:
        params["customer"] = user.stripe_customer_id
    elif user.email:
        params["customer_email"] = user.email

    checkout = stripe.checkout.Session.create(**params)
    monitoring.log_event("billing.checkout.created", userId=user_id, productType=product_type)
    return {"sessionId": checkout.id, "url": checkout.url}


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


async def _upsert_subscription(
    user_id: str,
    *,
    stripe_subscription_id: Optional[str],
    stripe_customer_id: Optional[str],
    plan: str,
    status: str,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
) -> None:
    async with get_session() as session:
        subscription = None
        if stripe_subscription_id:
            subscription = (
                await session.exec(
                    select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
                )
            ).first()
        if not subscription:
            subscription = Subscription(user_id=user_id, stripe_subscription_id=stripe_subscription_id)
        subscription.stripe_customer_id = stripe_customer_id or subscription.stripe_customer_id
        subscription.plan = plan
        subscription.status = status
        subscription.current_period_end = current_period_end or subscription.current_period_end
        subscription.cancel_at_period_end = cancel_at_period_end
        subscription.updated_at = utcnow()
        session.add(subscription)

        user = await session.get(User, user_id)
        if user:
            user.subscription_plan = plan if status in ACTIVE_SUBSCRIPTION_STATUSES else None
            if stripe_customer_id:
                user.stripe_customer_id = stripe_customer_id
            session.add(user)
        await session.commit()


async def _handle_checkout_completed(checkout: Dict[str, Any]) -> Optional[str]:
    metadata = checkout.get("metadata") or {}
    user_id = metadata.get("userId") or checkout.get("client_reference_id")
    product = PRODUCTS.get(metadata.get("productType") or "")
    if not user_id or not product:
        raise ValueError("checkout session missing userId/productType metadata")

    if product["mode"] == "payment":
        expires_at = utcnow() + PACK_CREDIT_LIFETIME if metadata.get("productType") == "pack" else None
        await grant_credits(
            user_id,
            product["credits"],
            "pack",
            reference_id=checkout.get("id"),
            reference_type="stripe_checkout",
            description=product["name"],
            expires_at=expires_at,
        )
    else:
        await _upsert_subscription(
            user_id,
            stripe_subscription_id=checkout.get("subscription"),
            stripe_customer_id=checkout.get("customer"),
            plan=product["plan"],
            status="active",
        )
    return user_id


async def _handle_subscription_change(subscription: Dict[str, Any], *, deleted: bool) -> Optional[str]:
    async with get_session() as session:
        existing = (
            await session.exec(
                select(Subscription).where(Subscription.stripe_subscription_id == subscription.get("id"))
            )
        ).first()
    if not existing:
        logger.warning("Ignoring event for unknown subscription %s", subscription.get("id"))
        return None
    await _upsert_subscription(
        existing.user_id,
        stripe_subscription_id=existing.stripe_subscription_id,
        stripe_customer_id=subscription.get("customer"),
        plan=existing.plan,
        status="canceled" if deleted else subscription.get("status", existing.status),
        current_period_end=_from_timestamp(subscription.get("current_period_end")),
        cancel_at_period_end=False if deleted else bool(subscription.get("cancel_at_period_end")),
    )
    return existing.user_id


async def process_event(event: Dict[str, Any]) -> str:
    """Apply a verified Stripe event exactly once; returns the processing result."""
    event_id = event.get("id")
    event_type = event.get("type", "")
    async with get_session() as session:
        seen = (await session.exec(select(WebhookEvent).where(WebhookEvent.event_id == event_id))).first()
    if seen and seen.processing_result != "error":
        return "duplicate"

    obj = (event.get("data") or {}).get("object") or {}
    user_id: Optional[str] = None
    result = "success"
    error_message: Optional[str] = None
    try:
        if event_type == "checkout.session.completed":
            user_id = await _handle_checkout_completed(obj)
        elif event_type == "customer.subscription.updated":
            user_id = await _handle_subscription_change(obj, deleted=False)
        elif event_type == "customer.subscription.deleted":
            user_id = await _handle_subscription_change(obj, deleted=True)
        else:
            result = "ignored"
    except Exception as exc:
        monitoring.capture_exception(exc, stripe_event_id=event_id, stripe_event_type=event_type)
        result = "error"
        error_message = str(exc)

    async with get_session() as session:
        record = (await session.exec(select(WebhookEvent).where(WebhookEvent.event_id == event_id))).first()
        if not record:
            record = WebhookEvent(event_id=event_id, event_type=event_type)
        record.user_id = user_id
        record.processing_result = result
        record.error_message = error_message
        session.add(record)
        try:
            await session.commit()
        except IntegrityError:
            # another delivery of this event recorded it first
            await session.rollback()
            return "duplicate"

    monitoring.log_event("billing.webhook", eventId=event_id, eventType=event_type, result=result)
    return result


async def handle_webhook(payload: bytes, signature: Optional[str]) -> str:
    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise ApiError(503, "INTERNAL", "Webhook secret not configured")
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except (ValueError, stripe.SignatureVerificationError):
        raise ApiError(400, "INVALID_INPUT", "Invalid webhook signature")
    return await process_event(json.loads(payload))
