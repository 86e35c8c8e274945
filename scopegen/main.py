"""Main FastAPI application for the ScopeGen API."""

import os
from typing import List

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import select

from scopegen import billing, monitoring
from scopegen.analytics import dashboard_stats
from scopegen.auth import ClerkAuthMiddleware
from scopegen.db import RunHistory, User, get_session, init_db
from scopegen.drafts.worker import process_pending_drafts
from scopegen.errors import ApiError, RequestIdMiddleware, register_error_handlers
from scopegen.mobile.routes import router as mobile_router
from scopegen.proposals.routes import router as proposals_router
from scopegen.schemas import AdminCreditsIn, CheckoutIn, CompanyPatch, LedgerEntryOut, UserOut
from scopegen.vision.runner import process_pending_photos

API_PORT = int(os.getenv("API_PORT", "8000"))

monitoring.init_monitoring()

scheduler = AsyncIOScheduler()

app = FastAPI(title="ScopeGen API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    ClerkAuthMiddleware,
    exempt_paths={"/healthz", "/billing/webhook"},
    exempt_prefixes={"/docs", "/openapi", "/redoc", "/public/"},
)
app.add_middleware(RequestIdMiddleware)
register_error_handlers(app)

app.include_router(mobile_router)
app.include_router(proposals_router)


def _background_workers_enabled() -> bool:
    return os.getenv("ENABLE_BACKGROUND_WORKERS", "1").lower() not in ("0", "false", "no")


def _admin_user_ids() -> List[str]:
    return [value.strip() for value in os.getenv("ADMIN_USER_IDS", "").split(",") if value.strip()]


@app.on_event("startup")
async def on_startup():
    await init_db()
    if not _background_workers_enabled():
        return
    if not scheduler.running:
        scheduler.start()
    # coroutine functions run on the app's event loop
    if not scheduler.get_job("vision-sweep"):
        scheduler.add_job(process_pending_photos, "interval", seconds=15, id="vision-sweep")
    if not scheduler.get_job("draft-sweep"):
        scheduler.add_job(process_pending_drafts, "interval", seconds=10, id="draft-sweep")


@app.on_event("shutdown")
async def on_shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/healthz")
async def health_check():
    return {"status": "ok"}


@app.get("/me")
async def get_me(request: Request):
    async with get_session() as session:
        user = await session.get(User, request.state.user_id)
    return UserOut.model_validate(user.model_dump()).model_dump(by_alias=True)


@app.patch("/me/company")
async def update_company(payload: CompanyPatch, request: Request):
    """Update the contractor's company profile and pricing multipliers.

    Trade multipliers are percentages per trade id and must stay within 50..200.
    """
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ApiError(400, "INVALID_INPUT", "No fields to update")
    for trade_id, percent in (changes.get("trade_multipliers") or {}).items():
        if not 50 <= percent <= 200:
            raise ApiError(400, "INVALID_INPUT", f"Trade multiplier for {trade_id} must be between 50 and 200")

    async with get_session() as session:
        user = await session.get(User, request.state.user_id)
        for field, value in changes.items():
            if field == "trade_multipliers":
                # reassign so the JSON column is flagged dirty
                value = {**(user.trade_multipliers or {}), **value}
            setattr(user, field, value)
        session.add(user)
        await session.commit()
        await session.refresh(user)
    return UserOut.model_validate(user.model_dump()).model_dump(by_alias=True)


@app.get("/dashboard/stats")
async def get_dashboard_stats(request: Request):
    return await dashboard_stats(request.state.user_id)


@app.get("/billing/status")
async def billing_status(request: Request):
    return await billing.get_status(request.state.user_id)


@app.post("/billing/checkout")
async def billing_checkout(payload: CheckoutIn, request: Request):
    base_url = (os.getenv("WEB_BASE_URL") or str(request.base_url)).rstrip("/")
    return await billing.create_checkout_session(
        request.state.user_id,
        payload.product_type,
        base_url=base_url,
    )


@app.post("/billing/webhook")
async def billing_webhook(request: Request):
    payload = await request.body()
    result = await billing.handle_webhook(payload, request.headers.get("stripe-signature"))
    return {"received": True, "result": result}


@app.get("/billing/ledger")
async def billing_ledger(request: Request, limit: int = 50):
    entries = await billing.list_ledger(request.state.user_id, limit=min(max(limit, 1), 200))
    return [LedgerEntryOut.model_validate(entry.model_dump()).model_dump(by_alias=True) for entry in entries]


@app.post("/admin/credits")
async def admin_grant_credits(payload: AdminCreditsIn, request: Request):
    if request.state.user_id not in _admin_user_ids():
        raise ApiError(403, "FORBIDDEN", "Admin access required")
    balance = await billing.grant_credits(
        payload.user_id,
        payload.amount,
        "manual",
        reference_type="admin",
        description=payload.reason or f"Granted by {request.state.user_id}",
    )
    return {"userId": payload.user_id, "balance": balance}


@app.get("/runs")
async def list_runs(request: Request, limit: int = 50):
    async with get_session() as session:
        runs = (
            await session.exec(
                select(RunHistory)
                .where(RunHistory.user_id == request.state.user_id)
                .order_by(RunHistory.timestamp.desc())
                .limit(min(max(limit, 1), 200))
            )
        ).all()
    return [
        {
            "id": run.id,
            "stage": run.stage,
            "jobId": run.job_id,
            "success": run.success,
            "errorText": run.error_text,
            "durationMs": run.duration_ms,
            "timestamp": run.timestamp,
        }
        for run in runs
    ]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
