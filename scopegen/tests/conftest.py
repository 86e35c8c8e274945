import pytest_asyncio

from scopegen import db


@pytest_asyncio.fixture
async def database(monkeypatch, tmp_path):
    db_path = tmp_path / "scopegen_test.db"
    monkeypatch.setenv("SENTRY_DSN", "")
    monkeypatch.delenv("ONEBUILD_API_KEY", raising=False)
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    db.configure_engine(f"sqlite+aiosqlite:///{db_path}")
    await db.init_db()
    try:
        yield db
    finally:
        await db.engine.dispose()


async def seed_template(**overrides) -> db.ProposalTemplate:
    fields = {
        "trade_id": "bathroom",
        "trade_name": "Bathroom",
        "job_type_id": "bathroom-remodel",
        "job_type_name": "Full Bathroom Remodel",
        "base_scope": [
            "Remove existing fixtures, tile and vanity.",
            "Install new vanity, countertop, sink and faucet.",
            "Install tile flooring.",
        ],
        "base_price_low": 12000,
        "base_price_high": 25000,
        "estimated_days_low": 7,
        "estimated_days_high": 14,
        "warranty": "2-year labor warranty.",
        "exclusions": ["Permit fees"],
    }
    fields.update(overrides)
    async with db.get_session() as session:
        template = db.ProposalTemplate(**fields)
        session.add(template)
        await session.commit()
        await session.refresh(template)
        return template


async def seed_user(user_id: str = "user-1", **overrides) -> db.User:
    async with db.get_session() as session:
        user = db.User(id=user_id, email=f"{user_id}@example.com", **overrides)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest_asyncio.fixture
async def make_template(database):
    return seed_template


@pytest_asyncio.fixture
async def make_user(database):
    return seed_user
