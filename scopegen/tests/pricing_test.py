from datetime import timedelta

import pytest

from scopegen.db import PriceCache, get_session, utcnow
from scopegen.drafts import pricing


def test_round_to_hundred():
    assert pricing.round_to_hundred(12049) == 12000
    assert pricing.round_to_hundred(12050) == 12100
    assert pricing.round_to_hundred(0) == 0


def test_compute_price_range_applies_size_and_multipliers():
    assert pricing.compute_price_range(12000, 25000) == {"priceLow": 12000, "priceHigh": 25000}
    small = pricing.compute_price_range(12000, 25000, job_size=1)
    assert small == {"priceLow": 9000, "priceHigh": 18800}
    scaled = pricing.compute_price_range(
        10000,
        20000,
        job_size=3,
        user_price_multiplier=110,
        trade_multiplier=90,
        market_multiplier=1.1,
    )
    # 1.4 * 1.1 * 0.9 * 1.1 = 1.5246
    assert scaled == {"priceLow": 15200, "priceHigh": 30500}


def test_compute_price_range_keeps_low_below_high():
    prices = pricing.compute_price_range(5000, 4000)
    assert prices["priceLow"] <= prices["priceHigh"]


def test_extract_zip():
    assert pricing.extract_zip("12 Main St, Austin, TX 78701") == "78701"
    assert pricing.extract_zip("1 Elm Rd, Boston MA 02110-1234") == "02110"
    assert pricing.extract_zip("Address TBD") is None
    assert pricing.extract_zip(None) is None


def test_market_multiplier_is_clamped():
    assert pricing.market_multiplier("bathroom", {}) == 1.0
    assert pricing.market_multiplier("bathroom", {"labor": [{"hourlyRate": 200}]}) == pricing.MARKET_MAX
    assert pricing.market_multiplier("bathroom", {"labor": [{"hourlyRate": 10}]}) == pricing.MARKET_MIN
    assert pricing.market_multiplier("painting", {"labor": [{"hourlyRate": 55}, {"hourlyRate": 60.5}]}) == pytest.approx(1.05)


@pytest.mark.asyncio
async def test_market_pricing_without_zip_or_config(database):
    none = await pricing.get_market_pricing("bathroom", "Address TBD")
    assert none.multiplier == 1.0
    assert none.has_data is False

    unconfigured = await pricing.get_market_pricing("bathroom", "12 Main St, Austin, TX 78701")
    assert unconfigured.zipcode == "78701"
    assert unconfigured.snapshot() is None


@pytest.mark.asyncio
async def test_market_pricing_uses_cache_before_live(database, monkeypatch):
    now = utcnow()
    async with get_session() as session:
        session.add(
            PriceCache(
                trade_id="bathroom",
                zipcode="78701",
                payload={"labor": [{"hourlyRate": 93.5}]},
                fetched_at=now,
                expires_at=now + timedelta(days=1),
            )
        )
        await session.commit()

    def fail_live(*args, **kwargs):
        raise AssertionError("live pricing should not be called")

    monkeypatch.setenv("ONEBUILD_API_KEY", "key")
    monkeypatch.setattr("scopegen.integrations.onebuild.get_trade_pricing", fail_live)

    market = await pricing.get_market_pricing("bathroom", "12 Main St, Austin, TX 78701")
    assert market.source == "cache"
    assert market.basis == "labor"
    assert market.multiplier == pytest.approx(1.1)
    assert market.snapshot() == {"source": "cache", "zipcode": "78701", "basis": "labor"}


@pytest.mark.asyncio
async def test_market_pricing_fetches_and_caches_live(database, monkeypatch):
    calls = []

    def live(trade_id, zipcode, timeout=None):
        calls.append((trade_id, zipcode))
        return {"labor": [{"hourlyRate": 85}]}

    monkeypatch.setenv("ONEBUILD_API_KEY", "key")
    monkeypatch.setattr("scopegen.integrations.onebuild.get_trade_pricing", live)

    first = await pricing.get_market_pricing("bathroom", "Austin TX 78701")
    second = await pricing.get_market_pricing("bathroom", "Austin TX 78701")
    assert first.source == "live"
    assert second.source == "cache"
    assert calls == [("bathroom", "78701")]


@pytest.mark.asyncio
async def test_market_pricing_swallows_provider_errors(database, monkeypatch):
    def broken(*args, **kwargs):
        raise TimeoutError("1build timed out")

    monkeypatch.setenv("ONEBUILD_API_KEY", "key")
    monkeypatch.setattr("scopegen.integrations.onebuild.get_trade_pricing", broken)

    market = await pricing.get_market_pricing("roofing", "Denver CO 80202")
    assert market.multiplier == 1.0
    assert market.has_data is False
