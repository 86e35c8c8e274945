import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlmodel import select

from scopegen import monitoring
from scopegen.db import PriceCache, get_session, utcnow
from scopegen.integrations import onebuild

logger = logging.getLogger(__name__)

SIZE_MULTIPLIERS = {1: 0.75, 2: 1.0, 3: 1.4}
MARKET_MIN = 0.9
MARKET_MAX = 1.15
CACHE_TTL = timedelta(days=7)
ONEBUILD_TIMEOUT_SECONDS = 1.2

# Average labour hourly rate a trade's template prices assume.
LABOR_BASELINES = {
    "bathroom": 85,
    "kitchen": 90,
    "roofing": 65,
    "plumbing": 95,
    "electrical": 105,
    "hvac": 110,
    "painting": 55,
    "flooring": 70,
    "drywall": 60,
}
DEFAULT_LABOR_BASELINE = 85

_ZIP_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")


@dataclass
class MarketPricing:
    multiplier: float = 1.0
    basis: str = "none"  # none, labor
    source: Optional[str] = None  # cache, live
    zipcode: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.source is not None

    def snapshot(self) -> Optional[Dict[str, Any]]:
        if not self.has_data:
            return None
        return {"source": self.source, "zipcode": self.zipcode, "basis": self.basis}


def round_to_hundred(value: float) -> int:
    return int((value + 50) // 100 * 100)


def compute_price_range(
    base_price_low: int,
    base_price_high: int,
    *,
    job_size: int = 2,
    user_price_multiplier: Optional[int] = 100,
    trade_multiplier: Optional[int] = None,
    market_multiplier: float = 1.0,
) -> Dict[str, int]:
    """Scale template prices by job size, contractor multipliers and local market.

    Contractor multipliers are percentages (100 = unchanged). Results are rounded
    to the nearest 100 and ``priceLow <= priceHigh`` always holds.
    """
    factor = SIZE_MULTIPLIERS.get(job_size, 1.0)
    factor *= (user_price_multiplier if user_price_multiplier is not None else 100) / 100
    if trade_multiplier is not None:
        factor *= trade_multiplier / 100
    factor *= market_multiplier

    low = round_to_hundred(base_price_low * factor)
    high = round_to_hundred(base_price_high * factor)
    if low > high:
        low, high = high, low
    return {"priceLow": low, "priceHigh": high}


def extract_zip(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    match = _ZIP_RE.search(address)
    return match.group(1) if match else None


def market_multiplier(trade_id: str, payload: Optional[Dict[str, Any]]) -> float:
    labor = (payload or {}).get("labor") or []
    if not labor:
        return 1.0
    average = sum(float(item.get("hourlyRate") or 0) for item in labor) / len(labor)
    baseline = LABOR_BASELINES.get(trade_id, DEFAULT_LABOR_BASELINE)
    raw = average / baseline if baseline > 0 else 1.0
    return max(MARKET_MIN, min(MARKET_MAX, raw))


async def _cached_payload(trade_id: str, zipcode: str, now: datetime) -> Optional[Dict[str, Any]]:
    async with get_session() as session:
        row = (
            await session.exec(
                select(PriceCache)
                .where(
                    PriceCache.trade_id == trade_id,
                    PriceCache.zipcode == zipcode,
                    PriceCache.expires_at > now,
                )
                .order_by(PriceCache.fetched_at.desc())
                .limit(1)
            )
        ).first()
    return row.payload if row else None


async def get_market_pricing(trade_id: str, address: Optional[str]) -> MarketPricing:
    """Best-effort local market adjustment; never raises."""
    zipcode = extract_zip(address)
    if not zipcode:
        return MarketPricing()

    now = utcnow()
    try:
        payload = await _cached_payload(trade_id, zipcode, now)
        source = "cache"
        if payload is None:
            if not onebuild.is_configured():
                return MarketPricing(zipcode=zipcode)
            payload = await asyncio.to_thread(
                onebuild.get_trade_pricing, trade_id, zipcode, timeout=ONEBUILD_TIMEOUT_SECONDS
            )
            source = "live"
            async with get_session() as session:
                session.add(
                    PriceCache(
                        trade_id=trade_id,
                        zipcode=zipcode,
                        payload=payload,
                        fetched_at=now,
                        expires_at=now + CACHE_TTL,
                    )
                )
                await session.commit()
    except Exception as exc:
        logger.warning("Market pricing unavailable for %s/%s: %s", trade_id, zipcode, exc)
        monitoring.capture_exception(exc, trade_id=trade_id)
        return MarketPricing(zipcode=zipcode)

    if not payload.get("labor"):
        return MarketPricing(source=source, zipcode=zipcode)
    return MarketPricing(
        multiplier=market_multiplier(trade_id, payload),
        basis="labor",
        source=source,
        zipcode=zipcode,
    )
