import os
from typing import Any, Dict

import httpx


def is_configured() -> bool:
    return bool(os.getenv("ONEBUILD_API_KEY"))


def get_trade_pricing(trade_id: str, zipcode: str, *, timeout: float = 1.2) -> Dict[str, Any]:
    """Fetch local material and labour pricing for a trade around a ZIP code."""
    if not is_configured():
        raise RuntimeError("ONEBUILD_API_KEY not configured")
    base_url = os.getenv("ONEBUILD_API_URL", "https://api.1build.com/v1")
    with httpx.Client(timeout=timeout) as client:
        response = client.get(
            f"{base_url.rstrip('/')}/trades/{trade_id}/pricing",
            params={"zipcode": zipcode},
            headers={"Authorization": f"Bearer {os.getenv('ONEBUILD_API_KEY')}"},
        )
        response.raise_for_status()
        data = response.json()
    return {
        "materials": data.get("materials") or [],
        "labor": data.get("labor") or [],
    }
