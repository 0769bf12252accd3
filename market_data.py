"""CoinGecko market snapshot fetch (one call per round)."""

import json
import os
from urllib import request as urlrequest
from urllib.error import URLError
from urllib.parse import urlencode

COINGECKO_MARKETS_URL = os.getenv("COINGECKO_MARKETS_URL", "https://api.coingecko.com/api/v3/coins/markets")
COINGECKO_API_KEY = os.getenv("COINGECKO_API_KEY", "")
MARKET_DATA_TIMEOUT_SECONDS = int(os.getenv("MARKET_DATA_TIMEOUT_SECONDS", "15"))
MARKET_PAGE_SIZE = int(os.getenv("MARKET_PAGE_SIZE", "200"))


class MarketDataError(RuntimeError):
    pass


def _markets_url() -> str:
    params = {
        "vs_currency": "usd",
        "order": "volume_desc",
        "per_page": MARKET_PAGE_SIZE,
        "page": 1,
        "sparkline": "false",
        "price_change_percentage": "24h",
    }
    if COINGECKO_API_KEY:
        params["x_cg_demo_api_key"] = COINGECKO_API_KEY
    return f"{COINGECKO_MARKETS_URL}?{urlencode(params)}"


def assign_volume_ranks(records: list[dict]) -> list[dict]:
    # Markets are requested ordered by volume, so list position is the volume rank.
    return [dict(record, volume_rank=idx) for idx, record in enumerate(records, start=1)]


def fetch_market_snapshot(timeout=MARKET_DATA_TIMEOUT_SECONDS) -> list[dict]:
    req = urlrequest.Request(
        _markets_url(),
        headers={"Accept": "application/json", "User-Agent": "prediction-rounds/1.0"},
    )
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except (URLError, OSError) as e:
        raise MarketDataError(f"CoinGecko request failed: {e}") from e

    try:
        data = json.loads(raw) if raw else []
    except ValueError as e:
        raise MarketDataError("CoinGecko returned invalid JSON") from e
    if not isinstance(data, list):
        raise MarketDataError(f"Unexpected CoinGecko payload: {str(data)[:200]}")
    return assign_volume_ranks(data)
