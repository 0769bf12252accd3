"""Round ranking: top 5 gainers / worst 5 performers of a market snapshot.

rank_market() is pure. persist_round() writes the round, refreshes the market
cache (insert new rows first, then drop stale rounds, so readers never see an
empty cache), appends price history and upserts coin metadata.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from extensions import db, get_redis
from models_predictions import PREDICTION_TOP, PREDICTION_WORST
from models_rounds import (
    CATEGORY_TOP_GAINER,
    CATEGORY_WORST_PERFORMER,
    CoinMetadata,
    MarketCacheEntry,
    PerformanceLog,
    PriceHistory,
)

RANKED_SLOTS = 5
ROUND_CACHE_KEY = "rounds:latest"
ROUND_CACHE_TTL = 600


def _pct_change(record: dict):
    try:
        value = float(record.get("price_change_percentage_24h"))
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def _dec(value):
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def rank_market(records: list[dict], round_id: str | None = None) -> dict:
    """Rank market records by 24h change.

    Records without a usable percentage change or symbol are dropped. With fewer
    than five usable records both lists are simply shorter; with fewer than ten
    they overlap.
    """
    usable = [r for r in records if _pct_change(r) is not None and (r.get("symbol") or "").strip()]
    ordered = sorted(usable, key=_pct_change, reverse=True)
    return {
        "round_id": round_id or str(uuid.uuid4()),
        "top_gainers": ordered[:RANKED_SLOTS],
        "worst_performers": list(reversed(ordered[-RANKED_SLOTS:])),
        "records": usable,
    }


@dataclass
class RoundRanking:
    """Realized ranking of one round, as lowercase symbol -> rank lookups."""

    round_id: str
    snapshot_timestamp: datetime | None
    top_gainers: list[dict] = field(default_factory=list)
    worst_performers: list[dict] = field(default_factory=list)

    @staticmethod
    def _rank_map(coins: list[dict]) -> dict[str, int]:
        ranks: dict[str, int] = {}
        for rank, coin in enumerate(coins, start=1):
            # The on-chain slot may hold either the ticker or the CoinGecko id.
            for key in (coin.get("coingecko_id") or coin.get("id"), coin.get("symbol")):
                key = (key or "").strip().lower()
                if key:
                    ranks.setdefault(key, rank)
        return ranks

    @property
    def top_map(self) -> dict[str, int]:
        return self._rank_map(self.top_gainers)

    @property
    def worst_map(self) -> dict[str, int]:
        return self._rank_map(self.worst_performers)

    def map_for(self, prediction_type: str) -> dict[str, int]:
        if prediction_type == PREDICTION_TOP:
            return self.top_map
        if prediction_type == PREDICTION_WORST:
            return self.worst_map
        raise ValueError(f"Unknown prediction type: {prediction_type}")

    @classmethod
    def from_ranked(cls, ranked: dict, snapshot_timestamp: datetime | None = None) -> "RoundRanking":
        return cls(
            round_id=ranked["round_id"],
            snapshot_timestamp=snapshot_timestamp,
            top_gainers=[_coin_summary(c) for c in ranked["top_gainers"]],
            worst_performers=[_coin_summary(c) for c in ranked["worst_performers"]],
        )

    @classmethod
    def from_symbols(cls, round_id: str, top: list[str], worst: list[str]) -> "RoundRanking":
        return cls(
            round_id=round_id,
            snapshot_timestamp=None,
            top_gainers=[{"symbol": s} for s in top],
            worst_performers=[{"symbol": s} for s in worst],
        )

    def to_dict(self) -> dict:
        return {
            "round_id": self.round_id,
            "snapshot_timestamp": self.snapshot_timestamp.isoformat() if self.snapshot_timestamp else None,
            "top_gainers": self.top_gainers,
            "worst_performers": self.worst_performers,
        }


def _coin_summary(coin: dict) -> dict:
    return {
        "coingecko_id": coin.get("coingecko_id") or coin.get("id"),
        "symbol": coin.get("symbol"),
        "name": coin.get("name"),
        "image_url": coin.get("image_url") or coin.get("image"),
        "price_change_percentage_24h": _pct_change(coin),
    }


def _market_columns(record: dict, round_id: str, snapshot_ts: datetime) -> dict:
    return {
        "round_id": round_id,
        "coingecko_id": record.get("id") or record.get("symbol"),
        "symbol": (record.get("symbol") or "").strip(),
        "name": record.get("name") or record.get("symbol") or "",
        "image_url": record.get("image"),
        "current_price": _dec(record.get("current_price")),
        "market_cap": _dec(record.get("market_cap")),
        "market_cap_rank": record.get("market_cap_rank"),
        "total_volume": _dec(record.get("total_volume")),
        "volume_rank": record.get("volume_rank"),
        "price_change_percentage_24h": _dec(_pct_change(record)),
        "snapshot_timestamp": snapshot_ts,
    }


def _upsert_coin_metadata(records: list[dict]) -> tuple[int, int]:
    added = updated = 0
    for record in records:
        coin_id = record.get("id")
        symbol = (record.get("symbol") or "").strip()
        if not coin_id or not symbol:
            continue
        try:
            with db.session.begin_nested():
                existing = CoinMetadata.query.filter(
                    or_(CoinMetadata.coingecko_id == coin_id, CoinMetadata.symbol == symbol)
                ).first()
                if existing is None:
                    db.session.add(CoinMetadata(
                        coingecko_id=coin_id,
                        symbol=symbol,
                        name=record.get("name") or symbol,
                        image_url=record.get("image"),
                    ))
                    added += 1
                elif existing.coingecko_id == coin_id and (
                    existing.name != record.get("name") or existing.image_url != record.get("image")
                ):
                    existing.name = record.get("name") or existing.name
                    existing.image_url = record.get("image")
                    existing.updated_at = datetime.utcnow()
                    updated += 1
        except SQLAlchemyError:
            current_app.logger.warning("Coin metadata upsert failed for %s", symbol, exc_info=True)
    return added, updated


def persist_round(ranked: dict, snapshot_ts: datetime | None = None) -> dict:
    snapshot_ts = snapshot_ts or datetime.utcnow()
    round_id = ranked["round_id"]

    logs = 0
    for category, coins in (
        (CATEGORY_TOP_GAINER, ranked["top_gainers"]),
        (CATEGORY_WORST_PERFORMER, ranked["worst_performers"]),
    ):
        for rank, coin in enumerate(coins, start=1):
            db.session.add(PerformanceLog(
                **_market_columns(coin, round_id, snapshot_ts),
                performance_category=category,
                performance_rank=rank,
            ))
            logs += 1
    db.session.commit()

    market_rows = [_market_columns(r, round_id, snapshot_ts) for r in ranked["records"]]
    db.session.add_all([MarketCacheEntry(**row) for row in market_rows])
    db.session.flush()
    MarketCacheEntry.query.filter(MarketCacheEntry.round_id != round_id).delete(synchronize_session=False)
    db.session.add_all([PriceHistory(**row) for row in market_rows])
    db.session.commit()

    added, updated = _upsert_coin_metadata(ranked["records"])
    db.session.commit()

    current_app.logger.info(
        "Round %s persisted: %d ranked, %d cached, metadata %d new / %d updated",
        round_id, logs, len(market_rows), added, updated,
    )
    return {
        "round_id": round_id,
        "performance_logs": logs,
        "cache_records": len(market_rows),
        "metadata_added": added,
        "metadata_updated": updated,
    }


def load_round_ranking(round_id: str | None = None) -> RoundRanking | None:
    """Load one round (the most recent when round_id is None)."""
    if round_id is None:
        latest = (
            db.session.query(PerformanceLog.round_id)
            .order_by(PerformanceLog.snapshot_timestamp.desc(), PerformanceLog.id.desc())
            .first()
        )
        if latest is None:
            return None
        round_id = latest[0]

    rows = (
        PerformanceLog.query.filter_by(round_id=round_id)
        .order_by(PerformanceLog.performance_rank.asc())
        .all()
    )
    if not rows:
        return None
    return RoundRanking(
        round_id=round_id,
        snapshot_timestamp=rows[0].snapshot_timestamp,
        top_gainers=[r.to_dict() for r in rows if r.performance_category == CATEGORY_TOP_GAINER],
        worst_performers=[r.to_dict() for r in rows if r.performance_category == CATEGORY_WORST_PERFORMER],
    )


def recent_rounds(limit: int = 20) -> list[dict]:
    rows = (
        db.session.query(
            PerformanceLog.round_id,
            func.max(PerformanceLog.snapshot_timestamp).label("snapshot_timestamp"),
        )
        .group_by(PerformanceLog.round_id)
        .order_by(func.max(PerformanceLog.snapshot_timestamp).desc())
        .limit(limit)
        .all()
    )
    return [
        {"round_id": r.round_id, "snapshot_timestamp": r.snapshot_timestamp.isoformat() if r.snapshot_timestamp else None}
        for r in rows
    ]


def cache_latest_round(ranking: RoundRanking) -> None:
    """Best-effort: a cache failure never affects the round."""
    client = get_redis()
    if client is None:
        return
    try:
        client.set(ROUND_CACHE_KEY, json.dumps(ranking.to_dict()), ex=ROUND_CACHE_TTL)
    except Exception:
        current_app.logger.warning("Could not cache latest round %s", ranking.round_id, exc_info=True)


def get_cached_latest_round() -> dict | None:
    client = get_redis()
    if client is None:
        return None
    try:
        raw = client.get(ROUND_CACHE_KEY)
    except Exception:
        current_app.logger.warning("Round cache read failed", exc_info=True)
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None
