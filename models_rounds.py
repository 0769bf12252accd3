"""Round models (market snapshots and the derived top/worst ranking).

- crypto_performance_logs holds the ranked coins of every round (5 + 5 rows per round_id)
- crypto_market_cache only ever holds the latest round (replaced insert-first)
- crypto_price_history accumulates every round and is never purged here
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, Text

from extensions import db

CATEGORY_TOP_GAINER = "top_gainer"
CATEGORY_WORST_PERFORMER = "worst_performer"


class _MarketColumns:
    id = Column(Integer, primary_key=True)
    round_id = Column(String(36), nullable=False, index=True)

    coingecko_id = Column(String(255), nullable=False)
    symbol = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    image_url = Column(Text, nullable=True)

    current_price = Column(Numeric(24, 8), nullable=True)
    market_cap = Column(Numeric(30, 2), nullable=True)
    market_cap_rank = Column(Integer, nullable=True)
    total_volume = Column(Numeric(30, 2), nullable=True)
    volume_rank = Column(Integer, nullable=True)
    price_change_percentage_24h = Column(Numeric(12, 4), nullable=False)

    # When the market data was received, not when the row was written
    snapshot_timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class PerformanceLog(_MarketColumns, db.Model):
    """One ranked coin of one round."""

    __tablename__ = "crypto_performance_logs"

    performance_category = Column(String(20), nullable=False)  # top_gainer / worst_performer
    performance_rank = Column(Integer, nullable=False)  # 1-5

    __table_args__ = (
        Index("idx_perf_logs_round_category", "round_id", "performance_category"),
        Index("idx_perf_logs_snapshot", "snapshot_timestamp"),
    )

    def to_dict(self):
        return {
            "round_id": self.round_id,
            "coingecko_id": self.coingecko_id,
            "symbol": self.symbol,
            "name": self.name,
            "image_url": self.image_url,
            "current_price": float(self.current_price) if self.current_price is not None else None,
            "price_change_percentage_24h": float(self.price_change_percentage_24h),
            "performance_category": self.performance_category,
            "performance_rank": self.performance_rank,
            "snapshot_timestamp": self.snapshot_timestamp.isoformat() if self.snapshot_timestamp else None,
        }


class MarketCacheEntry(_MarketColumns, db.Model):
    __tablename__ = "crypto_market_cache"


class PriceHistory(_MarketColumns, db.Model):
    __tablename__ = "crypto_price_history"

    __table_args__ = (
        Index("idx_price_history_coin_snapshot", "coingecko_id", "snapshot_timestamp"),
    )


class CoinMetadata(db.Model):
    """Master list of every coin that has appeared in a snapshot."""

    __tablename__ = "coin_metadata"

    coingecko_id = Column(String(100), primary_key=True)
    symbol = Column(String(50), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    image_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
