"""Prediction snapshot, point ledger audit and settlement journal models.

Prediction rows move through an explicit state machine:

    pending -> scored -> settling -> settled
                  ^          |
                  +----------+   (in-flight settlement did not land)

`processed` is derived from the state, never stored separately.
"""

import json
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, Numeric, String, Text, UniqueConstraint

from extensions import db

PREDICTION_TOP = "top_performer"
PREDICTION_WORST = "worst_performer"
PREDICTION_TYPES = (PREDICTION_TOP, PREDICTION_WORST)

PREDICTION_PENDING = "pending"
PREDICTION_SCORED = "scored"
PREDICTION_SETTLING = "settling"
PREDICTION_SETTLED = "settled"

_ALLOWED_TRANSITIONS = {
    PREDICTION_PENDING: {PREDICTION_SCORED},
    # A deferred user is re-scored against the next round.
    PREDICTION_SCORED: {PREDICTION_SCORED, PREDICTION_SETTLING},
    PREDICTION_SETTLING: {PREDICTION_SETTLED, PREDICTION_SCORED},
    PREDICTION_SETTLED: set(),
}

TXN_EXACT_MATCH = "prediction_exact_match"
TXN_CATEGORY_MATCH = "prediction_category_match"
TXN_PARTICIPATION = "prediction_participation"
TXN_PARLAY_TOP = "parlay_bonus_top"
TXN_PARLAY_WORST = "parlay_bonus_worst"
TXN_CROSS_CATEGORY = "cross_category_bonus"

SETTLEMENT_PENDING = "pending"
SETTLEMENT_SUBMITTED = "submitted"
SETTLEMENT_CONFIRMED = "confirmed"
SETTLEMENT_FAILED = "failed"

RESOLVED_BY_PIPELINE = "pipeline"


class InvalidTransition(ValueError):
    pass


def _loads(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


class PredictionSnapshot(db.Model):
    """One user's prediction for one (type, rank) slot as observed at one point in time."""

    __tablename__ = "user_predictions_snapshots"

    id = Column(Integer, primary_key=True)
    wallet_address = Column(String(44), nullable=False, index=True)

    prediction_type = Column(String(20), nullable=False)  # top_performer / worst_performer
    rank = Column(Integer, nullable=False)  # 1-5
    symbol = Column(String(50), nullable=False)
    predicted_percentage = Column(Integer, nullable=True)
    price_at_prediction = Column(Numeric(24, 9), nullable=True)
    duration = Column(BigInteger, nullable=True)

    # Unix seconds asserted by the on-chain account, the change marker for this slot
    prediction_timestamp = Column(BigInteger, nullable=False)

    # Echo of the on-chain balance when the row was captured (never authoritative)
    points = Column(BigInteger, nullable=False, default=0)
    last_updated = Column(BigInteger, nullable=True)

    snapshot_timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    status = Column(String(20), nullable=False, default=PREDICTION_PENDING)
    points_earned = Column(Integer, nullable=True)
    settlement_id = Column(Integer, nullable=True, index=True)
    resolved_at = Column(DateTime, nullable=True)
    solana_signature = Column(String(100), nullable=True)
    resolved_by = Column(String(20), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "wallet_address", "prediction_type", "rank", "prediction_timestamp",
            name="uq_prediction_slot_timestamp",
        ),
        Index("idx_predictions_status_snapshot", "status", "snapshot_timestamp"),
        Index("idx_predictions_wallet_slot", "wallet_address", "prediction_type", "rank"),
    )

    @property
    def processed(self) -> bool:
        return self.status == PREDICTION_SETTLED

    def _transition(self, target: str) -> None:
        current = self.status or PREDICTION_PENDING
        if target not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(f"prediction {self.id}: {current} -> {target} is not allowed")
        self.status = target

    def mark_scored(self, points: int) -> None:
        self._transition(PREDICTION_SCORED)
        self.points_earned = int(points)

    def mark_settling(self, settlement_id: int) -> None:
        if self.points_earned is None:
            raise InvalidTransition(f"prediction {self.id} was never scored")
        self._transition(PREDICTION_SETTLING)
        self.settlement_id = settlement_id

    def mark_settled(self, signature: str, now: datetime | None = None) -> None:
        self._transition(PREDICTION_SETTLED)
        self.solana_signature = signature
        self.resolved_at = now or datetime.utcnow()
        self.resolved_by = RESOLVED_BY_PIPELINE

    def release(self) -> None:
        """Return a row whose settlement did not land to the scored pool."""
        self._transition(PREDICTION_SCORED)
        self.settlement_id = None

    def to_dict(self):
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "prediction_type": self.prediction_type,
            "rank": self.rank,
            "symbol": self.symbol,
            "predicted_percentage": self.predicted_percentage,
            "prediction_timestamp": self.prediction_timestamp,
            "points": self.points,
            "snapshot_timestamp": self.snapshot_timestamp.isoformat() if self.snapshot_timestamp else None,
            "status": self.status,
            "processed": self.processed,
            "points_earned": self.points_earned,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "solana_signature": self.solana_signature,
        }


class PointTransaction(db.Model):
    """Append-only audit trail of every point award."""

    __tablename__ = "user_point_transactions"

    id = Column(Integer, primary_key=True)
    wallet_address = Column(String(44), nullable=False, index=True)
    round_id = Column(String(36), nullable=False, index=True)
    transaction_type = Column(String(30), nullable=False, index=True)
    points_amount = Column(Integer, nullable=False)
    solana_signature = Column(String(100), nullable=True)
    related_prediction_ids = Column(Text, nullable=True)  # JSON list
    metadata_json = Column(Text, nullable=True)
    settlement_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_point_txns_wallet_created", "wallet_address", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "round_id": self.round_id,
            "transaction_type": self.transaction_type,
            "points_amount": self.points_amount,
            "solana_signature": self.solana_signature,
            "related_prediction_ids": _loads(self.related_prediction_ids, []),
            "metadata": _loads(self.metadata_json, None),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class PointSettlement(db.Model):
    """Journal of one absolute balance write, recorded before it is sent."""

    __tablename__ = "point_settlements"

    id = Column(Integer, primary_key=True)
    wallet_address = Column(String(44), nullable=False, index=True)
    round_id = Column(String(36), nullable=False)
    status = Column(String(20), nullable=False, default=SETTLEMENT_PENDING)

    previous_balance = Column(BigInteger, nullable=False)
    points_awarded = Column(Integer, nullable=False)
    new_balance = Column(BigInteger, nullable=False)

    solana_signature = Column(String(100), nullable=True, unique=True)
    last_valid_block_height = Column(BigInteger, nullable=True)
    breakdown_json = Column(Text, nullable=False)
    error = Column(String(400), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_settlements_status_updated", "status", "updated_at"),
    )

    @property
    def breakdown(self) -> dict:
        return _loads(self.breakdown_json, {"predictions": [], "bonuses": []})

    def to_dict(self):
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "round_id": self.round_id,
            "status": self.status,
            "previous_balance": self.previous_balance,
            "points_awarded": self.points_awarded,
            "new_balance": self.new_balance,
            "solana_signature": self.solana_signature,
            "last_valid_block_height": self.last_valid_block_height,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PipelineLock(db.Model):
    """Row-backed single-flight lock (used when redis is not configured)."""

    __tablename__ = "pipeline_locks"

    name = Column(String(64), primary_key=True)
    holder = Column(String(64), nullable=True)
    acquired_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
