"""Prediction scoring and parlay bonuses. Pure functions, no I/O.

Per prediction (own category only):
    exact rank            50
    in ranking, other rank 10
    not in ranking          1

Parlay, per category, on the number of predictions whose symbol is anywhere in
that category's ranking (cumulative totals): 2 -> 25, 3 -> 75, 4 -> 200,
5 -> 500. Plus 50 when both categories have at least one.
"""

from dataclasses import dataclass, field

from models_predictions import (
    PREDICTION_TOP,
    PREDICTION_TYPES,
    PREDICTION_WORST,
    TXN_CATEGORY_MATCH,
    TXN_CROSS_CATEGORY,
    TXN_EXACT_MATCH,
    TXN_PARLAY_TOP,
    TXN_PARLAY_WORST,
    TXN_PARTICIPATION,
)

EXACT_MATCH_POINTS = 50
CATEGORY_MATCH_POINTS = 10
PARTICIPATION_POINTS = 1

# (minimum correct, cumulative bonus), highest first
PARLAY_TIERS = ((5, 500), (4, 200), (3, 75), (2, 25))
CROSS_CATEGORY_BONUS = 50

_PARLAY_TXN = {PREDICTION_TOP: TXN_PARLAY_TOP, PREDICTION_WORST: TXN_PARLAY_WORST}


def normalize_symbol(symbol) -> str:
    return (symbol or "").strip().lower()


def score_prediction(prediction_type: str, rank: int, symbol: str, ranking) -> int:
    realized = ranking.map_for(prediction_type).get(normalize_symbol(symbol))
    if realized is None:
        return PARTICIPATION_POINTS
    if realized == int(rank):
        return EXACT_MATCH_POINTS
    return CATEGORY_MATCH_POINTS


def transaction_type_for(points: int) -> str:
    if points == EXACT_MATCH_POINTS:
        return TXN_EXACT_MATCH
    if points == CATEGORY_MATCH_POINTS:
        return TXN_CATEGORY_MATCH
    return TXN_PARTICIPATION


def tier_bonus(correct_count: int) -> int:
    for threshold, bonus in PARLAY_TIERS:
        if correct_count >= threshold:
            return bonus
    return 0


@dataclass
class BonusEntry:
    transaction_type: str
    points: int
    prediction_ids: list
    metadata: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "transaction_type": self.transaction_type,
            "points": self.points,
            "prediction_ids": list(self.prediction_ids),
            "metadata": self.metadata,
        }


@dataclass
class ParlayBreakdown:
    top_correct_ids: list = field(default_factory=list)
    worst_correct_ids: list = field(default_factory=list)

    @property
    def top_correct(self) -> int:
        return len(self.top_correct_ids)

    @property
    def worst_correct(self) -> int:
        return len(self.worst_correct_ids)

    @property
    def top_bonus(self) -> int:
        return tier_bonus(self.top_correct)

    @property
    def worst_bonus(self) -> int:
        return tier_bonus(self.worst_correct)

    @property
    def cross_bonus(self) -> int:
        return CROSS_CATEGORY_BONUS if self.top_correct and self.worst_correct else 0

    @property
    def total(self) -> int:
        return self.top_bonus + self.worst_bonus + self.cross_bonus

    def bonus_entries(self) -> list[BonusEntry]:
        entries = []
        for prediction_type, ids, bonus in (
            (PREDICTION_TOP, self.top_correct_ids, self.top_bonus),
            (PREDICTION_WORST, self.worst_correct_ids, self.worst_bonus),
        ):
            if bonus:
                entries.append(BonusEntry(
                    _PARLAY_TXN[prediction_type], bonus, ids,
                    {"category": prediction_type, "correct_count": len(ids)},
                ))
        if self.cross_bonus:
            entries.append(BonusEntry(
                TXN_CROSS_CATEGORY, self.cross_bonus, self.top_correct_ids + self.worst_correct_ids,
                {"top_correct": self.top_correct, "worst_correct": self.worst_correct},
            ))
        return entries


def compute_parlay_bonus(rows, ranking) -> ParlayBreakdown:
    """`rows` is one user's scored rows for this pass (any order)."""
    breakdown = ParlayBreakdown()
    for row in sorted(rows, key=lambda r: (r.prediction_type, r.rank, r.id or 0)):
        if row.prediction_type not in PREDICTION_TYPES:
            continue
        if normalize_symbol(row.symbol) not in ranking.map_for(row.prediction_type):
            continue
        if row.prediction_type == PREDICTION_TOP:
            breakdown.top_correct_ids.append(row.id)
        else:
            breakdown.worst_correct_ids.append(row.id)
    return breakdown


@dataclass
class UserScore:
    wallet: str
    round_id: str
    row_points: dict  # prediction id -> points
    parlay: ParlayBreakdown

    @property
    def prediction_points(self) -> int:
        return sum(self.row_points.values())

    @property
    def total(self) -> int:
        return self.prediction_points + self.parlay.total

    def to_breakdown(self, rows) -> dict:
        """Everything needed to write the audit trail later, JSON-serialisable."""
        return {
            "round_id": self.round_id,
            "predictions": [
                {
                    "id": row.id,
                    "prediction_type": row.prediction_type,
                    "rank": row.rank,
                    "symbol": row.symbol,
                    "points": self.row_points[row.id],
                    "transaction_type": transaction_type_for(self.row_points[row.id]),
                }
                for row in rows
            ],
            "bonuses": [entry.to_dict() for entry in self.parlay.bonus_entries()],
        }


def score_user(wallet: str, rows, ranking) -> UserScore:
    row_points = {
        row.id: score_prediction(row.prediction_type, row.rank, row.symbol, ranking)
        for row in rows
    }
    return UserScore(
        wallet=wallet,
        round_id=ranking.round_id,
        row_points=row_points,
        parlay=compute_parlay_bonus(rows, ranking),
    )
