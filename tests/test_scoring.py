"""Unit tests for per-prediction scoring and parlay bonuses."""

from types import SimpleNamespace

import pytest

from models_predictions import (
    PREDICTION_TOP,
    PREDICTION_WORST,
    TXN_CATEGORY_MATCH,
    TXN_CROSS_CATEGORY,
    TXN_EXACT_MATCH,
    TXN_PARLAY_TOP,
    TXN_PARTICIPATION,
)
from ranking import RoundRanking
from scoring import (
    compute_parlay_bonus,
    score_prediction,
    score_user,
    tier_bonus,
    transaction_type_for,
)


@pytest.fixture
def ranking():
    return RoundRanking.from_symbols(
        "round-r",
        top=["BTC", "ETH", "SOL", "DOGE", "XRP"],
        worst=["LUNA", "FTT", "CEL", "UST", "SRM"],
    )


def _row(id, prediction_type, rank, symbol):
    return SimpleNamespace(id=id, prediction_type=prediction_type, rank=rank, symbol=symbol)


def test_exact_category_and_participation():
    ranking = RoundRanking.from_symbols("r", top=["eth", "doge", "sol", "ada", "xrp"], worst=[])
    assert score_prediction(PREDICTION_TOP, 2, "doge", ranking) == 50
    assert score_prediction(PREDICTION_TOP, 4, "doge", ranking) == 10
    assert score_prediction(PREDICTION_TOP, 2, "pepe", ranking) == 1


def test_symbol_comparison_ignores_case_and_whitespace(ranking):
    assert score_prediction(PREDICTION_TOP, 1, " btc ", ranking) == 50


def test_never_looks_up_other_category(ranking):
    # LUNA is the worst performer, but a top_performer prediction only sees the top ranking.
    assert score_prediction(PREDICTION_TOP, 1, "LUNA", ranking) == 1
    assert score_prediction(PREDICTION_WORST, 1, "BTC", ranking) == 1


def test_ranking_matches_coingecko_id_as_well_as_ticker():
    ranking = RoundRanking(
        round_id="r",
        snapshot_timestamp=None,
        top_gainers=[{"coingecko_id": "dogecoin", "symbol": "doge"}],
        worst_performers=[],
    )
    assert score_prediction(PREDICTION_TOP, 1, "dogecoin", ranking) == 50
    assert score_prediction(PREDICTION_TOP, 1, "DOGE", ranking) == 50


def test_transaction_type_for_points():
    assert transaction_type_for(50) == TXN_EXACT_MATCH
    assert transaction_type_for(10) == TXN_CATEGORY_MATCH
    assert transaction_type_for(1) == TXN_PARTICIPATION


@pytest.mark.parametrize("correct,bonus", [(0, 0), (1, 0), (2, 25), (3, 75), (4, 200), (5, 500)])
def test_tier_bonus_is_cumulative(correct, bonus):
    assert tier_bonus(correct) == bonus


def test_perfect_top_category_without_cross_bonus(ranking):
    rows = [_row(i, PREDICTION_TOP, i, s) for i, s in enumerate(["BTC", "ETH", "SOL", "DOGE", "XRP"], start=1)]
    parlay = compute_parlay_bonus(rows, ranking)
    assert parlay.top_correct == 5
    assert parlay.worst_correct == 0
    assert parlay.cross_bonus == 0
    assert parlay.total == 500


def test_one_correct_in_each_category_only_earns_cross_bonus(ranking):
    rows = [_row(1, PREDICTION_TOP, 3, "ETH"), _row(2, PREDICTION_WORST, 5, "FTT")]
    parlay = compute_parlay_bonus(rows, ranking)
    assert parlay.top_bonus == 0
    assert parlay.worst_bonus == 0
    assert parlay.cross_bonus == 50
    assert parlay.total == 50


def test_parlay_is_order_independent(ranking):
    rows = [
        _row(1, PREDICTION_TOP, 1, "SOL"),
        _row(2, PREDICTION_TOP, 2, "BTC"),
        _row(3, PREDICTION_TOP, 3, "PEPE"),
        _row(4, PREDICTION_WORST, 1, "LUNA"),
    ]
    forward = compute_parlay_bonus(rows, ranking)
    backward = compute_parlay_bonus(list(reversed(rows)), ranking)
    assert forward.bonus_entries() == backward.bonus_entries()


def test_round_scenario_awards_145_points(ranking):
    # SOL and BTC swapped in the top slots, LUNA exactly right.
    rows = [
        _row(11, PREDICTION_TOP, 1, "SOL"),
        _row(12, PREDICTION_TOP, 2, "BTC"),
        _row(13, PREDICTION_WORST, 1, "LUNA"),
    ]
    score = score_user("wallet-a", rows, ranking)

    assert score.row_points == {11: 10, 12: 10, 13: 50}
    assert score.parlay.top_bonus == 25
    assert score.parlay.worst_bonus == 0
    assert score.parlay.cross_bonus == 50
    assert score.total == 145

    entries = {e.transaction_type: e for e in score.parlay.bonus_entries()}
    assert set(entries) == {TXN_PARLAY_TOP, TXN_CROSS_CATEGORY}
    assert entries[TXN_PARLAY_TOP].prediction_ids == [11, 12]
    assert sorted(entries[TXN_CROSS_CATEGORY].prediction_ids) == [11, 12, 13]


def test_breakdown_lists_every_row_and_only_nonzero_bonuses(ranking):
    rows = [_row(1, PREDICTION_TOP, 1, "PEPE")]
    breakdown = score_user("wallet-a", rows, ranking).to_breakdown(rows)
    assert breakdown["round_id"] == "round-r"
    assert breakdown["predictions"] == [{
        "id": 1,
        "prediction_type": PREDICTION_TOP,
        "rank": 1,
        "symbol": "PEPE",
        "points": 1,
        "transaction_type": TXN_PARTICIPATION,
    }]
    assert breakdown["bonuses"] == []
