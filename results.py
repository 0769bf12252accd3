import re

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from extensions import db
from models_predictions import PREDICTION_SETTLED, PointTransaction, PredictionSnapshot
from ranking import get_cached_latest_round, load_round_ranking, recent_rounds
from scoring import CATEGORY_MATCH_POINTS, EXACT_MATCH_POINTS, PARTICIPATION_POINTS

results_api = Blueprint("results_api", __name__)

_BASE58_WALLET = re.compile(r"[1-9A-HJ-NP-Za-km-z]{32,44}")


def _is_valid_wallet(wallet: str) -> bool:
    return bool(wallet) and _BASE58_WALLET.fullmatch(wallet) is not None


def _limit(default=50, maximum=200) -> int:
    try:
        value = int(request.args.get("limit") or default)
    except ValueError:
        value = default
    return max(1, min(value, maximum))


@results_api.route("/api/results/latest", methods=["GET"])
def latest_round():
    cached = get_cached_latest_round()
    if cached:
        return jsonify({"success": True, "round": cached, "cached": True})
    ranking = load_round_ranking()
    if ranking is None:
        return jsonify({"success": False, "message": "No rounds yet"}), 404
    return jsonify({"success": True, "round": ranking.to_dict(), "cached": False})


@results_api.route("/api/results/rounds", methods=["GET"])
def list_rounds():
    return jsonify({"success": True, "rounds": recent_rounds(_limit(default=20, maximum=100))})


@results_api.route("/api/results/<round_id>", methods=["GET"])
def round_detail(round_id):
    ranking = load_round_ranking(round_id)
    if ranking is None:
        return jsonify({"success": False, "message": "Round not found"}), 404
    return jsonify({"success": True, "round": ranking.to_dict()})


@results_api.route("/api/predictions/<wallet>/history", methods=["GET"])
def prediction_history(wallet):
    if not _is_valid_wallet(wallet):
        return jsonify({"success": False, "message": "Valid wallet is required"}), 400
    rows = (
        PredictionSnapshot.query.filter_by(wallet_address=wallet)
        .order_by(PredictionSnapshot.snapshot_timestamp.desc(), PredictionSnapshot.id.desc())
        .limit(_limit())
        .all()
    )
    return jsonify({"success": True, "wallet": wallet, "predictions": [r.to_dict() for r in rows]})


@results_api.route("/api/predictions/<wallet>/stats", methods=["GET"])
def prediction_stats(wallet):
    if not _is_valid_wallet(wallet):
        return jsonify({"success": False, "message": "Valid wallet is required"}), 400

    by_points = dict(
        db.session.query(PredictionSnapshot.points_earned, func.count(PredictionSnapshot.id))
        .filter(
            PredictionSnapshot.wallet_address == wallet,
            PredictionSnapshot.status == PREDICTION_SETTLED,
        )
        .group_by(PredictionSnapshot.points_earned)
        .all()
    )
    settled = sum(by_points.values())
    exact = by_points.get(EXACT_MATCH_POINTS, 0)
    category = by_points.get(CATEGORY_MATCH_POINTS, 0)
    total_awarded = (
        db.session.query(func.coalesce(func.sum(PointTransaction.points_amount), 0))
        .filter(PointTransaction.wallet_address == wallet)
        .scalar()
    )
    return jsonify({
        "success": True,
        "wallet": wallet,
        "settled_predictions": settled,
        "exact_matches": exact,
        "category_matches": category,
        "participations": by_points.get(PARTICIPATION_POINTS, 0),
        "accuracy": round((exact + category) / settled, 4) if settled else 0.0,
        "prediction_points": sum((p or 0) * n for p, n in by_points.items()),
        "total_points_awarded": int(total_awarded or 0),
    })


@results_api.route("/api/points/<wallet>/transactions", methods=["GET"])
def point_transactions(wallet):
    if not _is_valid_wallet(wallet):
        return jsonify({"success": False, "message": "Valid wallet is required"}), 400
    rows = (
        PointTransaction.query.filter_by(wallet_address=wallet)
        .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
        .limit(_limit())
        .all()
    )
    return jsonify({"success": True, "wallet": wallet, "transactions": [r.to_dict() for r in rows]})
