"""Admin trigger for the snapshot/settlement pipeline."""

import os
import secrets

from flask import Blueprint, jsonify, request

from models_predictions import SETTLEMENT_PENDING, SETTLEMENT_SUBMITTED, PointSettlement
from snapshot_worker import run_pipeline

admin_pipeline = Blueprint("admin_pipeline", __name__)


def _admin_ok(req) -> bool:
    # Header auth only; never query params.
    key = req.headers.get("X-Admin-Key", "")
    expected = os.getenv("ADMIN_API_KEY", "")
    return bool(expected) and secrets.compare_digest(key, expected)


@admin_pipeline.route("/api/admin/pipeline/run", methods=["POST"])
def run_pipeline_now():
    if not _admin_ok(request):
        return jsonify({"success": False, "error": "Admin access required"}), 403

    result = run_pipeline("admin")
    if result.get("skipped") == "locked":
        return jsonify({"success": False, "error": "Pipeline already running", "result": result}), 409
    return jsonify({"success": bool(result.get("ok")), "result": result}), 200 if result.get("ok") else 500


@admin_pipeline.route("/api/admin/pipeline/settlements", methods=["GET"])
def in_flight_settlements():
    if not _admin_ok(request):
        return jsonify({"success": False, "error": "Admin access required"}), 403
    rows = (
        PointSettlement.query.filter(PointSettlement.status.in_((SETTLEMENT_PENDING, SETTLEMENT_SUBMITTED)))
        .order_by(PointSettlement.id)
        .all()
    )
    return jsonify({"success": True, "settlements": [r.to_dict() for r in rows]})
