"""Turn observed on-chain prediction slots into snapshot rows.

A slot is only written when it is new or its prediction timestamp moved, so
running the detector twice over the same chain state inserts nothing the
second time.
"""

from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models_predictions import PREDICTION_PENDING, PREDICTION_TYPES, PredictionSnapshot
from solana_accounts import PRICE_DECIMALS

INSERT = "insert"
SKIP = "skip"

REASON_NEW = "new"
REASON_UPDATED = "updated"
REASON_SYMBOL_CHANGED = "symbol_changed"
REASON_DUPLICATE = "duplicate"


def is_active_slot(slot: dict) -> bool:
    """Non-blank symbol, a real timestamp and not yet resolved on chain."""
    return (
        bool((slot.get("symbol") or "").strip())
        and (slot.get("prediction_timestamp") or 0) > 0
        and not slot.get("resolution_price")
    )


def decide(observed: dict, existing: PredictionSnapshot | None) -> tuple[str, str]:
    if existing is None:
        return INSERT, REASON_NEW
    if int(existing.prediction_timestamp) != int(observed["prediction_timestamp"]):
        return INSERT, REASON_UPDATED
    if (existing.symbol or "").strip() != (observed.get("symbol") or "").strip():
        return INSERT, REASON_SYMBOL_CHANGED
    return SKIP, REASON_DUPLICATE


def latest_snapshot(wallet: str, prediction_type: str, rank: int):
    return (
        PredictionSnapshot.query.filter_by(wallet_address=wallet, prediction_type=prediction_type, rank=rank)
        .order_by(PredictionSnapshot.prediction_timestamp.desc(), PredictionSnapshot.id.desc())
        .first()
    )


def _price(value):
    if not value:
        return None
    return Decimal(int(value)).scaleb(-PRICE_DECIMALS)


def _new_row(user: dict, prediction_type: str, slot: dict, snapshot_ts: datetime) -> PredictionSnapshot:
    return PredictionSnapshot(
        wallet_address=user["owner"],
        prediction_type=prediction_type,
        rank=slot["rank"],
        symbol=slot["symbol"].strip(),
        predicted_percentage=slot.get("predicted_percentage"),
        price_at_prediction=_price(slot.get("price_at_prediction")),
        duration=slot.get("duration"),
        prediction_timestamp=int(slot["prediction_timestamp"]),
        points=int(user.get("points") or 0),
        last_updated=user.get("last_updated"),
        snapshot_timestamp=snapshot_ts,
        status=PREDICTION_PENDING,
    )


def record_observed_predictions(users: list[dict], snapshot_ts: datetime | None = None) -> dict:
    """Persist changed slots for every decoded user account.

    Each slot is written in its own savepoint: one bad slot is logged and
    counted, the rest of the user and the run carry on.
    """
    snapshot_ts = snapshot_ts or datetime.utcnow()
    log = current_app.logger
    counts = {"inserted": 0, "skipped": 0, "anomalies": 0, "errors": 0, "total": 0}

    for user in users:
        wallet = user.get("owner")
        if not wallet:
            continue
        for prediction_type in PREDICTION_TYPES:
            for slot in user.get(prediction_type) or []:
                symbol = (slot.get("symbol") or "").strip()
                if not symbol:
                    if (slot.get("prediction_timestamp") or 0) > 0:
                        log.debug("Withdrawn slot %s %s #%s ignored", wallet, prediction_type, slot.get("rank"))
                    continue
                if not is_active_slot(slot):
                    continue
                counts["total"] += 1

                try:
                    existing = latest_snapshot(wallet, prediction_type, slot["rank"])
                    action, reason = decide(slot, existing)
                    if action == SKIP:
                        counts["skipped"] += 1
                        continue
                    if reason == REASON_SYMBOL_CHANGED:
                        counts["anomalies"] += 1
                        log.warning(
                            "Symbol changed without a new timestamp: %s %s #%s %s -> %s",
                            wallet, prediction_type, slot["rank"], existing.symbol, symbol,
                        )
                    with db.session.begin_nested():
                        db.session.add(_new_row(user, prediction_type, slot, snapshot_ts))
                    counts["inserted"] += 1
                except IntegrityError:
                    counts["errors"] += 1
                    log.warning(
                        "Snapshot row already exists for %s %s #%s @%s",
                        wallet, prediction_type, slot["rank"], slot["prediction_timestamp"],
                    )
                except SQLAlchemyError:
                    counts["errors"] += 1
                    log.exception("Failed to record prediction %s %s #%s", wallet, prediction_type, slot.get("rank"))
        db.session.commit()

    log.info(
        "Change detection: %d inserted, %d unchanged, %d anomalies, %d errors (of %d active slots)",
        counts["inserted"], counts["skipped"], counts["anomalies"], counts["errors"], counts["total"],
    )
    return counts
