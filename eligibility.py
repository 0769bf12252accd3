import os
from collections import OrderedDict
from datetime import datetime, timedelta

from models_predictions import PREDICTION_PENDING, PREDICTION_SCORED, PredictionSnapshot

PREDICTION_INTERVAL_MINUTES = int(os.getenv("PREDICTION_INTERVAL_MINUTES", "60"))


def eligibility_cutoff(now=None, interval_minutes=PREDICTION_INTERVAL_MINUTES) -> datetime:
    return (now or datetime.utcnow()) - timedelta(minutes=interval_minutes)


def select_eligible(now=None, interval_minutes=PREDICTION_INTERVAL_MINUTES) -> list[PredictionSnapshot]:
    """Unsettled rows whose snapshot is older than the prediction interval."""
    cutoff = eligibility_cutoff(now, interval_minutes)
    return (
        PredictionSnapshot.query.filter(
            PredictionSnapshot.status.in_((PREDICTION_PENDING, PREDICTION_SCORED)),
            PredictionSnapshot.snapshot_timestamp < cutoff,
        )
        .order_by(
            PredictionSnapshot.wallet_address,
            PredictionSnapshot.prediction_type,
            PredictionSnapshot.rank,
            PredictionSnapshot.id,
        )
        .all()
    )


def group_by_wallet(rows) -> "OrderedDict[str, list[PredictionSnapshot]]":
    grouped = OrderedDict()
    for row in rows:
        grouped.setdefault(row.wallet_address, []).append(row)
    return grouped
