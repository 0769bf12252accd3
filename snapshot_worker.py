"""Crypto snapshot + settlement worker for Render.

Run this as a Render 'worker' service:
  python snapshot_worker.py

Environment:
- DATABASE_URL (already configured in Render)
- REDIS_URL (optional; lock + latest round cache)
- CRYPTO_SNAPSHOT_ON=1 to enable the loop
- CRYPTO_SNAPSHOT_FREQUENCY_MINUTES (default 15)
- PREDICTION_INTERVAL_MINUTES (default 60)
- SOLANA_RPC_URL / PROGRAM_ID / ADMIN_KEYPAIR
- COINGECKO_API_KEY (optional)

The same run_pipeline() backs scripts/run_pipeline_once.py and the admin
trigger; all three share one single-flight lock.
"""

from datetime import datetime
import os
import time

from flask import current_app

from change_detector import record_observed_predictions
from extensions import db
from ledger import PointsLedger
from market_data import MarketDataError, fetch_market_snapshot
from pipeline_lock import get_pipeline_lock
from ranking import RoundRanking, cache_latest_round, persist_round, rank_market
from settlement import settle_eligible
from solana_accounts import RpcError, fetch_all_user_predictions

SNAPSHOT_ON = os.getenv("CRYPTO_SNAPSHOT_ON", "0") in ("1", "true", "True", "yes")
FREQUENCY_MINUTES = int(os.getenv("CRYPTO_SNAPSHOT_FREQUENCY_MINUTES", "15"))


def run_pipeline(trigger="schedule", ledger=None, fetch_market=None, fetch_predictions=None, now=None, lock=None):
    """One full pass. Never raises; returns a counters dict. Needs an app context."""
    log = current_app.logger
    fetch_market = fetch_market or fetch_market_snapshot
    fetch_predictions = fetch_predictions or (lambda: fetch_all_user_predictions(logger=log))
    lock = lock or get_pipeline_lock()

    try:
        acquired = lock.acquire()
    except Exception as e:
        db.session.rollback()
        log.exception("Could not acquire pipeline lock")
        return {"ok": False, "trigger": trigger, "error": str(e)}
    if not acquired:
        log.info("Pipeline run (%s) skipped: another run holds the lock", trigger)
        return {"ok": False, "skipped": "locked", "trigger": trigger}

    now = now or datetime.utcnow()
    result = {"ok": True, "trigger": trigger, "started_at": now.isoformat()}
    try:
        try:
            records = fetch_market()
        except MarketDataError as e:
            log.warning("Market fetch failed, aborting run: %s", e)
            result.update(ok=False, error=str(e))
            return result

        ranked = rank_market(records)
        if not ranked["top_gainers"]:
            log.warning("Market snapshot had no usable records (%d received)", len(records))
            result.update(ok=False, error="no usable market records")
            return result

        result["round"] = persist_round(ranked, now)
        ranking = RoundRanking.from_ranked(ranked, now)
        cache_latest_round(ranking)

        try:
            users = fetch_predictions()
        except RpcError as e:
            # Scoring still runs against rows captured by earlier passes.
            log.warning("Prediction fetch failed, skipping change detection: %s", e)
            result["predictions"] = {"error": str(e)}
        else:
            result["predictions"] = record_observed_predictions(users, now)

        lock.refresh()
        result["settlement"] = settle_eligible(ledger or PointsLedger(), ranking, now, heartbeat=lock.refresh)
    except Exception as e:
        db.session.rollback()
        log.exception("Pipeline run (%s) failed", trigger)
        result.update(ok=False, error=str(e))
    finally:
        try:
            lock.release()
        except Exception:
            log.warning("Could not release pipeline lock", exc_info=True)

    result["finished_at"] = datetime.utcnow().isoformat()
    return result


def main():
    from app import app  # noqa: E402  (app registers blueprints that import this module)

    if not SNAPSHOT_ON:
        print("Snapshot worker disabled (set CRYPTO_SNAPSHOT_ON=1)")
        return
    print(f"Snapshot worker started (every {FREQUENCY_MINUTES} min)")
    while True:
        with app.app_context():
            print(run_pipeline("schedule"))
        time.sleep(FREQUENCY_MINUTES * 60)


if __name__ == "__main__":
    main()
