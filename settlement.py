"""Settle scored predictions onto the points ledger, one user at a time.

For each user the absolute balance write is journalled (PointSettlement) and
its signature stored before anything is sent. Rows sit in `settling` until the
write is confirmed, so a crash at any point leaves a journal that the next
pass reconciles against the chain instead of awarding the rows again.
"""

import json
import os
from datetime import datetime, timedelta

from flask import current_app

from eligibility import PREDICTION_INTERVAL_MINUTES, group_by_wallet, select_eligible
from extensions import db
from ledger import STATUS_CONFIRMED, STATUS_FAILED, ConfirmationTimeout, LedgerError
from models_predictions import (
    PREDICTION_SETTLING,
    SETTLEMENT_CONFIRMED,
    SETTLEMENT_FAILED,
    SETTLEMENT_PENDING,
    SETTLEMENT_SUBMITTED,
    PointSettlement,
    PointTransaction,
    PredictionSnapshot,
)
from scoring import score_user
from solana_accounts import RpcError

SETTLEMENT_RECOVERY_GRACE_SECONDS = int(os.getenv("SETTLEMENT_RECOVERY_GRACE_SECONDS", "180"))
CLEAR_BATCH_SIZE = 10

OUTCOME_SETTLED = "settled"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


def _journal_rows(journal: PointSettlement):
    return (
        PredictionSnapshot.query.filter_by(settlement_id=journal.id, status=PREDICTION_SETTLING)
        .order_by(PredictionSnapshot.id)
        .all()
    )


def _abandon(journal: PointSettlement, rows, error: str, now=None) -> None:
    """The write never landed: fail the journal and hand the rows back for re-scoring."""
    journal.status = SETTLEMENT_FAILED
    journal.error = (error or "")[:400]
    journal.updated_at = now or datetime.utcnow()
    for row in rows:
        row.release()
    db.session.commit()


def _finalize(journal: PointSettlement, rows, now=None) -> int:
    """Write the audit trail from the journal and mark its rows settled."""
    now = now or datetime.utcnow()
    breakdown = journal.breakdown
    signature = journal.solana_signature
    round_id = breakdown.get("round_id") or journal.round_id

    for item in breakdown.get("predictions", []):
        db.session.add(PointTransaction(
            wallet_address=journal.wallet_address,
            round_id=round_id,
            transaction_type=item["transaction_type"],
            points_amount=item["points"],
            solana_signature=signature,
            related_prediction_ids=json.dumps([item["id"]]),
            metadata_json=json.dumps({
                "prediction_type": item.get("prediction_type"),
                "rank": item.get("rank"),
                "symbol": item.get("symbol"),
            }),
            settlement_id=journal.id,
            created_at=now,
        ))
    for bonus in breakdown.get("bonuses", []):
        db.session.add(PointTransaction(
            wallet_address=journal.wallet_address,
            round_id=round_id,
            transaction_type=bonus["transaction_type"],
            points_amount=bonus["points"],
            solana_signature=signature,
            related_prediction_ids=json.dumps(bonus.get("prediction_ids") or []),
            metadata_json=json.dumps(bonus.get("metadata") or {}),
            settlement_id=journal.id,
            created_at=now,
        ))

    for row in rows:
        row.mark_settled(signature, now)
    journal.status = SETTLEMENT_CONFIRMED
    journal.error = None
    journal.updated_at = now
    db.session.commit()
    return len(rows)


def _expired(journal: PointSettlement, height, grace_seconds) -> bool:
    """True once a submitted write can no longer land."""
    if journal.last_valid_block_height is not None:
        return height is not None and height > journal.last_valid_block_height
    # No known blockhash expiry: fall back to wall-clock age since signing.
    signed_at = journal.updated_at or journal.created_at
    return datetime.utcnow() - signed_at > timedelta(seconds=grace_seconds)


def recover_in_flight(ledger, now=None, grace_seconds=SETTLEMENT_RECOVERY_GRACE_SECONDS) -> dict:
    """Reconcile journals left pending/submitted by an earlier pass.

    An unknown signature is only given up once the chain is past the
    journal's last valid block height. The height is read before any status,
    so an expired write reported unknown cannot land afterwards.
    """
    now = now or datetime.utcnow()
    log = current_app.logger
    counts = {"confirmed": 0, "failed": 0, "waiting": 0, "wallets": []}

    journals = (
        PointSettlement.query.filter(PointSettlement.status.in_((SETTLEMENT_PENDING, SETTLEMENT_SUBMITTED)))
        .order_by(PointSettlement.id)
        .all()
    )
    height = None
    for journal in journals:
        rows = _journal_rows(journal)
        if journal.status == SETTLEMENT_PENDING or not journal.solana_signature:
            log.warning("Settlement %s for %s was never submitted; releasing %d rows",
                        journal.id, journal.wallet_address, len(rows))
            _abandon(journal, rows, "interrupted before submission", now)
            counts["failed"] += 1
            continue

        try:
            if height is None and journal.last_valid_block_height is not None:
                height = ledger.block_height()
            status = ledger.signature_status(journal.solana_signature)
        except RpcError as e:
            log.warning("Could not check settlement %s (%s); will retry", journal.id, e)
            counts["waiting"] += 1
            continue

        if status == STATUS_CONFIRMED:
            log.info("Settlement %s for %s landed; recording %d rows",
                     journal.id, journal.wallet_address, len(rows))
            _finalize(journal, rows, now)
            counts["confirmed"] += 1
            counts["wallets"].append(journal.wallet_address)
        elif status == STATUS_FAILED or _expired(journal, height, grace_seconds):
            log.warning("Settlement %s for %s did not land (%s); releasing %d rows",
                        journal.id, journal.wallet_address, status, len(rows))
            _abandon(journal, rows, f"signature {status}", now)
            counts["failed"] += 1
        else:
            counts["waiting"] += 1
    return counts


def settle_user(ledger, wallet: str, rows, score, now=None) -> str:
    """Load -> compute -> journal -> submit -> confirm -> record -> mark for one user."""
    log = current_app.logger

    try:
        current = ledger.read_balance(wallet)
    except RpcError as e:
        log.warning("Balance read failed for %s: %s", wallet, e)
        return OUTCOME_FAILED
    if current is None:
        log.info("No predictions account for %s; deferring %d rows", wallet, len(rows))
        return OUTCOME_SKIPPED

    new_total = int(current) + score.total
    journal = PointSettlement(
        wallet_address=wallet,
        round_id=score.round_id,
        status=SETTLEMENT_PENDING,
        previous_balance=int(current),
        points_awarded=score.total,
        new_balance=new_total,
        breakdown_json=json.dumps(score.to_breakdown(rows)),
    )
    db.session.add(journal)
    db.session.flush()
    for row in rows:
        row.mark_settling(journal.id)
    db.session.commit()

    try:
        prepared = ledger.build_balance_update(wallet, new_total)
    except (RpcError, ValueError) as e:
        log.warning("Could not build balance update for %s: %s", wallet, e)
        _abandon(journal, rows, str(e), now)
        return OUTCOME_FAILED

    journal.solana_signature = prepared.signature
    journal.last_valid_block_height = prepared.last_valid_block_height
    journal.status = SETTLEMENT_SUBMITTED
    # Recovery measures age from signing.
    journal.updated_at = datetime.utcnow()
    db.session.commit()

    try:
        ledger.send(prepared)
        ledger.wait_for_confirmation(prepared.signature)
    except ConfirmationTimeout as e:
        log.warning("Settlement %s for %s unconfirmed: %s", journal.id, wallet, e)
        return OUTCOME_FAILED
    except LedgerError as e:
        log.warning("Settlement %s for %s failed on chain: %s", journal.id, wallet, e)
        _abandon(journal, rows, str(e), now)
        return OUTCOME_FAILED
    except RpcError as e:
        if e.code is not None:
            # The node rejected the transaction outright.
            log.warning("Settlement %s for %s rejected: %s", journal.id, wallet, e)
            _abandon(journal, rows, str(e), now)
        else:
            log.warning("Settlement %s for %s in doubt: %s", journal.id, wallet, e)
        return OUTCOME_FAILED

    _finalize(journal, rows, now)
    log.info("Settled %s: %d -> %d (+%d, %d predictions)",
             wallet, current, new_total, score.total, len(rows))
    return OUTCOME_SETTLED


def clear_settled_users(ledger, wallets, batch_size=CLEAR_BATCH_SIZE) -> dict:
    """Empty the on-chain prediction slots of settled users, batch_size per transaction.

    A failed batch is logged and skipped; the slots are cleared again the next
    time those users settle.
    """
    log = current_app.logger
    wallets = list(dict.fromkeys(wallets))
    result = {"total_users": len(wallets), "users_cleared": 0, "batches": 0}

    for start in range(0, len(wallets), batch_size):
        batch = wallets[start:start + batch_size]
        try:
            prepared = ledger.build_clear_silos(batch)
            ledger.send(prepared)
            ledger.wait_for_confirmation(prepared.signature)
        except (RpcError, ValueError) as e:
            log.warning("Clearing batch %d (%d users) failed: %s; users: %s",
                        start // batch_size + 1, len(batch), e, ", ".join(batch))
            continue
        result["users_cleared"] += len(batch)
        result["batches"] += 1
        log.info("Cleared predictions for %d users (tx %s)", len(batch), prepared.signature)
    return result


def settle_eligible(ledger, ranking, now=None, interval_minutes=PREDICTION_INTERVAL_MINUTES, heartbeat=None) -> dict:
    log = current_app.logger
    counters = {
        "total_eligible": 0,
        "users_processed": 0,
        "users_skipped": 0,
        "users_failed": 0,
        "total_points_awarded": 0,
        "predictions_processed": 0,
        "recovered": 0,
        "cleared": {"total_users": 0, "users_cleared": 0, "batches": 0},
        "errors": [],
    }

    recovered = recover_in_flight(ledger, now)
    counters["recovered"] = recovered["confirmed"] + recovered["failed"]
    settled_wallets = list(recovered["wallets"])

    rows = select_eligible(now, interval_minutes)
    counters["total_eligible"] = len(rows)
    if not rows:
        log.info("No eligible predictions")
    elif ranking is None:
        log.warning("No round available; %d eligible predictions left for the next pass", len(rows))
    else:
        settled_wallets += _settle_users(ledger, ranking, rows, now, heartbeat, counters)

    if settled_wallets and "lock lost" not in counters["errors"]:
        counters["cleared"] = clear_settled_users(ledger, settled_wallets)

    log.info(
        "Settlement pass: %d users settled, %d skipped, %d failed, %d points over %d predictions",
        counters["users_processed"], counters["users_skipped"], counters["users_failed"],
        counters["total_points_awarded"], counters["predictions_processed"],
    )
    return counters


def _settle_users(ledger, ranking, rows, now, heartbeat, counters) -> list:
    log = current_app.logger
    settled = []
    for wallet, user_rows in group_by_wallet(rows).items():
        if heartbeat is not None and heartbeat() is False:
            log.warning("Pipeline lock lost; stopping settlement before %s", wallet)
            counters["errors"].append("lock lost")
            break
        try:
            score = score_user(wallet, user_rows, ranking)
            for row in user_rows:
                row.mark_scored(score.row_points[row.id])
            db.session.commit()

            outcome = settle_user(ledger, wallet, user_rows, score, now)
        except Exception as e:
            # Any journal left behind is reconciled by the next pass.
            db.session.rollback()
            log.exception("Error settling %s", wallet)
            counters["users_failed"] += 1
            counters["errors"].append(f"{wallet}: {e.__class__.__name__}")
            continue

        if outcome == OUTCOME_SETTLED:
            counters["users_processed"] += 1
            counters["total_points_awarded"] += score.total
            counters["predictions_processed"] += len(user_rows)
            settled.append(wallet)
        elif outcome == OUTCOME_SKIPPED:
            counters["users_skipped"] += 1
        else:
            counters["users_failed"] += 1
            counters["errors"].append(f"{wallet}: settlement failed")
    return settled
