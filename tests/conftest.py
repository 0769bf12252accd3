import os
import tempfile
from datetime import datetime, timedelta

# Configure before app import: app.py reads the environment at import time.
_DB_DIR = tempfile.mkdtemp(prefix="prediction-rounds-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_DB_DIR, "test.db")
os.environ.pop("REDIS_URL", None)
os.environ.pop("RENDER", None)
os.environ["ADMIN_API_KEY"] = "test-admin-key"

import pytest

from app import app as flask_app, limiter
from extensions import db
from ledger import STATUS_CONFIRMED, STATUS_UNKNOWN, PreparedClear, PreparedUpdate
from models_predictions import PREDICTION_PENDING, PredictionSnapshot

WALLET_A = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
WALLET_B = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    limiter.enabled = False
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


class FakeLedger:
    """In-memory points ledger with the PointsLedger surface."""

    BLOCKHASH_VALIDITY = 150

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.statuses = {}
        self.sent = []
        self.reads = []
        self.clears = []
        self.read_errors = {}
        self.send_error = None
        self.confirm_error = None
        self.clear_error = None
        self.land_on_error = False
        self.land_on_send = True
        self.height = 1_000
        self._seq = 0

    def read_balance(self, wallet):
        self.reads.append(wallet)
        if wallet in self.read_errors:
            raise self.read_errors[wallet]
        return self.balances.get(wallet)

    def block_height(self):
        return self.height

    def _next_signature(self):
        self._seq += 1
        return f"sig-{self._seq}"

    def build_balance_update(self, wallet, new_total):
        return PreparedUpdate(wallet=wallet, new_total=new_total, signature=self._next_signature(), raw=b"",
                              last_valid_block_height=self.height + self.BLOCKHASH_VALIDITY)

    def build_clear_silos(self, wallets):
        return PreparedClear(wallets=list(wallets), signature=self._next_signature(), raw=b"",
                             last_valid_block_height=self.height + self.BLOCKHASH_VALIDITY)

    def land(self, prepared):
        self.balances[prepared.wallet] = prepared.new_total
        self.statuses[prepared.signature] = STATUS_CONFIRMED

    def send(self, prepared):
        if isinstance(prepared, PreparedClear):
            if self.clear_error is not None:
                raise self.clear_error
            self.clears.append(prepared.wallets)
            return prepared.signature
        if self.send_error is not None:
            if self.land_on_error:
                self.land(prepared)
            raise self.send_error
        self.sent.append(prepared)
        if self.land_on_send:
            self.land(prepared)
        return prepared.signature

    def wait_for_confirmation(self, signature, timeout=None):
        if self.confirm_error is not None:
            raise self.confirm_error

    def signature_status(self, signature):
        return self.statuses.get(signature, STATUS_UNKNOWN)


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def make_prediction(app):
    """Insert a snapshot row; snapshot taken two hours ago unless given."""

    def _make(wallet=WALLET_A, prediction_type="top_performer", rank=1, symbol="BTC",
              prediction_timestamp=1_700_000_000, snapshot_timestamp=None, status=PREDICTION_PENDING, points=0):
        row = PredictionSnapshot(
            wallet_address=wallet,
            prediction_type=prediction_type,
            rank=rank,
            symbol=symbol,
            prediction_timestamp=prediction_timestamp,
            points=points,
            snapshot_timestamp=snapshot_timestamp or datetime.utcnow() - timedelta(hours=2),
            status=status,
        )
        db.session.add(row)
        db.session.commit()
        return row

    return _make
