"""Account layout decoding, JSON-RPC helper and ledger client tests."""

import base64
import json
from http.client import IncompleteRead
from unittest.mock import MagicMock, patch

import base58
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

import ledger as ledger_mod
from ledger import (
    STATUS_CONFIRMED,
    STATUS_FAILED,
    STATUS_UNKNOWN,
    CLEAR_SILOS_DISCRIMINATOR,
    UPDATE_POINTS_DISCRIMINATOR,
    ConfirmationTimeout,
    LedgerError,
    PointsLedger,
    load_admin_keypair,
)
from models_predictions import PREDICTION_TOP, PREDICTION_WORST
from solana_accounts import (
    _ACCOUNT,
    ACCOUNT_SIZE,
    POINTS_OFFSET,
    RpcError,
    _rpc_post,
    decode_user_predictions,
    fetch_all_user_predictions,
    global_state_pda,
    program_id,
    read_points,
    user_predictions_pda,
)


def _sym(*symbols):
    return b"".join(s.encode().ljust(32, b"\x00") for s in symbols)


def _account(owner, points=1234, top=("BTC", "SOL", "", "", ""), worst=("LUNA", "", "", "", "")):
    ints = (
        [1_700_000_100, 1_700_000_200, 0, 0, 0]      # top timestamps
        + [1_700_000_300, 0, 0, 0, 0]                # worst timestamps
        + [15, -3, 0, 0, 0]                          # top percentages
        + [-40, 0, 0, 0, 0]                          # worst percentages
        + [65_000_000_000_000, 140_000_000_000, 0, 0, 0]
        + [1_000_000, 0, 0, 0, 0]
        + [0, 0, 0, 0, 0]                            # top resolution prices
        + [0, 0, 0, 0, 0]
        + [3600, 3600, 0, 0, 0]
        + [3600, 0, 0, 0, 0]
        + [3, points, 1_700_000_400]
    )
    return _ACCOUNT.pack(b"\x01" * 8, bytes(owner), _sym(*top), _sym(*worst), *ints)


@pytest.fixture
def owner():
    return Keypair().pubkey()


def test_layout_size_and_points_offset(owner):
    data = _account(owner, points=987)
    assert ACCOUNT_SIZE == 724
    assert POINTS_OFFSET == 708
    assert read_points(data) == 987


def test_decode_user_predictions(owner):
    decoded = decode_user_predictions(_account(owner))

    assert decoded["owner"] == str(owner)
    assert decoded["points"] == 1234
    assert decoded["prediction_count"] == 3
    assert decoded["last_updated"] == 1_700_000_400

    top = decoded[PREDICTION_TOP]
    assert [s["symbol"] for s in top] == ["BTC", "SOL", "", "", ""]
    assert top[1] == {
        "rank": 2,
        "symbol": "SOL",
        "prediction_timestamp": 1_700_000_200,
        "predicted_percentage": -3,
        "price_at_prediction": 140_000_000_000,
        "resolution_price": 0,
        "duration": 3600,
    }
    worst = decoded[PREDICTION_WORST]
    assert worst[0]["symbol"] == "LUNA"
    assert worst[0]["predicted_percentage"] == -40


def test_decode_rejects_wrong_size():
    with pytest.raises(ValueError):
        decode_user_predictions(b"\x00" * 100)


def test_fetch_all_skips_undecodable_accounts(owner):
    good = base64.b64encode(_account(owner)).decode()
    bad = base64.b64encode(b"\x00" * 10).decode()
    result = [
        {"pubkey": "good", "account": {"data": [good, "base64"]}},
        {"pubkey": "bad", "account": {"data": [bad, "base64"]}},
    ]
    logger = MagicMock()
    with patch("solana_accounts._rpc_post", return_value=result) as rpc:
        users = fetch_all_user_predictions(rpc_url="http://rpc", logger=logger)

    assert [u["owner"] for u in users] == [str(owner)]
    logger.warning.assert_called_once()
    method, params = rpc.call_args.args[1], rpc.call_args.args[2]
    assert method == "getProgramAccounts"
    assert params[1]["filters"] == [{"dataSize": 724}]


def test_pdas_are_deterministic(owner):
    assert user_predictions_pda(owner) == user_predictions_pda(str(owner))
    assert user_predictions_pda(owner) != global_state_pda()


def _fake_response(payload):
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode()
    resp.__enter__.return_value = resp
    return resp


def test_rpc_error_object_carries_code():
    payload = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32002, "message": "Blockhash not found"}}
    with patch("solana_accounts.urlrequest.urlopen", return_value=_fake_response(payload)):
        with pytest.raises(RpcError) as exc:
            _rpc_post("http://rpc", "sendTransaction", [])
    assert exc.value.code == -32002


def test_rpc_transport_failure_has_no_code():
    with patch("solana_accounts.urlrequest.urlopen", side_effect=OSError("connection reset")):
        with pytest.raises(RpcError) as exc:
            _rpc_post("http://rpc", "getHealth")
    assert exc.value.code is None


def test_rpc_truncated_body_is_an_rpc_error():
    resp = _fake_response({})
    resp.read.side_effect = IncompleteRead(b"")
    with patch("solana_accounts.urlrequest.urlopen", return_value=resp):
        with pytest.raises(RpcError) as exc:
            _rpc_post("http://rpc", "getAccountInfo", [])
    assert exc.value.code is None


def test_rpc_non_object_response_is_an_rpc_error():
    resp = MagicMock()
    resp.read.return_value = b"[]"
    resp.__enter__.return_value = resp
    with patch("solana_accounts.urlrequest.urlopen", return_value=resp):
        with pytest.raises(RpcError):
            _rpc_post("http://rpc", "getHealth")


# -------------------------------
# Ledger client
# -------------------------------

def test_load_admin_keypair_accepts_json_and_base58():
    kp = Keypair()
    as_json = json.dumps(list(bytes(kp)))
    as_b58 = base58.b58encode(bytes(kp)).decode()
    assert load_admin_keypair(as_json).pubkey() == kp.pubkey()
    assert load_admin_keypair(as_b58).pubkey() == kp.pubkey()
    with pytest.raises(LedgerError):
        load_admin_keypair("")
    with pytest.raises(LedgerError):
        load_admin_keypair("[1, 2, 3]")


def test_read_balance(owner):
    data = base64.b64encode(_account(owner, points=77)).decode()
    ledger = PointsLedger(rpc_url="http://rpc", keypair=Keypair())
    with patch("solana_accounts._rpc_post", return_value={"value": {"data": [data, "base64"]}}) as rpc:
        assert ledger.read_balance(str(owner)) == 77
    assert rpc.call_args.args[0] == "http://rpc"
    assert rpc.call_args.args[2][0] == str(user_predictions_pda(owner))

    with patch("solana_accounts._rpc_post", return_value={"value": None}):
        assert ledger.read_balance(str(owner)) is None


def test_read_balance_rejects_malformed_account(owner):
    ledger = PointsLedger(rpc_url="http://rpc", keypair=Keypair())
    with patch("solana_accounts._rpc_post", return_value={"value": {"data": None}}):
        with pytest.raises(RpcError):
            ledger.read_balance(str(owner))
    short = base64.b64encode(b"\x00" * 10).decode()
    with patch("solana_accounts._rpc_post", return_value={"value": {"data": [short, "base64"]}}):
        with pytest.raises(LedgerError):
            ledger.read_balance(str(owner))


def test_build_balance_update_signs_absolute_write(owner):
    admin = Keypair()
    ledger = PointsLedger(rpc_url="http://rpc", keypair=admin)
    blockhash = {"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}}

    with patch("ledger._rpc_post", return_value=blockhash):
        prepared = ledger.build_balance_update(str(owner), 245)

    tx = Transaction.from_bytes(prepared.raw)
    assert str(tx.signatures[0]) == prepared.signature
    assert prepared.new_total == 245
    assert prepared.last_valid_block_height == 10

    ix = tx.message.instructions[0]
    assert bytes(ix.data) == UPDATE_POINTS_DISCRIMINATOR + (245).to_bytes(8, "little")
    keys = tx.message.account_keys
    assert keys[0] == admin.pubkey()
    assert keys[ix.program_id_index] == program_id()
    assert [keys[i] for i in bytes(ix.accounts)] == [
        user_predictions_pda(owner),
        global_state_pda(),
        admin.pubkey(),
    ]


def test_send_posts_base64_transaction(owner):
    ledger = PointsLedger(rpc_url="http://rpc", keypair=Keypair())
    prepared = ledger_mod.PreparedUpdate(wallet=str(owner), new_total=1, signature="sig", raw=b"\x01\x02")
    with patch("ledger._rpc_post", return_value="sig") as rpc:
        assert ledger.send(prepared) == "sig"
    method, params = rpc.call_args.args[1], rpc.call_args.args[2]
    assert method == "sendTransaction"
    assert params[0] == base64.b64encode(b"\x01\x02").decode()


@pytest.mark.parametrize("value,expected", [
    ([None], STATUS_UNKNOWN),
    ([{"err": None, "confirmationStatus": "processed"}], STATUS_UNKNOWN),
    ([{"err": None, "confirmationStatus": "confirmed"}], STATUS_CONFIRMED),
    ([{"err": None, "confirmationStatus": "finalized"}], STATUS_CONFIRMED),
    ([{"err": {"InstructionError": [0, "Custom"]}, "confirmationStatus": "confirmed"}], STATUS_FAILED),
])
def test_signature_status(value, expected):
    ledger = PointsLedger(rpc_url="http://rpc", keypair=Keypair())
    with patch("ledger._rpc_post", return_value={"value": value}):
        assert ledger.signature_status("sig") == expected


def test_wait_for_confirmation_times_out():
    ledger = PointsLedger(rpc_url="http://rpc", keypair=Keypair(), confirm_timeout=0, poll_interval=0)
    with patch("ledger._rpc_post", return_value={"value": [None]}):
        with pytest.raises(ConfirmationTimeout):
            ledger.wait_for_confirmation("sig")


def test_wait_for_confirmation_raises_on_failed_transaction():
    ledger = PointsLedger(rpc_url="http://rpc", keypair=Keypair(), confirm_timeout=5, poll_interval=0)
    with patch("ledger._rpc_post", return_value={"value": [{"err": "boom"}]}):
        with pytest.raises(LedgerError):
            ledger.wait_for_confirmation("sig")


def test_build_clear_silos_has_one_instruction_per_wallet():
    admin = Keypair()
    wallets = [Keypair().pubkey() for _ in range(3)]
    ledger = PointsLedger(rpc_url="http://rpc", keypair=admin)
    blockhash = {"value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": 42}}

    with patch("ledger._rpc_post", return_value=blockhash):
        prepared = ledger.build_clear_silos([str(w) for w in wallets])

    assert prepared.last_valid_block_height == 42
    tx = Transaction.from_bytes(prepared.raw)
    assert str(tx.signatures[0]) == prepared.signature
    keys = tx.message.account_keys
    instructions = tx.message.instructions
    assert len(instructions) == 3
    for ix, wallet in zip(instructions, wallets):
        assert bytes(ix.data) == CLEAR_SILOS_DISCRIMINATOR
        assert [keys[i] for i in bytes(ix.accounts)] == [
            user_predictions_pda(wallet),
            global_state_pda(),
            admin.pubkey(),
        ]


def test_block_height():
    ledger = PointsLedger(rpc_url="http://rpc", keypair=Keypair())
    with patch("ledger._rpc_post", return_value=123) as rpc:
        assert ledger.block_height() == 123
    assert rpc.call_args.args[1] == "getBlockHeight"
    with patch("ledger._rpc_post", return_value=None):
        with pytest.raises(LedgerError):
            ledger.block_height()
