"""Read-side access to the predictions program: PDAs, account layout, JSON-RPC.

Every user's predictions live in one 724-byte program account:

    discriminator(8) owner(32)
    top symbols 5x32, worst symbols 5x32
    top / worst timestamps 5xi64 each
    top / worst predicted percentages 5xi16 each
    top / worst prices at prediction 5xu64 each
    top / worst resolution prices 5xu64 each
    top / worst durations 5xi64 each
    prediction_count u64, points u64, last_updated i64
"""

import base64
import http.client
import json
import os
import struct
from urllib import request as urlrequest
from urllib.error import URLError

from solders.pubkey import Pubkey

from models_predictions import PREDICTION_TOP, PREDICTION_WORST

SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")
PROGRAM_ID = os.getenv("PROGRAM_ID", "GGw3GTVpjwLhHdsK4dY3Kb1Lb3vpz5Ns6zV3aMWcf9xe")
RPC_TIMEOUT_SECONDS = int(os.getenv("RPC_TIMEOUT_SECONDS", "12"))

SLOTS_PER_CATEGORY = 5
PRICE_DECIMALS = 9

_ACCOUNT = struct.Struct("<8s32s160s160s5q5q5h5h5Q5Q5Q5Q5q5qQQq")
ACCOUNT_SIZE = _ACCOUNT.size  # 724
POINTS_OFFSET = ACCOUNT_SIZE - 16  # u64 points sits before last_updated

USER_PREDICTIONS_SEED = b"user_predictions"
GLOBAL_STATE_SEED = b"global_state"


class RpcError(RuntimeError):
    """JSON-RPC failure. `code` is set when the node answered with an error object."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


# -------------------------------
# Simple JSON-RPC helper (no solana-py)
# -------------------------------
def _rpc_post(url: str, method: str, params=None, timeout=RPC_TIMEOUT_SECONDS):
    params = params or []
    payload = json.dumps({"jsonrpc": "2.0", "id": 1, "method": method, "params": params}).encode("utf-8")
    req = urlrequest.Request(url, data=payload, headers={"Content-Type": "application/json"})
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except (URLError, OSError, ValueError, http.client.HTTPException) as e:
        raise RpcError(f"{method} failed: {e}") from e
    if not isinstance(data, dict):
        raise RpcError(f"{method} failed: unexpected response")
    if "error" in data:
        err = data["error"] if isinstance(data["error"], dict) else {"message": data["error"]}
        raise RpcError(f"{method}: {err.get('message', err)}", code=err.get("code"))
    return data.get("result")


def program_id() -> Pubkey:
    return Pubkey.from_string(PROGRAM_ID)


def user_predictions_pda(owner) -> Pubkey:
    if isinstance(owner, str):
        owner = Pubkey.from_string(owner)
    pda, _bump = Pubkey.find_program_address([USER_PREDICTIONS_SEED, bytes(owner)], program_id())
    return pda


def global_state_pda() -> Pubkey:
    pda, _bump = Pubkey.find_program_address([GLOBAL_STATE_SEED], program_id())
    return pda


def _fixed_str(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()


def _symbols(raw: bytes) -> list[str]:
    return [_fixed_str(raw[i * 32:(i + 1) * 32]) for i in range(SLOTS_PER_CATEGORY)]


def decode_user_predictions(data: bytes) -> dict:
    """Decode one program account. Raises ValueError on a malformed buffer."""
    if len(data) != ACCOUNT_SIZE:
        raise ValueError(f"expected {ACCOUNT_SIZE} bytes, got {len(data)}")
    fields = _ACCOUNT.unpack(data)
    owner = Pubkey(fields[1])
    ints = fields[4:]

    def take(n):
        nonlocal ints
        out, ints = list(ints[:n]), ints[n:]
        return out

    top_ts, worst_ts = take(5), take(5)
    top_pct, worst_pct = take(5), take(5)
    top_price, worst_price = take(5), take(5)
    top_res, worst_res = take(5), take(5)
    top_dur, worst_dur = take(5), take(5)
    prediction_count, points, last_updated = ints

    def slots(symbols, ts, pct, price, res, dur):
        return [
            {
                "rank": i + 1,
                "symbol": symbols[i],
                "prediction_timestamp": ts[i],
                "predicted_percentage": pct[i],
                "price_at_prediction": price[i],
                "resolution_price": res[i],
                "duration": dur[i],
            }
            for i in range(SLOTS_PER_CATEGORY)
        ]

    return {
        "owner": str(owner),
        "points": points,
        "last_updated": last_updated,
        "prediction_count": prediction_count,
        PREDICTION_TOP: slots(_symbols(fields[2]), top_ts, top_pct, top_price, top_res, top_dur),
        PREDICTION_WORST: slots(_symbols(fields[3]), worst_ts, worst_pct, worst_price, worst_res, worst_dur),
    }


def read_points(data: bytes) -> int:
    return struct.unpack_from("<Q", data, POINTS_OFFSET)[0]


def get_account_data(address, rpc_url=None):
    """Raw account bytes, or None when the account does not exist."""
    result = _rpc_post(rpc_url or SOLANA_RPC_URL, "getAccountInfo", [str(address), {"encoding": "base64"}])
    value = result.get("value") if isinstance(result, dict) else None
    if not value:
        return None
    try:
        return base64.b64decode(value["data"][0])
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise RpcError(f"getAccountInfo returned malformed data for {address}") from e


def fetch_all_user_predictions(rpc_url=None, logger=None) -> list[dict]:
    """All initialized user accounts of the program, decoded.

    Undecodable accounts are skipped (and logged when a logger is given).
    """
    result = _rpc_post(
        rpc_url or SOLANA_RPC_URL,
        "getProgramAccounts",
        [PROGRAM_ID, {"encoding": "base64", "filters": [{"dataSize": ACCOUNT_SIZE}]}],
        timeout=max(RPC_TIMEOUT_SECONDS, 30),
    ) or []

    users = []
    for item in result:
        pubkey = item.get("pubkey")
        try:
            raw = base64.b64decode(item["account"]["data"][0])
            users.append(decode_user_predictions(raw))
        except (KeyError, IndexError, TypeError, ValueError, struct.error):
            if logger is not None:
                logger.warning("Skipping undecodable predictions account %s", pubkey, exc_info=True)
    return users
