"""Points ledger: the on-chain u64 `points` field of each user's predictions account.

The ledger only accepts absolute writes (set balance to N), so callers always
read the current balance first and journal the intended write before sending.
"""

import base64
import json
import os
import time
from dataclasses import dataclass
from typing import Optional

import base58
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from solana_accounts import (
    ACCOUNT_SIZE,
    SOLANA_RPC_URL,
    RpcError,
    _rpc_post,
    get_account_data,
    global_state_pda,
    program_id,
    read_points,
    user_predictions_pda,
)

ADMIN_KEYPAIR = os.getenv("ADMIN_KEYPAIR", "")
LEDGER_CONFIRM_TIMEOUT_SECONDS = int(os.getenv("LEDGER_CONFIRM_TIMEOUT_SECONDS", "60"))
LEDGER_POLL_INTERVAL_SECONDS = float(os.getenv("LEDGER_POLL_INTERVAL_SECONDS", "2"))

# Anchor discriminator of update_user_points
UPDATE_POINTS_DISCRIMINATOR = bytes.fromhex("4004b87e002ec49f")
# admin_clear_user_silos
CLEAR_SILOS_DISCRIMINATOR = bytes.fromhex("72ee6dd7f7ac3ce9")

STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"
STATUS_UNKNOWN = "unknown"


class LedgerError(RpcError):
    pass


class ConfirmationTimeout(LedgerError):
    pass


def load_admin_keypair(raw=None) -> Keypair:
    """Admin signer from a JSON byte array or a base58 secret key."""
    raw = (raw if raw is not None else ADMIN_KEYPAIR).strip()
    if not raw:
        raise LedgerError("ADMIN_KEYPAIR is not configured")
    try:
        if raw.startswith("["):
            key_bytes = bytes(json.loads(raw))
        else:
            key_bytes = base58.b58decode(raw)
        return Keypair.from_bytes(key_bytes)
    except (TypeError, ValueError) as e:
        raise LedgerError(f"ADMIN_KEYPAIR could not be parsed: {e}") from e


def update_points_instruction(owner, new_total: int, admin: Pubkey) -> Instruction:
    if new_total < 0:
        raise ValueError("points balance cannot be negative")
    data = UPDATE_POINTS_DISCRIMINATOR + int(new_total).to_bytes(8, "little")
    return Instruction(program_id(), data, _user_accounts(owner, admin))


def clear_silos_instruction(owner, admin: Pubkey) -> Instruction:
    return Instruction(program_id(), CLEAR_SILOS_DISCRIMINATOR, _user_accounts(owner, admin))


def _user_accounts(owner, admin: Pubkey):
    return [
        AccountMeta(user_predictions_pda(owner), is_signer=False, is_writable=True),
        AccountMeta(global_state_pda(), is_signer=False, is_writable=False),
        AccountMeta(admin, is_signer=True, is_writable=False),
    ]


@dataclass
class PreparedUpdate:
    wallet: str
    new_total: int
    signature: str
    raw: bytes
    last_valid_block_height: Optional[int] = None


@dataclass
class PreparedClear:
    wallets: list
    signature: str
    raw: bytes
    last_valid_block_height: Optional[int] = None


class PointsLedger:
    def __init__(self, rpc_url=None, keypair=None,
                 confirm_timeout=LEDGER_CONFIRM_TIMEOUT_SECONDS,
                 poll_interval=LEDGER_POLL_INTERVAL_SECONDS):
        self.rpc_url = rpc_url or SOLANA_RPC_URL
        self._keypair = keypair
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval

    @property
    def keypair(self) -> Keypair:
        if self._keypair is None:
            self._keypair = load_admin_keypair()
        return self._keypair

    def _call(self, method, params=None):
        return _rpc_post(self.rpc_url, method, params)

    def read_balance(self, wallet: str):
        """Current points, or None when the user has no predictions account."""
        data = get_account_data(user_predictions_pda(wallet), self.rpc_url)
        if data is None:
            return None
        if len(data) != ACCOUNT_SIZE:
            raise LedgerError(f"predictions account for {wallet} has unexpected size {len(data)}")
        return read_points(data)

    def block_height(self) -> int:
        result = self._call("getBlockHeight", [{"commitment": "confirmed"}])
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise LedgerError(f"bad getBlockHeight result: {result}") from e

    def _sign(self, instructions):
        """Sign against a fresh blockhash; returns (signature, raw, last_valid_block_height)."""
        result = self._call("getLatestBlockhash", [{"commitment": "confirmed"}])
        try:
            blockhash = Hash.from_string(result["value"]["blockhash"])
            last_valid = result["value"].get("lastValidBlockHeight")
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"bad getLatestBlockhash result: {result}") from e

        kp = self.keypair
        msg = Message.new_with_blockhash(instructions, kp.pubkey(), blockhash)
        tx = Transaction([kp], msg, blockhash)
        return str(tx.signatures[0]), bytes(tx), None if last_valid is None else int(last_valid)

    def build_balance_update(self, wallet: str, new_total: int) -> PreparedUpdate:
        """Sign (but do not send) an absolute balance write."""
        ix = update_points_instruction(wallet, new_total, self.keypair.pubkey())
        signature, raw, last_valid = self._sign([ix])
        return PreparedUpdate(
            wallet=wallet,
            new_total=int(new_total),
            signature=signature,
            raw=raw,
            last_valid_block_height=last_valid,
        )

    def build_clear_silos(self, wallets) -> PreparedClear:
        """One transaction emptying the prediction slots of every wallet given."""
        admin = self.keypair.pubkey()
        signature, raw, last_valid = self._sign([clear_silos_instruction(w, admin) for w in wallets])
        return PreparedClear(wallets=list(wallets), signature=signature, raw=raw,
                             last_valid_block_height=last_valid)

    def send(self, prepared) -> str:
        encoded = base64.b64encode(prepared.raw).decode("ascii")
        sig = self._call("sendTransaction", [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}])
        return sig or prepared.signature

    def signature_status(self, signature: str) -> str:
        result = self._call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = (result or {}).get("value") or [None]
        status = values[0]
        if not status:
            return STATUS_UNKNOWN
        if status.get("err"):
            return STATUS_FAILED
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return STATUS_CONFIRMED
        return STATUS_UNKNOWN

    def wait_for_confirmation(self, signature: str, timeout=None) -> None:
        timeout = self.confirm_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            status = self.signature_status(signature)
            if status == STATUS_CONFIRMED:
                return
            if status == STATUS_FAILED:
                raise LedgerError(f"transaction {signature} failed on chain")
            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(f"transaction {signature} not confirmed after {timeout}s")
            time.sleep(self.poll_interval)
