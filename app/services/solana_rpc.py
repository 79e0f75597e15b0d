"""
Solana chain query adapter.

Resolves a transaction signature through the JSON-RPC ``getTransaction``
method with ``jsonParsed`` encoding and extracts the transfer and memo
instructions the facilitator verifies.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import base58
import requests
from requests.exceptions import ConnectionError, Timeout

from app.facilitator.errors import ChainQueryError
from app.facilitator.models import SettlementDetails, SettlementStatus
from app.services.ledger import ChainQueryAdapter, TransientLedgerError

logger = logging.getLogger(__name__)

MEMO_PROGRAM_IDS = {
    "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
    "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo",
}
TOKEN_PROGRAMS = {"spl-token", "spl-token-2022"}

# USDC mints by cluster
USDC_MINTS = {
    "mainnet-beta": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "devnet": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
}

LAMPORTS_PER_SOL = 10 ** 9

# Server-side RPC error codes that indicate a lagging or throttled node
RETRYABLE_RPC_CODES = {-32004, -32005, -32014, -32016, 429}


class SolanaChainAdapter(ChainQueryAdapter):
    """Chain adapter for Solana clusters over JSON-RPC."""

    native_token = "SOL"
    native_decimals = 9

    def __init__(
        self,
        rpc_url: str,
        cluster: str = "mainnet-beta",
        commitment: str = "confirmed",
        session: Optional[requests.Session] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.rpc_url = rpc_url
        self.cluster = cluster
        self.commitment = commitment
        self._session = session or requests.Session()

    @property
    def chain_name(self) -> str:
        return "solana" if self.cluster == "mainnet-beta" else f"solana-{self.cluster}"

    @property
    def default_mints(self) -> Dict[str, str]:
        mint = USDC_MINTS.get(self.cluster)
        return {"USDC": mint} if mint else {}

    def validate_address(self, address: str) -> bool:
        """Validate Solana address format (base58, 32 bytes)."""
        return _base58_length(address) == 32

    def validate_reference(self, reference: str) -> bool:
        """Validate a transaction signature (base58, 64 bytes)."""
        return _base58_length(reference) == 64

    def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = self._session.post(self.rpc_url, json=payload, timeout=self.timeout_seconds)
        except (Timeout, ConnectionError) as e:
            raise TransientLedgerError(f"{method}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientLedgerError(f"{method}: HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.error(f"Solana RPC rejected {method}: HTTP {response.status_code} {response.text[:200]}")
            raise ChainQueryError()

        try:
            body = response.json()
        except ValueError as e:
            raise TransientLedgerError(f"{method}: invalid JSON response") from e

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            if code in RETRYABLE_RPC_CODES:
                raise TransientLedgerError(f"{method}: RPC error {error}")
            logger.error(f"Solana RPC error for {method}: {error}")
            raise ChainQueryError()

        return body.get("result")

    def _query_settlement(self, reference: str) -> SettlementDetails:
        result = self._rpc(
            "getTransaction",
            [
                reference,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            # Unknown to the node at this commitment level
            return SettlementDetails(reference=reference, status=SettlementStatus.UNCONFIRMED)
        return parse_transaction(reference, result)

    def close(self) -> None:
        self._session.close()


def _base58_length(value: str) -> int:
    try:
        return len(base58.b58decode(value))
    except (ValueError, TypeError):
        return -1


def _account_keys(message: Dict[str, Any]) -> List[str]:
    keys = []
    for key in message.get("accountKeys", []):
        keys.append(key.get("pubkey") if isinstance(key, dict) else key)
    return keys


def _token_accounts(meta: Dict[str, Any], account_keys: List[str]) -> Dict[str, Dict[str, Any]]:
    """Map token account address -> owner/mint/decimals from the balance snapshots."""
    accounts: Dict[str, Dict[str, Any]] = {}
    balances = (meta.get("postTokenBalances") or []) + (meta.get("preTokenBalances") or [])
    for balance in balances:
        index = balance.get("accountIndex")
        if not isinstance(index, int) or index >= len(account_keys):
            continue
        ui_amount = balance.get("uiTokenAmount") or {}
        accounts.setdefault(account_keys[index], {
            "owner": balance.get("owner"),
            "mint": balance.get("mint"),
            "decimals": ui_amount.get("decimals"),
        })
    return accounts


def _memo_text(instruction: Dict[str, Any]) -> Optional[str]:
    parsed = instruction.get("parsed")
    if isinstance(parsed, str):
        return parsed
    data = instruction.get("data")
    if isinstance(data, str):
        try:
            return base58.b58decode(data).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None
    return None


def _is_memo(instruction: Dict[str, Any]) -> bool:
    return instruction.get("program") == "spl-memo" or instruction.get("programId") in MEMO_PROGRAM_IDS


def _parse_transfer(
    instruction: Dict[str, Any],
    token_accounts: Dict[str, Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    program = instruction.get("program")
    parsed = instruction.get("parsed")
    if not isinstance(parsed, dict):
        return None
    kind = parsed.get("type")
    info = parsed.get("info") or {}

    if program == "system" and kind in ("transfer", "transferWithSeed"):
        return {
            "sender": info.get("source"),
            "recipient": info.get("destination"),
            "amount": Decimal(int(info.get("lamports", 0))) / LAMPORTS_PER_SOL,
            "decimals": 9,
            "mint": None,
        }

    if program in TOKEN_PROGRAMS and kind in ("transfer", "transferChecked"):
        destination = info.get("destination")
        account = token_accounts.get(destination, {})
        if kind == "transferChecked":
            token_amount = info.get("tokenAmount") or {}
            raw_amount = token_amount.get("amount", "0")
            decimals = token_amount.get("decimals", account.get("decimals"))
            mint = info.get("mint") or account.get("mint")
        else:
            raw_amount = info.get("amount", "0")
            decimals = account.get("decimals")
            mint = account.get("mint")
        if decimals is None or mint is None:
            logger.warning(f"Cannot resolve mint/decimals for token account {destination}")
            return None
        return {
            "sender": info.get("authority") or info.get("multisigAuthority") or info.get("source"),
            "recipient": account.get("owner") or destination,
            "amount": Decimal(int(raw_amount)).scaleb(-int(decimals)),
            "decimals": int(decimals),
            "mint": mint,
        }

    return None


def parse_transaction(reference: str, result: Dict[str, Any]) -> SettlementDetails:
    """
    Build SettlementDetails from a ``getTransaction`` jsonParsed result.

    The first transfer instruction (outer, then inner) is taken as the
    settlement; every memo instruction is collected.
    """
    meta = result.get("meta")
    if meta is None:
        # No status metadata means the cluster has not settled it yet
        return SettlementDetails(reference=reference, status=SettlementStatus.UNCONFIRMED)
    message = (result.get("transaction") or {}).get("message") or {}
    account_keys = _account_keys(message)
    token_accounts = _token_accounts(meta, account_keys)

    instructions = list(message.get("instructions") or [])
    for inner in meta.get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])

    memos: List[str] = []
    transfer = None
    for instruction in instructions:
        if _is_memo(instruction):
            text = _memo_text(instruction)
            if text is not None:
                memos.append(text)
            continue
        if transfer is None:
            transfer = _parse_transfer(instruction, token_accounts)

    status = SettlementStatus.CONFIRMED if meta.get("err") is None else SettlementStatus.FAILED
    transfer = transfer or {}
    return SettlementDetails(
        reference=reference,
        status=status,
        sender=transfer.get("sender"),
        recipient=transfer.get("recipient"),
        amount=transfer.get("amount", Decimal("0")),
        decimals=transfer.get("decimals"),
        mint=transfer.get("mint"),
        memos=memos,
    )
