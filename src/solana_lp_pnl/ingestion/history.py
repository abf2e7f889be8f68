"""Wallet transaction history reads used for historical reconciliation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

from solana.rpc.api import Client
from solders.pubkey import Pubkey
from solders.signature import Signature
from tenacity import Retrying, stop_after_attempt, wait_fixed

from ..config.settings import RPCConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.errors import HistorySourceError


@dataclass(slots=True)
class SignatureInfo:
    signature: str
    block_time: Optional[int]
    err: Optional[Any] = None

    @property
    def succeeded(self) -> bool:
        return self.err is None


@dataclass(slots=True)
class TokenBalance:
    account_index: int
    mint: str
    owner: Optional[str]
    amount: int
    decimals: int


@dataclass(slots=True)
class ParsedTransaction:
    signature: str
    block_time: Optional[int]
    err: Optional[Any]
    account_keys: List[str]
    signers: Set[str]
    pre_balances: List[int] = field(default_factory=list)
    post_balances: List[int] = field(default_factory=list)
    pre_token_balances: List[TokenBalance] = field(default_factory=list)
    post_token_balances: List[TokenBalance] = field(default_factory=list)
    log_messages: List[str] = field(default_factory=list)


class TransactionHistorySource(Protocol):
    def get_signatures(self, wallet: str, *, limit: int) -> List[SignatureInfo]:
        ...

    def get_transaction(self, signature: str) -> Optional[ParsedTransaction]:
        ...


_MALFORMED = (AttributeError, KeyError, TypeError, ValueError)


def parse_signature_payload(item: Dict[str, Any]) -> SignatureInfo:
    if not isinstance(item, dict):
        raise HistorySourceError(f"Signature entry is not an object: {item!r}")
    signature = item.get("signature")
    if not isinstance(signature, str) or not signature:
        raise HistorySourceError(f"Signature entry without signature: {item!r}")
    block_time = item.get("blockTime")
    return SignatureInfo(
        signature=signature,
        block_time=block_time if isinstance(block_time, int) else None,
        err=item.get("err"),
    )


def _parse_token_balances(items: Any) -> List[TokenBalance]:
    balances: List[TokenBalance] = []
    for item in items or []:
        try:
            amount_info = item.get("uiTokenAmount") or {}
            balances.append(
                TokenBalance(
                    account_index=int(item["accountIndex"]),
                    mint=str(item["mint"]),
                    owner=item.get("owner"),
                    amount=int(amount_info.get("amount", "0")),
                    decimals=int(amount_info.get("decimals", 0)),
                )
            )
        except _MALFORMED as exc:
            raise HistorySourceError(f"Malformed token balance {item!r}") from exc
    return balances


def parse_transaction_payload(signature: str, payload: Dict[str, Any]) -> ParsedTransaction:
    """Convert a ``getTransaction`` result (json or jsonParsed encoding).

    Any structural problem is raised as ``HistorySourceError``.
    """

    if not isinstance(payload, dict):
        raise HistorySourceError(f"Transaction {signature} payload is not an object")
    try:
        return _parse_transaction(signature, payload)
    except HistorySourceError:
        raise
    except _MALFORMED as exc:
        raise HistorySourceError(f"Malformed transaction {signature}: {exc}") from exc


def _parse_transaction(signature: str, payload: Dict[str, Any]) -> ParsedTransaction:
    meta = payload.get("meta") or {}
    message = (payload.get("transaction") or {}).get("message") or {}
    raw_keys = message.get("accountKeys") or []
    required_signatures = int((message.get("header") or {}).get("numRequiredSignatures", 0))

    account_keys: List[str] = []
    signers: Set[str] = set()
    for index, key in enumerate(raw_keys):
        if isinstance(key, dict):
            pubkey = str(key.get("pubkey", ""))
            if key.get("signer"):
                signers.add(pubkey)
        else:
            pubkey = str(key)
            if index < required_signatures:
                signers.add(pubkey)
        account_keys.append(pubkey)
    loaded = meta.get("loadedAddresses") or {}
    account_keys.extend(str(key) for key in loaded.get("writable", []))
    account_keys.extend(str(key) for key in loaded.get("readonly", []))

    pre_balances = [int(value) for value in meta.get("preBalances") or []]
    post_balances = [int(value) for value in meta.get("postBalances") or []]

    block_time = payload.get("blockTime")
    return ParsedTransaction(
        signature=signature,
        block_time=block_time if isinstance(block_time, int) else None,
        err=meta.get("err"),
        account_keys=account_keys,
        signers=signers,
        pre_balances=pre_balances,
        post_balances=post_balances,
        pre_token_balances=_parse_token_balances(meta.get("preTokenBalances")),
        post_token_balances=_parse_token_balances(meta.get("postTokenBalances")),
        log_messages=[str(line) for line in meta.get("logMessages") or []],
    )


class SolanaHistoryClient:
    """Read-only history access through a Solana JSON-RPC endpoint."""

    def __init__(self, config: Optional[RPCConfig] = None, client: Optional[Client] = None) -> None:
        self._config = config or get_app_config().rpc
        self._client = client or Client(str(self._config.primary_url), timeout=self._config.request_timeout)
        self._logger = get_logger(__name__)

    def _call(self, operation: str, func, *args, **kwargs) -> Dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_fixed(self._config.retry_wait_seconds),
            reraise=True,
        )
        try:
            response = retrying(func, *args, **kwargs)
            payload = json.loads(response.to_json())
        except Exception as exc:  # noqa: BLE001
            METRICS.increment(f"rpc.{operation}.failures")
            raise HistorySourceError(f"{operation} failed: {exc}") from exc
        METRICS.increment(f"rpc.{operation}.calls")
        if "error" in payload:
            raise HistorySourceError(f"{operation} returned error: {payload['error']}")
        return payload

    def get_signatures(self, wallet: str, *, limit: int) -> List[SignatureInfo]:
        try:
            address = Pubkey.from_string(wallet)
        except ValueError as exc:
            raise HistorySourceError(f"Invalid wallet address {wallet!r}") from exc
        payload = self._call(
            "get_signatures_for_address",
            self._client.get_signatures_for_address,
            address,
            limit=limit,
            commitment=self._config.commitment,
        )
        items = payload.get("result") or []
        if not isinstance(items, list):
            raise HistorySourceError("get_signatures_for_address result is not a list")
        return [parse_signature_payload(item) for item in items]

    def get_transaction(self, signature: str) -> Optional[ParsedTransaction]:
        try:
            parsed_signature = Signature.from_string(signature)
        except ValueError as exc:
            raise HistorySourceError(f"Invalid signature {signature!r}") from exc
        payload = self._call(
            "get_transaction",
            self._client.get_transaction,
            parsed_signature,
            encoding="jsonParsed",
            commitment=self._config.commitment,
            max_supported_transaction_version=0,
        )
        result = payload.get("result")
        if result is None:
            return None
        return parse_transaction_payload(signature, result)


__all__ = [
    "ParsedTransaction",
    "SignatureInfo",
    "SolanaHistoryClient",
    "TokenBalance",
    "TransactionHistorySource",
    "parse_signature_payload",
    "parse_transaction_payload",
]
