"""Reconstruct positions closed before tracking began from wallet history.

A withdrawal from a DAMM v2 pool leaves a recognizable footprint: the wallet
signs a transaction touching the program, the logs mention a removal or fee
claim, and the wallet's balances grow in exactly two mints. For each such
transaction an estimated entry and exit are written under a synthetic
``hist-`` position id derived from the signature.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..analytics.pnl import token_amount_to_decimal
from ..config.settings import HistoricalScanConfig, get_app_config
from ..datalake.schemas import PositionEntryRecord, PositionExitRecord, Provenance, ScanStatus
from ..datalake.storage import PositionLedger
from ..ingestion.history import ParsedTransaction, SignatureInfo, TransactionHistorySource
from ..ingestion.pricing import PriceOracle
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import (
    HISTORICAL_ID_PREFIX,
    HISTORICAL_POOL_SENTINEL,
    MS_PER_DAY,
    SOL_DECIMALS,
    SOL_MINT,
    now_ms,
)
from ..utils.errors import HistorySourceError, LedgerValidationError
from ..utils.validators import is_valid_address, safe_divide


def historical_position_id(signature: str) -> str:
    return f"{HISTORICAL_ID_PREFIX}{signature[:16]}"


def _scale_raw(amount: int, pct: float) -> int:
    # Basis points keep raw amounts in integer arithmetic.
    return amount * int(round(pct * 100)) // 10_000


def net_token_increases(
    transaction: ParsedTransaction,
    wallet: str,
    *,
    native_dust_lamports: int = 1_000_000,
) -> Dict[str, Tuple[int, int]]:
    """Net raw balance increase per mint for accounts owned by ``wallet``.

    Returns ``{mint: (raw_increase, decimals)}`` for mints that grew. A token
    account present only before the transaction (closed) counts as a decrease
    of its full balance. A native lamport gain above ``native_dust_lamports``
    is reported under the wrapped SOL mint.
    """

    deltas: Dict[str, int] = defaultdict(int)
    decimals: Dict[str, int] = {}
    for balance in transaction.pre_token_balances:
        if balance.owner == wallet:
            deltas[balance.mint] -= balance.amount
            decimals[balance.mint] = balance.decimals
    for balance in transaction.post_token_balances:
        if balance.owner == wallet:
            deltas[balance.mint] += balance.amount
            decimals[balance.mint] = balance.decimals

    increases = {
        mint: (delta, decimals[mint]) for mint, delta in deltas.items() if delta > 0
    }

    if wallet in transaction.account_keys:
        index = transaction.account_keys.index(wallet)
        if index < len(transaction.pre_balances) and index < len(transaction.post_balances):
            lamports = transaction.post_balances[index] - transaction.pre_balances[index]
            if lamports > native_dust_lamports:
                increases[SOL_MINT] = (lamports, SOL_DECIMALS)
    return increases


class HistoricalScanner:
    """Scans one wallet's recent history once per scanner instance."""

    def __init__(
        self,
        ledger: PositionLedger,
        oracle: PriceOracle,
        history: TransactionHistorySource,
        *,
        config: Optional[HistoricalScanConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._ledger = ledger
        self._oracle = oracle
        self._history = history
        self._config = config or get_app_config().historical_scan
        self._sleep = sleep
        self._clock = clock
        self._scanned_wallets: Set[str] = set()
        self._status = ScanStatus()
        self._logger = get_logger(__name__)

    @property
    def status(self) -> ScanStatus:
        return self._status

    def has_scanned(self, wallet: str) -> bool:
        return wallet in self._scanned_wallets

    def scan(self, wallet: str) -> ScanStatus:
        if not self._config.enabled or self._status.is_scanning or self.has_scanned(wallet):
            return self._status
        if not is_valid_address(wallet):
            self._status.errors.append(f"Invalid wallet address: {wallet}")
            return self._status

        self._status = ScanStatus(is_scanning=True)
        try:
            with correlation_scope(f"scan-{wallet[:8]}"):
                try:
                    signatures = self._recent_signatures(wallet)
                except HistorySourceError as exc:
                    self._logger.error("Historical scan could not list signatures: %s", exc)
                    self._status.errors.append(str(exc))
                    return self._status

                self._process_batches(wallet, signatures)
        finally:
            self._status.is_scanning = False

        self._status.last_scan_time = self._clock()
        self._scanned_wallets.add(wallet)
        METRICS.gauge("scan.positions_found", self._status.positions_found)
        METRICS.gauge("scan.transactions_scanned", self._status.transactions_scanned)
        self._logger.info(
            "Historical scan complete: %d transactions scanned, %d positions found, %d errors",
            self._status.transactions_scanned,
            self._status.positions_found,
            len(self._status.errors),
        )
        return self._status

    def _recent_signatures(self, wallet: str) -> List[SignatureInfo]:
        cutoff_seconds = (self._clock() - self._config.lookback_days * MS_PER_DAY) // 1000
        signatures = self._history.get_signatures(wallet, limit=self._config.signature_limit)
        return [
            info
            for info in signatures
            if info.succeeded and info.block_time is not None and info.block_time >= cutoff_seconds
        ]

    def _process_batches(self, wallet: str, signatures: Sequence[SignatureInfo]) -> None:
        size = self._config.batch_size
        consecutive_errors = 0
        for start in range(0, len(signatures), size):
            batch = signatures[start : start + size]
            transactions, failures = self._fetch_batch(batch)
            if failures == len(batch):
                consecutive_errors += 1
                self._status.errors.append(
                    f"Batch starting at {batch[0].signature[:16]} failed ({failures} fetch errors)"
                )
                if consecutive_errors >= self._config.max_consecutive_errors:
                    message = f"Stopped early after {consecutive_errors} consecutive failed batches"
                    self._logger.warning(message)
                    self._status.errors.append(message)
                    break
                backoff = min(
                    self._config.backoff_base_seconds * (2 ** consecutive_errors),
                    self._config.backoff_max_seconds,
                )
                self._sleep(backoff)
                continue

            consecutive_errors = 0
            for transaction in transactions:
                self._process_transaction(wallet, transaction)
            if start + size < len(signatures):
                self._sleep(self._config.batch_delay_seconds)

    def _fetch_batch(self, batch: Sequence[SignatureInfo]) -> Tuple[List[ParsedTransaction], int]:
        transactions: List[ParsedTransaction] = []
        failures = 0
        for info in batch:
            try:
                transaction = self._history.get_transaction(info.signature)
            except HistorySourceError as exc:
                failures += 1
                self._logger.warning("Could not fetch %s: %s", info.signature, exc)
                continue
            if transaction is not None:
                transactions.append(transaction)
        return transactions, failures

    def _is_candidate(self, wallet: str, transaction: ParsedTransaction) -> bool:
        if transaction.err is not None or wallet not in transaction.signers:
            return False
        return self._config.program_id in transaction.account_keys

    def _is_withdrawal(self, transaction: ParsedTransaction) -> bool:
        patterns = self._config.removal_log_patterns
        return any(pattern in line for line in transaction.log_messages for pattern in patterns)

    def _process_transaction(self, wallet: str, transaction: ParsedTransaction) -> None:
        if not self._is_candidate(wallet, transaction):
            return
        self._status.transactions_scanned += 1
        if not self._is_withdrawal(transaction):
            return
        increases = net_token_increases(
            transaction, wallet, native_dust_lamports=self._config.native_dust_lamports
        )
        if len(increases) != 2:
            self._logger.debug(
                "Skipping %s: %d mints increased, expected 2", transaction.signature, len(increases)
            )
            return
        if self._record_position(transaction, increases):
            self._status.positions_found += 1

    def _price(self, mint: str) -> float:
        price = self._oracle.get_price_usd(mint)
        if price <= 0 and mint == SOL_MINT and self._config.sol_fallback_price_usd:
            return self._config.sol_fallback_price_usd
        return price

    def _record_position(
        self, transaction: ParsedTransaction, increases: Dict[str, Tuple[int, int]]
    ) -> bool:
        position_id = historical_position_id(transaction.signature)
        if self._ledger.get_exit(position_id) is not None:
            return False

        (mint_a, (amount_a, decimals_a)), (mint_b, (amount_b, decimals_b)) = sorted(increases.items())
        price_a = self._price(mint_a)
        price_b = self._price(mint_b)
        final_value = (
            token_amount_to_decimal(amount_a, decimals_a) * price_a
            + token_amount_to_decimal(amount_b, decimals_b) * price_b
        )
        if final_value <= 0:
            self._logger.info("Skipping %s: withdrawal has no USD value", transaction.signature)
            return False

        exit_ms = (transaction.block_time or 0) * 1000 or self._clock()
        value_factor = 1 - self._config.entry_value_discount_pct / 100
        fee_pct = self._config.assumed_fee_pct
        initial_value = final_value * value_factor
        realized = final_value - initial_value

        entry = PositionEntryRecord(
            position_address=position_id,
            pool_address=HISTORICAL_POOL_SENTINEL,
            entry_timestamp=exit_ms - int(self._config.holding_period_days * MS_PER_DAY),
            token_a_mint=mint_a,
            token_b_mint=mint_b,
            initial_token_a_amount=_scale_raw(amount_a, 100 - self._config.entry_amount_discount_pct),
            initial_token_b_amount=_scale_raw(amount_b, 100 - self._config.entry_amount_discount_pct),
            entry_token_a_price_usd=price_a * value_factor,
            entry_token_b_price_usd=price_b * value_factor,
            entry_pool_price=safe_divide(price_b, price_a),
            initial_value_usd=initial_value,
            token_a_decimals=decimals_a,
            token_b_decimals=decimals_b,
            tx_signature=f"{transaction.signature}-entry",
            provenance=Provenance.ESTIMATED,
        )
        exit_record = PositionExitRecord(
            position_address=position_id,
            pool_address=HISTORICAL_POOL_SENTINEL,
            exit_timestamp=exit_ms,
            final_token_a_amount=amount_a,
            final_token_b_amount=amount_b,
            exit_token_a_price_usd=price_a,
            exit_token_b_price_usd=price_b,
            exit_pool_price=safe_divide(price_b, price_a),
            final_value_usd=final_value,
            total_fees_collected_a=_scale_raw(amount_a, fee_pct),
            total_fees_collected_b=_scale_raw(amount_b, fee_pct),
            total_fees_collected_usd=final_value * fee_pct / 100,
            realized_pnl_usd=realized,
            realized_pnl_percentage=safe_divide(realized * 100, initial_value),
            tx_signature=transaction.signature,
            provenance=Provenance.ESTIMATED,
        )
        try:
            entry_result = self._ledger.save_entry(entry)
            exit_result = self._ledger.save_exit(exit_record)
        except LedgerValidationError as exc:
            self._status.errors.append(f"{transaction.signature[:16]}: {exc}")
            self._logger.warning("Rejected historical records for %s: %s", transaction.signature, exc)
            return False
        METRICS.increment("scan.positions_recorded")
        return entry_result.written and exit_result.written


__all__ = ["HistoricalScanner", "historical_position_id", "net_token_increases"]
