"""Position ledger persisted in a string key-value store.

The ledger owns four namespaces (entries, exits, snapshots, claimed fees). Each
namespace lives under one key as a JSON array of ``[position, value]`` pairs and
is decoded through a single typed parse step. Any structural problem discards
the whole namespace instead of handing partially trusted data downstream.
"""

from __future__ import annotations

import dataclasses
import json
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, TypeVar

from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import (
    CLAIMED_FEES_STORAGE_KEY,
    ENTRIES_STORAGE_KEY,
    EXITS_STORAGE_KEY,
    HISTORICAL_POOL_SENTINEL,
    SNAPSHOTS_STORAGE_KEY,
    now_ms,
)
from ..utils.errors import LedgerValidationError, StoreError
from ..utils.validators import (
    contains_dangerous_keys,
    finite_or_zero,
    is_finite_number,
    is_valid_address,
    validate_decimals,
    validate_timestamp,
)
from .schemas import (
    ClaimedFeesRecord,
    PositionEntryRecord,
    PositionExitRecord,
    PositionSnapshot,
    Provenance,
    WriteResult,
)

T = TypeVar("T")

DEFAULT_MAX_SNAPSHOTS_PER_POSITION = 2_160

_RAW_AMOUNT_RE = re.compile(r"^\d+$", re.ASCII)

_ENTRY_NUMBER_FIELDS = (
    "entryTimestamp",
    "entryTokenAPriceUSD",
    "entryTokenBPriceUSD",
    "entryPoolPrice",
    "initialValueUSD",
)
_EXIT_NUMBER_FIELDS = (
    "exitTimestamp",
    "exitTokenAPriceUSD",
    "exitTokenBPriceUSD",
    "exitPoolPrice",
    "finalValueUSD",
    "totalFeesCollectedUSD",
    "realizedPnLUSD",
    "realizedPnLPercentage",
)
_SNAPSHOT_NUMBER_FIELDS = (
    "timestamp",
    "valueUSD",
    "feesUSD",
    "pnlUSD",
    "pnlPercentage",
    "tokenAPrice",
    "tokenBPrice",
    "poolPrice",
)


class KeyValueStore(Protocol):
    """String key to string value persistence substrate."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


class SQLiteKeyValueStore:
    """Durable key-value store backed by a single SQLite table."""

    def __init__(self, database_path: Path) -> None:
        database_path = Path(database_path).resolve()
        if database_path.exists() and database_path.is_dir():
            raise ValueError(f"Database path is a directory: {database_path}")
        self._database_path = database_path
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_KV_TABLE)
            con.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            con = sqlite3.connect(self._database_path)
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open {self._database_path}: {exc}") from exc
        try:
            yield con
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        finally:
            con.close()

    def get(self, key: str) -> Optional[str]:
        with self._connect() as con:
            row = con.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now_ms()),
            )
            con.commit()

    def remove(self, key: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            con.commit()


def _is_raw_amount(value: Any) -> bool:
    if isinstance(value, str):
        return _RAW_AMOUNT_RE.match(value) is not None
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _has_numbers(payload: Dict[str, Any], names: tuple) -> bool:
    return all(is_finite_number(payload.get(name)) for name in names)


def _with_finite_floats(record: T) -> T:
    """Replace non-finite float fields with 0 so the namespace stays parseable."""

    changes = {
        item.name: finite_or_zero(getattr(record, item.name))
        for item in dataclasses.fields(record)
        if isinstance(getattr(record, item.name), float)
    }
    return dataclasses.replace(record, **changes)


def _is_pool_reference(value: Any) -> bool:
    return value == HISTORICAL_POOL_SENTINEL or is_valid_address(value)


def _is_optional_str(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _is_provenance(value: Any) -> bool:
    return value is None or value in {item.value for item in Provenance}


def _parse_entry(value: Any) -> Optional[PositionEntryRecord]:
    if not isinstance(value, dict):
        return None
    if not (
        is_valid_address(value.get("positionAddress"))
        and _is_pool_reference(value.get("poolAddress"))
        and is_valid_address(value.get("tokenAMint"))
        and is_valid_address(value.get("tokenBMint"))
        and _is_raw_amount(value.get("initialTokenAAmount"))
        and _is_raw_amount(value.get("initialTokenBAmount"))
        and validate_decimals(value.get("tokenADecimals"))
        and validate_decimals(value.get("tokenBDecimals"))
        and _has_numbers(value, _ENTRY_NUMBER_FIELDS)
        and _is_optional_str(value.get("txSignature"))
        and _is_provenance(value.get("provenance"))
    ):
        return None
    return PositionEntryRecord.from_dict(value)


def _parse_exit(value: Any) -> Optional[PositionExitRecord]:
    if not isinstance(value, dict):
        return None
    if not (
        is_valid_address(value.get("positionAddress"))
        and _is_pool_reference(value.get("poolAddress"))
        and _is_raw_amount(value.get("finalTokenAAmount"))
        and _is_raw_amount(value.get("finalTokenBAmount"))
        and _is_raw_amount(value.get("totalFeesCollectedA"))
        and _is_raw_amount(value.get("totalFeesCollectedB"))
        and _has_numbers(value, _EXIT_NUMBER_FIELDS)
        and _is_optional_str(value.get("txSignature"))
        and _is_provenance(value.get("provenance"))
    ):
        return None
    return PositionExitRecord.from_dict(value)


def _parse_snapshots(value: Any) -> Optional[List[PositionSnapshot]]:
    if not isinstance(value, list):
        return None
    snapshots: List[PositionSnapshot] = []
    for item in value:
        if not isinstance(item, dict) or not _has_numbers(item, _SNAPSHOT_NUMBER_FIELDS):
            return None
        snapshots.append(PositionSnapshot.from_dict(item))
    return snapshots


def _parse_claimed_fees(value: Any) -> Optional[List[ClaimedFeesRecord]]:
    if not isinstance(value, list):
        return None
    records: List[ClaimedFeesRecord] = []
    for item in value:
        if not (
            isinstance(item, dict)
            and _is_raw_amount(item.get("feesA"))
            and _is_raw_amount(item.get("feesB"))
            and _has_numbers(item, ("valueUSD", "timestamp"))
        ):
            return None
        records.append(ClaimedFeesRecord.from_dict(item))
    return records


def parse_namespace(raw: Optional[str], parse_value: Callable[[Any], Optional[T]]) -> Optional[Dict[str, T]]:
    """Decode one namespace, returning ``None`` if any part of it is malformed.

    A missing key decodes to an empty mapping.
    """

    if raw is None:
        return {}
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, list) or contains_dangerous_keys(payload):
        return None
    parsed: Dict[str, T] = {}
    for pair in payload:
        if not isinstance(pair, list) or len(pair) != 2:
            return None
        key, value = pair
        if not is_valid_address(key):
            return None
        try:
            item = parse_value(value)
        except (KeyError, OverflowError, TypeError, ValueError):
            return None
        if item is None:
            return None
        parsed[key] = item
    return parsed


class PositionLedger:
    """Sole reader and writer of persisted position records.

    Every write reads its whole namespace, changes one position and stores the
    namespace back, so writes through one ledger are serialized by a lock.
    Share a single ledger per store between concurrent workers.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_snapshots_per_position: int = DEFAULT_MAX_SNAPSHOTS_PER_POSITION,
    ) -> None:
        self._store = store
        self._max_snapshots = max_snapshots_per_position
        self._write_lock = threading.Lock()
        self._logger = get_logger(__name__)

    # -- reads ---------------------------------------------------------------

    def _load(self, key: str, parse_value: Callable[[Any], Optional[T]]) -> Dict[str, T]:
        """Decode ``key``; raises ``StoreError`` when the store itself fails."""

        parsed = parse_namespace(self._store.get(key), parse_value)
        if parsed is None:
            self._logger.warning("Discarding malformed ledger namespace %s", key)
            METRICS.increment("ledger.corrupt_namespaces")
            return {}
        return parsed

    def _read(self, key: str, parse_value: Callable[[Any], Optional[T]]) -> Dict[str, T]:
        try:
            return self._load(key, parse_value)
        except StoreError as exc:
            self._logger.warning("Ledger read failed for %s: %s", key, exc)
            METRICS.increment("ledger.read_errors")
            return {}

    def get_all_entries(self) -> Dict[str, PositionEntryRecord]:
        return self._read(ENTRIES_STORAGE_KEY, _parse_entry)

    def get_all_exits(self) -> Dict[str, PositionExitRecord]:
        return self._read(EXITS_STORAGE_KEY, _parse_exit)

    def get_all_snapshots(self) -> Dict[str, List[PositionSnapshot]]:
        return self._read(SNAPSHOTS_STORAGE_KEY, _parse_snapshots)

    def get_all_claimed_fees(self) -> Dict[str, List[ClaimedFeesRecord]]:
        return self._read(CLAIMED_FEES_STORAGE_KEY, _parse_claimed_fees)

    def get_entry(self, position_address: str) -> Optional[PositionEntryRecord]:
        return self.get_all_entries().get(position_address)

    def get_exit(self, position_address: str) -> Optional[PositionExitRecord]:
        return self.get_all_exits().get(position_address)

    def get_snapshots(self, position_address: str) -> List[PositionSnapshot]:
        return self.get_all_snapshots().get(position_address, [])

    def get_claimed_fees(self, position_address: str) -> List[ClaimedFeesRecord]:
        return self.get_all_claimed_fees().get(position_address, [])

    def get_total_claimed_fees_value(self, position_address: str) -> float:
        return sum(record.value_usd for record in self.get_claimed_fees(position_address))

    # -- writes --------------------------------------------------------------

    def _write(self, key: str, namespace: Dict[str, Any], encode: Callable[[Any], Any]) -> WriteResult:
        payload = json.dumps([[name, encode(value)] for name, value in namespace.items()])
        try:
            self._store.set(key, payload)
        except StoreError as exc:
            self._logger.error("Ledger write failed for %s: %s", key, exc)
            METRICS.increment("ledger.write_errors")
            return WriteResult(written=False, key=key, reason=str(exc))
        METRICS.increment(f"ledger.writes.{key}")
        return WriteResult(written=True, key=key)

    def _skipped_write(self, key: str, position_address: str, exc: StoreError) -> WriteResult:
        # The namespace could not be read, so rewriting it would drop every other record.
        self._logger.error("Ledger read failed for %s; write of %s skipped: %s", key, position_address, exc)
        METRICS.increment("ledger.write_errors")
        return WriteResult(written=False, key=position_address, reason=str(exc))

    def _require_address(self, label: str, value: Any, *, allow_sentinel: bool = False) -> None:
        valid = _is_pool_reference(value) if allow_sentinel else is_valid_address(value)
        if not valid:
            raise LedgerValidationError(f"Invalid {label}: {value!r}")

    def _require_raw_amounts(self, **amounts: Any) -> None:
        for label, value in amounts.items():
            if not _is_raw_amount(value):
                raise LedgerValidationError(f"Invalid raw amount {label}: {value!r}")

    def _blocked_by_provenance(self, existing: Any, incoming: Any) -> bool:
        return (
            existing is not None
            and existing.provenance == Provenance.MEASURED
            and incoming.provenance == Provenance.ESTIMATED
        )

    def save_entry(self, record: PositionEntryRecord) -> WriteResult:
        self._require_raw_amounts(
            initial_token_a_amount=record.initial_token_a_amount,
            initial_token_b_amount=record.initial_token_b_amount,
        )
        self._require_address("position address", record.position_address)
        self._require_address("pool address", record.pool_address, allow_sentinel=True)
        self._require_address("token A mint", record.token_a_mint)
        self._require_address("token B mint", record.token_b_mint)
        if not (validate_decimals(record.token_a_decimals) and validate_decimals(record.token_b_decimals)):
            raise LedgerValidationError(
                f"Invalid decimals: {record.token_a_decimals!r}/{record.token_b_decimals!r}"
            )
        record = _with_finite_floats(
            dataclasses.replace(record, entry_timestamp=validate_timestamp(record.entry_timestamp))
        )

        with self._write_lock:
            try:
                entries = self._load(ENTRIES_STORAGE_KEY, _parse_entry)
            except StoreError as exc:
                return self._skipped_write(ENTRIES_STORAGE_KEY, record.position_address, exc)
            if self._blocked_by_provenance(entries.get(record.position_address), record):
                self._logger.info(
                    "Keeping measured entry for %s over estimated record", record.position_address
                )
                return WriteResult(
                    written=False,
                    key=record.position_address,
                    reason="measured entry already recorded",
                )
            entries[record.position_address] = record
            result = self._write(ENTRIES_STORAGE_KEY, entries, PositionEntryRecord.to_dict)
        return dataclasses.replace(result, key=record.position_address)

    def save_exit(self, record: PositionExitRecord) -> WriteResult:
        self._require_raw_amounts(
            final_token_a_amount=record.final_token_a_amount,
            final_token_b_amount=record.final_token_b_amount,
            total_fees_collected_a=record.total_fees_collected_a,
            total_fees_collected_b=record.total_fees_collected_b,
        )
        self._require_address("position address", record.position_address)
        self._require_address("pool address", record.pool_address, allow_sentinel=True)
        record = _with_finite_floats(
            dataclasses.replace(record, exit_timestamp=validate_timestamp(record.exit_timestamp))
        )

        with self._write_lock:
            try:
                exits = self._load(EXITS_STORAGE_KEY, _parse_exit)
            except StoreError as exc:
                return self._skipped_write(EXITS_STORAGE_KEY, record.position_address, exc)
            if self._blocked_by_provenance(exits.get(record.position_address), record):
                self._logger.info(
                    "Keeping measured exit for %s over estimated record", record.position_address
                )
                return WriteResult(
                    written=False,
                    key=record.position_address,
                    reason="measured exit already recorded",
                )
            exits[record.position_address] = record
            result = self._write(EXITS_STORAGE_KEY, exits, PositionExitRecord.to_dict)
        return dataclasses.replace(result, key=record.position_address)

    def save_snapshot(self, position_address: str, snapshot: PositionSnapshot) -> WriteResult:
        self._require_address("position address", position_address)
        with self._write_lock:
            try:
                all_snapshots = self._load(SNAPSHOTS_STORAGE_KEY, _parse_snapshots)
            except StoreError as exc:
                return self._skipped_write(SNAPSHOTS_STORAGE_KEY, position_address, exc)
            sequence = all_snapshots.setdefault(position_address, [])
            sequence.append(_with_finite_floats(snapshot))
            overflow = len(sequence) - self._max_snapshots
            if overflow > 0:
                del sequence[:overflow]
            result = self._write(
                SNAPSHOTS_STORAGE_KEY,
                all_snapshots,
                lambda items: [item.to_dict() for item in items],
            )
        return dataclasses.replace(result, key=position_address)

    def record_claimed_fees(
        self,
        position_address: str,
        fees_a: int,
        fees_b: int,
        value_usd: float,
        timestamp: Optional[int] = None,
    ) -> WriteResult:
        self._require_address("position address", position_address)
        record = ClaimedFeesRecord(
            fees_a=max(0, int(fees_a)),
            fees_b=max(0, int(fees_b)),
            value_usd=finite_or_zero(value_usd),
            timestamp=validate_timestamp(timestamp if timestamp is not None else now_ms()),
        )
        with self._write_lock:
            try:
                claimed = self._load(CLAIMED_FEES_STORAGE_KEY, _parse_claimed_fees)
            except StoreError as exc:
                return self._skipped_write(CLAIMED_FEES_STORAGE_KEY, position_address, exc)
            claimed.setdefault(position_address, []).append(record)
            result = self._write(
                CLAIMED_FEES_STORAGE_KEY,
                claimed,
                lambda items: [item.to_dict() for item in items],
            )
        return dataclasses.replace(result, key=position_address)

    def clear_all(self) -> None:
        with self._write_lock:
            for key in (
                ENTRIES_STORAGE_KEY,
                EXITS_STORAGE_KEY,
                SNAPSHOTS_STORAGE_KEY,
                CLAIMED_FEES_STORAGE_KEY,
            ):
                self._store.remove(key)
        self._logger.info("Cleared all ledger namespaces")

    def storage_stats(self) -> Dict[str, int]:
        snapshots = self.get_all_snapshots()
        claimed = self.get_all_claimed_fees()
        return {
            "entries": len(self.get_all_entries()),
            "exits": len(self.get_all_exits()),
            "positions_with_snapshots": len(snapshots),
            "snapshots": sum(len(items) for items in snapshots.values()),
            "claimed_fee_records": sum(len(items) for items in claimed.values()),
        }


__all__ = [
    "DEFAULT_MAX_SNAPSHOTS_PER_POSITION",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "PositionLedger",
    "SQLiteKeyValueStore",
    "parse_namespace",
]
