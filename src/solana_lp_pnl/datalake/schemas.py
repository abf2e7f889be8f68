"""Dataclasses describing ledger records, live position state, and derived P&L."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Provenance(str, Enum):
    """Whether a record was captured from a live action or reconstructed heuristically."""

    MEASURED = "measured"
    ESTIMATED = "estimated"


@dataclass(slots=True)
class PositionEntryRecord:
    position_address: str
    pool_address: str
    entry_timestamp: int
    token_a_mint: str
    token_b_mint: str
    initial_token_a_amount: int
    initial_token_b_amount: int
    entry_token_a_price_usd: float
    entry_token_b_price_usd: float
    entry_pool_price: float
    initial_value_usd: float
    token_a_decimals: int
    token_b_decimals: int
    tx_signature: Optional[str] = None
    provenance: Provenance = Provenance.MEASURED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positionAddress": self.position_address,
            "poolAddress": self.pool_address,
            "entryTimestamp": self.entry_timestamp,
            "tokenAMint": self.token_a_mint,
            "tokenBMint": self.token_b_mint,
            "initialTokenAAmount": str(self.initial_token_a_amount),
            "initialTokenBAmount": str(self.initial_token_b_amount),
            "entryTokenAPriceUSD": self.entry_token_a_price_usd,
            "entryTokenBPriceUSD": self.entry_token_b_price_usd,
            "entryPoolPrice": self.entry_pool_price,
            "initialValueUSD": self.initial_value_usd,
            "tokenADecimals": self.token_a_decimals,
            "tokenBDecimals": self.token_b_decimals,
            "txSignature": self.tx_signature,
            "provenance": self.provenance.value,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PositionEntryRecord":
        return cls(
            position_address=payload["positionAddress"],
            pool_address=payload["poolAddress"],
            entry_timestamp=int(payload["entryTimestamp"]),
            token_a_mint=payload["tokenAMint"],
            token_b_mint=payload["tokenBMint"],
            initial_token_a_amount=int(payload["initialTokenAAmount"]),
            initial_token_b_amount=int(payload["initialTokenBAmount"]),
            entry_token_a_price_usd=float(payload["entryTokenAPriceUSD"]),
            entry_token_b_price_usd=float(payload["entryTokenBPriceUSD"]),
            entry_pool_price=float(payload["entryPoolPrice"]),
            initial_value_usd=float(payload["initialValueUSD"]),
            token_a_decimals=int(payload["tokenADecimals"]),
            token_b_decimals=int(payload["tokenBDecimals"]),
            tx_signature=payload.get("txSignature"),
            # Records written before provenance tagging carry no tag.
            provenance=Provenance(payload.get("provenance") or Provenance.MEASURED.value),
        )


@dataclass(slots=True)
class PositionExitRecord:
    position_address: str
    pool_address: str
    exit_timestamp: int
    final_token_a_amount: int
    final_token_b_amount: int
    exit_token_a_price_usd: float
    exit_token_b_price_usd: float
    exit_pool_price: float
    final_value_usd: float
    total_fees_collected_a: int
    total_fees_collected_b: int
    total_fees_collected_usd: float
    realized_pnl_usd: float
    realized_pnl_percentage: float
    tx_signature: Optional[str] = None
    provenance: Provenance = Provenance.MEASURED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positionAddress": self.position_address,
            "poolAddress": self.pool_address,
            "exitTimestamp": self.exit_timestamp,
            "finalTokenAAmount": str(self.final_token_a_amount),
            "finalTokenBAmount": str(self.final_token_b_amount),
            "exitTokenAPriceUSD": self.exit_token_a_price_usd,
            "exitTokenBPriceUSD": self.exit_token_b_price_usd,
            "exitPoolPrice": self.exit_pool_price,
            "finalValueUSD": self.final_value_usd,
            "totalFeesCollectedA": str(self.total_fees_collected_a),
            "totalFeesCollectedB": str(self.total_fees_collected_b),
            "totalFeesCollectedUSD": self.total_fees_collected_usd,
            "realizedPnLUSD": self.realized_pnl_usd,
            "realizedPnLPercentage": self.realized_pnl_percentage,
            "txSignature": self.tx_signature,
            "provenance": self.provenance.value,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PositionExitRecord":
        return cls(
            position_address=payload["positionAddress"],
            pool_address=payload["poolAddress"],
            exit_timestamp=int(payload["exitTimestamp"]),
            final_token_a_amount=int(payload["finalTokenAAmount"]),
            final_token_b_amount=int(payload["finalTokenBAmount"]),
            exit_token_a_price_usd=float(payload["exitTokenAPriceUSD"]),
            exit_token_b_price_usd=float(payload["exitTokenBPriceUSD"]),
            exit_pool_price=float(payload["exitPoolPrice"]),
            final_value_usd=float(payload["finalValueUSD"]),
            total_fees_collected_a=int(payload["totalFeesCollectedA"]),
            total_fees_collected_b=int(payload["totalFeesCollectedB"]),
            total_fees_collected_usd=float(payload["totalFeesCollectedUSD"]),
            realized_pnl_usd=float(payload["realizedPnLUSD"]),
            realized_pnl_percentage=float(payload["realizedPnLPercentage"]),
            tx_signature=payload.get("txSignature"),
            provenance=Provenance(payload.get("provenance") or Provenance.MEASURED.value),
        )


@dataclass(slots=True)
class PositionSnapshot:
    timestamp: int
    value_usd: float
    fees_usd: float
    pnl_usd: float
    pnl_percentage: float
    token_a_price: float
    token_b_price: float
    pool_price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "valueUSD": self.value_usd,
            "feesUSD": self.fees_usd,
            "pnlUSD": self.pnl_usd,
            "pnlPercentage": self.pnl_percentage,
            "tokenAPrice": self.token_a_price,
            "tokenBPrice": self.token_b_price,
            "poolPrice": self.pool_price,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PositionSnapshot":
        return cls(
            timestamp=int(payload["timestamp"]),
            value_usd=float(payload["valueUSD"]),
            fees_usd=float(payload["feesUSD"]),
            pnl_usd=float(payload["pnlUSD"]),
            pnl_percentage=float(payload["pnlPercentage"]),
            token_a_price=float(payload["tokenAPrice"]),
            token_b_price=float(payload["tokenBPrice"]),
            pool_price=float(payload["poolPrice"]),
        )


@dataclass(slots=True)
class ClaimedFeesRecord:
    fees_a: int
    fees_b: int
    value_usd: float
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feesA": str(self.fees_a),
            "feesB": str(self.fees_b),
            "valueUSD": self.value_usd,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ClaimedFeesRecord":
        return cls(
            fees_a=int(payload["feesA"]),
            fees_b=int(payload["feesB"]),
            value_usd=float(payload["valueUSD"]),
            timestamp=int(payload["timestamp"]),
        )


@dataclass(slots=True)
class TokenMeta:
    mint: str
    decimals: int
    price_usd: float = 0.0
    symbol: Optional[str] = None


@dataclass(slots=True)
class PoolState:
    token_a_mint: str
    token_b_mint: str
    sqrt_price: int
    sqrt_min_price: int
    sqrt_max_price: int


@dataclass(slots=True)
class LivePosition:
    """Current on-chain view of one position as reported by the position source."""

    position_address: str
    pool_address: str
    token_a_amount: int
    token_b_amount: int
    unclaimed_fee_a: int
    unclaimed_fee_b: int
    pool: PoolState
    token_a_decimals: Optional[int] = None
    token_b_decimals: Optional[int] = None

    @property
    def token_a_mint(self) -> str:
        return self.pool.token_a_mint

    @property
    def token_b_mint(self) -> str:
        return self.pool.token_b_mint


@dataclass(slots=True)
class PositionPnLCalculation:
    position_address: str
    pool_address: str
    token_a_mint: str
    token_b_mint: str
    initial_value_usd: float
    current_value_usd: float
    current_token_a_amount: float
    current_token_b_amount: float
    token_a_price_usd: float
    token_b_price_usd: float
    unclaimed_fee_a: float
    unclaimed_fee_b: float
    unclaimed_fees_usd: float
    claimed_fees_usd: float
    unrealized_pnl_usd: float
    unrealized_pnl_with_fees_usd: float
    unrealized_pnl_percentage: float
    entry_pool_price: float
    current_pool_price: float
    price_change: float
    price_change_percentage: float
    impermanent_loss_usd: float
    hodl_value_usd: float
    age_hours: float
    age_days: float
    entry_timestamp: int
    in_range: bool
    price_available: bool
    provenance: Provenance

    @property
    def total_fees_usd(self) -> float:
        return self.unclaimed_fees_usd + self.claimed_fees_usd


@dataclass(slots=True)
class ClosedPositionSummary:
    position_address: str
    exit_timestamp: int
    realized_pnl_usd: float
    fees_usd: float
    initial_value_usd: float
    provenance: Provenance


@dataclass(slots=True)
class AggregatedPnLDataPoint:
    timestamp: int
    date: str
    open_positions_value: float
    open_positions_unrealized_pnl: float
    closed_positions_realized_pnl: float
    total_pnl: float
    total_pnl_percentage: float
    total_fees_earned: float
    total_invested: float
    total_current_value: float
    is_complete: bool = True


@dataclass(slots=True)
class AggregateStats:
    total_net_worth: float = 0.0
    total_profit: float = 0.0
    total_invested: float = 0.0
    fee_earned: float = 0.0
    open_positions_count: int = 0
    closed_positions_count: int = 0
    avg_position_size: float = 0.0
    total_profit_percentage: float = 0.0
    unpriced_positions_count: int = 0
    estimated_positions_count: int = 0


@dataclass(slots=True)
class WriteResult:
    written: bool
    key: str
    reason: Optional[str] = None


@dataclass(slots=True)
class ScanStatus:
    is_scanning: bool = False
    last_scan_time: Optional[int] = None
    transactions_scanned: int = 0
    positions_found: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(slots=True)
class BackfillStatus:
    in_progress: bool = False
    completed: bool = False
    last_position_count: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0


__all__ = [
    "AggregateStats",
    "AggregatedPnLDataPoint",
    "BackfillStatus",
    "ClaimedFeesRecord",
    "ClosedPositionSummary",
    "LivePosition",
    "PoolState",
    "PositionEntryRecord",
    "PositionExitRecord",
    "PositionPnLCalculation",
    "PositionSnapshot",
    "Provenance",
    "ScanStatus",
    "TokenMeta",
    "WriteResult",
]
