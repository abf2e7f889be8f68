"""Live position feeds.

The engine never reads on-chain program state itself. Positions arrive from an
external collaborator, either an in-process SDK bridge implementing
``LivePositionSource`` or a JSON export read by ``JsonPositionSource``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from ..datalake.schemas import LivePosition, PoolState
from ..monitoring.logger import get_logger
from ..utils.errors import PositionSourceError
from ..utils.validators import contains_dangerous_keys, validate_decimals


class LivePositionSource(Protocol):
    def list_positions(self, wallet: str) -> List[LivePosition]:
        ...


def _raw_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key, 0)
    if isinstance(value, bool):
        raise PositionSourceError(f"Field {key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise PositionSourceError(f"Field {key} is not an integer: {value!r}") from exc


def _optional_decimals(value: Any) -> Optional[int]:
    if value is None:
        return None
    if not validate_decimals(value):
        raise PositionSourceError(f"Invalid token decimals: {value!r}")
    return value


def parse_live_position(payload: Dict[str, Any]) -> LivePosition:
    if not isinstance(payload, dict):
        raise PositionSourceError("Position entry must be an object")
    pool = payload.get("pool")
    if not isinstance(pool, dict):
        raise PositionSourceError("Position entry is missing pool state")
    try:
        return LivePosition(
            position_address=str(payload["positionAddress"]),
            pool_address=str(payload["poolAddress"]),
            token_a_amount=_raw_int(payload, "tokenAAmount"),
            token_b_amount=_raw_int(payload, "tokenBAmount"),
            unclaimed_fee_a=_raw_int(payload, "unclaimedFeeA"),
            unclaimed_fee_b=_raw_int(payload, "unclaimedFeeB"),
            pool=PoolState(
                token_a_mint=str(pool["tokenAMint"]),
                token_b_mint=str(pool["tokenBMint"]),
                sqrt_price=_raw_int(pool, "sqrtPrice"),
                sqrt_min_price=_raw_int(pool, "sqrtMinPrice"),
                sqrt_max_price=_raw_int(pool, "sqrtMaxPrice"),
            ),
            token_a_decimals=_optional_decimals(payload.get("tokenADecimals")),
            token_b_decimals=_optional_decimals(payload.get("tokenBDecimals")),
        )
    except KeyError as exc:
        raise PositionSourceError(f"Position entry missing field {exc}") from exc


class JsonPositionSource:
    """Positions exported by the wallet UI, keyed by wallet address.

    Either ``{"<wallet>": [{"positionAddress": ..., "pool": {...}}, ...]}`` or a
    flat list of positions from a single-wallet export. Flat entries carrying an
    ``owner`` field are only returned for that wallet.
    Raw amounts and sqrt prices may be JSON numbers or decimal strings.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._logger = get_logger(__name__)

    def list_positions(self, wallet: str) -> List[LivePosition]:
        if not self._path.exists():
            self._logger.info("Position export %s not found; no live positions", self._path)
            return []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PositionSourceError(f"Unable to read {self._path}: {exc}") from exc
        if not isinstance(payload, (dict, list)) or contains_dangerous_keys(payload):
            raise PositionSourceError(f"Unexpected position export shape in {self._path}")
        if isinstance(payload, list):
            items = [
                item
                for item in payload
                if not (isinstance(item, dict) and item.get("owner") not in (None, wallet))
            ]
        else:
            items = payload.get(wallet, [])
            if not isinstance(items, list):
                raise PositionSourceError(f"Positions for {wallet} must be a list")
        return [parse_live_position(item) for item in items]


__all__ = ["JsonPositionSource", "LivePositionSource", "parse_live_position"]
