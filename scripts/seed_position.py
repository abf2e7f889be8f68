"""Seed a position entry in the local ledger without a live position feed."""

from __future__ import annotations

import argparse

from solana_lp_pnl.analytics.pnl import token_amount_to_decimal
from solana_lp_pnl.config.settings import get_app_config
from solana_lp_pnl.datalake.schemas import PositionEntryRecord, Provenance
from solana_lp_pnl.datalake.storage import PositionLedger, SQLiteKeyValueStore
from solana_lp_pnl.utils.constants import MS_PER_DAY, now_ms
from solana_lp_pnl.utils.errors import LedgerValidationError
from solana_lp_pnl.utils.validators import safe_divide


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a position entry for dry-run testing.")
    parser.add_argument("position", help="Position address")
    parser.add_argument("pool", help="Pool address")
    parser.add_argument("mint_a", help="Token A mint")
    parser.add_argument("mint_b", help="Token B mint")
    parser.add_argument("amount_a", type=int, help="Raw token A amount deposited")
    parser.add_argument("amount_b", type=int, help="Raw token B amount deposited")
    parser.add_argument("price_a", type=float, help="Token A entry price in USD")
    parser.add_argument("price_b", type=float, help="Token B entry price in USD")
    parser.add_argument("--decimals-a", type=int, default=9)
    parser.add_argument("--decimals-b", type=int, default=6)
    parser.add_argument("--days-ago", type=float, default=0.0, help="Backdate the entry")
    parser.add_argument(
        "--estimated",
        action="store_true",
        help="Tag the entry as estimated so a later measured entry replaces it",
    )
    args = parser.parse_args()

    config = get_app_config()
    ledger = PositionLedger(
        SQLiteKeyValueStore(config.storage.database_path),
        max_snapshots_per_position=config.pnl.max_snapshots_per_position,
    )
    value = (
        token_amount_to_decimal(args.amount_a, args.decimals_a) * args.price_a
        + token_amount_to_decimal(args.amount_b, args.decimals_b) * args.price_b
    )
    entry = PositionEntryRecord(
        position_address=args.position,
        pool_address=args.pool,
        entry_timestamp=now_ms() - int(args.days_ago * MS_PER_DAY),
        token_a_mint=args.mint_a,
        token_b_mint=args.mint_b,
        initial_token_a_amount=args.amount_a,
        initial_token_b_amount=args.amount_b,
        entry_token_a_price_usd=args.price_a,
        entry_token_b_price_usd=args.price_b,
        entry_pool_price=safe_divide(args.price_b, args.price_a),
        initial_value_usd=value,
        token_a_decimals=args.decimals_a,
        token_b_decimals=args.decimals_b,
        tx_signature="seed",
        provenance=Provenance.ESTIMATED if args.estimated else Provenance.MEASURED,
    )
    try:
        result = ledger.save_entry(entry)
    except LedgerValidationError as exc:
        raise SystemExit(f"Refusing to seed {args.position}: {exc}") from exc
    if not result.written:
        raise SystemExit(f"Entry for {args.position} not written: {result.reason}")
    print(f"Seeded {entry.provenance.value} entry for {args.position} worth {value:.2f} USD")


if __name__ == "__main__":
    main()
