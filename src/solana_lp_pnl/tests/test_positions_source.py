from __future__ import annotations

import json

import pytest

from solana_lp_pnl.ingestion.positions import JsonPositionSource, parse_live_position
from solana_lp_pnl.utils.constants import Q64, SOL_MINT
from solana_lp_pnl.utils.errors import PositionSourceError

WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _position_payload(**overrides):
    payload = {
        "positionAddress": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
        "poolAddress": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
        "tokenAAmount": "340282366920938463463374607431768211455",
        "tokenBAmount": 25_000_000,
        "unclaimedFeeA": "1200",
        "unclaimedFeeB": 0,
        "tokenADecimals": 9,
        "tokenBDecimals": 6,
        "pool": {
            "tokenAMint": SOL_MINT,
            "tokenBMint": USDC_MINT,
            "sqrtPrice": str(Q64),
            "sqrtMinPrice": str(Q64 // 2),
            "sqrtMaxPrice": str(Q64 * 2),
        },
    }
    payload.update(overrides)
    return payload


def test_json_source_reads_wallet_positions(tmp_path) -> None:
    path = tmp_path / "positions.json"
    path.write_text(json.dumps({WALLET: [_position_payload()], "other": []}), encoding="utf-8")

    positions = JsonPositionSource(path).list_positions(WALLET)

    assert len(positions) == 1
    position = positions[0]
    assert position.token_a_amount == 2**128 - 1
    assert position.token_b_amount == 25_000_000
    assert position.unclaimed_fee_a == 1200
    assert position.pool.sqrt_price == Q64
    assert position.token_a_mint == SOL_MINT
    assert position.token_b_decimals == 6
    assert JsonPositionSource(path).list_positions("unknown-wallet") == []


def test_flat_export_lists_positions_of_the_requested_owner(tmp_path) -> None:
    path = tmp_path / "positions.json"
    other_owner = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
    path.write_text(
        json.dumps(
            [
                _position_payload(),
                _position_payload(positionAddress=USDC_MINT, owner=WALLET),
                _position_payload(positionAddress=SOL_MINT, owner=other_owner),
            ]
        ),
        encoding="utf-8",
    )
    source = JsonPositionSource(path)

    mine = [position.position_address for position in source.list_positions(WALLET)]
    theirs = [position.position_address for position in source.list_positions(other_owner)]

    assert mine == ["7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU", USDC_MINT]
    assert theirs == ["7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU", SOL_MINT]


def test_missing_export_means_no_positions(tmp_path) -> None:
    assert JsonPositionSource(tmp_path / "absent.json").list_positions(WALLET) == []


def test_decimals_are_optional() -> None:
    payload = _position_payload()
    del payload["tokenADecimals"]
    del payload["tokenBDecimals"]

    position = parse_live_position(payload)

    assert position.token_a_decimals is None
    assert position.token_b_decimals is None


@pytest.mark.parametrize(
    "payload",
    [
        _position_payload(tokenAAmount="1.5"),
        _position_payload(tokenBAmount=True),
        _position_payload(tokenADecimals=30),
        _position_payload(pool=None),
        {"poolAddress": "x", "pool": {}},
        ["not", "an", "object"],
    ],
)
def test_malformed_positions_raise(payload) -> None:
    with pytest.raises(PositionSourceError):
        parse_live_position(payload)


@pytest.mark.parametrize(
    "body",
    [
        "{broken",
        json.dumps([1, 2]),
        json.dumps("positions"),
        json.dumps({WALLET: {"positionAddress": "x"}}),
        json.dumps({WALLET: [], "__proto__": {}}),
    ],
)
def test_malformed_export_raises(tmp_path, body: str) -> None:
    path = tmp_path / "positions.json"
    path.write_text(body, encoding="utf-8")

    with pytest.raises(PositionSourceError):
        JsonPositionSource(path).list_positions(WALLET)
