from __future__ import annotations

import pytest
from solders.signature import Signature

from solana_lp_pnl.ingestion.history import (
    SolanaHistoryClient,
    parse_signature_payload,
    parse_transaction_payload,
)
from solana_lp_pnl.config.settings import RPCConfig
from solana_lp_pnl.utils.constants import DAMM_V2_PROGRAM_ID, SOL_MINT
from solana_lp_pnl.utils.errors import HistorySourceError

WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
TOKEN_ACCOUNT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
LOOKUP = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _meta(**overrides):
    meta = {
        "err": None,
        "preBalances": [5_000_000_000, 2_039_280],
        "postBalances": [7_000_000_000, 2_039_280],
        "preTokenBalances": [],
        "postTokenBalances": [
            {
                "accountIndex": 1,
                "mint": SOL_MINT,
                "owner": WALLET,
                "uiTokenAmount": {"amount": "123456789012345678901", "decimals": 9},
            }
        ],
        "logMessages": ["Program log: Instruction: RemoveLiquidity"],
    }
    meta.update(overrides)
    return meta


def test_parse_json_parsed_transaction() -> None:
    payload = {
        "blockTime": 1_700_000_000,
        "meta": _meta(),
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": WALLET, "signer": True, "writable": True},
                    {"pubkey": TOKEN_ACCOUNT, "signer": False, "writable": True},
                    {"pubkey": DAMM_V2_PROGRAM_ID, "signer": False, "writable": False},
                ]
            }
        },
    }

    transaction = parse_transaction_payload("sig", payload)

    assert transaction.block_time == 1_700_000_000
    assert transaction.account_keys == [WALLET, TOKEN_ACCOUNT, DAMM_V2_PROGRAM_ID]
    assert transaction.signers == {WALLET}
    assert transaction.pre_balances[0] == 5_000_000_000
    assert transaction.post_token_balances[0].amount == 123456789012345678901
    assert transaction.post_token_balances[0].owner == WALLET
    assert transaction.log_messages == ["Program log: Instruction: RemoveLiquidity"]
    assert transaction.err is None


def test_parse_plain_keys_uses_header_for_signers_and_loaded_addresses() -> None:
    payload = {
        "blockTime": None,
        "meta": _meta(err={"InstructionError": [0, "Custom"]}, loadedAddresses={"writable": [LOOKUP], "readonly": [DAMM_V2_PROGRAM_ID]}),
        "transaction": {
            "message": {
                "header": {"numRequiredSignatures": 1},
                "accountKeys": [WALLET, TOKEN_ACCOUNT],
            }
        },
    }

    transaction = parse_transaction_payload("sig", payload)

    assert transaction.signers == {WALLET}
    assert transaction.account_keys == [WALLET, TOKEN_ACCOUNT, LOOKUP, DAMM_V2_PROGRAM_ID]
    assert transaction.block_time is None
    assert transaction.err == {"InstructionError": [0, "Custom"]}


@pytest.mark.parametrize(
    "payload",
    [
        "not an object",
        {"meta": _meta(preBalances=["x"]), "transaction": {"message": {}}},
        {"meta": _meta(postTokenBalances=[{"mint": SOL_MINT}]), "transaction": {"message": {}}},
        {"meta": _meta(preTokenBalances=["x"]), "transaction": {"message": {}}},
        {"meta": _meta(), "transaction": {"message": {"accountKeys": [WALLET], "header": {"numRequiredSignatures": "one"}}}},
        {"meta": _meta(loadedAddresses=["not", "a", "map"]), "transaction": {"message": {}}},
        {"meta": "broken", "transaction": {"message": {}}},
    ],
)
def test_malformed_transactions_raise(payload) -> None:
    with pytest.raises(HistorySourceError):
        parse_transaction_payload("sig", payload)


def test_parse_signature_payload() -> None:
    info = parse_signature_payload({"signature": "abc", "blockTime": 1_700_000_000, "err": None})
    assert info.succeeded
    assert info.block_time == 1_700_000_000

    failed = parse_signature_payload({"signature": "def", "blockTime": "later", "err": {"x": 1}})
    assert not failed.succeeded
    assert failed.block_time is None

    with pytest.raises(HistorySourceError):
        parse_signature_payload({"blockTime": 1})
    with pytest.raises(HistorySourceError):
        parse_signature_payload("abc")


class _Response:
    def __init__(self, body: str) -> None:
        self._body = body

    def to_json(self) -> str:
        return self._body


class _FakeClient:
    def __init__(self) -> None:
        self.calls = 0

    def get_signatures_for_address(self, *args, **kwargs):
        self.calls += 1
        if self.calls < 2:
            raise ConnectionError("flaky")
        return _Response('{"jsonrpc": "2.0", "id": 1, "result": [{"signature": "abc", "blockTime": 5, "err": null}]}')

    def get_transaction(self, *args, **kwargs):
        return _Response('{"jsonrpc": "2.0", "id": 1, "error": {"code": -32004, "message": "slot skipped"}}')


def test_history_client_retries_and_reports_rpc_errors() -> None:
    client = _FakeClient()
    history = SolanaHistoryClient(RPCConfig(max_attempts=2, retry_wait_seconds=0.0), client=client)

    signatures = history.get_signatures(WALLET, limit=10)

    assert [info.signature for info in signatures] == ["abc"]
    assert client.calls == 2
    with pytest.raises(HistorySourceError):
        history.get_transaction(str(Signature.default()))


def test_history_client_rejects_unparseable_signature_before_calling_rpc() -> None:
    client = _FakeClient()
    history = SolanaHistoryClient(RPCConfig(max_attempts=1, retry_wait_seconds=0.0), client=client)

    with pytest.raises(HistorySourceError):
        history.get_transaction("not-a-signature")
    with pytest.raises(HistorySourceError):
        history.get_signatures("not-a-wallet", limit=5)
    assert client.calls == 0
