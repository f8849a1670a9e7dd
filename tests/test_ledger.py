"""Tests for the ledger boundary that need no live RPC endpoint."""
import json

import pytest
from web3 import Web3

from clash_indexer.errors import LedgerError
from clash_indexer.ledger import DEFAULT_GAME_ABI, Web3Ledger, decode_game_event, load_abi
from clash_indexer.models import BlockRef, GameCancelled, GameCreated, GameJoined, GameSettled

from conftest import ALICE, BOB, VKIN


def _abi(name):
    return next(item for item in DEFAULT_GAME_ABI if item.get("name") == name and item["type"] == "event")


REF = BlockRef(number=77, log_index=2, timestamp=1_700_000_077)


def test_decode_by_argument_name():
    event = decode_game_event(
        _abi("GameCreated"),
        {"gameId": 4, "player1": ALICE.upper().replace("0X", "0x"), "stakeToken": "0x" + "00" * 20, "stakeAmount": 10**18},
        REF,
    )
    assert event == GameCreated(game_id=4, block=REF, player1=ALICE, stake_token=None, stake_amount=str(10**18))
    assert event.kind == "GameCreated"


def test_decode_falls_back_to_argument_order():
    abi = {
        "type": "event",
        "name": "GameJoined",
        "inputs": [{"name": "id_", "type": "uint256"}, {"name": "who", "type": "address"}],
    }
    event = decode_game_event(abi, {"id_": 9, "who": BOB}, REF)
    assert event == GameJoined(game_id=9, block=REF, player2=BOB)


def test_decode_settled_and_cancelled():
    settled = decode_game_event(_abi("GameSettled"), {"gameId": 1, "winner": "0x" + "00" * 20}, REF)
    assert isinstance(settled, GameSettled)
    assert settled.winner is None
    assert settled.args() == ["1", None]

    cancelled = decode_game_event(_abi("GameCancelled"), {"gameId": 2}, REF)
    assert cancelled == GameCancelled(game_id=2, block=REF)


def test_unknown_event_is_not_decoded():
    abi = {"type": "event", "name": "OwnershipTransferred", "inputs": []}
    assert decode_game_event(abi, {"gameId": 1}, REF) is None


def test_load_abi_sources(tmp_path):
    assert load_abi(None, DEFAULT_GAME_ABI) is DEFAULT_GAME_ABI

    artifact = tmp_path / "Game.json"
    artifact.write_text(json.dumps({"contractName": "Game", "abi": DEFAULT_GAME_ABI[:2]}))
    assert load_abi(str(artifact), []) == DEFAULT_GAME_ABI[:2]

    bare = tmp_path / "abi.json"
    bare.write_text(json.dumps(DEFAULT_GAME_ABI[:1]))
    assert load_abi(str(bare), []) == DEFAULT_GAME_ABI[:1]

    with pytest.raises(FileNotFoundError):
        load_abi(str(tmp_path / "nope.json"), [])
    empty = tmp_path / "empty.json"
    empty.write_text(json.dumps({"bytecode": "0x"}))
    with pytest.raises(ValueError):
        load_abi(str(empty), [])


def test_offline_ledger_builds_topic_maps():
    ledger = Web3Ledger(
        {"game_address": "0x" + "11" * 20, "asset_contracts": {"VKIN": VKIN}},
        w3=Web3(),
    )
    assert sorted(ledger.kind_to_topic) == ["GameCancelled", "GameCreated", "GameJoined", "GameSettled"]
    assert ledger.kind_to_topic["GameCreated"] == Web3.to_hex(
        Web3.keccak(text="GameCreated(uint256,address,address,uint256)")
    )
    assert ledger.transfer_topic == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    assert ledger.collections == {VKIN: "VKIN"}


@pytest.mark.asyncio
async def test_unknown_kinds_skip_the_rpc_call():
    ledger = Web3Ledger({"game_address": "0x" + "11" * 20}, w3=Web3())
    assert await ledger.get_events_in_range(1, 10, kinds=["Transfer"]) == []
    assert await ledger.get_transfers_in_range(1, 10) == []


class _StubEth:
    def __init__(self):
        self.account = Web3().eth.account
        self.sent = []

    def get_transaction_count(self, address):
        return 7

    def send_raw_transaction(self, raw):
        self.sent.append(bytes(raw))
        return b"\x12" * 32

    def wait_for_transaction_receipt(self, tx_hash):
        return {"status": 1, "transactionHash": tx_hash}


class _StubSettle:
    def __init__(self, game, game_id):
        self.game = game
        self.game_id = game_id

    def build_transaction(self, tx):
        self.game.built.append((self.game_id, dict(tx)))
        return dict(tx, to=self.game.address, value=0, gas=100_000, gasPrice=10**9, chainId=1, data="0x")


class _StubGame:
    def __init__(self, address):
        self.address = address
        self.built = []
        self.functions = self

    def settleGame(self, game_id):
        return _StubSettle(self, game_id)


KEY = "0x" + "11" * 32


@pytest.mark.asyncio
async def test_submit_settlement_signs_and_sends():
    ledger = Web3Ledger({"game_address": "0x" + "11" * 20, "backend_private_key": KEY}, w3=Web3())
    eth = _StubEth()
    ledger.w3_http = type("StubWeb3", (), {"eth": eth})()
    ledger.game = _StubGame(ledger.game_address)

    assert await ledger.submit_settlement(4) == "0x" + "12" * 32

    sender = Web3().eth.account.from_key(KEY).address
    assert ledger.game.built == [(4, {"from": sender, "nonce": 7})]
    assert len(eth.sent) == 1


@pytest.mark.asyncio
async def test_submit_settlement_needs_a_key():
    ledger = Web3Ledger({"game_address": "0x" + "11" * 20}, w3=Web3())
    with pytest.raises(LedgerError):
        await ledger.submit_settlement(4)
