"""Test configuration and fixtures for the indexer."""
import asyncio
import json
from typing import Dict, List, Optional, Sequence

import pytest

from clash_indexer.errors import LedgerError
from clash_indexer.ledger import Ledger
from clash_indexer.models import BlockRef, ChainGame, GameCreated, RevealPayload, Transfer
from clash_indexer.mutex import FifoMutex
from clash_indexer.notify import Broadcaster
from clash_indexer.repository import JsonRecordStore


ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20
ZERO = "0x" + "00" * 20
VKIN = "0x3fc7665b1f6033ff901405cddf31c2e04b8a2ab4"
VQLE = "0x8cfbb04c54d35e2e8471ad9040d40d73c08136f0"


def chain_game(game_id: int, player1: Optional[str] = ALICE, player2: Optional[str] = None, **kwargs) -> ChainGame:
    fields = dict(
        id=game_id,
        player1=player1,
        player2=player2,
        stake_token=None,
        stake_amount="1000000000000000000",
        settled=False,
        cancelled=False,
        winner=None,
        player1_revealed=False,
        player2_revealed=False,
    )
    fields.update(kwargs)
    return ChainGame(**fields)


def created(game_id: int, block: int, player1: str = ALICE) -> GameCreated:
    return GameCreated(
        game_id=game_id,
        block=BlockRef(number=block, log_index=0, timestamp=1_700_000_000 + block),
        player1=player1,
        stake_token=None,
        stake_amount="5000",
    )


def payload_with_traits(traits: Sequence[Sequence[int]]) -> RevealPayload:
    return RevealPayload(
        salt="123456789012345678901234567890",
        nft_contracts=[VKIN] * 3,
        token_ids=["1", "2", "3"],
        team_traits=[list(t) for t in traits],
    )


class FakeLedger(Ledger):
    """In-memory ledger; every call yields to the loop and can be held open."""

    def __init__(self, height: int = 0):
        self.height = height
        self.events: List = []
        self.transfers: List[Transfer] = []
        self.games: Dict[int, ChainGame] = {}
        self.games_length: Optional[int] = None
        self.backend_winners: Dict[int, Optional[str]] = {}
        self.owned: Dict[tuple, List[str]] = {}
        self.fail_blocks: List[int] = []
        self.fail_games: set = set()
        self.fetches: List[tuple] = []
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        # method name -> event the call waits on before answering
        self.holds: Dict[str, asyncio.Event] = {}

    async def _enter(self, method: str = "") -> None:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        if method in self.holds:
            await self.holds[method].wait()
        await asyncio.sleep(0)
        self.in_flight -= 1

    def _failing(self, from_block: int, to_block: int) -> bool:
        return any(from_block <= b <= to_block for b in self.fail_blocks)

    async def get_current_height(self) -> int:
        await self._enter()
        return self.height

    async def get_events_in_range(self, from_block, to_block, kinds=None):
        await self._enter()
        self.fetches.append((from_block, to_block))
        if self._failing(from_block, to_block):
            raise LedgerError(f"timeout fetching {from_block}-{to_block}")
        found = [e for e in self.events if from_block <= e.block.number <= to_block]
        if kinds:
            found = [e for e in found if e.kind in kinds]
        return sorted(found, key=lambda e: (e.block.number, e.block.log_index))

    async def get_transfers_in_range(self, from_block, to_block):
        await self._enter()
        self.fetches.append((from_block, to_block))
        if self._failing(from_block, to_block):
            raise LedgerError(f"timeout fetching {from_block}-{to_block}")
        return [t for t in self.transfers if from_block <= t.block.number <= to_block]

    async def get_game_by_id(self, game_id):
        await self._enter("get_game_by_id")
        if game_id in self.fail_games:
            raise LedgerError(f"rate limited on game {game_id}")
        return self.games.get(game_id)

    async def get_games_length(self):
        await self._enter()
        if self.games_length is not None:
            return self.games_length
        return len(self.games)

    async def get_backend_winner(self, game_id):
        await self._enter()
        return self.backend_winners.get(game_id)

    async def get_owned_token_ids(self, contract, wallet):
        await self._enter("get_owned_token_ids")
        return list(self.owned.get((contract, wallet), []))


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def gate():
    return FifoMutex()


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def repository(state_dir):
    return JsonRecordStore(str(state_dir / "games.json"))


@pytest.fixture
def metadata_env(tmp_path):
    """Metadata cache with three VKIN tokens and two VQLE tokens."""
    root = tmp_path / "metadata"
    mapping = {"VKIN": {}, "VQLE": {}}
    tokens = {
        ("VKIN", "1"): ([5, 3, 2, 4, 1], "Gold"),
        ("VKIN", "2"): ([5, 3, 2, 4, 1], "Silver"),
        ("VKIN", "3"): ([5, 3, 2, 4, 1], "Verdant Green"),
        ("VQLE", "7"): ([1, 5, 3, 2, 5], "Rose Gold"),
        ("VQLE", "8"): ([1, 5, 3, 2, 5], None),
    }
    for (collection, token_id), (traits, background) in tokens.items():
        folder = root / collection
        folder.mkdir(parents=True, exist_ok=True)
        uri = f"{token_id}.json"
        mapping[collection][token_id] = {"token_uri": uri}
        attributes = [
            {"trait_type": name, "value": value}
            for name, value in zip(("Attack", "Defense", "Vitality", "Agility", "CORE"), traits)
        ]
        if background:
            attributes.append({"trait_type": "Background", "value": background})
        (folder / uri).write_text(json.dumps({"name": f"{collection} #{token_id}", "attributes": attributes}))
    mapping_path = tmp_path / "mapping.json"
    mapping_path.write_text(json.dumps(mapping))
    return {
        "metadata_dir": str(root),
        "mapping_path": str(mapping_path),
        "collections": {"VKIN": VKIN, "VQLE": VQLE},
    }
