"""Ledger boundary: every read of chain state goes through here.

Raw logs are decoded exactly once, into the event variants of ``models``;
nothing past this module indexes into positional argument arrays.
"""

import abc
import asyncio
import os
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from web3 import Web3
from web3._utils.events import event_abi_to_log_topic, get_event_data
from web3.exceptions import ContractLogicError

from .errors import LedgerError
from .models import (
    GAME_EVENT_TYPES,
    BlockRef,
    ChainGame,
    DecodedEvent,
    GameCancelled,
    GameCreated,
    GameJoined,
    GameSettled,
    Transfer,
)
from .util import canonical_address, load_json, log, parse_int


T = TypeVar("T")


def _event(name: str, *inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


def _view(name: str, inputs: List[Dict[str, Any]], outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "function", "name": name, "stateMutability": "view", "inputs": inputs, "outputs": outputs}


def _arg(name: str, typ: str, indexed: bool = False) -> Dict[str, Any]:
    return {"name": name, "type": typ, "indexed": indexed}


DEFAULT_GAME_ABI: List[Dict[str, Any]] = [
    _event(
        "GameCreated",
        _arg("gameId", "uint256", True),
        _arg("player1", "address", True),
        _arg("stakeToken", "address"),
        _arg("stakeAmount", "uint256"),
    ),
    _event("GameJoined", _arg("gameId", "uint256", True), _arg("player2", "address", True)),
    _event("GameCancelled", _arg("gameId", "uint256", True)),
    _event("GameSettled", _arg("gameId", "uint256", True), _arg("winner", "address", True)),
    _view(
        "games",
        [{"name": "", "type": "uint256"}],
        [
            {"name": "player1", "type": "address"},
            {"name": "player2", "type": "address"},
            {"name": "stakeToken", "type": "address"},
            {"name": "stakeAmount", "type": "uint256"},
            {"name": "settled", "type": "bool"},
            {"name": "cancelled", "type": "bool"},
            {"name": "winner", "type": "address"},
            {"name": "player1Revealed", "type": "bool"},
            {"name": "player2Revealed", "type": "bool"},
        ],
    ),
    _view("gamesLength", [], [{"name": "", "type": "uint256"}]),
    _view("backendWinner", [{"name": "", "type": "uint256"}], [{"name": "", "type": "address"}]),
    {
        "type": "function",
        "name": "settleGame",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "gameId", "type": "uint256"}],
        "outputs": [],
    },
]

ERC721_ABI: List[Dict[str, Any]] = [
    _event(
        "Transfer",
        _arg("from", "address", True),
        _arg("to", "address", True),
        _arg("tokenId", "uint256", True),
    ),
    _view("balanceOf", [{"name": "owner", "type": "address"}], [{"name": "", "type": "uint256"}]),
    _view(
        "tokenOfOwnerByIndex",
        [{"name": "owner", "type": "address"}, {"name": "index", "type": "uint256"}],
        [{"name": "", "type": "uint256"}],
    ),
]


def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def load_abi(source: Any, default: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Accepts a raw ABI list, a path to an ABI JSON file or a Hardhat artifact."""
    if source is None:
        return default
    if isinstance(source, list):
        return source
    if isinstance(source, str):
        if not os.path.exists(source):
            raise FileNotFoundError(f"ABI path not found: {source}")
        abi = _extract_abi(load_json(source))
        if abi is None:
            raise ValueError(f"No ABI found in {source}")
        return abi
    raise ValueError(f"Unsupported ABI source: {source!r}")


def _topic_key(topic: Any) -> str:
    if isinstance(topic, str):
        return topic.lower() if topic.startswith("0x") else "0x" + topic.lower()
    return Web3.to_hex(topic)


class Ledger(abc.ABC):
    @abc.abstractmethod
    async def get_current_height(self) -> int:
        ...

    @abc.abstractmethod
    async def get_events_in_range(
        self, from_block: int, to_block: int, kinds: Optional[Sequence[str]] = None
    ) -> List[DecodedEvent]:
        ...

    @abc.abstractmethod
    async def get_transfers_in_range(self, from_block: int, to_block: int) -> List[Transfer]:
        ...

    @abc.abstractmethod
    async def get_game_by_id(self, game_id: int) -> Optional[ChainGame]:
        ...

    @abc.abstractmethod
    async def get_games_length(self) -> int:
        ...

    @abc.abstractmethod
    async def get_backend_winner(self, game_id: int) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def get_owned_token_ids(self, contract: str, wallet: str) -> List[str]:
        ...

    async def submit_settlement(self, game_id: int) -> str:
        raise LedgerError("this ledger is read-only")


class Web3Ledger(Ledger):
    """JSON-RPC ledger on a synchronous web3 client.

    Calls run in worker threads so the bounded pool can keep several of them
    in flight while the event loop keeps serving the other tasks.
    """

    def __init__(self, config: Dict[str, Any], w3: Optional[Web3] = None):
        self.config = config
        self.rpc_http = config.get("rpc_http")
        if w3 is None:
            if not self.rpc_http:
                raise LedgerError("rpc_http is required")
            w3 = Web3(Web3.HTTPProvider(self.rpc_http))
        self.w3_http = w3
        self.game_address = Web3.to_checksum_address(config["game_address"])
        self.game_abi = load_abi(config.get("game_abi"), DEFAULT_GAME_ABI)
        self.game = self.w3_http.eth.contract(address=self.game_address, abi=self.game_abi)

        self.collections: Dict[str, str] = {}
        self.assets: Dict[str, Any] = {}
        for name, address in (config.get("asset_contracts") or {}).items():
            checksum = Web3.to_checksum_address(address)
            self.collections[checksum.lower()] = name
            self.assets[checksum.lower()] = self.w3_http.eth.contract(address=checksum, abi=ERC721_ABI)

        self.topic_to_abi: Dict[str, Dict[str, Any]] = {}
        self.kind_to_topic: Dict[str, str] = {}
        self._build_event_maps()
        self.transfer_abi = next(item for item in ERC721_ABI if item.get("name") == "Transfer")
        self.transfer_topic = _topic_key(event_abi_to_log_topic(self.transfer_abi))
        self._block_ts_cache: Dict[int, int] = {}

    def _build_event_maps(self) -> None:
        self.topic_to_abi.clear()
        self.kind_to_topic.clear()
        for item in self.game_abi:
            if not isinstance(item, dict) or item.get("type") != "event" or item.get("anonymous"):
                continue
            if item.get("name") not in GAME_EVENT_TYPES:
                continue
            topic = _topic_key(event_abi_to_log_topic(item))
            self.topic_to_abi[topic] = item
            self.kind_to_topic[item["name"]] = topic

    async def _call(self, what: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except ContractLogicError:
            raise
        except Exception as exc:
            raise LedgerError(f"{what} failed: {exc}") from exc

    async def get_current_height(self) -> int:
        return int(await self._call("eth_blockNumber", lambda: self.w3_http.eth.block_number))

    async def get_block_timestamp(self, block_number: int) -> int:
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]
        block = await self._call("eth_getBlockByNumber", self.w3_http.eth.get_block, block_number)
        ts = int(block.get("timestamp"))
        self._block_ts_cache[block_number] = ts
        return ts

    async def get_events_in_range(
        self, from_block: int, to_block: int, kinds: Optional[Sequence[str]] = None
    ) -> List[DecodedEvent]:
        wanted = list(kinds) if kinds else list(self.kind_to_topic)
        topics = [self.kind_to_topic[k] for k in wanted if k in self.kind_to_topic]
        if not topics:
            return []
        logs = await self._call(
            "eth_getLogs",
            self.w3_http.eth.get_logs,
            {
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": self.game_address,
                "topics": [topics],
            },
        )
        events: List[DecodedEvent] = []
        for raw in self._sorted(logs):
            decoded = await self._decode_game_log(raw)
            if decoded is not None:
                events.append(decoded)
        return events

    async def get_transfers_in_range(self, from_block: int, to_block: int) -> List[Transfer]:
        if not self.assets:
            return []
        logs = await self._call(
            "eth_getLogs",
            self.w3_http.eth.get_logs,
            {
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": [Web3.to_checksum_address(a) for a in sorted(self.assets)],
                "topics": [self.transfer_topic],
            },
        )
        transfers: List[Transfer] = []
        for raw in self._sorted(logs):
            try:
                event_data = get_event_data(self.w3_http.codec, self.transfer_abi, raw)
            except Exception as exc:
                log(f"WARN: failed decoding transfer log: {exc}")
                continue
            args = dict(event_data.get("args", {}))
            contract = str(raw.get("address")).lower()
            transfers.append(
                Transfer(
                    collection=self.collections.get(contract, contract),
                    contract=contract,
                    from_address=canonical_address(args.get("from")),
                    to_address=canonical_address(args.get("to")),
                    token_id=str(args.get("tokenId")),
                    block=BlockRef(number=parse_int(raw.get("blockNumber")), log_index=parse_int(raw.get("logIndex", 0))),
                )
            )
        return transfers

    async def get_game_by_id(self, game_id: int) -> Optional[ChainGame]:
        try:
            result = await self._call(f"games({game_id})", self.game.functions.games(game_id).call)
        except ContractLogicError:
            return None
        outputs = next(i for i in self.game_abi if i.get("name") == "games" and i.get("type") == "function")["outputs"]
        fields = dict(zip([o.get("name") for o in outputs], result))
        return ChainGame(
            id=int(game_id),
            player1=canonical_address(fields.get("player1")),
            player2=canonical_address(fields.get("player2")),
            stake_token=canonical_address(fields.get("stakeToken")),
            stake_amount=str(fields.get("stakeAmount", 0)),
            settled=bool(fields.get("settled", False)),
            cancelled=bool(fields.get("cancelled", False)),
            winner=canonical_address(fields.get("winner")),
            player1_revealed=bool(fields.get("player1Revealed", False)),
            player2_revealed=bool(fields.get("player2Revealed", False)),
        )

    async def get_games_length(self) -> int:
        return int(await self._call("gamesLength()", self.game.functions.gamesLength().call))

    async def get_backend_winner(self, game_id: int) -> Optional[str]:
        value = await self._call(f"backendWinner({game_id})", self.game.functions.backendWinner(game_id).call)
        return canonical_address(value)

    async def get_owned_token_ids(self, contract: str, wallet: str) -> List[str]:
        nft = self.assets.get(contract.lower())
        if nft is None:
            raise LedgerError(f"Unknown asset contract {contract}")
        owner = Web3.to_checksum_address(wallet)
        balance = int(await self._call("balanceOf", nft.functions.balanceOf(owner).call))
        token_ids = []
        for index in range(balance):
            token_id = await self._call("tokenOfOwnerByIndex", nft.functions.tokenOfOwnerByIndex(owner, index).call)
            token_ids.append(str(token_id))
        return token_ids

    async def submit_settlement(self, game_id: int) -> str:
        key = self.config.get("backend_private_key")
        if not key:
            raise LedgerError("backend_private_key is required to submit settlements")

        def _send() -> str:
            account = self.w3_http.eth.account.from_key(key)
            tx = self.game.functions.settleGame(game_id).build_transaction(
                {
                    "from": account.address,
                    "nonce": self.w3_http.eth.get_transaction_count(account.address),
                }
            )
            signed = account.sign_transaction(tx)
            tx_hash = self.w3_http.eth.send_raw_transaction(signed.raw_transaction)
            self.w3_http.eth.wait_for_transaction_receipt(tx_hash)
            return Web3.to_hex(tx_hash)

        return await self._call(f"settleGame({game_id})", _send)

    @staticmethod
    def _sorted(logs: Iterable[Any]) -> List[Any]:
        return sorted(logs, key=lambda x: (parse_int(x.get("blockNumber", 0)), parse_int(x.get("logIndex", 0))))

    async def _decode_game_log(self, raw: Any) -> Optional[DecodedEvent]:
        topics = raw.get("topics") or []
        topic0 = _topic_key(topics[0]) if topics else None
        event_abi = self.topic_to_abi.get(topic0) if topic0 else None
        if event_abi is None:
            return None
        try:
            event_data = get_event_data(self.w3_http.codec, event_abi, raw)
        except Exception as exc:
            log(f"WARN: Failed decoding log {topic0}: {exc}")
            return None
        block_number = parse_int(raw.get("blockNumber"))
        ref = BlockRef(
            number=block_number,
            log_index=parse_int(raw.get("logIndex", 0)),
            timestamp=await self.get_block_timestamp(block_number),
        )
        return decode_game_event(event_abi, dict(event_data.get("args", {})), ref)


def decode_game_event(event_abi: Dict[str, Any], args: Dict[str, Any], ref: BlockRef) -> Optional[DecodedEvent]:
    """Map decoded ABI arguments onto a typed event.

    Arguments are looked up by their usual names first; contracts that name
    them differently fall back to ABI input order (game id first, then the
    address the event is about).
    """
    names = [i.get("name") for i in event_abi.get("inputs", [])]
    ordered = [args.get(n) for n in names]

    def pick(keys: Sequence[str], index: int) -> Any:
        for key in keys:
            if key in args:
                return args[key]
        return ordered[index] if index < len(ordered) else None

    kind = event_abi.get("name")
    game_id = int(pick(("gameId", "id"), 0))
    if kind == "GameCreated":
        amount = pick(("stakeAmount", "amount"), 3)
        return GameCreated(
            game_id=game_id,
            block=ref,
            player1=canonical_address(pick(("player1", "creator"), 1)),
            stake_token=canonical_address(pick(("stakeToken", "token"), 2)),
            stake_amount=str(amount) if amount is not None else None,
        )
    if kind == "GameJoined":
        return GameJoined(game_id=game_id, block=ref, player2=canonical_address(pick(("player2", "joiner"), 1)))
    if kind == "GameCancelled":
        return GameCancelled(game_id=game_id, block=ref)
    if kind == "GameSettled":
        return GameSettled(game_id=game_id, block=ref, winner=canonical_address(pick(("winner",), 1)))
    return None
