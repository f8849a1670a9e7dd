"""Record, payload and decoded-event types shared by every component.

Persisted documents use the camelCase keys the presentation layer reads
(``player2JoinedAt``, ``roundResults``...); the Python attributes are snake_case.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

from .errors import InvariantViolation
from .util import canonical_address


PLAYER1 = "player1"
PLAYER2 = "player2"
TIE = "tie"


class GameStatus(str, enum.Enum):
    AWAITING_PLAYER2 = "AwaitingPlayer2"
    AWAITING_REVEALS = "AwaitingReveals"
    AWAITING_SETTLEMENT = "AwaitingSettlement"
    SETTLED = "Settled"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class RoundResult:
    round: int
    winner: str
    diff: int

    def to_dict(self) -> Dict[str, Any]:
        return {"round": self.round, "winner": self.winner, "diff": self.diff}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundResult":
        return cls(round=int(data["round"]), winner=str(data["winner"]), diff=int(data["diff"]))


@dataclass(frozen=True)
class RevealPayload:
    salt: str
    nft_contracts: List[str]
    token_ids: List[str]
    token_uris: List[str] = field(default_factory=list)
    backgrounds: List[str] = field(default_factory=list)
    team_traits: List[List[int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "salt": self.salt,
            "nftContracts": list(self.nft_contracts),
            "tokenIds": list(self.token_ids),
            "tokenUris": list(self.token_uris),
            "backgrounds": list(self.backgrounds),
            "teamTraits": [list(t) for t in self.team_traits],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RevealPayload":
        return cls(
            salt=str(data["salt"]),
            nft_contracts=[canonical_address(a) or "" for a in data.get("nftContracts", [])],
            token_ids=[str(t) for t in data.get("tokenIds", [])],
            token_uris=list(data.get("tokenUris", [])),
            backgrounds=list(data.get("backgrounds", [])),
            team_traits=[[int(v) for v in t] for t in data.get("teamTraits", [])],
        )


@dataclass
class GameRecord:
    id: int
    player1: Optional[str] = None
    player2: Optional[str] = None
    stake_token: Optional[str] = None
    stake_amount: Optional[str] = None
    created_at: Optional[str] = None
    player2_joined_at: Optional[str] = None
    settled_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancelled: bool = False
    settled: bool = False
    player1_revealed: bool = False
    player2_revealed: bool = False
    reveal: Dict[str, RevealPayload] = field(default_factory=dict)
    winner: Optional[str] = None
    round_results: List[RoundResult] = field(default_factory=list)
    tie: bool = False

    @property
    def status(self) -> GameStatus:
        if self.cancelled:
            return GameStatus.CANCELLED
        if self.settled:
            return GameStatus.SETTLED
        if self.player2 is None:
            return GameStatus.AWAITING_PLAYER2
        if not (self.player1_revealed and self.player2_revealed):
            return GameStatus.AWAITING_REVEALS
        return GameStatus.AWAITING_SETTLEMENT

    @property
    def resolved(self) -> bool:
        return bool(self.round_results)

    def slot_of(self, address: Optional[str]) -> Optional[str]:
        addr = canonical_address(address)
        if addr is None:
            return None
        if addr == self.player1:
            return PLAYER1
        if addr == self.player2:
            return PLAYER2
        return None

    def address_of(self, slot: str) -> Optional[str]:
        if slot == PLAYER1:
            return self.player1
        if slot == PLAYER2:
            return self.player2
        return None

    def reveal_for(self, slot: str) -> Optional[RevealPayload]:
        addr = self.address_of(slot)
        if addr is None:
            return None
        return self.reveal.get(addr)

    def validate(self) -> None:
        if self.player2_joined_at and self.player2 is None:
            raise InvariantViolation(f"game {self.id}: joined without player2")
        for addr in self.reveal:
            if addr not in (self.player1, self.player2):
                raise InvariantViolation(f"game {self.id}: reveal for non-participant {addr}")
        if self.winner is not None and self.tie:
            raise InvariantViolation(f"game {self.id}: both winner and tie set")
        if not self.settled and (self.winner is not None or self.tie):
            raise InvariantViolation(f"game {self.id}: outcome recorded before settlement")
        if self.winner is not None and self.player1 is not None and self.winner not in (self.player1, self.player2):
            raise InvariantViolation(f"game {self.id}: winner {self.winner} is not a participant")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "player1": self.player1,
            "player2": self.player2,
            "stakeToken": self.stake_token,
            "stakeAmount": self.stake_amount,
            "createdAt": self.created_at,
            "player2JoinedAt": self.player2_joined_at,
            "settledAt": self.settled_at,
            "cancelledAt": self.cancelled_at,
            "cancelled": self.cancelled,
            "settled": self.settled,
            "player1Revealed": self.player1_revealed,
            "player2Revealed": self.player2_revealed,
            "reveal": {addr: payload.to_dict() for addr, payload in self.reveal.items()},
            "winner": self.winner,
            "roundResults": [r.to_dict() for r in self.round_results],
            "tie": self.tie,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameRecord":
        stake_amount = data.get("stakeAmount")
        return cls(
            id=int(data["id"]),
            player1=canonical_address(data.get("player1")),
            player2=canonical_address(data.get("player2")),
            stake_token=canonical_address(data.get("stakeToken")),
            stake_amount=str(stake_amount) if stake_amount is not None else None,
            created_at=data.get("createdAt"),
            player2_joined_at=data.get("player2JoinedAt"),
            settled_at=data.get("settledAt"),
            cancelled_at=data.get("cancelledAt"),
            cancelled=bool(data.get("cancelled", False)),
            settled=bool(data.get("settled", False)),
            player1_revealed=bool(data.get("player1Revealed", False)),
            player2_revealed=bool(data.get("player2Revealed", False)),
            reveal={
                canonical_address(addr) or addr: RevealPayload.from_dict(payload)
                for addr, payload in (data.get("reveal") or {}).items()
            },
            winner=canonical_address(data.get("winner")),
            round_results=[RoundResult.from_dict(r) for r in data.get("roundResults") or []],
            tie=bool(data.get("tie", False)),
        )


@dataclass(frozen=True)
class ChainGame:
    """Authoritative view of one game as returned by the contract."""

    id: int
    player1: Optional[str]
    player2: Optional[str]
    stake_token: Optional[str]
    stake_amount: str
    settled: bool
    cancelled: bool
    winner: Optional[str]
    player1_revealed: bool
    player2_revealed: bool

    @property
    def exists(self) -> bool:
        return self.player1 is not None

    def to_record(self, created_at: Optional[str] = None) -> GameRecord:
        # Settlement is left to reconciliation, which also reads the posted winner.
        return GameRecord(
            id=self.id,
            player1=self.player1,
            player2=self.player2,
            stake_token=self.stake_token,
            stake_amount=self.stake_amount,
            created_at=created_at,
            cancelled=self.cancelled and not self.settled,
            player1_revealed=self.player1_revealed,
            player2_revealed=self.player2_revealed,
        )


@dataclass(frozen=True)
class BlockRef:
    number: int
    log_index: int = 0
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class GameEvent:
    kind: ClassVar[str] = "Unknown"

    game_id: int
    block: BlockRef

    def args(self) -> List[Any]:
        return [str(self.game_id)]


@dataclass(frozen=True)
class GameCreated(GameEvent):
    kind: ClassVar[str] = "GameCreated"

    player1: Optional[str]
    stake_token: Optional[str] = None
    stake_amount: Optional[str] = None

    def args(self) -> List[Any]:
        return [str(self.game_id), self.player1, self.stake_token, self.stake_amount]


@dataclass(frozen=True)
class GameJoined(GameEvent):
    kind: ClassVar[str] = "GameJoined"

    player2: Optional[str]

    def args(self) -> List[Any]:
        return [str(self.game_id), self.player2]


@dataclass(frozen=True)
class GameCancelled(GameEvent):
    kind: ClassVar[str] = "GameCancelled"


@dataclass(frozen=True)
class GameSettled(GameEvent):
    kind: ClassVar[str] = "GameSettled"

    winner: Optional[str]

    def args(self) -> List[Any]:
        return [str(self.game_id), self.winner]


@dataclass(frozen=True)
class Transfer:
    kind: ClassVar[str] = "Transfer"

    collection: str
    contract: str
    from_address: Optional[str]
    to_address: Optional[str]
    token_id: str
    block: BlockRef


DecodedEvent = Union[GameCreated, GameJoined, GameCancelled, GameSettled]

GAME_EVENT_TYPES: Dict[str, type] = {
    cls.kind: cls for cls in (GameCreated, GameJoined, GameCancelled, GameSettled)
}
