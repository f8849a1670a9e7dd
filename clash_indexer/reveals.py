import copy
from typing import Any, Dict, Optional, Sequence

from .errors import NotResolvable, RevealError
from .metadata import MetadataStore
from .models import PLAYER1, PLAYER2, GameRecord, RevealPayload
from .mutex import FifoMutex
from .notify import Broadcaster
from .repository import RecordRepository
from .resolution import ROUNDS, Resolver
from .util import canonical_address, iso_timestamp, log


class RevealService:
    """Stores a player's revealed team and resolves the game once both are in.

    Each participant reveals at most once per game. Signature checks and
    request validation belong to the HTTP layer in front of this.
    """

    def __init__(
        self,
        repository: RecordRepository,
        gate: FifoMutex,
        metadata: MetadataStore,
        resolver: Resolver,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.repository = repository
        self.gate = gate
        self.metadata = metadata
        self.resolver = resolver
        self.broadcaster = broadcaster

    async def record_reveal(
        self,
        game_id: int,
        player: str,
        salt: Any,
        nft_contracts: Sequence[str],
        token_ids: Sequence[Any],
    ) -> Dict[str, Any]:
        async with self.gate:
            stored = self.repository.get(game_id)
            if stored is None:
                raise RevealError(f"Game {game_id} not found")
            payload = self._build_payload(stored, player, salt, nft_contracts, token_ids)
            # Mutate a copy so a failed reveal leaves the stored record as it was.
            record = copy.deepcopy(stored)
            addr = canonical_address(player)
            slot = record.slot_of(addr)

            record.reveal[addr] = payload
            if slot == PLAYER1:
                record.player1_revealed = True
            else:
                record.player2_revealed = True

            resolved = False
            if record.reveal_for(PLAYER1) is not None and record.reveal_for(PLAYER2) is not None:
                resolved = self.resolver.try_resolve(record, iso_timestamp())
            record.validate()
            self.repository.upsert(record)
            self.repository.save()

        log(f"[reveal] game {game_id}: {slot} revealed")
        self._publish("GameRevealed", {"gameId": game_id, "player": addr, "slot": slot})
        if resolved:
            self._publish(
                "GameResolved",
                {
                    "gameId": game_id,
                    "winner": record.winner,
                    "tie": record.tie,
                    "roundResults": [r.to_dict() for r in record.round_results],
                },
            )
        return {"savedReveal": payload.to_dict(), "resolved": resolved, "game": record.to_dict()}

    def _build_payload(
        self,
        record: GameRecord,
        player: str,
        salt: Any,
        nft_contracts: Sequence[str],
        token_ids: Sequence[Any],
    ) -> RevealPayload:
        addr = canonical_address(player)
        slot = record.slot_of(addr)
        if slot is None:
            raise RevealError(f"{player} is not a participant of game {record.id}")
        if record.cancelled or record.settled:
            raise RevealError(f"Game {record.id} is already {record.status.value}")
        if addr in record.reveal:
            raise RevealError(f"Reveal already submitted for {slot} in game {record.id}")
        if salt is None or str(salt).strip() == "":
            raise RevealError("Missing salt")
        if len(nft_contracts) != ROUNDS or len(token_ids) != ROUNDS:
            raise RevealError(f"A reveal must list exactly {ROUNDS} NFTs")

        contracts = []
        uris = []
        backgrounds = []
        traits = []
        for contract, token_id in zip(nft_contracts, token_ids):
            try:
                meta = self.metadata.describe(contract, token_id)
            except NotResolvable as exc:
                raise RevealError(str(exc)) from exc
            contracts.append(canonical_address(contract))
            uris.append(meta.token_uri)
            backgrounds.append(meta.background)
            traits.append(meta.traits)

        return RevealPayload(
            salt=str(salt),
            nft_contracts=contracts,
            token_ids=[str(t) for t in token_ids],
            token_uris=uris,
            backgrounds=backgrounds,
            team_traits=traits,
        )

    def _publish(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(kind, payload)
