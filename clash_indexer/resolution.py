"""Commit-reveal battle resolution.

Each side fields three NFTs, each described by ``[attack, defense, vitality,
agility, core]``. Round ``i`` pits NFT ``i`` of player 1 against NFT ``i`` of
player 2:

    atk = attack + agility        def = defense + vitality
    damage_a = max(0, atk_b - def_a)
    mod_a = max(0, core_a - damage_a)

The higher ``mod`` takes the round. Equal ``mod`` falls back to the sum of the
first four traits; equal sums leave the round tied. The game goes to the side
with more round points, then to the larger accumulated ``mod_a - mod_b``, and
is otherwise a tie.

``get_round_result`` and ``compute_winner`` are pure. ``apply_outcome`` writes
an outcome onto a record and must run once per record.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import NotResolvable
from .metadata import MetadataStore
from .models import PLAYER1, PLAYER2, TIE, GameRecord, RevealPayload, RoundResult
from .util import log


ROUNDS = 3
TRAIT_COUNT = 5


@dataclass(frozen=True)
class RoundOutcome:
    p1_wins: int
    p2_wins: int
    round_diff: int
    mod1: int
    mod2: int


@dataclass(frozen=True)
class BattleOutcome:
    winner: str
    round_results: List[RoundResult]
    player1_points: int
    player2_points: int
    total_diff: int

    @property
    def tie(self) -> bool:
        return self.winner == TIE


def _check_traits(traits: Sequence[int]) -> None:
    if len(traits) != TRAIT_COUNT:
        raise ValueError(f"expected {TRAIT_COUNT} traits, got {len(traits)}")


def get_round_result(traits1: Sequence[int], traits2: Sequence[int]) -> RoundOutcome:
    _check_traits(traits1)
    _check_traits(traits2)
    atk1 = traits1[0] + traits1[3]
    def1 = traits1[1] + traits1[2]
    atk2 = traits2[0] + traits2[3]
    def2 = traits2[1] + traits2[2]

    damage1 = max(0, atk2 - def1)
    mod1 = max(0, traits1[4] - damage1)
    damage2 = max(0, atk1 - def2)
    mod2 = max(0, traits2[4] - damage2)

    p1_wins = p2_wins = 0
    if mod1 > mod2:
        p1_wins = 1
    elif mod2 > mod1:
        p2_wins = 1
    else:
        score1 = sum(traits1[:4])
        score2 = sum(traits2[:4])
        if score1 > score2:
            p1_wins = 1
        elif score2 > score1:
            p2_wins = 1

    return RoundOutcome(p1_wins=p1_wins, p2_wins=p2_wins, round_diff=mod1 - mod2, mod1=mod1, mod2=mod2)


def compute_winner(team1: Sequence[Sequence[int]], team2: Sequence[Sequence[int]]) -> BattleOutcome:
    if len(team1) != ROUNDS or len(team2) != ROUNDS:
        raise ValueError(f"each team needs exactly {ROUNDS} NFTs")

    points1 = points2 = total_diff = 0
    rounds: List[RoundResult] = []
    for i in range(ROUNDS):
        result = get_round_result(team1[i], team2[i])
        points1 += result.p1_wins
        points2 += result.p2_wins
        total_diff += result.round_diff
        if result.p1_wins:
            round_winner = PLAYER1
        elif result.p2_wins:
            round_winner = PLAYER2
        else:
            round_winner = TIE
        rounds.append(RoundResult(round=i + 1, winner=round_winner, diff=result.round_diff))

    if points1 > points2:
        winner = PLAYER1
    elif points2 > points1:
        winner = PLAYER2
    elif total_diff > 0:
        winner = PLAYER1
    elif total_diff < 0:
        winner = PLAYER2
    else:
        winner = TIE

    return BattleOutcome(
        winner=winner,
        round_results=rounds,
        player1_points=points1,
        player2_points=points2,
        total_diff=total_diff,
    )


def _checked_team(team: Sequence[Sequence[int]]) -> List[List[int]]:
    try:
        checked = [[int(v) for v in traits] for traits in team]
    except (TypeError, ValueError):
        raise NotResolvable(f"malformed trait data {team!r}") from None
    if len(checked) != ROUNDS or any(len(traits) != TRAIT_COUNT for traits in checked):
        raise NotResolvable(f"team must be {ROUNDS} NFTs of {TRAIT_COUNT} traits each")
    return checked


class Resolver:
    def __init__(self, metadata: Optional[MetadataStore] = None):
        self.metadata = metadata

    def team_traits(self, payload: RevealPayload) -> List[List[int]]:
        if payload.team_traits:
            return _checked_team(payload.team_traits)
        if self.metadata is None:
            raise NotResolvable("no trait data in reveal and no metadata store configured")
        if len(payload.token_ids) != ROUNDS or len(payload.nft_contracts) != ROUNDS:
            raise NotResolvable(f"reveal must list {ROUNDS} NFTs")
        return _checked_team(
            [
                self.metadata.describe(contract, token_id).traits
                for contract, token_id in zip(payload.nft_contracts, payload.token_ids)
            ]
        )

    def resolve(self, record: GameRecord) -> BattleOutcome:
        if record.player1 is None or record.player2 is None:
            raise NotResolvable(f"game {record.id} has no opponent yet")
        reveal1 = record.reveal_for(PLAYER1)
        reveal2 = record.reveal_for(PLAYER2)
        if reveal1 is None or reveal2 is None:
            raise NotResolvable(f"game {record.id} is missing reveal data")
        return compute_winner(self.team_traits(reveal1), self.team_traits(reveal2))

    def try_resolve(self, record: GameRecord, settled_at: str) -> bool:
        """Resolve and apply in one step; False leaves the record untouched."""
        if record.resolved or record.cancelled:
            return False
        try:
            outcome = self.resolve(record)
        except NotResolvable as exc:
            log(f"WARN: [resolve] game {record.id} not resolvable: {exc}")
            return False
        apply_outcome(record, outcome, settled_at)
        log(f"[resolve] game {record.id}: winner={record.winner or 'tie'} rounds={[r.winner for r in outcome.round_results]}")
        return True


def apply_outcome(record: GameRecord, outcome: BattleOutcome, settled_at: str) -> GameRecord:
    record.round_results = list(outcome.round_results)
    record.tie = outcome.tie
    record.winner = None if outcome.tie else record.address_of(outcome.winner)
    record.settled = True
    record.settled_at = settled_at
    return record


def apply_posted_winner(record: GameRecord, posted: Optional[str], settled_at: str) -> bool:
    """Fold a winner posted on chain into ``record``.

    When the engine has already resolved the game the posted value only
    confirms it; a disagreement is logged and the engine result stands.
    Otherwise a non-zero winner settles the game for that player and a zero
    winner marks it cancelled. Returns True when the record changed.
    """
    changed = False
    if not record.settled:
        record.settled = True
        changed = True
    if record.settled_at is None:
        record.settled_at = settled_at
        changed = True

    if record.resolved:
        if posted != record.winner:
            log(
                f"WARN: [resolve] game {record.id}: posted winner {posted} "
                f"disagrees with resolved winner {record.winner or 'tie'}"
            )
        return changed

    if posted is not None:
        if record.winner != posted or record.cancelled or record.tie:
            record.winner = posted
            record.cancelled = False
            record.cancelled_at = None
            record.tie = False
            changed = True
    elif not record.cancelled or record.winner is not None or record.tie:
        record.cancelled = True
        record.cancelled_at = record.cancelled_at or settled_at
        record.winner = None
        record.tie = False
        changed = True
    return changed
