import asyncio
import copy
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .errors import InvariantViolation, NotResolvable
from .ledger import Ledger
from .models import PLAYER1, PLAYER2, ChainGame, GameRecord
from .mutex import FifoMutex
from .notify import Broadcaster
from .pool import DEFAULT_POOL_WIDTH, map_bounded
from .repository import RecordRepository
from .resolution import Resolver, apply_posted_winner
from .util import iso_timestamp, log


MAX_BACKOFF = 60


async def run_periodic(name: str, interval: float, fn: Callable[[], Awaitable[Any]], reconnect_delay: float = 5) -> None:
    """Call ``fn`` every ``interval`` seconds forever.

    A failed tick is logged and retried after an exponentially growing delay;
    the delay resets after the next successful tick.
    """
    base = max(reconnect_delay, 1)
    backoff = base
    while True:
        try:
            await fn()
        except Exception as exc:
            log(f"ERROR: [{name}] tick failed: {exc}")
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, MAX_BACKOFF)
            continue
        backoff = base
        await asyncio.sleep(interval)


class DiscoveryJob:
    """Adds games the ledger knows about but the local store never saw."""

    def __init__(
        self,
        ledger: Ledger,
        repository: RecordRepository,
        gate: FifoMutex,
        pool_width: int = DEFAULT_POOL_WIDTH,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.ledger = ledger
        self.repository = repository
        self.gate = gate
        self.pool_width = pool_width
        self.broadcaster = broadcaster

    async def run_once(self) -> int:
        count = await self.ledger.get_games_length()
        known = set(self.repository.ids())
        missing = [game_id for game_id in range(count) if game_id not in known]
        if not missing:
            return 0

        found: List[GameRecord] = []
        for game_id, result in await map_bounded(self.ledger.get_game_by_id, missing, self.pool_width):
            if isinstance(result, Exception):
                log(f"WARN: [discover] fetching game {game_id} failed: {result}")
                continue
            if result is None or not result.exists:
                continue
            found.append(result.to_record(created_at=iso_timestamp()))

        if not found:
            return 0

        added: List[int] = []
        async with self.gate:
            for record in found:
                if self.repository.get(record.id) is None:
                    self.repository.upsert(record)
                    added.append(record.id)
            if added:
                self.repository.save()

        if added:
            log(f"[discover] added {len(added)} missing game(s): {added}")
            if self.broadcaster is not None:
                self.broadcaster.publish("GamesDiscovered", {"gameIds": added})
        return len(added)


def _is_final(record: GameRecord) -> bool:
    return record.settled and (record.winner is not None or record.tie or record.cancelled)


class ReconciliationJob:
    """Re-reads every local game from the ledger and repairs drift."""

    def __init__(
        self,
        ledger: Ledger,
        repository: RecordRepository,
        gate: FifoMutex,
        resolver: Resolver,
        pool_width: int = DEFAULT_POOL_WIDTH,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.ledger = ledger
        self.repository = repository
        self.gate = gate
        self.resolver = resolver
        self.pool_width = pool_width
        self.broadcaster = broadcaster

    async def run_once(self) -> int:
        changed = await self._reconcile()
        if changed and self.broadcaster is not None:
            self.broadcaster.publish("GamesReconciled", {"gameIds": changed})
        return len(changed)

    async def _fetch(self, record: GameRecord) -> Tuple[Optional[ChainGame], Optional[str], bool]:
        chain = await self.ledger.get_game_by_id(record.id)
        if chain is None or not chain.settled:
            return chain, None, False
        if _is_final(record) and not record.reveal:
            return chain, None, False
        return chain, await self.ledger.get_backend_winner(record.id), True

    async def _reconcile(self) -> List[int]:
        records = self.repository.snapshot()
        if not records:
            return []

        # Ledger reads happen outside the gate; only the merge below holds it.
        fetched = await map_bounded(self._fetch, records, self.pool_width)

        changed: List[int] = []
        async with self.gate:
            for snapshot, result in fetched:
                if isinstance(result, Exception):
                    log(f"WARN: [reconcile] fetching game {snapshot.id} failed: {result}")
                    continue
                chain, posted, checked = result
                if chain is None:
                    log(f"WARN: [reconcile] game {snapshot.id} not found on chain")
                    continue
                record = self.repository.get(snapshot.id)
                if record is None:
                    continue
                before = copy.deepcopy(record)
                try:
                    if self.reconcile_record(record, chain, posted, checked):
                        record.validate()
                        changed.append(record.id)
                except (InvariantViolation, NotResolvable, ValueError, TypeError) as exc:
                    log(f"ERROR: [reconcile] game {record.id}: {exc}; keeping previous state")
                    self.repository.upsert(before)

            if changed:
                self.repository.save()
                log(f"[reconcile] updated {len(changed)} game(s): {changed}")
        return changed

    def reconcile_record(self, record: GameRecord, chain: ChainGame, posted: Optional[str], checked: bool) -> bool:
        changed = False
        now = iso_timestamp()

        # Reveal flags only ever go from False to True.
        if chain.player1_revealed and not record.player1_revealed:
            record.player1_revealed = True
            changed = True
        if chain.player2_revealed and not record.player2_revealed:
            record.player2_revealed = True
            changed = True

        if record.player1 is None and chain.player1 is not None:
            record.player1 = chain.player1
            changed = True
        if record.player2 is None and chain.player2 is not None:
            record.player2 = chain.player2
            changed = True

        if (
            not record.resolved
            and not record.cancelled
            and record.reveal_for(PLAYER1) is not None
            and record.reveal_for(PLAYER2) is not None
        ):
            changed |= self.resolver.try_resolve(record, now)

        if chain.settled:
            if checked:
                changed |= apply_posted_winner(record, posted, now)
            if record.reveal and record.settled:
                record.reveal = {}
                changed = True
        elif chain.cancelled and not record.cancelled and not record.settled:
            record.cancelled = True
            record.cancelled_at = record.cancelled_at or now
            changed = True

        return changed
