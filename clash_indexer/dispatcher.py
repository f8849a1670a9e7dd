import copy
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import InvariantViolation
from .models import DecodedEvent, GameCancelled, GameCreated, GameJoined, GameRecord, GameSettled
from .mutex import FifoMutex
from .notify import Broadcaster
from .repository import RecordRepository
from .resolution import apply_posted_winner
from .util import iso_timestamp, log


def _set(record: GameRecord, attr: str, value: Any) -> bool:
    if value is None or getattr(record, attr) == value:
        return False
    setattr(record, attr, value)
    return True


def _set_once(record: GameRecord, attr: str, value: Any) -> bool:
    if getattr(record, attr) is not None:
        return False
    setattr(record, attr, value)
    return True


class EventDispatcher:
    """Applies decoded game events to the record store.

    Every mutation is idempotent: timestamps come from the event's block and
    are only written once, so replaying a chunk leaves records unchanged.
    """

    def __init__(self, repository: RecordRepository, gate: FifoMutex, broadcaster: Optional[Broadcaster] = None):
        self.repository = repository
        self.gate = gate
        self.broadcaster = broadcaster
        self._handlers: Dict[str, Callable[[GameRecord, Any], bool]] = {
            GameCreated.kind: self._on_created,
            GameJoined.kind: self._on_joined,
            GameCancelled.kind: self._on_cancelled,
            GameSettled.kind: self._on_settled,
        }

    def apply(self, event: DecodedEvent) -> bool:
        handler = self._handlers.get(getattr(event, "kind", None))
        if handler is None:
            return False
        existed = self.repository.get(event.game_id) is not None
        record = self.repository.get_or_create(event.game_id)
        before = copy.deepcopy(record)
        try:
            changed = handler(record, event)
            if changed:
                record.validate()
        except Exception:
            if existed:
                self.repository.upsert(before)
            else:
                self.repository.discard(before.id)
            raise
        if not changed and not existed:
            self.repository.discard(record.id)
        return changed

    async def dispatch(self, events: Iterable[DecodedEvent]) -> int:
        accepted: List[DecodedEvent] = []
        async with self.gate:
            for event in events:
                try:
                    if self.apply(event):
                        accepted.append(event)
                except (InvariantViolation, ValueError, TypeError) as exc:
                    log(f"ERROR: [dispatch] dropping {getattr(event, 'kind', '?')} for game {getattr(event, 'game_id', '?')}: {exc}")
            if accepted:
                self.repository.save()
        for event in accepted:
            self._publish(event)
        return len(accepted)

    async def dispatch_one(self, event: DecodedEvent) -> bool:
        return await self.dispatch([event]) > 0

    def _publish(self, event: DecodedEvent) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(event.kind, {"gameId": event.game_id, "args": event.args()})

    def _on_created(self, record: GameRecord, event: GameCreated) -> bool:
        if record.player1 is not None and event.player1 is not None and record.player1 != event.player1:
            log(f"WARN: [dispatch] game {record.id}: player1 {record.player1} replaced by {event.player1}")
        changed = _set(record, "player1", event.player1)
        changed |= _set(record, "stake_token", event.stake_token)
        changed |= _set(record, "stake_amount", event.stake_amount)
        changed |= _set_once(record, "created_at", iso_timestamp(event.block.timestamp))
        return changed

    def _on_joined(self, record: GameRecord, event: GameJoined) -> bool:
        if event.player2 is None:
            return False
        changed = _set(record, "player2", event.player2)
        changed |= _set_once(record, "player2_joined_at", iso_timestamp(event.block.timestamp))
        return changed

    def _on_cancelled(self, record: GameRecord, event: GameCancelled) -> bool:
        if record.settled and not record.cancelled:
            log(f"WARN: [dispatch] game {record.id}: cancel after settlement ignored")
            return False
        changed = _set(record, "cancelled", True)
        changed |= _set_once(record, "cancelled_at", iso_timestamp(event.block.timestamp))
        return changed

    def _on_settled(self, record: GameRecord, event: GameSettled) -> bool:
        return apply_posted_winner(record, event.winner, iso_timestamp(event.block.timestamp))
