"""Tests for applying decoded events to the record store."""
import pytest

from clash_indexer.dispatcher import EventDispatcher
from clash_indexer.models import BlockRef, GameCancelled, GameJoined, GameSettled, GameStatus, Transfer
from clash_indexer.repository import JsonRecordStore

from conftest import ALICE, BOB, CAROL, created


def _ref(block):
    return BlockRef(number=block, log_index=1, timestamp=1_700_000_000 + block)


@pytest.fixture
def dispatcher(repository, gate, broadcaster):
    return EventDispatcher(repository, gate, broadcaster)


@pytest.mark.asyncio
async def test_created_joined_settled_flow(dispatcher, repository):
    events = [
        created(0, 10),
        GameJoined(game_id=0, block=_ref(12), player2=BOB),
        GameSettled(game_id=0, block=_ref(20), winner=BOB),
    ]
    assert await dispatcher.dispatch(events) == 3

    record = repository.get(0)
    assert record.player1 == ALICE
    assert record.player2 == BOB
    assert record.stake_amount == "5000"
    assert record.created_at == "2023-11-14T22:13:30Z"
    assert record.player2_joined_at == "2023-11-14T22:13:32Z"
    assert record.settled is True
    assert record.winner == BOB
    assert record.status is GameStatus.SETTLED


@pytest.mark.asyncio
async def test_replaying_events_changes_nothing(dispatcher, repository, state_dir):
    events = [created(3, 40), GameJoined(game_id=3, block=_ref(41), player2=BOB)]
    await dispatcher.dispatch(events)
    first = repository.get(3).to_dict()
    on_disk = (state_dir / "games.json").read_text()

    assert await dispatcher.dispatch(events) == 0
    assert repository.get(3).to_dict() == first
    assert (state_dir / "games.json").read_text() == on_disk


@pytest.mark.asyncio
async def test_accepted_events_are_persisted_and_published(dispatcher, broadcaster, state_dir):
    queue = broadcaster.subscribe()
    await dispatcher.dispatch([created(1, 5)])

    reloaded = JsonRecordStore(str(state_dir / "games.json"))
    assert reloaded.get(1).player1 == ALICE

    message = queue.get_nowait()
    assert message["event"] == "GameCreated"
    assert message["data"] == {"gameId": 1, "args": ["1", ALICE, None, "5000"]}
    assert queue.empty()


@pytest.mark.asyncio
async def test_unknown_event_kind_is_ignored(dispatcher, repository):
    transfer = Transfer("VKIN", "0x01", ALICE, BOB, "1", _ref(3))
    assert await dispatcher.dispatch([transfer]) == 0
    assert len(repository) == 0


@pytest.mark.asyncio
async def test_cancel_after_settlement_is_ignored(dispatcher, repository):
    await dispatcher.dispatch(
        [
            created(2, 1),
            GameJoined(game_id=2, block=_ref(2), player2=BOB),
            GameSettled(game_id=2, block=_ref(3), winner=ALICE),
        ]
    )
    assert await dispatcher.dispatch([GameCancelled(game_id=2, block=_ref(4))]) == 0
    record = repository.get(2)
    assert record.cancelled is False
    assert record.winner == ALICE


@pytest.mark.asyncio
async def test_cancel_marks_open_game(dispatcher, repository):
    await dispatcher.dispatch([created(5, 1), GameCancelled(game_id=5, block=_ref(9))])
    record = repository.get(5)
    assert record.cancelled is True
    assert record.cancelled_at == "2023-11-14T22:13:29Z"
    assert record.status is GameStatus.CANCELLED


@pytest.mark.asyncio
async def test_invalid_event_is_dropped_and_record_restored(dispatcher, repository):
    await dispatcher.dispatch([created(6, 1), GameJoined(game_id=6, block=_ref(2), player2=BOB)])
    before = repository.get(6).to_dict()

    # CAROL never joined, so settling for her breaks the winner invariant
    accepted = await dispatcher.dispatch(
        [GameSettled(game_id=6, block=_ref(3), winner=CAROL), created(7, 3)]
    )
    assert accepted == 1
    assert repository.get(6).to_dict() == before
    assert repository.get(7).player1 == ALICE


@pytest.mark.asyncio
async def test_negative_game_id_is_dropped(dispatcher, repository):
    assert await dispatcher.dispatch([created(-1, 1)]) == 0
    assert len(repository) == 0


@pytest.mark.asyncio
async def test_join_without_player_creates_nothing(dispatcher, repository):
    assert await dispatcher.dispatch([GameJoined(game_id=8, block=_ref(2), player2=None)]) == 0
    assert repository.get(8) is None
