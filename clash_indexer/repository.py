"""Record Store: the off-chain copy of every game, keyed by ledger id.

Writers mutate the in-memory map and call ``save()``, which replaces the whole
persisted snapshot. A failed write restores the map from the last snapshot
that made it to storage before re-raising.
"""

import abc
import copy
import json
import os
import sqlite3
from typing import Dict, Iterable, List, Optional

from .models import GameRecord
from .util import json_dumps, load_json, log, write_json_atomic


class RecordRepository(abc.ABC):
    def __init__(self) -> None:
        self._records: Dict[int, GameRecord] = {}
        self._loaded = False

    def load(self) -> List[GameRecord]:
        self._records = {r.id: r for r in self._read()}
        self._loaded = True
        return self.list_all()

    def get(self, game_id: int) -> Optional[GameRecord]:
        self._ensure_loaded()
        return self._records.get(int(game_id))

    def get_or_create(self, game_id: int) -> GameRecord:
        self._ensure_loaded()
        game_id = int(game_id)
        if game_id < 0:
            raise ValueError(f"invalid game id {game_id}")
        record = self._records.get(game_id)
        if record is None:
            record = GameRecord(id=game_id)
            self._records[game_id] = record
        return record

    def upsert(self, record: GameRecord) -> GameRecord:
        self._ensure_loaded()
        self._records[record.id] = record
        return record

    def discard(self, game_id: int) -> None:
        self._ensure_loaded()
        self._records.pop(int(game_id), None)

    def list_all(self) -> List[GameRecord]:
        self._ensure_loaded()
        return [self._records[i] for i in sorted(self._records)]

    def ids(self) -> List[int]:
        self._ensure_loaded()
        return sorted(self._records)

    def snapshot(self) -> List[GameRecord]:
        return copy.deepcopy(self.list_all())

    def save(self) -> None:
        self._ensure_loaded()
        records = self.list_all()
        try:
            self._write(records)
        except Exception:
            log("ERROR: record store write failed, reverting to last persisted snapshot")
            self.load()
            raise

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._records)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    @abc.abstractmethod
    def _read(self) -> Iterable[GameRecord]:
        ...

    @abc.abstractmethod
    def _write(self, records: List[GameRecord]) -> None:
        ...


class JsonRecordStore(RecordRepository):
    """All records as one JSON array ordered by id."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path

    def _read(self) -> Iterable[GameRecord]:
        if not os.path.exists(self.path):
            return []
        raw = load_json(self.path)
        if not isinstance(raw, list):
            raise ValueError(f"{self.path}: expected a JSON array of games")
        return [GameRecord.from_dict(item) for item in raw]

    def _write(self, records: List[GameRecord]) -> None:
        write_json_atomic(self.path, [r.to_dict() for r in records])


class SqliteRecordStore(RecordRepository):
    """Same snapshot semantics on top of an embedded database."""

    def __init__(self, db_path: str):
        super().__init__()
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    def _connect(self) -> sqlite3.Connection:
        if self.conn is None:
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            cur = self.conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS games (
                    id INTEGER PRIMARY KEY,
                    doc TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self.conn.commit()
        return self.conn

    def _read(self) -> Iterable[GameRecord]:
        cur = self._connect().cursor()
        rows = cur.execute("SELECT doc FROM games ORDER BY id ASC").fetchall()
        return [GameRecord.from_dict(json.loads(row["doc"])) for row in rows]

    def _write(self, records: List[GameRecord]) -> None:
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute("DELETE FROM games")
            cur.executemany(
                "INSERT INTO games (id, doc) VALUES (?, ?)",
                [(r.id, json_dumps(r.to_dict())) for r in records],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None


def open_repository(backend: str, state_dir: str) -> RecordRepository:
    if backend == "sqlite":
        return SqliteRecordStore(os.path.join(state_dir, "games.db"))
    return JsonRecordStore(os.path.join(state_dir, "games.json"))
