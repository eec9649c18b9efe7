import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Set, Tuple, Type, TypeVar, Union

from .errors import DecodeError, StoreWriteError, TerminalStateViolation
from .events import ChainEvent, decode_event
from .models import ENTITY_TYPES, Contribution, Entity, Trade, TokenHolder

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

CHECKPOINT_KEY = "checkpoint"

IMMUTABLE_TYPES = {Trade.ENTITY_TYPE}

# entity type -> attribute holding the parent reference used for listings
REF_ATTRS = {
    Trade.ENTITY_TYPE: "pool",
    TokenHolder.ENTITY_TYPE: "token",
    Contribution.ENTITY_TYPE: "launch",
}


@dataclass(frozen=True)
class Found(Generic[E]):
    entity: E


@dataclass(frozen=True)
class NotFound:
    entity_type: str
    entity_id: str


LoadResult = Union[Found, NotFound]


@dataclass(frozen=True)
class Issue:
    """A handler condition that skipped part of an event's mutation."""

    kind: str
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None


def _open(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def _entity_json(entity: Entity) -> str:
    return json.dumps(entity.to_dict(), ensure_ascii=False, sort_keys=True)


class UnitOfWork:
    """Entity reads and buffered writes for a single event.

    Nothing reaches sqlite until Storage.commit_event() writes the whole
    buffer, the ledger row and the checkpoint in one transaction.
    """

    def __init__(self, storage: "Storage", event: Optional[ChainEvent] = None):
        self.storage = storage
        self.event = event
        self._pending: Dict[Tuple[str, str], Entity] = {}

    @property
    def pending(self) -> List[Entity]:
        return list(self._pending.values())

    def load(self, cls: Type[E], entity_id: str) -> LoadResult:
        key = (cls.ENTITY_TYPE, entity_id)
        if key in self._pending:
            return Found(self._pending[key])
        entity = self.storage.fetch_entity(cls, entity_id)
        if entity is None:
            return NotFound(cls.ENTITY_TYPE, entity_id)
        return Found(entity)

    def save(self, entity: Entity) -> None:
        key = (entity.ENTITY_TYPE, entity.id)
        if entity.ENTITY_TYPE in IMMUTABLE_TYPES and key not in self._pending:
            if self.storage.fetch_entity(type(entity), entity.id) is not None:
                raise TerminalStateViolation(f"{entity.ENTITY_TYPE} {entity.id} is immutable")
        self._pending[key] = entity

    def get_or_create(self, cls: Type[E], entity_id: str, factory: Callable[[], E]) -> E:
        """Load an entity, building it with factory() when absent.

        A created entity is not buffered; the caller saves it once its
        fields are set.
        """
        result = self.load(cls, entity_id)
        if isinstance(result, Found):
            return result.entity
        return factory()


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = _open(db_path)
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        journal = "" if self.db_path == ":memory:" else "PRAGMA journal_mode=WAL;"
        cur.executescript(
            journal
            + """
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS entities (
                entity_type TEXT NOT NULL,
                id TEXT NOT NULL,
                ref TEXT,
                version INTEGER NOT NULL,
                data TEXT NOT NULL,
                first_block INTEGER NOT NULL,
                first_log_index INTEGER NOT NULL,
                updated_block INTEGER NOT NULL,
                PRIMARY KEY(entity_type, id)
            );

            CREATE INDEX IF NOT EXISTS idx_entities_ref
                ON entities(entity_type, ref, first_block, first_log_index);

            CREATE TABLE IF NOT EXISTS event_log (
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                applied_at INTEGER NOT NULL,
                PRIMARY KEY(tx_hash, log_index)
            );

            CREATE INDEX IF NOT EXISTS idx_event_log_position
                ON event_log(block_number, log_index);

            CREATE TABLE IF NOT EXISTS integrity_issues (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                event_kind TEXT NOT NULL,
                kind TEXT NOT NULL,
                entity_type TEXT,
                entity_id TEXT,
                message TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS dead_letters (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_hash TEXT,
                reason TEXT NOT NULL,
                payload TEXT,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS system_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
            """
        )
        self.conn.commit()

    def get_state(self, key: str) -> Optional[str]:
        cur = self.conn.execute("SELECT value FROM system_state WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def _write_state(self, cur: sqlite3.Cursor, key: str, value: str) -> None:
        cur.execute(
            """
            INSERT INTO system_state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, int(time.time())),
        )

    def get_checkpoint(self) -> Optional[Tuple[int, int]]:
        raw = self.get_state(CHECKPOINT_KEY)
        if not raw:
            return None
        data = json.loads(raw)
        return (int(data["block"]), int(data["logIndex"]))

    def fetch_entity(self, cls: Type[E], entity_id: str) -> Optional[E]:
        row = self.conn.execute(
            "SELECT data FROM entities WHERE entity_type = ? AND id = ?",
            (cls.ENTITY_TYPE, entity_id),
        ).fetchone()
        if not row:
            return None
        return cls.from_dict(json.loads(row["data"]))

    def session(self, event: Optional[ChainEvent] = None) -> UnitOfWork:
        return UnitOfWork(self, event)

    def is_applied(self, event: ChainEvent) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM event_log WHERE tx_hash = ? AND log_index = ?",
            (event.tx_hash, event.log_index),
        ).fetchone()
        return row is not None

    def commit_event(self, uow: UnitOfWork, issues: Iterable[Issue] = ()) -> None:
        """Persist one event's entity writes, ledger row, issues and checkpoint atomically."""
        event = uow.event
        if event is None:
            raise ValueError("unit of work is not bound to an event")
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            cur.execute(
                """
                INSERT INTO event_log(tx_hash, log_index, block_number, kind, payload, applied_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.tx_hash,
                    event.log_index,
                    event.block_number,
                    event.kind,
                    event.to_json(),
                    int(time.time()),
                ),
            )
            self._write_entities(cur, uow.pending, event)
            now = int(time.time())
            for issue in issues:
                cur.execute(
                    """
                    INSERT INTO integrity_issues(
                        tx_hash, log_index, block_number, event_kind, kind,
                        entity_type, entity_id, message, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.tx_hash,
                        event.log_index,
                        event.block_number,
                        event.kind,
                        issue.kind,
                        issue.entity_type,
                        issue.entity_id,
                        issue.message,
                        now,
                    ),
                )
            self._write_state(
                cur,
                CHECKPOINT_KEY,
                json.dumps({"block": event.block_number, "logIndex": event.log_index}),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreWriteError(f"commit of {event.kind} {event.event_id} failed: {e}") from e

    def _write_entities(self, cur: sqlite3.Cursor, entities: List[Entity], event: ChainEvent) -> None:
        for entity in entities:
            ref_attr = REF_ATTRS.get(entity.ENTITY_TYPE)
            ref = getattr(entity, ref_attr) if ref_attr else None
            cur.execute(
                """
                INSERT INTO entities(
                    entity_type, id, ref, version, data,
                    first_block, first_log_index, updated_block
                ) VALUES (?, ?, ?, 1, ?, ?, ?, ?)
                ON CONFLICT(entity_type, id) DO UPDATE SET
                    ref = excluded.ref,
                    version = entities.version + 1,
                    data = excluded.data,
                    updated_block = excluded.updated_block
                """,
                (
                    entity.ENTITY_TYPE,
                    entity.id,
                    ref,
                    _entity_json(entity),
                    event.block_number,
                    event.log_index,
                    event.block_number,
                ),
            )

    def save_dead_letter(self, tx_hash: Optional[str], reason: str, payload: Optional[Dict[str, Any]]) -> None:
        self.conn.execute(
            """
            INSERT INTO dead_letters(tx_hash, reason, payload, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (tx_hash, reason, json.dumps(payload, ensure_ascii=False) if payload else None, int(time.time())),
        )
        self.conn.commit()

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            """
            SELECT data, version, updated_block
            FROM entities
            WHERE entity_type = ? AND id = ?
            """,
            (entity_type, entity_id),
        ).fetchone()
        if not row:
            return None
        return self._row_to_record(row)

    def list_entities(self, entity_type: str, limit_n: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT data, version, updated_block
            FROM entities
            WHERE entity_type = ?
            ORDER BY first_block ASC, first_log_index ASC, id ASC
            LIMIT ? OFFSET ?
            """,
            (entity_type, max(1, int(limit_n)), max(0, int(offset))),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def list_children(
        self, entity_type: str, ref: str, limit_n: int = 100, newest_first: bool = False
    ) -> List[Dict[str, Any]]:
        order = "DESC" if newest_first else "ASC"
        rows = self.conn.execute(
            f"""
            SELECT data, version, updated_block
            FROM entities
            WHERE entity_type = ? AND ref = ?
            ORDER BY first_block {order}, first_log_index {order}
            LIMIT ?
            """,
            (entity_type, ref, max(1, int(limit_n))),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def query_daily_stats(self, from_day: int, to_day: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT data, version, updated_block
            FROM entities
            WHERE entity_type = 'DailyStats'
              AND CAST(id AS INTEGER) >= ? AND CAST(id AS INTEGER) <= ?
            ORDER BY CAST(id AS INTEGER) ASC
            """,
            (from_day, to_day),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def list_issues(self, limit_n: int = 100) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT * FROM integrity_issues
            ORDER BY id DESC
            LIMIT ?
            """,
            (max(1, int(limit_n)),),
        ).fetchall()
        return [dict(r) for r in rows]

    def list_dead_letters(self, limit_n: int = 100) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM dead_letters ORDER BY id DESC LIMIT ?",
            (max(1, int(limit_n)),),
        ).fetchall()
        return [dict(r) for r in rows]

    def count_entities(self) -> Dict[str, int]:
        rows = self.conn.execute(
            "SELECT entity_type, COUNT(1) AS c FROM entities GROUP BY entity_type"
        ).fetchall()
        return {str(r["entity_type"]): int(r["c"]) for r in rows}

    def count_applied_events(self) -> int:
        row = self.conn.execute("SELECT COUNT(1) AS c FROM event_log").fetchone()
        return int(row["c"]) if row else 0

    def dump_entities(self) -> List[Tuple[str, str, int, str]]:
        rows = self.conn.execute(
            """
            SELECT entity_type, id, version, data
            FROM entities
            ORDER BY entity_type ASC, id ASC
            """
        ).fetchall()
        return [(r["entity_type"], r["id"], int(r["version"]), r["data"]) for r in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
        out = json.loads(row["data"])
        out["_version"] = int(row["version"])
        out["_updated_block"] = int(row["updated_block"])
        return out


class EventInbox:
    """Durable queue of decoded events written by an external decoder."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = _open(db_path)
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        journal = "" if self.db_path == ":memory:" else "PRAGMA journal_mode=WAL;"
        cur.executescript(
            journal
            + """
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS event_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                payload TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                UNIQUE(tx_hash, log_index)
            );
            CREATE INDEX IF NOT EXISTS idx_event_queue_position
                ON event_queue(block_number, log_index);
            """
        )
        self.conn.commit()

    def enqueue_events(self, events: List[ChainEvent]) -> int:
        if not events:
            return 0
        now = int(time.time())
        rows = [
            (e.tx_hash, e.log_index, e.block_number, e.to_json(), now)
            for e in events
        ]
        cur = self.conn.executemany(
            """
            INSERT OR IGNORE INTO event_queue(tx_hash, log_index, block_number, payload, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            rows,
        )
        self.conn.commit()
        return cur.rowcount

    def fetch_events(self, limit_n: int, exclude_ids: Optional[Set[int]] = None) -> List[Dict[str, Any]]:
        """Return queued rows in canonical order with decoded events.

        Rows listed in exclude_ids (already handed out, not yet acked) are
        skipped. Decoding stops at the first bad row: rows before it are
        returned, and a later call that starts at the bad row raises
        DecodeError, so nothing after it is ever handed out.
        """
        exclude_ids = exclude_ids or set()
        limit_n = max(1, int(limit_n))
        rows = self.conn.execute(
            """
            SELECT id, payload
            FROM event_queue
            ORDER BY block_number ASC, log_index ASC, id ASC
            LIMIT ?
            """,
            (limit_n + len(exclude_ids),),
        ).fetchall()
        result: List[Dict[str, Any]] = []
        for row in rows:
            row_id = int(row["id"])
            if row_id in exclude_ids:
                continue
            try:
                event = decode_event(json.loads(str(row["payload"])))
            except (json.JSONDecodeError, DecodeError) as e:
                if result:
                    break
                raise DecodeError(
                    f"inbox row {row_id}: {e}",
                    {"inboxId": row_id, "raw": str(row["payload"])},
                ) from e
            result.append({"id": row_id, "event": event})
            if len(result) >= limit_n:
                break
        return result

    def ack_events(self, ids: List[int]) -> None:
        if not ids:
            return
        unique_ids = sorted({int(x) for x in ids})
        placeholders = ",".join("?" for _ in unique_ids)
        self.conn.execute(
            f"DELETE FROM event_queue WHERE id IN ({placeholders})",
            unique_ids,
        )
        self.conn.commit()

    def queue_size(self) -> int:
        row = self.conn.execute("SELECT COUNT(1) AS c FROM event_queue").fetchone()
        return int(row["c"]) if row else 0


def entity_class(entity_type: str) -> Type[Entity]:
    try:
        return ENTITY_TYPES[entity_type]
    except KeyError:
        raise ValueError(f"unknown entity type: {entity_type}") from None
