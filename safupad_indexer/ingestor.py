import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from .errors import DecodeError, OrderingError, StoreWriteError
from .events import ChainEvent, decode_json_line
from .handlers import HANDLERS, HandlerContext
from .storage import EventInbox, Storage

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"


@dataclass
class SourceItem:
    event: ChainEvent
    token: Any = None


class _Halt:
    def __init__(self, error: Exception):
        self.error = error


_DRAINED = object()


class EventApplier:
    """Sequential apply stage: one event, one transaction.

    An event is skipped when the applied-event ledger already holds it. An
    event that is not in the ledger but sits at or before the checkpoint was
    delivered out of order and raises OrderingError.
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    def apply(self, event: ChainEvent) -> str:
        if self.storage.is_applied(event):
            logger.info("skipping already applied %s %s", event.kind, event.event_id)
            return DUPLICATE
        checkpoint = self.storage.get_checkpoint()
        if checkpoint is not None and event.position <= checkpoint:
            raise OrderingError(
                f"{event.kind} {event.event_id} at {event.position} is behind checkpoint {checkpoint}"
            )

        handler = HANDLERS[event.kind]
        uow = self.storage.session(event)
        ctx = HandlerContext(uow, event)
        handler(ctx)
        self.storage.commit_event(uow, ctx.issues)
        logger.debug("applied %s at block %s log %s", event.kind, event.block_number, event.log_index)
        return APPLIED


class JsonlEventSource:
    """Decoded events from a JSON-lines file, one event per line."""

    def __init__(self, path: str):
        self.path = path
        self._fh = open(path, "r", encoding="utf-8")
        self._line_no = 0
        self._error: Optional[DecodeError] = None
        self.exhausted = False

    def close(self) -> None:
        self._fh.close()

    async def fetch(self, limit_n: int) -> List[SourceItem]:
        # a bad line is raised on the call after the events preceding it
        if self._error is not None:
            raise self._error
        items: List[SourceItem] = []
        while len(items) < limit_n:
            line = self._fh.readline()
            if not line:
                self.exhausted = True
                break
            self._line_no += 1
            if not line.strip():
                continue
            try:
                event = decode_json_line(line)
            except DecodeError as e:
                self._error = DecodeError(f"{self.path}:{self._line_no}: {e}", e.payload)
                if items:
                    break
                raise self._error from e
            items.append(SourceItem(event=event, token=self._line_no))
        return items

    async def ack(self, item: SourceItem) -> None:
        return None


class InboxEventSource:
    def __init__(self, inbox: EventInbox):
        self.inbox = inbox
        self.in_flight: Set[int] = set()
        self.exhausted = False

    async def fetch(self, limit_n: int) -> List[SourceItem]:
        rows = self.inbox.fetch_events(limit_n, exclude_ids=self.in_flight)
        items = []
        for row in rows:
            self.in_flight.add(row["id"])
            items.append(SourceItem(event=row["event"], token=row["id"]))
        self.exhausted = not items and not self.in_flight
        return items

    async def ack(self, item: SourceItem) -> None:
        self.inbox.ack_events([item.token])
        self.in_flight.discard(item.token)


class Ingestor:
    """Pipelines fetching ahead of a single sequential apply stage.

    The fetch stage fills a bounded queue; the apply stage drains it one
    event at a time. The checkpoint is written in the same transaction as
    each event's entities, so it never runs ahead of applied state.
    """

    def __init__(
        self,
        storage: Storage,
        source: Any,
        queue_maxsize: int = 1000,
        batch_size: int = 200,
        poll_interval_sec: float = 0.5,
        max_write_retries: int = 5,
        retry_backoff_sec: float = 0.5,
        stop_when_drained: bool = False,
        allowed_emitters: Optional[Set[str]] = None,
    ):
        self.storage = storage
        self.source = source
        self.applier = EventApplier(storage)
        self.batch_size = max(1, int(batch_size))
        self.poll_interval_sec = max(0.01, float(poll_interval_sec))
        self.max_write_retries = max(1, int(max_write_retries))
        self.retry_backoff_sec = max(0.0, float(retry_backoff_sec))
        self.stop_when_drained = stop_when_drained
        self.allowed_emitters = set(allowed_emitters or ())
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=max(1, int(queue_maxsize)))
        self.stop_event = asyncio.Event()
        self._apply_task: Optional[asyncio.Task] = None
        self._fetch_task: Optional[asyncio.Task] = None
        self._last_position: Optional[Tuple[int, int]] = None
        self.stats: Dict[str, Any] = {
            "fetched_events": 0,
            "applied_events": 0,
            "duplicate_events": 0,
            "ignored_events": 0,
            "write_retries": 0,
            "source_errors": 0,
            "dead_letters": 0,
            "last_applied_block": 0,
            "started_at": int(time.time()),
        }

    async def fetch_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                items = await self.source.fetch(self.batch_size)
            except DecodeError as e:
                logger.error("undecodable event, halting ingestion: %s", e)
                payload = e.payload if isinstance(e.payload, dict) else None
                self.storage.save_dead_letter(
                    tx_hash=str(payload["txHash"]) if payload and payload.get("txHash") else None,
                    reason=f"decode_failed: {e}",
                    payload=payload,
                )
                self.stats["dead_letters"] += 1
                await self.queue.put(_Halt(e))
                return
            except Exception as e:
                self.stats["source_errors"] += 1
                logger.warning("event source error: %s: %s", type(e).__name__, e)
                await asyncio.sleep(self.poll_interval_sec)
                continue

            if not items:
                if self.stop_when_drained and self.source.exhausted:
                    await self.queue.put(_DRAINED)
                    return
                await asyncio.sleep(self.poll_interval_sec)
                continue
            for item in items:
                await self.queue.put(item)
                self.stats["fetched_events"] += 1

    async def apply_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=self.poll_interval_sec)
            except asyncio.TimeoutError:
                continue
            try:
                if item is _DRAINED:
                    return
                if isinstance(item, _Halt):
                    raise item.error
                await self._apply_item(item)
            finally:
                self.queue.task_done()

    async def _apply_item(self, item: SourceItem) -> None:
        event = item.event
        if self.allowed_emitters and event.address not in self.allowed_emitters:
            logger.warning("ignoring %s %s from unknown emitter %s", event.kind, event.event_id, event.address)
            self.storage.save_dead_letter(event.tx_hash, f"unknown_emitter: {event.address}", event.to_payload())
            self.stats["ignored_events"] += 1
            await self.source.ack(item)
            return
        if self._last_position is not None and event.position < self._last_position:
            if not self.storage.is_applied(event):
                raise OrderingError(
                    f"{event.kind} {event.event_id} at {event.position} arrived after {self._last_position}"
                )
        outcome = await self._apply_with_retry(event)
        if outcome == APPLIED:
            self.stats["applied_events"] += 1
            self.stats["last_applied_block"] = event.block_number
            self._last_position = event.position
        else:
            self.stats["duplicate_events"] += 1
        await self.source.ack(item)

    async def _apply_with_retry(self, event: ChainEvent) -> str:
        backoff = self.retry_backoff_sec
        for attempt in range(1, self.max_write_retries + 1):
            try:
                return self.applier.apply(event)
            except StoreWriteError as e:
                if attempt >= self.max_write_retries:
                    logger.error("giving up on %s after %s attempts: %s", event.event_id, attempt, e)
                    raise
                self.stats["write_retries"] += 1
                logger.warning("write failed for %s (attempt %s), retrying in %.2fs: %s",
                               event.event_id, attempt, backoff, e)
                await asyncio.sleep(backoff)
                backoff *= 2
        raise StoreWriteError(f"no attempt made for {event.event_id}")

    async def run(self) -> None:
        checkpoint = self.storage.get_checkpoint()
        logger.info("ingestion starting from checkpoint %s", checkpoint)
        self._fetch_task = asyncio.create_task(self.fetch_loop())
        self._apply_task = asyncio.create_task(self.apply_loop())
        try:
            await self._apply_task
        finally:
            self._fetch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._fetch_task
            logger.info(
                "ingestion stopped at checkpoint %s (%s applied, %s duplicates)",
                self.storage.get_checkpoint(),
                self.stats["applied_events"],
                self.stats["duplicate_events"],
            )

    async def shutdown(self) -> None:
        """Stop after the in-flight event has been committed."""
        self.stop_event.set()
        if self._apply_task is not None:
            await asyncio.wait({self._apply_task})


async def replay_file(storage: Storage, path: str, batch_size: int = 200) -> Dict[str, Any]:
    if not Path(path).exists():
        raise FileNotFoundError(path)
    source = JsonlEventSource(path)
    try:
        ingestor = Ingestor(
            storage,
            source,
            batch_size=batch_size,
            poll_interval_sec=0.05,
            stop_when_drained=True,
        )
        await ingestor.run()
        return dict(ingestor.stats)
    finally:
        source.close()
