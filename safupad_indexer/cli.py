import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import List, Optional

from aiohttp import web

from .api import IndexerApi
from .config import AppConfig, load_config
from .errors import IndexerError
from .events import decode_json_line
from .ingestor import InboxEventSource, Ingestor, replay_file
from .storage import EventInbox, Storage, entity_class

logger = logging.getLogger("safupad_indexer")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def run_service(cfg: AppConfig) -> None:
    storage = Storage(cfg.sqlite_path)
    inbox = EventInbox(cfg.inbox_sqlite_path)
    ingestor = Ingestor(
        storage,
        InboxEventSource(inbox),
        queue_maxsize=cfg.queue_maxsize,
        batch_size=cfg.fetch_batch_size,
        poll_interval_sec=cfg.poll_interval_ms / 1000.0,
        max_write_retries=cfg.max_write_retries,
        retry_backoff_sec=cfg.retry_backoff_ms / 1000.0,
        allowed_emitters=cfg.contract_addresses,
    )
    api = IndexerApi(
        storage,
        ingestor=ingestor,
        inbox=inbox,
        cors_allow_origins=cfg.cors_allow_origins,
        chain_id=cfg.chain_id,
    )
    runner = web.AppRunner(api.create_app())
    await runner.setup()
    site = web.TCPSite(runner, host=cfg.api_host, port=cfg.api_port)
    await site.start()
    logger.info("read api listening on %s:%s", cfg.api_host, cfg.api_port)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _on_stop() -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _on_stop)

    run_task = asyncio.create_task(ingestor.run())
    wait_task = asyncio.create_task(stop_event.wait())
    try:
        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if run_task in done:
            wait_task.cancel()
            run_task.result()
        else:
            logger.info("shutdown requested, finishing in-flight event")
            await ingestor.shutdown()
            await run_task
    finally:
        await runner.cleanup()
        inbox.close()
        storage.close()


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    setup_logging(cfg.log_level)
    asyncio.run(run_service(cfg))
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    cfg = load_config(args.config, required=False)
    setup_logging(cfg.log_level)
    storage = Storage(args.db or cfg.sqlite_path)
    try:
        stats = asyncio.run(replay_file(storage, args.file, batch_size=cfg.fetch_batch_size))
        checkpoint = storage.get_checkpoint()
    finally:
        storage.close()
    print(json.dumps({"stats": stats, "checkpoint": checkpoint}, ensure_ascii=False))
    return 0


def cmd_enqueue(args: argparse.Namespace) -> int:
    cfg = load_config(args.config, required=False)
    setup_logging(cfg.log_level)
    with open(args.file, "r", encoding="utf-8") as f:
        events = [decode_json_line(line) for line in f if line.strip()]
    inbox = EventInbox(cfg.inbox_sqlite_path)
    try:
        inserted = inbox.enqueue_events(events)
    finally:
        inbox.close()
    logger.info("enqueued %s of %s events", inserted, len(events))
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    cfg = load_config(args.config, required=False)
    entity_class(args.type)
    storage = Storage(args.db or cfg.sqlite_path)
    try:
        data = storage.get_entity(args.type, args.id.strip().lower())
    finally:
        storage.close()
    if data is None:
        print(f"{args.type} {args.id} not found", file=sys.stderr)
        return 1
    print(json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SafuPad on-chain event indexer"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="ingest events from the inbox and serve the read api")
    p_run.set_defaults(func=cmd_run)

    p_replay = sub.add_parser("replay", help="apply a JSON-lines event log and exit")
    p_replay.add_argument("file")
    p_replay.add_argument("--db", help="override SQLITE_PATH")
    p_replay.set_defaults(func=cmd_replay)

    p_enqueue = sub.add_parser("enqueue", help="load a JSON-lines event log into the inbox")
    p_enqueue.add_argument("file")
    p_enqueue.set_defaults(func=cmd_enqueue)

    p_show = sub.add_parser("show", help="print one entity as JSON")
    p_show.add_argument("type")
    p_show.add_argument("id")
    p_show.add_argument("--db", help="override SQLITE_PATH")
    p_show.set_defaults(func=cmd_show)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        code = args.func(args)
    except KeyboardInterrupt:
        code = 130
    except (IndexerError, ValueError, FileNotFoundError) as e:
        raise SystemExit(f"{type(e).__name__}: {e}") from e
    raise SystemExit(code)


if __name__ == "__main__":
    main()
