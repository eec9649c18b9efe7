import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .utils import normalize_address

LOG_LEVELS = {"debug", "info", "warning", "error"}


@dataclass
class AppConfig:
    sqlite_path: str = "./data/safupad_indexer.db"
    inbox_sqlite_path: str = "./data/safupad_inbox.db"
    chain_id: int = 97
    contracts: Dict[str, str] = field(default_factory=dict)
    queue_maxsize: int = 1000
    fetch_batch_size: int = 200
    poll_interval_ms: int = 500
    max_write_retries: int = 5
    retry_backoff_ms: int = 500
    log_level: str = "info"
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    cors_allow_origins: List[str] = field(default_factory=list)

    @property
    def contract_addresses(self) -> set:
        return set(self.contracts.values())


def _parse_origins(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [x.strip().rstrip("/") for x in raw.split(",") if x and x.strip()]
    if isinstance(raw, list):
        return [str(x).strip().rstrip("/") for x in raw if str(x).strip()]
    return []


def _positive(raw: Dict[str, Any], key: str, default: int) -> int:
    value = int(raw.get(key, default))
    if value <= 0:
        raise ValueError(f"{key} must be >= 1")
    return value


def config_from_dict(raw: Dict[str, Any]) -> AppConfig:
    contracts_raw = raw.get("CONTRACTS", {}) or {}
    if not isinstance(contracts_raw, dict):
        raise ValueError("CONTRACTS must be an object of name -> address")
    contracts = {str(k): normalize_address(v) for k, v in contracts_raw.items()}

    log_level = str(raw.get("LOG_LEVEL", "info")).lower()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}")

    poll_interval_ms = int(raw.get("POLL_INTERVAL_MS", 500))
    retry_backoff_ms = int(raw.get("RETRY_BACKOFF_MS", 500))
    if poll_interval_ms < 0 or retry_backoff_ms < 0:
        raise ValueError("POLL_INTERVAL_MS and RETRY_BACKOFF_MS cannot be negative")

    return AppConfig(
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/safupad_indexer.db")),
        inbox_sqlite_path=str(raw.get("INBOX_SQLITE_PATH", "./data/safupad_inbox.db")),
        chain_id=int(raw.get("CHAIN_ID", 97)),
        contracts=contracts,
        queue_maxsize=_positive(raw, "QUEUE_MAXSIZE", 1000),
        fetch_batch_size=_positive(raw, "FETCH_BATCH_SIZE", 200),
        poll_interval_ms=poll_interval_ms,
        max_write_retries=_positive(raw, "MAX_WRITE_RETRIES", 5),
        retry_backoff_ms=retry_backoff_ms,
        log_level=log_level,
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cors_allow_origins=_parse_origins(raw.get("CORS_ALLOW_ORIGINS", [])),
    )


def load_config(path: str, required: bool = True) -> AppConfig:
    if not Path(path).exists():
        if required:
            raise FileNotFoundError(f"config file not found: {path}")
        return AppConfig()
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("config root must be an object")
    return config_from_dict(raw)
