import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Tuple

from .errors import DecodeError
from .utils import normalize_address, normalize_tx_hash, parse_bool, parse_uint

ADDRESS = "address"
UINT = "uint"
BOOL = "bool"

_PARSERS: Dict[str, Callable[[Any], Any]] = {
    ADDRESS: normalize_address,
    UINT: parse_uint,
    BOOL: parse_bool,
}

# kind -> {param: (type, required)}; optional params default to zero / False
EVENT_SCHEMAS: Dict[str, Dict[str, Tuple[str, bool]]] = {
    "PoolCreated": {
        "token": (ADDRESS, True),
        "creator": (ADDRESS, True),
        "initialLiquidity": (UINT, True),
        "tradableTokens": (UINT, True),
        "reservedTokens": (UINT, True),
        "virtualBnbReserve": (UINT, True),
        "launchBlock": (UINT, True),
        "graduationBnbThreshold": (UINT, True),
    },
    "TokensBought": {
        "token": (ADDRESS, True),
        "buyer": (ADDRESS, True),
        "bnbAmount": (UINT, True),
        "tokensReceived": (UINT, True),
        "currentPrice": (UINT, True),
        "feeRate": (UINT, True),
    },
    "TokensSold": {
        "token": (ADDRESS, True),
        "seller": (ADDRESS, True),
        "tokensAmount": (UINT, True),
        "bnbReceived": (UINT, True),
        "currentPrice": (UINT, True),
        "feeRate": (UINT, True),
    },
    "PoolGraduated": {
        "token": (ADDRESS, True),
        "finalMarketCap": (UINT, True),
        "bnbForPancakeSwap": (UINT, True),
    },
    "CreatorFeesClaimed": {
        "token": (ADDRESS, True),
        "creator": (ADDRESS, True),
        "amount": (UINT, True),
    },
    "LaunchCreated": {
        "token": (ADDRESS, True),
        "founder": (ADDRESS, True),
        "totalSupply": (UINT, True),
        "launchType": (UINT, True),
        "raiseTargetBNB": (UINT, False),
        "raiseMaxBNB": (UINT, False),
        "deadline": (UINT, False),
        "burnLP": (BOOL, False),
    },
    "InstantLaunchCreated": {
        "token": (ADDRESS, True),
        "founder": (ADDRESS, True),
        "totalSupply": (UINT, True),
        "burnLP": (BOOL, False),
    },
    "ContributionMade": {
        "token": (ADDRESS, True),
        "contributor": (ADDRESS, True),
        "amount": (UINT, True),
    },
    "RaiseCompleted": {
        "token": (ADDRESS, True),
        "totalRaised": (UINT, True),
    },
    "RaiseFailed": {
        "token": (ADDRESS, True),
        "totalRaised": (UINT, False),
    },
    "ContributorTokensClaimed": {
        "token": (ADDRESS, True),
        "contributor": (ADDRESS, True),
        "amount": (UINT, False),
    },
    "RefundClaimed": {
        "token": (ADDRESS, True),
        "contributor": (ADDRESS, True),
        "amount": (UINT, False),
    },
    "FounderTokensClaimed": {
        "token": (ADDRESS, True),
        "founder": (ADDRESS, False),
        "amount": (UINT, True),
    },
    "RaisedFundsClaimed": {
        "token": (ADDRESS, True),
        "founder": (ADDRESS, False),
        "amount": (UINT, True),
    },
    "GraduatedToPancakeSwap": {
        "token": (ADDRESS, True),
        "bnbForLiquidity": (UINT, True),
        "tokensForLiquidity": (UINT, True),
    },
    "TransfersEnabled": {
        "token": (ADDRESS, True),
        "timestamp": (UINT, False),
    },
}

_DEFAULTS = {UINT: 0, BOOL: False, ADDRESS: None}


@dataclass(frozen=True)
class ChainEvent:
    kind: str
    address: str
    tx_hash: str
    log_index: int
    block_number: int
    block_timestamp: int
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def event_id(self) -> str:
        return f"{self.tx_hash}-{self.log_index}"

    def to_payload(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for key, value in self.params.items():
            if isinstance(value, int) and not isinstance(value, bool):
                params[key] = str(value)
            else:
                params[key] = value
        return {
            "kind": self.kind,
            "address": self.address,
            "txHash": self.tx_hash,
            "logIndex": self.log_index,
            "blockNumber": self.block_number,
            "blockTimestamp": self.block_timestamp,
            "params": params,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, sort_keys=True)


def decode_event(payload: Any) -> ChainEvent:
    """Validate a decoded log payload and coerce its parameters.

    Raises DecodeError for unknown kinds, missing fields or values that do not
    fit their declared type.
    """
    if not isinstance(payload, dict):
        raise DecodeError(f"event payload must be an object, got {type(payload).__name__}")
    kind = payload.get("kind")
    schema = EVENT_SCHEMAS.get(kind) if isinstance(kind, str) else None
    if schema is None:
        raise DecodeError(f"unknown event kind: {kind!r}", payload)

    try:
        address = normalize_address(payload["address"])
        tx_hash = normalize_tx_hash(payload["txHash"])
        log_index = parse_uint(payload["logIndex"])
        block_number = parse_uint(payload["blockNumber"])
        block_timestamp = parse_uint(payload["blockTimestamp"])
    except KeyError as e:
        raise DecodeError(f"{kind}: missing envelope field {e.args[0]}", payload) from e
    except ValueError as e:
        raise DecodeError(f"{kind}: invalid envelope: {e}", payload) from e

    raw_params = payload.get("params") or {}
    if not isinstance(raw_params, dict):
        raise DecodeError(f"{kind}: params must be an object", payload)

    params: Dict[str, Any] = {}
    for name, (ptype, required) in schema.items():
        if name not in raw_params or raw_params[name] is None:
            if required:
                raise DecodeError(f"{kind}: missing param {name}", payload)
            params[name] = _DEFAULTS[ptype]
            continue
        try:
            params[name] = _PARSERS[ptype](raw_params[name])
        except ValueError as e:
            raise DecodeError(f"{kind}: invalid param {name}: {e}", payload) from e

    return ChainEvent(
        kind=kind,
        address=address,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        block_timestamp=block_timestamp,
        params=params,
    )


def decode_json_line(line: str) -> ChainEvent:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid json: {e}", {"raw": line}) from e
    return decode_event(payload)
