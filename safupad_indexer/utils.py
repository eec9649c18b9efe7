import string
from typing import Any, Optional

SECONDS_PER_DAY = 86400
BASIS_POINTS = 10000

_HEX_DIGITS = frozenset(string.hexdigits)


def _is_hex(text: str) -> bool:
    return bool(text) and all(c in _HEX_DIGITS for c in text)


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42 or not _is_hex(addr[2:]):
        raise ValueError(f"invalid address format: {addr}")
    return addr


def normalize_tx_hash(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"tx hash must be a string, got: {type(value)}")
    value = value.strip().lower()
    if not value.startswith("0x") or len(value) != 66 or not _is_hex(value[2:]):
        raise ValueError(f"invalid tx hash format: {value}")
    return value


def parse_uint(value: Any) -> int:
    """Parse an unsigned integer from int, decimal string or 0x-hex string."""
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer amount")
    if isinstance(value, int):
        out = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty integer string")
        # plain digits only: no sign, underscores or non-ascii numerals
        if text.lower().startswith("0x"):
            if not _is_hex(text[2:]):
                raise ValueError(f"invalid hex integer: {value!r}")
            out = int(text[2:], 16)
        elif text.isascii() and text.isdigit():
            out = int(text, 10)
        else:
            raise ValueError(f"invalid decimal integer: {value!r}")
    else:
        raise ValueError(f"unsupported integer value: {value!r}")
    if out < 0:
        raise ValueError(f"unsigned value is negative: {out}")
    return out


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0"}:
        return value.strip().lower() in {"true", "1"}
    raise ValueError(f"unsupported boolean value: {value!r}")


def uint_to_str(v: Optional[int]) -> Optional[str]:
    if v is None:
        return None
    return str(int(v))


def composite_id(*parts: str) -> str:
    return "-".join(str(p).lower() for p in parts)


def trade_id(tx_hash: str, log_index: int) -> str:
    return f"{tx_hash.lower()}-{int(log_index)}"


def day_bucket(timestamp: int) -> int:
    return int(timestamp) // SECONDS_PER_DAY


def compute_fee(amount: int, fee_rate: int) -> int:
    # fee_rate is expressed in basis points; truncating division
    return amount * fee_rate // BASIS_POINTS
