"""Derived entities maintained by the indexer.

Every amount is an unsigned integer in the chain's smallest unit. Amounts are
kept as Python ints in memory and serialized as decimal strings so that no
precision is lost in JSON or sqlite.
"""

import enum
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Dict, FrozenSet, Optional, Type, TypeVar

from .errors import BalanceUnderflow, LaunchStateViolation, TerminalStateViolation
from .utils import uint_to_str

E = TypeVar("E", bound="Entity")

PLATFORM_STATS_ID = "platform"


class LaunchType(str, enum.Enum):
    PROJECT_RAISE = "PROJECT_RAISE"
    INSTANT_LAUNCH = "INSTANT_LAUNCH"

    @classmethod
    def from_code(cls, code: int) -> "LaunchType":
        return cls.PROJECT_RAISE if int(code) == 0 else cls.INSTANT_LAUNCH


class ContributionStatus(str, enum.Enum):
    PENDING = "PENDING"
    CLAIMED_TOKENS = "CLAIMED_TOKENS"
    REFUNDED = "REFUNDED"


class Entity:
    ENTITY_TYPE: ClassVar[str] = ""
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset()
    ENUM_FIELDS: ClassVar[Dict[str, Type[enum.Enum]]] = {}

    id: str

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        for key in self.UINT_FIELDS:
            out[key] = uint_to_str(out[key])
        for key in self.ENUM_FIELDS:
            out[key] = out[key].value
        return out

    @classmethod
    def from_dict(cls: Type[E], data: Dict[str, Any]) -> E:
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is not None and f.name in cls.UINT_FIELDS:
                value = int(value)
            elif value is not None and f.name in cls.ENUM_FIELDS:
                value = cls.ENUM_FIELDS[f.name](value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class Pool(Entity):
    ENTITY_TYPE: ClassVar[str] = "Pool"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "bnb_reserve",
            "token_reserve",
            "reserved_tokens",
            "virtual_bnb_reserve",
            "current_price",
            "market_cap",
            "graduation_market_cap",
            "bnb_for_pancakeswap",
            "launch_block",
            "graduation_bnb_threshold",
            "total_volume",
            "total_buys",
            "total_sells",
        }
    )

    id: str
    creator: str
    bnb_reserve: int
    token_reserve: int
    reserved_tokens: int
    virtual_bnb_reserve: int
    launch_block: int
    graduation_bnb_threshold: int
    created_at: int
    current_price: int = 0
    market_cap: int = 0
    graduation_market_cap: int = 0
    bnb_for_pancakeswap: int = 0
    burn_lp: bool = False
    active: bool = True
    graduated: bool = False
    total_volume: int = 0
    total_buys: int = 0
    total_sells: int = 0
    graduated_at: Optional[int] = None

    def record_trade(self, is_buy: bool, bnb_amount: int, price: int) -> None:
        self.total_volume += bnb_amount
        if is_buy:
            self.total_buys += 1
        else:
            self.total_sells += 1
        self.current_price = price

    def graduate(self, final_market_cap: int, bnb_for_pancakeswap: int, timestamp: int) -> None:
        if self.graduated:
            raise TerminalStateViolation(f"pool {self.id} already graduated at {self.graduated_at}")
        self.graduated = True
        self.active = False
        self.graduation_market_cap = final_market_cap
        self.bnb_for_pancakeswap = bnb_for_pancakeswap
        self.graduated_at = timestamp


@dataclass
class Trade(Entity):
    ENTITY_TYPE: ClassVar[str] = "Trade"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {"bnb_amount", "token_amount", "price", "fee_rate", "total_fee"}
    )

    id: str
    pool: str
    trader: str
    is_buy: bool
    bnb_amount: int
    token_amount: int
    price: int
    fee_rate: int
    total_fee: int
    timestamp: int
    block_number: int
    log_index: int
    transaction_hash: str


@dataclass
class TokenHolder(Entity):
    ENTITY_TYPE: ClassVar[str] = "TokenHolder"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"balance", "total_bought", "total_sold"})

    id: str
    token: str
    holder: str
    balance: int = 0
    total_bought: int = 0
    total_sold: int = 0
    first_buy_timestamp: Optional[int] = None
    last_activity_timestamp: Optional[int] = None

    def buy(self, amount: int, timestamp: int) -> None:
        self.balance += amount
        self.total_bought += amount
        if self.first_buy_timestamp is None:
            self.first_buy_timestamp = timestamp
        self.last_activity_timestamp = timestamp

    def sell(self, amount: int, timestamp: int) -> None:
        """Debit a sale. Raises BalanceUnderflow without touching the ledger."""
        if amount > self.balance:
            raise BalanceUnderflow(self.id, self.balance, amount)
        self.balance -= amount
        self.total_sold += amount
        self.last_activity_timestamp = timestamp


@dataclass
class CreatorFees(Entity):
    ENTITY_TYPE: ClassVar[str] = "CreatorFees"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {"accumulated_fees", "total_claimed", "claim_count"}
    )

    id: str
    token: str
    creator: str
    last_claim_time: int
    accumulated_fees: int = 0
    total_claimed: int = 0
    claim_count: int = 0

    def claim(self, amount: int, timestamp: int) -> None:
        self.total_claimed += amount
        self.claim_count += 1
        self.last_claim_time = timestamp
        self.accumulated_fees = 0


@dataclass
class Launch(Entity):
    ENTITY_TYPE: ClassVar[str] = "Launch"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "total_supply",
            "raise_target",
            "raise_max",
            "raise_deadline",
            "total_raised",
            "founder_tokens",
            "founder_tokens_claimed",
            "liquidity_bnb",
            "liquidity_tokens",
            "raised_funds_vesting",
            "raised_funds_claimed",
        }
    )
    ENUM_FIELDS: ClassVar[Dict[str, Type[enum.Enum]]] = {"launch_type": LaunchType}

    id: str
    founder: str
    launch_type: LaunchType
    total_supply: int
    created_at: int
    created_at_block: int
    raise_target: int = 0
    raise_max: int = 0
    raise_deadline: int = 0
    total_raised: int = 0
    founder_tokens: int = 0
    raise_completed: bool = False
    raise_failed: bool = False
    liquidity_added: bool = False
    graduated_to_pancakeswap: bool = False
    burn_lp: bool = False
    founder_tokens_claimed: int = 0
    liquidity_bnb: int = 0
    liquidity_tokens: int = 0
    raised_funds_vesting: int = 0
    raised_funds_claimed: int = 0
    vesting_start_time: Optional[int] = None

    @property
    def state(self) -> str:
        if self.graduated_to_pancakeswap:
            return "GRADUATED"
        if self.raise_failed:
            return "RAISE_FAILED"
        if self.raise_completed:
            return "RAISE_COMPLETED"
        return "CREATED"

    def add_contribution(self, amount: int) -> None:
        if self.state != "CREATED":
            raise LaunchStateViolation(
                f"contribution to launch {self.id} in state {self.state}"
            )
        self.total_raised += amount

    def complete_raise(self, final_total: int, timestamp: int) -> None:
        if self.state != "CREATED":
            raise LaunchStateViolation(f"raise completion for launch {self.id} in state {self.state}")
        self.raise_completed = True
        self.total_raised = final_total
        self.vesting_start_time = timestamp

    def fail_raise(self) -> None:
        if self.state != "CREATED":
            raise LaunchStateViolation(f"raise failure for launch {self.id} in state {self.state}")
        self.raise_completed = False
        self.raise_failed = True

    def graduate(self, liquidity_bnb: int, liquidity_tokens: int) -> None:
        if self.state != "RAISE_COMPLETED":
            raise LaunchStateViolation(f"graduation of launch {self.id} in state {self.state}")
        self.graduated_to_pancakeswap = True
        self.liquidity_added = True
        self.liquidity_bnb = liquidity_bnb
        self.liquidity_tokens = liquidity_tokens


@dataclass
class Contribution(Entity):
    ENTITY_TYPE: ClassVar[str] = "Contribution"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {"amount", "claimed_amount", "refunded_amount"}
    )
    ENUM_FIELDS: ClassVar[Dict[str, Type[enum.Enum]]] = {"status": ContributionStatus}

    id: str
    launch: str
    contributor: str
    timestamp: int
    transaction_hash: str
    amount: int = 0
    status: ContributionStatus = ContributionStatus.PENDING
    claimed_amount: int = 0
    refunded_amount: int = 0

    @property
    def claimed(self) -> bool:
        return self.status != ContributionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["claimed"] = self.claimed
        return out

    def add(self, amount: int) -> None:
        if self.claimed:
            raise TerminalStateViolation(
                f"contribution {self.id} already resolved as {self.status.value}"
            )
        self.amount += amount

    def resolve(self, status: ContributionStatus, amount: int) -> None:
        if status == ContributionStatus.PENDING:
            raise ValueError("cannot resolve a contribution back to PENDING")
        if self.claimed:
            raise TerminalStateViolation(
                f"contribution {self.id} already resolved as {self.status.value}, "
                f"refusing {status.value}"
            )
        self.status = status
        if status == ContributionStatus.CLAIMED_TOKENS:
            self.claimed_amount = amount
        else:
            self.refunded_amount = amount


@dataclass
class PlatformStats(Entity):
    ENTITY_TYPE: ClassVar[str] = "PlatformStats"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "total_volume",
            "total_fees",
            "total_launches",
            "total_project_raises",
            "total_instant_launches",
            "total_graduated",
            "total_raised",
        }
    )

    id: str = PLATFORM_STATS_ID
    total_volume: int = 0
    total_fees: int = 0
    total_launches: int = 0
    total_project_raises: int = 0
    total_instant_launches: int = 0
    total_graduated: int = 0
    total_raised: int = 0
    last_updated: int = 0


@dataclass
class DailyStats(Entity):
    ENTITY_TYPE: ClassVar[str] = "DailyStats"
    UINT_FIELDS: ClassVar[FrozenSet[str]] = frozenset({"volume", "fees", "trade_count"})

    id: str
    day: int
    date: int
    volume: int = 0
    fees: int = 0
    trade_count: int = 0


ENTITY_TYPES: Dict[str, Type[Entity]] = {
    cls.ENTITY_TYPE: cls
    for cls in (Pool, Trade, TokenHolder, CreatorFees, Launch, Contribution, PlatformStats, DailyStats)
}
