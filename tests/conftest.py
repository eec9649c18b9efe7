import json
from typing import Any, Dict, List, Optional

import pytest

from safupad_indexer.events import ChainEvent, decode_event
from safupad_indexer.ingestor import EventApplier
from safupad_indexer.storage import Storage

TOKEN = "0x" + "11" * 20
TOKEN_2 = "0x" + "12" * 20
CREATOR = "0x" + "c0" * 20
BUYER = "0x" + "b0" * 20
BUYER_2 = "0x" + "b1" * 20
FOUNDER = "0x" + "f0" * 20
CONTRIBUTOR = "0x" + "a0" * 20
DEX = "0x" + "0d" * 20
MANAGER = "0x" + "0e" * 20

START_TS = 1_700_000_000

LAUNCHPAD_KINDS = {
    "LaunchCreated",
    "InstantLaunchCreated",
    "ContributionMade",
    "RaiseCompleted",
    "RaiseFailed",
    "ContributorTokensClaimed",
    "RefundClaimed",
    "FounderTokensClaimed",
    "RaisedFundsClaimed",
    "GraduatedToPancakeSwap",
    "TransfersEnabled",
}


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


class EventLog:
    """Builds decoded events with strictly increasing positions."""

    def __init__(self, start_block: int = 100, start_ts: int = START_TS):
        self.block = start_block
        self.timestamp = start_ts
        self.log_index = 0
        self.counter = 0
        self.events: List[ChainEvent] = []

    def payload(self, kind: str, params: Dict[str, Any], same_block: bool = False,
                ts: Optional[int] = None) -> Dict[str, Any]:
        if same_block and self.counter:
            self.log_index += 1
        elif self.counter:
            self.block += 1
            self.log_index = 0
            self.timestamp += 12
        if ts is not None:
            self.timestamp = ts
        self.counter += 1
        return {
            "kind": kind,
            "address": MANAGER if kind in LAUNCHPAD_KINDS else DEX,
            "txHash": tx(self.counter),
            "logIndex": self.log_index,
            "blockNumber": self.block,
            "blockTimestamp": self.timestamp,
            "params": params,
        }

    def add(self, kind: str, same_block: bool = False, ts: Optional[int] = None, **params: Any) -> ChainEvent:
        event = decode_event(self.payload(kind, params, same_block=same_block, ts=ts))
        self.events.append(event)
        return event

    def to_jsonl(self) -> str:
        return "".join(json.dumps(e.to_payload()) + "\n" for e in self.events)


def pool_created(log: EventLog, token: str = TOKEN, **overrides: Any) -> ChainEvent:
    params = dict(
        token=token,
        creator=CREATOR,
        initialLiquidity=100,
        tradableTokens=1000,
        reservedTokens=0,
        virtualBnbReserve=50,
        launchBlock=10,
        graduationBnbThreshold=1000,
    )
    params.update(overrides)
    return log.add("PoolCreated", **params)


def bought(log: EventLog, bnb: int, tokens: int, buyer: str = BUYER, token: str = TOKEN,
           price: int = 9, fee_rate: int = 300, **kw: Any) -> ChainEvent:
    return log.add(
        "TokensBought",
        token=token,
        buyer=buyer,
        bnbAmount=bnb,
        tokensReceived=tokens,
        currentPrice=price,
        feeRate=fee_rate,
        **kw,
    )


def sold(log: EventLog, bnb: int, tokens: int, seller: str = BUYER, token: str = TOKEN,
         price: int = 8, fee_rate: int = 300, **kw: Any) -> ChainEvent:
    return log.add(
        "TokensSold",
        token=token,
        seller=seller,
        bnbReceived=bnb,
        tokensAmount=tokens,
        currentPrice=price,
        feeRate=fee_rate,
        **kw,
    )


def project_launch(log: EventLog, token: str = TOKEN, **overrides: Any) -> ChainEvent:
    params = dict(
        token=token,
        founder=FOUNDER,
        totalSupply=1_000_000_000,
        launchType=0,
        raiseTargetBNB=50,
        raiseMaxBNB=100,
        deadline=START_TS + 72 * 3600,
        burnLP=False,
    )
    params.update(overrides)
    return log.add("LaunchCreated", **params)


@pytest.fixture
def storage():
    s = Storage(":memory:")
    yield s
    s.close()


@pytest.fixture
def applier(storage):
    return EventApplier(storage)


@pytest.fixture
def log():
    return EventLog()
