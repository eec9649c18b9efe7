"""Event handlers projecting launchpad and bonding-curve events onto entities.

Each handler receives a HandlerContext bound to one event and its unit of
work. Handlers never raise for data problems: a missing reference or a
violated invariant is recorded on the context as an Issue and the affected
mutation is skipped. Whatever the handler saved is committed together with
the issues.
"""

import logging
from typing import Callable, Dict, List, Optional

from . import aggregator
from .errors import (
    BalanceUnderflow,
    InvariantViolation,
    LaunchStateViolation,
    ReferencedEntityMissing,
    TerminalStateViolation,
)
from .events import ChainEvent
from .models import (
    Contribution,
    ContributionStatus,
    CreatorFees,
    Launch,
    LaunchType,
    Pool,
    TokenHolder,
    Trade,
)
from .storage import Issue, NotFound, UnitOfWork
from .utils import composite_id, compute_fee, trade_id

logger = logging.getLogger(__name__)

MISSING = "referenced_entity_missing"
ARITHMETIC = "arithmetic_invariant_violation"
TERMINAL = "terminal_state_violation"
LAUNCH_STATE = "launch_state_violation"


def issue_kind(exc: InvariantViolation) -> str:
    if isinstance(exc, BalanceUnderflow):
        return ARITHMETIC
    if isinstance(exc, TerminalStateViolation):
        return TERMINAL
    if isinstance(exc, LaunchStateViolation):
        return LAUNCH_STATE
    return ARITHMETIC


class HandlerContext:
    def __init__(self, uow: UnitOfWork, event: ChainEvent):
        self.uow = uow
        self.event = event
        self.issues: List[Issue] = []

    def missing(self, ref: NotFound) -> None:
        exc = ReferencedEntityMissing(ref.entity_type, ref.entity_id)
        self._report(
            Issue(
                kind=MISSING,
                message=f"{self.event.kind}: {exc}",
                entity_type=ref.entity_type,
                entity_id=ref.entity_id,
            )
        )

    def violation(self, exc: InvariantViolation, entity_type: str, entity_id: str) -> None:
        self._report(
            Issue(kind=issue_kind(exc), message=str(exc), entity_type=entity_type, entity_id=entity_id)
        )

    def _report(self, issue: Issue) -> None:
        self.issues.append(issue)
        logger.warning(
            "%s at block %s log %s (%s): %s",
            issue.kind,
            self.event.block_number,
            self.event.log_index,
            self.event.tx_hash,
            issue.message,
        )


Handler = Callable[[HandlerContext], None]


def handle_pool_created(ctx: HandlerContext) -> None:
    e = ctx.event
    p = e.params
    token = p["token"]
    existing = ctx.uow.load(Pool, token)
    if not isinstance(existing, NotFound):
        ctx.violation(TerminalStateViolation(f"pool {token} already exists"), Pool.ENTITY_TYPE, token)
        return

    ctx.uow.save(
        Pool(
            id=token,
            creator=p["creator"],
            bnb_reserve=p["initialLiquidity"],
            token_reserve=p["tradableTokens"],
            reserved_tokens=p["reservedTokens"],
            virtual_bnb_reserve=p["virtualBnbReserve"],
            launch_block=p["launchBlock"],
            graduation_bnb_threshold=p["graduationBnbThreshold"],
            created_at=e.block_timestamp,
        )
    )
    fees_id = composite_id(token, p["creator"])
    ctx.uow.save(
        CreatorFees(
            id=fees_id,
            token=token,
            creator=p["creator"],
            last_claim_time=e.block_timestamp,
        )
    )


def _record_trade(
    ctx: HandlerContext, is_buy: bool, trader: str, bnb_amount: int, token_amount: int
) -> None:
    e = ctx.event
    token = e.params["token"]
    price = e.params["currentPrice"]
    fee_rate = e.params["feeRate"]

    pool_ref = ctx.uow.load(Pool, token)
    if isinstance(pool_ref, NotFound):
        ctx.missing(pool_ref)
        return
    pool = pool_ref.entity

    total_fee = compute_fee(bnb_amount, fee_rate)
    ctx.uow.save(
        Trade(
            id=trade_id(e.tx_hash, e.log_index),
            pool=token,
            trader=trader,
            is_buy=is_buy,
            bnb_amount=bnb_amount,
            token_amount=token_amount,
            price=price,
            fee_rate=fee_rate,
            total_fee=total_fee,
            timestamp=e.block_timestamp,
            block_number=e.block_number,
            log_index=e.log_index,
            transaction_hash=e.tx_hash,
        )
    )

    pool.record_trade(is_buy, bnb_amount, price)
    ctx.uow.save(pool)

    holder_id = composite_id(token, trader)
    holder = ctx.uow.get_or_create(
        TokenHolder, holder_id, lambda: TokenHolder(id=holder_id, token=token, holder=trader)
    )
    try:
        if is_buy:
            holder.buy(token_amount, e.block_timestamp)
        else:
            holder.sell(token_amount, e.block_timestamp)
    except BalanceUnderflow as exc:
        ctx.violation(exc, TokenHolder.ENTITY_TYPE, holder_id)
    else:
        ctx.uow.save(holder)

    stats = aggregator.update_platform_stats(ctx.uow, e.block_timestamp)
    stats.total_volume += bnb_amount
    stats.total_fees += total_fee
    ctx.uow.save(stats)
    aggregator.update_daily_stats(ctx.uow, e.block_timestamp, bnb_amount, total_fee, 1)


def handle_tokens_bought(ctx: HandlerContext) -> None:
    p = ctx.event.params
    _record_trade(ctx, True, p["buyer"], p["bnbAmount"], p["tokensReceived"])


def handle_tokens_sold(ctx: HandlerContext) -> None:
    p = ctx.event.params
    _record_trade(ctx, False, p["seller"], p["bnbReceived"], p["tokensAmount"])


def handle_pool_graduated(ctx: HandlerContext) -> None:
    e = ctx.event
    ref = ctx.uow.load(Pool, e.params["token"])
    if isinstance(ref, NotFound):
        ctx.missing(ref)
        return
    pool = ref.entity
    try:
        pool.graduate(e.params["finalMarketCap"], e.params["bnbForPancakeSwap"], e.block_timestamp)
    except TerminalStateViolation as exc:
        ctx.violation(exc, Pool.ENTITY_TYPE, pool.id)
        return
    ctx.uow.save(pool)


def handle_creator_fees_claimed(ctx: HandlerContext) -> None:
    e = ctx.event
    fees_id = composite_id(e.params["token"], e.params["creator"])
    ref = ctx.uow.load(CreatorFees, fees_id)
    if isinstance(ref, NotFound):
        ctx.missing(ref)
        return
    fees = ref.entity
    fees.claim(e.params["amount"], e.block_timestamp)
    ctx.uow.save(fees)


def _create_launch(ctx: HandlerContext, launch: Launch) -> bool:
    e = ctx.event
    existing = ctx.uow.load(Launch, launch.id)
    if not isinstance(existing, NotFound):
        ctx.violation(
            TerminalStateViolation(f"launch {launch.id} already exists"), Launch.ENTITY_TYPE, launch.id
        )
        return False

    if launch.launch_type == LaunchType.INSTANT_LAUNCH:
        # no raise phase: liquidity goes straight to the bonding curve
        launch.raise_completed = True
        launch.liquidity_added = True
    ctx.uow.save(launch)

    stats = aggregator.update_platform_stats(ctx.uow, e.block_timestamp)
    stats.total_launches += 1
    if launch.launch_type == LaunchType.PROJECT_RAISE:
        stats.total_project_raises += 1
    else:
        # LaunchCreated with a non-zero type code is counted here too, so the
        # two type counters always sum to total_launches
        stats.total_instant_launches += 1
    ctx.uow.save(stats)
    return True


def handle_launch_created(ctx: HandlerContext) -> None:
    e = ctx.event
    p = e.params
    created = _create_launch(
        ctx,
        Launch(
            id=p["token"],
            founder=p["founder"],
            launch_type=LaunchType.from_code(p["launchType"]),
            total_supply=p["totalSupply"],
            raise_target=p["raiseTargetBNB"],
            raise_max=p["raiseMaxBNB"],
            raise_deadline=p["deadline"],
            burn_lp=p["burnLP"],
            created_at=e.block_timestamp,
            created_at_block=e.block_number,
        ),
    )
    if created:
        # opens the day's bucket even though nothing was traded
        aggregator.update_daily_stats(ctx.uow, e.block_timestamp, 0, 0, 0)


def handle_instant_launch_created(ctx: HandlerContext) -> None:
    e = ctx.event
    p = e.params
    _create_launch(
        ctx,
        Launch(
            id=p["token"],
            founder=p["founder"],
            launch_type=LaunchType.INSTANT_LAUNCH,
            total_supply=p["totalSupply"],
            burn_lp=p["burnLP"],
            created_at=e.block_timestamp,
            created_at_block=e.block_number,
        ),
    )


def handle_contribution_made(ctx: HandlerContext) -> None:
    e = ctx.event
    token = e.params["token"]
    contributor = e.params["contributor"]
    amount = e.params["amount"]

    launch_ref = ctx.uow.load(Launch, token)
    if isinstance(launch_ref, NotFound):
        ctx.missing(launch_ref)
        return
    launch = launch_ref.entity

    contribution_id = composite_id(token, contributor)
    contribution = ctx.uow.get_or_create(
        Contribution,
        contribution_id,
        lambda: Contribution(
            id=contribution_id,
            launch=token,
            contributor=contributor,
            timestamp=e.block_timestamp,
            transaction_hash=e.tx_hash,
        ),
    )
    try:
        contribution.add(amount)
    except TerminalStateViolation as exc:
        ctx.violation(exc, Contribution.ENTITY_TYPE, contribution_id)
        return
    try:
        launch.add_contribution(amount)
    except LaunchStateViolation as exc:
        ctx.violation(exc, Launch.ENTITY_TYPE, token)
        return
    ctx.uow.save(contribution)
    ctx.uow.save(launch)

    stats = aggregator.update_platform_stats(ctx.uow, e.block_timestamp)
    stats.total_raised += amount
    ctx.uow.save(stats)


def _with_launch(ctx: HandlerContext, mutate: Callable[[Launch], None]) -> Optional[Launch]:
    ref = ctx.uow.load(Launch, ctx.event.params["token"])
    if isinstance(ref, NotFound):
        ctx.missing(ref)
        return None
    launch = ref.entity
    try:
        mutate(launch)
    except LaunchStateViolation as exc:
        ctx.violation(exc, Launch.ENTITY_TYPE, launch.id)
        return None
    ctx.uow.save(launch)
    return launch


def handle_raise_completed(ctx: HandlerContext) -> None:
    e = ctx.event
    _with_launch(ctx, lambda launch: launch.complete_raise(e.params["totalRaised"], e.block_timestamp))


def handle_raise_failed(ctx: HandlerContext) -> None:
    _with_launch(ctx, lambda launch: launch.fail_raise())


def _resolve_contribution(ctx: HandlerContext, status: ContributionStatus) -> None:
    e = ctx.event
    contribution_id = composite_id(e.params["token"], e.params["contributor"])
    ref = ctx.uow.load(Contribution, contribution_id)
    if isinstance(ref, NotFound):
        ctx.missing(ref)
        return
    contribution = ref.entity
    try:
        contribution.resolve(status, e.params["amount"])
    except TerminalStateViolation as exc:
        ctx.violation(exc, Contribution.ENTITY_TYPE, contribution_id)
        return
    ctx.uow.save(contribution)


def handle_contributor_tokens_claimed(ctx: HandlerContext) -> None:
    _resolve_contribution(ctx, ContributionStatus.CLAIMED_TOKENS)


def handle_refund_claimed(ctx: HandlerContext) -> None:
    _resolve_contribution(ctx, ContributionStatus.REFUNDED)


def handle_founder_tokens_claimed(ctx: HandlerContext) -> None:
    amount = ctx.event.params["amount"]

    def claim(launch: Launch) -> None:
        launch.founder_tokens_claimed += amount

    _with_launch(ctx, claim)


def handle_raised_funds_claimed(ctx: HandlerContext) -> None:
    amount = ctx.event.params["amount"]

    def claim(launch: Launch) -> None:
        launch.raised_funds_claimed += amount

    _with_launch(ctx, claim)


def handle_graduated_to_pancakeswap(ctx: HandlerContext) -> None:
    e = ctx.event
    launch = _with_launch(
        ctx,
        lambda launch: launch.graduate(e.params["bnbForLiquidity"], e.params["tokensForLiquidity"]),
    )
    if launch is None:
        return
    stats = aggregator.update_platform_stats(ctx.uow, e.block_timestamp)
    stats.total_graduated += 1
    ctx.uow.save(stats)


def handle_transfers_enabled(ctx: HandlerContext) -> None:
    logger.debug("transfers enabled for %s at block %s", ctx.event.params["token"], ctx.event.block_number)


HANDLERS: Dict[str, Handler] = {
    "PoolCreated": handle_pool_created,
    "TokensBought": handle_tokens_bought,
    "TokensSold": handle_tokens_sold,
    "PoolGraduated": handle_pool_graduated,
    "CreatorFeesClaimed": handle_creator_fees_claimed,
    "LaunchCreated": handle_launch_created,
    "InstantLaunchCreated": handle_instant_launch_created,
    "ContributionMade": handle_contribution_made,
    "RaiseCompleted": handle_raise_completed,
    "RaiseFailed": handle_raise_failed,
    "ContributorTokensClaimed": handle_contributor_tokens_claimed,
    "RefundClaimed": handle_refund_claimed,
    "FounderTokensClaimed": handle_founder_tokens_claimed,
    "RaisedFundsClaimed": handle_raised_funds_claimed,
    "GraduatedToPancakeSwap": handle_graduated_to_pancakeswap,
    "TransfersEnabled": handle_transfers_enabled,
}
