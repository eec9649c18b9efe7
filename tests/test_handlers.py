from safupad_indexer.handlers import ARITHMETIC, LAUNCH_STATE, MISSING, TERMINAL
from safupad_indexer.models import PLATFORM_STATS_ID
from safupad_indexer.utils import composite_id, day_bucket, trade_id

from .conftest import (
    BUYER,
    BUYER_2,
    CONTRIBUTOR,
    CREATOR,
    FOUNDER,
    START_TS,
    TOKEN,
    TOKEN_2,
    bought,
    pool_created,
    project_launch,
    sold,
)

HOLDER_ID = composite_id(TOKEN, BUYER)
FEES_ID = composite_id(TOKEN, CREATOR)
CONTRIBUTION_ID = composite_id(TOKEN, CONTRIBUTOR)


def apply_all(applier, events):
    for event in events:
        applier.apply(event)


def issue_kinds(storage):
    return [i["kind"] for i in storage.list_issues()]


class TestPoolTrading:
    def test_buy_then_sell(self, storage, applier, log):
        created = pool_created(log)
        buy = bought(log, bnb=10, tokens=90, fee_rate=300)
        sell = sold(log, bnb=8, tokens=50)
        apply_all(applier, [created, buy, sell])

        pool = storage.get_entity("Pool", TOKEN)
        assert pool["total_volume"] == "18"
        assert pool["total_buys"] == "1"
        assert pool["total_sells"] == "1"
        assert pool["current_price"] == "8"
        assert pool["creator"] == CREATOR

        holder = storage.get_entity("TokenHolder", HOLDER_ID)
        assert holder["balance"] == "40"
        assert holder["total_bought"] == "90"
        assert holder["total_sold"] == "50"
        assert holder["first_buy_timestamp"] == buy.block_timestamp
        assert holder["last_activity_timestamp"] == sell.block_timestamp

        buy_trade = storage.get_entity("Trade", trade_id(buy.tx_hash, buy.log_index))
        assert buy_trade["is_buy"] is True
        assert buy_trade["total_fee"] == "0"
        assert buy_trade["pool"] == TOKEN

        stats = storage.get_entity("PlatformStats", PLATFORM_STATS_ID)
        assert stats["total_volume"] == "18"
        assert stats["last_updated"] == sell.block_timestamp
        assert issue_kinds(storage) == []

    def test_fee_uses_basis_points(self, storage, applier, log):
        apply_all(applier, [pool_created(log), bought(log, bnb=10_000, tokens=1, fee_rate=250)])
        stats = storage.get_entity("PlatformStats", PLATFORM_STATS_ID)
        assert stats["total_fees"] == "250"
        daily = storage.get_entity("DailyStats", str(day_bucket(log.timestamp)))
        assert daily["fees"] == "250"
        assert daily["trade_count"] == "1"

    def test_sell_above_balance_is_reported(self, storage, applier, log):
        created = pool_created(log)
        buy = bought(log, bnb=10, tokens=40)
        oversell = sold(log, bnb=9, tokens=41)
        apply_all(applier, [created, buy, oversell])

        holder = storage.get_entity("TokenHolder", HOLDER_ID)
        assert holder["balance"] == "40"
        assert holder["total_sold"] == "0"

        issues = storage.list_issues()
        assert [i["kind"] for i in issues] == [ARITHMETIC]
        assert issues[0]["entity_id"] == HOLDER_ID
        assert issues[0]["tx_hash"] == oversell.tx_hash

        # the trade itself still happened on chain
        assert storage.get_entity("Trade", trade_id(oversell.tx_hash, oversell.log_index)) is not None
        assert storage.get_checkpoint() == oversell.position

    def test_sell_by_unknown_holder_does_not_create_one(self, storage, applier, log):
        apply_all(applier, [pool_created(log), sold(log, bnb=1, tokens=1, seller=BUYER_2)])
        assert storage.get_entity("TokenHolder", composite_id(TOKEN, BUYER_2)) is None
        assert issue_kinds(storage) == [ARITHMETIC]

    def test_trade_on_unknown_pool(self, storage, applier, log):
        trade = bought(log, bnb=10, tokens=90, token=TOKEN_2)
        applier.apply(trade)

        assert issue_kinds(storage) == [MISSING]
        assert storage.get_entity("Trade", trade_id(trade.tx_hash, trade.log_index)) is None
        assert storage.get_entity("PlatformStats", PLATFORM_STATS_ID) is None
        assert storage.get_checkpoint() == trade.position

    def test_graduation_is_terminal(self, storage, applier, log):
        apply_all(
            applier,
            [
                pool_created(log),
                log.add("PoolGraduated", token=TOKEN, finalMarketCap=5000, bnbForPancakeSwap=900),
                log.add("PoolGraduated", token=TOKEN, finalMarketCap=7000, bnbForPancakeSwap=1),
            ],
        )
        pool = storage.get_entity("Pool", TOKEN)
        assert pool["graduated"] is True
        assert pool["active"] is False
        assert pool["graduation_market_cap"] == "5000"
        assert issue_kinds(storage) == [TERMINAL]

    def test_duplicate_pool_creation(self, storage, applier, log):
        apply_all(applier, [pool_created(log), pool_created(log, initialLiquidity=999)])
        assert storage.get_entity("Pool", TOKEN)["bnb_reserve"] == "100"
        assert issue_kinds(storage) == [TERMINAL]


class TestCreatorFees:
    def test_pool_creation_sets_claim_baseline(self, storage, applier, log):
        created = pool_created(log)
        applier.apply(created)
        fees = storage.get_entity("CreatorFees", FEES_ID)
        assert fees["last_claim_time"] == created.block_timestamp
        assert fees["claim_count"] == "0"

    def test_claim_resets_accumulated(self, storage, applier, log):
        pool = pool_created(log)
        first = log.add("CreatorFeesClaimed", token=TOKEN, creator=CREATOR, amount=70)
        second = log.add("CreatorFeesClaimed", token=TOKEN, creator=CREATOR, amount=30)
        apply_all(applier, [pool, first, second])

        fees = storage.get_entity("CreatorFees", FEES_ID)
        assert fees["accumulated_fees"] == "0"
        assert fees["total_claimed"] == "100"
        assert fees["claim_count"] == "2"
        assert fees["last_claim_time"] == second.block_timestamp

    def test_claim_without_pool(self, storage, applier, log):
        applier.apply(log.add("CreatorFeesClaimed", token=TOKEN, creator=CREATOR, amount=1))
        assert issue_kinds(storage) == [MISSING]
        assert storage.get_entity("CreatorFees", FEES_ID) is None


class TestLaunches:
    def contribute(self, log, amount, contributor=CONTRIBUTOR):
        return log.add("ContributionMade", token=TOKEN, contributor=contributor, amount=amount)

    def test_contributions_accumulate(self, storage, applier, log):
        apply_all(applier, [project_launch(log), self.contribute(log, 5), self.contribute(log, 5)])

        contribution = storage.get_entity("Contribution", CONTRIBUTION_ID)
        assert contribution["amount"] == "10"
        assert contribution["status"] == "PENDING"
        assert contribution["claimed"] is False
        assert contribution["launch"] == TOKEN

        launch = storage.get_entity("Launch", TOKEN)
        assert launch["total_raised"] == "10"

        stats = storage.get_entity("PlatformStats", PLATFORM_STATS_ID)
        assert stats["total_raised"] == "10"
        assert stats["total_launches"] == "1"
        assert stats["total_project_raises"] == "1"

    def test_refund_after_claim_is_rejected(self, storage, applier, log):
        apply_all(
            applier,
            [
                project_launch(log),
                self.contribute(log, 10),
                log.add("RaiseCompleted", token=TOKEN, totalRaised=10),
                log.add("ContributorTokensClaimed", token=TOKEN, contributor=CONTRIBUTOR, amount=1000),
                log.add("RefundClaimed", token=TOKEN, contributor=CONTRIBUTOR, amount=10),
            ],
        )
        contribution = storage.get_entity("Contribution", CONTRIBUTION_ID)
        assert contribution["status"] == "CLAIMED_TOKENS"
        assert contribution["claimed_amount"] == "1000"
        assert contribution["refunded_amount"] == "0"
        assert issue_kinds(storage) == [TERMINAL]

    def test_failed_raise_and_refund(self, storage, applier, log):
        apply_all(
            applier,
            [
                project_launch(log),
                self.contribute(log, 4),
                log.add("RaiseFailed", token=TOKEN, totalRaised=4),
                log.add("RefundClaimed", token=TOKEN, contributor=CONTRIBUTOR, amount=4),
            ],
        )
        launch = storage.get_entity("Launch", TOKEN)
        assert launch["raise_failed"] is True
        assert launch["raise_completed"] is False
        contribution = storage.get_entity("Contribution", CONTRIBUTION_ID)
        assert contribution["status"] == "REFUNDED"
        assert contribution["refunded_amount"] == "4"
        assert contribution["claimed"] is True

    def test_contribution_after_failed_raise(self, storage, applier, log):
        apply_all(
            applier,
            [project_launch(log), log.add("RaiseFailed", token=TOKEN), self.contribute(log, 3)],
        )
        assert issue_kinds(storage) == [LAUNCH_STATE]
        assert storage.get_entity("Contribution", CONTRIBUTION_ID) is None
        assert storage.get_entity("Launch", TOKEN)["total_raised"] == "0"

    def test_contribution_to_unknown_launch(self, storage, applier, log):
        applier.apply(self.contribute(log, 3))
        assert issue_kinds(storage) == [MISSING]
        assert storage.get_entity("Contribution", CONTRIBUTION_ID) is None

    def test_raise_completion_and_graduation(self, storage, applier, log):
        events = [project_launch(log), self.contribute(log, 60)]
        completed = log.add("RaiseCompleted", token=TOKEN, totalRaised=60)
        events += [
            completed,
            log.add("FounderTokensClaimed", token=TOKEN, founder=FOUNDER, amount=11),
            log.add("RaisedFundsClaimed", token=TOKEN, founder=FOUNDER, amount=6),
            log.add("GraduatedToPancakeSwap", token=TOKEN, bnbForLiquidity=30, tokensForLiquidity=400),
            log.add("TransfersEnabled", token=TOKEN),
        ]
        apply_all(applier, events)

        launch = storage.get_entity("Launch", TOKEN)
        assert launch["raise_completed"] is True
        assert launch["graduated_to_pancakeswap"] is True
        assert launch["liquidity_added"] is True
        assert launch["liquidity_bnb"] == "30"
        assert launch["liquidity_tokens"] == "400"
        assert launch["founder_tokens_claimed"] == "11"
        assert launch["raised_funds_claimed"] == "6"
        assert launch["vesting_start_time"] == completed.block_timestamp

        stats = storage.get_entity("PlatformStats", PLATFORM_STATS_ID)
        assert stats["total_graduated"] == "1"
        assert issue_kinds(storage) == []
        assert storage.count_applied_events() == len(events)

    def test_graduation_before_raise_completion(self, storage, applier, log):
        apply_all(
            applier,
            [
                project_launch(log),
                log.add("GraduatedToPancakeSwap", token=TOKEN, bnbForLiquidity=1, tokensForLiquidity=1),
            ],
        )
        assert issue_kinds(storage) == [LAUNCH_STATE]
        assert storage.get_entity("Launch", TOKEN)["graduated_to_pancakeswap"] is False
        assert storage.get_entity("PlatformStats", PLATFORM_STATS_ID)["total_graduated"] == "0"

    def test_instant_launch(self, storage, applier, log):
        apply_all(
            applier,
            [
                log.add("InstantLaunchCreated", token=TOKEN, founder=FOUNDER, totalSupply=1000, burnLP=True),
                project_launch(log, token=TOKEN_2, launchType=1),
            ],
        )
        instant = storage.get_entity("Launch", TOKEN)
        assert instant["launch_type"] == "INSTANT_LAUNCH"
        assert instant["raise_completed"] is True
        assert instant["liquidity_added"] is True
        assert instant["burn_lp"] is True
        assert storage.get_entity("Launch", TOKEN_2)["launch_type"] == "INSTANT_LAUNCH"

        stats = storage.get_entity("PlatformStats", PLATFORM_STATS_ID)
        assert stats["total_launches"] == "2"
        assert stats["total_instant_launches"] == "2"
        assert stats["total_project_raises"] == "0"

    def test_duplicate_launch(self, storage, applier, log):
        apply_all(applier, [project_launch(log), project_launch(log, totalSupply=5)])
        assert storage.get_entity("Launch", TOKEN)["total_supply"] == "1000000000"
        assert issue_kinds(storage) == [TERMINAL]
        assert storage.get_entity("PlatformStats", PLATFORM_STATS_ID)["total_launches"] == "1"


def test_launch_touches_daily_stats(storage, applier, log):
    event = project_launch(log)
    applier.apply(event)
    daily = storage.get_entity("DailyStats", str(day_bucket(START_TS)))
    assert daily["trade_count"] == "0"
    assert daily["volume"] == "0"
    assert daily["date"] == day_bucket(START_TS) * 86400


def test_instant_launch_leaves_daily_stats_alone(storage, applier, log):
    applier.apply(log.add("InstantLaunchCreated", token=TOKEN, founder=FOUNDER, totalSupply=1))
    assert storage.get_entity("DailyStats", str(day_bucket(START_TS))) is None
    assert storage.get_entity("PlatformStats", PLATFORM_STATS_ID)["total_instant_launches"] == "1"


def test_launch_created_with_instant_type_counts_as_instant(storage, applier, log):
    applier.apply(project_launch(log, launchType=1))
    stats = storage.get_entity("PlatformStats", PLATFORM_STATS_ID)
    assert stats["total_launches"] == "1"
    assert stats["total_instant_launches"] == "1"
    assert stats["total_project_raises"] == "0"
