from .models import PLATFORM_STATS_ID, DailyStats, PlatformStats
from .storage import UnitOfWork
from .utils import SECONDS_PER_DAY, day_bucket


def get_platform_stats(uow: UnitOfWork) -> PlatformStats:
    return uow.get_or_create(PlatformStats, PLATFORM_STATS_ID, PlatformStats)


def get_daily_stats(uow: UnitOfWork, timestamp: int) -> DailyStats:
    day = day_bucket(timestamp)
    return uow.get_or_create(
        DailyStats,
        str(day),
        lambda: DailyStats(id=str(day), day=day, date=day * SECONDS_PER_DAY),
    )


def update_platform_stats(uow: UnitOfWork, timestamp: int) -> PlatformStats:
    """Get-or-create the platform singleton and stamp it.

    Callers add their own deltas to the returned record and save it.
    """
    stats = get_platform_stats(uow)
    stats.last_updated = max(stats.last_updated, int(timestamp))
    uow.save(stats)
    return stats


def update_daily_stats(uow: UnitOfWork, timestamp: int, volume: int, fees: int, trade_count: int) -> DailyStats:
    stats = get_daily_stats(uow, timestamp)
    stats.volume += volume
    stats.fees += fees
    stats.trade_count += trade_count
    uow.save(stats)
    return stats
