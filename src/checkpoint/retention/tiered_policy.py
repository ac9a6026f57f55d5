"""Time Machine style tiered retention.

    age < hourly window     hourly   keep every version
    age < daily window      daily    keep N per calendar day
    age < weekly window     weekly   keep N per ISO week
    age < monthly window    monthly  keep N per calendar month
    older                   expired  prune

N is ``versions_per_tier``; the most recent versions in a bucket are kept.
"""

from datetime import datetime

TIER_HOURLY = "hourly"
TIER_DAILY = "daily"
TIER_WEEKLY = "weekly"
TIER_MONTHLY = "monthly"
TIER_EXPIRED = "expired"

HOUR = 3600
DAY = 24 * HOUR
WEEK = 7 * DAY
MONTH = 30 * DAY


class TieredPolicy:

    def __init__(self, hourly_hours: int = 24, daily_days: int = 7,
                 weekly_weeks: int = 4, monthly_months: int = 12,
                 versions_per_tier: int = 1):
        if versions_per_tier < 1:
            raise ValueError("versions_per_tier must be at least 1")
        self.hourly_window = hourly_hours * HOUR
        self.daily_window = daily_days * DAY
        self.weekly_window = weekly_weeks * WEEK
        self.monthly_window = monthly_months * MONTH
        self.versions_per_tier = versions_per_tier

    def classify(self, age_seconds: float) -> str:
        if age_seconds < self.hourly_window:
            return TIER_HOURLY
        if age_seconds < self.daily_window:
            return TIER_DAILY
        if age_seconds < self.weekly_window:
            return TIER_WEEKLY
        if age_seconds < self.monthly_window:
            return TIER_MONTHLY
        return TIER_EXPIRED

    @staticmethod
    def bucket_key(tier: str, when: float):
        dt = datetime.fromtimestamp(when)
        if tier == TIER_DAILY:
            return (tier, dt.year, dt.month, dt.day)
        if tier == TIER_WEEKLY:
            iso = dt.isocalendar()
            return (tier, iso[0], iso[1])
        if tier == TIER_MONTHLY:
            return (tier, dt.year, dt.month)
        return (tier,)

    def prune_candidates(self, history, now: float) -> list:
        """Items of one logical file's history that fall outside the policy.

        ``history`` is an iterable of ``(item, timestamp)`` pairs.
        """
        prune = []
        buckets: dict[tuple, list] = {}
        for item, when in history:
            tier = self.classify(now - when)
            if tier == TIER_HOURLY:
                continue
            if tier == TIER_EXPIRED:
                prune.append(item)
                continue
            buckets.setdefault(self.bucket_key(tier, when), []).append((when, item))

        for members in buckets.values():
            members.sort(key=lambda m: m[0], reverse=True)
            prune.extend(item for _, item in members[self.versions_per_tier:])
        return prune
