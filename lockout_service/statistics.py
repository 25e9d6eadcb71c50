import logging
import threading
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta

from cachetools import TTLCache

from lockout_service.errors import StatisticsUnavailable
from lockout_service.models import AuditEventType, format_duration, utcnow
from lockout_service.policy import Severity, severity_of

logger = logging.getLogger(__name__)

RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

UNLOCK_EVENTS = {AuditEventType.UNLOCK, AuditEventType.ADMIN_UNLOCK, AuditEventType.BULK_UNLOCK}


def _duration_minutes(entry) -> float | None:
    try:
        return int(entry.detail) / 60
    except (TypeError, ValueError):
        return None


def _percentage(part: int, whole: int) -> float:
    return round(100 * part / whole, 1) if whole else 0.0


def _average(values) -> float:
    values = [v for v in values if v is not None]
    return round(sum(values) / len(values), 1) if values else 0.0


def rank_most_affected(lockouts, limit: int = 10) -> list[dict]:
    """Accounts by lockout count, then most recent lockout, then account id."""
    counts: Counter = Counter()
    last_seen: dict[str, datetime] = {}
    for entry in lockouts:
        if entry.account_id is None:
            continue
        counts[entry.account_id] += 1
        if entry.account_id not in last_seen or entry.timestamp > last_seen[entry.account_id]:
            last_seen[entry.account_id] = entry.timestamp

    ranked = sorted(counts, key=lambda a: (-counts[a], -last_seen[a].timestamp(), a))
    return [
        {"account_id": account_id, "lockout_count": counts[account_id], "last_lockout": last_seen[account_id]}
        for account_id in ranked[:limit]
    ]


class StatisticsAggregator:
    def __init__(self, ledger, policies, clock=utcnow, cache_ttl: float = 30, max_workers: int = 2, top_accounts: int = 10):
        self.ledger = ledger
        self.policies = policies
        self.clock = clock
        self.top_accounts = top_accounts
        self._cache = TTLCache(maxsize=len(RANGES), ttl=cache_ttl)
        self._last_good: dict[str, dict] = {}
        self._in_flight: dict[str, tuple] = {}
        self._generation = 0
        self._cache_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stats")

    def get(self, range_key: str = "30d", timeout: float | None = None) -> dict:
        if range_key not in RANGES:
            raise ValueError(f"Unsupported range {range_key!r}; expected one of {', '.join(RANGES)}")

        with self._cache_lock:
            cached = self._cache.get(range_key)
            if cached is not None:
                return cached
            # one computation per range at a time; later callers wait on the same future
            entry = self._in_flight.get(range_key)
            if entry is None or entry[0] != self._generation:
                future = self._executor.submit(self._refresh, range_key, self._generation)
                self._in_flight[range_key] = (self._generation, future)
            else:
                future = entry[1]

        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            with self._cache_lock:
                stale = self._last_good.get(range_key)
            if stale is None:
                raise StatisticsUnavailable(f"Statistics for {range_key} not ready within {timeout}s")
            logger.warning("Statistics for %s timed out, serving stale result", range_key)
            return {**stale, "stale": True}

    def _refresh(self, range_key: str, generation: int) -> dict:
        try:
            result = self.compute(range_key)
            with self._cache_lock:
                if generation == self._generation:
                    self._cache[range_key] = result
                self._last_good[range_key] = result
            return result
        finally:
            with self._cache_lock:
                entry = self._in_flight.get(range_key)
                if entry is not None and entry[0] == generation:
                    del self._in_flight[range_key]

    def invalidate(self) -> None:
        with self._cache_lock:
            self._generation += 1
            self._cache.clear()

    def compute(self, range_key: str) -> dict:
        now = self.clock()
        range_start = now - RANGES[range_key]
        month_start = now - timedelta(days=30)
        entries = self.ledger.audit_entries(since=min(range_start, month_start))
        records = self.ledger.list_records()
        currently_locked = sum(1 for record in records if record.is_locked(now))

        lockouts_all = [e for e in entries if e.event_type == AuditEventType.LOCKOUT]
        lockouts = [e for e in lockouts_all if e.timestamp >= range_start]
        unlocks = [e for e in entries if e.event_type in UNLOCK_EVENTS and e.timestamp >= range_start]

        return {
            "range": range_key,
            "generated_at": now,
            "stale": False,
            "overview": self._overview(now, lockouts_all, lockouts, unlocks, currently_locked),
            "trends": self._trends(range_start, now, lockouts, unlocks),
            "hourly_distribution": self._hourly(lockouts, unlocks),
            "reason_distribution": self._reasons(lockouts),
            "severity_distribution": self._severities(records),
            "most_affected_accounts": self._most_affected(lockouts, records),
            "attempt_statistics": self._attempts(records),
            "lockout_levels": self._levels(),
        }

    def _overview(self, now, lockouts_all, lockouts, unlocks, currently_locked) -> dict:
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = now - timedelta(days=7)
        month_start = now - timedelta(days=30)

        reasons = Counter(e.reason for e in lockouts if e.reason)
        most_common_reason = min(reasons, key=lambda r: (-reasons[r], r)) if reasons else None
        hours = Counter(e.timestamp.hour for e in lockouts)
        peak_hour = min(hours, key=lambda h: (-hours[h], h)) if hours else None
        per_account = Counter(e.account_id for e in lockouts if e.account_id)

        return {
            "total_lockouts_today": sum(1 for e in lockouts_all if e.timestamp >= day_start),
            "total_lockouts_week": sum(1 for e in lockouts_all if e.timestamp >= week_start),
            "total_lockouts_month": sum(1 for e in lockouts_all if e.timestamp >= month_start),
            "average_lockout_duration": _average(_duration_minutes(e) for e in lockouts),
            "most_common_reason": most_common_reason,
            "peak_lockout_hour": peak_hour,
            "repeat_offenders": sum(1 for count in per_account.values() if count >= 2),
            "successful_unlocks": len(unlocks),
            "unlock_rate": min(100.0, _percentage(len(unlocks), len(lockouts))),
            "currently_locked": currently_locked,
        }

    @staticmethod
    def _trends(range_start, now, lockouts, unlocks) -> list[dict]:
        buckets = {}
        day = range_start.date()
        while day <= now.date():
            buckets[day] = {"date": day.isoformat(), "lockouts": 0, "unlocks": 0}
            day += timedelta(days=1)
        for key, events in (("lockouts", lockouts), ("unlocks", unlocks)):
            for entry in events:
                bucket = buckets.get(entry.timestamp.date())
                if bucket is not None:
                    bucket[key] += 1
        return list(buckets.values())

    @staticmethod
    def _hourly(lockouts, unlocks) -> list[dict]:
        buckets = [{"hour": hour, "lockouts": 0, "unlocks": 0} for hour in range(24)]
        for entry in lockouts:
            buckets[entry.timestamp.hour]["lockouts"] += 1
        for entry in unlocks:
            buckets[entry.timestamp.hour]["unlocks"] += 1
        return buckets

    @staticmethod
    def _reasons(lockouts) -> list[dict]:
        grouped = defaultdict(list)
        for entry in lockouts:
            grouped[entry.reason or "unknown"].append(entry)
        rows = [
            {
                "reason": reason,
                "count": len(items),
                "percentage": _percentage(len(items), len(lockouts)),
                "avg_duration": _average(_duration_minutes(e) for e in items),
            }
            for reason, items in grouped.items()
        ]
        return sorted(rows, key=lambda row: (-row["count"], row["reason"]))

    @staticmethod
    def _attempts(records) -> dict:
        logins = [r.failed_login_attempts for r in records if r.failed_login_attempts > 0]
        changes = [r.failed_password_change_attempts for r in records if r.failed_password_change_attempts > 0]
        return {
            "avg_failed_login_attempts": _average(logins),
            "max_failed_login_attempts": max(logins, default=0),
            "users_with_failed_logins": len(logins),
            "avg_password_change_attempts": _average(changes),
            "max_password_change_attempts": max(changes, default=0),
            "users_with_failed_password_changes": len(changes),
        }

    def _levels(self) -> dict:
        return {
            f"level_{tier.tier_index}": f"{tier.attempt_threshold} attempts: {format_duration(tier.lock_duration_minutes * 60)}"
            for tier in self.policies.get_policy().lockout_thresholds
        }

    def _severities(self, records) -> list[dict]:
        tiers = self.policies.get_policy().lockout_thresholds
        tracked = [record for record in records if record.total_attempts > 0]
        counts = Counter(severity_of(record.total_attempts, tiers) for record in tracked)
        return [
            {"level": level.value, "count": counts[level], "percentage": _percentage(counts[level], len(tracked))}
            for level in Severity
        ]

    def _most_affected(self, lockouts, records) -> list[dict]:
        ranked = rank_most_affected(lockouts, self.top_accounts)
        accounts = self.ledger.get_accounts(row["account_id"] for row in ranked)
        attempts = {record.account_id: record.total_attempts for record in records}
        for row in ranked:
            account = accounts.get(row["account_id"])
            row["name"] = account.name if account else None
            row["email"] = account.email if account else None
            row["total_attempts"] = attempts.get(row["account_id"], 0)
        return ranked

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
