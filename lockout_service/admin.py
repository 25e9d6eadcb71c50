import logging
from datetime import timedelta

from lockout_service.errors import AccountNotFound
from lockout_service.models import AuditEventType, LockedAccount, LockedAccountsResponse, LockReason, UnlockResult, format_duration
from lockout_service.policy import severity_of

logger = logging.getLogger(__name__)


class AdminOperations:
    def __init__(self, engine, policies, statistics=None):
        self.engine = engine
        self.policies = policies
        self.statistics = statistics

    def unlock(self, account_id: str, reset_attempts: bool, actor: str) -> UnlockResult:
        try:
            result = self.engine.unlock(account_id, reset_attempts=reset_attempts, actor=actor)
        except AccountNotFound:
            logger.info("Unlock of %s by %s: no lockout record, nothing to do", account_id, actor)
            return UnlockResult(account_id=account_id, unlocked=False)
        self._invalidate()
        return result

    def bulk_unlock(self, account_ids, reset_attempts: bool, actor: str):
        result = self.engine.bulk_unlock(account_ids, reset_attempts=reset_attempts, actor=actor)
        self._invalidate()
        return result

    def unlock_all(self, reset_attempts: bool, actor: str):
        result = self.engine.unlock_all(reset_attempts=reset_attempts, actor=actor)
        logger.warning("Unlock-all by %s released %d accounts", actor, result.unlocked_count)
        self._invalidate()
        return result

    def lock(self, account_id: str, actor: str, duration_minutes: int | None = None, tier: int | None = None):
        duration = timedelta(minutes=duration_minutes) if duration_minutes else None
        decision = self.engine.lock(account_id, actor=actor, duration=duration, tier=tier)
        self._invalidate()
        return decision

    def get_policy(self):
        return self.policies.get_policy()

    def update_policy(self, document: dict, actor: str):
        policy = self.policies.update_policy(document, actor=actor)
        self._invalidate()
        return policy

    def locked_accounts(self, page: int = 1, limit: int | None = None, lockout_reason=None) -> LockedAccountsResponse:
        """Currently locked accounts, newest lock first.

        ``by_reason`` and ``by_severity`` cover every locked account; ``total_locked``
        counts the ones matching ``lockout_reason`` and ``accounts`` holds one page of them.
        """
        if page < 1 or (limit is not None and limit < 1):
            raise ValueError("page and limit must be positive")
        now = self.engine.clock()
        ledger = self.engine.ledger
        tiers = self.policies.get_policy().lockout_thresholds
        records = ledger.list_locked(now)

        by_reason: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for record in records:
            reason = record.lock_reason.value if record.lock_reason else "unknown"
            severity = severity_of(record.total_attempts, tiers).value
            by_reason[reason] = by_reason.get(reason, 0) + 1
            by_severity[severity] = by_severity.get(severity, 0) + 1

        if lockout_reason is not None:
            wanted = LockReason(lockout_reason)
            records = [record for record in records if record.lock_reason == wanted]
        total = len(records)
        if limit is not None:
            records = records[(page - 1) * limit:page * limit]

        directory = ledger.get_accounts(record.account_id for record in records)
        accounts = []
        for record in records:
            account = directory.get(record.account_id)
            remaining = int((record.locked_until - now).total_seconds())
            accounts.append(
                LockedAccount(
                    account_id=record.account_id,
                    name=account.name if account else None,
                    email=account.email if account else None,
                    failed_login_attempts=record.failed_login_attempts,
                    failed_password_change_attempts=record.failed_password_change_attempts,
                    lock_reason=record.lock_reason,
                    locked_until=record.locked_until,
                    remaining_minutes=-(-remaining // 60),
                    remaining_time_formatted=format_duration(remaining),
                    tier=record.current_tier,
                    severity=severity_of(record.total_attempts, tiers).value,
                )
            )

        recent = ledger.audit_entries(since=now - timedelta(hours=24), event_types=[AuditEventType.LOCKOUT])
        durations = [int(entry.detail) / 60 for entry in recent if entry.detail and entry.detail.isdigit()]
        return LockedAccountsResponse(
            accounts=accounts,
            total_locked=total,
            page=page,
            limit=limit,
            by_reason=by_reason,
            by_severity=by_severity,
            recent_lockouts=len(recent),
            avg_lockout_duration=round(sum(durations) / len(durations), 1) if durations else 0.0,
        )

    def audit_log(self, account_id: str | None = None, limit: int = 100):
        return self.engine.ledger.audit_entries(account_id=account_id, limit=limit, newest_first=True)

    def _invalidate(self) -> None:
        if self.statistics is not None:
            self.statistics.invalidate()
