import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import timedelta

from lockout_service.errors import AccountNotFound, LockoutError, StorageUnavailable
from lockout_service.models import (
    REASON_FOR_KIND,
    SYSTEM_ACTOR,
    AuditEntry,
    AuditEventType,
    BulkResult,
    Decision,
    FailureKind,
    HistoryEntry,
    LockoutRecord,
    LockReason,
    Status,
    UnlockAllResult,
    UnlockResult,
    utcnow,
)
from lockout_service.policy import next_tier_info, tier_for_attempts

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"


class KeyedLocks:
    """One ``threading.Lock`` per key, dropped again once nobody holds it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LockoutEngine:
    def __init__(self, ledger, policies, notifier=None, clock=utcnow, bulk_workers: int = 8, max_retries: int = 5):
        self.ledger = ledger
        self.policies = policies
        self.notifier = notifier
        self.clock = clock
        self.bulk_workers = bulk_workers
        self.max_retries = max_retries
        self._locks = KeyedLocks()

    # Attempt outcomes

    def record_failure(self, account_id: str, kind: FailureKind = FailureKind.LOGIN) -> Decision:
        kind = FailureKind(kind)
        with self._locks.hold(account_id):
            for _ in range(self.max_retries):
                policy = self.policies.get_policy()
                now = self.clock()
                stored = self.ledger.get_record(account_id)
                expected = stored.version if stored else 0
                record = stored or LockoutRecord(account_id=account_id)

                audits = []
                if record.is_expired(now):
                    audits.append(self._expiry_entry(record, now))
                current_tier = record.current_tier if record.is_locked(now) else 0

                attempts = record.attempts_for(kind) + 1
                counter = "failed_login_attempts" if kind == FailureKind.LOGIN else "failed_password_change_attempts"
                updates = {counter: attempts, "last_failure_at": now}
                if current_tier == 0:
                    updates.update(current_tier=0, locked_until=None)

                history = None
                tier = tier_for_attempts(policy.lockout_thresholds, attempts)
                escalated = tier is not None and tier.tier_index > current_tier
                if escalated:
                    reason = REASON_FOR_KIND[kind]
                    locked_until = now + tier.lock_duration
                    updates.update(current_tier=tier.tier_index, locked_until=locked_until, lock_reason=reason)
                    history = HistoryEntry(
                        attempts_at_time=attempts,
                        tier=tier.tier_index,
                        locked_until=locked_until,
                        reason=reason,
                        created_at=now,
                    )
                    audits.append(
                        AuditEntry(
                            account_id=account_id,
                            timestamp=now,
                            event_type=AuditEventType.LOCKOUT,
                            actor=SYSTEM_ACTOR,
                            before_tier=current_tier,
                            after_tier=tier.tier_index,
                            reason=reason.value,
                            detail=str(int(tier.lock_duration.total_seconds())),
                        )
                    )

                updated = record.model_copy(update=updates)
                if self.ledger.compare_and_swap(updated, expected, history=history, audits=audits):
                    break
                logger.debug("Lost version race on %s, retrying failure", account_id)
            else:
                raise StorageUnavailable(f"Could not record failure for {account_id}: too much contention")

        remaining_info = next_tier_info(attempts, policy.lockout_thresholds)
        if escalated:
            logger.warning(
                "Account %s locked at tier %d until %s after %d %s failures",
                account_id, tier.tier_index, locked_until.isoformat(), attempts, kind.value,
            )
            if self.notifier is not None:
                self.notifier.notify_lockout(policy, account_id, tier.tier_index, locked_until, reason, updated.total_attempts)
            return Decision(
                account_id=account_id,
                locked=True,
                tier=tier.tier_index,
                remaining=tier.lock_duration,
                locked_until=locked_until,
                lock_reason=reason,
                attempts=attempts,
                attempts_remaining=remaining_info["attempts_remaining"],
            )
        if updated.is_locked(now):
            return Decision(
                account_id=account_id,
                locked=True,
                tier=updated.current_tier,
                remaining=updated.locked_until - now,
                locked_until=updated.locked_until,
                lock_reason=updated.lock_reason,
                attempts=attempts,
                attempts_remaining=remaining_info["attempts_remaining"],
            )
        return Decision(
            account_id=account_id,
            locked=False,
            attempts=attempts,
            attempts_remaining=remaining_info["attempts_remaining"],
        )

    def record_success(self, account_id: str, kind: FailureKind = FailureKind.LOGIN) -> Status:
        """Reset the counter for ``kind``. The other counter is left alone."""
        kind = FailureKind(kind)
        with self._locks.hold(account_id):
            for _ in range(self.max_retries):
                now = self.clock()
                record = self.ledger.get_record(account_id)
                if record is None:
                    break
                if record.is_locked(now):
                    logger.info("Ignoring %s success reported for locked account %s", kind.value, account_id)
                    break
                counter = "failed_login_attempts" if kind == FailureKind.LOGIN else "failed_password_change_attempts"
                audits = [self._expiry_entry(record, now)] if record.is_expired(now) else []
                if not audits and record.attempts_for(kind) == 0:
                    break
                updated = record.model_copy(update={counter: 0, "current_tier": 0, "locked_until": None})
                if self.ledger.compare_and_swap(updated, record.version, audits=audits):
                    break
            else:
                raise StorageUnavailable(f"Could not record success for {account_id}: too much contention")
        return self.check_status(account_id)

    # Reads

    def check_status(self, account_id: str) -> Status:
        policy = self.policies.get_policy()
        for _ in range(self.max_retries):
            now = self.clock()
            record = self.ledger.get_record(account_id)
            if record is None or not record.is_expired(now):
                break
            if self._expire(record, now):
                record = self.ledger.get_record(account_id)
                break
        else:
            record = self.ledger.get_record(account_id)

        if record is None:
            first = next_tier_info(0, policy.lockout_thresholds)
            return Status(account_id=account_id, locked=False, attempts_remaining=first["attempts_remaining"])

        attempts = max(record.failed_login_attempts, record.failed_password_change_attempts)
        status = Status(
            account_id=account_id,
            locked=False,
            failed_login_attempts=record.failed_login_attempts,
            failed_password_change_attempts=record.failed_password_change_attempts,
            lock_reason=record.lock_reason,
            attempts_remaining=next_tier_info(attempts, policy.lockout_thresholds)["attempts_remaining"],
        )
        if record.is_locked(now):
            status = status.model_copy(
                update={
                    "locked": True,
                    "tier": record.current_tier,
                    "remaining": record.locked_until - now,
                    "locked_until": record.locked_until,
                }
            )
        return status

    def get_record(self, account_id: str) -> LockoutRecord | None:
        return self.ledger.get_record(account_id, with_history=True)

    # Administrative overrides

    def unlock(
        self,
        account_id: str,
        reset_attempts: bool = True,
        actor: str = SYSTEM_ACTOR,
        event_type: AuditEventType | None = None,
    ) -> UnlockResult:
        if event_type is None:
            event_type = AuditEventType.UNLOCK if actor == SYSTEM_ACTOR else AuditEventType.ADMIN_UNLOCK
        with self._locks.hold(account_id):
            for _ in range(self.max_retries):
                now = self.clock()
                record = self.ledger.get_record(account_id)
                if record is None:
                    raise AccountNotFound(account_id)
                previous_tier = record.current_tier if record.is_locked(now) else 0
                updates = {"current_tier": 0, "locked_until": None}
                if reset_attempts:
                    updates.update(failed_login_attempts=0, failed_password_change_attempts=0)
                updated = record.model_copy(update=updates)
                if _same_state(record, updated):
                    return UnlockResult(account_id=account_id, unlocked=True, attempts_reset=reset_attempts)
                audit = AuditEntry(
                    account_id=account_id,
                    timestamp=now,
                    event_type=event_type,
                    actor=actor,
                    before_tier=record.current_tier,
                    after_tier=0,
                    detail="attempts reset" if reset_attempts else None,
                )
                if self.ledger.compare_and_swap(updated, record.version, audits=[audit]):
                    break
            else:
                raise StorageUnavailable(f"Could not unlock {account_id}: too much contention")

        logger.info("Account %s unlocked by %s (previous tier %d, reset=%s)", account_id, actor, previous_tier, reset_attempts)
        if self.notifier is not None and previous_tier > 0:
            self.notifier.notify_unlock(self.policies.get_policy(), account_id, actor)
        return UnlockResult(account_id=account_id, unlocked=True, previous_tier=previous_tier, attempts_reset=reset_attempts)

    def bulk_unlock(self, account_ids, reset_attempts: bool = True, actor: str = SYSTEM_ACTOR) -> BulkResult:
        ids = list(dict.fromkeys(account_ids))
        result = BulkResult()
        if not ids:
            return result

        with ThreadPoolExecutor(max_workers=min(self.bulk_workers, len(ids)), thread_name_prefix="unlock") as pool:
            futures = {
                account_id: pool.submit(self.unlock, account_id, reset_attempts, actor, AuditEventType.BULK_UNLOCK)
                for account_id in ids
            }

        for account_id in ids:
            try:
                futures[account_id].result()
                result.succeeded.append(account_id)
            except AccountNotFound:
                result.failed[account_id] = NOT_FOUND
            except LockoutError as e:
                result.failed[account_id] = str(e)
            except Exception as e:
                logger.exception("Unexpected error unlocking %s", account_id)
                result.failed[account_id] = str(e)

        logger.info("Bulk unlock by %s: %d succeeded, %d failed", actor, len(result.succeeded), len(result.failed))
        return result

    def unlock_all(self, reset_attempts: bool = True, actor: str = SYSTEM_ACTOR) -> UnlockAllResult:
        locked_ids = [record.account_id for record in self.ledger.list_locked(self.clock())]
        result = self.bulk_unlock(locked_ids, reset_attempts, actor)
        return UnlockAllResult(unlocked_count=len(result.succeeded), failed=result.failed)

    def lock(
        self,
        account_id: str,
        actor: str,
        duration: timedelta | None = None,
        tier: int | None = None,
    ) -> Decision:
        """Administrative lock. Never shortens or lowers an existing lock."""
        policy = self.policies.get_policy()
        tiers = policy.lockout_thresholds
        if tier is None:
            tier = tiers[-1].tier_index
        if not 1 <= tier <= len(tiers):
            raise ValueError(f"Unknown tier {tier}; policy has {len(tiers)} tiers")
        if duration is None:
            duration = policy.tier(tier).lock_duration

        with self._locks.hold(account_id):
            for _ in range(self.max_retries):
                now = self.clock()
                stored = self.ledger.get_record(account_id)
                expected = stored.version if stored else 0
                record = stored or LockoutRecord(account_id=account_id)
                audits = [self._expiry_entry(record, now)] if record.is_expired(now) else []
                current_tier = record.current_tier if record.is_locked(now) else 0
                new_tier = max(current_tier, tier)
                locked_until = now + duration
                if current_tier and record.locked_until > locked_until:
                    locked_until = record.locked_until
                updated = record.model_copy(
                    update={"current_tier": new_tier, "locked_until": locked_until, "lock_reason": LockReason.ADMIN_LOCK}
                )
                history = HistoryEntry(
                    attempts_at_time=record.total_attempts,
                    tier=new_tier,
                    locked_until=locked_until,
                    reason=LockReason.ADMIN_LOCK,
                    created_at=now,
                )
                audits.append(
                    AuditEntry(
                        account_id=account_id,
                        timestamp=now,
                        event_type=AuditEventType.LOCKOUT,
                        actor=actor,
                        before_tier=current_tier,
                        after_tier=new_tier,
                        reason=LockReason.ADMIN_LOCK.value,
                        detail=str(int((locked_until - now).total_seconds())),
                    )
                )
                if self.ledger.compare_and_swap(updated, expected, history=history, audits=audits):
                    break
            else:
                raise StorageUnavailable(f"Could not lock {account_id}: too much contention")

        logger.warning("Account %s locked by %s at tier %d until %s", account_id, actor, new_tier, locked_until.isoformat())
        if self.notifier is not None:
            self.notifier.notify_lockout(policy, account_id, new_tier, locked_until, LockReason.ADMIN_LOCK, record.total_attempts)
        return Decision(
            account_id=account_id,
            locked=True,
            tier=new_tier,
            remaining=locked_until - now,
            locked_until=locked_until,
            lock_reason=LockReason.ADMIN_LOCK,
            attempts=record.total_attempts,
        )

    # Expiry

    def expire_locks(self) -> int:
        """Clear every lock whose time has passed. Safe to run alongside reads."""
        now = self.clock()
        expired = 0
        for record in self.ledger.list_expired(now):
            if self._expire(record, now):
                expired += 1
        if expired:
            logger.info("Expired %d lockouts", expired)
        return expired

    def _expire(self, record: LockoutRecord, now) -> bool:
        cleared = record.model_copy(update={"current_tier": 0, "locked_until": None})
        return self.ledger.compare_and_swap(cleared, record.version, audits=[self._expiry_entry(record, now)])

    @staticmethod
    def _expiry_entry(record: LockoutRecord, now) -> AuditEntry:
        expired_at = record.locked_until.isoformat() if record.locked_until else "unknown"
        return AuditEntry(
            account_id=record.account_id,
            timestamp=now,
            event_type=AuditEventType.UNLOCK,
            actor=SYSTEM_ACTOR,
            before_tier=record.current_tier,
            after_tier=0,
            detail=f"expired at {expired_at}",
        )


def _same_state(before: LockoutRecord, after: LockoutRecord) -> bool:
    return (
        before.current_tier == after.current_tier
        and before.locked_until == after.locked_until
        and before.failed_login_attempts == after.failed_login_attempts
        and before.failed_password_change_attempts == after.failed_password_change_attempts
    )
