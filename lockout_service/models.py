import time
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class FailureKind(str, Enum):
    LOGIN = "login"
    PASSWORD_CHANGE = "password_change"


class LockReason(str, Enum):
    FAILED_LOGIN = "failed_login"
    FAILED_PASSWORD_CHANGE = "failed_password_change"
    ADMIN_LOCK = "admin_lock"


class AuditEventType(str, Enum):
    LOCKOUT = "lockout"
    UNLOCK = "unlock"
    ADMIN_UNLOCK = "admin_unlock"
    BULK_UNLOCK = "bulk_unlock"
    POLICY_CHANGE = "policy_change"


SYSTEM_ACTOR = "system"


def utcnow() -> datetime:
    """Naive UTC wall clock, matching what the ledger stores."""
    return datetime.fromtimestamp(time.time(), timezone.utc).replace(tzinfo=None)


def format_duration(seconds: int) -> str:
    """``90`` -> ``"1m 30s"``, ``5400`` -> ``"1h 30m"``; at most the two largest units."""
    seconds = max(0, int(seconds))
    parts = []
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        value, seconds = divmod(seconds, size)
        if value:
            parts.append(f"{value}{unit}")
    return " ".join(parts[:2]) or "0s"


REASON_FOR_KIND = {
    FailureKind.LOGIN: LockReason.FAILED_LOGIN,
    FailureKind.PASSWORD_CHANGE: LockReason.FAILED_PASSWORD_CHANGE,
}


class AccountModel(Base):
    __tablename__ = "accounts"

    account_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False)


class LockoutRecordModel(Base):
    __tablename__ = "lockout_records"

    account_id = Column(String, primary_key=True)
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    failed_password_change_attempts = Column(Integer, nullable=False, default=0)
    current_tier = Column(Integer, nullable=False, default=0, index=True)
    locked_until = Column(DateTime, nullable=True, index=True)
    lock_reason = Column(String, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)


class LockHistoryModel(Base):
    __tablename__ = "lockout_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("lockout_records.account_id"), nullable=False, index=True)
    attempts_at_time = Column(Integer, nullable=False)
    tier = Column(Integer, nullable=False)
    locked_until = Column(DateTime, nullable=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)


class AuditEntryModel(Base):
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_account_timestamp", "account_id", "timestamp"),
        Index("ix_audit_log_timestamp", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False)
    event_type = Column(String, nullable=False)
    actor = Column(String, nullable=False)
    before_tier = Column(Integer, nullable=True)
    after_tier = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    detail = Column(Text, nullable=True)


class PolicyVersionModel(Base):
    __tablename__ = "policy_versions"

    version = Column(Integer, primary_key=True)
    body = Column(Text, nullable=False)
    actor = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)


class HistoryEntry(BaseModel):
    attempts_at_time: int
    tier: int
    locked_until: datetime | None = None
    reason: LockReason | None = None
    created_at: datetime


class LockoutRecord(BaseModel):
    """Read-only projection of a ledger row."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    failed_login_attempts: int = 0
    failed_password_change_attempts: int = 0
    current_tier: int = 0
    locked_until: datetime | None = None
    lock_reason: LockReason | None = None
    last_failure_at: datetime | None = None
    version: int = 0
    history: tuple[HistoryEntry, ...] = ()

    @property
    def total_attempts(self) -> int:
        return self.failed_login_attempts + self.failed_password_change_attempts

    def attempts_for(self, kind: FailureKind) -> int:
        if kind == FailureKind.LOGIN:
            return self.failed_login_attempts
        return self.failed_password_change_attempts

    def is_locked(self, now: datetime) -> bool:
        return self.current_tier > 0 and self.locked_until is not None and self.locked_until > now

    def is_expired(self, now: datetime) -> bool:
        """Carries a lock that has run out but was not yet cleared."""
        if self.current_tier == 0 and self.locked_until is None:
            return False
        return self.locked_until is None or self.locked_until <= now

    @classmethod
    def from_orm_model(cls, row: LockoutRecordModel, history=()) -> "LockoutRecord":
        return cls(
            account_id=row.account_id,
            failed_login_attempts=row.failed_login_attempts,
            failed_password_change_attempts=row.failed_password_change_attempts,
            current_tier=row.current_tier,
            locked_until=row.locked_until,
            lock_reason=row.lock_reason,
            last_failure_at=row.last_failure_at,
            version=row.version,
            history=tuple(
                HistoryEntry(
                    attempts_at_time=h.attempts_at_time,
                    tier=h.tier,
                    locked_until=h.locked_until,
                    reason=h.reason,
                    created_at=h.created_at,
                )
                for h in history
            ),
        )


class AuditEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int | None = None
    account_id: str | None = None
    timestamp: datetime
    event_type: AuditEventType
    actor: str
    before_tier: int | None = None
    after_tier: int | None = None
    reason: str | None = None
    detail: str | None = None

    @classmethod
    def from_orm_model(cls, row: AuditEntryModel) -> "AuditEntry":
        return cls(
            id=row.id,
            account_id=row.account_id,
            timestamp=row.timestamp,
            event_type=row.event_type,
            actor=row.actor,
            before_tier=row.before_tier,
            after_tier=row.after_tier,
            reason=row.reason,
            detail=row.detail,
        )


class Account(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    account_id: str = Field(min_length=1)
    name: str
    email: str


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Decision(ApiModel):
    account_id: str
    locked: bool
    tier: int = 0
    remaining: timedelta = timedelta(0)
    locked_until: datetime | None = None
    lock_reason: LockReason | None = None
    attempts: int = 0
    attempts_remaining: int = 0

    @computed_field
    @property
    def remaining_seconds(self) -> int:
        return int(self.remaining.total_seconds())


class Status(ApiModel):
    account_id: str
    locked: bool
    tier: int = 0
    remaining: timedelta = timedelta(0)
    locked_until: datetime | None = None
    lock_reason: LockReason | None = None
    failed_login_attempts: int = 0
    failed_password_change_attempts: int = 0
    attempts_remaining: int = 0

    @computed_field
    @property
    def remaining_seconds(self) -> int:
        return int(self.remaining.total_seconds())


class UnlockResult(ApiModel):
    account_id: str
    unlocked: bool
    previous_tier: int = 0
    attempts_reset: bool = False


class BulkResult(ApiModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class UnlockAllResult(ApiModel):
    unlocked_count: int
    failed: dict[str, str] = Field(default_factory=dict)


class FailureRequest(ApiModel):
    kind: FailureKind = FailureKind.LOGIN


class LockRequest(ApiModel):
    duration_minutes: int | None = Field(default=None, ge=1, le=1440)
    tier: int | None = Field(default=None, ge=1)


class UnlockRequest(ApiModel):
    reset_attempts: bool = True


class BulkUnlockRequest(ApiModel):
    ids: list[str]
    reset_attempts: bool = True


class LockedAccount(ApiModel):
    account_id: str
    name: str | None = None
    email: str | None = None
    failed_login_attempts: int
    failed_password_change_attempts: int
    lock_reason: LockReason | None = None
    locked_until: datetime | None = None
    remaining_minutes: int
    remaining_time_formatted: str
    tier: int
    severity: str


class LockedAccountsResponse(ApiModel):
    accounts: list[LockedAccount]
    total_locked: int
    page: int = 1
    limit: int | None = None
    by_reason: dict[str, int]
    by_severity: dict[str, int]
    recent_lockouts: int = 0
    avg_lockout_duration: float = 0.0
