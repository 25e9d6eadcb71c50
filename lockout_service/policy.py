import json
import logging
import os
import threading
from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from lockout_service.errors import InvalidPolicy

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LockoutTier(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tier_index: int = Field(default=0, ge=0)
    attempt_threshold: int = Field(ge=1, le=20, validation_alias=AliasChoices("attempt_threshold", "attempts"))
    lock_duration_minutes: int = Field(ge=1, le=1440, validation_alias=AliasChoices("lock_duration_minutes", "duration"))

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self.lock_duration_minutes)


class PasswordPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_length: int = Field(default=8, ge=6, le=128)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    prevent_common_passwords: bool = True
    password_history_count: int = Field(default=5, ge=0, le=24)
    max_age_days: int = Field(default=90, ge=0, le=365)


class SessionManagement(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_concurrent_sessions: int = Field(default=3, ge=1, le=10)
    session_timeout_minutes: int = Field(default=30, ge=5, le=480)
    remember_me_duration_days: int = Field(default=30, ge=1, le=365)
    require_fresh_login_for_sensitive: bool = True


class NotificationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    email_on_lockout: bool = True
    email_on_unlock: bool = True
    sms_on_lockout: bool = False
    admin_notifications: bool = True
    notification_threshold: int = Field(default=5, ge=1, le=100)


class AdvancedSecurity(BaseModel):
    model_config = ConfigDict(frozen=True)

    enable_rate_limiting: bool = True
    max_requests_per_minute: int = Field(default=60, ge=1, le=10000)
    enable_ip_blocking: bool = True
    enable_geolocation_checks: bool = False
    enable_device_fingerprinting: bool = True
    enable_2fa_enforcement: bool = False


class AuditLogging(BaseModel):
    model_config = ConfigDict(frozen=True)

    log_all_auth_attempts: bool = True
    log_password_changes: bool = True
    log_admin_actions: bool = True
    retention_days: int = Field(default=365, ge=30, le=2555)
    enable_real_time_monitoring: bool = True


TIER_KEYS = {"attempts": "attempt_threshold", "duration": "lock_duration_minutes"}


def level_number(key: str) -> int:
    try:
        return int(str(key).rsplit("_", 1)[-1])
    except ValueError:
        raise ValueError(f"unrecognised tier key: {key}")


def merge_levels(tiers: list[dict], levels: dict) -> list[dict]:
    """Apply a partial ``{"level_N": {...}}`` update onto a tier list.

    Levels that exist are patched field by field; ``level_{n+1}`` appends a tier.
    """
    merged = [dict(tier) for tier in tiers]
    try:
        keys = sorted(levels, key=level_number)
    except ValueError as e:
        raise InvalidPolicy([f"lockout_thresholds: {e}"]) from e

    for key in keys:
        position = level_number(key)
        value = levels[key]
        if not isinstance(value, dict):
            raise InvalidPolicy([f"lockout_thresholds.{key}: expected an object"])
        fields = {TIER_KEYS.get(name, name): v for name, v in value.items()}
        if 1 <= position <= len(merged):
            merged[position - 1] = {**merged[position - 1], **fields}
        elif position == len(merged) + 1:
            merged.append({**fields, "tier_index": position})
        else:
            raise InvalidPolicy([f"lockout_thresholds.{key}: no level_{position - 1} to follow"])
    return merged


def _default_tiers() -> list[LockoutTier]:
    return [
        LockoutTier(tier_index=1, attempt_threshold=3, lock_duration_minutes=1),
        LockoutTier(tier_index=2, attempt_threshold=4, lock_duration_minutes=5),
        LockoutTier(tier_index=3, attempt_threshold=5, lock_duration_minutes=10),
        LockoutTier(tier_index=4, attempt_threshold=6, lock_duration_minutes=30),
    ]


class SecurityPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: int = Field(default=1, ge=1)
    lockout_thresholds: tuple[LockoutTier, ...] = Field(default_factory=lambda: tuple(_default_tiers()), min_length=1)
    password_policy: PasswordPolicy = Field(default_factory=PasswordPolicy)
    session_management: SessionManagement = Field(default_factory=SessionManagement)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    advanced_security: AdvancedSecurity = Field(default_factory=AdvancedSecurity)
    audit_logging: AuditLogging = Field(default_factory=AuditLogging)

    @field_validator("lockout_thresholds", mode="before")
    @classmethod
    def _tiers_from_levels(cls, value: Any) -> Any:
        # {"level_1": {...}, "level_2": {...}} is accepted alongside a plain list
        if isinstance(value, dict):
            value = [value[key] for key in sorted(value, key=level_number)]
        return value

    @field_validator("lockout_thresholds", mode="after")
    @classmethod
    def _check_tiers(cls, value: tuple[LockoutTier, ...]) -> tuple[LockoutTier, ...]:
        tiers = []
        for position, tier in enumerate(value, start=1):
            if tier.tier_index not in (0, position):
                raise ValueError(f"tier at position {position} has tier_index {tier.tier_index}")
            tiers.append(tier if tier.tier_index == position else tier.model_copy(update={"tier_index": position}))

        for lower, higher in zip(tiers, tiers[1:]):
            if higher.attempt_threshold <= lower.attempt_threshold:
                raise ValueError(
                    f"tier {higher.tier_index} attempt threshold ({higher.attempt_threshold}) must be greater "
                    f"than tier {lower.tier_index} ({lower.attempt_threshold})"
                )
            if higher.lock_duration_minutes < lower.lock_duration_minutes:
                raise ValueError(
                    f"tier {higher.tier_index} lock duration ({higher.lock_duration_minutes}m) must not be shorter "
                    f"than tier {lower.tier_index} ({lower.lock_duration_minutes}m)"
                )

        return tuple(tiers)

    def tier(self, index: int) -> LockoutTier:
        return self.lockout_thresholds[index - 1]

    def document(self) -> dict:
        return self.model_dump(mode="json")

    def levels(self) -> dict:
        """Tier table keyed ``level_N`` with ``attempts`` and ``duration`` (minutes)."""
        return {
            f"level_{tier.tier_index}": {"attempts": tier.attempt_threshold, "duration": tier.lock_duration_minutes}
            for tier in self.lockout_thresholds
        }


def validate_policy(data: dict) -> SecurityPolicy:
    """Build a policy from an untrusted document, raising ``InvalidPolicy``."""
    try:
        return SecurityPolicy.model_validate(data)
    except ValidationError as e:
        errors = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"])
            errors.append(f"{loc}: {err['msg']}" if loc else err["msg"])
        raise InvalidPolicy(errors) from e


def tier_for_attempts(tiers, attempts: int) -> LockoutTier | None:
    """Highest tier whose threshold is met by ``attempts``, or None."""
    matched = None
    for tier in tiers:
        if attempts >= tier.attempt_threshold and (matched is None or tier.tier_index > matched.tier_index):
            matched = tier
    return matched


def severity_of(attempts: int, tiers) -> Severity:
    tier = tier_for_attempts(tiers, attempts)
    if tier is None:
        return Severity.LOW
    top = max(t.tier_index for t in tiers)
    if tier.tier_index == top:
        return Severity.CRITICAL
    if tier.tier_index == top - 1:
        return Severity.HIGH
    return Severity.MEDIUM


def next_tier_info(attempts: int, tiers) -> dict:
    for tier in sorted(tiers, key=lambda t: t.attempt_threshold):
        if tier.attempt_threshold > attempts:
            return {
                "next_tier": tier.tier_index,
                "next_threshold": tier.attempt_threshold,
                "next_duration_minutes": tier.lock_duration_minutes,
                "attempts_remaining": tier.attempt_threshold - attempts,
                "is_max_level": False,
            }
    top = max(tiers, key=lambda t: t.tier_index)
    return {
        "next_tier": top.tier_index,
        "next_threshold": top.attempt_threshold,
        "next_duration_minutes": top.lock_duration_minutes,
        "attempts_remaining": 0,
        "is_max_level": True,
    }


class PolicyStore:
    """Holds the single active ``SecurityPolicy``.

    ``ledger`` is optional; without one, updates are kept in memory only.
    """

    def __init__(self, policy: SecurityPolicy | None = None, ledger=None):
        self._current = policy or SecurityPolicy()
        self._ledger = ledger
        self._write_lock = threading.Lock()

    @classmethod
    def load(cls, ledger=None, policy_file: str | None = None) -> "PolicyStore":
        stored = ledger.latest_policy() if ledger is not None else None
        policy = stored
        if policy is None and policy_file and os.path.exists(policy_file):
            with open(policy_file, "r", encoding="utf-8") as f:
                policy = validate_policy(json.load(f))
            logger.info("Loaded security policy from %s", policy_file)
        store = cls(policy, ledger)
        if ledger is not None and stored is None:
            ledger.save_policy(store.get_policy(), actor="system", previous_version=None)
        return store

    def get_policy(self) -> SecurityPolicy:
        return self._current

    def update_policy(self, data: dict, actor: str = "system") -> SecurityPolicy:
        with self._write_lock:
            current = self._current
            document = current.document()
            for section, value in data.items():
                if section == "lockout_thresholds" and isinstance(value, dict):
                    document[section] = merge_levels(document[section], value)
                elif isinstance(value, dict) and isinstance(document.get(section), dict):
                    document[section] = {**document[section], **value}
                else:
                    document[section] = value
            document["version"] = current.version + 1
            new_policy = validate_policy(document)
            if self._ledger is not None:
                self._ledger.save_policy(new_policy, actor=actor, previous_version=current.version)
            self._current = new_policy
        logger.info("Security policy updated to version %d by %s", new_policy.version, actor)
        return new_policy

    def history(self) -> list[dict]:
        if self._ledger is None:
            return [{"version": self._current.version, "policy": self._current.document()}]
        return self._ledger.policy_history()
