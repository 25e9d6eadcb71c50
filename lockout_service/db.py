from contextlib import contextmanager
import json
import logging
from datetime import datetime

from sqlalchemy import create_engine, delete, event, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from lockout_service.errors import StorageUnavailable
from lockout_service.models import (
    Account,
    AccountModel,
    AuditEntry,
    AuditEntryModel,
    AuditEventType,
    Base,
    HistoryEntry,
    LockHistoryModel,
    LockoutRecord,
    LockoutRecordModel,
    PolicyVersionModel,
    utcnow,
)
from lockout_service.policy import SecurityPolicy, validate_policy

logger = logging.getLogger(__name__)

db_path = "lockout.db"
engine = None
SessionLocal = None


def init_db(path: str) -> "LockoutLedger":
    global db_path, engine, SessionLocal
    db_path = path
    sqlite_url = f"sqlite:///{path}"

    engine = create_engine(sqlite_url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

    Base.metadata.create_all(bind=engine)
    logger.info("Lockout ledger initialised at %s", path)
    return LockoutLedger(SessionLocal)


@contextmanager
def get_session(factory=None):
    factory = factory or SessionLocal
    if factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _record_values(record: LockoutRecord) -> dict:
    return {
        "failed_login_attempts": record.failed_login_attempts,
        "failed_password_change_attempts": record.failed_password_change_attempts,
        "current_tier": record.current_tier,
        "locked_until": record.locked_until,
        "lock_reason": record.lock_reason.value if record.lock_reason else None,
        "last_failure_at": record.last_failure_at,
    }


def _audit_row(entry: AuditEntry) -> AuditEntryModel:
    return AuditEntryModel(
        account_id=entry.account_id,
        timestamp=entry.timestamp,
        event_type=entry.event_type.value,
        actor=entry.actor,
        before_tier=entry.before_tier,
        after_tier=entry.after_tier,
        reason=entry.reason,
        detail=entry.detail,
    )


class LockoutLedger:
    """Keyed store of ``LockoutRecord``s plus the append-only audit log."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str):
        try:
            with get_session(self._session_factory) as session:
                yield session
        except StorageUnavailable:
            raise
        except SQLAlchemyError as e:
            logger.error("Ledger %s failed: %s", operation, e)
            raise StorageUnavailable(f"Ledger unavailable during {operation}") from e

    # Lockout records

    def get_record(self, account_id: str, with_history: bool = False) -> LockoutRecord | None:
        with self._session("get_record") as session:
            row = session.get(LockoutRecordModel, account_id)
            if row is None:
                return None
            history = ()
            if with_history:
                stmt = (
                    select(LockHistoryModel)
                    .where(LockHistoryModel.account_id == account_id)
                    .order_by(LockHistoryModel.id)
                )
                history = session.execute(stmt).scalars().all()
            return LockoutRecord.from_orm_model(row, history)

    def compare_and_swap(
        self,
        record: LockoutRecord,
        expected_version: int,
        history: HistoryEntry | None = None,
        audits=(),
    ) -> bool:
        """Write ``record`` only if the stored version still equals ``expected_version``.

        ``expected_version == 0`` means the record must not exist yet.
        """
        with self._session("compare_and_swap") as session:
            if expected_version == 0:
                session.add(LockoutRecordModel(account_id=record.account_id, version=1, **_record_values(record)))
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    return False
            else:
                stmt = (
                    update(LockoutRecordModel)
                    .where(
                        LockoutRecordModel.account_id == record.account_id,
                        LockoutRecordModel.version == expected_version,
                    )
                    .values(version=expected_version + 1, **_record_values(record))
                )
                if session.execute(stmt).rowcount != 1:
                    session.rollback()
                    return False
            if history is not None:
                session.add(
                    LockHistoryModel(
                        account_id=record.account_id,
                        attempts_at_time=history.attempts_at_time,
                        tier=history.tier,
                        locked_until=history.locked_until,
                        reason=history.reason.value if history.reason else None,
                        created_at=history.created_at,
                    )
                )
            for entry in audits:
                session.add(_audit_row(entry))
        return True

    def list_records(self) -> list[LockoutRecord]:
        with self._session("list_records") as session:
            rows = session.execute(select(LockoutRecordModel).order_by(LockoutRecordModel.account_id)).scalars()
            return [LockoutRecord.from_orm_model(row) for row in rows]

    def list_locked(self, now: datetime) -> list[LockoutRecord]:
        with self._session("list_locked") as session:
            stmt = (
                select(LockoutRecordModel)
                .where(LockoutRecordModel.current_tier > 0, LockoutRecordModel.locked_until > now)
                .order_by(LockoutRecordModel.locked_until.desc(), LockoutRecordModel.account_id)
            )
            return [LockoutRecord.from_orm_model(row) for row in session.execute(stmt).scalars()]

    def list_expired(self, now: datetime) -> list[LockoutRecord]:
        with self._session("list_expired") as session:
            stmt = select(LockoutRecordModel).where(
                LockoutRecordModel.current_tier > 0,
                (LockoutRecordModel.locked_until <= now) | (LockoutRecordModel.locked_until.is_(None)),
            )
            return [LockoutRecord.from_orm_model(row) for row in session.execute(stmt).scalars()]

    # Audit log

    def append_audit(self, entry: AuditEntry) -> None:
        with self._session("append_audit") as session:
            session.add(_audit_row(entry))

    def audit_entries(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        account_id: str | None = None,
        event_types=None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[AuditEntry]:
        stmt = select(AuditEntryModel)
        if since is not None:
            stmt = stmt.where(AuditEntryModel.timestamp >= since)
        if until is not None:
            stmt = stmt.where(AuditEntryModel.timestamp < until)
        if account_id is not None:
            stmt = stmt.where(AuditEntryModel.account_id == account_id)
        if event_types:
            stmt = stmt.where(AuditEntryModel.event_type.in_([AuditEventType(t).value for t in event_types]))
        if newest_first:
            stmt = stmt.order_by(AuditEntryModel.timestamp.desc(), AuditEntryModel.id.desc())
        else:
            stmt = stmt.order_by(AuditEntryModel.timestamp, AuditEntryModel.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session("audit_entries") as session:
            return [AuditEntry.from_orm_model(row) for row in session.execute(stmt).scalars()]

    def purge_audit(self, before: datetime) -> int:
        with self._session("purge_audit") as session:
            result = session.execute(delete(AuditEntryModel).where(AuditEntryModel.timestamp < before))
            purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d audit entries older than %s", purged, before.isoformat())
        return purged

    # Account directory

    def create_account(self, account: Account) -> Account:
        try:
            with get_session(self._session_factory) as session:
                session.add(AccountModel(account_id=account.account_id, name=account.name, email=account.email))
        except IntegrityError as e:
            raise ValueError(f"Account already exists: {account.account_id}") from e
        except SQLAlchemyError as e:
            raise StorageUnavailable("Ledger unavailable during create_account") from e
        return account

    def get_account(self, account_id: str) -> Account | None:
        with self._session("get_account") as session:
            row = session.get(AccountModel, account_id)
            if row is None:
                return None
            return Account(account_id=row.account_id, name=row.name, email=row.email)

    def get_accounts(self, account_ids) -> dict[str, Account]:
        ids = list(set(account_ids))
        if not ids:
            return {}
        with self._session("get_accounts") as session:
            rows = session.execute(select(AccountModel).where(AccountModel.account_id.in_(ids))).scalars()
            return {row.account_id: Account(account_id=row.account_id, name=row.name, email=row.email) for row in rows}

    # Policy versions

    def save_policy(self, policy: SecurityPolicy, actor: str, previous_version: int | None) -> None:
        now = utcnow()
        with self._session("save_policy") as session:
            session.add(
                PolicyVersionModel(
                    version=policy.version,
                    body=json.dumps(policy.document()),
                    actor=actor,
                    created_at=now,
                )
            )
            if previous_version is not None:
                session.add(
                    _audit_row(
                        AuditEntry(
                            account_id=None,
                            timestamp=now,
                            event_type=AuditEventType.POLICY_CHANGE,
                            actor=actor,
                            detail=f"version {previous_version} -> {policy.version}",
                        )
                    )
                )

    def latest_policy(self) -> SecurityPolicy | None:
        with self._session("latest_policy") as session:
            latest = session.execute(select(func.max(PolicyVersionModel.version))).scalar()
            if latest is None:
                return None
            row = session.get(PolicyVersionModel, latest)
            return validate_policy(json.loads(row.body))

    def policy_history(self) -> list[dict]:
        with self._session("policy_history") as session:
            rows = session.execute(select(PolicyVersionModel).order_by(PolicyVersionModel.version)).scalars()
            return [
                {
                    "version": row.version,
                    "actor": row.actor,
                    "created_at": row.created_at.isoformat(),
                    "policy": json.loads(row.body),
                }
                for row in rows
            ]
