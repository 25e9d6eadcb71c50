import logging
import os
import time

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from lockout_service import attempt_logger, db
from lockout_service.admin import AdminOperations
from lockout_service.config import load_config
from lockout_service.errors import InvalidPolicy, StatisticsUnavailable, StorageUnavailable
from lockout_service.lockout_engine import LockoutEngine
from lockout_service.models import (
    Account,
    AuditEntry,
    BulkResult,
    BulkUnlockRequest,
    Decision,
    FailureRequest,
    LockedAccountsResponse,
    LockReason,
    LockRequest,
    Status,
    UnlockAllResult,
    UnlockRequest,
    UnlockResult,
)
from lockout_service.notifications import NotificationDispatcher
from lockout_service.policy import PolicyStore
from lockout_service.rate_limit import RateLimiter
from lockout_service.reaper import Reaper
from lockout_service.statistics import StatisticsAggregator

logger = logging.getLogger(__name__)

app = FastAPI(title="Account Lockout Service")

config = load_config(os.environ.get("LOCKOUT_CONFIG", "config.json"))
attempt_logger.configure(config.attempts_log_file)
rate_limiter = RateLimiter(60, 60)
notifier = NotificationDispatcher(max_workers=config.notification_workers, max_pending=config.notification_queue_size)

ledger: db.LockoutLedger | None = None
policies: PolicyStore | None = None
engine: LockoutEngine | None = None
statistics: StatisticsAggregator | None = None
admin: AdminOperations | None = None
reaper: Reaper | None = None


def init_service(db_path: str) -> None:
    global ledger, policies, engine, statistics, admin, reaper
    ledger = db.init_db(db_path)
    policies = PolicyStore.load(ledger, config.policy_file)
    engine = LockoutEngine(
        ledger,
        policies,
        notifier=notifier,
        bulk_workers=config.bulk_unlock_workers,
        max_retries=config.cas_max_retries,
    )
    statistics = StatisticsAggregator(ledger, policies, cache_ttl=config.stats_cache_ttl_s)
    admin = AdminOperations(engine, policies, statistics)
    reaper = Reaper(engine, policies, interval_s=config.reaper_interval_s)
    if config.enable_reaper:
        reaper.start()


@app.on_event("startup")
def startup():
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_service(config.db_path)


@app.on_event("shutdown")
def shutdown():
    if reaper is not None:
        reaper.stop()
    if statistics is not None:
        statistics.shutdown()
    notifier.shutdown(wait=False)


@app.exception_handler(StorageUnavailable)
async def storage_unavailable(request: Request, exc: StorageUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True, "locked": True})


@app.exception_handler(InvalidPolicy)
async def invalid_policy(request: Request, exc: InvalidPolicy):
    return JSONResponse(status_code=422, content={"detail": "Invalid security policy", "errors": exc.errors})


@app.exception_handler(StatisticsUnavailable)
async def statistics_unavailable(request: Request, exc: StatisticsUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})


def admin_actor(x_actor: str = Header(default="admin")) -> str:
    settings = policies.get_policy().advanced_security
    if settings.enable_rate_limiting and not rate_limiter.check(x_actor, settings.max_requests_per_minute):
        raise HTTPException(
            status_code=429,
            detail="Too many administrative requests",
            headers={"Retry-After": str(rate_limiter.retry_after(x_actor))},
        )
    return x_actor


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/accounts", response_model=Account)
def register_account(account: Account):
    if ledger.get_account(account.account_id):
        raise HTTPException(status_code=400, detail="Account already exists")
    try:
        return ledger.create_account(account)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/accounts/bulk-unlock", response_model=BulkResult)
def bulk_unlock(req: BulkUnlockRequest, actor: str = Depends(admin_actor)):
    return admin.bulk_unlock(req.ids, req.reset_attempts, actor)


@app.post("/accounts/unlock-all", response_model=UnlockAllResult)
def unlock_all(req: UnlockRequest | None = None, actor: str = Depends(admin_actor)):
    req = req or UnlockRequest()
    return admin.unlock_all(req.reset_attempts, actor)


@app.post("/accounts/{account_id}/failures", response_model=Decision)
def record_failure(account_id: str, req: FailureRequest | None = None):
    req = req or FailureRequest()
    start_time = time.perf_counter()
    decision = engine.record_failure(account_id, req.kind)
    _log_attempt(account_id, req.kind.value, "failure", "locked" if decision.locked else "counted", decision.tier, start_time)
    return decision


@app.post("/accounts/{account_id}/successes", response_model=Status)
def record_success(account_id: str, req: FailureRequest | None = None):
    req = req or FailureRequest()
    start_time = time.perf_counter()
    status = engine.record_success(account_id, req.kind)
    _log_attempt(account_id, req.kind.value, "success", "locked" if status.locked else "reset", status.tier, start_time)
    return status


@app.get("/accounts/{account_id}/status", response_model=Status)
def account_status(account_id: str):
    return engine.check_status(account_id)


@app.post("/accounts/{account_id}/lock", response_model=Decision)
def lock_account(account_id: str, req: LockRequest | None = None, actor: str = Depends(admin_actor)):
    req = req or LockRequest()
    try:
        return admin.lock(account_id, actor, duration_minutes=req.duration_minutes, tier=req.tier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/accounts/{account_id}/unlock", response_model=UnlockResult)
def unlock_account(account_id: str, req: UnlockRequest | None = None, actor: str = Depends(admin_actor)):
    req = req or UnlockRequest()
    return admin.unlock(account_id, req.reset_attempts, actor)


@app.get("/locked-accounts", response_model=LockedAccountsResponse)
def locked_accounts(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1, le=500),
    lockout_reason: LockReason | None = Query(default=None, alias="lockoutReason"),
):
    return admin.locked_accounts(page=page, limit=limit, lockout_reason=lockout_reason)


@app.get("/lockout-statistics")
def lockout_statistics(range_: str = Query(default="30d", alias="range")):
    try:
        return statistics.get(range_, timeout=config.stats_timeout_s)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/security-policy")
def get_security_policy():
    return _policy_view(admin.get_policy())


@app.put("/security-policy")
def update_security_policy(document: dict = Body(...), actor: str = Depends(admin_actor)):
    return _policy_view(admin.update_policy(document, actor))


@app.get("/security-policy/history")
def security_policy_history():
    return policies.history()


@app.get("/audit-log", response_model=list[AuditEntry])
def audit_log(account_id: str | None = Query(default=None, alias="accountId"), limit: int = Query(default=100, ge=1, le=1000)):
    return admin.audit_log(account_id, limit)


def _log_attempt(account_id: str, kind: str, outcome: str, result: str, tier: int, start_time: float):
    if not policies.get_policy().audit_logging.log_all_auth_attempts:
        return
    latency_ms = (time.perf_counter() - start_time) * 1000
    attempt_logger.log_attempt(
        account_id=account_id,
        kind=kind,
        outcome=outcome,
        result=result,
        tier=tier,
        latency_ms=latency_ms,
    )


def _policy_view(policy) -> dict:
    return {**policy.document(), "lockout_thresholds": policy.levels()}
