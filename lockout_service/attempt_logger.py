import json
import threading
from datetime import datetime, timezone
from pathlib import Path


from lockout_service.config import load_config

_cfg = load_config()
_log_path = Path(_cfg.attempts_log_file)
_write_lock = threading.Lock()
_total_attempts = 0


def configure(path: str) -> None:
    global _log_path
    _log_path = Path(path)


def log_attempt(
    account_id: str,
    kind: str,
    outcome: str,
    result: str,
    tier: int,
    latency_ms: float,
    extra: dict | None = None,
):
    global _total_attempts

    with _write_lock:
        _total_attempts += 1
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "account_id": account_id,
            "kind": kind,
            "outcome": outcome,
            "result": result,
            "tier": tier,
            "latency_ms": round(latency_ms, 3),
            "attempt_id": _total_attempts,
        }
        if extra:
            record.update(extra)

        _log_path.parent.mkdir(parents=True, exist_ok=True)
        with _log_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")
