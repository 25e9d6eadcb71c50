from dataclasses import dataclass, fields
import json
import os

ENV_PREFIX = "LOCKOUT_"


def _bool(env_val: str, default: bool) -> bool:
    if env_val is None:
        return default
    return env_val.lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    db_path: str = "lockout.db"
    attempts_log_file: str = "attempts.log"
    policy_file: str | None = None
    log_level: str = "INFO"

    bulk_unlock_workers: int = 8
    notification_workers: int = 2
    notification_queue_size: int = 1000

    stats_cache_ttl_s: int = 30
    stats_timeout_s: float = 5.0

    enable_reaper: bool = False
    reaper_interval_s: int = 60

    cas_max_retries: int = 5


def load_config(path: str | None = None) -> Config:
    cfg = Config()
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for k, v in data.items():
            if hasattr(cfg, k):
                setattr(cfg, k, v)

    for field in fields(cfg):
        raw = os.environ.get(ENV_PREFIX + field.name.upper())
        if raw is None:
            continue
        current = getattr(cfg, field.name)
        if isinstance(current, bool):
            setattr(cfg, field.name, _bool(raw, current))
        elif isinstance(current, int):
            setattr(cfg, field.name, int(raw))
        elif isinstance(current, float):
            setattr(cfg, field.name, float(raw))
        else:
            setattr(cfg, field.name, raw)

    return cfg
