"""Core service configuration & tunable sweep rules.

Everything that may need adjusting per deployment (scan cadence, error
backoff, batch size, skyd connection, nginx cache purge paths) is centralized
here. Values come from environment variables with sane defaults; tests
monkeypatch the dicts or pass explicit constructor arguments.
"""
from __future__ import annotations

import os

# One of "dev", "testing", "standard". Selects environment dependent timings.
BLOCKER_ENV: str = os.getenv("BLOCKER_ENV", "standard").strip().lower() or "standard"

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./blocker.db")

_SLEEP_BETWEEN_SCANS: dict[str, float] = {
	"dev": 10.0,
	"testing": 0.1,
	"standard": 60.0,
}

# ---------------------------------- Sweep --------------------------------- #
SWEEP_SETTINGS: dict[str, float | int] = {
	# Idle time after a sweep that found nothing to block.
	"sleep_between_scans": _SLEEP_BETWEEN_SCANS.get(BLOCKER_ENV, _SLEEP_BETWEEN_SCANS["standard"]),
	# Linear backoff on consecutive errors: step * min(errors, steps).
	# 10s, 20s, ... up to 60s and then 60s until the error clears.
	"sleep_on_err_step": 10.0,
	"sleep_on_err_steps": 6,
	# Max number of skylinks sent to skyd in a single request.
	"skylinks_chunk": 100,
	# We always scan this far before the last checkpoint to survive clock
	# skew between the writers of skylink records.
	"scan_skew_tolerance_seconds": 3600,
}

# ---------------------------------- Skyd ---------------------------------- #
SKYD_SETTINGS: dict[str, str | int | float] = {
	"host": os.getenv("SKYD_API_HOST", "sia"),
	"port": int(os.getenv("SKYD_API_PORT", "9980")),
	"api_password": os.getenv("SIA_API_PASSWORD", ""),
	"timeout_seconds": float(os.getenv("SKYD_API_TIMEOUT", "30")),
	"user_agent": "Sia-Agent",
}

# ---------------------------- Nginx cache purge --------------------------- #
CACHE_PURGE_SETTINGS: dict[str, str | int | float] = {
	"list_path": os.getenv("BLOCKER_NGINX_CACHE_PURGE_LIST", "/data/nginx/blocker/skylinks.txt"),
	# A directory, not a file: mkdir is atomic for the purge script too.
	"lock_path": os.getenv("BLOCKER_NGINX_CACHE_PURGE_LOCK", "/data/nginx/blocker/lock"),
	"lock_attempts": 3,
	"lock_retry_interval_seconds": 1.0,
}

# --------------------------------- Logging -------------------------------- #
LOG_SETTINGS: dict[str, str | None] = {
	"level": os.getenv("BLOCKER_LOG_LEVEL", "INFO").upper(),
	"file": os.getenv("BLOCKER_LOG_FILE") or None,
}

__all__ = [
	"BLOCKER_ENV",
	"DATABASE_URL",
	"SWEEP_SETTINGS",
	"SKYD_SETTINGS",
	"CACHE_PURGE_SETTINGS",
	"LOG_SETTINGS",
]
