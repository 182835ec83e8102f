"""Process configuration: YAML defaults overridden by environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import yaml

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

WORKER_ENV_PREFIX = "VM"

_FALLBACK_DEFAULTS: dict[str, float] = {
    "tick_interval": 0.5,
    "max_idle_interval": 10.0,
    "idle_backoff": 2.0,
    "dispatch_timeout": 300.0,
    "min_result_bytes": 2048,
    "max_bulk_ids": 5000,
}


def _load_defaults() -> dict:
    path = CONFIG_DIR / "scheduler.yaml"
    if not path.exists():
        return dict(_FALLBACK_DEFAULTS)
    with path.open("r", encoding="utf-8") as fp:
        loaded = yaml.safe_load(fp) or {}
    return {**_FALLBACK_DEFAULTS, **loaded}


DEFAULTS = _load_defaults()


@dataclass(frozen=True)
class WorkerConfig:
    name: str
    address: str


@dataclass(frozen=True)
class Settings:
    workers: tuple[WorkerConfig, ...] = ()
    database: str | None = None
    tick_interval: float = float(DEFAULTS["tick_interval"])
    max_idle_interval: float = float(DEFAULTS["max_idle_interval"])
    idle_backoff: float = float(DEFAULTS["idle_backoff"])
    dispatch_timeout: float = float(DEFAULTS["dispatch_timeout"])
    min_result_bytes: int = int(DEFAULTS["min_result_bytes"])
    max_bulk_ids: int = int(DEFAULTS["max_bulk_ids"])
    scheduler_enabled: bool = True
    cors_origins: tuple[str, ...] = field(
        default=("http://localhost:3000", "http://127.0.0.1:3000")
    )


def workers_from_env(environ: Mapping[str, str]) -> tuple[WorkerConfig, ...]:
    """Every ``VM*`` variable names one worker; its value is the base address."""

    workers: list[WorkerConfig] = []
    for key in sorted(environ):
        if not key.startswith(WORKER_ENV_PREFIX):
            continue
        address = environ[key].strip().rstrip("/")
        if address:
            workers.append(WorkerConfig(name=key, address=address))
    return tuple(workers)


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _flag(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ

    origins_env = env.get("API_CORS_ORIGINS", "")
    origins = tuple(origin.strip() for origin in origins_env.split(",") if origin.strip())

    base = Settings()
    return Settings(
        workers=workers_from_env(env),
        database=env.get("FLIGHTOPS_DATABASE") or None,
        tick_interval=_float(env, "FLIGHTOPS_TICK_INTERVAL", base.tick_interval),
        max_idle_interval=_float(env, "FLIGHTOPS_MAX_IDLE_INTERVAL", base.max_idle_interval),
        idle_backoff=_float(env, "FLIGHTOPS_IDLE_BACKOFF", base.idle_backoff),
        dispatch_timeout=_float(env, "FLIGHTOPS_DISPATCH_TIMEOUT", base.dispatch_timeout),
        min_result_bytes=int(_float(env, "FLIGHTOPS_MIN_RESULT_BYTES", base.min_result_bytes)),
        max_bulk_ids=int(_float(env, "FLIGHTOPS_MAX_BULK_IDS", base.max_bulk_ids)),
        scheduler_enabled=_flag(env, "FLIGHTOPS_SCHEDULER_ENABLED", True),
        cors_origins=origins or base.cors_origins,
    )
