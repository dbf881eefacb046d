from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from ...enums import CircleRole

# load the backend .env so matching defaults mirror the deployed values
_ENV_PATH = Path(__file__).resolve().parents[2] / '.env'
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)

_TRUE_VALUES = {"1", "true", "yes", "on"}
DEFAULT_COURSES = [CircleRole.starter.value, CircleRole.main.value, CircleRole.dessert.value]


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return int(default)


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in _TRUE_VALUES


@lru_cache(maxsize=1)
def circle_size() -> int:
    """Target number of people per circle for newly scheduled events."""
    return max(2, _int_env("MATCH_CIRCLE_SIZE", "6"))


@lru_cache(maxsize=1)
def minimum_pool_size() -> int:
    return max(1, _int_env("MATCH_MINIMUM_POOL_SIZE", "6"))


@lru_cache(maxsize=1)
def courses() -> List[str]:
    raw = os.getenv("MATCH_COURSES")
    if not raw:
        return list(DEFAULT_COURSES)
    parsed = [c.strip().lower() for c in raw.split(",") if c.strip()]
    return parsed or list(DEFAULT_COURSES)


@lru_cache(maxsize=1)
def diversity_metric_name() -> str:
    return (os.getenv("MATCH_DIVERSITY_METRIC") or "jaccard").strip().lower()


@lru_cache(maxsize=1)
def stale_matching_minutes() -> int:
    """Age after which an event stuck in `matching` is considered abandoned."""
    return max(1, _int_env("MATCH_STALE_MINUTES", "15"))


def offload_allocation() -> bool:
    """Run the allocation step in a worker thread (default: enabled)."""
    return _bool_env("MATCH_ALLOCATE_IN_THREAD", True)


@lru_cache(maxsize=1)
def pool_lock_lease_seconds() -> int:
    """Age after which a pool lock left by a crashed writer is ignored."""
    return max(1, _int_env("MATCH_POOL_LOCK_LEASE_SECONDS", "30"))


@lru_cache(maxsize=1)
def pool_lock_wait_seconds() -> float:
    """How long opt-in changes and triggers wait for another writer's pool lock."""
    raw = os.getenv("MATCH_POOL_LOCK_WAIT_SECONDS", "5")
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return 5.0
