"""
Queue reorder configuration.

Values come from the environment (a local .env is honoured) so a deployment
can retune the solver and plan lifetime without a code change.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

_ENV_PREFIX = "QUEUE_REORDER_"


@dataclass(frozen=True)
class QueueReorderOptions:
    mature_policy_default: str = "Defer"
    plan_ttl_seconds: int = 600
    default_movement_cap: int = 4
    confirmation_threshold: int = 6
    frozen_head_count: int = 2
    solver_time_seconds: float = 2.0
    solver_num_workers: int = 8
    solver_random_seed: Optional[int] = None
    movement_weight: int = 100
    spacing_weight: int = 250
    round_fairness_weight: int = 1000


def _env(name: str) -> Optional[str]:
    value = os.getenv(_ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value is not None else default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    return float(value) if value is not None else default


def load_queue_reorder_options() -> QueueReorderOptions:
    """Build options from QUEUE_REORDER_* environment variables.

    Raises ValueError when a numeric variable cannot be parsed.
    """
    defaults = QueueReorderOptions()
    seed = _env("SOLVER_RANDOM_SEED")

    return QueueReorderOptions(
        mature_policy_default=_env("MATURE_POLICY_DEFAULT") or defaults.mature_policy_default,
        plan_ttl_seconds=_env_int("PLAN_TTL_SECONDS", defaults.plan_ttl_seconds),
        default_movement_cap=_env_int("DEFAULT_MOVEMENT_CAP", defaults.default_movement_cap),
        confirmation_threshold=_env_int("CONFIRMATION_THRESHOLD", defaults.confirmation_threshold),
        frozen_head_count=_env_int("FROZEN_HEAD_COUNT", defaults.frozen_head_count),
        solver_time_seconds=_env_float("SOLVER_TIME_SECONDS", defaults.solver_time_seconds),
        solver_num_workers=_env_int("SOLVER_WORKERS", defaults.solver_num_workers),
        solver_random_seed=int(seed) if seed is not None else None,
        movement_weight=_env_int("MOVEMENT_WEIGHT", defaults.movement_weight),
        spacing_weight=_env_int("SPACING_WEIGHT", defaults.spacing_weight),
        round_fairness_weight=_env_int("ROUND_FAIRNESS_WEIGHT", defaults.round_fairness_weight),
    )
