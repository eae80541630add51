"""
Tests for QUEUE_REORDER_* environment configuration
"""

import pytest

from app.config import QueueReorderOptions, load_queue_reorder_options
from app.main import create_reorder_coordinator


def test_defaults_without_environment(monkeypatch):
    for name in (
        "MATURE_POLICY_DEFAULT",
        "PLAN_TTL_SECONDS",
        "DEFAULT_MOVEMENT_CAP",
        "FROZEN_HEAD_COUNT",
        "SOLVER_RANDOM_SEED",
    ):
        monkeypatch.delenv(f"QUEUE_REORDER_{name}", raising=False)

    options = load_queue_reorder_options()

    assert options.mature_policy_default == "Defer"
    assert options.plan_ttl_seconds == 600
    assert options.default_movement_cap == 4
    assert options.frozen_head_count == 2
    assert options.solver_random_seed is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("QUEUE_REORDER_MATURE_POLICY_DEFAULT", "Allow")
    monkeypatch.setenv("QUEUE_REORDER_PLAN_TTL_SECONDS", "120")
    monkeypatch.setenv("QUEUE_REORDER_SOLVER_TIME_SECONDS", "0.5")
    monkeypatch.setenv("QUEUE_REORDER_SOLVER_WORKERS", "2")
    monkeypatch.setenv("QUEUE_REORDER_SOLVER_RANDOM_SEED", "42")
    monkeypatch.setenv("QUEUE_REORDER_SPACING_WEIGHT", "300")

    options = load_queue_reorder_options()

    assert options.mature_policy_default == "Allow"
    assert options.plan_ttl_seconds == 120
    assert options.solver_time_seconds == 0.5
    assert options.solver_num_workers == 2
    assert options.solver_random_seed == 42
    assert options.spacing_weight == 300


def test_blank_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("QUEUE_REORDER_CONFIRMATION_THRESHOLD", "  ")

    assert load_queue_reorder_options().confirmation_threshold == 6


def test_malformed_number_raises(monkeypatch):
    monkeypatch.setenv("QUEUE_REORDER_FROZEN_HEAD_COUNT", "two")

    with pytest.raises(ValueError):
        load_queue_reorder_options()


def test_coordinator_uses_configured_weights():
    options = QueueReorderOptions(movement_weight=10, spacing_weight=20, round_fairness_weight=30)

    coordinator = create_reorder_coordinator(options)

    assert coordinator.options is options
    assert coordinator.optimizer.weights.movement == 10
    assert coordinator.optimizer.weights.spacing == 20
    assert coordinator.optimizer.weights.round_fairness == 30


def test_unknown_default_policy_falls_back_to_defer():
    coordinator = create_reorder_coordinator(QueueReorderOptions(mature_policy_default="sometimes"))

    assert coordinator.resolve_mature_policy(None).value == "Defer"
    assert coordinator.resolve_mature_policy("ALLOW").value == "Allow"
