"""
Tests for the in-memory reorder plan cache

Tests:
- Stored plans are returned until their TTL elapses, then vanish
- Non-positive TTL falls back to the default lifetime
- Storing under an existing id replaces the plan
- Remove is idempotent
- Concurrent writers do not lose plans
"""

import threading
from datetime import datetime, timezone

import pytest

from app.services.reorder_plan_cache import (
    DEFAULT_PLAN_TTL_SECONDS,
    InMemoryReorderPlanCache,
    ReorderPlan,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _plan(plan_id="plan-1", event_id=1, move_count=2):
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return ReorderPlan(
        plan_id=plan_id,
        event_id=event_id,
        based_on_version="v1",
        proposed_version="v2",
        mature_policy="Defer",
        move_count=move_count,
        plan_json="[]",
        created_at=created,
        expires_at=created,
    )


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="cache")
def cache_fixture(clock):
    return InMemoryReorderPlanCache(clock=clock)


def test_get_returns_stored_plan(cache):
    plan = _plan()
    cache.set(plan, 60)

    assert cache.get("plan-1") is plan


def test_unknown_plan_is_none(cache):
    assert cache.get("missing") is None


def test_plan_expires_after_ttl(cache, clock):
    """A plan is visible just before its deadline and gone at it"""
    cache.set(_plan(), 60)

    clock.advance(59.9)
    assert cache.get("plan-1") is not None

    clock.advance(0.1)
    assert cache.get("plan-1") is None

    # Stays gone once evicted.
    clock.now -= 30
    assert cache.get("plan-1") is None


@pytest.mark.parametrize("ttl", [0, -5, None])
def test_non_positive_ttl_uses_default(cache, clock, ttl):
    cache.set(_plan(), ttl)

    clock.advance(DEFAULT_PLAN_TTL_SECONDS - 1)
    assert cache.get("plan-1") is not None

    clock.advance(1)
    assert cache.get("plan-1") is None


def test_set_replaces_existing_plan(cache):
    cache.set(_plan(move_count=1), 60)
    replacement = _plan(move_count=5)
    cache.set(replacement, 60)

    assert cache.get("plan-1") is replacement


def test_set_none_rejected(cache):
    with pytest.raises(ValueError):
        cache.set(None, 60)


def test_remove_is_idempotent(cache):
    cache.set(_plan(), 60)

    cache.remove("plan-1")
    cache.remove("plan-1")
    cache.remove("never-stored")

    assert cache.get("plan-1") is None


def test_remove_leaves_other_plans(cache):
    cache.set(_plan("a"), 60)
    cache.set(_plan("b"), 60)

    cache.remove("a")

    assert cache.get("a") is None
    assert cache.get("b") is not None


def test_concurrent_sets_keep_every_plan():
    """Many threads storing distinct plans never lose one"""
    cache = InMemoryReorderPlanCache()
    barrier = threading.Barrier(8)

    def worker(offset):
        barrier.wait()
        for i in range(50):
            cache.set(_plan(f"plan-{offset}-{i}"), 60)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    for offset in range(8):
        for i in range(50):
            assert cache.get(f"plan-{offset}-{i}") is not None
