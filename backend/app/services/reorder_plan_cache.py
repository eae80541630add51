"""
Reorder Plan Cache

Holds proposed queue reorder plans between preview and apply. Plans are
immutable; a changed configuration produces a new plan under a new id.
Expiry is lazy: an entry past its deadline is dropped on the next read, and
expired entries are swept whenever a new plan is stored.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_PLAN_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class ReorderPlan:
    plan_id: str
    event_id: int
    based_on_version: str
    proposed_version: str
    mature_policy: str
    move_count: int
    plan_json: str
    created_at: datetime
    expires_at: datetime
    metadata_json: Optional[str] = None
    created_by: Optional[str] = None


class ReorderPlanCache(ABC):
    @abstractmethod
    def get(self, plan_id: str) -> Optional[ReorderPlan]:
        raise NotImplementedError

    @abstractmethod
    def set(self, plan: ReorderPlan, ttl_seconds: float) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove(self, plan_id: str) -> None:
        raise NotImplementedError


class InMemoryReorderPlanCache(ReorderPlanCache):
    """Single-process plan store.

    Every operation holds the lock only long enough to touch the dict, so
    concurrent previews and applies never see a half-written entry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, ReorderPlan]] = {}
        self._lock = threading.Lock()

    def get(self, plan_id: str) -> Optional[ReorderPlan]:
        with self._lock:
            entry = self._entries.get(plan_id)
            if entry is None:
                return None
            deadline, plan = entry
            if self._clock() >= deadline:
                del self._entries[plan_id]
                logger.debug("Reorder plan %s expired", plan_id)
                return None
            return plan

    def set(self, plan: ReorderPlan, ttl_seconds: float) -> None:
        if plan is None:
            raise ValueError("plan is required")
        if ttl_seconds is None or ttl_seconds <= 0:
            ttl_seconds = DEFAULT_PLAN_TTL_SECONDS

        logger.info("Caching queue reorder plan %s for %.0fs", plan.plan_id, ttl_seconds)
        with self._lock:
            now = self._clock()
            expired = [key for key, (deadline, _) in self._entries.items() if now >= deadline]
            for key in expired:
                del self._entries[key]
            self._entries[plan.plan_id] = (now + ttl_seconds, plan)

    def remove(self, plan_id: str) -> None:
        logger.debug("Evicting queue reorder plan %s from cache", plan_id)
        with self._lock:
            self._entries.pop(plan_id, None)
