"""
Queue Reorder Coordinator: two-phase preview/apply for rebalancing a live
karaoke queue.

Preview:
  1. Load the live queue and its version token.
  2. Split into frozen head / optimized window / untouched tail (horizon).
  3. Run the optimizer on the window.
  4. Merge head + proposal + tail into display positions, cache the plan.

Apply:
  1. Replay a previous success for the same idempotency key.
  2. Look up the plan; compare its based-on version with the caller's and
     with the live queue (optimistic concurrency, no locks between phases).
  3. Write all positions in one transaction, then evict the plan, audit
     and notify.

Staleness, missing plans and write failures are distinct exceptions so the
HTTP layer can tell "refresh and retry" from "retry" from "re-preview".
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from app.config import QueueReorderOptions
from app.services.live_queue_store import (
    LiveQueue,
    LiveQueueEntry,
    LiveQueueStore,
    QueueVersionConflict,
)
from app.services.queue_optimizer import (
    MaturePolicy,
    OptimizationRequest,
    QueueEntrySnapshot,
    QueueOptimizer,
    WARNING_SOLVER_INFEASIBLE,
    ReorderWarning,
    singer_key,
)
from app.services.reorder_plan_cache import ReorderPlan, ReorderPlanCache
from app.utils.queue_version import compute_queue_version, fairness_metric, has_adjacent_repeat

logger = logging.getLogger(__name__)

# Audit actions
AUDIT_PREVIEW = "PREVIEW"
AUDIT_APPLY = "APPLY"
AUDIT_REJECT = "REJECT"

# Error / warning codes
CODE_QUEUE_EMPTY = "QUEUE_EMPTY"
CODE_NOTHING_TO_REORDER = "NOTHING_TO_REORDER"
CODE_ALL_MATURE_DEFERRED = "ALL_MATURE_DEFERRED"
CODE_NO_CHANGES = "NO_CHANGES"
CODE_TAIL_UNCHANGED = "TAIL_UNCHANGED"
CODE_BASED_ON_VERSION_STALE = "BASED_ON_VERSION_STALE"
CODE_PLAN_NOT_FOUND = "PLAN_NOT_FOUND_OR_EXPIRED"
CODE_PLAN_STALE = "PLAN_STALE"
CODE_PLAN_EVENT_MISMATCH = "PLAN_EVENT_MISMATCH"
CODE_APPLY_FAILED = "REORDER_APPLY_FAILED"

REASON_LOCKED = "Locked at the head of the queue."
REASON_OUTSIDE_HORIZON = "Outside optimization horizon."

FALLBACK_PLAN_TTL_SECONDS = 600


# ── Errors ──────────────────────────────────────────────────────────────


class QueueReorderError(Exception):
    code = "QUEUE_REORDER_ERROR"

    def __init__(self, message: str, warnings: Optional[List[ReorderWarning]] = None):
        super().__init__(message)
        self.message = message
        self.warnings: List[ReorderWarning] = list(warnings or [])


class ReorderPreviewRejected(QueueReorderError):
    """No plan can be produced for the current queue and settings."""

    def __init__(self, code: str, message: str, warnings: Optional[List[ReorderWarning]] = None):
        super().__init__(message, warnings)
        self.code = code


class PlanNotFoundError(QueueReorderError):
    code = CODE_PLAN_NOT_FOUND

    def __init__(self, plan_id: str):
        super().__init__("Reorder plan not found or has expired.")
        self.plan_id = plan_id


class PlanEventMismatchError(QueueReorderError):
    code = CODE_PLAN_EVENT_MISMATCH

    def __init__(self, plan_id: str, event_id: int):
        super().__init__("Reorder plan does not belong to the requested event.")
        self.plan_id = plan_id
        self.event_id = event_id


class PlanStaleError(QueueReorderError):
    code = CODE_PLAN_STALE

    def __init__(self, message: str, expected_version: str, current_version: Optional[str] = None):
        super().__init__(message)
        self.expected_version = expected_version
        self.current_version = current_version


class ReorderApplyFailed(QueueReorderError):
    """Persisting positions failed; nothing was written and the plan stays cached."""

    code = CODE_APPLY_FAILED

    def __init__(self, plan_id: str):
        super().__init__("An error occurred while applying the reorder plan. The plan is still valid; retry.")
        self.plan_id = plan_id


# ── Results ─────────────────────────────────────────────────────────────


@dataclass
class PreviewItem:
    queue_id: int
    original_index: int
    display_index: int
    song_title: str
    song_artist: str
    requestor: str
    is_mature: bool
    is_locked: bool = False
    is_deferred: bool = False
    movement: int = 0
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReorderSummary:
    move_count: int
    fairness_before: float
    fairness_after: float
    no_adjacent_repeat: bool
    requires_confirmation: bool


@dataclass(frozen=True)
class ReorderPreview:
    plan_id: str
    based_on_version: str
    proposed_version: str
    expires_at: datetime
    is_stale: bool
    summary: ReorderSummary
    items: List[PreviewItem]
    warnings: List[ReorderWarning]


@dataclass(frozen=True)
class ReorderApplyResult:
    applied_version: str
    move_count: int
    applied_at: datetime
    moved_queue_ids: List[int]


@dataclass(frozen=True)
class QueueReorderApplied:
    """What a broadcast layer needs to tell viewers the queue changed."""

    event_id: int
    version: str
    moved_queue_ids: List[int]
    move_count: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _warning_dicts(warnings: List[ReorderWarning]) -> List[Dict[str, str]]:
    return [{"code": w.code, "message": w.message} for w in warnings]


class QueueReorderCoordinator:
    def __init__(
        self,
        optimizer: QueueOptimizer,
        plan_cache: ReorderPlanCache,
        options: QueueReorderOptions,
        notifier: Optional[Callable[[QueueReorderApplied], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.optimizer = optimizer
        self.plan_cache = plan_cache
        self.options = options
        self.notifier = notifier
        self._clock = clock
        # (plan_id, idempotency_key) -> (expires_at, event_id, result)
        self._applied: Dict[Tuple[str, str], Tuple[datetime, int, ReorderApplyResult]] = {}
        self._applied_lock = threading.Lock()

    # ── Helpers ─────────────────────────────────────────────────────────

    @property
    def plan_ttl_seconds(self) -> int:
        ttl = self.options.plan_ttl_seconds
        return ttl if ttl > 0 else FALLBACK_PLAN_TTL_SECONDS

    def resolve_mature_policy(self, requested: Optional[str]) -> MaturePolicy:
        return (
            MaturePolicy.parse(requested)
            or MaturePolicy.parse(self.options.mature_policy_default)
            or MaturePolicy.DEFER
        )

    def _resolve_movement_cap(self, requested: Optional[int]) -> Optional[int]:
        cap = requested if requested is not None else self.options.default_movement_cap
        if cap is None or cap <= 0:
            return None
        return cap

    def _build_request(
        self,
        entries: List[LiveQueueEntry],
        locked_count: int,
        window: int,
        policy: MaturePolicy,
        movement_cap: Optional[int],
    ) -> OptimizationRequest:
        turns: Dict[str, int] = {}
        last_seen: Dict[str, int] = {}
        snapshots: List[QueueEntrySnapshot] = []

        for absolute, entry in enumerate(entries[: locked_count + window]):
            key = singer_key(entry.requestor_name)
            if absolute >= locked_count:
                snapshots.append(
                    QueueEntrySnapshot(
                        queue_id=entry.queue_id,
                        original_index=absolute - locked_count,
                        requestor_name=entry.requestor_name,
                        is_mature=entry.is_mature,
                        historical_turn_count=turns.get(key, 0),
                        absolute_original_index=absolute,
                        previous_absolute_index=last_seen.get(key),
                    )
                )
            turns[key] = turns.get(key, 0) + 1
            last_seen[key] = absolute

        return OptimizationRequest(
            items=snapshots,
            mature_policy=policy,
            movement_cap=movement_cap,
            max_solve_seconds=self.options.solver_time_seconds,
            random_seed=self.options.solver_random_seed,
            num_search_workers=self.options.solver_num_workers,
            locked_head_count=locked_count,
        )

    # ── Preview ─────────────────────────────────────────────────────────

    def preview(
        self,
        store: LiveQueueStore,
        event_id: int,
        based_on_version: Optional[str] = None,
        mature_policy: Optional[str] = None,
        horizon: Optional[int] = None,
        movement_cap: Optional[int] = None,
        user_name: Optional[str] = None,
        override_head_lock: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReorderPreview:
        queue: LiveQueue = store.load_queue(event_id)
        entries = queue.entries
        if not entries:
            raise ReorderPreviewRejected(CODE_QUEUE_EMPTY, "No songs are available to reorder.")

        warnings: List[ReorderWarning] = []
        is_stale = bool(based_on_version) and based_on_version != queue.version
        if is_stale:
            warnings.append(
                ReorderWarning(
                    CODE_BASED_ON_VERSION_STALE,
                    "The queue changed since the version you were viewing; this preview uses the current queue.",
                )
            )

        locked_count = 0 if override_head_lock else min(max(self.options.frozen_head_count, 0), len(entries))
        reorderable = entries[locked_count:]
        if not reorderable:
            raise ReorderPreviewRejected(
                CODE_NOTHING_TO_REORDER,
                "No reorderable items remain once locked positions are considered.",
            )

        window = min(horizon, len(reorderable)) if horizon is not None and horizon > 0 else len(reorderable)
        active = reorderable[:window]
        tail = reorderable[window:]

        policy = self.resolve_mature_policy(mature_policy)
        if policy == MaturePolicy.DEFER and all(e.is_mature for e in active):
            warning = ReorderWarning(
                CODE_ALL_MATURE_DEFERRED,
                "All reorderable entries are mature and cannot be advanced while the defer policy is active.",
            )
            raise ReorderPreviewRejected(
                CODE_ALL_MATURE_DEFERRED, "All reorderable entries are mature under the current policy.", [warning]
            )

        cap = self._resolve_movement_cap(movement_cap)
        request = self._build_request(entries, locked_count, window, policy, cap)
        result = self.optimizer.optimize(request, cancel_event)

        if not result.is_feasible:
            raise ReorderPreviewRejected(
                WARNING_SOLVER_INFEASIBLE,
                "Unable to generate a reorder preview with the provided constraints.",
                result.warnings,
            )
        if result.is_no_op:
            raise ReorderPreviewRejected(
                CODE_NO_CHANGES, "The optimization did not change the queue order.", result.warnings
            )

        warnings.extend(result.warnings)
        if tail:
            warnings.append(ReorderWarning(CODE_TAIL_UNCHANGED, "Entries beyond the selected horizon remain unchanged."))

        items = self._merge_items(entries, locked_count, active, tail, result)
        final_ordered = sorted(items, key=lambda i: i.display_index)

        base_position = queue.base_position
        assignments = [
            {"queue_id": item.queue_id, "position": base_position + item.display_index}
            for item in final_ordered
        ]
        proposed_version = compute_queue_version(
            (item.queue_id, base_position + item.display_index, item.requestor, item.is_mature)
            for item in final_ordered
        )

        move_count = sum(1 for item in final_ordered if item.movement != 0)
        threshold = self.options.confirmation_threshold
        summary = ReorderSummary(
            move_count=move_count,
            fairness_before=fairness_metric([e.requestor_name for e in entries]),
            fairness_after=fairness_metric([i.requestor for i in final_ordered]),
            no_adjacent_repeat=not has_adjacent_repeat([i.requestor for i in final_ordered]),
            requires_confirmation=move_count > threshold
            or any(abs(i.movement) >= threshold for i in final_ordered),
        )

        now = self._clock()
        ttl_seconds = self.plan_ttl_seconds
        metadata = {
            "summary": asdict(summary),
            "warnings": _warning_dicts(warnings),
            "locked_count": locked_count,
            "horizon": window,
            "movement_cap": cap,
        }
        plan = ReorderPlan(
            plan_id=uuid.uuid4().hex,
            event_id=event_id,
            based_on_version=queue.version,
            proposed_version=proposed_version,
            mature_policy=policy.value,
            move_count=move_count,
            plan_json=json.dumps(assignments),
            metadata_json=json.dumps(metadata),
            created_by=user_name,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

        store.record_audit(
            event_id=event_id,
            plan_id=plan.plan_id,
            action=AUDIT_PREVIEW,
            user_name=user_name,
            mature_policy=policy.value,
            payload_json=json.dumps({"summary": asdict(summary), "warnings": _warning_dicts(warnings)}),
        )
        self.plan_cache.set(plan, ttl_seconds)

        logger.info(
            "Generated reorder preview plan %s for event %d with %d moves",
            plan.plan_id,
            event_id,
            move_count,
        )

        return ReorderPreview(
            plan_id=plan.plan_id,
            based_on_version=queue.version,
            proposed_version=proposed_version,
            expires_at=plan.expires_at,
            is_stale=is_stale,
            summary=summary,
            items=final_ordered,
            warnings=warnings,
        )

    @staticmethod
    def _merge_items(entries, locked_count, active, tail, result) -> List[PreviewItem]:
        proposed = {a.queue_id: a.proposed_index for a in result.assignments}
        plan_items = {p.queue_id: p for p in result.plan_items}
        items: List[PreviewItem] = []

        for absolute, entry in enumerate(entries):
            item = PreviewItem(
                queue_id=entry.queue_id,
                original_index=absolute,
                display_index=absolute,
                song_title=entry.song_title,
                song_artist=entry.song_artist,
                requestor=entry.requestor_name,
                is_mature=entry.is_mature,
            )
            if absolute < locked_count:
                item.is_locked = True
                item.reasons.append(REASON_LOCKED)
            elif absolute < locked_count + len(active):
                item.display_index = locked_count + proposed[entry.queue_id]
                item.movement = item.display_index - absolute
                plan_item = plan_items[entry.queue_id]
                item.is_deferred = plan_item.is_deferred
                item.reasons.extend(plan_item.reasons)
            else:
                # Tail keeps its relative order after the optimized window.
                item.reasons.append(REASON_OUTSIDE_HORIZON)
            items.append(item)

        return items

    # ── Apply ───────────────────────────────────────────────────────────

    def _replay(self, plan_id: str, idempotency_key: str, event_id: int) -> Optional[ReorderApplyResult]:
        with self._applied_lock:
            self._sweep_applied(self._clock())
            record = self._applied.get((plan_id, idempotency_key))
        if record is None:
            return None
        _, recorded_event_id, result = record
        if recorded_event_id != event_id:
            raise PlanEventMismatchError(plan_id, event_id)
        return result

    def _sweep_applied(self, now) -> None:
        # Caller holds _applied_lock.
        for key in [k for k, (deadline, _, _) in self._applied.items() if now >= deadline]:
            del self._applied[key]

    def _remember(self, plan_id: str, idempotency_key: str, event_id: int, result: ReorderApplyResult) -> None:
        now = self._clock()
        deadline = now + timedelta(seconds=self.plan_ttl_seconds)
        with self._applied_lock:
            self._sweep_applied(now)
            self._applied[(plan_id, idempotency_key)] = (deadline, event_id, result)

    def _audit_rejection(
        self, store: LiveQueueStore, plan: ReorderPlan, user_name: Optional[str], error: PlanStaleError
    ) -> PlanStaleError:
        try:
            store.record_audit(
                event_id=plan.event_id,
                plan_id=plan.plan_id,
                action=AUDIT_REJECT,
                user_name=user_name,
                mature_policy=plan.mature_policy,
                payload_json=json.dumps(
                    {
                        "reason": error.message,
                        "expected_version": error.expected_version,
                        "current_version": error.current_version,
                    }
                ),
            )
        except Exception:
            logger.exception("Failed to record the rejection audit for reorder plan %s", plan.plan_id)
        logger.info("Rejected stale reorder plan %s for event %d", plan.plan_id, plan.event_id)
        return error

    def apply(
        self,
        store: LiveQueueStore,
        event_id: int,
        plan_id: str,
        based_on_version: str,
        idempotency_key: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> ReorderApplyResult:
        if idempotency_key:
            prior = self._replay(plan_id, idempotency_key, event_id)
            if prior is not None:
                logger.info("Replaying reorder apply for plan %s (idempotency key %s)", plan_id, idempotency_key)
                return prior

        plan = self.plan_cache.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        if plan.event_id != event_id:
            raise PlanEventMismatchError(plan_id, event_id)

        if based_on_version != plan.based_on_version:
            raise self._audit_rejection(
                store,
                plan,
                user_name,
                PlanStaleError("Queue version mismatch for the provided plan.", plan.based_on_version),
            )

        queue = store.load_queue(event_id)
        if queue.version != plan.based_on_version:
            raise self._audit_rejection(
                store,
                plan,
                user_name,
                PlanStaleError(
                    "Queue state has changed since the plan was generated.",
                    plan.based_on_version,
                    queue.version,
                ),
            )

        positions = {int(a["queue_id"]): int(a["position"]) for a in json.loads(plan.plan_json)}
        current_positions = {e.queue_id: e.position for e in queue.entries}
        moved_queue_ids = sorted(
            qid for qid, position in positions.items() if current_positions.get(qid) != position
        )

        try:
            applied_version = store.write_positions(event_id, positions, plan.based_on_version)
        except QueueVersionConflict as exc:
            if idempotency_key:
                prior = self._replay(plan_id, idempotency_key, event_id)
                if prior is not None:
                    return prior
            raise self._audit_rejection(
                store,
                plan,
                user_name,
                PlanStaleError(
                    "Queue state has changed since the plan was generated.",
                    plan.based_on_version,
                    exc.current_version,
                ),
            ) from exc
        except Exception as exc:
            logger.exception("Error applying reorder plan %s for event %d", plan_id, event_id)
            raise ReorderApplyFailed(plan_id) from exc

        # Positions are committed; only now drop the plan and record the apply.
        self.plan_cache.remove(plan_id)
        result = ReorderApplyResult(
            applied_version=applied_version,
            move_count=plan.move_count,
            applied_at=self._clock(),
            moved_queue_ids=moved_queue_ids,
        )
        if idempotency_key:
            self._remember(plan_id, idempotency_key, event_id, result)

        try:
            store.record_audit(
                event_id=event_id,
                plan_id=plan_id,
                action=AUDIT_APPLY,
                user_name=user_name,
                mature_policy=plan.mature_policy,
                payload_json=plan.plan_json,
            )
        except Exception:
            logger.exception("Applied reorder plan %s but failed to record the audit entry", plan_id)

        logger.info("Applied reorder plan %s for event %d (%d moves)", plan_id, event_id, plan.move_count)
        self._notify(QueueReorderApplied(event_id, applied_version, moved_queue_ids, plan.move_count))
        return result

    def _notify(self, message: QueueReorderApplied) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(message)
        except Exception:
            logger.exception("Queue reorder notification failed for event %d", message.event_id)

    # ── Cancel ──────────────────────────────────────────────────────────

    def cancel(self, event_id: int, plan_id: str) -> bool:
        plan = self.plan_cache.get(plan_id)
        if plan is None:
            return False
        if plan.event_id != event_id:
            raise PlanEventMismatchError(plan_id, event_id)
        self.plan_cache.remove(plan_id)
        logger.info("Cancelled reorder plan %s for event %d", plan_id, event_id)
        return True
