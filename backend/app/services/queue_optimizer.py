"""
Queue Optimizer: CP-SAT model that proposes a new order for the reorderable
part of a karaoke queue.

The optimizer is a pure function of its request: it never touches the
database or the plan cache. Callers get back a proposed permutation plus
per-entry explanations.

Model (count >= 2):
  - one position variable per entry, all different (a permutation)
  - movement |pos - original|, optionally capped, weighted by (1 + turns)
  - Defer policy: every mature entry after every non-mature entry (hard)
  - same-singer spacing: consecutive occurrences at least 2 apart (hard),
    limited to as many pairs as there are other singers to interleave
  - cross-round spacing: gap to the singer's previous turn (soft, slack)
  - round fairness: singers with more turns pushed toward later rounds
    (soft, slack)

Objective weights keep movement < spacing < round fairness by orders of
magnitude; the literal values come from configuration.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ortools.sat.python import cp_model

logger = logging.getLogger(__name__)

# Warning codes
WARNING_SOLVER_INFEASIBLE = "SOLVER_INFEASIBLE"

# Reason strings surfaced to the operator
REASON_MOVED_EARLIER = "Moved earlier to improve rotation balance."
REASON_MOVED_LATER = "Moved later to balance wait times."
REASON_BACK_TO_BACK = "Moved later to avoid back-to-back turns for the same singer."
REASON_MATURE_DEFERRED = "Deferred due to mature content policy."
REASON_SPACING_UNMET = "Unable to fully separate this singer due to current queue constraints."
REASON_ROUND_FAIRNESS = "Moved later to allow singers with fewer turns to go first."

MIN_SOLVE_SECONDS = 0.1
SAME_SINGER_MIN_GAP = 2
_CANCEL_POLL_SECONDS = 0.05


class MaturePolicy(str, Enum):
    DEFER = "Defer"
    ALLOW = "Allow"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["MaturePolicy"]:
        """Case-insensitive lookup; None when the value is blank or unknown."""
        if value is None:
            return None
        text = value.strip().lower()
        for policy in cls:
            if policy.value.lower() == text:
                return policy
        return None


class QueueOptimizerInputError(ValueError):
    """Malformed optimizer request (a bug in the caller, not a runtime condition)."""


class QueueOptimizationCancelled(Exception):
    """The caller cancelled the search before the solver finished."""


@dataclass(frozen=True)
class QueueEntrySnapshot:
    queue_id: int
    original_index: int
    requestor_name: str
    is_mature: bool
    historical_turn_count: int = 0
    absolute_original_index: int = 0
    previous_absolute_index: Optional[int] = None


@dataclass(frozen=True)
class OptimizationRequest:
    items: Sequence[QueueEntrySnapshot]
    mature_policy: MaturePolicy = MaturePolicy.DEFER
    movement_cap: Optional[int] = None
    max_solve_seconds: float = 2.0
    random_seed: Optional[int] = None
    num_search_workers: int = 8
    locked_head_count: int = 0


@dataclass(frozen=True)
class Assignment:
    queue_id: int
    proposed_index: int


@dataclass(frozen=True)
class ReorderWarning:
    code: str
    message: str


@dataclass(frozen=True)
class PlanItem:
    queue_id: int
    original_index: int
    proposed_index: int
    requestor_name: str
    is_mature: bool
    is_deferred: bool
    movement: int
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class OptimizationResult:
    is_feasible: bool
    is_no_op: bool
    assignments: List[Assignment] = field(default_factory=list)
    plan_items: List[PlanItem] = field(default_factory=list)
    warnings: List[ReorderWarning] = field(default_factory=list)


@dataclass(frozen=True)
class OptimizerWeights:
    movement: int = 100
    spacing: int = 250
    round_fairness: int = 1000


@dataclass
class _SpacingTarget:
    """Soft gap between an entry and the singer's previous turn.

    Exactly one of previous_item / previous_relative_index is set.
    """

    item_index: int
    gap: int
    previous_item: Optional[int] = None
    previous_relative_index: Optional[int] = None


@dataclass
class _ModelContext:
    model: cp_model.CpModel
    positions: List[cp_model.IntVar]
    spaced_items: Set[int] = field(default_factory=set)
    spacing_targets: List[_SpacingTarget] = field(default_factory=list)
    fairness_targets: Dict[int, int] = field(default_factory=dict)
    non_mature_count: int = 0


class QueueOptimizer(ABC):
    """Turns a snapshot of reorderable entries into a proposed order."""

    @abstractmethod
    def optimize(
        self,
        request: OptimizationRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> OptimizationResult:
        raise NotImplementedError


def singer_key(name: Optional[str]) -> str:
    """Requestor identity used for rotation: trimmed and case-insensitive."""
    return (name or "").strip().casefold()


def validate_request(request: OptimizationRequest) -> None:
    """Raise QueueOptimizerInputError if the request cannot describe a queue."""
    count = len(request.items)
    seen_ids: Set[int] = set()
    seen_indexes: Set[int] = set()
    for item in request.items:
        if item.queue_id in seen_ids:
            raise QueueOptimizerInputError(f"Duplicate queue id {item.queue_id} in optimizer request")
        seen_ids.add(item.queue_id)
        if item.original_index < 0 or item.original_index >= count:
            raise QueueOptimizerInputError(
                f"Original index {item.original_index} for queue id {item.queue_id} is outside [0, {count - 1}]"
            )
        if item.original_index in seen_indexes:
            raise QueueOptimizerInputError(f"Original index {item.original_index} appears more than once")
        seen_indexes.add(item.original_index)

    if request.movement_cap is not None and request.movement_cap < 0:
        raise QueueOptimizerInputError(f"Movement cap must not be negative (got {request.movement_cap})")
    if request.locked_head_count < 0:
        raise QueueOptimizerInputError("Locked head count must not be negative")


def _passthrough(items: Sequence[QueueEntrySnapshot]) -> OptimizationResult:
    return OptimizationResult(
        is_feasible=True,
        is_no_op=True,
        assignments=[Assignment(i.queue_id, i.original_index) for i in items],
        plan_items=[
            PlanItem(
                queue_id=i.queue_id,
                original_index=i.original_index,
                proposed_index=i.original_index,
                requestor_name=i.requestor_name,
                is_mature=i.is_mature,
                is_deferred=False,
                movement=0,
            )
            for i in items
        ],
    )


def _enforceable_pairs(
    occurrences: Dict[str, List[int]],
    items: Sequence[QueueEntrySnapshot],
) -> List[Tuple[int, int]]:
    """Consecutive same-singer pairs that can be spaced without making the
    block infeasible: min(other singers, occurrences - 1) per singer."""
    pairs: List[Tuple[int, int]] = []
    distinct = len(occurrences)
    for indexes in occurrences.values():
        if len(indexes) < 2:
            continue
        ordered = sorted(indexes, key=lambda idx: items[idx].original_index)
        enforceable = min(distinct - 1, len(ordered) - 1)
        for k in range(enforceable):
            pairs.append((ordered[k], ordered[k + 1]))
    return pairs


class CpSatQueueOptimizer(QueueOptimizer):
    def __init__(self, weights: Optional[OptimizerWeights] = None):
        self.weights = weights or OptimizerWeights()

    def optimize(
        self,
        request: OptimizationRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> OptimizationResult:
        validate_request(request)
        if cancel_event is not None and cancel_event.is_set():
            raise QueueOptimizationCancelled("Queue optimization cancelled before solving")

        if len(request.items) <= 1:
            return _passthrough(request.items)

        ctx = self._build_model(request)
        solver, status = self._solve(ctx.model, request, cancel_event)
        logger.info(
            "Queue optimization solver status: %s (%d entries, %.3fs wall)",
            solver.status_name(status),
            len(request.items),
            solver.wall_time,
        )

        if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
            logger.warning("Queue optimization infeasible: status %s", solver.status_name(status))
            return OptimizationResult(
                is_feasible=False,
                is_no_op=True,
                warnings=[
                    ReorderWarning(
                        WARNING_SOLVER_INFEASIBLE,
                        "The queue optimizer could not find a feasible solution with the provided constraints.",
                    )
                ],
            )

        proposed = [int(solver.value(var)) for var in ctx.positions]
        return self._build_result(request, ctx, proposed)

    # ── Model ───────────────────────────────────────────────────────────

    def _build_model(self, request: OptimizationRequest) -> _ModelContext:
        items = request.items
        count = len(items)
        max_index = count - 1
        locked = request.locked_head_count
        model = cp_model.CpModel()

        positions = [model.new_int_var(0, max_index, f"pos_{i}") for i in range(count)]
        model.add_all_different(positions)
        ctx = _ModelContext(model=model, positions=positions)
        objective = []

        # Movement
        for i, item in enumerate(items):
            travel = model.new_int_var(0, max_index, f"move_{i}")
            model.add_abs_equality(travel, positions[i] - item.original_index)
            if request.movement_cap is not None:
                model.add(travel <= request.movement_cap)
            weight = (1 + max(item.historical_turn_count, 0)) * self.weights.movement
            objective.append(travel * weight)

        # Mature deferral: with a permutation, "every mature after every
        # non-mature" is the same as "every mature at or after the count of
        # non-mature entries".
        mature = [i for i in range(count) if items[i].is_mature]
        ctx.non_mature_count = count - len(mature)
        defer = request.mature_policy == MaturePolicy.DEFER and bool(mature) and ctx.non_mature_count > 0
        if defer:
            for i in mature:
                model.add(positions[i] >= ctx.non_mature_count)

        # Same-singer spacing (hard, degraded). Under Defer the two maturity
        # blocks are contiguous, so interleaving only happens inside a block.
        if defer:
            blocks = [[i for i in range(count) if not items[i].is_mature], mature]
        else:
            blocks = [list(range(count))]
        for block in blocks:
            occurrences: Dict[str, List[int]] = defaultdict(list)
            for i in block:
                occurrences[singer_key(items[i].requestor_name)].append(i)
            for earlier, later in _enforceable_pairs(occurrences, items):
                model.add(positions[later] >= positions[earlier] + SAME_SINGER_MIN_GAP)
                ctx.spaced_items.add(later)

        # Cross-round spacing and round fairness (soft)
        by_singer: Dict[str, List[int]] = defaultdict(list)
        for i in sorted(range(count), key=lambda idx: items[idx].original_index):
            by_singer[singer_key(items[i].requestor_name)].append(i)
        distinct = len(by_singer)

        for indexes in by_singer.values():
            for position_in_run, i in enumerate(indexes):
                item = items[i]
                turns = max(item.historical_turn_count, 0)
                if turns == 0:
                    continue

                gap = min(turns + 1, distinct)
                if gap >= SAME_SINGER_MIN_GAP:
                    target = self._add_spacing_target(ctx, request, i, indexes[:position_in_run], gap)
                    if target is not None and target.previous_item is not None:
                        slack = model.new_int_var(0, gap + max_index, f"space_slack_{i}")
                        model.add(positions[i] - positions[target.previous_item] + slack >= gap)
                        objective.append(slack * self.weights.spacing)
                    elif target is not None:
                        required_index = target.previous_relative_index + gap
                        slack = model.new_int_var(0, required_index, f"space_slack_{i}")
                        model.add(positions[i] + slack >= required_index)
                        objective.append(slack * self.weights.spacing)

                fairness_target = min(turns * distinct - locked, max_index)
                if fairness_target > 0:
                    ctx.fairness_targets[i] = fairness_target
                    slack = model.new_int_var(0, fairness_target, f"round_slack_{i}")
                    model.add(positions[i] + slack >= fairness_target)
                    objective.append(slack * self.weights.round_fairness)

        model.minimize(sum(objective))
        return ctx

    @staticmethod
    def _add_spacing_target(
        ctx: _ModelContext,
        request: OptimizationRequest,
        item_index: int,
        earlier_in_set: List[int],
        gap: int,
    ) -> Optional[_SpacingTarget]:
        item = request.items[item_index]
        if earlier_in_set:
            target = _SpacingTarget(item_index=item_index, gap=gap, previous_item=earlier_in_set[-1])
        elif item.previous_absolute_index is not None:
            relative = item.previous_absolute_index - request.locked_head_count
            # Already far enough behind the previous turn wherever it lands.
            if relative + gap <= 0:
                return None
            target = _SpacingTarget(item_index=item_index, gap=gap, previous_relative_index=relative)
        else:
            return None
        ctx.spacing_targets.append(target)
        return target

    # ── Solve ───────────────────────────────────────────────────────────

    @staticmethod
    def _solve(
        model: cp_model.CpModel,
        request: OptimizationRequest,
        cancel_event: Optional[threading.Event],
    ):
        solver = cp_model.CpSolver()
        solver.parameters.max_time_in_seconds = max(MIN_SOLVE_SECONDS, float(request.max_solve_seconds))
        solver.parameters.num_workers = max(1, int(request.num_search_workers))
        solver.parameters.log_search_progress = False
        if request.random_seed is not None:
            # Parallel workers race to the incumbent; only a single worker replays a seed.
            solver.parameters.num_workers = 1
            solver.parameters.random_seed = int(request.random_seed)
            solver.parameters.max_deterministic_time = solver.parameters.max_time_in_seconds

        if cancel_event is None:
            return solver, solver.solve(model)

        finished = threading.Event()

        def _watch_cancel() -> None:
            while not finished.is_set():
                if cancel_event.wait(_CANCEL_POLL_SECONDS):
                    # Repeat until solve returns; a stop issued before the search starts is lost.
                    solver.stop_search()
                    finished.wait(_CANCEL_POLL_SECONDS)

        watcher = threading.Thread(target=_watch_cancel, name="queue-optimizer-cancel", daemon=True)
        watcher.start()
        try:
            status = solver.solve(model)
        finally:
            finished.set()
            watcher.join()

        if cancel_event.is_set():
            raise QueueOptimizationCancelled("Queue optimization cancelled during search")
        return solver, status

    # ── Result + reasons ────────────────────────────────────────────────

    @staticmethod
    def _build_result(
        request: OptimizationRequest,
        ctx: _ModelContext,
        proposed: List[int],
    ) -> OptimizationResult:
        items = request.items
        locked = request.locked_head_count

        unmet_spacing: Set[int] = set()
        for target in ctx.spacing_targets:
            if target.previous_item is not None:
                actual = proposed[target.item_index] - proposed[target.previous_item]
            else:
                actual = proposed[target.item_index] - target.previous_relative_index
            if actual < target.gap:
                unmet_spacing.add(target.item_index)

        assignments: List[Assignment] = []
        plan_items: List[PlanItem] = []
        is_no_op = True
        defer_policy = request.mature_policy == MaturePolicy.DEFER

        for i, item in enumerate(items):
            proposed_index = proposed[i]
            movement = proposed_index - item.original_index
            if movement != 0:
                is_no_op = False
            assignments.append(Assignment(item.queue_id, proposed_index))

            reasons: List[str] = []
            if movement < 0:
                reasons.append(REASON_MOVED_EARLIER)
            elif movement > 0:
                reasons.append(REASON_MOVED_LATER)
                if i in ctx.spaced_items:
                    reasons.append(REASON_BACK_TO_BACK)

            is_deferred = False
            if (
                item.is_mature
                and defer_policy
                and ctx.non_mature_count > 0
                and proposed_index >= ctx.non_mature_count
            ):
                is_deferred = True
                reasons.append(REASON_MATURE_DEFERRED)

            if i in unmet_spacing:
                reasons.append(REASON_SPACING_UNMET)

            fairness_target = ctx.fairness_targets.get(i)
            if fairness_target is not None and proposed_index < fairness_target:
                reasons.append(REASON_ROUND_FAIRNESS)

            plan_items.append(
                PlanItem(
                    queue_id=item.queue_id,
                    original_index=item.original_index,
                    proposed_index=proposed_index,
                    requestor_name=item.requestor_name,
                    is_mature=item.is_mature,
                    is_deferred=is_deferred,
                    movement=movement,
                    reasons=reasons,
                )
            )

        if unmet_spacing:
            logger.debug(
                "Spacing targets unmet for %d of %d entries (locked head %d)",
                len(unmet_spacing),
                len(items),
                locked,
            )

        return OptimizationResult(
            is_feasible=True,
            is_no_op=is_no_op,
            assignments=assignments,
            plan_items=plan_items,
        )
