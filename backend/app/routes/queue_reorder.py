"""
Queue reorder endpoints: DJ-facing preview / apply / cancel.

The coordinator does the work; this router only translates request bodies
and maps domain errors onto HTTP status codes.
"""
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel
from sqlmodel import Session

from app.database import get_session
from app.services.live_queue_store import EventNotFoundError, SqlLiveQueueStore
from app.services.queue_optimizer import ReorderWarning
from app.services.queue_reorder import (
    PlanEventMismatchError,
    PlanNotFoundError,
    PlanStaleError,
    QueueReorderCoordinator,
    ReorderApplyFailed,
    ReorderPreviewRejected,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request / response models ───────────────────────────────────────────


class ReorderPreviewRequest(BaseModel):
    based_on_version: Optional[str] = None
    mature_policy: Optional[str] = None  # "Defer" | "Allow"
    horizon: Optional[int] = None
    movement_cap: Optional[int] = None
    override_head_lock: bool = False


class ReorderApplyRequest(BaseModel):
    plan_id: str
    based_on_version: str
    idempotency_key: Optional[str] = None


class ReorderWarningItem(BaseModel):
    code: str
    message: str


class ReorderSummaryItem(BaseModel):
    move_count: int
    fairness_before: float
    fairness_after: float
    no_adjacent_repeat: bool
    requires_confirmation: bool


class ReorderPreviewItem(BaseModel):
    queue_id: int
    original_index: int
    display_index: int
    song_title: str
    song_artist: str
    requestor: str
    is_mature: bool
    is_locked: bool
    is_deferred: bool
    movement: int
    reasons: List[str]


class ReorderPreviewResponse(BaseModel):
    plan_id: str
    based_on_version: str
    proposed_version: str
    expires_at: datetime
    is_stale: bool
    summary: ReorderSummaryItem
    items: List[ReorderPreviewItem]
    warnings: List[ReorderWarningItem]


class ReorderApplyResponse(BaseModel):
    applied_version: str
    move_count: int
    applied_at: datetime
    moved_queue_ids: List[int]


class ReorderCancelResponse(BaseModel):
    plan_id: str
    cancelled: bool


def get_reorder_coordinator(request: Request) -> QueueReorderCoordinator:
    return request.app.state.reorder_coordinator


def _error_detail(code: str, message: str, warnings: Optional[List[ReorderWarning]] = None, **extra: Any) -> Dict[str, Any]:
    detail: Dict[str, Any] = {
        "code": code,
        "message": message,
        "warnings": [{"code": w.code, "message": w.message} for w in warnings or []],
    }
    detail.update(extra)
    return detail


# ── Endpoints ───────────────────────────────────────────────────────────


@router.post(
    "/events/{event_id}/queue/reorder/preview",
    response_model=ReorderPreviewResponse,
)
def preview_queue_reorder(
    event_id: int,
    payload: ReorderPreviewRequest,
    session: Session = Depends(get_session),
    coordinator: QueueReorderCoordinator = Depends(get_reorder_coordinator),
    x_user_name: Optional[str] = Header(default=None),
):
    store = SqlLiveQueueStore(session)
    try:
        preview = coordinator.preview(
            store,
            event_id,
            based_on_version=payload.based_on_version,
            mature_policy=payload.mature_policy,
            horizon=payload.horizon,
            movement_cap=payload.movement_cap,
            user_name=x_user_name,
            override_head_lock=payload.override_head_lock,
        )
    except EventNotFoundError:
        raise HTTPException(status_code=404, detail="Event not found")
    except ReorderPreviewRejected as exc:
        raise HTTPException(status_code=422, detail=_error_detail(exc.code, exc.message, exc.warnings))

    return ReorderPreviewResponse(
        plan_id=preview.plan_id,
        based_on_version=preview.based_on_version,
        proposed_version=preview.proposed_version,
        expires_at=preview.expires_at,
        is_stale=preview.is_stale,
        summary=ReorderSummaryItem(**asdict(preview.summary)),
        items=[ReorderPreviewItem(**asdict(item)) for item in preview.items],
        warnings=[ReorderWarningItem(code=w.code, message=w.message) for w in preview.warnings],
    )


@router.post(
    "/events/{event_id}/queue/reorder/apply",
    response_model=ReorderApplyResponse,
)
def apply_queue_reorder(
    event_id: int,
    payload: ReorderApplyRequest,
    session: Session = Depends(get_session),
    coordinator: QueueReorderCoordinator = Depends(get_reorder_coordinator),
    x_user_name: Optional[str] = Header(default=None),
):
    store = SqlLiveQueueStore(session)
    try:
        result = coordinator.apply(
            store,
            event_id,
            payload.plan_id,
            payload.based_on_version,
            idempotency_key=payload.idempotency_key,
            user_name=x_user_name,
        )
    except EventNotFoundError:
        raise HTTPException(status_code=404, detail="Event not found")
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=_error_detail(exc.code, exc.message))
    except PlanEventMismatchError as exc:
        raise HTTPException(status_code=400, detail=_error_detail(exc.code, exc.message))
    except PlanStaleError as exc:
        raise HTTPException(
            status_code=409,
            detail=_error_detail(
                exc.code,
                exc.message,
                expected_version=exc.expected_version,
                current_version=exc.current_version,
            ),
        )
    except ReorderApplyFailed as exc:
        raise HTTPException(status_code=500, detail=_error_detail(exc.code, exc.message))

    return ReorderApplyResponse(
        applied_version=result.applied_version,
        move_count=result.move_count,
        applied_at=result.applied_at,
        moved_queue_ids=result.moved_queue_ids,
    )


@router.delete(
    "/events/{event_id}/queue/reorder/plans/{plan_id}",
    response_model=ReorderCancelResponse,
)
def cancel_queue_reorder(
    event_id: int,
    plan_id: str,
    coordinator: QueueReorderCoordinator = Depends(get_reorder_coordinator),
):
    try:
        cancelled = coordinator.cancel(event_id, plan_id)
    except PlanEventMismatchError as exc:
        raise HTTPException(status_code=400, detail=_error_detail(exc.code, exc.message))
    return ReorderCancelResponse(plan_id=plan_id, cancelled=cancelled)
