"""
Live Queue Store: the boundary between the reorder coordinator and the
persisted queue.

The coordinator only needs three things from persistence: an ordered,
versioned snapshot of the pending queue, an atomic position write guarded
by that version, and an append-only audit log. SqlLiveQueueStore provides
them over SQLModel; tests and other deployments may substitute their own.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlmodel import Session, select

from app.models.event import Event
from app.models.queue_entry import QueueEntry
from app.models.reorder_audit import ReorderAudit
from app.utils.queue_version import compute_queue_version

logger = logging.getLogger(__name__)

LIVE_STATUS = "Live"


class EventNotFoundError(LookupError):
    def __init__(self, event_id: int):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


class QueueVersionConflict(Exception):
    """The live queue changed between the version check and the write."""

    def __init__(self, expected_version: str, current_version: str):
        super().__init__("Live queue version changed before positions could be written")
        self.expected_version = expected_version
        self.current_version = current_version


@dataclass(frozen=True)
class LiveQueueEntry:
    queue_id: int
    position: int
    requestor_name: str
    is_mature: bool
    song_title: str = ""
    song_artist: str = ""


@dataclass(frozen=True)
class LiveQueue:
    event_id: int
    entries: List[LiveQueueEntry]
    version: str

    @property
    def base_position(self) -> int:
        return min((e.position for e in self.entries), default=0)


def version_of(entries: List[LiveQueueEntry]) -> str:
    return compute_queue_version(
        (e.queue_id, e.position, e.requestor_name, e.is_mature) for e in entries
    )


class LiveQueueStore(ABC):
    @abstractmethod
    def load_queue(self, event_id: int) -> LiveQueue:
        """Pending entries in play order. Raises EventNotFoundError."""
        raise NotImplementedError

    @abstractmethod
    def write_positions(self, event_id: int, positions: Dict[int, int], expected_version: str) -> str:
        """Atomically set positions (queue_id -> position); return the new version.

        Raises QueueVersionConflict when the live version is no longer
        expected_version. On any error nothing is written.
        """
        raise NotImplementedError

    @abstractmethod
    def record_audit(
        self,
        event_id: int,
        plan_id: Optional[str],
        action: str,
        user_name: Optional[str],
        mature_policy: Optional[str],
        payload_json: Optional[str],
    ) -> None:
        raise NotImplementedError


class SqlLiveQueueStore(LiveQueueStore):
    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _live_rows_query(event_id: int, lock: bool = False):
        query = (
            select(QueueEntry)
            .where(
                QueueEntry.event_id == event_id,
                QueueEntry.status == LIVE_STATUS,
                QueueEntry.sung_at == None,  # noqa: E711
                QueueEntry.was_skipped == False,  # noqa: E712
            )
            .order_by(QueueEntry.position, QueueEntry.id)
        )
        if lock:
            query = query.with_for_update()
        return query

    def _live_rows(self, event_id: int, lock: bool = False) -> List[QueueEntry]:
        return list(self.session.exec(self._live_rows_query(event_id, lock=lock)).all())

    @staticmethod
    def _to_entry(row: QueueEntry) -> LiveQueueEntry:
        return LiveQueueEntry(
            queue_id=row.id,
            position=row.position,
            requestor_name=row.requestor_user_name,
            is_mature=row.is_mature,
            song_title=row.song_title,
            song_artist=row.song_artist,
        )

    def load_queue(self, event_id: int) -> LiveQueue:
        if self.session.get(Event, event_id) is None:
            raise EventNotFoundError(event_id)
        entries = [self._to_entry(row) for row in self._live_rows(event_id)]
        return LiveQueue(event_id=event_id, entries=entries, version=version_of(entries))

    def _write_entry(self, row: QueueEntry, position: int, now: datetime) -> None:
        row.position = position
        row.updated_at = now
        self.session.add(row)

    def write_positions(self, event_id: int, positions: Dict[int, int], expected_version: str) -> str:
        try:
            # Row locks hold a concurrent apply until this one commits, so it re-reads the new version.
            rows = self._live_rows(event_id, lock=True)
            current_version = version_of([self._to_entry(r) for r in rows])
            if current_version != expected_version:
                raise QueueVersionConflict(expected_version, current_version)

            by_id = {r.id: r for r in rows}
            missing = sorted(qid for qid in positions if qid not in by_id)
            if missing:
                raise ValueError(f"Queue entries no longer live: {missing}")

            now = datetime.utcnow()
            for queue_id, position in positions.items():
                row = by_id[queue_id]
                if row.position != position:
                    self._write_entry(row, position, now)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        new_version = version_of([self._to_entry(r) for r in self._live_rows(event_id)])
        logger.info("Wrote %d queue positions for event %d (version %s)", len(positions), event_id, new_version[:12])
        return new_version

    def record_audit(
        self,
        event_id: int,
        plan_id: Optional[str],
        action: str,
        user_name: Optional[str],
        mature_policy: Optional[str],
        payload_json: Optional[str],
    ) -> None:
        self.session.add(
            ReorderAudit(
                event_id=event_id,
                plan_id=plan_id,
                action=action,
                user_name=user_name,
                mature_policy=mature_policy,
                payload_json=payload_json,
            )
        )
        self.session.commit()
