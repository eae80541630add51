from app.models.event import Event
from app.models.queue_entry import QueueEntry
from app.models.reorder_audit import ReorderAudit

__all__ = [
    "Event",
    "QueueEntry",
    "ReorderAudit",
]
