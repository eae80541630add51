# Force SQLModel table registration at test discovery time
# so every in-memory test database gets the full schema
from app.models.event import Event  # noqa: F401
from app.models.queue_entry import QueueEntry  # noqa: F401
from app.models.reorder_audit import ReorderAudit  # noqa: F401
