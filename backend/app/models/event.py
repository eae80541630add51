from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.queue_entry import QueueEntry


class Event(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    venue: Optional[str] = None
    status: str = Field(default="Live")  # "Upcoming" | "Live" | "Archived"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    queue_entries: List["QueueEntry"] = Relationship(back_populates="event")
