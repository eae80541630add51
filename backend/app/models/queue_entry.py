from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.event import Event


class QueueEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: int = Field(foreign_key="event.id", index=True)
    requestor_user_name: str
    song_title: str = Field(default="")
    song_artist: str = Field(default="")
    is_mature: bool = Field(default=False)
    position: int
    status: str = Field(default="Live")  # "Live" | "Archived"
    sung_at: Optional[datetime] = Field(default=None)
    was_skipped: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    event: "Event" = Relationship(back_populates="queue_entries")
