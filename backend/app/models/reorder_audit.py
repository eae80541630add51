from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text


class ReorderAudit(SQLModel, table=True):
    __tablename__ = "reorderaudit"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: int = Field(foreign_key="event.id", index=True)
    plan_id: Optional[str] = Field(default=None, max_length=32, index=True)
    action: str  # "PREVIEW" | "APPLY" | "REJECT"
    user_name: Optional[str] = None
    mature_policy: Optional[str] = None
    payload_json: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
