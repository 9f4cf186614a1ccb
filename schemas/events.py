"""
Change notice schema carried by the event bus
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeNotice(BaseModel):
    """
    Notice that a stored entity changed.

    Delivery is at-least-once and unordered across ids, so consumers must
    treat every notice as an idempotent "recompute this" hint.
    """

    entity_kind: Literal["event", "session"] = Field(
        ..., description="Kind of entity that changed"
    )

    entity_id: str = Field(..., description="Identifier of the changed entity")

    action: str = Field(
        default="updated",
        description="What happened (created, updated, cancelled, opened, closed, expired)",
    )

    timestamp: datetime = Field(default_factory=_utcnow, description="Notice time")

    @property
    def topic(self) -> str:
        return self.entity_kind

    model_config = {
        "json_schema_extra": {
            "example": {
                "entity_kind": "event",
                "entity_id": "evt_3f2a9c",
                "action": "cancelled",
                "timestamp": "2025-01-06T18:00:00Z",
            }
        }
    }
