from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class AuditEntryOut(BaseModel):
    id: int
    operation_type: str
    entry_id: str | None = None
    actor_type: str
    actor_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
