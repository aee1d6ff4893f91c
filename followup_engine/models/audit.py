"""Audit trail entries."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class AuditActorType(str, Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"


class AuditEventType(str, Enum):
    FOLLOW_UP_ESCALATED = "FOLLOW_UP_ESCALATED"
    FOLLOW_UP_HELD = "FOLLOW_UP_HELD"
    FOLLOW_UP_RESUMED = "FOLLOW_UP_RESUMED"
    CONSOLIDATION_CREATED = "CONSOLIDATION_CREATED"


class AuditEntry(BaseModel):
    """An append-only audit record. Entries are immutable once built."""

    model_config = ConfigDict(frozen=True)

    actor_type: AuditActorType = AuditActorType.SYSTEM
    type: AuditEventType
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
