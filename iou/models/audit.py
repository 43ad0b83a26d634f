"""Audit log entry model for full traceability."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEntry(BaseModel):
    """
    Audit log entry for every mutating action.

    Append-only - entries are never modified or deleted. An entry is
    written only after the primary write it describes.
    """

    audit_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action: str = Field(..., description="What happened, e.g. 'object.created'")
    component: str = Field(..., description="Component that performed the action")
    record_type: str = Field(..., description="Type of the record acted on")
    record_id: Optional[str] = Field(default=None, description="ID of the record acted on")
    actor_id: Optional[str] = Field(default=None, description="User behind the action, if any")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Summary of the change (not the full record)"
    )
    success: bool = Field(default=True, description="Whether the action completed")
    error: Optional[str] = Field(default=None, description="Error message if it failed")

    model_config = {
        "json_schema_extra": {
            "example": {
                "audit_id": "550e8400-e29b-41d4-a716-446655440000",
                "action": "rule.executed",
                "component": "compliance",
                "record_type": "information_object",
                "record_id": "0b3c1e5e-8c44-4a49-9d8e-2f4a4c0f6a11",
                "details": {"rule": "Public records are Woo relevant", "matched": True},
                "success": True,
            }
        }
    }
