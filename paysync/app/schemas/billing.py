"""API schemas for billing webhook endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import WebhookStatusReport


class WebhookEnvelope(BaseModel):
    """Provider event as delivered to the webhook endpoint."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    payload: Dict[str, object] = Field(default_factory=dict)


class WebhookAcknowledgement(BaseModel):
    received: bool = True


class WebhookStatusResponse(BaseModel):
    status: str
    message: str
    error_details: Optional[str] = Field(alias="errorDetails", default=None)
    redirect_url: Optional[str] = Field(alias="redirectUrl", default=None)
    event_id: Optional[str] = Field(alias="eventId", default=None)
    event_type: Optional[str] = Field(alias="eventType", default=None)
    updated_at: Optional[datetime] = Field(alias="updatedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: WebhookStatusReport) -> "WebhookStatusResponse":
        return cls(
            status=report.status,
            message=report.message,
            error_details=report.error_details,
            redirect_url=report.redirect_url,
            event_id=report.event_id,
            event_type=report.event_type,
            updated_at=report.updated_at,
        )
