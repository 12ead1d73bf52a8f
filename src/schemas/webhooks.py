"""Pydantic schemas for webhook intake API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class WebhookAcceptedResponse(BaseModel):
    success: bool = True
    event_id: str
    is_verified: bool
    webhook_event_id: str


class WebhookDuplicateResponse(BaseModel):
    message: str = "Event already processed"
    event_id: str


class WebhookProcessedRequest(BaseModel):
    org_id: str = Field(min_length=1, max_length=36)
    error_message: Optional[str] = Field(default=None, max_length=2000)


class WebhookEventResponse(BaseModel):
    id: str
    event_id: str
    event_type: str
    is_verified: bool
    is_processed: bool
    error_message: Optional[str] = None
    processed_at: Optional[str] = None
