# api_server/schemas/triggers.py
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from api_server.schemas.runs import TriggerResponse


class IncomingMessageRequest(BaseModel):
    """An inbound message from a contact, forwarded by the messaging service."""

    contact_id: str = Field(..., min_length=1)
    channel: str = Field(..., description="email, sms, whatsapp or push")
    content: str = ""
    metadata: Optional[Dict[str, Any]] = None


class EventRequest(BaseModel):
    """A domain event (contact.created, campaign.clicked, ...)."""

    event_type: str = Field(..., min_length=1)
    contact_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class TriggerBatchResponse(BaseModel):
    """Every workflow the message or event started."""

    triggered: int
    results: list[TriggerResponse]
