# api_server/routers/triggers.py
from typing import Optional

from fastapi import APIRouter, Depends

from api_server.auth import get_correlation_id, get_tenant_id, verify_api_key
from api_server.schemas.runs import TriggerResponse
from api_server.schemas.triggers import EventRequest, IncomingMessageRequest, TriggerBatchResponse
from api_server.services.triggers import TriggerPayload, TriggerResult, handle_event, handle_incoming_message

router = APIRouter()


def _to_batch(results: list[TriggerResult]) -> TriggerBatchResponse:
    return TriggerBatchResponse(
        triggered=sum(1 for r in results if r.triggered),
        results=[TriggerResponse(**r.model_dump()) for r in results],
    )


@router.post("/triggers/messages", response_model=TriggerBatchResponse)
def incoming_message_endpoint(
    request: IncomingMessageRequest,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    """Offer an inbound message to every published incoming-message workflow."""
    results = handle_incoming_message(
        tenant_id,
        request.contact_id,
        request.channel,
        request.content,
        metadata=request.metadata,
        correlation_id=correlation_id,
    )
    return _to_batch(results)


@router.post("/triggers/events", response_model=TriggerBatchResponse)
def event_endpoint(
    request: EventRequest,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    """Offer a domain event to every published event-based workflow."""
    payload = TriggerPayload(
        tenant_id=tenant_id,
        event_type=request.event_type,
        contact_id=request.contact_id,
        event_payload=request.payload,
        correlation_id=correlation_id,
    )
    return _to_batch(handle_event(payload))
