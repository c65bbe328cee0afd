"""
FastAPI application factory and HTTP schemas for the message dispatcher.

The module exposes a `create_app` function that builds the REST API used to
schedule messages, inspect their status and start or stop the dispatch
loop. Start and stop report the outcome of the control action itself;
individual deliveries are inspected through the message status.
"""

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .core import MessageDispatcher
from .models import (
    CacheError,
    DispatcherError,
    InvalidTransitionError,
    MessageNotFoundError,
    MessageRecord,
    MessageStatus,
    MessageValidationError,
    from_epoch,
)

ERROR_STATUS = {
    MessageValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    MessageNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    CacheError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class CommandStatus(BaseModel):
    """Base schema shared by the control responses."""
    ok: bool
    error: Optional[str] = None


class ControlResponse(CommandStatus):
    running: Optional[bool] = None


class CreateMessagePayload(BaseModel):
    """Message to schedule. Naive ``scheduled_at`` values are read as UTC."""
    destination: str
    content: str
    scheduled_at: datetime


class UpdateMessagePayload(BaseModel):
    """Fields of a pending message that may still be changed."""
    destination: Optional[str] = None
    content: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class StatusPayload(BaseModel):
    status: str


class MessageOut(BaseModel):
    """Full representation of a message tracked by the dispatcher."""
    id: int
    destination: str
    content: str
    status: MessageStatus
    delivery_id: Optional[str] = None
    error: Optional[str] = None
    scheduled_at: datetime
    sent_at: Optional[datetime] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: MessageRecord) -> "MessageOut":
        data = record.to_dict()
        data["scheduled_at"] = from_epoch(record.scheduled_at)
        data["sent_at"] = from_epoch(record.sent_at)
        return cls.model_validate(data)


class MessagesResponse(CommandStatus):
    messages: List[MessageOut] = Field(default_factory=list)


class DeliveryTimeResponse(BaseModel):
    delivery_id: str
    sent_at: datetime


def get_service(request: Request) -> MessageDispatcher:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(500, "Service not initialized")
    return service


async def _error_response(request: Request, exc: DispatcherError) -> JSONResponse:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, http_status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            code = http_status
            break
    return JSONResponse(status_code=code, content={"detail": {"error": exc.code, "message": str(exc)}})


def create_app(
    svc: MessageDispatcher,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        :class:`async_message_dispatcher.core.MessageDispatcher` that
        implements each operation.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Scheduled Message Dispatcher", lifespan=lifespan)
    api.state.service = svc
    api.add_exception_handler(DispatcherError, _error_response)

    messages = APIRouter(prefix="/api/v1/messages", tags=["messages"])
    messaging = APIRouter(prefix="/api/v1/messaging", tags=["messaging"])

    @api.get("/status", response_model=ControlResponse, response_model_exclude_none=True)
    async def service_status(service: MessageDispatcher = Depends(get_service)):
        """Return a simple health payload with the loop state."""
        result = await service.handle_command("status", {})
        return ControlResponse.model_validate(result)

    @messages.post("", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
    async def create_message(payload: CreateMessagePayload, service: MessageDispatcher = Depends(get_service)):
        """Schedule a new message."""
        record = await service.create_message(payload.destination, payload.content, payload.scheduled_at)
        return MessageOut.from_record(record)

    @messages.get("", response_model=MessagesResponse)
    async def list_messages(
        status_filter: Optional[MessageStatus] = Query(None, alias="status"),
        service: MessageDispatcher = Depends(get_service),
    ):
        """List messages, optionally filtered by status (``?status=sent``)."""
        records = await service.list_messages(status_filter)
        return MessagesResponse(ok=True, messages=[MessageOut.from_record(r) for r in records])

    @messages.get("/{message_id}", response_model=MessageOut)
    async def get_message(message_id: int, service: MessageDispatcher = Depends(get_service)):
        record = await service.get_message(message_id)
        return MessageOut.from_record(record)

    @messages.patch("/{message_id}", response_model=MessageOut)
    async def update_message(
        message_id: int,
        payload: UpdateMessagePayload,
        service: MessageDispatcher = Depends(get_service),
    ):
        """Edit a message that is still pending."""
        record = await service.update_message(
            message_id,
            destination=payload.destination,
            content=payload.content,
            scheduled_at=payload.scheduled_at,
        )
        return MessageOut.from_record(record)

    @messages.put("/{message_id}/status", response_model=MessageOut)
    async def update_status(
        message_id: int,
        payload: StatusPayload,
        service: MessageDispatcher = Depends(get_service),
    ):
        record = await service.update_status(message_id, payload.status)
        return MessageOut.from_record(record)

    @messages.post("/{message_id}/cancel", response_model=MessageOut)
    async def cancel_message(message_id: int, service: MessageDispatcher = Depends(get_service)):
        record = await service.cancel_message(message_id)
        return MessageOut.from_record(record)

    @messaging.post("/start", response_model=ControlResponse, response_model_exclude_none=True)
    async def start_messaging(service: MessageDispatcher = Depends(get_service)):
        """Start the automatic message sending loop."""
        result = await service.handle_command("start", {})
        return ControlResponse.model_validate(result)

    @messaging.post("/stop", response_model=ControlResponse, response_model_exclude_none=True)
    async def stop_messaging(service: MessageDispatcher = Depends(get_service)):
        """Stop the automatic message sending loop after its current cycle."""
        result = await service.handle_command("stop", {})
        return ControlResponse.model_validate(result)

    @messaging.post("/run-now", response_model=ControlResponse, response_model_exclude_none=True)
    async def run_now(service: MessageDispatcher = Depends(get_service)):
        result: Dict[str, Any] = await service.handle_command("run now", {})
        if result.get("ok") is not True:
            raise HTTPException(status.HTTP_409_CONFLICT, result.get("error"))
        return ControlResponse.model_validate(result)

    @messaging.get("/sent", response_model=MessagesResponse)
    async def sent_messages(service: MessageDispatcher = Depends(get_service)):
        """List every message delivered so far."""
        records = await service.list_sent()
        return MessagesResponse(ok=True, messages=[MessageOut.from_record(r) for r in records])

    @messaging.get("/delivery/{delivery_id}", response_model=DeliveryTimeResponse)
    async def delivery_time(delivery_id: str, service: MessageDispatcher = Depends(get_service)):
        """Look up the cached delivery time of a delivery identifier."""
        sent_at = await service.delivery_time(delivery_id)
        if sent_at is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Delivery id not found")
        return DeliveryTimeResponse(delivery_id=delivery_id, sent_at=from_epoch(sent_at))

    @api.get("/metrics")
    async def metrics(service: MessageDispatcher = Depends(get_service)):
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(messages)
    api.include_router(messaging)
    return api
