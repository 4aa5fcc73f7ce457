"""
HTTP routes for the MES integration API.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from backend.automation import ReceiverError, WebhookReceiver
from backend.config import get_settings
from backend.db import (
    AutomationRuleRecord,
    DbClient,
    DuplicateSerialError,
    IncomingWebhookRecord,
    OutgoingWebhookRecord,
    WorkOrderExistsError,
)
from backend.dead_letter import DeadLetterNotFoundError, DeadLetterQueue, requeue_dead_letter
from backend.delivery import WebhookDeliverer
from backend.dependencies import (
    get_channel_registry,
    get_db_client,
    get_dead_letter_queue,
    get_deliverer,
    get_health_tracker,
    get_queue_client,
    get_webhook_receiver,
    get_work_order_service,
    require_admin,
)
from backend.events import dispatch_event
from backend.health import WebhookHealthTracker
from backend.queue import JobQueue
from backend.realtime import ChannelRegistry
from backend.schemas import (
    ActivityResponse,
    AutomationRuleResponse,
    CreateAutomationRulePayload,
    CreateIncomingWebhookPayload,
    CreateOutgoingWebhookPayload,
    CreateWorkOrderPayload,
    DeadLetterResponse,
    DeliveryJobResponse,
    DeliveryLogResponse,
    DeliveryResultResponse,
    DispatchEventPayload,
    DispatchEventResponse,
    IncomingLogResponse,
    IncomingWebhookResponse,
    ListDeadLettersResponse,
    ListWorkOrdersResponse,
    OutgoingWebhookResponse,
    ParsedSerialResponse,
    RealtimeChannelsResponse,
    RetryDeadLetterResponse,
    SecretResponse,
    SerialPreviewResponse,
    UpdateItemPayload,
    UpdateOutgoingWebhookPayload,
    UpdateStatusPayload,
    WebhookEventInfo,
    WebhookEventsResponse,
    WebhookHealthResponse,
    WorkOrderItemResponse,
    WorkOrderResponse,
)
from backend.signing import generate_endpoint_key, generate_secret
from backend.url_validation import check_webhook_url
from backend.work_orders import NotFoundError, WorkOrderService, WorkOrderValidationError
from shared.serials import (
    MAX_SERIALS_PER_REQUEST,
    ProductBatch,
    SerialNumberError,
    generate_serials,
    is_valid_serial,
    parse_serial,
)
from shared.types import ProductType, WebhookEventType, WorkOrderStatus, event_metadata, events_by_category

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter(dependencies=[Depends(require_admin)])

KNOWN_EVENTS = {event.value for event in WebhookEventType}


def _work_order_response(order, items=None) -> WorkOrderResponse:
    data = order.as_dict()
    if items is not None:
        data["items"] = [WorkOrderItemResponse(**item.as_dict()) for item in items]
    return WorkOrderResponse(**data)


def _outgoing_response(record: OutgoingWebhookRecord, include_secret: bool = False):
    data = record.as_dict()
    if include_secret:
        data["secret_key"] = record.secret_key
    return OutgoingWebhookResponse(**data)


def _incoming_response(record: IncomingWebhookRecord, include_secret: bool = False):
    data = record.as_dict()
    if include_secret:
        data["secret_key"] = record.secret_key
    return IncomingWebhookResponse(**data)


def _check_url(url: str) -> None:
    valid, error = check_webhook_url(url, require_https=get_settings().webhook_require_https)
    if not valid:
        raise HTTPException(status_code=400, detail=error)


def _check_event(event_type: str) -> None:
    if event_type not in KNOWN_EVENTS:
        raise HTTPException(status_code=400, detail=f"Unknown event type: {event_type}")


def _get_outgoing_or_404(db: DbClient, webhook_id: str) -> OutgoingWebhookRecord:
    webhook = db.get_outgoing_webhook(webhook_id)
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook


def _get_incoming_or_404(db: DbClient, webhook_id: str) -> IncomingWebhookRecord:
    webhook = db.get_incoming_webhook(webhook_id)
    if not webhook:
        raise HTTPException(status_code=404, detail="Incoming webhook not found")
    return webhook


# Work orders and items ---------------------------------------------------


@router.post("/work-orders", response_model=WorkOrderResponse, status_code=201)
def create_work_order(
    payload: CreateWorkOrderPayload,
    service: WorkOrderService = Depends(get_work_order_service),
):
    batches = [ProductBatch(b.product_type, b.quantity) for b in payload.batches]
    try:
        order, items = service.create_work_order(
            payload.wo_number,
            batches,
            created_by=payload.created_by,
            notes=payload.notes,
            scheduled_date=payload.scheduled_date,
        )
    except WorkOrderExistsError:
        raise HTTPException(status_code=409, detail="Work order number already exists")
    except DuplicateSerialError as exc:
        raise HTTPException(status_code=409, detail=f"Serial number already exists: {exc}")
    except WorkOrderValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _work_order_response(order, items)


@router.get("/work-orders", response_model=ListWorkOrdersResponse)
def list_work_orders(
    status: Optional[WorkOrderStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    service: WorkOrderService = Depends(get_work_order_service),
):
    orders = service.list_work_orders(limit=limit, status=status)
    return ListWorkOrdersResponse(work_orders=[_work_order_response(o) for o in orders])


@router.get("/work-orders/{ref}", response_model=WorkOrderResponse)
def get_work_order(ref: str, service: WorkOrderService = Depends(get_work_order_service)):
    try:
        order = service.get_work_order(ref)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Work order not found")
    return _work_order_response(order, service.list_items(order.id))


@router.patch("/work-orders/{ref}/status", response_model=WorkOrderResponse)
def update_work_order_status(
    ref: str,
    payload: UpdateStatusPayload,
    service: WorkOrderService = Depends(get_work_order_service),
):
    try:
        order = service.update_status(ref, payload.status, user_id=payload.user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Work order not found")
    return _work_order_response(order)


@router.get("/items/{serial_number}", response_model=WorkOrderItemResponse)
def get_item(serial_number: str, service: WorkOrderService = Depends(get_work_order_service)):
    try:
        item = service.get_item(serial_number)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Item not found")
    return WorkOrderItemResponse(**item.as_dict())


@router.patch("/items/{serial_number}", response_model=WorkOrderItemResponse)
def update_item(
    serial_number: str,
    payload: UpdateItemPayload,
    service: WorkOrderService = Depends(get_work_order_service),
):
    try:
        item = service.update_item(
            serial_number,
            status=payload.status,
            current_step=payload.current_step,
            user_id=payload.user_id,
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Item not found")
    except WorkOrderValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return WorkOrderItemResponse(**item.as_dict())


@router.get("/activity", response_model=list[ActivityResponse])
def list_activity(
    limit: int = Query(100, ge=1, le=500),
    service: WorkOrderService = Depends(get_work_order_service),
):
    return [ActivityResponse(**a.as_dict()) for a in service.list_activity(limit=limit)]


# Serial numbers ----------------------------------------------------------


@router.get("/serials/next", response_model=SerialPreviewResponse)
def preview_serials(
    product_type: ProductType = Query(...),
    count: int = Query(1, ge=1, le=MAX_SERIALS_PER_REQUEST),
    db: DbClient = Depends(get_db_client),
):
    """
    Preview the next sequential serials. Nothing is reserved; allocation only
    happens when a work order is created.
    """
    try:
        serials = generate_serials(product_type, count, db.peek_serial_sequence(product_type))
    except SerialNumberError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return SerialPreviewResponse(product_type=product_type, serials=serials)


@router.get("/serials/parse/{serial_number}", response_model=ParsedSerialResponse)
def parse_serial_number(serial_number: str):
    parsed = parse_serial(serial_number)
    return ParsedSerialResponse(
        serial_number=serial_number,
        valid=is_valid_serial(serial_number),
        product_type=parsed.product_type,
        number=parsed.number,
        prefix=parsed.prefix,
    )


# Outgoing webhooks -------------------------------------------------------


@admin_router.post("/outgoing-webhooks", response_model=OutgoingWebhookResponse, status_code=201)
def create_outgoing_webhook(
    payload: CreateOutgoingWebhookPayload, db: DbClient = Depends(get_db_client)
):
    _check_url(payload.webhook_url)
    _check_event(payload.event_type)
    record = db.create_outgoing_webhook(
        OutgoingWebhookRecord(
            name=payload.name,
            webhook_url=payload.webhook_url,
            event_type=payload.event_type,
            enabled=payload.enabled,
            headers=payload.headers,
            created_by=payload.created_by,
            secret_key=generate_secret(),
        )
    )
    logger.info("Created outgoing webhook %s for %s", record.id, record.event_type)
    return _outgoing_response(record, include_secret=True)


@admin_router.get("/outgoing-webhooks", response_model=list[OutgoingWebhookResponse])
def list_outgoing_webhooks(
    event_type: Optional[str] = Query(None), db: DbClient = Depends(get_db_client)
):
    return [_outgoing_response(w) for w in db.list_outgoing_webhooks(event_type=event_type)]


@admin_router.patch("/outgoing-webhooks/{webhook_id}", response_model=OutgoingWebhookResponse)
def update_outgoing_webhook(
    webhook_id: str,
    payload: UpdateOutgoingWebhookPayload,
    db: DbClient = Depends(get_db_client),
):
    _get_outgoing_or_404(db, webhook_id)
    changes = payload.model_dump(exclude_none=True)
    if "webhook_url" in changes:
        _check_url(changes["webhook_url"])
    if "event_type" in changes:
        _check_event(changes["event_type"])
    record = db.update_outgoing_webhook(webhook_id, **changes)
    if not record:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return _outgoing_response(record)


@admin_router.delete("/outgoing-webhooks/{webhook_id}", status_code=204)
def delete_outgoing_webhook(
    webhook_id: str,
    db: DbClient = Depends(get_db_client),
    health: WebhookHealthTracker = Depends(get_health_tracker),
):
    if not db.delete_outgoing_webhook(webhook_id):
        raise HTTPException(status_code=404, detail="Webhook not found")
    health.reset(webhook_id)
    return Response(status_code=204)


@admin_router.post(
    "/outgoing-webhooks/{webhook_id}/regenerate-secret", response_model=SecretResponse
)
def regenerate_outgoing_secret(webhook_id: str, db: DbClient = Depends(get_db_client)):
    _get_outgoing_or_404(db, webhook_id)
    secret = generate_secret()
    db.update_outgoing_webhook(webhook_id, secret_key=secret)
    logger.info("Rotated secret for outgoing webhook %s", webhook_id)
    return SecretResponse(id=webhook_id, secret_key=secret)


@admin_router.post("/outgoing-webhooks/{webhook_id}/test", response_model=DeliveryResultResponse)
def test_outgoing_webhook(
    webhook_id: str,
    db: DbClient = Depends(get_db_client),
    deliverer: WebhookDeliverer = Depends(get_deliverer),
):
    webhook = _get_outgoing_or_404(db, webhook_id)
    result = deliverer.deliver(
        webhook,
        webhook.event_type,
        {"test": True, "message": "Test delivery from MES", "webhook_id": webhook.id},
        dead_letter=False,
    )
    return DeliveryResultResponse(**result.as_dict())


@admin_router.get(
    "/outgoing-webhooks/{webhook_id}/logs", response_model=list[DeliveryLogResponse]
)
def list_delivery_logs(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: DbClient = Depends(get_db_client),
):
    _get_outgoing_or_404(db, webhook_id)
    return [DeliveryLogResponse(**log.as_dict()) for log in db.list_delivery_logs(webhook_id, limit=limit)]


@admin_router.get(
    "/outgoing-webhooks/{webhook_id}/health", response_model=WebhookHealthResponse
)
def webhook_health(
    webhook_id: str,
    db: DbClient = Depends(get_db_client),
    health: WebhookHealthTracker = Depends(get_health_tracker),
):
    _get_outgoing_or_404(db, webhook_id)
    stats = health.get(webhook_id)
    return WebhookHealthResponse(
        webhook_id=webhook_id,
        health_score=health.health_score(webhook_id),
        circuit_state=health.circuit_state(webhook_id).value,
        **(stats.as_dict() if stats else {}),
    )


@admin_router.post("/outgoing-webhooks/{webhook_id}/health/reset", status_code=204)
def reset_webhook_health(
    webhook_id: str,
    db: DbClient = Depends(get_db_client),
    health: WebhookHealthTracker = Depends(get_health_tracker),
):
    _get_outgoing_or_404(db, webhook_id)
    health.reset(webhook_id)
    return Response(status_code=204)


@admin_router.post("/events", response_model=DispatchEventResponse, status_code=202)
def post_event(
    payload: DispatchEventPayload,
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
):
    _check_event(payload.event_type)
    jobs = dispatch_event(
        db, queue, payload.event_type, payload.data, idempotency_key=payload.idempotency_key
    )
    return DispatchEventResponse(
        event_type=payload.event_type, job_ids=[job.job_id for job in jobs]
    )


@router.get("/webhook-events", response_model=WebhookEventsResponse)
def list_webhook_events():
    events = []
    for event in WebhookEventType:
        meta = event_metadata(event.value)
        events.append(
            WebhookEventInfo(
                event_type=event.value,
                label=meta.label,
                description=meta.description,
                category=meta.category,
            )
        )
    return WebhookEventsResponse(events=events, categories=events_by_category())


# Dead letters and delivery jobs ------------------------------------------


@admin_router.get("/dead-letters", response_model=ListDeadLettersResponse)
def list_dead_letters(
    webhook_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    dead_letters: DeadLetterQueue = Depends(get_dead_letter_queue),
):
    entries = dead_letters.list(limit=limit, webhook_id=webhook_id)
    return ListDeadLettersResponse(
        dead_letters=[DeadLetterResponse(**e.as_dict()) for e in entries],
        total=dead_letters.size(),
    )


@admin_router.post(
    "/dead-letters/{delivery_id}/retry", response_model=RetryDeadLetterResponse, status_code=202
)
def retry_dead_letter(
    delivery_id: str,
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
    dead_letters: DeadLetterQueue = Depends(get_dead_letter_queue),
):
    try:
        job = requeue_dead_letter(dead_letters, db, queue, delivery_id)
    except DeadLetterNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return RetryDeadLetterResponse(delivery_id=delivery_id, job_id=job.job_id, status=job.status.name)


@admin_router.delete("/dead-letters/{delivery_id}", status_code=204)
def delete_dead_letter(
    delivery_id: str, dead_letters: DeadLetterQueue = Depends(get_dead_letter_queue)
):
    if not dead_letters.remove(delivery_id):
        raise HTTPException(status_code=404, detail="Dead letter not found")
    return Response(status_code=204)


@admin_router.get("/delivery-jobs/{job_id}", response_model=DeliveryJobResponse)
def delivery_job_status(job_id: str, db: DbClient = Depends(get_db_client)):
    job = db.get_delivery_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return DeliveryJobResponse(
        job_id=job.job_id,
        webhook_id=job.webhook_id,
        event_type=job.event_type,
        status=job.status.name,
        attempts=job.attempts,
        last_error=job.last_error,
        delivery_id=job.delivery_id,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


# Incoming webhooks -------------------------------------------------------


@admin_router.post("/incoming-webhooks", response_model=IncomingWebhookResponse, status_code=201)
def create_incoming_webhook(
    payload: CreateIncomingWebhookPayload, db: DbClient = Depends(get_db_client)
):
    record = db.create_incoming_webhook(
        IncomingWebhookRecord(
            name=payload.name,
            endpoint_key=generate_endpoint_key(),
            secret_key=generate_secret(),
            enabled=payload.enabled,
            allowed_ips=payload.allowed_ips,
            description=payload.description,
            created_by=payload.created_by,
        )
    )
    return _incoming_response(record, include_secret=True)


@admin_router.post(
    "/incoming-webhooks/{webhook_id}/regenerate-secret", response_model=SecretResponse
)
def regenerate_incoming_secret(webhook_id: str, db: DbClient = Depends(get_db_client)):
    _get_incoming_or_404(db, webhook_id)
    secret = generate_secret()
    db.update_incoming_webhook(webhook_id, secret_key=secret)
    logger.info("Rotated secret for incoming webhook %s", webhook_id)
    return SecretResponse(id=webhook_id, secret_key=secret)


@admin_router.post(
    "/incoming-webhooks/{webhook_id}/rules",
    response_model=AutomationRuleResponse,
    status_code=201,
)
def create_automation_rule(
    webhook_id: str,
    payload: CreateAutomationRulePayload,
    db: DbClient = Depends(get_db_client),
):
    _get_incoming_or_404(db, webhook_id)
    webhook_url = payload.field_mappings.get("webhook_url")
    if webhook_url:
        _check_url(webhook_url)
    record = db.create_automation_rule(
        AutomationRuleRecord(
            incoming_webhook_id=webhook_id,
            name=payload.name,
            action_type=payload.action_type,
            field_mappings=payload.field_mappings,
            enabled=payload.enabled,
            sort_order=payload.sort_order,
        )
    )
    return AutomationRuleResponse(**record.as_dict())


@admin_router.get(
    "/incoming-webhooks/{webhook_id}/rules", response_model=list[AutomationRuleResponse]
)
def list_automation_rules(webhook_id: str, db: DbClient = Depends(get_db_client)):
    _get_incoming_or_404(db, webhook_id)
    rules = db.list_automation_rules(webhook_id, enabled_only=False)
    return [AutomationRuleResponse(**r.as_dict()) for r in rules]


@admin_router.get(
    "/incoming-webhooks/{webhook_id}/logs", response_model=list[IncomingLogResponse]
)
def list_incoming_logs(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: DbClient = Depends(get_db_client),
):
    _get_incoming_or_404(db, webhook_id)
    return [IncomingLogResponse(**log.as_dict()) for log in db.list_incoming_logs(webhook_id, limit=limit)]


@router.post("/webhook-receiver/{endpoint_key}")
async def receive_webhook(
    endpoint_key: str,
    request: Request,
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
):
    body = await request.body()
    client_ip = request.client.host if request.client else None
    try:
        result = await run_in_threadpool(
            receiver.receive, endpoint_key, body, dict(request.headers), client_ip
        )
    except ReceiverError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail, headers=exc.headers)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


# Realtime ----------------------------------------------------------------


@admin_router.get("/realtime/channels", response_model=RealtimeChannelsResponse)
def realtime_channels(registry: ChannelRegistry = Depends(get_channel_registry)):
    return RealtimeChannelsResponse(
        active=registry.active_channel_count(), channels=registry.channel_keys()
    )
