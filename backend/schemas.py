"""
Pydantic schemas for the MES integration API.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from shared.types import AutomationActionType, ProductType, WorkOrderStatus


class ProductBatchPayload(BaseModel):
    product_type: ProductType
    quantity: int = Field(..., ge=1, le=1000)


class CreateWorkOrderPayload(BaseModel):
    wo_number: str = Field(..., min_length=1, max_length=100)
    batches: list[ProductBatchPayload] = Field(..., min_length=1)
    created_by: Optional[str] = None
    notes: str = ""
    scheduled_date: Optional[str] = None


class WorkOrderItemResponse(BaseModel):
    id: str
    work_order_id: str
    serial_number: str
    position_in_batch: int
    product_type: ProductType
    status: WorkOrderStatus
    current_step: int
    assigned_to: Optional[str] = None
    completed_at: Optional[float] = None
    created_at: float
    updated_at: float


class WorkOrderResponse(BaseModel):
    id: str
    wo_number: str
    product_type: ProductType
    batch_size: int
    status: WorkOrderStatus
    created_by: Optional[str] = None
    notes: str = ""
    scheduled_date: Optional[str] = None
    created_at: float
    updated_at: float
    items: Optional[list[WorkOrderItemResponse]] = None


class ListWorkOrdersResponse(BaseModel):
    work_orders: list[WorkOrderResponse]


class UpdateStatusPayload(BaseModel):
    status: WorkOrderStatus
    user_id: Optional[str] = None


class UpdateItemPayload(BaseModel):
    status: Optional[WorkOrderStatus] = None
    current_step: Optional[int] = Field(None, ge=1)
    user_id: Optional[str] = None


class ActivityResponse(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: dict
    user_id: Optional[str] = None
    created_at: float


class SerialPreviewResponse(BaseModel):
    product_type: ProductType
    serials: list[str]


class ParsedSerialResponse(BaseModel):
    serial_number: str
    valid: bool
    product_type: Optional[ProductType] = None
    number: Optional[int] = None
    prefix: Optional[str] = None


class CreateOutgoingWebhookPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    webhook_url: str = Field(..., max_length=2048)
    event_type: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True
    headers: dict[str, str] = Field(default_factory=dict)
    created_by: Optional[str] = None


class UpdateOutgoingWebhookPayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    webhook_url: Optional[str] = Field(None, max_length=2048)
    event_type: Optional[str] = Field(None, min_length=1, max_length=100)
    enabled: Optional[bool] = None
    headers: Optional[dict[str, str]] = None


class OutgoingWebhookResponse(BaseModel):
    id: str
    name: str
    webhook_url: str
    event_type: str
    enabled: bool
    has_secret: bool
    headers: dict[str, str]
    created_by: Optional[str] = None
    created_at: float
    updated_at: float
    # Only populated on create and on secret rotation.
    secret_key: Optional[str] = None


class SecretResponse(BaseModel):
    id: str
    secret_key: str


class DeliveryResultResponse(BaseModel):
    success: bool
    delivery_id: str
    attempts: int
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    error: Optional[str] = None
    duplicate: bool = False
    dead_lettered: bool = False


class DeliveryLogResponse(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    payload: dict
    delivery_id: str
    attempts: int
    response_status: Optional[int] = None
    response_body: Any = None
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    created_at: float


class WebhookHealthResponse(BaseModel):
    webhook_id: str
    health_score: int
    circuit_state: Literal["CLOSED", "OPEN", "HALF_OPEN"]
    total_calls: int = 0
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    average_response_time_ms: float = 0.0
    last_success: Optional[float] = None
    last_failure: Optional[float] = None


class DispatchEventPayload(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(None, max_length=255)


class DispatchEventResponse(BaseModel):
    event_type: str
    job_ids: list[str]


class WebhookEventInfo(BaseModel):
    event_type: str
    label: str
    description: str
    category: str


class WebhookEventsResponse(BaseModel):
    events: list[WebhookEventInfo]
    categories: dict[str, list[str]]


class DeadLetterResponse(BaseModel):
    delivery_id: str
    webhook_id: str
    event_type: str
    payload: dict
    error: str
    attempts: int
    job_id: Optional[str] = None
    failed_at: float


class ListDeadLettersResponse(BaseModel):
    dead_letters: list[DeadLetterResponse]
    total: int


class RetryDeadLetterResponse(BaseModel):
    delivery_id: str
    job_id: str
    status: str


class DeliveryJobResponse(BaseModel):
    job_id: str
    webhook_id: str
    event_type: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    delivery_id: Optional[str] = None
    created_at: float
    updated_at: float


class CreateIncomingWebhookPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    enabled: bool = True
    allowed_ips: list[str] = Field(default_factory=list)
    created_by: Optional[str] = None


class IncomingWebhookResponse(BaseModel):
    id: str
    name: str
    endpoint_key: str
    enabled: bool
    allowed_ips: list[str]
    description: Optional[str] = None
    created_by: Optional[str] = None
    trigger_count: int
    last_triggered_at: Optional[float] = None
    created_at: float
    updated_at: float
    secret_key: Optional[str] = None


class CreateAutomationRulePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    action_type: AutomationActionType
    field_mappings: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    sort_order: int = 0


class AutomationRuleResponse(BaseModel):
    id: str
    incoming_webhook_id: str
    name: str
    action_type: AutomationActionType
    field_mappings: dict[str, Any]
    enabled: bool
    sort_order: int
    created_at: float


class IncomingLogResponse(BaseModel):
    id: str
    incoming_webhook_id: str
    response_status: int
    request_body: Any = None
    request_headers: dict
    response_body: Any = None
    error_message: Optional[str] = None
    response_time_ms: Optional[int] = None
    created_at: float


class RealtimeChannelsResponse(BaseModel):
    active: int
    channels: list[str]
