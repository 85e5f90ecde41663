"""Schemas for orders, credit accounts and reconciliation results."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, computed_field

from .money import ZERO, line_total, to_money

Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(float, return_type=float, when_used="json"),
]
Identifier = Annotated[str, BeforeValidator(lambda v: str(v) if isinstance(v, int) else v)]

OrderType = Literal["AM", "PM"]


class OrderLineItem(BaseModel):
    """A product line on an order.

    Attributes:
        product_id: Catalogue product identifier.
        name: Product name as shown on the order.
        category: Product category.
        price: Unit price, possibly customer specific.
        quantity: Units ordered. Zero is accepted while editing but rejected at submit.
        gst_rate: Optional tax rate carried through to the backend.
    """

    model_config = ConfigDict(extra="ignore")

    product_id: Identifier
    name: Optional[str] = None
    category: Optional[str] = None
    price: Money
    quantity: int = Field(0, ge=0)
    gst_rate: Optional[float] = None

    @property
    def total(self) -> Decimal:
        return line_total(self.price, self.quantity)


class Product(BaseModel):
    """Catalogue entry that can be added to an existing order."""

    model_config = ConfigDict(extra="ignore")

    id: Identifier
    name: str
    category: Optional[str] = None
    price: Money
    gst_rate: Optional[float] = None


class Order(BaseModel):
    """An order as returned by the order service.

    ``cancelled``, ``approve_status`` and ``delivery_status`` are independent
    string enums owned by the backend and are passed through untouched.
    """

    model_config = ConfigDict(extra="ignore")

    id: Identifier
    customer_id: Identifier
    total_amount: Money = ZERO
    placed_on: Optional[int] = None
    order_type: Optional[str] = None
    cancelled: Optional[str] = None
    approve_status: Optional[str] = None
    delivery_status: Optional[str] = None
    loading_slip: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.loading_slip == "Yes"

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled == "Yes"


class CreditAccount(BaseModel):
    """Credit ceiling and running amount due for one customer."""

    customer_id: Identifier
    credit_limit: Optional[Money] = None
    amount_due: Money = ZERO

    @property
    def is_unlimited(self) -> bool:
        return self.credit_limit is None


class CreditAction(str, Enum):
    """Direction of the credit call that follows an order change."""

    DEDUCT = "deduct"
    INCREASE = "increase"
    NONE = "none"


class CreditAdjustment(BaseModel):
    """Credit call derived from the delta between two order totals."""

    customer_id: Identifier
    action: CreditAction
    amount: Money = ZERO
    delta: Money = ZERO


class GateDecision(BaseModel):
    """Outcome of the credit-limit gate.

    ``ceiling`` is None when the customer has no limit.
    """

    allowed: bool
    new_total: Money
    ceiling: Optional[Money] = None
    excess: Money = ZERO


class StepResult(BaseModel):
    """Outcome of one remote step of a reconciliation."""

    name: str
    ok: bool
    error: Optional[str] = None
    compensated: bool = False
    compensation_error: Optional[str] = None


class ReconciliationResult(BaseModel):
    """Aggregated outcome of a multi-step order mutation.

    ``succeeded`` is only true when every step succeeded; a successful order
    update followed by a failed credit call is reported as a failure.
    """

    saga_id: str
    operation: str
    status: str
    order_id: Optional[str] = None
    customer_id: str
    original_amount: Money = ZERO
    new_amount: Money = ZERO
    adjustment: Optional[CreditAdjustment] = None
    steps: list[StepResult] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and all(step.ok for step in self.steps)

    @property
    def failed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if not step.ok]


class BulkItemResult(BaseModel):
    """Outcome for a single key of a bulk operation."""

    key: str
    ok: bool
    error: Optional[str] = None
    data: Optional[dict] = None


class BulkResult(BaseModel):
    """Per-item outcomes of a chunked bulk operation."""

    operation: str
    items: list[BulkItemResult] = Field(default_factory=list)

    @computed_field
    @property
    def all_succeeded(self) -> bool:
        return bool(self.items) and all(item.ok for item in self.items)

    @computed_field
    @property
    def any_succeeded(self) -> bool:
        return any(item.ok for item in self.items)


class CashCollection(BaseModel):
    """Receipt of a cash payment recorded against a customer's amount due.

    Attributes:
        customer_id: Customer who paid
        cash: Amount collected
        previous_amount_due: Amount due checked before collecting
        updated_amount_due: Amount due reported by the backend afterwards
        message: Backend confirmation message, if any
    """

    customer_id: Identifier
    cash: Money
    previous_amount_due: Money
    updated_amount_due: Money
    message: Optional[str] = None


class ReconciliationNotification(BaseModel):
    """User-facing outcome of a reconciliation, published by a notifier.

    Attributes:
        notification_id: Unique identifier for the notification
        customer_id: Customer the order belongs to
        type: Kind of outcome
        subject: Short title
        message: Human readable detail
        saga_id: Reconciliation the notification refers to, if any
        created_at: When the notification was created
    """

    notification_id: str = Field(default_factory=lambda: f"notif-{uuid.uuid4().hex[:8]}")
    customer_id: str
    type: Literal[
        "order_reconciled",
        "reconciliation_rolled_back",
        "credit_drift",
        "credit_limit_exceeded",
        "bulk_summary",
        "cash_collected",
    ]
    subject: str = Field(..., min_length=3, max_length=100)
    message: str
    saga_id: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "customer_id": "42",
                "type": "credit_drift",
                "subject": "Credit Update Error",
                "message": "Order 1001 updated but amount due could not be updated",
                "priority": "high",
            }
        }
    )


class UpdateOrderRequest(BaseModel):
    """Body of ``POST /orders/{order_id}/update``."""

    order: Order
    items: list[OrderLineItem]
    original_amount: Optional[Money] = None


class OrderRequest(BaseModel):
    """Body of requests that only need the order as last fetched."""

    order: Order


class DeleteItemRequest(BaseModel):
    order: Order
    items: list[OrderLineItem]


class AddProductRequest(BaseModel):
    order: Order
    product: Product
    items: list[OrderLineItem] = Field(default_factory=list)


class PlaceOrderRequest(BaseModel):
    """Body of ``POST /orders/place``."""

    customer_id: Identifier
    items: list[OrderLineItem] = Field(..., min_length=1)
    order_type: OrderType
    order_date: str = Field(..., description="ISO-8601 date or datetime of the order")


class CollectCashRequest(BaseModel):
    """Body of ``POST /customers/{customer_id}/collect-cash``."""

    cash: Money


class BulkApproveRequest(BaseModel):
    order_ids: list[Identifier] = Field(..., min_length=1)


class BulkPlaceRequest(BaseModel):
    customer_ids: list[Identifier] = Field(..., min_length=1)
    order_type: OrderType
