"""FastAPI server exposing the order reconciliation workflow."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .bulk import bulk_approve, bulk_place
from .client import OrderApiClient
from .config import ServiceConfig, UserSession
from .errors import CreditLimitExceeded, ReconcilerError
from .logger import logger
from .notifier import KafkaNotifier, LogNotifier, Notifier
from .outbox import Outbox
from .reconciler import OrderReconciler
from .saga import SagaRecord
from .schemas import (
    AddProductRequest,
    BulkApproveRequest,
    BulkPlaceRequest,
    BulkResult,
    CashCollection,
    CollectCashRequest,
    CreditAccount,
    DeleteItemRequest,
    Order,
    OrderLineItem,
    OrderRequest,
    PlaceOrderRequest,
    ReconciliationResult,
    UpdateOrderRequest,
)


class ReconcilerState:
    """Class to manage reconciler service state."""

    def __init__(self) -> None:
        self.config: ServiceConfig = ServiceConfig()
        self.outbox: Optional[Outbox] = None
        self.notifier: Optional[Notifier] = None

    def configure(self, config: ServiceConfig) -> None:
        """Create the outbox and notifier for a configuration."""
        self.config = config
        self.outbox = Outbox(config.outbox_path)
        if config.kafka_bootstrap_servers:
            self.notifier = KafkaNotifier(config.kafka_bootstrap_servers, config.notification_topic)
        else:
            self.notifier = LogNotifier()

    def reconciler_for(self, session: UserSession) -> OrderReconciler:
        if self.outbox is None:
            self.configure(self.config)
        client = OrderApiClient(self.config, session)
        return OrderReconciler(client, self.outbox, self.notifier)

    def resume_with_service_token(self) -> None:
        """Resume interrupted sagas left in the outbox by a previous run."""
        if not self.config.service_token:
            pending = len(self.outbox.pending())
            if pending:
                logger.warning(f"{pending} pending sagas left in outbox; set ORDER_API_SERVICE_TOKEN to resume them")
            return
        reconciler = self.reconciler_for(UserSession(token=self.config.service_token, role="admin"))
        reconciler.resume_pending()

    def close(self) -> None:
        if isinstance(self.notifier, KafkaNotifier):
            self.notifier.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage the lifecycle of the FastAPI application."""
    state.configure(ServiceConfig.from_env())
    logger.info(f"Reconciler configured | backend={state.config.api_base_url} | outbox={state.config.outbox_path}")
    try:
        state.resume_with_service_token()
    except ReconcilerError as exc:
        logger.error(f"Resuming pending sagas failed: {exc}")

    yield

    logger.info("Shutting down reconciler service...")
    state.close()
    logger.info("Shutdown complete")


app = FastAPI(title="Order Reconciler Service", lifespan=lifespan)
state = ReconcilerState()


@app.exception_handler(ReconcilerError)
async def reconciler_error_handler(request: Request, exc: ReconcilerError):
    """Map reconciler errors onto HTTP responses."""
    body = {"status": "error", "error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, CreditLimitExceeded):
        body["excess"] = float(exc.excess)
    logger.error(f"{request.method} {request.url.path} failed | {body['error']}: {exc}")
    return JSONResponse(status_code=exc.status_code, content=body)


def get_session(
    authorization: Optional[str] = Header(None),
    x_user_role: str = Header("customer"),
    x_user_id: Optional[str] = Header(None),
) -> UserSession:
    """Build the caller's session from request headers."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Authorization token missing.")
    if x_user_role not in ("customer", "admin"):
        raise HTTPException(status_code=422, detail=f"Unknown role: {x_user_role}")
    return UserSession(token=authorization[7:].strip(), role=x_user_role, user_id=x_user_id)


def get_reconciler(session: UserSession = Depends(get_session)) -> OrderReconciler:
    return state.reconciler_for(session)


def require_admin(session: UserSession = Depends(get_session)) -> UserSession:
    if not session.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return session


def _check_path(order_id: str, body_order_id: str) -> None:
    if order_id != body_order_id:
        raise HTTPException(status_code=422, detail="Order id in path and body differ")


@app.get("/health")
def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/ready")
def readiness_check():
    """Check whether the backend can be reached."""
    client = OrderApiClient(state.config, UserSession())
    backend_ok = client.is_reachable()
    return {"status": "ready" if backend_ok else "not_ready", "backend": "connected" if backend_ok else "disconnected"}


@app.get("/customers/{customer_id}/credit", response_model=CreditAccount)
def get_credit(customer_id: str, reconciler: OrderReconciler = Depends(get_reconciler)):
    """Current credit ceiling and amount due of a customer."""
    return reconciler.client.get_credit_account(customer_id)


@app.get("/customers/{customer_id}/orders", response_model=list[Order])
def list_orders(customer_id: str, date: Optional[str] = None, reconciler: OrderReconciler = Depends(get_reconciler)):
    return reconciler.list_orders(customer_id, date)


@app.get("/admins/{admin_id}/orders", response_model=list[Order])
def list_admin_orders(
    admin_id: str,
    date: Optional[str] = None,
    session: UserSession = Depends(require_admin),
    reconciler: OrderReconciler = Depends(get_reconciler),
):
    """Orders of every customer assigned to an admin."""
    return reconciler.list_admin_orders(admin_id, date)


@app.get("/orders/{order_id}/items", response_model=list[OrderLineItem])
def get_items(order_id: str, reconciler: OrderReconciler = Depends(get_reconciler)):
    return reconciler.fetch_line_items(order_id)


@app.post("/customers/{customer_id}/collect-cash", response_model=CashCollection)
def collect_cash(
    customer_id: str,
    body: CollectCashRequest,
    session: UserSession = Depends(require_admin),
    reconciler: OrderReconciler = Depends(get_reconciler),
):
    """Record cash collected from a customer against their amount due."""
    return reconciler.collect_cash(customer_id, body.cash)


@app.post("/orders/place", response_model=ReconciliationResult)
def place_order(body: PlaceOrderRequest, reconciler: OrderReconciler = Depends(get_reconciler)):
    """Place a new order and charge it to the customer's credit."""
    return reconciler.place_order(body.customer_id, body.items, body.order_type, body.order_date)


@app.post("/orders/{order_id}/update", response_model=ReconciliationResult)
def update_order(order_id: str, body: UpdateOrderRequest, reconciler: OrderReconciler = Depends(get_reconciler)):
    """Submit edited line items of an order."""
    _check_path(order_id, body.order.id)
    return reconciler.update_order(body.order, body.items, body.original_amount)


@app.post("/orders/{order_id}/cancel", response_model=ReconciliationResult)
def cancel_order(order_id: str, body: OrderRequest, reconciler: OrderReconciler = Depends(get_reconciler)):
    """Cancel an order and release its credit."""
    _check_path(order_id, body.order.id)
    return reconciler.cancel_order(body.order)


@app.delete("/orders/{order_id}/items/{product_id}", response_model=ReconciliationResult)
def delete_item(
    order_id: str,
    product_id: str,
    body: DeleteItemRequest,
    reconciler: OrderReconciler = Depends(get_reconciler),
):
    """Remove a product from an order, cancelling the order if it was the last one."""
    _check_path(order_id, body.order.id)
    return reconciler.delete_line_item(body.order, body.items, product_id)


@app.post("/orders/{order_id}/items", response_model=ReconciliationResult)
def add_item(order_id: str, body: AddProductRequest, reconciler: OrderReconciler = Depends(get_reconciler)):
    """Add one unit of a product to an order."""
    _check_path(order_id, body.order.id)
    return reconciler.add_product(body.order, body.product, body.items)


@app.post("/orders/bulk-approve", response_model=BulkResult)
def approve_orders(
    body: BulkApproveRequest,
    session: UserSession = Depends(require_admin),
):
    """Approve many orders, five at a time by default."""
    client = OrderApiClient(state.config, session)
    return bulk_approve(client, body.order_ids, state.config.bulk_batch_size)


@app.post("/orders/bulk-place", response_model=BulkResult)
def place_orders(
    body: BulkPlaceRequest,
    session: UserSession = Depends(require_admin),
):
    """Place AM/PM orders on behalf of many customers."""
    client = OrderApiClient(state.config, session)
    return bulk_place(client, body.customer_ids, body.order_type, state.config.bulk_batch_size)


@app.get("/outbox/pending", response_model=list[SagaRecord])
def list_pending(session: UserSession = Depends(require_admin)):
    """Sagas that are interrupted, awaiting retry or mid-compensation."""
    if state.outbox is None:
        state.configure(state.config)
    return state.outbox.pending()


@app.post("/outbox/resume", response_model=list[ReconciliationResult])
def resume_pending(session: UserSession = Depends(require_admin)):
    """Resume every pending saga with the caller's credentials."""
    return state.reconciler_for(session).resume_pending()
