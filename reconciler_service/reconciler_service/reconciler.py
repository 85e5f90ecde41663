"""Credit-limit-aware order reconciliation.

Every order mutation goes through :class:`OrderReconciler`, which gates the
new total against the customer's credit ceiling, then runs the order call and
the matching credit calls as one saga.
"""

from decimal import Decimal
from typing import Iterable, Optional

from .client import OrderApiClient
from .errors import CreditLimitExceeded, OrderLockedError, OrderValidationError
from .logger import logger
from .money import ZERO, to_money
from .notifier import LogNotifier, Notifier
from .outbox import Outbox
from .pricing import resolve_price
from .saga import RemoteCall, SagaRecord, SagaRunner, SagaStatus, SagaStep
from .schemas import (
    CashCollection,
    CreditAction,
    CreditAdjustment,
    GateDecision,
    Order,
    OrderLineItem,
    Product,
    ReconciliationNotification,
    ReconciliationResult,
)


def compute_delta(original_amount, new_amount) -> Decimal:
    """Signed change between an order's previous and new total."""
    return to_money(new_amount) - to_money(original_amount)


def plan_credit_adjustment(customer_id: str, original_amount, new_amount) -> CreditAdjustment:
    """Decide which credit call follows an order change.

    A positive delta deducts the delta, a negative one gives back its absolute
    value and an unchanged total needs no credit call.
    """
    delta = compute_delta(original_amount, new_amount)
    if delta > 0:
        action = CreditAction.DEDUCT
    elif delta < 0:
        action = CreditAction.INCREASE
    else:
        action = CreditAction.NONE
    return CreditAdjustment(customer_id=customer_id, action=action, amount=abs(delta), delta=delta)


def order_total(items: Iterable[OrderLineItem]) -> Decimal:
    return to_money(sum((item.total for item in items), ZERO))


class CreditLimitGate:
    """Pre-submission check of a new order total against the credit ceiling."""

    @staticmethod
    def evaluate(ceiling: Optional[Decimal], new_total) -> GateDecision:
        """Compare a total with a ceiling; ``None`` means unlimited."""
        total = to_money(new_total)
        if ceiling is None:
            return GateDecision(allowed=True, new_total=total)
        ceiling = to_money(ceiling)
        if total > ceiling:
            return GateDecision(allowed=False, new_total=total, ceiling=ceiling, excess=total - ceiling)
        return GateDecision(allowed=True, new_total=total, ceiling=ceiling)

    @classmethod
    def check(cls, ceiling: Optional[Decimal], new_total) -> GateDecision:
        """Like :meth:`evaluate` but raises when the total is over the ceiling.

        Raises:
            CreditLimitExceeded: If the new total exceeds a finite ceiling.
        """
        decision = cls.evaluate(ceiling, new_total)
        if not decision.allowed:
            raise CreditLimitExceeded(decision.new_total, decision.ceiling)
        return decision


def _amount_params(customer_id: str, amount: Decimal) -> dict:
    return {"customer_id": customer_id, "amount": str(amount)}


def credit_steps(adjustment: CreditAdjustment, original_amount: Decimal, new_amount: Decimal) -> list[SagaStep]:
    """Saga steps applying a credit adjustment and the amount-due update.

    The amount-due update is always included, even when the total did not
    change.
    """
    customer_id = adjustment.customer_id
    steps = []
    if adjustment.action == CreditAction.DEDUCT:
        steps.append(
            SagaStep(
                name="deduct_credit",
                action=RemoteCall(kind="deduct_credit", params=_amount_params(customer_id, adjustment.amount)),
                compensation=RemoteCall(kind="increase_credit", params=_amount_params(customer_id, adjustment.amount)),
            )
        )
    elif adjustment.action == CreditAction.INCREASE:
        steps.append(
            SagaStep(
                name="increase_credit",
                action=RemoteCall(kind="increase_credit", params=_amount_params(customer_id, adjustment.amount)),
                compensation=RemoteCall(kind="deduct_credit", params=_amount_params(customer_id, adjustment.amount)),
            )
        )
    steps.append(
        SagaStep(
            name="update_amount_due",
            action=RemoteCall(
                kind="update_amount_due",
                params={
                    "customer_id": customer_id,
                    "total_order_amount": str(new_amount),
                    "original_order_amount": str(original_amount),
                },
            ),
            compensation=RemoteCall(
                kind="update_amount_due",
                params={
                    "customer_id": customer_id,
                    "total_order_amount": str(original_amount),
                    "original_order_amount": str(new_amount),
                },
            ),
        )
    )
    return steps


def _dump_items(items: Iterable[OrderLineItem]) -> list[dict]:
    return [item.model_dump(mode="json") for item in items]


class OrderReconciler:
    """Single entry point for order mutations that affect customer credit.

    Attributes:
        client: Backend client carrying the caller's session.
        outbox: Durable log the sagas are recorded in.
        notifier: Receives the outcome of every reconciliation.
    """

    def __init__(self, client: OrderApiClient, outbox: Outbox, notifier: Optional[Notifier] = None):
        self.client = client
        self.outbox = outbox
        self.notifier = notifier or LogNotifier()
        self.runner = SagaRunner(client.execute, outbox)

    # Reads

    def list_orders(self, customer_id: str, date: Optional[str] = None) -> list[Order]:
        return self.client.get_orders(customer_id, date)

    def list_admin_orders(self, admin_id: str, date: Optional[str] = None) -> list[Order]:
        return self.client.get_admin_orders(admin_id, date)

    def fetch_line_items(self, order_id: str) -> list[OrderLineItem]:
        return self.client.get_order_products(order_id)

    # Guards

    def _guard(self, order: Order) -> None:
        if order.is_cancelled:
            raise OrderValidationError(f"Order {order.id} is cancelled")
        if order.is_locked and not self.client.session.is_admin:
            raise OrderLockedError(order.id)

    @staticmethod
    def _validate_items(items: list[OrderLineItem]) -> None:
        if not items:
            raise OrderValidationError("Order must contain at least one product")
        for item in items:
            if item.quantity <= 0:
                raise OrderValidationError(f"Quantity for product {item.product_id} must be greater than zero")

    def gate(self, customer_id: str, new_total: Decimal) -> GateDecision:
        """Fetch the ceiling and gate a new total against it.

        Raises:
            CreditLimitUnavailable: If the ceiling cannot be fetched.
            CreditLimitExceeded: If the new total is over the ceiling.
        """
        ceiling = self.client.get_credit_limit(customer_id)
        try:
            return CreditLimitGate.check(ceiling, new_total)
        except CreditLimitExceeded as exc:
            logger.warning(f"Credit limit exceeded | customer_id={customer_id} | total={exc.new_total} | ceiling={exc.ceiling}")
            self.notifier.send(
                ReconciliationNotification(
                    customer_id=customer_id,
                    type="credit_limit_exceeded",
                    subject="Credit Limit Exceeded",
                    message=f"Order amount ({exc.new_total}) exceeds your credit limit ({exc.ceiling})",
                    priority="high",
                )
            )
            raise

    # Mutations

    def update_order(
        self,
        order: Order,
        items: list[OrderLineItem],
        original_amount=None,
    ) -> ReconciliationResult:
        """Submit edited line items and reconcile the customer's credit.

        Args:
            order: Order being edited, as last fetched.
            items: Full list of line items after editing.
            original_amount: Total the credit service last saw for this order.
                Defaults to ``order.total_amount``.
        """
        self._guard(order)
        self._validate_items(items)
        new_amount = order_total(items)
        original = to_money(order.total_amount if original_amount is None else original_amount)

        self.gate(order.customer_id, new_amount)
        previous_items = self.client.get_order_products(order.id)
        adjustment = plan_credit_adjustment(order.customer_id, original, new_amount)

        steps = [
            SagaStep(
                name="update_order",
                action=RemoteCall(
                    kind="update_order",
                    params={"order_id": order.id, "items": _dump_items(items), "total_amount": str(new_amount)},
                ),
                compensation=RemoteCall(
                    kind="update_order",
                    params={"order_id": order.id, "items": _dump_items(previous_items), "total_amount": str(original)},
                ),
            ),
            *credit_steps(adjustment, original, new_amount),
        ]
        return self._run("update_order", order.customer_id, order.id, steps, original, new_amount, adjustment)

    def cancel_order(self, order: Order) -> ReconciliationResult:
        """Cancel an order and give its total back to the customer's credit.

        The cancellation cannot be undone, so failed credit calls after it
        are left in the outbox for retry rather than rolled back.
        """
        self._guard(order)
        original = to_money(order.total_amount)
        adjustment = plan_credit_adjustment(order.customer_id, original, ZERO)
        steps = [
            SagaStep(name="cancel_order", action=RemoteCall(kind="cancel_order", params={"order_id": order.id})),
            *credit_steps(adjustment, original, ZERO),
        ]
        return self._run("cancel_order", order.customer_id, order.id, steps, original, ZERO, adjustment)

    def delete_line_item(self, order: Order, items: list[OrderLineItem], product_id: str) -> ReconciliationResult:
        """Remove one product from an order.

        Removing the last product cancels the whole order instead of leaving
        an order without items.
        """
        self._guard(order)
        product_id = str(product_id)
        target = next((item for item in items if item.product_id == product_id), None)
        if target is None:
            raise OrderValidationError(f"Product {product_id} is not on order {order.id}")

        remaining = [item for item in items if item.product_id != product_id]
        if not remaining:
            logger.info(f"Last product removed, cancelling order | order_id={order.id}")
            return self.cancel_order(order)

        original = to_money(order.total_amount)
        new_amount = order_total(remaining)
        adjustment = plan_credit_adjustment(order.customer_id, original, new_amount)
        restored = Product(
            id=target.product_id,
            name=target.name or target.product_id,
            category=target.category,
            price=target.price,
            gst_rate=target.gst_rate,
        )
        steps = [
            SagaStep(
                name="delete_product",
                action=RemoteCall(kind="delete_product", params={"product_id": product_id}),
                compensation=RemoteCall(
                    kind="add_product",
                    params={
                        "order_id": order.id,
                        "product": restored.model_dump(mode="json"),
                        "price": str(target.price),
                        "quantity": target.quantity,
                    },
                ),
            ),
            *credit_steps(adjustment, original, new_amount),
        ]
        return self._run("delete_line_item", order.customer_id, order.id, steps, original, new_amount, adjustment)

    def add_product(self, order: Order, product: Product, items: list[OrderLineItem]) -> ReconciliationResult:
        """Add one unit of a product to an order at the resolved customer price."""
        if any(item.product_id == product.id for item in items):
            raise OrderValidationError("This product is already in the order. Please update quantity instead.")
        self._guard(order)

        price = resolve_price(self.client, order.customer_id, product)
        original = to_money(order.total_amount)
        new_amount = to_money(original + price)
        self.gate(order.customer_id, new_amount)
        adjustment = plan_credit_adjustment(order.customer_id, original, new_amount)

        steps = [
            SagaStep(
                name="add_product",
                action=RemoteCall(
                    kind="add_product",
                    params={
                        "order_id": order.id,
                        "product": product.model_dump(mode="json"),
                        "price": str(price),
                        "quantity": 1,
                    },
                ),
                compensation=RemoteCall(kind="delete_product", params={"product_id": product.id}),
            ),
            *credit_steps(adjustment, original, new_amount),
        ]
        return self._run("add_product", order.customer_id, order.id, steps, original, new_amount, adjustment)

    def place_order(
        self,
        customer_id: str,
        items: list[OrderLineItem],
        order_type: str,
        order_date: str,
    ) -> ReconciliationResult:
        """Place a new AM/PM order and charge its total to the customer's credit."""
        if order_type not in ("AM", "PM"):
            raise OrderValidationError(f"Order type must be AM or PM, got {order_type!r}")
        self._validate_items(items)
        total = order_total(items)
        self.gate(customer_id, total)
        adjustment = plan_credit_adjustment(customer_id, ZERO, total)

        steps = [
            SagaStep(
                name="place_order",
                action=RemoteCall(
                    kind="place_order",
                    params={"items": _dump_items(items), "order_type": order_type, "order_date": order_date},
                ),
                compensation=RemoteCall(kind="cancel_order", params={"order_id": None}),
                compensation_binding={"order_id": "orderId"},
            ),
            *credit_steps(adjustment, ZERO, total),
        ]
        return self._run("place_order", customer_id, None, steps, ZERO, total, adjustment)

    def collect_cash(self, customer_id: str, cash) -> CashCollection:
        """Record a cash payment that lowers a customer's amount due.

        Raises:
            OrderValidationError: If the amount is not a non-negative number or
                is more than the customer currently owes.
            CreditLimitUnavailable: If the amount due cannot be fetched.
        """
        try:
            amount = to_money(cash)
        except ValueError as exc:
            raise OrderValidationError("Please enter a valid cash amount.") from exc
        if amount < 0:
            raise OrderValidationError("Please enter a valid cash amount.")

        account = self.client.get_credit_account(customer_id)
        if amount > account.amount_due:
            raise OrderValidationError(f"Cannot collect more than Amount Due: {account.amount_due}")

        response = self.client.collect_cash(customer_id, amount)
        updated = response.get("updatedAmountDue")
        collection = CashCollection(
            customer_id=customer_id,
            cash=amount,
            previous_amount_due=account.amount_due,
            updated_amount_due=updated if updated is not None else account.amount_due - amount,
            message=response.get("message"),
        )
        logger.info(
            f"Cash collected | customer_id={customer_id} | cash={amount} | amount_due={collection.updated_amount_due}"
        )
        self.notifier.send(
            ReconciliationNotification(
                customer_id=customer_id,
                type="cash_collected",
                subject="Cash Collected",
                message=f"Collected {amount}; amount due is now {collection.updated_amount_due}",
                priority="low",
            )
        )
        return collection

    def resume_pending(self) -> list[ReconciliationResult]:
        """Resume every saga the outbox holds as unfinished."""
        results = []
        for saga in self.outbox.pending():
            resumed = self.runner.resume(saga)
            if resumed is not None:
                results.append(self._finish(resumed))
        if results:
            logger.info(f"Resumed {len(results)} pending sagas")
        return results

    def _run(
        self,
        operation: str,
        customer_id: str,
        order_id: Optional[str],
        steps: list[SagaStep],
        original: Decimal,
        new_amount: Decimal,
        adjustment: CreditAdjustment,
    ) -> ReconciliationResult:
        saga = SagaRecord(
            operation=operation,
            customer_id=customer_id,
            order_id=order_id,
            steps=steps,
            context={
                "original_amount": str(original),
                "new_amount": str(new_amount),
                "adjustment": adjustment.model_dump(mode="json"),
            },
        )
        self.runner.run(saga)
        return self._finish(saga)

    def _finish(self, saga: SagaRecord) -> ReconciliationResult:
        if saga.order_id is None and saga.steps and saga.steps[0].result:
            placed_id = saga.steps[0].result.get("orderId")
            saga.order_id = str(placed_id) if placed_id is not None else None

        adjustment = saga.context.get("adjustment")
        result = saga.to_result(
            original_amount=saga.context.get("original_amount", ZERO),
            new_amount=saga.context.get("new_amount", ZERO),
            adjustment=CreditAdjustment.model_validate(adjustment) if adjustment else None,
        )
        self.notifier.send(self._notification_for(saga, result))
        return result

    @staticmethod
    def _notification_for(saga: SagaRecord, result: ReconciliationResult) -> ReconciliationNotification:
        target = f"order {saga.order_id}" if saga.order_id else "new order"
        errors = "; ".join(f"{step.name}: {step.error}" for step in result.failed_steps if step.error)
        if saga.status == SagaStatus.COMPLETED:
            return ReconciliationNotification(
                customer_id=saga.customer_id,
                type="order_reconciled",
                subject="Order Updated & Credit Updated",
                message=f"{saga.operation} for {target} applied and credit adjusted",
                saga_id=saga.saga_id,
                priority="low",
            )
        if saga.status == SagaStatus.COMPENSATED:
            return ReconciliationNotification(
                customer_id=saga.customer_id,
                type="reconciliation_rolled_back",
                subject="Order Change Rolled Back",
                message=f"{saga.operation} for {target} failed and was undone ({errors})",
                saga_id=saga.saga_id,
                priority="high",
            )
        return ReconciliationNotification(
            customer_id=saga.customer_id,
            type="credit_drift",
            subject="Credit Update Error",
            message=f"{saga.operation} for {target} is incomplete and queued for retry ({errors})",
            saga_id=saga.saga_id,
            priority="high",
        )
