"""Tests for the credit-limit gate, delta planning and the OrderReconciler."""

from decimal import Decimal

import pytest

from reconciler_service import __version__
from reconciler_service.errors import (
    ApiError,
    CreditLimitExceeded,
    CreditLimitUnavailable,
    OrderLockedError,
    OrderValidationError,
)
from reconciler_service.reconciler import CreditLimitGate, compute_delta, order_total, plan_credit_adjustment
from reconciler_service.schemas import CreditAccount, CreditAction, OrderLineItem, Product


def test_version():
    """Testing package Version."""
    assert __version__ == "0.1.0"


@pytest.mark.parametrize(
    "original, new, action, amount",
    [
        (500, 800, CreditAction.DEDUCT, "300.00"),
        (500, 300, CreditAction.INCREASE, "200.00"),
        (500, 500, CreditAction.NONE, "0.00"),
        (0, 120.5, CreditAction.DEDUCT, "120.50"),
        (99.99, 0, CreditAction.INCREASE, "99.99"),
    ],
)
def test_plan_credit_adjustment(original, new, action, amount):
    """Deduct on a positive delta, increase on a negative one, nothing when unchanged."""
    adjustment = plan_credit_adjustment("42", original, new)
    assert adjustment.action == action
    assert adjustment.amount == Decimal(amount)
    assert adjustment.delta == compute_delta(original, new)


def test_compute_delta_avoids_float_artifacts():
    assert compute_delta(0.1, 0.3) == Decimal("0.20")
    assert compute_delta("0.1", 0.1 + 0.2) == Decimal("0.20")


def test_gate_unlimited_never_blocks():
    decision = CreditLimitGate.evaluate(None, Decimal("999999999.99"))
    assert decision.allowed
    assert decision.ceiling is None


@pytest.mark.parametrize(
    "ceiling, total, allowed, excess",
    [
        (1000, 800, True, "0.00"),
        (1000, 1000, True, "0.00"),
        (1000, 1000.01, False, "0.01"),
        (1000, 1250, False, "250.00"),
    ],
)
def test_gate_finite_ceiling(ceiling, total, allowed, excess):
    """Blocked iff the total is above the ceiling, excess is the difference."""
    decision = CreditLimitGate.evaluate(Decimal(ceiling), total)
    assert decision.allowed is allowed
    assert decision.excess == Decimal(excess)


def test_gate_check_raises_with_excess():
    with pytest.raises(CreditLimitExceeded) as exc_info:
        CreditLimitGate.check(Decimal("1000"), Decimal("1200"))
    assert exc_info.value.excess == Decimal("200.00")


def test_order_total(items):
    assert order_total(items) == Decimal("500.00")


def test_update_order_increase_deducts_credit(reconciler, api, order):
    """500 -> 800 with a 1000 ceiling deducts 300 and updates amount due with (42, 800, 500)."""
    new_items = [OrderLineItem(product_id=1, name="Milk", price=400, quantity=2)]

    result = reconciler.update_order(order, new_items)

    assert result.succeeded
    api.update_order.assert_called_once()
    assert api.update_order.call_args.args[0] == "1001"
    assert api.update_order.call_args.args[2] == Decimal("800.00")
    api.deduct_credit.assert_called_once()
    assert api.deduct_credit.call_args.args[:2] == ("42", Decimal("300.00"))
    api.increase_credit.assert_not_called()
    api.update_amount_due.assert_called_once()
    assert api.update_amount_due.call_args.args[:3] == ("42", Decimal("800.00"), Decimal("500.00"))


def test_update_order_decrease_increases_credit(reconciler, api, order):
    """500 -> 300 gives 200 back to the customer."""
    new_items = [OrderLineItem(product_id=1, name="Milk", price=100, quantity=3)]

    result = reconciler.update_order(order, new_items)

    assert result.succeeded
    api.increase_credit.assert_called_once()
    assert api.increase_credit.call_args.args[:2] == ("42", Decimal("200.00"))
    api.deduct_credit.assert_not_called()


def test_update_order_unchanged_total_still_updates_amount_due(reconciler, api, order, items):
    result = reconciler.update_order(order, items)

    assert result.succeeded
    api.deduct_credit.assert_not_called()
    api.increase_credit.assert_not_called()
    assert api.update_amount_due.call_args.args[:3] == ("42", Decimal("500.00"), Decimal("500.00"))


def test_update_order_uses_explicit_original_amount(reconciler, api, order, items):
    reconciler.update_order(order, items, original_amount=450)
    assert api.deduct_credit.call_args.args[:2] == ("42", Decimal("50.00"))


def test_unlimited_credit_never_blocks(reconciler, api, order):
    """A 404 on the ceiling means no limit."""
    api.get_credit_limit.return_value = None
    new_items = [OrderLineItem(product_id=1, name="Milk", price=1000000, quantity=5)]

    result = reconciler.update_order(order, new_items)

    assert result.succeeded
    api.deduct_credit.assert_called_once()


def test_credit_limit_exceeded_blocks_before_any_mutation(reconciler, api, order, notifier):
    new_items = [OrderLineItem(product_id=1, name="Milk", price=600, quantity=2)]

    with pytest.raises(CreditLimitExceeded) as exc_info:
        reconciler.update_order(order, new_items)

    assert exc_info.value.excess == Decimal("200.00")
    api.update_order.assert_not_called()
    api.deduct_credit.assert_not_called()
    assert notifier.sent[-1].type == "credit_limit_exceeded"


def test_credit_limit_unavailable_aborts_submit(reconciler, api, order, items):
    api.get_credit_limit.side_effect = CreditLimitUnavailable("credit service down")

    with pytest.raises(CreditLimitUnavailable):
        reconciler.update_order(order, items)

    api.update_order.assert_not_called()
    api.update_amount_due.assert_not_called()


@pytest.mark.parametrize(
    "bad_items",
    [
        [],
        [OrderLineItem(product_id=1, name="Milk", price=25, quantity=0)],
    ],
)
def test_update_order_rejects_invalid_items(reconciler, api, order, bad_items):
    with pytest.raises(OrderValidationError):
        reconciler.update_order(order, bad_items)
    api.get_credit_limit.assert_not_called()


def test_loading_slip_blocks_customer(reconciler, api, order, items):
    locked = order.model_copy(update={"loading_slip": "Yes"})

    with pytest.raises(OrderLockedError):
        reconciler.update_order(locked, items)
    with pytest.raises(OrderLockedError):
        reconciler.cancel_order(locked)

    api.update_order.assert_not_called()
    api.cancel_order.assert_not_called()


def test_loading_slip_does_not_block_admin(admin_reconciler, admin_api, order, items):
    locked = order.model_copy(update={"loading_slip": "Yes"})

    result = admin_reconciler.update_order(locked, items)

    assert result.succeeded
    admin_api.update_order.assert_called_once()


def test_cancelled_order_cannot_be_changed(admin_reconciler, order, items):
    with pytest.raises(OrderValidationError):
        admin_reconciler.update_order(order.model_copy(update={"cancelled": "Yes"}), items)


def test_failed_credit_step_rolls_back_order_update(reconciler, api, order, notifier):
    """A failing deduct undoes the order update instead of reporting success."""
    previous = [OrderLineItem(product_id=1, name="Milk", price=25, quantity=20)]
    api.get_order_products.return_value = previous
    api.deduct_credit.side_effect = ApiError("credit service error", status=500)
    new_items = [OrderLineItem(product_id=1, name="Milk", price=25, quantity=32)]

    result = reconciler.update_order(order, new_items)

    assert not result.succeeded
    assert result.status == "compensated"
    assert api.update_order.call_count == 2
    undo_args = api.update_order.call_args_list[1].args
    assert undo_args[0] == "1001"
    assert [item.quantity for item in undo_args[1]] == [20]
    assert undo_args[2] == Decimal("500.00")
    assert undo_args[3].endswith(":undo")
    api.update_amount_due.assert_not_called()

    steps = {step.name: step for step in result.steps}
    assert steps["update_order"].compensated
    assert steps["deduct_credit"].error == "credit service error"
    assert notifier.sent[-1].type == "reconciliation_rolled_back"


def test_failed_amount_due_undoes_credit_and_order(reconciler, api, order):
    api.update_amount_due.side_effect = ApiError("amount due failed", status=502)
    new_items = [OrderLineItem(product_id=1, name="Milk", price=400, quantity=2)]

    result = reconciler.update_order(order, new_items)

    assert result.status == "compensated"
    api.increase_credit.assert_called_once()
    assert api.increase_credit.call_args.args[:2] == ("42", Decimal("300.00"))
    assert api.update_order.call_count == 2


def test_cancel_order_releases_credit(reconciler, api, order):
    result = reconciler.cancel_order(order)

    assert result.succeeded
    api.cancel_order.assert_called_once()
    assert api.cancel_order.call_args.args[0] == "1001"
    assert api.increase_credit.call_args.args[:2] == ("42", Decimal("500.00"))
    assert api.update_amount_due.call_args.args[:3] == ("42", Decimal("0.00"), Decimal("500.00"))


def test_cancel_failure_after_pivot_is_queued_and_resumed(reconciler, api, order, outbox, notifier):
    """A cancelled order cannot be restored, so failed credit calls are retried later."""
    api.update_amount_due.side_effect = ApiError("timeout")

    result = reconciler.cancel_order(order)

    assert result.status == "retry"
    assert not result.succeeded
    assert notifier.sent[-1].type == "credit_drift"
    assert [saga.saga_id for saga in outbox.pending()] == [result.saga_id]

    api.update_amount_due.side_effect = None
    resumed = reconciler.resume_pending()

    assert len(resumed) == 1
    assert resumed[0].succeeded
    api.cancel_order.assert_called_once()
    api.increase_credit.assert_called_once()
    first_key = api.update_amount_due.call_args_list[0].args[3]
    second_key = api.update_amount_due.call_args_list[1].args[3]
    assert first_key == second_key
    assert outbox.pending() == []


def test_deleting_last_item_cancels_order(reconciler, api, order):
    only_item = [OrderLineItem(product_id=5, name="Ghee", price=500, quantity=1)]

    result = reconciler.delete_line_item(order, only_item, "5")

    assert result.operation == "cancel_order"
    api.cancel_order.assert_called_once()
    api.delete_order_product.assert_not_called()


def test_delete_line_item_gives_back_its_value(reconciler, api, order, items):
    result = reconciler.delete_line_item(order, items, "2")

    assert result.succeeded
    api.delete_order_product.assert_called_once()
    assert api.delete_order_product.call_args.args[0] == "2"
    assert api.increase_credit.call_args.args[:2] == ("42", Decimal("200.00"))
    assert api.update_amount_due.call_args.args[:3] == ("42", Decimal("300.00"), Decimal("500.00"))


def test_delete_unknown_item_is_rejected(reconciler, order, items):
    with pytest.raises(OrderValidationError):
        reconciler.delete_line_item(order, items, "99")


def test_add_product_uses_customer_price(reconciler, api, order, items):
    api.get_customer_prices.return_value = {"7": Decimal("45.00")}
    product = Product(id=7, name="Paneer", category="Paneer", price=50)

    result = reconciler.add_product(order, product, items)

    assert result.succeeded
    api.add_product_to_order.assert_called_once()
    assert api.add_product_to_order.call_args.args[2] == Decimal("45.00")
    assert api.deduct_credit.call_args.args[:2] == ("42", Decimal("45.00"))


def test_add_duplicate_product_is_rejected(reconciler, api, order, items):
    with pytest.raises(OrderValidationError):
        reconciler.add_product(order, Product(id=1, name="Milk", price=25), items)
    api.add_product_to_order.assert_not_called()


def test_place_order_charges_total(reconciler, api):
    api.place_order.return_value = {"orderId": 77}
    new_items = [OrderLineItem(product_id=1, name="Milk", price=100, quantity=2)]

    result = reconciler.place_order("42", new_items, "AM", "2026-10-17")

    assert result.succeeded
    assert result.order_id == "77"
    assert api.deduct_credit.call_args.args[:2] == ("42", Decimal("200.00"))
    assert api.update_amount_due.call_args.args[:3] == ("42", Decimal("200.00"), Decimal("0.00"))


def test_place_order_failure_cancels_placed_order(reconciler, api):
    api.place_order.return_value = {"orderId": 77}
    api.deduct_credit.side_effect = ApiError("deduct failed", status=500)
    new_items = [OrderLineItem(product_id=1, name="Milk", price=100, quantity=2)]

    result = reconciler.place_order("42", new_items, "PM", "2026-10-17")

    assert result.status == "compensated"
    api.cancel_order.assert_called_once()
    assert api.cancel_order.call_args.args[0] == 77


def test_place_order_rejects_unknown_shift(reconciler):
    with pytest.raises(OrderValidationError):
        reconciler.place_order("42", [OrderLineItem(product_id=1, price=1, quantity=1)], "NOON", "2026-10-17")


def test_list_orders_rejects_bad_date(reconciler):
    with pytest.raises(OrderValidationError):
        reconciler.list_orders("42", "2026/10/17")


def test_fetch_line_items_delegates(reconciler, api, items):
    api.get_order_products.return_value = items
    assert reconciler.fetch_line_items("1001") == items


@pytest.fixture
def owing_api(mocker, admin_api):
    """Admin client for a customer who owes 500."""
    mocker.patch.object(
        admin_api, "get_credit_account", return_value=CreditAccount(customer_id=42, credit_limit=1000, amount_due=500)
    )
    return admin_api


def test_collect_cash_lowers_amount_due(admin_reconciler, owing_api, notifier):
    owing_api.collect_cash.return_value = {"updatedAmountDue": Decimal("300.00"), "message": "Cash collected"}

    collection = admin_reconciler.collect_cash("42", 200)

    owing_api.collect_cash.assert_called_once_with("42", Decimal("200.00"))
    assert collection.previous_amount_due == Decimal("500.00")
    assert collection.updated_amount_due == Decimal("300.00")
    assert collection.message == "Cash collected"
    assert notifier.sent[-1].type == "cash_collected"


def test_collect_cash_derives_amount_due_when_backend_is_silent(admin_reconciler, owing_api):
    collection = admin_reconciler.collect_cash("42", "120.50")
    assert collection.updated_amount_due == Decimal("379.50")


@pytest.mark.parametrize("cash", [-1, float("nan"), "abc", None])
def test_collect_cash_rejects_invalid_amount(admin_reconciler, owing_api, cash):
    with pytest.raises(OrderValidationError, match="valid cash amount"):
        admin_reconciler.collect_cash("42", cash)
    owing_api.collect_cash.assert_not_called()


def test_collect_cash_cannot_exceed_amount_due(admin_reconciler, owing_api):
    with pytest.raises(OrderValidationError, match="Cannot collect more than Amount Due"):
        admin_reconciler.collect_cash("42", "500.01")
    owing_api.collect_cash.assert_not_called()
