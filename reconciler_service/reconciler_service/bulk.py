"""Chunked bulk operations used by the admin AM/PM workflows."""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

from .client import OrderApiClient
from .errors import OrderValidationError, ReconcilerError
from .logger import logger
from .schemas import BulkItemResult, BulkResult


def run_in_batches(
    operation: str,
    keys: Sequence[str],
    func: Callable[[str], Optional[dict]],
    batch_size: int = 5,
) -> BulkResult:
    """Apply ``func`` to every key, ``batch_size`` keys at a time.

    Keys within a batch run concurrently; batches run one after another. A
    failing key is recorded and never stops the others.
    """
    if batch_size <= 0:
        raise OrderValidationError("Batch size must be greater than zero")

    result = BulkResult(operation=operation)
    for start in range(0, len(keys), batch_size):
        batch = [str(key) for key in keys[start : start + batch_size]]
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            futures = [(key, pool.submit(func, key)) for key in batch]
            for key, future in futures:
                try:
                    data = future.result()
                    result.items.append(BulkItemResult(key=key, ok=True, data=data))
                except ReconcilerError as exc:
                    logger.error(f"Bulk {operation} failed | key={key} | error={exc}")
                    result.items.append(BulkItemResult(key=key, ok=False, error=str(exc)))

    logger.info(
        f"Bulk {operation} finished | total={len(result.items)} | "
        f"succeeded={sum(item.ok for item in result.items)}"
    )
    return result


def bulk_approve(client: OrderApiClient, order_ids: Sequence[str], batch_size: int = 5) -> BulkResult:
    """Mark orders as Accepted."""
    return run_in_batches(
        "approve",
        order_ids,
        lambda order_id: client.update_order_status(order_id, "Accepted"),
        batch_size,
    )


def place_from_recent(client: OrderApiClient, customer_id: str, order_type: str) -> dict:
    """Place an AM/PM order for a customer, copied from their latest order.

    The latest order of the same type is preferred; any latest order is the
    fallback reference.
    """
    reference = client.get_most_recent_order(customer_id, order_type) or client.get_most_recent_order(customer_id)
    if reference is None:
        raise OrderValidationError(
            f"Could not find a recent order to reference for customer {customer_id} to place {order_type} order."
        )
    return client.place_on_behalf(customer_id, order_type, reference.id)


def bulk_place(
    client: OrderApiClient,
    customer_ids: Sequence[str],
    order_type: str,
    batch_size: int = 5,
) -> BulkResult:
    """Place AM or PM orders on behalf of many customers."""
    if order_type not in ("AM", "PM"):
        raise OrderValidationError(f"Order type must be AM or PM, got {order_type!r}")
    return run_in_batches(
        f"place_{order_type.lower()}",
        customer_ids,
        lambda customer_id: place_from_recent(client, customer_id, order_type),
        batch_size,
    )
