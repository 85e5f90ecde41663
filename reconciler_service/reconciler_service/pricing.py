"""Price resolution for products added to an existing order."""

from decimal import Decimal

from .client import OrderApiClient
from .errors import ApiError
from .logger import logger
from .schemas import Product


def resolve_price(client: OrderApiClient, customer_id: str, product: Product) -> Decimal:
    """Pick the unit price for a product being added to a customer's order.

    The customer-specific price wins. Without one, the price last used for
    the product on the customer's orders is reused, and the catalogue price
    is the final fallback. Lookup failures only move on to the next source.
    """
    try:
        prices = client.get_customer_prices(customer_id)
    except ApiError as exc:
        logger.warning(f"Failed to fetch customer-specific prices | customer_id={customer_id} | error={exc}")
        prices = {}

    if product.id in prices:
        return prices[product.id]

    try:
        latest = client.get_latest_price(customer_id, product.id)
    except ApiError as exc:
        logger.warning(f"Failed to fetch latest price | customer_id={customer_id} | product_id={product.id} | error={exc}")
        latest = None

    if latest is not None:
        return latest
    return product.price
