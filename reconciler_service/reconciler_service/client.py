"""HTTP client for the order and credit endpoints of the backend."""

import re
from decimal import Decimal
from typing import Any, Optional

import requests
from pydantic import BaseModel, ValidationError

from .config import ServiceConfig, UserSession
from .errors import ApiError, AuthenticationError, CreditLimitUnavailable, NotFoundError, OrderValidationError
from .logger import logger
from .money import to_money, to_wire
from .saga import RemoteCall
from .schemas import CreditAccount, Order, OrderLineItem, Product

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _check_date(date: Optional[str]) -> None:
    if date is not None and not DATE_PATTERN.match(date):
        raise OrderValidationError("Invalid date format. Use YYYY-MM-DD")


class OrderApiClient:
    """Thin wrapper over the REST backend.

    Every request carries the session's bearer token. Mutating calls accept an
    ``idempotency_key`` which is forwarded as the ``Idempotency-Key`` header.

    Attributes:
        base_url: Root URL of the backend.
        session: Credentials of the caller.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        config: ServiceConfig,
        session: UserSession,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = config.api_base_url.rstrip("/")
        self.session = session
        self.timeout = config.request_timeout
        self.http = http or requests.Session()

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        if not self.session.token:
            raise AuthenticationError("Authorization token missing.")
        headers = {
            "Authorization": f"Bearer {self.session.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> requests.Response:
        headers = self._headers(idempotency_key)
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url} | params={params} | body={json}")
        try:
            response = self.http.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ApiError(f"Request to {path} failed: {exc}", endpoint=path) from exc

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Backend rejected credentials for {path} ({response.status_code})")
        if response.status_code == 404:
            raise NotFoundError(f"{path} not found: {response.text}", status=404, endpoint=path)
        if response.status_code >= 400:
            raise ApiError(
                f"{method} {path} failed. Status: {response.status_code}, Text: {response.text}",
                status=response.status_code,
                endpoint=path,
            )
        return response

    @staticmethod
    def _json(response: requests.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(f"Invalid JSON from {path}", status=response.status_code, endpoint=path) from exc

    @staticmethod
    def _parse(model: type[BaseModel], data: Any, path: str):
        """Validate a response body against a schema.

        Raises:
            ApiError: If the backend sent a payload the schema rejects.
        """
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ApiError(f"Invalid payload from {path}: {exc.error_count()} validation errors", endpoint=path) from exc

    def _parse_list(self, model: type[BaseModel], data: Any, path: str) -> list:
        if not isinstance(data, list):
            raise ApiError(f"Invalid payload from {path}: expected a list", endpoint=path)
        return [self._parse(model, entry, path) for entry in data]

    def _checked(self, response: requests.Response, path: str, flag: str) -> dict:
        """Decode a body and fail when the backend reports ``flag: false``."""
        data = self._json(response, path) or {}
        if flag in data and not data[flag]:
            raise ApiError(data.get("message") or f"{path} reported failure", status=response.status_code, endpoint=path)
        return data

    # Reads

    def get_orders(self, customer_id: str, date: Optional[str] = None) -> list[Order]:
        """Fetch a customer's orders, optionally for one day."""
        _check_date(date)
        path = f"/get-orders/{customer_id}"
        response = self._request("GET", path, params={"date": date} if date else None)
        data = self._checked(response, path, "status")
        return self._parse_list(Order, data.get("orders", []), path)

    def get_admin_orders(self, admin_id: str, date: Optional[str] = None) -> list[Order]:
        """Fetch the orders of every customer assigned to an admin."""
        _check_date(date)
        path = f"/get-admin-orders/{admin_id}"
        response = self._request("GET", path, params={"date": date} if date else None)
        data = self._checked(response, path, "status")
        return self._parse_list(Order, data.get("orders", []), path)

    def get_order_products(self, order_id: str) -> list[OrderLineItem]:
        """Fetch the line items of an order. An unknown order has no items."""
        path = "/order-products"
        try:
            response = self._request("GET", path, params={"orderId": order_id})
        except NotFoundError:
            logger.info(f"No products found for order {order_id}")
            return []
        return self._parse_list(OrderLineItem, self._json(response, path), path)

    def get_credit_account(self, customer_id: str) -> CreditAccount:
        """Fetch the credit ceiling and amount due of a customer.

        A 404 means the customer has no limit and yields an unlimited account.

        Raises:
            CreditLimitUnavailable: On any other failure.
        """
        path = "/credit-limit"
        try:
            response = self._request("GET", path, params={"customerId": customer_id})
            data = self._json(response, path)
            return CreditAccount(
                customer_id=customer_id,
                credit_limit=data["creditLimit"],
                amount_due=data.get("amountDue") or 0,
            )
        except NotFoundError:
            logger.info(f"Credit limit not found for customer {customer_id}, treating as unlimited")
            return CreditAccount(customer_id=customer_id)
        except AuthenticationError:
            raise
        except (ApiError, KeyError, TypeError, ValueError) as exc:
            raise CreditLimitUnavailable(f"Failed to fetch credit limit for customer {customer_id}: {exc}") from exc

    def get_credit_limit(self, customer_id: str) -> Optional[Decimal]:
        """Credit ceiling of a customer, None when unlimited."""
        return self.get_credit_account(customer_id).credit_limit

    def get_customer_prices(self, customer_id: str) -> dict[str, Decimal]:
        """Customer-specific prices keyed by product id."""
        path = "/customer_price_check"
        response = self._request("GET", path, params={"customer_id": customer_id})
        prices = {}
        try:
            for entry in self._json(response, path) or []:
                if entry.get("customer_price") is not None:
                    prices[str(entry["product_id"])] = to_money(entry["customer_price"])
        except (AttributeError, KeyError, ValueError) as exc:
            raise ApiError(f"Invalid payload from {path}: {exc}", endpoint=path) from exc
        return prices

    def get_latest_price(self, customer_id: str, product_id: str) -> Optional[Decimal]:
        """Price last used for a product on this customer's orders, if any."""
        path = "/latest-product-price"
        try:
            response = self._request("GET", path, params={"customerId": customer_id, "productId": product_id})
        except NotFoundError:
            return None
        data = self._json(response, path) or {}
        price = data.get("price")
        if price is None:
            return None
        try:
            return to_money(price)
        except ValueError as exc:
            raise ApiError(f"Invalid payload from {path}: {exc}", endpoint=path) from exc

    def get_most_recent_order(self, customer_id: str, order_type: Optional[str] = None) -> Optional[Order]:
        """Most recent order of a customer, optionally of one AM/PM type."""
        path = "/most-recent-order"
        params = {"customerId": customer_id}
        if order_type in ("AM", "PM"):
            params["orderType"] = order_type
        try:
            response = self._request("GET", path, params=params)
        except NotFoundError:
            return None
        except ApiError as exc:
            if exc.status == 400:
                logger.warning(f"No recent {order_type or 'any'} order found for customer {customer_id}")
                return None
            raise
        order = (self._json(response, path) or {}).get("order")
        return self._parse(Order, order, path) if order else None

    # Order mutations

    def place_order(
        self,
        items: list[OrderLineItem],
        order_type: str,
        order_date: str,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Place a new order for the session's customer."""
        body = {
            "products": [
                {"product_id": item.product_id, "quantity": item.quantity, "price": to_wire(item.price)}
                for item in items
            ],
            "orderType": order_type,
            "orderDate": order_date,
        }
        response = self._request("POST", "/place", json=body, idempotency_key=idempotency_key)
        return self._json(response, "/place") or {}

    def update_order(
        self,
        order_id: str,
        items: list[OrderLineItem],
        total_amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Replace the line items and total of an order."""
        total = to_wire(total_amount)
        body = {
            "orderId": order_id,
            "products": [
                {
                    "order_id": order_id,
                    "product_id": item.product_id,
                    "name": item.name,
                    "category": item.category,
                    "price": to_wire(item.price),
                    "quantity": item.quantity,
                }
                for item in items
            ],
            "totalAmount": total,
            "total_amount": total,
        }
        response = self._request("POST", "/order_update", json=body, idempotency_key=idempotency_key)
        return self._json(response, "/order_update") or {}

    def cancel_order(self, order_id: str, idempotency_key: Optional[str] = None) -> dict:
        path = f"/cancel_order/{order_id}"
        response = self._request("POST", path, idempotency_key=idempotency_key)
        return self._checked(response, path, "success")

    def delete_order_product(self, product_id: str, idempotency_key: Optional[str] = None) -> dict:
        path = f"/delete_order_product/{product_id}"
        response = self._request("DELETE", path, idempotency_key=idempotency_key)
        return self._json(response, path) or {}

    def add_product_to_order(
        self,
        order_id: str,
        product: Product,
        price: Decimal,
        quantity: int = 1,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        body = {
            "orderId": order_id,
            "productId": product.id,
            "quantity": quantity,
            "price": to_wire(price),
            "name": product.name,
            "category": product.category,
            "gst_rate": product.gst_rate,
        }
        response = self._request("POST", "/add-product-to-order", json=body, idempotency_key=idempotency_key)
        return self._checked(response, "/add-product-to-order", "success")

    def place_on_behalf(self, customer_id: str, order_type: str, reference_order_id: str) -> dict:
        """Admin placement of an AM/PM order copied from a reference order."""
        body = {"customer_id": customer_id, "order_type": order_type, "reference_order_id": reference_order_id}
        response = self._request("POST", "/on-behalf", json=body)
        return self._json(response, "/on-behalf") or {}

    def update_order_status(self, order_id: str, approve_status: str) -> dict:
        path = "/update-order-status"
        response = self._request("POST", path, json={"id": order_id, "approve_status": approve_status})
        return self._checked(response, path, "success")

    # Credit mutations

    def deduct_credit(self, customer_id: str, amount: Decimal, idempotency_key: Optional[str] = None) -> dict:
        body = {"customerId": customer_id, "amountChange": to_wire(amount)}
        response = self._request("POST", "/credit-limit/deduct", json=body, idempotency_key=idempotency_key)
        return self._json(response, "/credit-limit/deduct") or {}

    def increase_credit(self, customer_id: str, amount: Decimal, idempotency_key: Optional[str] = None) -> dict:
        body = {"customerId": customer_id, "amountToIncrease": to_wire(amount)}
        response = self._request("POST", "/increase-credit-limit", json=body, idempotency_key=idempotency_key)
        return self._json(response, "/increase-credit-limit") or {}

    def update_amount_due(
        self,
        customer_id: str,
        total_order_amount: Decimal,
        original_order_amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        path = "/credit-limit/update-amount-due-on-order"
        body = {
            "customerId": customer_id,
            "totalOrderAmount": to_wire(total_order_amount),
            "originalOrderAmount": to_wire(original_order_amount),
        }
        response = self._request("POST", path, json=body, idempotency_key=idempotency_key)
        return self._json(response, path) or {}

    def collect_cash(self, customer_id: str, cash: Decimal) -> dict:
        """Record a cash payment against a customer's amount due.

        Returns:
            dict: Backend response. ``updatedAmountDue`` is converted to money,
            or set to None when the backend did not report it.
        """
        path = "/collect_cash"
        response = self._request("POST", path, params={"customerId": customer_id}, json={"cash": to_wire(cash)})
        data = self._json(response, path) or {}
        updated = data.get("updatedAmountDue")
        try:
            data["updatedAmountDue"] = to_money(updated) if updated is not None else None
        except ValueError as exc:
            raise ApiError(f"Invalid payload from {path}: {exc}", endpoint=path) from exc
        return data

    def execute(self, call: RemoteCall, idempotency_key: str) -> Optional[dict]:
        """Perform a serialised saga call."""
        p = call.params
        if call.kind == "place_order":
            items = [OrderLineItem.model_validate(item) for item in p["items"]]
            return self.place_order(items, p["order_type"], p["order_date"], idempotency_key)
        if call.kind == "update_order":
            items = [OrderLineItem.model_validate(item) for item in p["items"]]
            return self.update_order(p["order_id"], items, to_money(p["total_amount"]), idempotency_key)
        if call.kind == "cancel_order":
            if p.get("order_id") is None:
                raise OrderValidationError("Cannot cancel an order without an id")
            return self.cancel_order(p["order_id"], idempotency_key)
        if call.kind == "add_product":
            product = Product.model_validate(p["product"])
            return self.add_product_to_order(
                p["order_id"], product, to_money(p["price"]), p.get("quantity", 1), idempotency_key
            )
        if call.kind == "delete_product":
            return self.delete_order_product(p["product_id"], idempotency_key)
        if call.kind == "deduct_credit":
            return self.deduct_credit(p["customer_id"], to_money(p["amount"]), idempotency_key)
        if call.kind == "increase_credit":
            return self.increase_credit(p["customer_id"], to_money(p["amount"]), idempotency_key)
        if call.kind == "update_amount_due":
            return self.update_amount_due(
                p["customer_id"],
                to_money(p["total_order_amount"]),
                to_money(p["original_order_amount"]),
                idempotency_key,
            )
        raise ValueError(f"Unknown call kind: {call.kind}")

    def is_reachable(self) -> bool:
        """Check whether the backend answers at all."""
        try:
            self.http.get(self.base_url, timeout=self.timeout)
            return True
        except requests.RequestException as exc:
            logger.error(f"Backend unreachable: {exc}")
            return False
