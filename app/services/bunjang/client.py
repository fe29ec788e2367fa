import base64
import json
import logging
import time
import uuid
import httpx
from typing import Dict, Optional, Any

from jose import jwt

from app.core.exceptions import (
    GatewayAuthError,
    GatewayNotFoundError,
    InsufficientFundsError,
    ItemUnavailableError,
    PermanentGatewayError,
    PriceChangedError,
    TransientGatewayError,
)

logger = logging.getLogger(__name__)

# Marketplace error codes returned in the JSON body of 4xx responses
UNAVAILABLE_CODES = {"PRODUCT_NOT_FOUND", "PRODUCT_SOLD_OUT", "PRODUCT_ON_HOLD"}
AUTH_CODES = {"INVALID_AUTH_TOKEN", "UNAUTHORIZED"}
FUNDS_CODES = {"POINT_SHORTAGE"}
PRICE_CODES = {"INVALID_PRODUCT_PRICE"}


class BunjangClient:
    """
    Asynchronous client for the Bunjang open API.

    Every request carries a freshly signed HS256 JWT (accessKey, iat, nonce)
    keyed with the base64-decoded secret. HTTP failures are mapped onto the
    gateway error taxonomy:

    - timeouts, connection errors, 429 and 5xx -> TransientGatewayError
    - 401/403 or an auth error code -> GatewayAuthError
    - 404 -> GatewayNotFoundError
    - sold/on-hold codes -> ItemUnavailableError
    - point shortage -> InsufficientFundsError
    - price mismatch -> PriceChangedError
    - any other 4xx -> PermanentGatewayError
    """

    def __init__(self, base_url: str, access_key: str, secret_key: str, timeout: float = 30.0):
        if not access_key or not secret_key:
            raise ValueError("BUNJANG_ACCESS_KEY and BUNJANG_SECRET_KEY must be set")
        self.base_url = base_url.rstrip("/")
        self.access_key = access_key
        self._secret = base64.b64decode(secret_key)
        self.timeout = timeout
        logger.info(f"Initializing BunjangClient for {self.base_url}")

    def _generate_token(self) -> str:
        payload = {
            "accessKey": self.access_key,
            "iat": int(time.time()),
            "nonce": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self._secret, algorithm="HS256")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._generate_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        timeout: Optional[float] = None,
    ) -> Dict:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        logger.debug(f"Making {method} request to {url}")
        if params:
            logger.debug(f"Params: {params}")
        if data:
            logger.debug(f"Data: {json.dumps(data)[:500]}")

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    json=data,
                    params=params,
                )
        except httpx.ConnectError as e:
            # Nothing reached the server
            logger.error(f"Bunjang connection error for {method} {endpoint}: {e}")
            raise TransientGatewayError(f"Connection error: {e}", code="CONNECT")
        except httpx.ConnectTimeout as e:
            logger.error(f"Bunjang connect timeout for {method} {endpoint}: {e}")
            raise TransientGatewayError(f"Connect timed out: {e}", code="CONNECT")
        except httpx.TimeoutException as e:
            logger.error(f"Bunjang timeout for {method} {endpoint}: {e}")
            raise TransientGatewayError(f"Request timed out: {e}", code="TIMEOUT")
        except httpx.RequestError as e:
            logger.error(f"Bunjang network error for {method} {endpoint}: {e}")
            raise TransientGatewayError(f"Network error: {e}", code="NETWORK")

        if response.status_code in (200, 201, 202):
            return response.json() if response.content else {}
        if response.status_code == 204:
            return {}

        self._raise_for_status(response, method, endpoint)

    def _raise_for_status(self, response: httpx.Response, method: str, endpoint: str) -> None:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        error_code = body.get("errorCode") or body.get("code")
        reason = body.get("reason") or body.get("message") or response.text[:200]
        message = f"Bunjang {method} {endpoint} failed ({status} {error_code}): {reason}"
        logger.error(message)

        if status == 429:
            raise TransientGatewayError(message, status_code=status, code=error_code, rate_limited=True)
        if status >= 500:
            raise TransientGatewayError(message, status_code=status, code=error_code)
        if status in (401, 403) or error_code in AUTH_CODES:
            raise GatewayAuthError(message, status_code=status, code=error_code)
        if error_code in FUNDS_CODES:
            raise InsufficientFundsError(message, status_code=status, code=error_code)
        if error_code in PRICE_CODES:
            raise PriceChangedError(message, status_code=status, code=error_code)
        if error_code in UNAVAILABLE_CODES:
            raise ItemUnavailableError(message, status_code=status, code=error_code)
        if status == 404:
            raise GatewayNotFoundError(message, status_code=status, code=error_code)
        raise PermanentGatewayError(message, status_code=status, code=error_code)

    # Products

    async def get_product(self, pid: str) -> Dict[str, Any]:
        """Raw product payload (the ``data`` object of /api/v1/products/{pid})"""
        response = await self._make_request("GET", f"/api/v1/products/{pid}")
        product = response.get("data")
        if not product:
            raise GatewayNotFoundError(f"No product data returned for {pid}", status_code=200)
        return product

    # Orders

    async def create_order(self, pid: str, price: int, delivery_price: int = 0) -> str:
        payload = {
            "product": {"id": int(pid) if str(pid).isdigit() else pid, "price": price},
            "deliveryPrice": delivery_price,
        }
        response = await self._make_request("POST", "/api/v2/orders", data=payload)
        order_id = (response.get("data") or {}).get("id")
        if order_id is None:
            # The order may exist; treat as unconfirmed rather than failed
            raise TransientGatewayError(
                f"Order creation response for {pid} missing data.id", code="MISSING_ORDER_ID"
            )
        logger.info(f"Bunjang order {order_id} created for product {pid} at {price}")
        return str(order_id)

    async def confirm_purchase(self, order_id: str) -> None:
        await self._make_request("POST", f"/api/v1/orders/{order_id}/confirm-purchase")
        logger.info(f"Bunjang order {order_id} purchase confirmed")

    async def get_orders(self, start_iso: str, end_iso: str, page: int = 0, size: int = 100) -> Dict[str, Any]:
        params = {
            "statusUpdateStartDate": start_iso,
            "statusUpdateEndDate": end_iso,
            "page": page,
            "size": min(size, 100),
        }
        return await self._make_request("GET", "/api/v1/orders", params=params)

    # Account

    async def get_point_balance(self) -> int:
        response = await self._make_request("GET", "/api/v1/points/balance")
        data = response.get("data") or {}
        return int(data.get("balance", 0))
