# app.services.shopify.client

import json
import logging
import time
import requests
from typing import Dict, List, Optional, Any

from app.core.exceptions import (
    GatewayAuthError,
    GatewayNotFoundError,
    PermanentGatewayError,
    StorefrontGraphQLError,
    TransientGatewayError,
)

logger = logging.getLogger(__name__)


class ShopifyGraphQLClient:
    """
    Synchronous Shopify Admin GraphQL client (requests).

    Covers the handful of operations reconciliation needs:
    - get_product / update_product (status, title, tags)
    - set_available_quantity (absolute quantity at one location)
    - get_order / add_tags / set_metafields

    Throttle status reported in ``extensions.cost`` is tracked so calls
    back off before Shopify starts rejecting them. Async callers run these
    methods in a worker thread.
    """

    def __init__(self, store_domain: str, access_token: str, api_version: str,
                 timeout: float = 30.0, safety_buffer_percentage: float = 0.25):
        if not store_domain or not access_token:
            raise ValueError(
                "SHOPIFY_SHOP_URL and SHOPIFY_ADMIN_API_ACCESS_TOKEN must be set in .env or as environment variables."
            )
        self.store_domain = store_domain
        self.api_version = api_version
        self.timeout = timeout
        self.graphql_url = f"https://{store_domain}/admin/api/{api_version}/graphql.json"
        self.headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }

        # Updated after the first call from extensions.cost.throttleStatus
        self.max_available_points = 1000.0
        self.currently_available_points = self.max_available_points
        self.restore_rate = 50.0
        self.safety_buffer_percentage = safety_buffer_percentage

        logger.info(f"ShopifyGraphQLClient initialized for {store_domain} (API version {api_version})")

    # --- Meta/Infrastructure ---

    @property
    def safety_buffer_points(self) -> float:
        return self.max_available_points * self.safety_buffer_percentage

    def _update_throttle_status(self, extensions):
        if extensions and "cost" in extensions:
            throttle = extensions["cost"].get("throttleStatus") or {}
            if throttle:
                self.max_available_points = float(throttle["maximumAvailable"])
                self.currently_available_points = float(throttle["currentlyAvailable"])
                self.restore_rate = float(throttle["restoreRate"])

    def _wait_for_budget(self, estimated_cost: int) -> None:
        required = estimated_cost + self.safety_buffer_points
        if self.currently_available_points >= required:
            return
        points_needed = required - self.currently_available_points
        wait_time = (points_needed / self.restore_rate) if self.restore_rate > 0 else 10
        wait_time = max(wait_time, 0) + 0.5
        logger.info(f"Shopify throttle: {self.currently_available_points} points available, waiting {wait_time:.2f}s")
        time.sleep(wait_time)
        self.currently_available_points = min(
            self.max_available_points,
            self.currently_available_points + self.restore_rate * wait_time,
        )

    def _make_request(self, query: str, variables: dict = None, estimated_cost: int = 10) -> Dict[str, Any]:
        """
        Execute a GraphQL request and return its ``data`` object.

        Raises TransientGatewayError for timeouts, connection errors,
        throttling and 5xx; GatewayAuthError for 401/403;
        PermanentGatewayError for other client errors.
        """
        self._wait_for_budget(estimated_cost)

        payload = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = requests.post(self.graphql_url, headers=self.headers, json=payload, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise TransientGatewayError(f"Shopify connection error: {e}", code="CONNECT")
        except requests.exceptions.Timeout as e:
            raise TransientGatewayError(f"Shopify request timed out: {e}", code="TIMEOUT")
        except requests.exceptions.RequestException as e:
            raise TransientGatewayError(f"Shopify request error: {e}", code="NETWORK")

        status = response.status_code
        if status == 429:
            self.currently_available_points = 0
            raise TransientGatewayError("Shopify returned 429 Too Many Requests", status_code=status, rate_limited=True)
        if status >= 500:
            raise TransientGatewayError(f"Shopify server error {status}: {response.text[:200]}", status_code=status)
        if status in (401, 403):
            raise GatewayAuthError(f"Shopify rejected credentials ({status})", status_code=status)
        if status == 404:
            raise GatewayNotFoundError(f"Shopify endpoint not found: {self.graphql_url}", status_code=status)
        if status >= 400:
            raise PermanentGatewayError(f"Shopify client error {status}: {response.text[:200]}", status_code=status)

        try:
            response_data = response.json()
        except json.JSONDecodeError:
            raise StorefrontGraphQLError([{"message": "Failed to decode JSON response", "response_text": response.text[:200]}])

        if "extensions" in response_data:
            self._update_throttle_status(response_data["extensions"])

        if response_data.get("errors"):
            errors = response_data["errors"]
            if any((err.get("extensions") or {}).get("code") == "THROTTLED" for err in errors):
                raise TransientGatewayError("Shopify GraphQL throttled", code="THROTTLED", rate_limited=True)
            raise StorefrontGraphQLError(errors)

        return response_data.get("data") or {}

    @staticmethod
    def _raise_user_errors(operation: str, result: Optional[Dict[str, Any]]) -> None:
        errors = (result or {}).get("userErrors") or []
        if errors:
            raise PermanentGatewayError(f"{operation} userErrors: {errors}")

    # --- Products ---

    def get_product(self, product_gid: str) -> Optional[Dict[str, Any]]:
        query = """
        query getProduct($id: ID!) {
          product(id: $id) {
            id
            title
            status
            tags
            variants(first: 1) {
              edges { node { id inventoryItem { id } } }
            }
          }
        }
        """
        data = self._make_request(query, {"id": product_gid}, estimated_cost=5)
        product = data.get("product")
        if not product:
            return None
        edges = (product.get("variants") or {}).get("edges") or []
        inventory_item_id = None
        if edges:
            inventory_item_id = ((edges[0].get("node") or {}).get("inventoryItem") or {}).get("id")
        return {
            "id": product["id"],
            "title": product.get("title") or "",
            "status": product.get("status"),
            "tags": product.get("tags") or [],
            "inventory_item_id": inventory_item_id,
        }

    def update_product(self, product_input: dict) -> Dict[str, Any]:
        """
        productUpdate with a ProductInput dict. Must include the product GID.
        """
        if not product_input.get("id"):
            raise ValueError("Product GID ('id') must be included in product_input for updates.")
        mutation = """
        mutation productUpdate($input: ProductInput!) {
          productUpdate(input: $input) {
            product { id title status tags }
            userErrors { field message }
          }
        }
        """
        data = self._make_request(mutation, {"input": product_input}, estimated_cost=20)
        result = data.get("productUpdate")
        self._raise_user_errors("productUpdate", result)
        return result or {}

    # --- Inventory ---

    def set_available_quantity(self, inventory_item_gid: str, location_gid: str, quantity: int) -> Dict[str, Any]:
        mutation = """
        mutation inventorySetQuantities($input: InventorySetQuantitiesInput!) {
          inventorySetQuantities(input: $input) {
            inventoryAdjustmentGroup { reason }
            userErrors { field message code }
          }
        }
        """
        variables = {
            "input": {
                "name": "available",
                "reason": "correction",
                "ignoreCompareQuantity": True,
                "quantities": [
                    {"inventoryItemId": inventory_item_gid, "locationId": location_gid, "quantity": quantity}
                ],
            }
        }
        data = self._make_request(mutation, variables, estimated_cost=10)
        result = data.get("inventorySetQuantities")
        self._raise_user_errors("inventorySetQuantities", result)
        return result or {}

    # --- Orders ---

    def get_order(self, order_gid: str, namespace: str) -> Optional[Dict[str, Any]]:
        query = """
        query getOrder($id: ID!, $namespace: String!) {
          order(id: $id) {
            id
            tags
            displayFinancialStatus
            cancelledAt
            metafields(first: 25, namespace: $namespace) {
              edges { node { key value type } }
            }
          }
        }
        """
        data = self._make_request(query, {"id": order_gid, "namespace": namespace}, estimated_cost=5)
        order = data.get("order")
        if not order:
            return None
        metadata = {}
        for edge in (order.get("metafields") or {}).get("edges") or []:
            node = edge.get("node") or {}
            value = node.get("value")
            if node.get("type") == "json" and value:
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    logger.warning(f"Order {order_gid} metafield {node.get('key')} holds invalid JSON")
            metadata[node.get("key")] = value
        return {
            "id": order["id"],
            "tags": order.get("tags") or [],
            "financial_status": order.get("displayFinancialStatus"),
            "cancelled_at": order.get("cancelledAt"),
            "metadata": metadata,
        }

    def add_tags(self, resource_gid: str, tags: List[str]) -> Dict[str, Any]:
        mutation = """
        mutation tagsAdd($id: ID!, $tags: [String!]!) {
          tagsAdd(id: $id, tags: $tags) {
            node { id }
            userErrors { field message }
          }
        }
        """
        data = self._make_request(mutation, {"id": resource_gid, "tags": tags}, estimated_cost=10)
        result = data.get("tagsAdd")
        self._raise_user_errors("tagsAdd", result)
        return result or {}

    def set_metafields(self, metafields: List[Dict[str, Any]]) -> Dict[str, Any]:
        mutation = """
        mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
          metafieldsSet(metafields: $metafields) {
            metafields { id namespace key value type }
            userErrors { field message code }
          }
        }
        """
        data = self._make_request(mutation, {"metafields": metafields}, estimated_cost=10)
        result = data.get("metafieldsSet")
        self._raise_user_errors("metafieldsSet", result)
        return result or {}
