"""Python client for the storefront API.

Wraps an ``httpx.Client`` that already carries the base URL and the bearer
token. Cart and wishlist reads are kept in a local cache; mutations that the
UI wants to feel instant (remove, quantity change) are applied to the cache
first and rolled back from a snapshot when the server refuses them.
"""
import copy
import logging
from typing import Any, Dict, List, Optional

import httpx

import lifecycle

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response from the storefront API."""

    def __init__(self, status_code: int, body: Dict[str, Any]):
        self.status_code = status_code
        self.error = body.get("error") or "Request failed"
        self.message = body.get("message") or self.error
        self.details: List[str] = body.get("details") or []
        self.body = body
        super().__init__(f"{status_code} {self.error}: {self.message}")


class CartCache:
    """Local copy of the caller's cart lines with snapshot/restore."""

    def __init__(self):
        self.cart: Optional[dict] = None
        self.items: List[dict] = []
        self.loaded = False

    def load(self, data: dict) -> None:
        self.cart = data.get("cart")
        self.items = list(data.get("cartItems") or [])
        self.loaded = True

    def snapshot(self) -> List[dict]:
        return copy.deepcopy(self.items)

    def restore(self, snapshot: List[dict]) -> None:
        self.items = snapshot

    def find(self, item_id: str) -> Optional[dict]:
        return next((i for i in self.items if i.get("id") == item_id), None)

    def active(self) -> List[dict]:
        return [i for i in self.items if i.get("item_type") == "cart"]

    def saved(self) -> List[dict]:
        return [i for i in self.items if i.get("item_type") == "save_for_later"]

    @property
    def count(self) -> int:
        return sum(i.get("quantity") or 0 for i in self.active())

    def summary(self) -> Dict[str, float]:
        lines = [
            (i["product_variant"]["final_price"], i["quantity"])
            for i in self.active() if i.get("product_variant")
        ]
        return lifecycle.price_summary(lines)

    def contains(self, variant_id: str) -> bool:
        return any(i.get("product_variant_id") == variant_id for i in self.active())


class WishlistCache:
    def __init__(self):
        self.wishlist: Optional[dict] = None
        self.items: List[dict] = []

    def load(self, data: dict) -> None:
        self.wishlist = data.get("wishlist")
        self.items = list(data.get("wishlistItems") or [])

    def contains(self, variant_id: str) -> bool:
        return any(i.get("product_variant_id") == variant_id for i in self.items)


class StorefrontClient:
    def __init__(self, http: httpx.Client):
        self.http = http
        self.cart = CartCache()
        self.wishlist = WishlistCache()

    def _request(self, method: str, url: str, **kwargs) -> dict:
        response = self.http.request(method, url, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {"error": response.reason_phrase or "Request failed"}
        if response.status_code >= 400:
            raise ApiError(response.status_code, body)
        return body

    # Cart

    def refresh_cart(self) -> CartCache:
        self.cart.load(self._request("GET", "/api/cart"))
        return self.cart

    def add_to_cart(self, variant_id: str, quantity: int = 1, item_type: str = "cart") -> dict:
        body = self._request("POST", "/api/cart", json={
            "product_variant_id": variant_id, "quantity": quantity, "item_type": item_type,
        })
        self.refresh_cart()
        return body["cartItem"]

    def update_quantity(self, item_id: str, quantity: int) -> Optional[dict]:
        """Change a line's quantity; below 1 removes the line instead."""
        if quantity < 1:
            self.remove_from_cart(item_id)
            return None
        snapshot = self.cart.snapshot()
        item = self.cart.find(item_id)
        if item is not None:
            item["quantity"] = quantity
        try:
            body = self._request("PUT", f"/api/cart/{item_id}", json={"quantity": quantity})
        except ApiError:
            self.cart.restore(snapshot)
            raise
        return body["cartItem"]

    def remove_from_cart(self, item_id: str) -> None:
        snapshot = self.cart.snapshot()
        self.cart.items = [i for i in self.cart.items if i.get("id") != item_id]
        try:
            self._request("DELETE", f"/api/cart/{item_id}")
        except ApiError:
            self.cart.restore(snapshot)
            raise

    def move_to_saved(self, item_id: str) -> dict:
        body = self._request("POST", f"/api/cart/{item_id}/move", json={"item_type": "save_for_later"})
        self.refresh_cart()
        return body["cartItem"]

    def move_to_cart(self, item_id: str) -> dict:
        body = self._request("POST", f"/api/cart/{item_id}/move", json={"item_type": "cart"})
        self.refresh_cart()
        return body["cartItem"]

    def clear_cart(self) -> int:
        body = self._request("DELETE", "/api/cart")
        self.refresh_cart()
        return body.get("removed", 0)

    # Wishlist

    def refresh_wishlist(self) -> WishlistCache:
        self.wishlist.load(self._request("GET", "/api/wishlist"))
        return self.wishlist

    def add_to_wishlist(self, variant_id: str) -> dict:
        body = self._request("POST", "/api/wishlist", json={"product_variant_id": variant_id})
        self.refresh_wishlist()
        return body["wishlistItem"]

    def remove_from_wishlist(self, item_id: str) -> None:
        snapshot = copy.deepcopy(self.wishlist.items)
        self.wishlist.items = [i for i in self.wishlist.items if i.get("id") != item_id]
        try:
            self._request("DELETE", f"/api/wishlist/{item_id}")
        except ApiError:
            self.wishlist.items = snapshot
            raise

    # Checkout & orders

    def checkout(self, shipping_address_id: str, billing_address_id: str, payment_method: str,
                 notes: Optional[str] = None) -> dict:
        body = self._request("POST", "/api/checkout", json={
            "shipping_address_id": shipping_address_id,
            "billing_address_id": billing_address_id,
            "payment_method": payment_method,
            "notes": notes,
        })
        try:
            self.refresh_cart()
        except ApiError:
            logger.warning("Cart refresh after checkout failed", exc_info=True)
        return body

    def orders(self, **filters) -> dict:
        params = {k: v for k, v in filters.items() if v is not None}
        return self._request("GET", "/api/account/order", params=params)["data"]

    def order(self, order_id: str) -> dict:
        return self._request("GET", f"/api/account/order/{order_id}")["data"]

    def track_order(self, order_id: str) -> dict:
        return self._request("GET", f"/api/account/order/{order_id}/track")["data"]

    def cancel_order(self, order_id: str, reason: str) -> dict:
        return self._request("POST", f"/api/account/order/{order_id}/cancel", json={"reason": reason})["data"]

    def return_order(self, order_id: str, reason: str, items: List[Dict[str, Any]]) -> dict:
        return self._request("POST", f"/api/account/order/{order_id}/return",
                             json={"reason": reason, "items": items})["data"]

    # Search

    def search(self, **params) -> dict:
        return self._request("GET", "/api/search", params={k: v for k, v in params.items() if v is not None})

    def suggestions(self, q: str) -> List[dict]:
        return self._request("GET", "/api/search/suggestions", params={"q": q})["suggestions"]
