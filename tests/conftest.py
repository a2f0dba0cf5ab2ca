import time
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Set, Tuple

import pytest
import stripe


class FakeStripe:
    """In-memory stand-in for the stripe resource classes BillingService calls.

    Records every call as ``(name, args, params)``; names listed in ``fail``
    raise a connection error instead.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, tuple, Dict[str, Any]]] = []
        self.fail: Set[str] = set()
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.items: Dict[str, Dict[str, Any]] = {}
        self._seq = 0

        self.Customer = SimpleNamespace(create=self._recorded("Customer.create", self._customer_create))
        self.Subscription = SimpleNamespace(
            list=self._recorded("Subscription.list", self._subscription_list),
            create=self._recorded("Subscription.create", self._subscription_create),
        )
        self.SubscriptionItem = SimpleNamespace(
            create=self._recorded("SubscriptionItem.create", self._item_create),
            modify=self._recorded("SubscriptionItem.modify", self._item_modify),
            delete=self._recorded("SubscriptionItem.delete", self._item_delete),
        )
        self.checkout = SimpleNamespace(
            Session=SimpleNamespace(create=self._recorded("checkout.Session.create", self._checkout_create))
        )
        self.billing_portal = SimpleNamespace(
            Session=SimpleNamespace(create=self._recorded("billing_portal.Session.create", self._portal_create))
        )

    def names(self) -> List[str]:
        return [name for name, _, _ in self.calls]

    def _recorded(self, name: str, fn: Callable[..., Any]) -> Callable[..., Any]:
        def call(*args: Any, **params: Any) -> Any:
            self.calls.append((name, args, dict(params)))
            if name in self.fail:
                raise stripe.APIConnectionError(f"{name} unavailable")
            params.pop("api_key", None)
            return fn(*args, **params)

        return call

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _customer_create(self, **params: Any) -> Dict[str, Any]:
        customer = dict(params, id=self._next("cus"))
        self.customers[customer["id"]] = customer
        return customer

    def _subscription_list(self, customer: str, status: str, limit: int) -> Dict[str, Any]:
        subs = [s for s in self.subscriptions.values() if s["customer"] == customer and s["status"] == status]
        return {"object": "list", "data": subs[:limit]}

    def _subscription_create(self, customer: str, items: List[Dict[str, Any]], metadata: Dict[str, Any]) -> Dict[str, Any]:
        sub_id = self._next("sub")
        sub = {"id": sub_id, "customer": customer, "status": "active", "metadata": metadata}
        created = [self._item_create(subscription=sub_id, price=i["price"], metadata={}) for i in items]
        sub["items"] = {"object": "list", "data": created}
        self.subscriptions[sub_id] = sub
        return sub

    def _item_create(self, subscription: str, price: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        item = {"id": self._next("si"), "subscription": subscription, "price": price, "metadata": metadata}
        self.items[item["id"]] = item
        return item

    def _item_modify(self, item_id: str, price: str) -> Dict[str, Any]:
        if item_id not in self.items:
            raise stripe.InvalidRequestError(f"No such subscription item: '{item_id}'", "id")
        self.items[item_id]["price"] = price
        return self.items[item_id]

    def _item_delete(self, item_id: str) -> Dict[str, Any]:
        if self.items.pop(item_id, None) is None:
            raise stripe.InvalidRequestError(f"No such subscription item: '{item_id}'", "id")
        return {"id": item_id, "deleted": True}

    def _checkout_create(self, **params: Any) -> Dict[str, Any]:
        session_id = self._next("cs")
        return dict(params, id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def _portal_create(self, customer: str, return_url: str) -> Dict[str, Any]:
        return {"id": self._next("bps"), "customer": customer, "return_url": return_url, "url": f"https://billing.stripe.test/{customer}"}


def stripe_signature(payload: bytes, secret: str, timestamp: int = 0) -> str:
    ts = int(timestamp or time.time())
    sig = stripe.WebhookSignature._compute_signature(f"{ts}.{payload.decode('utf-8')}", secret)
    return f"t={ts},v1={sig}"


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def sign_webhook() -> Callable[..., str]:
    return stripe_signature
