"""
Paymob payment reconciliation

Paymob notifies us twice about a transaction: a signed server-to-server
webhook (authoritative) and a browser redirect to the callback URL. Both
paths resolve the local purchase or order and move its paymentStatus out of
``pending`` with a conditional update, so a repeated or late notification
changes nothing once the document is already ``paid``.
"""

import hashlib
import hmac
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import notifications
from database import parse_object_id
from errors import AuthenticationError

logger = logging.getLogger(__name__)

# Order in which Paymob concatenates transaction fields before signing.
PAYMOB_HMAC_FIELDS = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)


def hmac_secret() -> Optional[str]:
    return os.getenv("PAYMOB_HMAC_SECRET") or None


def _lookup(data: Any, path: str) -> Any:
    value = data
    for key in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def hmac_message(transaction: Mapping[str, Any]) -> str:
    return "".join(_stringify(_lookup(transaction, field)) for field in PAYMOB_HMAC_FIELDS)


def compute_signature(transaction: Mapping[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), hmac_message(transaction).encode("utf-8"), hashlib.sha512).hexdigest()


def verify_signature(transaction: Any, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret or not isinstance(transaction, Mapping):
        return False
    expected = compute_signature(transaction, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def verify_webhook(body: Any, signature: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    """Return the transaction object of an authentic webhook body.

    Raises AuthenticationError (500) when no secret is configured, and
    AuthenticationError (401) for a missing or mismatched signature.
    """
    if not secret:
        raise AuthenticationError("Server configuration error", status_code=500)
    transaction = body.get("obj") if isinstance(body, Mapping) else None
    if not verify_signature(transaction, signature, secret):
        raise AuthenticationError("Invalid signature")
    return dict(transaction)


def is_success(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return value is True


def merchant_purchase_id(merchant_order_id: str) -> str:
    """Purchases are sent to Paymob as ``{purchaseId}_{timestamp}``."""
    return str(merchant_order_id).split("_")[0]


def _transaction_changes(transaction_id: Any) -> Dict[str, Any]:
    if transaction_id is None or transaction_id == "":
        return {}
    return {"paymobTransactionId": str(transaction_id)}


# Purchases (digital templates)


def find_purchase(store: Any, merchant_order_id: Optional[str], paymob_order_id: Any = None) -> Optional[dict]:
    purchase = None
    if merchant_order_id:
        purchase_id = parse_object_id(merchant_purchase_id(merchant_order_id))
        if purchase_id is not None:
            purchase = store.find_by_id("purchase", purchase_id)
    if purchase is None and paymob_order_id not in (None, ""):
        purchase = store.find_one("purchase", {"paymobOrderId": str(paymob_order_id)})
    return purchase


def activate_purchase(
    store: Any,
    purchase: dict,
    allowed_from: Tuple[str, ...],
    changes: Optional[Dict[str, Any]] = None,
) -> bool:
    """Mark a purchase paid/active and grant the template, in one transaction.

    The template counter and the user's library only change when the status
    update itself matched, so a second activation is a no-op.
    """

    def activate(session):
        moved = store.set_payment_status(
            "purchase",
            purchase["_id"],
            allowed_from,
            {"paymentStatus": "paid", "status": "active", **(changes or {})},
            session=session,
        )
        if moved:
            store.increment("template", purchase["templateId"], "purchaseCount", 1, session=session)
            store.add_to_set("user", purchase["userId"], "purchasedTemplates", purchase["_id"], session=session)
        return moved

    return store.run_in_transaction(activate)


def settle_purchase(store: Any, purchase: dict, success: bool, transaction_id: Any = None) -> bool:
    """Move a purchase to paid/failed. Returns False when nothing changed."""
    if not success:
        return store.set_payment_status(
            "purchase",
            purchase["_id"],
            ("pending",),
            {"paymentStatus": "failed", **_transaction_changes(transaction_id)},
        )

    moved = activate_purchase(store, purchase, ("pending", "failed"), _transaction_changes(transaction_id))
    if moved:
        logger.info("Purchase %s paid (transaction %s)", purchase["_id"], transaction_id)
    else:
        logger.info("Purchase %s already paid; ignoring notification", purchase["_id"])
    return moved


# Orders (physical products)


def find_order(store: Any, merchant_order_id: Optional[str], paymob_order_id: Any = None) -> Optional[dict]:
    order = None
    order_id = parse_object_id(merchant_order_id)
    if order_id is not None:
        order = store.find_by_id("order", order_id)
    if order is None and paymob_order_id not in (None, ""):
        order = store.find_one("order", {"paymobOrderId": str(paymob_order_id)})
    return order


def settle_order(store: Any, order: dict, success: bool, transaction_id: Any = None) -> bool:
    if success:
        moved = store.set_payment_status(
            "order",
            order["_id"],
            ("pending", "failed"),
            {"paymentStatus": "paid", "orderState": "Processing", **_transaction_changes(transaction_id)},
        )
    else:
        moved = store.set_payment_status(
            "order",
            order["_id"],
            ("pending",),
            {"paymentStatus": "failed", **_transaction_changes(transaction_id)},
        )
    if moved:
        logger.info("Order %s payment %s", order["_id"], "paid" if success else "failed")
    return moved


# Webhook / callback entry points


def _handle_webhook(
    store: Any,
    body: Any,
    signature: Optional[str],
    secret: Optional[str],
    kind: str,
    find: Callable[..., Optional[dict]],
    settle: Callable[..., bool],
) -> Dict[str, Any]:
    transaction = verify_webhook(body, signature, secret)
    try:
        success = is_success(transaction.get("success"))
        paymob_order = transaction.get("order") if isinstance(transaction.get("order"), Mapping) else {}
        doc = find(store, paymob_order.get("merchant_order_id"), paymob_order.get("id"))
        if doc is None:
            logger.warning(
                "Paymob webhook for unknown %s (merchant order %s, paymob order %s)",
                kind,
                paymob_order.get("merchant_order_id"),
                paymob_order.get("id"),
            )
            return {"received": True}
        if settle(store, doc, success, transaction.get("id")):
            notifications.log_event(
                store,
                notifications.PAYMENT_CONFIRMED if success else notifications.PAYMENT_FAILED,
                result="success" if success else "failure",
                user_id=str(doc["userId"]) if doc.get("userId") else None,
                resource=kind,
                action="webhook",
                details={f"{kind}Id": str(doc["_id"]), "transactionId": transaction.get("id")},
            )
    except Exception:
        logger.exception("Paymob %s webhook processing failed", kind)
        return {"received": True, "error": "Processing error"}
    return {"received": True}


def handle_template_webhook(store: Any, body: Any, signature: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    return _handle_webhook(store, body, signature, secret, "purchase", find_purchase, settle_purchase)


def handle_order_webhook(store: Any, body: Any, signature: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    return _handle_webhook(store, body, signature, secret, "order", find_order, settle_order)


def _url(base_url: str, path: str, params: Optional[Dict[str, Any]] = None) -> str:
    url = f"{base_url.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return url


def handle_template_callback(store: Any, params: Mapping[str, Any], base_url: str, locale: str = "ar") -> str:
    """Browser redirect after a template payment; returns the redirect URL."""
    success = params.get("success") == "true"
    merchant_order_id = params.get("merchant_order_id")

    if success:
        try:
            purchase = find_purchase(store, merchant_order_id, params.get("order"))
            if purchase is not None:
                if purchase.get("paymentStatus") != "paid":
                    settle_purchase(store, purchase, True, params.get("id"))
                return _url(base_url, f"/{locale}/my-templates", {"purchase": "success", "id": str(purchase["_id"])})
        except Exception:
            logger.exception("Paymob template callback failed")
        return _url(base_url, f"/{locale}/my-templates", {"purchase": "success"})

    if merchant_order_id:
        try:
            purchase = find_purchase(store, merchant_order_id)
            if purchase is not None and purchase.get("paymentStatus") == "pending":
                settle_purchase(store, purchase, False)
        except Exception:
            logger.exception("Paymob template failure callback failed")
    return _url(base_url, f"/{locale}/templates", {"payment": "failed"})


def handle_order_callback(store: Any, params: Mapping[str, Any], base_url: str, locale: str = "en") -> str:
    """Browser redirect after a checkout payment; returns the redirect URL."""
    success = params.get("success") == "true"
    merchant_order_id = params.get("merchant_order_id")
    transaction_id = params.get("id")

    if success:
        try:
            order = find_order(store, merchant_order_id, params.get("order"))
            if order is not None:
                if order.get("paymentStatus") != "paid":
                    settle_order(store, order, True, transaction_id)
                return _url(base_url, f"/{locale}/order-confirmation/{order['_id']}")
        except Exception:
            logger.exception("Paymob order callback failed")
        return _url(base_url, f"/{locale}", {"payment": "success"})

    if merchant_order_id:
        try:
            order = find_order(store, merchant_order_id)
            if order is not None and order.get("paymentStatus") == "pending":
                settle_order(store, order, False)
        except Exception:
            logger.exception("Paymob order failure callback failed")

    redirect_params = {"payment_failed": "true"}
    if transaction_id:
        redirect_params["transaction"] = transaction_id
    if params.get("data.message"):
        redirect_params["error"] = params.get("data.message")
    return _url(base_url, f"/{locale}/checkout", redirect_params)
