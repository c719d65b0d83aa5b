"""
Order placement

Cart lines are normalized first (a pure step), then every line's stock is
reserved and the order document written inside one transaction. Broadcast
and audit side effects run only after the commit.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from bson import ObjectId

import notifications
from database import parse_object_id
from errors import AuthorizationError, NotFoundError, ValidationError
from inventory import reserve_stock
from schemas import Order, OrderCreate, OrderItem
from security import Identity, RequestInfo, verify_ownership

logger = logging.getLogger(__name__)


@dataclass
class NormalizedItem:
    product: ObjectId
    quantity: int = 1
    price: float = 0
    variant_id: Optional[ObjectId] = None
    size: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None

    def to_order_item(self) -> OrderItem:
        return OrderItem(
            product=self.product,
            variantId=self.variant_id,
            size=self.size,
            color=self.color,
            sku=self.sku,
            quantity=self.quantity,
            price=self.price,
        )


def _as_number(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return number


def normalize_order_item(line: Union[str, Mapping[str, Any], None]) -> Optional[NormalizedItem]:
    if not line:
        return None

    if isinstance(line, str):
        product_id = parse_object_id(line)
        return NormalizedItem(product=product_id) if product_id else None

    if not isinstance(line, Mapping):
        return None

    product_id = parse_object_id(line.get("productId") or line.get("_id"))
    if product_id is None:
        return None

    quantity_value = line.get("quantityInCart")
    if quantity_value is None:
        quantity_value = line.get("quantity")
    quantity = _as_number(1 if quantity_value is None else quantity_value, 1)
    price = _as_number(line.get("price"), 0)

    return NormalizedItem(
        product=product_id,
        variant_id=parse_object_id(line.get("variantId") or line.get("selectedVariantId")),
        size=line.get("size") or line.get("selectedSize") or None,
        color=line.get("color") or line.get("selectedColor") or None,
        sku=line.get("variantSku") or line.get("sku") or None,
        quantity=int(quantity) if quantity >= 1 else 1,
        price=price if price > 0 else 0,
    )


def normalize_order_items(lines: Iterable[Any]) -> List[NormalizedItem]:
    """Map heterogeneous cart lines onto NormalizedItem, dropping unusable ones."""
    if not isinstance(lines, (list, tuple)):
        return []
    items = []
    for line in lines:
        item = normalize_order_item(line)
        if item is not None:
            items.append(item)
    return items


def build_order(payload: OrderCreate, items: List[NormalizedItem], user_id: Optional[str]) -> Order:
    payment_method = payload.paymentMethod or "cash_on_delivery"
    paid_up_front = payment_method == "paymob" and bool(payload.paymobTransactionId)
    return Order(
        userId=parse_object_id(user_id),
        addressId=parse_object_id(payload.addressId),
        address=payload.address,
        products=[item.to_order_item() for item in items],
        totalPrice=payload.totalPrice,
        orderState="Pending",
        paymentMethod=payment_method,
        paymentStatus="paid" if paid_up_front else "pending",
        promoCode=payload.promoCode or None,
        discountAmount=payload.discountAmount if payload.discountAmount is not None else 0,
        discountPercentage=payload.discountPercentage,
        paymobOrderId=payload.paymobOrderId or None,
        paymobTransactionId=payload.paymobTransactionId or None,
        shippingFee=payload.shippingFee if payload.shippingFee is not None else 0,
    )


def place_order(
    store: Any,
    payload: OrderCreate,
    identity: Optional[Identity] = None,
    broadcaster: Optional[notifications.Broadcaster] = None,
    request_info: Optional[RequestInfo] = None,
) -> Dict[str, Any]:
    """Reserve stock for every line and persist the order, all or nothing.

    Returns the stored order document. Raises ValidationError,
    AuthorizationError, NotFoundError or InsufficientStockError; when any of
    these come out of the transaction no stock has been decremented.
    """
    request_info = request_info or RequestInfo(ip_address="unknown", user_agent=None)

    if identity is not None and payload.userId and not verify_ownership(identity, payload.userId):
        notifications.log_event(
            store,
            notifications.UNAUTHORIZED_ACCESS,
            result="blocked",
            user_id=identity.user_id,
            user_email=identity.email,
            ip_address=request_info.ip_address,
            user_agent=request_info.user_agent,
            resource="/api/order",
            action="POST",
            details={"attemptedUserId": payload.userId},
        )
        raise AuthorizationError()

    user_id = identity.user_id if identity is not None else payload.userId

    items = normalize_order_items(payload.raw_products())
    if not items:
        raise ValidationError("Order must include valid products")

    def reserve_and_save(session):
        for item in items:
            reserve_stock(store, item, session=session)
        order = build_order(payload, items, user_id)
        doc = order.model_dump(exclude_none=True)
        order_id = store.create_document("order", doc, session=session)
        doc["_id"] = ObjectId(order_id)
        return doc

    order_doc = store.run_in_transaction(reserve_and_save)
    logger.info("Order %s placed for %s", order_doc["_id"], user_id or "guest")

    announce_order(store, broadcaster or notifications.broadcaster, order_doc, identity, payload)
    notifications.log_event(
        store,
        notifications.ORDER_CREATED,
        result="success",
        user_id=identity.user_id if identity else "guest",
        user_email=(identity.email if identity else None) or (payload.address.name if payload.address else "guest"),
        ip_address=request_info.ip_address,
        user_agent=request_info.user_agent,
        resource="/api/order",
        action="POST",
        details={
            "orderId": str(order_doc["_id"]),
            "totalPrice": order_doc["totalPrice"],
            "paymentMethod": order_doc["paymentMethod"],
            "isGuestOrder": identity is None,
        },
    )
    return order_doc


def announce_order(
    store: Any,
    broadcaster: notifications.Broadcaster,
    order_doc: Dict[str, Any],
    identity: Optional[Identity],
    payload: OrderCreate,
) -> None:
    """Tell connected admin dashboards about a new order. Never raises."""
    try:
        user = None
        user_id = order_doc.get("userId")
        if user_id is not None:
            try:
                user = store.find_by_id("user", user_id)
            except Exception as exc:
                logger.warning("User lookup for order %s failed: %s", order_doc["_id"], exc)

        address = payload.address
        if identity is None:
            user_name = address.name if address and address.name else "Guest"
            user_email = f"Phone: {address.phone}" if address and address.phone else "Guest Order"
        else:
            user_name = (user or {}).get("name") or "Unknown"
            user_email = (user or {}).get("email") or "Unknown"

        order_id = str(order_doc["_id"])
        broadcaster.broadcast(
            "new-order",
            {
                "orderId": order_id,
                "orderNumber": order_id[-8:].upper(),
                "userId": str(user["_id"]) if user else None,
                "userName": user_name,
                "userEmail": user_email,
                "totalPrice": order_doc["totalPrice"],
                "orderState": order_doc["orderState"],
                "paymentStatus": order_doc["paymentStatus"],
                "createdAt": order_doc["date"].isoformat(),
            },
        )
    except Exception:
        logger.exception("Failed to broadcast order %s", order_doc.get("_id"))


def get_order(store: Any, order_id: str) -> Dict[str, Any]:
    oid = parse_object_id(order_id)
    doc = store.find_by_id("order", oid) if oid is not None else None
    if doc is None:
        raise NotFoundError("Order not found", resource="order", identifier=order_id)
    return doc
