"""Template purchases: the pending record Paymob later settles, and free completions."""

import logging
from typing import Any, Dict, Optional

from bson import ObjectId

from database import parse_object_id
from errors import AuthenticationError, NotFoundError, ValidationError
from payments import activate_purchase
from schemas import Purchase, PurchaseComplete, PurchaseCreate
from security import Identity

logger = logging.getLogger(__name__)


def initiate_purchase(store: Any, identity: Optional[Identity], payload: PurchaseCreate) -> Dict[str, Any]:
    if identity is None:
        raise AuthenticationError("Unauthorized")

    template_id = parse_object_id(payload.templateId)
    if template_id is None:
        raise ValidationError("Template ID is required")

    template = store.find_by_id("template", template_id)
    if not template or not template.get("isActive", True):
        raise NotFoundError("Template not found", resource="template", identifier=payload.templateId)

    user_id = ObjectId(identity.user_id)
    owned = store.find_one(
        "purchase",
        {"userId": user_id, "templateId": template_id, "paymentStatus": "paid", "status": "active"},
    )
    if owned:
        raise ValidationError("You already own this template")

    purchase = Purchase(
        userId=user_id,
        templateId=template_id,
        purchasePrice=template["price"],
        originalPrice=template.get("oldPrice") or template["price"],
        discountAmount=0,
        promoCode=payload.promoCode or None,
    )
    purchase_id = store.create_document("purchase", purchase)
    logger.info("Purchase %s initiated for template %s by %s", purchase_id, template_id, identity.user_id)

    return {
        "message": "Purchase initiated",
        "purchase": {
            "id": purchase_id,
            "amount": purchase.purchasePrice,
            "templateName": template.get("name"),
        },
    }


def complete_free_purchase(store: Any, identity: Optional[Identity], payload: PurchaseComplete) -> Dict[str, Any]:
    """Grant a free template without a payment round trip."""
    if identity is None:
        raise AuthenticationError("Unauthorized")

    purchase_id = parse_object_id(payload.purchaseId)
    if purchase_id is None:
        raise ValidationError("Purchase ID is required")

    purchase = store.find_one(
        "purchase",
        {"_id": purchase_id, "userId": ObjectId(identity.user_id), "paymentStatus": "pending"},
    )
    if not purchase:
        raise NotFoundError("Purchase not found or already processed", resource="purchase", identifier=payload.purchaseId)

    template = store.find_by_id("template", purchase["templateId"])
    if not template:
        raise NotFoundError("Template not found", resource="template", identifier=str(purchase["templateId"]))
    if template.get("price", 0) > 0:
        raise ValidationError("This template requires payment")

    if not activate_purchase(store, purchase, ("pending",), {"purchasePrice": 0}):
        raise NotFoundError("Purchase not found or already processed", resource="purchase", identifier=payload.purchaseId)
    logger.info("Free purchase %s completed by %s", purchase_id, identity.user_id)

    return {
        "success": True,
        "message": "Free template successfully added to your library",
        "purchase": {"id": str(purchase_id)},
    }
