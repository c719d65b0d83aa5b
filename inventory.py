"""Per-variant stock reservation inside an order transaction."""

import logging
from typing import Any, Iterable, Optional

from bson import ObjectId

from errors import InsufficientStockError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def find_variant(variants: Iterable[dict], variant_id: ObjectId) -> Optional[dict]:
    for variant in variants:
        if variant.get("_id") == variant_id:
            return variant
    return None


def resolve_variant(
    variants: Iterable[dict],
    variant_id: Optional[ObjectId] = None,
    size: Optional[str] = None,
    color: Optional[str] = None,
) -> Optional[dict]:
    """Pick the variant a cart line refers to.

    An explicit variant id wins (and only that id is considered when given).
    Otherwise the first variant matching every supplied attribute of
    size/color is returned. Nothing supplied means nothing resolves.
    """
    variants = list(variants)
    if variant_id is not None:
        return find_variant(variants, variant_id)
    if not size and not color:
        return None
    for variant in variants:
        if size and variant.get("size") != size:
            continue
        if color and variant.get("color") != color:
            continue
        return variant
    return None


def describe_variant(variant: dict) -> str:
    return f"{variant.get('color') or ''} {variant.get('size') or ''}".strip()


def reserve_stock(store: Any, item: Any, session: Any = None) -> None:
    """Check and decrement stock for one normalized line item.

    Must run inside ``store.run_in_transaction``; any exception raised here
    aborts the whole order. On success the resolved variant id (and its
    size/color/sku, when the line did not carry them) are written back onto
    the item so the stored order names the exact variant charged.
    """
    product = store.find_product(item.product, session=session)
    if product is None:
        raise NotFoundError(
            "One of the products in the order no longer exists.",
            resource="product",
            identifier=str(item.product),
        )

    variants = product.get("variants") or []
    if not variants:
        # Products without variants carry no stock to check.
        logger.debug("Product %s has no variants; skipping stock check", item.product)
        return

    name = product.get("name", "")
    variant = resolve_variant(variants, item.variant_id, item.size, item.color)
    if variant is None:
        raise ValidationError(
            f'Missing or invalid variant selection for product "{name}". '
            "Please ensure you've selected a valid size and color combination."
        )
    variant_id = variant["_id"]
    variant_info = describe_variant(variant)

    if not store.try_decrement_variant(product["_id"], variant_id, item.quantity, session=session):
        current = store.find_product(item.product, session=session)
        if current is None:
            raise NotFoundError(f'Product "{name}" no longer exists.', resource="product", identifier=str(item.product))
        current_variant = find_variant(current.get("variants") or [], variant_id)
        if current_variant is None:
            raise NotFoundError(
                f'Variant no longer exists for product "{current.get("name", name)}".',
                resource="variant",
                identifier=str(variant_id),
            )
        raise InsufficientStockError(
            current.get("name", name),
            available=current_variant.get("quantity", 0),
            requested=item.quantity,
            variant_info=variant_info,
        )

    item.variant_id = variant_id
    item.size = item.size or variant.get("size")
    item.color = item.color or variant.get("color")
    item.sku = item.sku or variant.get("sku")
