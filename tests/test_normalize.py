"""Tests for cart line normalization and variant resolution."""

from bson import ObjectId

from inventory import describe_variant, resolve_variant
from orders import normalize_order_items

PRODUCT = str(ObjectId())
VARIANT = str(ObjectId())


class TestNormalizeOrderItems:
    def test_bare_id_string(self):
        (item,) = normalize_order_items([PRODUCT])
        assert item.product == ObjectId(PRODUCT)
        assert item.quantity == 1
        assert item.price == 0
        assert item.variant_id is None

    def test_cart_shape(self):
        (item,) = normalize_order_items([
            {
                "_id": PRODUCT,
                "selectedVariantId": VARIANT,
                "selectedSize": "M",
                "selectedColor": "Red",
                "quantityInCart": 3,
                "price": "120.5",
                "sku": "SKU-1",
            }
        ])
        assert item.product == ObjectId(PRODUCT)
        assert item.variant_id == ObjectId(VARIANT)
        assert (item.size, item.color, item.sku) == ("M", "Red", "SKU-1")
        assert item.quantity == 3
        assert item.price == 120.5

    def test_quantity_in_cart_wins_over_quantity(self):
        (item,) = normalize_order_items([{"productId": PRODUCT, "quantity": 1, "quantityInCart": 4}])
        assert item.quantity == 4

    def test_variant_sku_preferred(self):
        (item,) = normalize_order_items([{"productId": PRODUCT, "variantSku": "V-1", "sku": "P-1"}])
        assert item.sku == "V-1"

    def test_defaults_for_bad_numbers(self):
        (item,) = normalize_order_items([{"productId": PRODUCT, "quantity": 0, "price": "free"}])
        assert item.quantity == 1
        assert item.price == 0

        (item,) = normalize_order_items([{"productId": PRODUCT, "quantity": -2, "price": -5}])
        assert item.quantity == 1
        assert item.price == 0

    def test_invalid_variant_id_is_ignored(self):
        (item,) = normalize_order_items([{"productId": PRODUCT, "variantId": "red-m"}])
        assert item.variant_id is None

    def test_unresolvable_lines_are_dropped(self):
        items = normalize_order_items([None, "", 42, "bogus", {"productId": "bogus"}, {"quantity": 2}, PRODUCT])
        assert [i.product for i in items] == [ObjectId(PRODUCT)]

    def test_non_list_input(self):
        assert normalize_order_items("not a list") == []
        assert normalize_order_items(None) == []


class TestResolveVariant:
    variants = [
        {"_id": ObjectId(), "size": "M", "color": "Red", "quantity": 1},
        {"_id": ObjectId(), "size": "L", "color": "Red", "quantity": 1},
        {"_id": ObjectId(), "size": "L", "color": "Blue", "quantity": 1},
    ]

    def test_by_id(self):
        target = self.variants[2]
        assert resolve_variant(self.variants, target["_id"], size="M") is target

    def test_unknown_id_does_not_fall_back(self):
        assert resolve_variant(self.variants, ObjectId(), size="M", color="Red") is None

    def test_by_size_and_color(self):
        assert resolve_variant(self.variants, size="L", color="Blue") is self.variants[2]

    def test_by_color_only_takes_first(self):
        assert resolve_variant(self.variants, color="Red") is self.variants[0]

    def test_by_size_only(self):
        assert resolve_variant(self.variants, size="L") is self.variants[1]

    def test_nothing_supplied(self):
        assert resolve_variant(self.variants) is None

    def test_no_match(self):
        assert resolve_variant(self.variants, size="XS") is None


def test_describe_variant():
    assert describe_variant({"color": "Red", "size": "M"}) == "Red M"
    assert describe_variant({"size": "M"}) == "M"
    assert describe_variant({}) == ""
