"""
Database Schemas

MongoDB collection schemas and request bodies, defined as Pydantic models.

Each collection model name is converted to lowercase for the collection name:
- Product -> "product" collection
- Order -> "order" collection
- Purchase -> "purchase" collection
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

OrderState = Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]
PaymentMethod = Literal["cash_on_delivery", "paymob"]
OrderPaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PurchasePaymentStatus = Literal["pending", "paid", "failed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _object_id_string(value: Optional[str]) -> Optional[str]:
    if value is not None and not ObjectId.is_valid(value):
        raise ValueError("Invalid ObjectId format")
    return value


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)


class Variant(Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    color: str = Field(..., min_length=1, max_length=50)
    size: str = Field(..., min_length=1, max_length=50)
    sku: Optional[str] = Field(None, max_length=100)
    quantity: int = Field(0, ge=0, description="Units in stock")


class Product(Document):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, max_length=200)
    price: float = Field(..., ge=0)
    variants: List[Variant] = Field(default_factory=list)


class Address(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=10, max_length=20)
    address: str = Field(..., min_length=5, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)


class OrderItem(Document):
    product: ObjectId
    variantId: Optional[ObjectId] = None
    size: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured at order time")


class Order(Document):
    """
    Orders collection schema
    Collection name: "order"
    """
    userId: Optional[ObjectId] = None
    date: datetime = Field(default_factory=_utcnow)
    products: List[OrderItem] = Field(..., min_length=1)
    addressId: Optional[ObjectId] = None
    address: Optional[Address] = None
    totalPrice: float
    orderState: OrderState = "Pending"
    promoCode: Optional[str] = None
    discountAmount: float = 0
    discountPercentage: Optional[float] = None
    paymentMethod: PaymentMethod = "cash_on_delivery"
    paymentStatus: OrderPaymentStatus = "pending"
    paymobOrderId: Optional[str] = None
    paymobTransactionId: Optional[str] = None
    trackingNumber: Optional[str] = None
    estimatedDeliveryDate: Optional[datetime] = None
    shippedDate: Optional[datetime] = None
    deliveredDate: Optional[datetime] = None
    shippingFee: float = Field(0, ge=0)

    @model_validator(mode="after")
    def check_address(self):
        if self.addressId is None and self.address is None:
            raise ValueError("Either addressId or address is required")
        if self.addressId is not None and self.address is not None:
            raise ValueError("Cannot provide both addressId and address")
        return self


class Template(Document):
    """
    Templates collection schema
    Collection name: "template"
    """
    name: str
    slug: str
    price: float = Field(..., ge=0)
    oldPrice: Optional[float] = None
    isActive: bool = True
    purchaseCount: int = Field(0, ge=0)


class Purchase(Document):
    """
    Purchases collection schema (digital template ownership)
    Collection name: "purchase"
    """
    userId: ObjectId
    templateId: ObjectId
    purchasePrice: float = Field(..., ge=0)
    originalPrice: Optional[float] = None
    discountAmount: float = 0
    promoCode: Optional[str] = None
    paymentStatus: PurchasePaymentStatus = "pending"
    status: Literal["pending", "active"] = "pending"
    paymobOrderId: Optional[str] = None
    paymobTransactionId: Optional[str] = None
    downloadCount: int = 0
    createdAt: datetime = Field(default_factory=_utcnow)


class User(Document):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str
    email: str
    isAdmin: bool = False
    purchasedTemplates: List[ObjectId] = Field(default_factory=list)


# Request bodies


class CartLine(BaseModel):
    """A cart line as the storefront sends it; field names vary by page."""

    model_config = ConfigDict(extra="allow")

    productId: Optional[str] = None
    variantId: Optional[str] = None
    selectedVariantId: Optional[str] = None
    size: Optional[str] = Field(None, max_length=50)
    selectedSize: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, max_length=50)
    selectedColor: Optional[str] = Field(None, max_length=50)
    quantity: Optional[int] = Field(None, gt=0)
    quantityInCart: Optional[int] = Field(None, gt=0)
    price: Optional[float] = Field(None, ge=0)
    variantSku: Optional[str] = Field(None, max_length=100)
    sku: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="before")
    @classmethod
    def fill_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        legacy_id = data.pop("_id", None)
        if data.get("productId") is None and legacy_id is not None:
            data["productId"] = str(legacy_id)
        if data.get("quantity") is None and data.get("quantityInCart") is not None:
            data["quantity"] = data["quantityInCart"]
        if data.get("price") is None:
            data["price"] = 0
        return data

    @model_validator(mode="after")
    def check_required(self):
        if self.quantity is None:
            raise ValueError("Quantity is required and must be a positive integer")
        if not self.productId:
            raise ValueError("Product ID is required (_id or productId)")
        return self


class OrderCreate(BaseModel):
    userId: Optional[str] = None
    addressId: Optional[str] = None
    address: Optional[Address] = None
    products: List[Union[CartLine, str]] = Field(..., min_length=1)
    totalPrice: float = Field(..., gt=0)
    promoCode: Optional[str] = Field(None, max_length=50)
    discountAmount: Optional[float] = Field(None, ge=0)
    discountPercentage: Optional[float] = Field(None, ge=0, le=100)
    paymentMethod: Optional[PaymentMethod] = None
    paymobOrderId: Optional[str] = Field(None, max_length=200)
    paymobTransactionId: Optional[str] = Field(None, max_length=200)
    shippingFee: Optional[float] = Field(None, ge=0)

    @field_validator("userId", "addressId")
    @classmethod
    def check_object_ids(cls, value: Optional[str]) -> Optional[str]:
        return _object_id_string(value)

    @model_validator(mode="after")
    def check_address(self):
        if bool(self.addressId) == bool(self.address):
            raise ValueError("Either addressId or address must be provided (but not both)")
        return self

    def raw_products(self) -> List[Union[str, Dict[str, Any]]]:
        return [p if isinstance(p, str) else p.model_dump(exclude_none=True) for p in self.products]


class PurchaseCreate(BaseModel):
    templateId: Optional[str] = None
    promoCode: Optional[str] = Field(None, max_length=50)


class PurchaseComplete(BaseModel):
    purchaseId: Optional[str] = None
