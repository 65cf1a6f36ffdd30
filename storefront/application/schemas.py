from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional
from storefront.domain.models import FraudRisk, OrderStatus, ShipmentStatus

class _Request(BaseModel):
    # Accept both snake_case and the camelCase keys web clients send
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

class OrderLineRequest(_Request):
    product_id: int = Field(gt=0, alias="productId")
    quantity: int = Field(gt=0)

class PlaceOrderRequest(_Request):
    items: list[OrderLineRequest] = Field(min_length=1)
    shipping_address: str = Field(min_length=1, alias="shippingAddress")

class PlaceOrderResponse(BaseModel):
    order_id: int
    tracking_number: str
    total_amount: Decimal
    fraud_risk: FraudRisk
    fraud_reasons: list[str]

class CartAddRequest(_Request):
    product_id: int = Field(gt=0, alias="productId")
    quantity: int = Field(ge=1)

class CartUpdateRequest(_Request):
    # 0 removes the line
    quantity: int = Field(ge=0)

class CartLineRead(BaseModel):
    product_id: int
    cart_item_id: int
    quantity: int
    name: str
    description: Optional[str] = None
    price: Decimal
    stock_quantity: int
    category: str
    sku: str
    location: str

class CartMutationRead(BaseModel):
    product_id: int
    quantity: Optional[int] = None
    removed: bool = False

class StockAdjustRequest(_Request):
    stock_quantity: int = Field(ge=0)
    reason: Optional[str] = None

class ProductRead(BaseModel):
    id: int
    sku: str
    name: str
    description: Optional[str] = None
    category: str
    price: Decimal
    stock_quantity: int
    min_stock: int
    location: str
    model_config = ConfigDict(from_attributes=True)

class OrderStatusUpdate(_Request):
    status: OrderStatus

class ShipmentStatusUpdate(_Request):
    status: ShipmentStatus
    current_location: Optional[str] = Field(default=None, alias="currentLocation")
    notes: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None

class OrderItemRead(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    model_config = ConfigDict(from_attributes=True)

class ShipmentRead(BaseModel):
    id: int
    order_id: int
    tracking_number: str
    status: ShipmentStatus
    current_location: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class OrderRead(BaseModel):
    id: int
    user_id: int
    total_amount: Decimal
    status: OrderStatus
    tracking_number: str
    shipping_address: str
    fraud_risk: FraudRisk
    fraud_reasons: list[str]
    order_date: datetime
    items: list[OrderItemRead]
    shipment: Optional[ShipmentRead] = None
    model_config = ConfigDict(from_attributes=True)

    @field_validator("fraud_reasons", mode="before")
    @classmethod
    def _reasons_default(cls, value):
        return value or []

class SocketMessage(BaseModel):
    action: str = Field(min_length=1)
    data: dict = Field(default_factory=dict)

class SocketInventoryUpdate(_Request):
    product_id: int = Field(gt=0, alias="productId")
    quantity: int = Field(ge=0)
    reason: Optional[str] = None

class SocketOrderStatusUpdate(OrderStatusUpdate):
    order_id: int = Field(gt=0, alias="orderId")

class SocketShipmentStatusUpdate(ShipmentStatusUpdate):
    shipment_id: int = Field(gt=0, alias="shipmentId")

class UserActivity(_Request):
    activity: str
    details: Optional[dict] = None
