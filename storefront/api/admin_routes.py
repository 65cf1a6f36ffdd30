from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from storefront.api.deps import get_broadcaster, require_admin
from storefront.application.dashboard import DashboardService
from storefront.application.fulfillment import FulfillmentService
from storefront.application.schemas import (
    OrderStatusUpdate, ProductRead, ShipmentRead, ShipmentStatusUpdate, StockAdjustRequest,
)
from storefront.domain.models import User
from storefront.infrastructure.db import get_db
from storefront.infrastructure.realtime import EventBroadcaster

router = APIRouter(prefix="/admin", tags=["admin"])

@router.get("/dashboard")
def dashboard(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    return DashboardService(db, broadcaster).metrics()

@router.get("/low-stock", response_model=list[ProductRead])
def low_stock(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return DashboardService(db).low_stock()

@router.put("/products/{product_id}/stock", response_model=ProductRead)
def update_stock(
    product_id: int,
    payload: StockAdjustRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    return FulfillmentService(db, broadcaster).set_stock(
        product_id, payload.stock_quantity, payload.reason, admin.id
    )

@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    order = FulfillmentService(db, broadcaster).update_order_status(order_id, payload.status)
    return {"message": "Order status updated successfully", "order_id": order.id, "status": order.status}

@router.put("/shipments/{shipment_id}/status", response_model=ShipmentRead)
def update_shipment_status(
    shipment_id: int,
    payload: ShipmentStatusUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    return FulfillmentService(db, broadcaster).update_shipment_status(shipment_id, payload)
