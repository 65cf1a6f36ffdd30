"""Domain events pushed to connected clients and the payloads they carry."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from storefront.domain.models import Order, Product, Shipment, UserRole
from storefront.infrastructure.realtime import EventBroadcaster


class EventKind(str, Enum):
    INVENTORY_CHANGED = "inventory_changed"
    ORDER_CREATED = "order_created"
    CART_UPDATED = "cart_updated"
    ORDER_STATUS_UPDATED = "order_status_updated"
    SHIPMENT_STATUS_UPDATED = "shipment_status_updated"
    USER_COUNT_UPDATED = "user_count_updated"
    LOW_STOCK_ALERT = "low_stock_alert"
    DASHBOARD_DATA = "dashboard_data"
    USER_ACTIVITY_UPDATE = "user_activity_update"


def product_snapshot(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "price": product.price,
        "stock_quantity": product.stock_quantity,
        "min_stock": product.min_stock,
        "category": product.category,
        "sku": product.sku,
        "location": product.location,
    }


def order_snapshot(order: Order) -> Dict[str, Any]:
    """Order row with the owner's display fields joined in."""
    return {
        "id": order.id,
        "user_id": order.user_id,
        "user_name": order.user.name if order.user else None,
        "user_email": order.user.email if order.user else None,
        "total_amount": order.total_amount,
        "status": order.status,
        "tracking_number": order.tracking_number,
        "shipping_address": order.shipping_address,
        "fraud_risk": order.fraud_risk,
        "fraud_reasons": list(order.fraud_reasons or []),
        "order_date": order.order_date,
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
            }
            for item in order.items
        ],
    }


def shipment_snapshot(shipment: Shipment) -> Dict[str, Any]:
    order = shipment.order
    return {
        "id": shipment.id,
        "order_id": shipment.order_id,
        "tracking_number": shipment.tracking_number,
        "status": shipment.status,
        "current_location": shipment.current_location,
        "estimated_delivery": shipment.estimated_delivery,
        "actual_delivery": shipment.actual_delivery,
        "notes": shipment.notes,
        "user_id": order.user_id if order else None,
        "user_name": order.user.name if order and order.user else None,
        "total_amount": order.total_amount if order else None,
    }


def publish_inventory_changed(broadcaster: EventBroadcaster, products: List[Product]) -> None:
    for product in products:
        broadcaster.publish(EventKind.INVENTORY_CHANGED.value, product_snapshot(product))


def publish_cart_updated(broadcaster: EventBroadcaster, user_id: int, message: str) -> None:
    # Informational only: clients re-fetch their cart
    broadcaster.publish(
        EventKind.CART_UPDATED.value,
        {"user_id": user_id, "message": message},
        user_id=user_id,
    )


def publish_order_placed(broadcaster: EventBroadcaster, order: Order, products: List[Product]) -> None:
    """Announce a committed order: stock first, then the order, then the cart."""
    publish_inventory_changed(broadcaster, products)
    broadcaster.publish(EventKind.ORDER_CREATED.value, order_snapshot(order))
    publish_cart_updated(
        broadcaster,
        order.user_id,
        "Your cart has been updated (or cleared) due to an order.",
    )


def publish_order_status(broadcaster: EventBroadcaster, order: Order) -> None:
    broadcaster.publish(
        EventKind.ORDER_STATUS_UPDATED.value,
        {
            "order_id": order.id,
            "user_id": order.user_id,
            "user_name": order.user.name if order.user else None,
            "status": order.status,
        },
    )


def publish_shipment_status(broadcaster: EventBroadcaster, shipment: Shipment) -> None:
    broadcaster.publish(EventKind.SHIPMENT_STATUS_UPDATED.value, shipment_snapshot(shipment))


def publish_presence(broadcaster: EventBroadcaster) -> None:
    broadcaster.publish(
        EventKind.USER_COUNT_UPDATED.value,
        {
            "total_users": broadcaster.online_users(),
            "online_users": broadcaster.online_users(UserRole.USER.value),
        },
        role=UserRole.ADMIN.value,
    )


def publish_low_stock(broadcaster: EventBroadcaster, products: List[Product], user_id: Optional[int] = None) -> int:
    if not products:
        return 0
    payload = {
        "products": [
            {
                "id": p.id,
                "name": p.name,
                "stock_quantity": p.stock_quantity,
                "min_stock": p.min_stock,
            }
            for p in products
        ],
        "count": len(products),
        "timestamp": datetime.utcnow(),
    }
    if user_id is not None:
        return broadcaster.publish(EventKind.LOW_STOCK_ALERT.value, payload, user_id=user_id, role=UserRole.ADMIN.value)
    return broadcaster.publish(EventKind.LOW_STOCK_ALERT.value, payload, role=UserRole.ADMIN.value)
