from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from shared.core import get_logger
from storefront.application.events import (
    publish_inventory_changed, publish_order_status, publish_shipment_status,
)
from storefront.application.inventory import InventoryLedger, StockChange
from storefront.application.schemas import ShipmentStatusUpdate
from storefront.domain.errors import InvalidTransitionError, NotFoundError
from storefront.domain.models import (
    ORDER_TRANSITIONS, SHIPMENT_TRANSITIONS, Order, OrderStatus, Product, Shipment, ShipmentStatus,
)
from storefront.infrastructure.db import run_in_transaction
from storefront.infrastructure.realtime import EventBroadcaster

logger = get_logger(__name__)


def check_transition(kind: str, current, target, allowed) -> None:
    # Re-asserting the current status is a detail-only update
    if target == current:
        return
    if target not in allowed.get(current, set()):
        raise InvalidTransitionError(
            f"Cannot move {kind} from '{current.value}' to '{target.value}'.",
            current_status=current.value,
            requested_status=target.value,
        )


class FulfillmentService:
    """Admin-side lifecycle updates for orders, shipments and stock."""

    def __init__(self, db: Session, broadcaster: Optional[EventBroadcaster] = None):
        self.db = db
        self.broadcaster = broadcaster

    def update_order_status(self, order_id: int, status: OrderStatus) -> Order:
        def work(db: Session) -> Order:
            order = db.execute(
                select(Order)
                .options(selectinload(Order.user))
                .where(Order.id == order_id)
                .with_for_update()
            ).scalar_one_or_none()
            if order is None:
                raise NotFoundError("Order not found", order_id=order_id)
            current = OrderStatus(order.status)
            check_transition("order", current, status, ORDER_TRANSITIONS)
            order.status = status.value
            db.flush()
            return order

        order = run_in_transaction(self.db, work)
        logger.info(
            f"Order #{order.id} status set to {order.status}",
            extra={'extra_fields': {'order_id': order.id, 'status': order.status}}
        )
        self._announce(publish_order_status, order)
        return order

    def update_shipment_status(self, shipment_id: int, update: ShipmentStatusUpdate) -> Shipment:
        def work(db: Session) -> Shipment:
            shipment = db.execute(
                select(Shipment)
                .options(selectinload(Shipment.order).selectinload(Order.user))
                .where(Shipment.id == shipment_id)
                .with_for_update()
            ).scalar_one_or_none()
            if shipment is None:
                raise NotFoundError("Shipment not found.", shipment_id=shipment_id)
            current = ShipmentStatus(shipment.status)
            check_transition("shipment", current, update.status, SHIPMENT_TRANSITIONS)

            shipment.status = update.status.value
            if update.current_location is not None:
                shipment.current_location = update.current_location
            if update.notes is not None:
                shipment.notes = update.notes
            if update.estimated_delivery is not None:
                shipment.estimated_delivery = update.estimated_delivery
            if update.actual_delivery is not None:
                shipment.actual_delivery = update.actual_delivery
            elif update.status == ShipmentStatus.DELIVERED and shipment.actual_delivery is None:
                shipment.actual_delivery = datetime.utcnow()
            db.flush()
            return shipment

        shipment = run_in_transaction(self.db, work)
        logger.info(
            f"Shipment {shipment.tracking_number} status set to {shipment.status}",
            extra={'extra_fields': {
                'shipment_id': shipment.id,
                'order_id': shipment.order_id,
                'status': shipment.status,
                'current_location': shipment.current_location,
            }}
        )
        self._announce(publish_shipment_status, shipment)
        return shipment

    def set_stock(self, product_id: int, quantity: int, reason: Optional[str], actor: Optional[int]) -> Product:
        ledger = InventoryLedger(self.db)

        def work(db: Session) -> StockChange:
            return ledger.adjust_stock(product_id, quantity, reason, actor)

        run_in_transaction(self.db, work)
        products = ledger.changed_products
        self._announce(publish_inventory_changed, products)
        return products[0]

    def _announce(self, publisher, subject) -> None:
        if self.broadcaster is None:
            return
        try:
            publisher(self.broadcaster, subject)
        except Exception:
            logger.error(f"Broadcast via {publisher.__name__} failed", exc_info=True)
