import random
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload

from shared.core import get_logger
from storefront.application.cart import CartStore
from storefront.application.events import publish_order_placed
from storefront.application.inventory import InventoryLedger
from storefront.application.schemas import PlaceOrderRequest, PlaceOrderResponse
from storefront.domain.errors import (
    ConflictError, InsufficientStockError, NotFoundError, ValidationError,
)
from storefront.domain.fraud import FraudAssessment, FraudLine, FraudOrder, OrderHistory, evaluate
from storefront.domain.models import (
    Order, OrderItem, OrderStatus, Product, Shipment, ShipmentStatus, User, UserRole,
)
from storefront.infrastructure.db import run_in_transaction
from storefront.infrastructure.realtime import EventBroadcaster

logger = get_logger(__name__)

INITIAL_SHIPMENT_LOCATION = "Processing Center"

# SQLSTATEs for serialization failure, deadlock and lock timeout
CONTENTION_SQLSTATES = {"40001", "40P01", "55P03"}


def generate_tracking_number() -> str:
    """Time-based tracking number with a random suffix.

    Uniqueness is enforced by the orders/shipments unique constraints.
    """
    return f"TRK{int(time.time() * 1000)}{random.randint(0, 99999):05d}"


def is_contention_error(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in CONTENTION_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


@dataclass
class OrderPlacement:
    order: Order
    products: List[Product]
    assessment: FraudAssessment

    def to_response(self) -> PlaceOrderResponse:
        return PlaceOrderResponse(
            order_id=self.order.id,
            tracking_number=self.order.tracking_number,
            total_amount=self.order.total_amount,
            fraud_risk=self.assessment.risk,
            fraud_reasons=list(self.assessment.reasons),
        )


class OrderCoordinator:
    """Places orders as a single unit of work.

    Stock check and decrement, the inventory log, the order with its line
    items and shipment, and the cart wipe commit together. Events go out only
    after the commit and can never undo it.
    """

    def __init__(self, db: Session, broadcaster: Optional[EventBroadcaster] = None):
        self.db = db
        self.broadcaster = broadcaster

    def place_order(self, user_id: int, request: PlaceOrderRequest) -> OrderPlacement:
        self._validate(request)
        try:
            placement = run_in_transaction(self.db, lambda db: self._place(db, user_id, request))
        except IntegrityError as e:
            logger.warning(f"Order for user {user_id} hit a uniqueness conflict: {e.orig}")
            raise ConflictError("The order conflicted with a concurrent update. Please resubmit.") from e
        except OperationalError as e:
            if not is_contention_error(e):
                raise
            logger.warning(f"Order for user {user_id} lost a lock race: {e.orig}")
            raise ConflictError("The order conflicted with a concurrent update. Please resubmit.") from e

        order = placement.order
        logger.info(
            f"Order #{order.id} placed",
            extra={'extra_fields': {
                'order_id': order.id,
                'user_id': user_id,
                'tracking_number': order.tracking_number,
                'total_amount': str(order.total_amount),
                'fraud_risk': placement.assessment.risk.value,
                'lines': len(request.items),
            }}
        )
        self._announce(placement)
        return placement

    def order_history(self, db: Session, user_id: int) -> OrderHistory:
        count, spent = db.execute(
            select(func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0))
            .where(Order.user_id == user_id)
        ).one()
        return OrderHistory(total_orders=int(count), total_spent=Decimal(str(spent)))

    def _validate(self, request: PlaceOrderRequest) -> None:
        if not request.items:
            raise ValidationError("Order must contain at least one item.")
        if not (request.shipping_address or "").strip():
            raise ValidationError("Shipping address is required.")
        for line in request.items:
            if line.quantity <= 0:
                raise ValidationError(
                    "Quantity must be positive.",
                    product_id=line.product_id,
                    quantity=line.quantity,
                )

    def _place(self, db: Session, user_id: int, request: PlaceOrderRequest) -> OrderPlacement:
        ledger = InventoryLedger(db)
        lines = self._check_stock(ledger, request)

        total = sum((price * quantity for _, quantity, price in lines), Decimal("0"))
        history = self.order_history(db, user_id)
        assessment = evaluate(
            FraudOrder(
                total_amount=total,
                items=[FraudLine(product.name, price, quantity) for product, quantity, price in lines],
                shipping_address=request.shipping_address,
            ),
            history,
        )

        tracking_number = generate_tracking_number()
        order = Order(
            user_id=user_id,
            total_amount=total,
            status=OrderStatus.PENDING.value,
            tracking_number=tracking_number,
            shipping_address=request.shipping_address,
            fraud_risk=assessment.risk.value,
            fraud_reasons=list(assessment.reasons),
            items=[
                OrderItem(product_id=product.id, quantity=quantity, unit_price=price)
                for product, quantity, price in lines
            ],
        )
        db.add(order)
        db.flush()

        for product, quantity, _ in lines:
            ledger.reserve_and_decrement(product.id, quantity, f"Order #{order.id}", user_id)

        db.add(Shipment(
            order=order,
            tracking_number=tracking_number,
            status=ShipmentStatus.PENDING.value,
            current_location=INITIAL_SHIPMENT_LOCATION,
        ))
        CartStore(db).clear(user_id)
        db.flush()
        return OrderPlacement(order=order, products=ledger.changed_products, assessment=assessment)

    def _check_stock(
        self, ledger: InventoryLedger, request: PlaceOrderRequest
    ) -> List[Tuple[Product, int, Decimal]]:
        """Validate every line against one locked snapshot; nothing is written here."""
        products = ledger.lock_products(line.product_id for line in request.items)
        requested: Dict[int, int] = {}
        lines: List[Tuple[Product, int, Decimal]] = []
        for line in request.items:
            product = products.get(line.product_id)
            if product is None:
                raise NotFoundError(
                    f"Product with ID {line.product_id} not found.",
                    product_id=line.product_id,
                )
            # Repeated lines for one product draw on the same stock
            requested[product.id] = requested.get(product.id, 0) + line.quantity
            if requested[product.id] > product.stock_quantity:
                raise InsufficientStockError(
                    product.id, product.name, requested[product.id], product.stock_quantity
                )
            lines.append((product, line.quantity, product.price))
        return lines

    def _announce(self, placement: OrderPlacement) -> None:
        if self.broadcaster is None:
            return
        try:
            publish_order_placed(self.broadcaster, placement.order, placement.products)
        except Exception:
            # The order is committed; a failed notification must not change that
            logger.error(f"Broadcast for order #{placement.order.id} failed", exc_info=True)


def get_order_for(db: Session, order_id: int, user: User) -> Order:
    """Load an order the caller may see: their own, or any for admins."""
    query = (
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.shipment))
        .where(Order.id == order_id)
    )
    if user.role != UserRole.ADMIN.value:
        query = query.where(Order.user_id == user.id)
    order = db.execute(query).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found", order_id=order_id)
    return order
