from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from storefront.application.events import order_snapshot, publish_low_stock
from storefront.application.inventory import InventoryLedger
from storefront.domain.models import (
    Order, OrderItem, Product, Shipment, ShipmentStatus, User, UserRole,
)
from storefront.infrastructure.realtime import EventBroadcaster


class DashboardService:
    def __init__(self, db: Session, broadcaster: Optional[EventBroadcaster] = None):
        self.db = db
        self.broadcaster = broadcaster

    def _count(self, query) -> int:
        return int(self.db.execute(query).scalar_one())

    def metrics(self) -> Dict[str, Any]:
        """Admin overview: headline counts, recent orders, best sellers, last week's sales."""
        db = self.db
        metrics = {
            "totalOrders": self._count(select(func.count(Order.id))),
            # Orders still waiting for their shipment to move
            "pendingOrders": self._count(
                select(func.count(Shipment.id)).where(Shipment.status == ShipmentStatus.PENDING.value)
            ),
            "totalUsers": self._count(
                select(func.count(User.id)).where(User.role == UserRole.USER.value)
            ),
            "totalProducts": self._count(select(func.count(Product.id))),
            "lowStockProducts": self._count(
                select(func.count(Product.id)).where(Product.stock_quantity <= Product.min_stock)
            ),
            "onlineUsers": self.broadcaster.online_users(UserRole.USER.value) if self.broadcaster else 0,
        }

        recent = db.execute(
            select(Order)
            .options(selectinload(Order.user), selectinload(Order.items))
            .order_by(Order.order_date.desc(), Order.id.desc())
            .limit(5)
        ).scalars().all()

        total_sold = func.sum(OrderItem.quantity).label("total_sold")
        top = db.execute(
            select(Product.name, Product.sku, total_sold)
            .join(OrderItem, OrderItem.product_id == Product.id)
            .group_by(Product.id, Product.name, Product.sku)
            .order_by(total_sold.desc())
            .limit(5)
        ).all()

        day = func.date(Order.order_date).label("date")
        daily = db.execute(
            select(day, func.count(Order.id), func.sum(Order.total_amount))
            .where(Order.order_date >= datetime.utcnow() - timedelta(days=7))
            .group_by(day)
            .order_by(day)
        ).all()

        return {
            "metrics": metrics,
            "recentOrders": [order_snapshot(o) for o in recent],
            "topProducts": [
                {"name": name, "sku": sku, "total_sold": int(sold or 0)} for name, sku, sold in top
            ],
            "dailySales": [
                {"date": str(date), "orders": int(count), "revenue": Decimal(str(revenue or 0))}
                for date, count, revenue in daily
            ],
        }

    def low_stock(self) -> List[Product]:
        return InventoryLedger(self.db).low_stock()

    def announce_low_stock(self, user_id: Optional[int] = None) -> int:
        """Send the low-stock list to admin sessions (one admin's only, if given)."""
        products = self.low_stock()
        if self.broadcaster is None:
            return 0
        return publish_low_stock(self.broadcaster, products, user_id=user_id)
