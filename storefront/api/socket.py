"""
Real-time WebSocket endpoint

Clients connect to ``/ws?token=<jwt>`` and receive event envelopes
``{"event", "data", "timestamp"}``. They may send ``{"action", "data"}``
messages; each is answered with ``<action>_success`` (or the requested data)
or with an ``error`` envelope.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from shared.core import get_logger, set_request_context
from storefront.api.deps import get_broadcaster, load_user
from storefront.application.dashboard import DashboardService
from storefront.application.events import EventKind, publish_low_stock, publish_presence
from storefront.application.fulfillment import FulfillmentService
from storefront.application.schemas import (
    SocketInventoryUpdate, SocketMessage, SocketOrderStatusUpdate,
    SocketShipmentStatusUpdate, UserActivity,
)
from storefront.domain.errors import AuthenticationError, StorefrontError
from storefront.domain.models import User, UserRole
from storefront.infrastructure.db import get_db, run_in_transaction
from storefront.infrastructure.realtime import ConnectedSession, EventBroadcaster

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])

ADMIN_ACTIONS = {
    "get_dashboard_data",
    "check_low_stock",
    "inventory_update",
    "update_order_status",
    "update_shipment_status",
}


class SocketHandler:
    """Dispatches client messages for one connected session.

    Runs in a worker thread; every database action is its own transaction so
    no lock outlives the message that took it.
    """

    def __init__(self, db: Session, broadcaster: EventBroadcaster, session: ConnectedSession, user: User):
        self.db = db
        self.broadcaster = broadcaster
        self.session = session
        self.user = user
        self.handlers = {
            "get_dashboard_data": self.get_dashboard_data,
            "check_low_stock": self.check_low_stock,
            "inventory_update": self.inventory_update,
            "update_order_status": self.update_order_status,
            "update_shipment_status": self.update_shipment_status,
            "user_activity": self.user_activity,
        }

    def reply(self, event: str, payload: Any) -> None:
        self.session.deliver(EventBroadcaster.envelope(event, payload))

    def error(self, message: str, action: Optional[str] = None, **context: Any) -> None:
        self.reply("error", {"message": message, "action": action, **context})

    def handle(self, raw: str) -> None:
        try:
            self.dispatch(raw)
        finally:
            # The session lives as long as the socket; no transaction may outlive a message
            if self.db.in_transaction():
                self.db.rollback()

    def dispatch(self, raw: str) -> None:
        try:
            message = SocketMessage.model_validate(json.loads(raw))
        except (ValueError, SchemaError):
            self.error("Malformed message")
            return

        action = message.action
        handler = self.handlers.get(action)
        if handler is None:
            self.error(f"Unknown action: {action}", action)
            return
        if action in ADMIN_ACTIONS and self.user.role != UserRole.ADMIN.value:
            self.error("Admin access required", action)
            return

        try:
            handler(message.data)
        except SchemaError as e:
            self.error(f"Invalid data for {action}", action, errors=e.errors(include_url=False))
        except StorefrontError as e:
            self.error(e.message, action, **e.to_dict())

    def get_dashboard_data(self, data: Dict[str, Any]) -> None:
        metrics = run_in_transaction(self.db, lambda db: DashboardService(db, self.broadcaster).metrics())
        self.reply(EventKind.DASHBOARD_DATA.value, metrics)

    def check_low_stock(self, data: Dict[str, Any]) -> None:
        products = run_in_transaction(self.db, lambda db: DashboardService(db).low_stock())
        publish_low_stock(self.broadcaster, products, user_id=self.user.id)

    def inventory_update(self, data: Dict[str, Any]) -> None:
        request = SocketInventoryUpdate.model_validate(data)
        product = FulfillmentService(self.db, self.broadcaster).set_stock(
            request.product_id, request.quantity, request.reason or "Real-time adjustment", self.user.id
        )
        self.reply("inventory_update_success", {"productId": product.id, "newQuantity": product.stock_quantity})

    def update_order_status(self, data: Dict[str, Any]) -> None:
        request = SocketOrderStatusUpdate.model_validate(data)
        order = FulfillmentService(self.db, self.broadcaster).update_order_status(request.order_id, request.status)
        self.reply("order_status_update_success", {"orderId": order.id, "status": order.status})

    def update_shipment_status(self, data: Dict[str, Any]) -> None:
        request = SocketShipmentStatusUpdate.model_validate(data)
        shipment = FulfillmentService(self.db, self.broadcaster).update_shipment_status(
            request.shipment_id, request
        )
        self.reply("shipment_status_update_success", {"shipmentId": shipment.id, "status": shipment.status})

    def user_activity(self, data: Dict[str, Any]) -> None:
        request = UserActivity.model_validate(data)
        self.broadcaster.publish(
            EventKind.USER_ACTIVITY_UPDATE.value,
            {
                "user_id": self.user.id,
                "user_name": self.user.name,
                "activity": request.activity,
                "details": request.details,
            },
            role=UserRole.ADMIN.value,
        )


@router.websocket("/ws")
async def realtime(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    try:
        user = await run_in_threadpool(run_in_transaction, db, lambda s: load_user(s, token or ""))
    except AuthenticationError as e:
        logger.info(f"Rejected socket connection: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = ConnectedSession(user.id, user.role, user.name, asyncio.get_running_loop())
    set_request_context(user_id=str(user.id), session_id=session.session_id)
    broadcaster.registry.add(session)
    pump = asyncio.create_task(session.pump(websocket))
    logger.info(
        f"Socket connected: {user.name} ({user.role})",
        extra={'extra_fields': {'session_id': session.session_id, 'user_id': user.id, 'role': user.role}}
    )
    publish_presence(broadcaster)

    handler = SocketHandler(db, broadcaster, session, user)
    try:
        while True:
            raw = await websocket.receive_text()
            await run_in_threadpool(handler.handle, raw)
    except WebSocketDisconnect:
        pass
    finally:
        session.close()
        broadcaster.registry.remove(session.session_id)
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        logger.info(
            f"Socket disconnected: {user.name} ({user.role})",
            extra={'extra_fields': {'session_id': session.session_id, 'user_id': user.id}}
        )
        publish_presence(broadcaster)
