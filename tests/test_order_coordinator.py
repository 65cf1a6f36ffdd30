import re
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from storefront.application import orders as orders_module
from storefront.application.cart import CartStore
from storefront.application.inventory import InventoryLedger
from storefront.application.orders import OrderCoordinator
from storefront.application.schemas import PlaceOrderRequest
from storefront.domain.errors import (
    ConflictError, InsufficientStockError, NotFoundError, ValidationError,
)
from storefront.domain.models import (
    FraudRisk, InventoryTransaction, Order, OrderItem, Shipment, TransactionType,
)


def request(*lines, address="221B Baker Street, London"):
    return PlaceOrderRequest(
        items=[{"product_id": pid, "quantity": qty} for pid, qty in lines],
        shipping_address=address,
    )


def count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def fill_cart(db, user, *lines):
    cart = CartStore(db)
    for product, qty in lines:
        cart.add_or_increment(user.id, product.id, qty)
    db.commit()


class TestPlaceOrder:
    """Successful placements"""

    def test_first_time_high_value_order_is_flagged_high(self, db, users, make_product):
        laptop = make_product(name="Quantum Laptop", price="1500.00", stock=5)

        placement = OrderCoordinator(db).place_order(users["customer"].id, request((laptop.id, 1)))
        response = placement.to_response()

        assert response.total_amount == Decimal("1500.00")
        assert response.fraud_risk == FraudRisk.HIGH
        assert placement.assessment.score >= 90
        assert "High order value ($1500.00)" in response.fraud_reasons
        assert "Unusually large order for a first-time customer." in response.fraud_reasons

        order = db.get(Order, response.order_id)
        assert order.fraud_risk == "high"
        assert order.fraud_reasons == response.fraud_reasons

    def test_two_lines_write_two_sales_and_one_shipment(self, db, users, make_product):
        mouse = make_product(name="Mouse", price="49.99", stock=10)
        lamp = make_product(name="Lamp", price="79.99", stock=4)

        placement = OrderCoordinator(db).place_order(
            users["customer"].id, request((mouse.id, 3), (lamp.id, 2))
        )
        order = placement.order

        assert order.total_amount == Decimal("309.95")
        assert order.status == "pending"
        assert [(i.product_id, i.quantity, i.unit_price) for i in order.items] == [
            (mouse.id, 3, Decimal("49.99")),
            (lamp.id, 2, Decimal("79.99")),
        ]

        sales = db.execute(select(InventoryTransaction).order_by(InventoryTransaction.id)).scalars().all()
        assert len(sales) == 2
        for entry, qty in zip(sales, (3, 2)):
            assert entry.type == TransactionType.SALE.value
            assert entry.quantity == -qty
            assert entry.previous_quantity - qty == entry.new_quantity
            assert entry.reason == f"Order #{order.id}"
            assert entry.created_by == users["customer"].id

        ledger = InventoryLedger(db)
        assert ledger.get_stock(mouse.id) == 7
        assert ledger.get_stock(lamp.id) == 2

        shipment = db.execute(select(Shipment).where(Shipment.order_id == order.id)).scalar_one()
        assert shipment.status == "pending"
        assert shipment.current_location == "Processing Center"
        assert shipment.tracking_number == order.tracking_number
        assert re.fullmatch(r"TRK\d{18}", order.tracking_number)

    def test_cart_is_cleared_on_success(self, db, users, make_product):
        user = users["customer"]
        product = make_product(stock=10)
        fill_cart(db, user, (product, 2))

        OrderCoordinator(db).place_order(user.id, request((product.id, 2)))

        assert CartStore(db).get_lines(user.id) == []

    def test_prices_are_snapshotted(self, db, users, make_product):
        product = make_product(price="20.00", stock=10)
        placement = OrderCoordinator(db).place_order(users["customer"].id, request((product.id, 2)))

        product.price = Decimal("99.00")
        db.commit()
        db.expire_all()

        order = db.get(Order, placement.order.id)
        assert order.total_amount == Decimal("40.00")
        assert order.items[0].unit_price == Decimal("20.00")

    def test_repeat_customer_is_not_first_time(self, db, users, make_product):
        product = make_product(price="600.00", stock=10)
        coordinator = OrderCoordinator(db)
        first = coordinator.place_order(users["customer"].id, request((product.id, 1)))
        second = coordinator.place_order(users["customer"].id, request((product.id, 1)))

        assert first.assessment.risk == FraudRisk.MEDIUM
        assert second.assessment.risk == FraudRisk.LOW
        assert second.assessment.reasons == []

    def test_order_history_sums_prior_orders(self, db, users, make_product):
        product = make_product(price="12.50", stock=10)
        coordinator = OrderCoordinator(db)
        coordinator.place_order(users["customer"].id, request((product.id, 2)))
        coordinator.place_order(users["customer"].id, request((product.id, 1)))

        history = coordinator.order_history(db, users["customer"].id)
        assert history.total_orders == 2
        assert history.total_spent == Decimal("37.50")
        assert coordinator.order_history(db, users["other"].id).total_orders == 0


class TestRejectedOrders:
    """Failures leave stock, the log, orders and the cart untouched"""

    def snapshot(self, db, user, *products):
        ledger = InventoryLedger(db)
        return (
            [ledger.get_stock(p.id) for p in products],
            count(db, InventoryTransaction),
            count(db, Order),
            count(db, OrderItem),
            count(db, Shipment),
            [(line.product_id, line.quantity) for line in CartStore(db).get_lines(user.id)],
        )

    def test_unknown_product_aborts_everything(self, db, users, make_product):
        user = users["customer"]
        product = make_product(stock=5)
        fill_cart(db, user, (product, 1))
        before = self.snapshot(db, user, product)

        with pytest.raises(NotFoundError) as exc:
            OrderCoordinator(db).place_order(user.id, request((product.id, 1), (9999, 1)))

        assert exc.value.context["product_id"] == 9999
        assert self.snapshot(db, user, product) == before

    def test_second_line_short_of_stock_aborts_everything(self, db, users, make_product):
        user = users["customer"]
        plenty = make_product(name="Plenty", stock=50)
        scarce = make_product(name="Scarce", stock=1)
        fill_cart(db, user, (plenty, 3))
        before = self.snapshot(db, user, plenty, scarce)

        with pytest.raises(InsufficientStockError) as exc:
            OrderCoordinator(db).place_order(user.id, request((plenty.id, 3), (scarce.id, 2)))

        assert exc.value.product_name == "Scarce"
        assert (exc.value.requested, exc.value.available) == (2, 1)
        assert self.snapshot(db, user, plenty, scarce) == before

    def test_failure_after_stock_was_written_rolls_everything_back(self, db, users, make_product, monkeypatch):
        user = users["customer"]
        mouse = make_product(name="Mouse", stock=5)
        lamp = make_product(name="Lamp", stock=8)
        mouse_id, lamp_id = mouse.id, lamp.id
        fill_cart(db, user, (mouse, 1))
        before = self.snapshot(db, user, mouse, lamp)
        mid_write = []

        def failing_clear(cart, user_id):
            ledger = InventoryLedger(cart.db)
            mid_write.append((
                [ledger.get_stock(mouse_id), ledger.get_stock(lamp_id)],
                count(cart.db, InventoryTransaction),
                count(cart.db, Order),
            ))
            raise RuntimeError("cart storage unavailable")

        monkeypatch.setattr(CartStore, "clear", failing_clear)
        with pytest.raises(RuntimeError):
            OrderCoordinator(db).place_order(user.id, request((mouse_id, 2), (lamp_id, 3)))

        # Stock, the log and the order were already written when the last step failed
        assert mid_write == [([3, 5], 2, 1)]
        assert self.snapshot(db, user, mouse, lamp) == before

    def test_repeated_lines_are_checked_against_combined_quantity(self, db, users, make_product):
        product = make_product(stock=3)
        with pytest.raises(InsufficientStockError) as exc:
            OrderCoordinator(db).place_order(users["customer"].id, request((product.id, 2), (product.id, 2)))
        assert (exc.value.requested, exc.value.available) == (4, 3)
        assert InventoryLedger(db).get_stock(product.id) == 3

    def test_empty_items_rejected_before_storage(self, db, users):
        empty = PlaceOrderRequest.model_construct(items=[], shipping_address="Somewhere")
        with pytest.raises(ValidationError):
            OrderCoordinator(db).place_order(users["customer"].id, empty)

    def test_blank_address_rejected(self, db, users, make_product):
        product = make_product()
        blank = PlaceOrderRequest.model_construct(
            items=request((product.id, 1)).items, shipping_address="   "
        )
        with pytest.raises(ValidationError):
            OrderCoordinator(db).place_order(users["customer"].id, blank)
        assert count(db, Order) == 0

    def test_tracking_number_collision_is_a_conflict(self, db, users, make_product, monkeypatch):
        product = make_product(stock=10)
        monkeypatch.setattr(orders_module, "generate_tracking_number", lambda: "TRK-FIXED")
        coordinator = OrderCoordinator(db)
        coordinator.place_order(users["customer"].id, request((product.id, 1)))

        with pytest.raises(ConflictError):
            coordinator.place_order(users["customer"].id, request((product.id, 1)))

        assert count(db, Order) == 1
        assert InventoryLedger(db).get_stock(product.id) == 9

    def test_lock_timeout_is_a_conflict(self, db, users, make_product, monkeypatch):
        product = make_product(stock=10)

        def locked(self, product_ids):
            raise OperationalError("SELECT ...", {}, Exception("database is locked"))

        monkeypatch.setattr(InventoryLedger, "lock_products", locked)
        with pytest.raises(ConflictError):
            OrderCoordinator(db).place_order(users["customer"].id, request((product.id, 1)))

    def test_other_storage_faults_propagate(self, db, users, make_product, monkeypatch):
        product = make_product(stock=10)

        def broken(self, product_ids):
            raise OperationalError("SELECT ...", {}, Exception("disk I/O error"))

        monkeypatch.setattr(InventoryLedger, "lock_products", broken)
        with pytest.raises(OperationalError):
            OrderCoordinator(db).place_order(users["customer"].id, request((product.id, 1)))


class TestOrderEvents:
    """Events follow the commit and never undo it"""

    def test_event_order_and_targets(self, db, users, make_product, broadcaster, listen):
        customer_session = listen(users["customer"])
        other_session = listen(users["other"])
        admin_session = listen(users["admin"])
        a = make_product(stock=10)
        b = make_product(stock=10)

        placement = OrderCoordinator(db, broadcaster).place_order(
            users["customer"].id, request((a.id, 1), (b.id, 2))
        )

        expected = ["inventory_changed", "inventory_changed", "order_created"]
        assert customer_session.events == expected + ["cart_updated"]
        assert other_session.events == expected
        assert admin_session.events == expected

        stock = {p["id"]: p["stock_quantity"] for p in customer_session.of("inventory_changed")}
        assert stock == {a.id: 9, b.id: 8}
        [created] = admin_session.of("order_created")
        assert created["id"] == placement.order.id
        assert created["user_name"] == "John Doe"
        assert created["user_email"] == "user@supply-chain.com"
        assert len(created["items"]) == 2
        [notice] = customer_session.of("cart_updated")
        assert notice["user_id"] == users["customer"].id

    def test_failed_delivery_does_not_undo_the_order(self, db, users, make_product, broadcaster, listen):
        listen(users["customer"], fail=True)
        healthy = listen(users["admin"])
        product = make_product(stock=10)

        placement = OrderCoordinator(db, broadcaster).place_order(users["customer"].id, request((product.id, 1)))

        assert db.get(Order, placement.order.id) is not None
        assert broadcaster.delivery_failures == 3
        assert healthy.events == ["inventory_changed", "order_created"]

    def test_broken_broadcaster_does_not_undo_the_order(self, db, users, make_product, broadcaster, monkeypatch):
        product = make_product(stock=10)

        def explode(*args, **kwargs):
            raise RuntimeError("transport down")

        monkeypatch.setattr(broadcaster, "publish", explode)
        placement = OrderCoordinator(db, broadcaster).place_order(users["customer"].id, request((product.id, 1)))

        assert db.get(Order, placement.order.id) is not None
        assert InventoryLedger(db).get_stock(product.id) == 9

    def test_nothing_is_published_for_a_rejected_order(self, db, users, make_product, broadcaster, listen):
        session = listen(users["admin"])
        product = make_product(stock=1)
        with pytest.raises(InsufficientStockError):
            OrderCoordinator(db, broadcaster).place_order(users["customer"].id, request((product.id, 5)))
        assert session.messages == []
