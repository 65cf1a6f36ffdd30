from decimal import Decimal

import pytest
from starlette.websockets import WebSocketDisconnect

from storefront.application.inventory import InventoryLedger
from storefront.auth import create_access_token

from conftest import auth_headers


def place(client, user, *lines, address="742 Evergreen Terrace"):
    return client.post(
        "/orders",
        json={
            "items": [{"productId": pid, "quantity": qty} for pid, qty in lines],
            "shippingAddress": address,
        },
        headers=auth_headers(user),
    )


class TestOrdersApi:
    def test_place_order(self, client, users, make_product):
        product = make_product(price="1500.00", stock=5)

        resp = place(client, users["customer"], (product.id, 1))

        assert resp.status_code == 201
        body = resp.json()
        assert set(body) == {"order_id", "tracking_number", "total_amount", "fraud_risk", "fraud_reasons"}
        assert Decimal(str(body["total_amount"])) == Decimal("1500.00")
        assert body["fraud_risk"] == "high"
        assert body["tracking_number"].startswith("TRK")

    def test_snake_case_body_is_accepted(self, client, users, make_product):
        product = make_product(stock=5)
        resp = client.post(
            "/orders",
            json={"items": [{"product_id": product.id, "quantity": 1}], "shipping_address": "1 Main St"},
            headers=auth_headers(users["customer"]),
        )
        assert resp.status_code == 201

    @pytest.mark.parametrize("body", [
        {"items": [], "shippingAddress": "1 Main St"},
        {"items": [{"productId": 1, "quantity": 0}], "shippingAddress": "1 Main St"},
        {"items": [{"productId": 1, "quantity": 1}], "shippingAddress": "   "},
        {"items": [{"productId": 1, "quantity": 1}]},
    ])
    def test_malformed_orders_are_validation_errors(self, client, users, body):
        resp = client.post("/orders", json=body, headers=auth_headers(users["customer"]))
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"

    def test_insufficient_stock_details(self, client, db, users, make_product):
        product = make_product(name="Aeron Office Chair", stock=1)
        resp = place(client, users["customer"], (product.id, 3))

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "insufficient_stock"
        assert body["product_name"] == "Aeron Office Chair"
        assert (body["requested"], body["available"]) == (3, 1)
        assert InventoryLedger(db).get_stock(product.id) == 1

    def test_unknown_product(self, client, users):
        resp = place(client, users["customer"], (12345, 1))
        assert resp.status_code == 404
        assert resp.json() == {
            "error": "not_found",
            "detail": "Product with ID 12345 not found.",
            "product_id": 12345,
        }

    def test_requires_a_valid_token(self, client, users):
        anonymous = client.post("/orders", json={"items": [{"productId": 1, "quantity": 1}], "shippingAddress": "1 Main St"})
        assert anonymous.status_code == 401
        resp = client.get("/orders/1", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "unauthorized"

    def test_token_for_a_deleted_user(self, client):
        headers = {"Authorization": f"Bearer {create_access_token(4242, 'user')}"}
        assert client.get("/cart", headers=headers).status_code == 401

    def test_order_detail_visibility(self, client, users, make_product):
        product = make_product(price="10.00", stock=5)
        order_id = place(client, users["customer"], (product.id, 2)).json()["order_id"]

        mine = client.get(f"/orders/{order_id}", headers=auth_headers(users["customer"]))
        assert mine.status_code == 200
        detail = mine.json()
        assert detail["status"] == "pending"
        assert detail["items"][0]["quantity"] == 2
        assert detail["shipment"]["status"] == "pending"
        assert detail["fraud_reasons"] == []

        assert client.get(f"/orders/{order_id}", headers=auth_headers(users["other"])).status_code == 404
        assert client.get(f"/orders/{order_id}", headers=auth_headers(users["admin"])).status_code == 200


class TestCartApi:
    def test_cart_lifecycle(self, client, users, make_product):
        headers = auth_headers(users["customer"])
        product = make_product(name="SonicFlow Headphones", price="249.99", stock=5)

        added = client.post("/cart/items", json={"productId": product.id, "quantity": 2}, headers=headers)
        assert added.status_code == 201
        assert added.json() == {"product_id": product.id, "quantity": 2, "removed": False}

        [line] = client.get("/cart", headers=headers).json()
        assert line["name"] == "SonicFlow Headphones"
        assert line["quantity"] == 2

        updated = client.put(f"/cart/items/{product.id}", json={"quantity": 0}, headers=headers)
        assert updated.json()["removed"] is True
        assert client.get("/cart", headers=headers).json() == []

        missing = client.delete(f"/cart/items/{product.id}", headers=headers)
        assert missing.status_code == 404

    def test_cart_over_stock(self, client, users, make_product):
        product = make_product(stock=2)
        resp = client.post(
            "/cart/items", json={"productId": product.id, "quantity": 3}, headers=auth_headers(users["customer"])
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "insufficient_stock"

    def test_cart_changes_notify_the_owner(self, client, users, make_product, listen):
        mine = listen(users["customer"])
        theirs = listen(users["other"])
        product = make_product(stock=5)
        headers = auth_headers(users["customer"])

        client.post("/cart/items", json={"productId": product.id, "quantity": 1}, headers=headers)
        resp = client.delete("/cart", headers=headers)

        assert resp.json() == {"removed": 1}
        assert mine.events == ["cart_updated", "cart_updated"]
        assert theirs.messages == []

    def test_broken_broadcast_does_not_fail_a_committed_change(self, client, users, make_product, broadcaster, monkeypatch):
        headers = auth_headers(users["customer"])
        product = make_product(stock=5)

        def explode(*args, **kwargs):
            raise TypeError("payload is not JSON serializable")

        monkeypatch.setattr(broadcaster, "publish", explode)
        resp = client.post("/cart/items", json={"productId": product.id, "quantity": 2}, headers=headers)

        assert resp.status_code == 201
        [line] = client.get("/cart", headers=headers).json()
        assert line["quantity"] == 2

    def test_order_empties_the_cart(self, client, users, make_product):
        headers = auth_headers(users["customer"])
        product = make_product(stock=5)
        client.post("/cart/items", json={"productId": product.id, "quantity": 2}, headers=headers)

        assert place(client, users["customer"], (product.id, 2)).status_code == 201
        assert client.get("/cart", headers=headers).json() == []


class TestAdminApi:
    def test_customers_are_forbidden(self, client, users):
        resp = client.get("/admin/dashboard", headers=auth_headers(users["customer"]))
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"

    def test_dashboard_and_low_stock(self, client, users, make_product):
        make_product(name="Nearly gone", stock=1, min_stock=5)
        headers = auth_headers(users["admin"])

        dashboard = client.get("/admin/dashboard", headers=headers)
        assert dashboard.status_code == 200
        assert dashboard.json()["metrics"]["lowStockProducts"] == 1

        [low] = client.get("/admin/low-stock", headers=headers).json()
        assert low["name"] == "Nearly gone"

    def test_stock_update(self, client, users, make_product, listen):
        session = listen(users["customer"])
        product = make_product(stock=2)

        resp = client.put(
            f"/admin/products/{product.id}/stock",
            json={"stock_quantity": 25, "reason": "Cycle count"},
            headers=auth_headers(users["admin"]),
        )

        assert resp.status_code == 200
        assert resp.json()["stock_quantity"] == 25
        assert session.events == ["inventory_changed"]

    def test_negative_stock_is_rejected(self, client, users, make_product):
        product = make_product(stock=2)
        resp = client.put(
            f"/admin/products/{product.id}/stock", json={"stock_quantity": -1}, headers=auth_headers(users["admin"])
        )
        assert resp.status_code == 400

    def test_order_and_shipment_status(self, client, users, make_product):
        product = make_product(stock=5)
        order_id = place(client, users["customer"], (product.id, 1)).json()["order_id"]
        headers = auth_headers(users["admin"])

        ok = client.put(f"/admin/orders/{order_id}/status", json={"status": "processing"}, headers=headers)
        assert ok.status_code == 200
        assert ok.json()["status"] == "processing"

        bad = client.put(f"/admin/orders/{order_id}/status", json={"status": "pending"}, headers=headers)
        assert bad.status_code == 400
        assert bad.json()["error"] == "invalid_transition"

        unknown = client.put(f"/admin/orders/{order_id}/status", json={"status": "lost"}, headers=headers)
        assert unknown.status_code == 400
        assert unknown.json()["error"] == "validation_error"

        shipment_id = client.get(f"/orders/{order_id}", headers=headers).json()["shipment"]["id"]
        moved = client.put(
            f"/admin/shipments/{shipment_id}/status",
            json={"status": "in_transit", "current_location": "Chicago Hub"},
            headers=headers,
        )
        assert moved.status_code == 200
        assert moved.json()["current_location"] == "Chicago Hub"

        missing = client.put("/admin/shipments/999/status", json={"status": "in_transit"}, headers=headers)
        assert missing.status_code == 404


class TestServiceEndpoints:
    def test_root_and_info(self, client):
        assert client.get("/").json()["status"] == "running"
        assert client.get("/info").json()["endpoints"]["websocket"] == "/ws"

    def test_health_and_metrics(self, client):
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "pass"
        assert client.get("/health/live").json() == {"status": "alive"}

        metrics = client.get("/metrics").json()
        assert "system" in metrics
        assert set(metrics["service_metrics"]) == {
            "connected_sessions", "online_users", "events_published", "delivery_failures",
        }

    def test_request_id_is_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"


class TestRealtimeSocket:
    def test_bad_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws?token=garbage"):
                pass
        assert exc.value.code == 1008

    def test_missing_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws"):
                pass
        assert exc.value.code == 1008

    def test_customer_sees_their_order_events(self, client, users, make_product):
        customer = users["customer"]
        product = make_product(stock=5)
        token = create_access_token(customer.id, customer.role)

        with client.websocket_connect(f"/ws?token={token}") as ws:
            # a round trip proves the session is registered
            ws.send_json({"action": "teleport"})
            assert ws.receive_json()["event"] == "error"
            assert place(client, customer, (product.id, 2)).status_code == 201
            events = [ws.receive_json() for _ in range(3)]

        assert [e["event"] for e in events] == ["inventory_changed", "order_created", "cart_updated"]
        assert events[0]["data"]["stock_quantity"] == 3
        assert events[1]["data"]["user_name"] == "John Doe"

    def test_admin_actions(self, client, users, make_product):
        admin = users["admin"]
        product = make_product(stock=2, min_stock=5)
        token = create_access_token(admin.id, admin.role)

        with client.websocket_connect(f"/ws?token={token}") as ws:
            presence = ws.receive_json()
            assert presence["event"] == "user_count_updated"
            assert presence["data"] == {"total_users": 1, "online_users": 0}

            ws.send_json({"action": "get_dashboard_data"})
            dashboard = ws.receive_json()
            assert dashboard["event"] == "dashboard_data"
            assert dashboard["data"]["metrics"]["lowStockProducts"] == 1

            ws.send_json({"action": "check_low_stock"})
            alert = ws.receive_json()
            assert alert["event"] == "low_stock_alert"
            assert alert["data"]["products"][0]["id"] == product.id

            ws.send_json({"action": "inventory_update", "data": {"productId": product.id, "quantity": 40}})
            changed = ws.receive_json()
            assert changed["event"] == "inventory_changed"
            assert changed["data"]["stock_quantity"] == 40
            success = ws.receive_json()
            assert success["event"] == "inventory_update_success"
            assert success["data"] == {"productId": product.id, "newQuantity": 40}

            ws.send_json({"action": "update_order_status", "data": {"orderId": 999, "status": "processing"}})
            error = ws.receive_json()
            assert error["event"] == "error"
            assert error["data"]["error"] == "not_found"

    def test_customer_cannot_use_admin_actions(self, client, users):
        customer = users["customer"]
        token = create_access_token(customer.id, customer.role)
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"action": "inventory_update", "data": {"productId": 1, "quantity": 0}})
            error = ws.receive_json()
            assert error["event"] == "error"
            assert error["data"]["message"] == "Admin access required"

            ws.send_text("not json")
            assert ws.receive_json()["data"]["message"] == "Malformed message"

            ws.send_json({"action": "teleport"})
            assert ws.receive_json()["data"]["message"] == "Unknown action: teleport"

    def test_activity_is_relayed_to_admins(self, client, users):
        admin, customer = users["admin"], users["customer"]
        admin_token = create_access_token(admin.id, admin.role)
        customer_token = create_access_token(customer.id, customer.role)

        with client.websocket_connect(f"/ws?token={admin_token}") as admin_ws:
            assert admin_ws.receive_json()["data"] == {"total_users": 1, "online_users": 0}
            with client.websocket_connect(f"/ws?token={customer_token}") as customer_ws:
                assert admin_ws.receive_json()["data"] == {"total_users": 2, "online_users": 1}
                customer_ws.send_json({"action": "user_activity", "data": {"activity": "viewing_product", "details": {"id": 3}}})
                activity = admin_ws.receive_json()
            assert activity["event"] == "user_activity_update"
            assert activity["data"]["user_name"] == "John Doe"
            assert activity["data"]["activity"] == "viewing_product"
            assert admin_ws.receive_json()["data"] == {"total_users": 1, "online_users": 0}
