"""
Order store read endpoints, dashboard statistics, the anomaly feed and health.
"""

from storefront.services.reconciliation_service import SOURCE_WEBHOOK, apply_gateway_result

from conftest import place_order


def _pay(created, gateway):
    gateway.set_intent_status(created["payment_intent_id"], "succeeded")
    return apply_gateway_result(gateway.retrieve_intent(created["payment_intent_id"]), source=SOURCE_WEBHOOK)


def test_customers_only_list_their_own_orders(client, customer, other_customer, customer_headers, admin_headers, product, gateway):
    mine = place_order(customer, [(product, 1)])
    place_order(other_customer, [(product, 1)])

    response = client.get('/api/orders', headers=customer_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert [o["order_number"] for o in body["orders"]] == [mine["order_number"]]
    assert body["orders"][0]["item_count"] == 1
    assert body["orders"][0]["customer"]["email"] == "ana@example.com"
    assert body["pagination"]["total_items"] == 1

    everyone = client.get('/api/orders', headers=admin_headers).get_json()
    assert everyone["pagination"]["total_items"] == 2


def test_list_filters_and_pagination(client, customer, admin_headers, product, gateway):
    orders = [place_order(customer, [(product, 1)]) for _ in range(3)]
    _pay(orders[0], gateway)

    paid = client.get('/api/orders?payment_status=paid', headers=admin_headers).get_json()
    assert [o["order_number"] for o in paid["orders"]] == [orders[0]["order_number"]]

    pending = client.get('/api/orders?status=pending', headers=admin_headers).get_json()
    assert pending["pagination"]["total_items"] == 2

    page = client.get('/api/orders?limit=2&page=2', headers=admin_headers).get_json()
    assert len(page["orders"]) == 1
    assert page["pagination"] == {
        "current_page": 2,
        "total_pages": 2,
        "total_items": 3,
        "items_per_page": 2,
        "has_next": False,
        "has_prev": True,
    }


def test_list_search_matches_order_number_and_customer(client, customer, other_customer, admin_headers, product, gateway):
    created = place_order(customer, [(product, 1)])
    place_order(other_customer, [(product, 1)])

    by_number = client.get(f'/api/orders?search={created["order_number"][-9:]}', headers=admin_headers).get_json()
    assert [o["id"] for o in by_number["orders"]] == [created["order_id"]]

    by_name = client.get('/api/orders?search=jensen', headers=admin_headers).get_json()
    assert len(by_name["orders"]) == 1
    assert by_name["orders"][0]["customer"]["last_name"] == "Jensen"


def test_list_rejects_bad_query_params(client, customer_headers, gateway):
    assert client.get('/api/orders?status=lost', headers=customer_headers).status_code == 400
    assert client.get('/api/orders?limit=101', headers=customer_headers).status_code == 400
    assert client.get('/api/orders?start_date=yesterday', headers=customer_headers).status_code == 400


def test_order_detail_includes_items_and_transactions(client, customer, customer_headers, product, gateway):
    created = place_order(customer, [(product, 2)])

    response = client.get(f'/api/orders/{created["order_id"]}', headers=customer_headers)

    assert response.status_code == 200
    order = response.get_json()["order"]
    assert order["total_amount"] == 25.0
    assert order["items"][0]["sku"] == "TSHIRT-M"
    assert order["transactions"][0]["transaction_id"] == created["payment_intent_id"]
    assert "gateway_response" not in order["transactions"][0]
    assert order["customer"]["id"] == customer.id


def test_order_detail_is_denied_to_other_customers(client, customer, other_customer_headers, admin_headers, product, gateway):
    created = place_order(customer, [(product, 1)])

    assert client.get(f'/api/orders/{created["order_id"]}', headers=other_customer_headers).status_code == 403
    assert client.get(f'/api/orders/{created["order_id"]}', headers=admin_headers).status_code == 200
    assert client.get('/api/orders/777', headers=admin_headers).status_code == 404


def test_orders_require_authentication(client, gateway):
    assert client.get('/api/orders').status_code == 401
    assert client.get('/api/orders', headers={"Authorization": "Bearer nope"}).status_code == 401


def test_dashboard_stats(client, customer, other_customer, admin_headers, product, gateway):
    first = place_order(customer, [(product, 2)])
    place_order(customer, [(product, 1)])
    place_order(other_customer, [(product, 1)])
    _pay(first, gateway)

    response = client.get('/api/orders/stats/dashboard?period=30', headers=admin_headers)

    assert response.status_code == 200
    stats = response.get_json()
    assert stats["summary"]["total_orders"] == 3
    assert stats["summary"]["period_orders"] == 3
    assert stats["summary"]["period_revenue_cents"] == 2500
    assert stats["summary"]["period_revenue"] == 25.0
    by_status = {row["status"]: row["count"] for row in stats["orders_by_status"]}
    assert by_status == {"confirmed": 1, "pending": 2}
    assert sum(day["orders"] for day in stats["daily_stats"]) == 3
    top = stats["top_customers"][0]
    assert top["email"] == "ana@example.com"
    assert top["order_count"] == 2
    assert top["total_spent_cents"] == 2500


def test_dashboard_is_admin_only(client, customer_headers, gateway):
    assert client.get('/api/orders/stats/dashboard', headers=customer_headers).status_code == 403


def test_anomaly_feed_lists_open_alerts(client, customer, other_customer, admin_headers, customer_headers, product, gateway):
    first = place_order(customer, [(product, 3)])
    second = place_order(other_customer, [(product, 3)])
    _pay(first, gateway)
    _pay(second, gateway)

    response = client.get('/api/anomalies?kind=STOCK_UNDERFLOW', headers=admin_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body["count"] == 1
    assert body["anomalies"][0]["order_id"] == second["order_id"]
    assert client.get('/api/anomalies', headers=customer_headers).status_code == 403


def test_health_reports_database_and_locks(client, db_session, gateway):
    response = client.get('/health')

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["order_locks"]["active"] == 0
    assert body["checks"]["payment_gateway"]["configured"] is True


def test_payment_methods(client, gateway):
    body = client.get('/api/payments/methods').get_json()

    assert body["supported_currencies"] == ["EUR", "USD", "GBP"]
    assert body["minimum_amount"] == 0.5
