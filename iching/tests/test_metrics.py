from iching.core.metrics import METRICS, http_requests_total, normalize_path


def test_normalize_path_collapses_ids():
    assert normalize_path("/verify-payment") == "/verify-payment"
    assert normalize_path("/orders/pi_3MtwBwLkdIwHu7ix28a3tqPa") == "/orders/:id"
    assert normalize_path("/events/evt_1NG8Du2eZvKYlo2CUI79vXWy/") == "/events/:id"
    assert normalize_path("/items/12345") == "/items/:id"


def test_requests_counted_and_exported(client):
    client.post("/create-payment-intent", json={"amount": 90, "currency": "twd", "orderId": "o1"})
    client.post("/create-payment-intent", json={"amount": 90, "currency": "xxx", "orderId": "o2"})

    assert http_requests_total.value({"method": "POST", "path": "/create-payment-intent", "status": "200"}) == 1
    assert http_requests_total.value({"method": "POST", "path": "/create-payment-intent", "status": "400"}) == 1

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'payment_intents_total{outcome="created"} 1.0' in resp.text
    assert 'payment_intents_total{outcome="rejected"} 1.0' in resp.text


def test_reset_clears_values():
    http_requests_total.inc(labels={"method": "GET", "path": "/healthz", "status": "200"})
    METRICS.reset()
    assert http_requests_total.value({"method": "GET", "path": "/healthz", "status": "200"}) == 0
