from datetime import datetime, timedelta

import pytest

from courier.dispatch_service import expire_if_due

from .conftest import DROP, PICKUP


def order_body(user_id, pickup=PICKUP, drop=DROP, **extra):
    body = {
        "user_id": user_id,
        "pickup_lat": pickup[0],
        "pickup_lng": pickup[1],
        "drop_lat": drop[0],
        "drop_lng": drop[1],
    }
    body.update(extra)
    return body


@pytest.fixture
def order(client, requester, riders):
    response = client.post("/orders", json=order_body(requester, package_details={"weight_kg": 2}))
    assert response.status_code == 201
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestOrderEndpoints:
    def test_create_offers_to_nearest_rider(self, order, riders):
        assert order["status"] == "assigned"
        assert order["current_rider"]["rider_id"] == riders[0]
        assert order["order"]["offer_expires_at"] is not None
        assert order["order"]["package_details"] == {"weight_kg": 2}
        assert order["order"]["total_price"] == order["order"]["commission"] + order["order"]["rider_earnings"]

    def test_create_without_riders(self, client, requester):
        response = client.post("/orders", json=order_body(requester))

        assert response.status_code == 201
        assert response.json()["status"] == "cancelled"
        assert response.json()["current_rider"] is None

    def test_missing_coordinates_is_bad_request(self, client, requester):
        body = order_body(requester)
        del body["pickup_lat"]

        response = client.post("/orders", json=body)

        assert response.status_code == 400
        assert "pickup" in response.json()["detail"]

    def test_unknown_requester(self, client, riders):
        response = client.post("/orders", json=order_body(4242))

        assert response.status_code == 404
        assert response.json()["user_id"] == 4242

    def test_quote_breakdown(self, client):
        response = client.post("/orders/quote", json={
            "pickup_lat": PICKUP[0], "pickup_lng": PICKUP[1],
            "drop_lat": DROP[0], "drop_lng": DROP[1],
        })

        assert response.status_code == 200
        quote = response.json()
        assert quote["base_fare"] == 30
        assert quote["commission_rate"] == 15
        assert [t["range"] for t in quote["tiers"]] == ["2-8 km"]
        assert quote["total_price"] == quote["commission"] + quote["rider_earnings"]

    def test_quote_rejects_out_of_range(self, client):
        response = client.post("/orders/quote", json={
            "pickup_lat": 120, "pickup_lng": PICKUP[1],
            "drop_lat": DROP[0], "drop_lng": DROP[1],
        })
        assert response.status_code == 400

    def test_get_and_status(self, client, order, riders):
        order_id = order["order"]["id"]

        assert client.get(f"/orders/{order_id}").json()["id"] == order_id

        status = client.get(f"/orders/{order_id}/status").json()
        assert status["status"] == "assigned"
        assert status["current_rider_id"] == riders[0]
        assert 0 < status["offer_seconds_remaining"] <= 120
        assert 1700 < status["total_seconds_remaining"] <= 1800

    def test_timer_poll_leaves_live_offer(self, client, order, riders):
        response = client.get(f"/orders/{order['order']['id']}/timer")

        assert response.status_code == 200
        assert response.json()["current_rider_id"] == riders[0]

    def test_advance_before_deadline(self, client, order):
        response = client.post(f"/orders/{order['order']['id']}/advance")

        assert response.status_code == 200
        assert response.json()["progressed"] is False
        assert response.json()["message"] == "Waiting for rider"

    def test_expire_offers_sweep(self, client, order):
        response = client.post("/orders/expire-offers")

        assert response.status_code == 200
        assert response.json() == {"checked": 0, "progressed": [], "failed": []}

    def test_unknown_order(self, client):
        assert client.get("/orders/999").status_code == 404
        assert client.get("/orders/999/status").status_code == 404
        assert client.post("/orders/999/advance").status_code == 404

    def test_history(self, client, requester, order):
        response = client.get("/orders", params={"user_id": requester})

        assert [o["id"] for o in response.json()] == [order["order"]["id"]]
        assert client.get("/orders", params={"user_id": requester, "status": "delivered"}).json() == []
        assert client.get("/orders", params={"user_id": requester, "status": "lost"}).status_code == 400


class TestRiderFlow:
    def test_decline_then_accept_then_deliver(self, client, order, riders):
        r1, r2, _ = riders
        order_id = order["order"]["id"]

        declined = client.post(f"/orders/{order_id}/respond", json={"rider_id": r1, "action": "decline"})
        assert declined.status_code == 200
        assert declined.json()["current_rider"]["rider_id"] == r2
        assert declined.json()["message"] == "Offer sent to next rider"

        accepted = client.post(f"/orders/{order_id}/respond", json={"rider_id": r2, "action": "accept"})
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"
        assert accepted.json()["order"]["driver_id"] == r2

        otp = client.get(f"/orders/{order_id}/otp").json()
        assert otp["pickup_verified"] is False

        wrong = client.post(f"/orders/{order_id}/otp/verify", json={"stage": "pickup", "code": "0000"})
        assert wrong.status_code == 400

        picked = client.post(f"/orders/{order_id}/otp/verify", json={"stage": "pickup", "code": otp["pickup_otp"]})
        assert picked.status_code == 200
        assert picked.json()["status"] == "accepted"

        delivered = client.post(
            f"/orders/{order_id}/otp/verify", json={"stage": "delivery", "code": otp["delivery_otp"]}
        )
        assert delivered.status_code == 200
        assert delivered.json()["status"] == "delivered"

    def test_late_response_is_conflict(self, client, session_factory, order, riders):
        order_id = order["order"]["id"]
        with session_factory() as session:
            expire_if_due(session, order_id, now=datetime.utcnow() + timedelta(seconds=121))

        response = client.post(f"/orders/{order_id}/respond", json={"rider_id": riders[0], "action": "accept"})

        assert response.status_code == 409
        assert response.json()["status"] == "assigned"
        assert response.json()["order_id"] == order_id

    def test_response_without_offer_is_not_found(self, client, order, riders):
        response = client.post(
            f"/orders/{order['order']['id']}/respond", json={"rider_id": riders[2], "action": "accept"}
        )
        assert response.status_code == 404

    def test_invalid_action_rejected_by_schema(self, client, order, riders):
        response = client.post(
            f"/orders/{order['order']['id']}/respond", json={"rider_id": riders[0], "action": "maybe"}
        )
        assert response.status_code == 422

    def test_otp_before_acceptance(self, client, order):
        assert client.get(f"/orders/{order['order']['id']}/otp").status_code == 404

    def test_rider_offer_inbox(self, client, order, riders):
        inbox = client.get(f"/riders/{riders[0]}/offers").json()

        assert [offer["order_id"] for offer in inbox] == [order["order"]["id"]]
        assert inbox[0]["status"] == "offered"
        assert client.get(f"/riders/{riders[1]}/offers").json() == []

    def test_unknown_rider(self, client, requester):
        assert client.get("/riders/999/offers").status_code == 404
        # Requesters are not riders
        assert client.get(f"/riders/{requester}/offers").status_code == 404


class TestCancel:
    def test_requester_cancels(self, client, requester, order):
        order_id = order["order"]["id"]

        response = client.post(f"/orders/{order_id}/cancel", json={"user_id": requester})
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = client.post(f"/orders/{order_id}/cancel", json={"user_id": requester})
        assert again.status_code == 409
        assert again.json()["status"] == "cancelled"

    def test_other_user_cannot_cancel(self, client, order, riders):
        response = client.post(f"/orders/{order['order']['id']}/cancel", json={"user_id": riders[0]})
        assert response.status_code == 404


class TestRiderLocation:
    def test_report_and_read_back(self, client, riders):
        rider_id = riders[0]

        created = client.post(f"/riders/{rider_id}/location", json={"lat": 12.98, "lng": 77.6, "speed": 8.5})
        assert created.status_code == 201
        assert created.json()["driver_id"] == rider_id

        latest = client.get(f"/riders/{rider_id}/location").json()
        assert (latest["lat"], latest["lng"], latest["speed"]) == (12.98, 77.6, 8.5)

    def test_no_location_yet(self, client, riders):
        assert client.get(f"/riders/{riders[0]}/location").status_code == 404

    def test_rejects_bad_position(self, client, riders):
        response = client.post(f"/riders/{riders[0]}/location", json={"lat": 95, "lng": 77.6})
        assert response.status_code == 422
