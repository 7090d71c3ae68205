"""Tests for the HTTP and WebSocket surface."""

import json

import pytest
from fastapi.testclient import TestClient

from server import create_app


@pytest.fixture
def client(backend) -> TestClient:
    return TestClient(create_app(backend))


def _quote(client, **overrides):
    body = {"x": 5, "y": 5, "color": "#ff0000", "price": 100, "owner_id": "alice", "owner_name": "Alice"}
    body.update(overrides)
    return client.post("/api/payments/quote", json=body)


def _webhook(client, gateway, intent_id, event_type="payment_intent.succeeded", signature="valid"):
    return client.post(
        "/api/payments/webhook",
        content=gateway.webhook_body(intent_id, event_type),
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


class TestReadApi:
    def test_empty_grid(self, client) -> None:
        assert client.get("/api/pixels").json() == []

    def test_missing_pixel(self, client) -> None:
        assert client.get("/api/pixels/1/1").status_code == 404

    def test_config(self, client) -> None:
        data = client.get("/api/pixels/config").json()
        assert data["floorPrice"] == 100
        assert data["freeAllocationMax"] == 3
        assert data["protectionOverrideMultiplier"] == "10"

    def test_free_count(self, client) -> None:
        assert client.get("/api/pixels/free-count/alice").json() == {"ownerId": "alice", "remaining": 3}


class TestQuoteAndSettle:
    def test_full_flow(self, client, gateway) -> None:
        response = _quote(client)
        assert response.status_code == 200
        quote = response.json()
        assert quote["amount"] == 100
        assert quote["clientSecret"].endswith("_secret")

        settled = _webhook(client, gateway, quote["paymentIntentId"])
        assert settled.status_code == 200
        assert settled.json()["state"] == "broadcasted"

        pixel = client.get("/api/pixels/5/5").json()
        assert pixel["ownerId"] == "alice"
        assert len(client.get("/api/pixels").json()) == 1

        history = client.get("/api/pixels/5/5/history").json()
        assert [h["settlementRef"] for h in history] == [quote["paymentIntentId"]]

    def test_replayed_webhook(self, client, gateway) -> None:
        intent_id = _quote(client).json()["paymentIntentId"]
        _webhook(client, gateway, intent_id)

        replay = _webhook(client, gateway, intent_id)

        assert replay.status_code == 200
        assert replay.json()["state"] == "duplicate"
        assert len(client.get("/api/pixels/5/5/history").json()) == 1

    def test_bid_too_low(self, client, gateway) -> None:
        intent_id = _quote(client).json()["paymentIntentId"]
        _webhook(client, gateway, intent_id)

        response = _quote(client, price=150, owner_id="bob")

        assert response.status_code == 400
        assert response.json()["detail"] == {
            "code": "bid_too_low",
            "message": "Bid must be at least 200",
            "minimum_bid": 200,
        }

    def test_missing_owner(self, client) -> None:
        response = _quote(client, owner_id=None)
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "missing_owner_identity"

    def test_bulk_quote(self, client, gateway) -> None:
        body = {
            "cells": [
                {"x": 1, "y": 1, "color": "#000001", "price": 100},
                {"x": 2, "y": 1, "color": "#000002", "price": 200, "wants_protection": True},
            ],
            "total_amount": 1100,
            "owner_id": "alice",
        }
        quote = client.post("/api/payments/bulk-quote", json=body).json()
        assert quote["sessionId"]

        settled = _webhook(client, gateway, quote["paymentIntentId"]).json()
        assert [o["state"] for o in settled["outcomes"]] == ["broadcasted", "broadcasted"]
        assert client.get("/api/pixels/2/1").json()["isProtected"]

    def test_stale_write_listed_for_reconciliation(self, client, gateway) -> None:
        alice = _quote(client).json()["paymentIntentId"]
        bob = _quote(client, owner_id="bob", price=200).json()["paymentIntentId"]
        _webhook(client, gateway, bob)

        result = _webhook(client, gateway, alice).json()

        assert result["state"] == "rejected"
        assert result["error"] == "stale_write"
        cases = client.get("/api/payments/reconciliation").json()
        assert [c["settlementRef"] for c in cases] == [alice]


class TestWebhook:
    def test_bad_signature(self, client, gateway) -> None:
        intent_id = _quote(client).json()["paymentIntentId"]
        response = _webhook(client, gateway, intent_id, signature="forged")
        assert response.status_code == 400
        assert client.get("/api/pixels/5/5").status_code == 404

    def test_non_terminal_event_acknowledged(self, client, gateway) -> None:
        intent_id = _quote(client).json()["paymentIntentId"]
        response = _webhook(client, gateway, intent_id, event_type="payment_intent.created")
        assert response.json() == {"received": True, "state": "ignored"}

    def test_non_numeric_amount_acknowledged(self, client, gateway) -> None:
        intent_id = _quote(client).json()["paymentIntentId"]
        event = json.loads(gateway.webhook_body(intent_id))
        event["data"]["object"]["amount_received"] = "lots"

        response = client.post(
            "/api/payments/webhook",
            content=json.dumps(event).encode("utf-8"),
            headers={"Stripe-Signature": "valid", "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["state"] == "rejected"
        assert response.json()["error"] == "invalid_gateway_event"
        assert client.get("/api/pixels/5/5").status_code == 404

    def test_failed_payment_acknowledged(self, client, gateway) -> None:
        intent_id = _quote(client).json()["paymentIntentId"]
        response = _webhook(client, gateway, intent_id, event_type="payment_intent.payment_failed")
        assert response.status_code == 200
        assert response.json()["state"] == "rejected"


class TestBroadcastChannel:
    def test_viewer_receives_settled_cell(self, client, gateway, backend) -> None:
        intent_id = _quote(client).json()["paymentIntentId"]

        with client.websocket_connect("/ws") as ws:
            _webhook(client, gateway, intent_id)
            message = ws.receive_json()

        assert message["x"] == 5
        assert message["y"] == 5
        assert message["ownerId"] == "alice"
        assert message["price"] == 100
