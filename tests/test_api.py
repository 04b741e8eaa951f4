"""
Tests for the HTTP surface.

The routes are thin; these check that refusals come back with the right
status code and reason, and that a full haul works end to end over HTTP.
"""
import pytest
from fastapi.testclient import TestClient

from app.api import dependencies
from app.api.dependencies import (
    build_context,
    build_identity_service,
    get_context,
    get_gateway_settings,
    get_identity_service,
)
from app.core.config import GatewaySettings
from app.database import get_db
from app.main import app
from app.models.enums import LoadStatus
from app.services.context import ServiceContext
from app.services.gateways import InMemoryWallet, TokenIdentityService


@pytest.fixture
def client(session_factory, ctx):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_context] = lambda: ctx
    app.dependency_overrides[get_gateway_settings] = lambda: GatewaySettings(PLATFORM_API_KEY="platform-secret")
    app.dependency_overrides[get_identity_service] = lambda: TokenIdentityService(
        {"tok-1": "driver_1", "tok-2": "driver_2"},
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


DRIVER_1 = {"X-Session-Token": "tok-1"}
DRIVER_2 = {"X-Session-Token": "tok-2"}
PLATFORM = {"X-API-Key": "platform-secret"}


def accept_over_http(client, load_id, headers=DRIVER_1):
    response = client.post(f"/api/loads/{load_id}/accept", json={"vehicle_plate": "FRT 001"}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestSession:

    def test_missing_session_is_401(self, client, make_load):
        load = make_load()

        response = client.post(f"/api/loads/{load.id}/reserve")

        assert response.status_code == 401

    def test_unknown_session_is_401(self, client, make_load):
        load = make_load()

        response = client.post(f"/api/loads/{load.id}/reserve", headers={"X-Session-Token": "forged"})

        assert response.status_code == 401


class TestBoard:

    def test_reserve_and_release(self, client, make_load):
        load = make_load()

        reserved = client.post(f"/api/loads/{load.id}/reserve", headers=DRIVER_1)
        assert reserved.status_code == 200
        assert reserved.json()["status"] == LoadStatus.RESERVED.value
        assert reserved.json()["reserved_by"] == "driver_1"

        released = client.delete(f"/api/loads/{load.id}/reserve", headers=DRIVER_1)
        assert released.status_code == 200
        assert released.json()["releases"] == 1

    def test_reserving_held_load_is_409(self, client, make_load):
        load = make_load()
        client.post(f"/api/loads/{load.id}/reserve", headers=DRIVER_1)

        response = client.post(f"/api/loads/{load.id}/reserve", headers=DRIVER_2)

        assert response.status_code == 409
        assert response.json()["detail"]["reason"] == "unavailable"

    def test_unknown_load_is_404(self, client):
        response = client.post("/api/loads/999/reserve", headers=DRIVER_1)

        assert response.status_code == 404
        assert response.json()["detail"]["reason"] == "load_not_found"

    def test_missing_license_is_403(self, client, make_load):
        load = make_load(required_license="class_b")

        response = client.post(f"/api/loads/{load.id}/accept", json={}, headers=DRIVER_1)

        assert response.status_code == 403
        assert response.json()["detail"]["reason"] == "license_required"


class TestHaul:

    def test_full_haul(self, client, make_load, wallet):
        load = make_load()
        mission = accept_over_http(client, load.id)
        bol_id = mission["bol_id"]
        assert mission["status"] == "at_origin"
        assert wallet.balances["driver_1"] == 10000 - 300

        departed = client.post(f"/api/bols/{bol_id}/depart", headers=DRIVER_1)
        assert departed.status_code == 200
        assert departed.json()["seal_status"] == "sealed"

        arrived = client.post(f"/api/bols/{bol_id}/arrive", json={"x": 99.0, "y": 1.0}, headers=DRIVER_1)
        assert arrived.json()["status"] == "at_destination"

        delivered = client.post(f"/api/bols/{bol_id}/deliver", json={"x": 99.0, "y": 1.0}, headers=DRIVER_1)
        assert delivered.status_code == 200
        body = delivered.json()
        assert body["status"] == "delivered"
        assert body["deposit_returned"] is True
        assert body["payout_breakdown"]["final_amount"] == body["final_payout"]
        assert wallet.balances["driver_1"] == 10000 + body["final_payout"]

        again = client.post(f"/api/bols/{bol_id}/deliver", json={"x": 99.0, "y": 1.0}, headers=DRIVER_1)
        assert again.status_code == 409
        assert again.json()["detail"]["reason"] == "duplicate_signal"

    def test_other_driver_is_403(self, client, make_load):
        bol_id = accept_over_http(client, make_load().id)["bol_id"]

        response = client.post(f"/api/bols/{bol_id}/depart", headers=DRIVER_2)

        assert response.status_code == 403
        assert response.json()["detail"]["reason"] == "not_mission_owner"

    def test_integrity_signal_validation(self, client, make_load):
        bol_id = accept_over_http(client, make_load().id)["bol_id"]

        blank = client.post(f"/api/bols/{bol_id}/signals/integrity", json={"cause": "", "loss": 5}, headers=DRIVER_1)
        assert blank.status_code == 422

        hit = client.post(f"/api/bols/{bol_id}/signals/integrity", json={"cause": "pothole", "loss": 40}, headers=DRIVER_1)
        assert hit.status_code == 200
        assert hit.json()["cargo_integrity"] == 75

    def test_abandon(self, client, make_load):
        bol_id = accept_over_http(client, make_load().id)["bol_id"]

        response = client.post(f"/api/bols/{bol_id}/abandon", json={"reason": "breakdown"}, headers=DRIVER_1)

        assert response.status_code == 200
        assert response.json()["status"] == "abandoned"
        assert response.json()["deposit_returned"] is False


class TestRecords:

    def test_bol_and_events(self, client, make_load):
        bol_id = accept_over_http(client, make_load().id)["bol_id"]
        client.post(f"/api/bols/{bol_id}/signals/pre-trip", headers=DRIVER_1)
        client.post(f"/api/bols/{bol_id}/depart", headers=DRIVER_1)

        bol = client.get(f"/api/bols/{bol_id}", headers=DRIVER_1)
        events = client.get(f"/api/bols/{bol_id}/events", headers=DRIVER_1)

        assert bol.status_code == 200
        assert bol.json()["status"] == "active"
        assert [event["event_type"] for event in events.json()] == [
            "load_accepted",
            "pre_trip_completed",
            "seal_applied",
            "departed_origin",
        ]

    def test_someone_elses_bol_is_403(self, client, make_load):
        bol_id = accept_over_http(client, make_load().id)["bol_id"]

        assert client.get(f"/api/bols/{bol_id}", headers=DRIVER_2).status_code == 403
        assert client.get(f"/api/bols/{bol_id}/events", headers=DRIVER_2).status_code == 403
        assert client.get("/api/bols/999", headers=DRIVER_1).status_code == 404

    def test_driver_record(self, client):
        response = client.get("/api/drivers/me", headers=DRIVER_2)

        assert response.status_code == 200
        assert response.json()["reputation_score"] == 500
        assert response.json()["reputation_tier"] == "developing"


class TestPresence:

    def test_platform_disconnect_then_reconnect_extends_window(self, client, make_load, clock):
        bol_id = accept_over_http(client, make_load().id)["bol_id"]

        assert client.post("/api/platform/drivers/driver_1/disconnect", headers=PLATFORM).status_code == 204
        clock.advance(seconds=120)
        response = client.post("/api/platform/drivers/driver_1/reconnect", headers=PLATFORM)

        assert response.status_code == 200
        assert response.json() == {"driver_id": "driver_1", "extended_seconds": 120}
        mission_window = client.get(f"/api/bols/{bol_id}/events", headers=DRIVER_1).json()[-1]
        assert mission_window["event_type"] == "window_extended"
        assert mission_window["data_json"]["seconds"] == 120

    def test_driver_session_cannot_send_connection_events(self, client, make_load):
        accept_over_http(client, make_load().id)

        assert client.post("/api/platform/drivers/driver_1/disconnect", headers=DRIVER_1).status_code == 401
        wrong_key = {"X-API-Key": "guess", **DRIVER_1}
        assert client.post("/api/platform/drivers/driver_1/reconnect", headers=wrong_key).status_code == 401
        assert client.post("/api/drivers/me/disconnect", headers=DRIVER_1).status_code == 404

    def test_connection_events_disabled_without_key(self, client):
        app.dependency_overrides[get_gateway_settings] = lambda: GatewaySettings(PLATFORM_API_KEY="")

        response = client.post("/api/platform/drivers/driver_1/disconnect", headers=PLATFORM)

        assert response.status_code == 503

    def test_driver_command_during_outage_earns_no_extension(self, client, make_load, clock):
        bol_id = accept_over_http(client, make_load().id)["bol_id"]
        client.post(f"/api/bols/{bol_id}/depart", headers=DRIVER_1)
        client.post("/api/platform/drivers/driver_1/disconnect", headers=PLATFORM)
        clock.advance(minutes=45)

        hit = client.post(f"/api/bols/{bol_id}/signals/integrity", json={"cause": "pothole", "loss": 1}, headers=DRIVER_1)
        assert hit.status_code == 200

        clock.advance(minutes=5)
        response = client.post("/api/platform/drivers/driver_1/reconnect", headers=PLATFORM)
        assert response.json()["extended_seconds"] == 0
        events = client.get(f"/api/bols/{bol_id}/events", headers=DRIVER_1).json()
        assert "window_extended" not in [event["event_type"] for event in events]


class TestGatewayWiring:

    def test_unknown_sessions_refused_by_default(self):
        identity = build_identity_service(GatewaySettings(DEV_MODE=False, SESSION_TOKENS={"tok-9": "driver_9"}))

        assert identity.resolve("driver_2") is None
        assert identity.resolve("tok-9") == "driver_9"

    def test_dev_mode_passes_tokens_through(self):
        identity = build_identity_service(GatewaySettings(DEV_MODE=True))

        assert identity.resolve("driver_2") == "driver_2"

    def test_wallets_seeded_from_settings(self):
        ctx = build_context(GatewaySettings(
            DEV_MODE=False,
            WALLET_BALANCES={"driver_1": 500},
            CREDENTIALS={"driver_1": ["insurance", "class_a"]},
        ))

        assert ctx.wallet.debit("driver_1", 300, "deposit") is True
        assert ctx.wallet.debit("driver_2", 300, "deposit") is False
        assert ctx.credentials.is_active("driver_1", "class_a")
        assert not ctx.credentials.is_active("driver_2", "insurance")

    def test_dev_mode_opens_wallets_with_a_balance(self):
        ctx = build_context(GatewaySettings(DEV_MODE=True, DEV_OPENING_BALANCE=2000))

        assert ctx.wallet.debit("new_driver", 300, "deposit") is True
        assert ctx.wallet.balances["new_driver"] == 1700

    def test_configure_installs_host_gateways(self, monkeypatch):
        monkeypatch.setattr(dependencies, "_context", None)
        monkeypatch.setattr(dependencies, "_identity", None)
        host_context = ServiceContext(
            wallet=InMemoryWallet({"driver_1": 50}),
            credentials=None,
            notifications=None,
            inventory=None,
        )
        host_identity = TokenIdentityService({"host-token": "driver_1"})

        dependencies.configure(context=host_context, identity=host_identity)

        assert dependencies.get_context() is host_context
        assert dependencies.get_identity_service() is host_identity
