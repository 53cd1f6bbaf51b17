"""
Telemetry bridge tests.

Verifies:
- REST client URL/auth shape and error classification
- Every bridge read falls back to a safe default
- Every bridge write reports False instead of raising
"""

from decimal import Decimal

import httpx
import pytest

from ecotrend.errors import ExternalServiceError
from ecotrend.services.telemetry_service import (
    FirebaseRestClient,
    NullTelemetryClient,
    TelemetryBridge,
    TelemetryDeviceStatus,
    build_telemetry_client,
    parse_tank_key,
)

DB_URL = "https://ecotrend-test.firebaseio.com/"


def _rest_client(handler, auth_token=None):
    return FirebaseRestClient(DB_URL, auth_token=auth_token, transport=httpx.MockTransport(handler))


# =============================================================================
# REST CLIENT
# =============================================================================


class TestFirebaseRestClient:
    def test_get_builds_json_url_with_auth(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"balance": 12})

        client = _rest_client(handler, auth_token="secret")

        assert client.get("D1") == {"balance": 12}
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/D1.json"
        assert seen[0].url.params["auth"] == "secret"

    def test_put_sends_json_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=request.content)

        client = _rest_client(handler)

        assert client.put("/D1/balance/", 40.5) == 40.5
        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/D1/balance.json"
        assert "auth" not in seen[0].url.params

    def test_missing_node_is_none(self):
        client = _rest_client(lambda request: httpx.Response(200, content=b"null"))
        assert client.get("D404") is None

    def test_http_error_is_classified(self):
        client = _rest_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(ExternalServiceError, match="500"):
            client.get("D1")

    def test_timeout_is_classified(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = _rest_client(handler)
        with pytest.raises(ExternalServiceError):
            client.post("D1/commands", {"type": "dispense"})

    def test_requires_url(self):
        with pytest.raises(ValueError):
            FirebaseRestClient("")

    def test_factory(self):
        assert isinstance(build_telemetry_client({}), NullTelemetryClient)
        assert isinstance(build_telemetry_client({"FIREBASE_DB_URL": DB_URL}), FirebaseRestClient)


# =============================================================================
# BRIDGE
# =============================================================================


class TestTelemetryBridge:
    def test_fetch_device_merges_defaults(self, telemetry):
        telemetry.data["D1"] = {"balance": 30}
        bridge = TelemetryBridge(telemetry)

        payload = bridge.fetch_device("D1")

        assert payload == {"info": {"status": "active"}, "balance": 30, "containers": {}}

    def test_reads_fall_back_when_unreachable(self, telemetry):
        telemetry.fail = True
        bridge = TelemetryBridge(telemetry)

        assert bridge.try_fetch_device("D1") is None
        assert bridge.device_status("D1") == "active"
        assert bridge.fetch_containers("D1") == {}
        assert bridge.fetch_balance("D1") == Decimal("0")

    def test_non_numeric_balance_reads_as_zero(self, telemetry):
        telemetry.data["D1"] = {"balance": "lots"}
        assert TelemetryBridge(telemetry).fetch_balance("D1") == Decimal("0")

    def test_mirror_balance_applies_delta(self, telemetry):
        telemetry.data["D1"] = {"balance": 10}
        bridge = TelemetryBridge(telemetry)

        assert bridge.mirror_balance("D1", Decimal("5.50")) is True
        assert telemetry.data["D1"]["balance"] == pytest.approx(15.5)

    def test_writes_report_false_when_unreachable(self, telemetry):
        telemetry.fail = True
        bridge = TelemetryBridge(telemetry)

        assert bridge.mirror_balance("D1", Decimal("1")) is False
        assert bridge.register_device("D1", {"name": "X"}) is False
        assert bridge.push_dispense_command("D1", {"session_id": "s"}) is False

    def test_push_dispense_command(self, telemetry):
        bridge = TelemetryBridge(telemetry)

        assert bridge.push_dispense_command("D1", {"session_id": "s1", "volume": 500}) is True

        commands = list(telemetry.data["D1"]["commands"].values())
        assert commands[0]["type"] == "dispense"
        assert commands[0]["session_id"] == "s1"
        assert commands[0]["issued_at"].endswith("Z")

    def test_unconfigured_bridge(self):
        bridge = TelemetryBridge(NullTelemetryClient())

        assert bridge.configured is False
        assert bridge.fetch_device("D1")["info"]["status"] == "active"
        assert bridge.push_dispense_command("D1", {}) is False


class TestDeviceStatus:
    def test_inactive_only_when_reported(self, telemetry):
        telemetry.data["D1"] = {"info": {"status": "maintenance"}}
        telemetry.data["D2"] = {"info": {"name": "No status"}}
        status = TelemetryDeviceStatus(TelemetryBridge(telemetry))

        assert status.is_active("D1") is False
        assert status.is_active("D2") is True
        assert status.is_active("D3") is True

    def test_unreachable_store_means_active(self, telemetry):
        telemetry.fail = True
        assert TelemetryDeviceStatus(TelemetryBridge(telemetry)).is_active("D1") is True


@pytest.mark.parametrize(
    "key,expected",
    [("tank1", 1), ("tank7", 7), ("tank12", 12), ("tank", None), ("tankX", None), ("pump1", None), (3, None)],
)
def test_parse_tank_key(key, expected):
    assert parse_tank_key(key) == expected
