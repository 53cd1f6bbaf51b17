# Overview: Best-effort bridge to the realtime device mirror (Firebase RTDB).

"""
Telemetry Bridge

The realtime store mirrors what the physical device reports (status, tank
contents, balance) and carries commands back to it. The relational database
is the source of truth; this store is secondary.

RULES:
- Every bridge operation is best-effort. Failures are logged at WARNING and
  turned into a safe default (reads) or False (writes). Nothing raised here
  ever reaches a payment or registration caller.
- The HTTP client applies a bounded timeout; on expiry the fallback path is
  used instead of waiting.
- Callers invoke the bridge outside their database transaction (before the
  unit starts or after it commits).
- One bridge is built per app in create_app() and stored in
  app.extensions["telemetry"]; there is no module-level "initialized" flag.
"""

from __future__ import annotations

import copy
import logging
from decimal import Decimal
from typing import Any, Optional, Protocol

import httpx
from flask import current_app

from ..errors import ExternalServiceError
from ..money import to_decimal
from ..time_utils import to_utc_z, utcnow

STATUS_ACTIVE = "active"

DEFAULT_DEVICE_PAYLOAD = {
    "info": {"status": STATUS_ACTIVE},
    "balance": 0,
    "containers": {},
}


class TelemetryClient(Protocol):
    def get(self, path: str) -> Any: ...

    def put(self, path: str, value: Any) -> Any: ...

    def post(self, path: str, value: Any) -> Any: ...


class FirebaseRestClient:
    """Firebase Realtime Database over its REST API (<url>/<path>.json)."""

    def __init__(
        self,
        database_url: str,
        *,
        auth_token: str | None = None,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not database_url:
            raise ValueError("database_url is required for FirebaseRestClient")
        self.base_url = database_url.rstrip("/")
        self.auth_token = auth_token
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.strip('/')}.json"

    def _request(self, method: str, path: str, value: Any = None) -> Any:
        params = {"auth": self.auth_token} if self.auth_token else None
        try:
            if method == "GET":
                response = self._client.get(self._url(path), params=params)
            else:
                response = self._client.request(method, self._url(path), params=params, json=value)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"Telemetry store returned {exc.response.status_code} on {path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Telemetry store network error on {path}: {exc}") from exc

        if not response.content:
            return None
        return response.json()

    def get(self, path: str) -> Any:
        return self._request("GET", path)

    def put(self, path: str, value: Any) -> Any:
        return self._request("PUT", path, value)

    def post(self, path: str, value: Any) -> Any:
        return self._request("POST", path, value)

    def close(self) -> None:
        self._client.close()


class NullTelemetryClient:
    """Stands in when no realtime store is configured; every call fails fast."""

    def get(self, path: str) -> Any:
        raise ExternalServiceError("Telemetry store is not configured")

    def put(self, path: str, value: Any) -> Any:
        raise ExternalServiceError("Telemetry store is not configured")

    def post(self, path: str, value: Any) -> Any:
        raise ExternalServiceError("Telemetry store is not configured")


def build_telemetry_client(config) -> TelemetryClient:
    url = config.get("FIREBASE_DB_URL")
    if not url:
        return NullTelemetryClient()
    return FirebaseRestClient(
        url,
        auth_token=config.get("FIREBASE_AUTH_TOKEN"),
        timeout=float(config.get("TELEMETRY_TIMEOUT_SECONDS", 5)),
    )


class TelemetryBridge:
    def __init__(self, client: TelemetryClient, logger: logging.Logger | None = None) -> None:
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return not isinstance(self.client, NullTelemetryClient)

    def _warn(self, action: str, device_id: str, exc: Exception) -> None:
        self.logger.warning("Telemetry %s failed for device %s: %s", action, device_id, exc)

    # ------------------------------------------------------------------
    # Reads (safe defaults on failure)
    # ------------------------------------------------------------------

    def try_fetch_device(self, device_id: str) -> dict | None:
        """Raw mirror for a device, or None when it is missing or unreachable."""
        try:
            data = self.client.get(device_id)
        except Exception as exc:
            self._warn("fetch", device_id, exc)
            return None
        return data if isinstance(data, dict) else None

    def fetch_device(self, device_id: str) -> dict:
        """Full mirror for a device, merged over DEFAULT_DEVICE_PAYLOAD."""
        payload = copy.deepcopy(DEFAULT_DEVICE_PAYLOAD)
        data = self.try_fetch_device(device_id)
        if data is None:
            return payload

        payload.update(data)
        if not isinstance(payload.get("info"), dict):
            payload["info"] = {"status": STATUS_ACTIVE}
        payload["info"].setdefault("status", STATUS_ACTIVE)
        if not isinstance(payload.get("containers"), dict):
            payload["containers"] = {}
        return payload

    def device_status(self, device_id: str) -> str:
        return str(self.fetch_device(device_id)["info"]["status"])

    def fetch_containers(self, device_id: str) -> dict:
        return self.fetch_device(device_id)["containers"]

    def fetch_balance(self, device_id: str) -> Decimal:
        raw = self.fetch_device(device_id).get("balance")
        try:
            return to_decimal(raw if raw is not None else 0)
        except ValueError:
            self.logger.warning("Telemetry balance for device %s is not numeric: %r", device_id, raw)
            return Decimal("0")

    # ------------------------------------------------------------------
    # Writes (False on failure)
    # ------------------------------------------------------------------

    def mirror_balance(self, device_id: str, delta: Decimal) -> bool:
        """Apply delta to the mirrored balance (read-modify-write)."""
        try:
            current = self.client.get(f"{device_id}/balance")
            current_value = to_decimal(current) if current is not None else Decimal("0")
            new_value = current_value + Decimal(delta)
            self.client.put(f"{device_id}/balance", float(new_value))
        except Exception as exc:
            self._warn("balance mirror", device_id, exc)
            return False
        self.logger.info("Telemetry balance for device %s: %s -> %s", device_id, current_value, new_value)
        return True

    def register_device(self, device_id: str, info: dict) -> bool:
        try:
            self.client.put(f"{device_id}/info", info)
        except Exception as exc:
            self._warn("registration", device_id, exc)
            return False
        return True

    def push_dispense_command(self, device_id: str, command: dict) -> bool:
        """Queue a dispense command for the device to pick up."""
        body = dict(command)
        body.setdefault("type", "dispense")
        body.setdefault("issued_at", to_utc_z(utcnow()))
        try:
            self.client.post(f"{device_id}/commands", body)
        except Exception as exc:
            self._warn("dispense command", device_id, exc)
            return False
        self.logger.info("Dispense command queued for device %s: %s", device_id, body)
        return True


# =============================================================================
# DEVICE STATUS PREDICATE
# =============================================================================

class DeviceStatusPredicate(Protocol):
    def is_active(self, device_id: str) -> bool: ...


class TelemetryDeviceStatus:
    """Device is active unless the mirror explicitly reports otherwise."""

    def __init__(self, bridge: TelemetryBridge) -> None:
        self.bridge = bridge

    def is_active(self, device_id: str) -> bool:
        return self.bridge.device_status(device_id) == STATUS_ACTIVE


def get_telemetry() -> TelemetryBridge:
    return current_app.extensions["telemetry"]


def get_device_status() -> DeviceStatusPredicate:
    return current_app.extensions["device_status"]


def parse_tank_key(key: str) -> Optional[int]:
    """'tank3' -> 3; anything else -> None."""
    if not isinstance(key, str) or not key.startswith("tank"):
        return None
    suffix = key[len("tank"):]
    return int(suffix) if suffix.isdigit() else None
