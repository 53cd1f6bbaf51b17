"""
Device registry tests.

Verifies:
- Registration creates the device, a zero balance and seven default tanks
- Duplicate registration is a 409 and creates nothing
- Only name/location are writable on a device
- Tank updates and telemetry sync
"""

from datetime import date
from decimal import Decimal

import pytest

from ecotrend.errors import ConflictError, PersistenceError, ValidationError
from ecotrend.extensions import db
from ecotrend.models import Balance, Chemical, Device
from ecotrend.services import balance_service, device_service


# =============================================================================
# REGISTRATION
# =============================================================================


class TestRegistration:
    def test_register_creates_aggregate(self, client, db_session, telemetry):
        resp = client.post("/api/devices/register", json={
            "device_id": "AA:BB:CC:DD:EE:FF",
            "name": "Station 1",
            "location": "Abay 10",
        })

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["success"] is True
        assert body["data"]["device_id"] == "AA:BB:CC:DD:EE:FF"

        chemicals = device_service.list_chemicals("AA:BB:CC:DD:EE:FF")
        assert [c.tank_number for c in chemicals] == [1, 2, 3, 4, 5, 6, 7]
        assert chemicals[0].name == "Default Chemical 1"
        assert chemicals[0].price_per_liter == Decimal("100.00")
        assert balance_service.get_balance("AA:BB:CC:DD:EE:FF") == Decimal("0.00")
        assert telemetry.data["AA:BB:CC:DD:EE:FF"]["info"]["status"] == "active"

    def test_duplicate_registration_is_conflict(self, client, device):
        resp = client.post("/api/devices/register", json={"device_id": "D1", "name": "Again"})

        assert resp.status_code == 409
        assert resp.get_json()["success"] is False
        assert db.session.query(Device).count() == 1
        assert db.session.query(Balance).count() == 1
        assert db.session.query(Chemical).count() == 7

    def test_register_into_empty_database(self, db_session):
        device = device_service.register_device("D7", "First Station")

        assert device.device_id == "D7"
        assert db.session.query(Balance).filter_by(device_id="D7").count() == 1
        assert db.session.query(Chemical).filter_by(device_id="D7").count() == 7

    def test_constraint_failure_is_not_reported_as_duplicate(self, app, db_session, monkeypatch):
        # tank 8 violates the tank-number CHECK, not the device primary key
        monkeypatch.setitem(app.config, "DEFAULT_TANK_COUNT", 8)

        with pytest.raises(PersistenceError):
            device_service.register_device("D8", "Eight Tanks")

        assert db.session.query(Device).count() == 0
        assert db.session.query(Chemical).count() == 0

    def test_duplicate_registration_in_service(self, device):
        with pytest.raises(ConflictError):
            device_service.register_device("D1", "Again")

    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "No id"},
            {"device_id": "", "name": "Empty id"},
            {"device_id": 42, "name": "Numeric id"},
            {"device_id": "X" * 129, "name": "Too long"},
            {"device_id": "D9"},
            {"device_id": "D9", "name": "   "},
        ],
    )
    def test_invalid_registration(self, client, db_session, payload):
        resp = client.post("/api/devices/register", json=payload)
        assert resp.status_code == 400
        assert db.session.query(Device).count() == 0

    def test_registration_survives_telemetry_outage(self, db_session, telemetry):
        telemetry.fail = True
        device = device_service.register_device("D5", "Offline Station")
        assert device.device_id == "D5"
        assert db.session.query(Chemical).filter_by(device_id="D5").count() == 7


# =============================================================================
# DEVICE READS / UPDATES
# =============================================================================


class TestDeviceEndpoints:
    def test_get_device_includes_tanks(self, client, device):
        body = client.get("/api/devices/D1").get_json()
        assert body["data"]["name"] == "Test Station"
        assert len(body["data"]["chemicals"]) == 7

    def test_get_unknown_device(self, client, db_session):
        resp = client.get("/api/devices/NOPE")
        assert resp.status_code == 404
        assert resp.get_json() == {"success": False, "message": "Device not found"}

    def test_list_devices(self, client, device):
        device_service.register_device("D2", "Second")
        body = client.get("/api/devices?limit=10").get_json()
        assert {d["device_id"] for d in body["data"]} == {"D1", "D2"}

    def test_update_only_writes_name_and_location(self, client, device):
        resp = client.put("/api/devices/D1", json={
            "name": "Renamed",
            "location": "Dostyk 5",
            "device_id": "HIJACK",
            "created_at": "2000-01-01",
        })

        assert resp.status_code == 200
        updated = device_service.get_device("D1")
        assert updated.name == "Renamed"
        assert updated.location == "Dostyk 5"
        assert device_service.get_device("HIJACK") is None

    def test_update_rejects_blank_name(self, device):
        with pytest.raises(ValidationError):
            device_service.update_device("D1", {"name": ""})


# =============================================================================
# CHEMICALS
# =============================================================================


class TestChemicals:
    def test_update_chemical(self, client, device):
        resp = client.put("/api/devices/D1/chemicals/2", json={
            "name": "Glass Cleaner",
            "price_per_liter": "120.50",
            "batch_number": "B-2025-04",
            "expiration_date": "2026-01-10",
        })

        assert resp.status_code == 200
        chemical = device_service.find_chemical("D1", 2)
        assert chemical.name == "Glass Cleaner"
        assert chemical.price_per_liter == Decimal("120.50")
        assert chemical.batch_number == "B-2025-04"
        assert chemical.expiration_date == date(2026, 1, 10)

    @pytest.mark.parametrize(
        "tank,payload,status",
        [
            ("9", {"name": "X"}, 400),
            ("abc", {"name": "X"}, 400),
            ("1", {"price_per_liter": -1}, 400),
            ("1", {"price_per_liter": "cheap"}, 400),
            ("1", {"expiration_date": "10/01/2026"}, 400),
        ],
    )
    def test_update_chemical_validation(self, client, device, tank, payload, status):
        resp = client.put(f"/api/devices/D1/chemicals/{tank}", json=payload)
        assert resp.status_code == status

    def test_rejected_update_changes_nothing(self, client, device):
        resp = client.put("/api/devices/D1/chemicals/3", json={"name": "Renamed", "price_per_liter": "cheap"})

        assert resp.status_code == 400
        assert device_service.find_chemical("D1", 3).name == "Default Chemical 3"

    def test_update_missing_tank(self, client, device):
        db.session.delete(device_service.find_chemical("D1", 4))
        db.session.commit()
        resp = client.put("/api/devices/D1/chemicals/4", json={"name": "X"})
        assert resp.status_code == 404

    def test_list_chemicals_ordered(self, client, device):
        body = client.get("/api/devices/D1/chemicals").get_json()
        assert [c["tank_number"] for c in body["data"]] == [1, 2, 3, 4, 5, 6, 7]


# =============================================================================
# TELEMETRY SYNC
# =============================================================================


class TestTelemetrySync:
    def test_sync_updates_tanks_and_balance(self, client, device, telemetry):
        telemetry.data["D1"]["balance"] = 250
        telemetry.data["D1"]["containers"] = {
            "tank1": {"name": "Glass Cleaner", "price": 150, "batch_number": "B1", "expiration_date": "2026-01-01"},
            "tank9": {"name": "Out of range", "price": 10},
            "bogus": {"name": "Not a tank", "price": 10},
            "tank3": "not a dict",
        }

        resp = client.post("/api/devices/D1/sync")

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["synced"] is True
        assert data["synced_tanks"] == [1]
        assert data["balance"] == 250.0

        chemical = device_service.find_chemical("D1", 1)
        assert chemical.name == "Glass Cleaner"
        assert chemical.price_per_liter == Decimal("150.00")
        assert chemical.expiration_date == date(2026, 1, 1)
        assert balance_service.get_balance("D1") == Decimal("250.00")

    def test_sync_partial_container_keeps_other_fields(self, device, telemetry):
        telemetry.data["D1"]["containers"] = {"tank2": {"price": 80}}

        device_service.sync_device_from_telemetry("D1")

        chemical = device_service.find_chemical("D1", 2)
        assert chemical.name == "Default Chemical 2"
        assert chemical.price_per_liter == Decimal("80.00")

    def test_sync_without_mirror_writes_nothing(self, device, telemetry):
        balance_service.increase_balance("D1", 40)
        telemetry.fail = True

        result = device_service.sync_device_from_telemetry("D1")

        assert result["synced"] is False
        assert result["telemetry_data"]["info"]["status"] == "active"
        assert balance_service.get_balance("D1") == Decimal("40.00")

    def test_rejected_container_is_not_partially_written(self, device, telemetry):
        telemetry.data["D1"]["containers"] = {
            "tank2": {"name": "Renamed", "price": "abc"},
            "tank1": {"price": 90},
        }

        result = device_service.sync_device_from_telemetry("D1")

        assert result["synced_tanks"] == [1]
        chemical = device_service.find_chemical("D1", 2)
        assert chemical.name == "Default Chemical 2"
        assert chemical.price_per_liter == Decimal("100.00")

    def test_rejected_new_tank_is_not_created(self, client, device, telemetry):
        db.session.delete(device_service.find_chemical("D1", 5))
        db.session.commit()
        telemetry.data["D1"]["containers"] = {
            "tank5": {"name": "Brand New", "price": "abc"},
            "tank6": {"name": "Only a name"},
        }

        resp = client.post("/api/devices/D1/sync")

        assert resp.status_code == 200
        assert resp.get_json()["data"]["synced_tanks"] == [6]
        assert device_service.find_chemical("D1", 5) is None
        assert device_service.find_chemical("D1", 6).name == "Only a name"
