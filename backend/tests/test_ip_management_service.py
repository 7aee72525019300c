from datetime import timedelta

import pytest

from netinventory.core.exceptions import InventoryValidationError, SubnetNotFoundError
from netinventory.db.models import (
    DeviceHistory,
    DiscoveredService,
    IpReservation,
    NetworkDevice,
    ScanSession,
    ScanStatus,
    utcnow,
)
from netinventory.schemas import schemas
from netinventory.services.inventory_sync_service import InventorySyncService
from netinventory.services import ip_management_service, mac_vendor
from netinventory.services.ip_management_service import IpManagementService
from netinventory.services.mac_vendor import MacVendorLookup, normalize_mac


class StaticVendorLookup:
    def __init__(self, vendor="Acme Networks"):
        self.vendor = vendor
        self.calls = []

    def lookup(self, mac):
        self.calls.append(mac)
        return self.vendor if mac else None


@pytest.fixture
def service(db_session):
    return IpManagementService(db_session, vendor_lookup=StaticVendorLookup())


def observe(ip, **kwargs):
    return schemas.DeviceObservation(ip_address=ip, **kwargs)


class TestSubnets:
    """Test cases for subnet management."""

    def test_create_normalizes_network(self, service):
        subnet = service.create_subnet(schemas.SubnetCreate(network="10.0.0.5/30", gateway="10.0.0.5"))
        assert subnet.network == "10.0.0.4/30"
        assert service.find_subnet_by_network("10.0.0.6/30").id == subnet.id

    def test_duplicate_network_rejected(self, service, home_subnet):
        with pytest.raises(InventoryValidationError, match="already exists"):
            service.create_subnet(schemas.SubnetCreate(network="192.168.1.0/24", gateway="192.168.1.1"))

    @pytest.mark.parametrize("fields", [
        {"network": "10.0.0.0/24", "gateway": "10.0.1.1"},
        {"network": "10.0.0.0/24", "gateway": "10.0.0.1", "dhcp_start": "10.0.0.100"},
        {"network": "10.0.0.0/24", "gateway": "10.0.0.1", "dhcp_start": "10.0.0.200", "dhcp_end": "10.0.0.100"},
        {"network": "10.0.0.0/24", "gateway": "10.0.0.1", "dhcp_start": "10.0.0.100", "dhcp_end": "10.0.1.10"},
        {"network": "10.0.0.0/33", "gateway": "10.0.0.1"},
    ])
    def test_invalid_subnets_rejected(self, service, fields):
        with pytest.raises(InventoryValidationError):
            service.create_subnet(schemas.SubnetCreate(**fields))

    def test_list_sorted_numerically(self, service):
        for network, gateway in (("10.0.10.0/24", "10.0.10.1"), ("10.0.9.0/24", "10.0.9.1")):
            service.create_subnet(schemas.SubnetCreate(network=network, gateway=gateway))
        assert [s.network for s in service.list_subnets()] == ["10.0.9.0/24", "10.0.10.0/24"]

    def test_update_validates_against_network(self, service, home_subnet):
        updated = service.update_subnet(home_subnet.id, schemas.SubnetUpdate(description="Upstairs"))
        assert updated.description == "Upstairs"
        assert updated.gateway == "192.168.1.1"

        with pytest.raises(InventoryValidationError):
            service.update_subnet(home_subnet.id, schemas.SubnetUpdate(gateway="10.9.9.9"))
        assert service.update_subnet(999, schemas.SubnetUpdate(description="x")) is None

    def test_delete_unassigns_devices_and_drops_reservations(self, service, db_session, home_subnet):
        device = service.reconcile_device(observe("192.168.1.10"))
        service.create_reservation(schemas.IpReservationCreate(ip_address="192.168.1.20", description="Printer"))

        subnet_id = home_subnet.id
        device_id = device.id

        assert service.delete_subnet(subnet_id) is True
        db_session.expire_all()

        assert service.get_device(device_id).subnet_id is None
        assert db_session.query(IpReservation).count() == 0
        assert service.delete_subnet(subnet_id) is False


class TestAvailability:
    """Test cases for free address calculation."""

    def test_slash_30_with_gateway(self, service):
        """Test that a /30 has one free address once the gateway is taken."""
        subnet = service.create_subnet(schemas.SubnetCreate(network="10.0.0.0/30", gateway="10.0.0.1"))
        assert service.get_available(subnet.id, avoid_dhcp=False) == ["10.0.0.2"]

    def test_exclusions(self, service, home_subnet):
        """Test gateway, DHCP pool, devices and active reservations are all excluded."""
        service.reconcile_device(observe("192.168.1.10"))
        service.create_reservation(schemas.IpReservationCreate(ip_address="192.168.1.20", description="NAS"))
        service.create_reservation(schemas.IpReservationCreate(
            ip_address="192.168.1.21",
            description="Old camera",
            expires_at=utcnow() - timedelta(days=1),
        ))
        service.create_reservation(schemas.IpReservationCreate(
            ip_address="192.168.1.22", description="Retired", is_active=False
        ))

        available = service.get_available(home_subnet.id)
        assert len(available) == 254 - 1 - 100 - 2
        for taken in ("192.168.1.1", "192.168.1.10", "192.168.1.20", "192.168.1.150"):
            assert taken not in available
        assert "192.168.1.21" in available
        assert "192.168.1.22" in available
        assert len(service.get_available(home_subnet.id, avoid_dhcp=False)) == 254 - 1 - 2

    def test_available_is_ascending(self, service, home_subnet):
        available = service.get_available(home_subnet.id)
        assert available[:3] == ["192.168.1.2", "192.168.1.3", "192.168.1.4"]
        assert available[-1] == "192.168.1.254"

    def test_next_available(self, service, home_subnet):
        assert service.find_next_available(home_subnet.id) == "192.168.1.2"
        service.reconcile_device(observe("192.168.1.2"))
        assert service.find_next_available(home_subnet.id) == "192.168.1.3"

    def test_next_available_when_full(self, service):
        subnet = service.create_subnet(schemas.SubnetCreate(network="10.0.0.0/30", gateway="10.0.0.1"))
        service.reconcile_device(observe("10.0.0.2"))
        assert service.find_next_available(subnet.id, avoid_dhcp=False) is None

    def test_unknown_subnet(self, service):
        with pytest.raises(SubnetNotFoundError):
            service.get_available(999)
        with pytest.raises(SubnetNotFoundError):
            service.find_next_available(999)

    def test_is_available(self, service, home_subnet):
        service.reconcile_device(observe("192.168.1.10"))
        service.create_reservation(schemas.IpReservationCreate(ip_address="192.168.1.20", description="NAS"))

        assert service.is_available("192.168.1.10") is False
        assert service.is_available("192.168.1.20") is False
        assert service.is_available("192.168.1.30") is True
        assert service.is_available("192.168.1.10", subnet_id=home_subnet.id + 1) is True

    def test_subnet_summary(self, service, home_subnet):
        """Test that an address held by a device and a reservation is counted once."""
        service.reconcile_device(observe("192.168.1.10"))
        service.reconcile_device(observe("192.168.1.11", status="offline"))
        service.create_reservation(schemas.IpReservationCreate(ip_address="192.168.1.10", description="Desk PC"))
        service.create_reservation(schemas.IpReservationCreate(ip_address="192.168.1.20", description="NAS"))

        summary = service.get_subnet_summary(home_subnet.id)
        assert summary["total_addresses"] == 254
        assert summary["used_addresses"] == 4
        assert summary["available_addresses"] == 250
        assert summary["online_devices"] == 1
        assert summary["offline_devices"] == 1
        assert summary["reserved_addresses"] == 2
        assert summary["dhcp_range_size"] == 100
        assert summary["usage_percentage"] == pytest.approx(4 / 254 * 100)

    def test_subnet_summary_describes_network(self, service, home_subnet):
        summary = service.get_subnet_summary(home_subnet.id)
        assert summary["network_address"] == "192.168.1.0"
        assert summary["broadcast_address"] == "192.168.1.255"
        assert summary["subnet_mask"] == "255.255.255.0"
        assert summary["prefix_length"] == 24


class TestReconcileDevice:
    """Test cases for device deduplication and history."""

    def test_first_sighting(self, service, home_subnet):
        device = service.reconcile_device(observe(
            "192.168.1.10", mac_address="aa-bb-cc-dd-ee-ff", hostname="desk", open_ports=[443, 22, 443]
        ))

        assert device.mac_address == "AA:BB:CC:DD:EE:FF"
        assert device.vendor == "Acme Networks"
        assert device.subnet_id == home_subnet.id
        assert device.open_ports == [22, 443]
        history = service.get_device_history(device.id)
        assert [h.event_type for h in history] == ["first_seen"]
        assert history[0].new_value == "192.168.1.10"

    def test_identical_observation_adds_no_history(self, service, db_session):
        first = service.reconcile_device(observe("10.0.0.5", mac_address="AA:BB:CC:00:00:01", hostname="nas"))
        first_seen_at = first.last_seen
        second = service.reconcile_device(observe("10.0.0.5", mac_address="AA:BB:CC:00:00:01", hostname="nas"))

        assert second.id == first.id
        assert second.last_seen >= first_seen_at
        assert db_session.query(NetworkDevice).count() == 1
        assert db_session.query(DeviceHistory).count() == 1

    def test_hostname_change(self, service):
        device = service.reconcile_device(observe("10.0.0.5", hostname="nas"))
        service.reconcile_device(observe("10.0.0.5", hostname="nas-2"))

        history = service.get_device_history(device.id)
        assert [h.event_type for h in history] == ["updated", "hostname_change", "first_seen"]
        change = history[1]
        assert change.previous_value == "nas"
        assert change.new_value == "nas-2"
        assert change.hostname == "nas"
        assert history[0].details == "Changed: hostname"
        assert service.get_device(device.id).hostname == "nas-2"

    def test_missing_hostname_is_not_a_change(self, service):
        device = service.reconcile_device(observe("10.0.0.5", hostname="nas"))
        service.reconcile_device(observe("10.0.0.5"))
        assert len(service.get_device_history(device.id)) == 1
        assert service.get_device(device.id).hostname == "nas"

    def test_ip_change_found_by_mac(self, service, home_subnet):
        device = service.reconcile_device(observe("10.0.0.5", mac_address="AA:BB:CC:00:00:01"))
        assert device.subnet_id is None

        moved = service.reconcile_device(observe("192.168.1.50", mac_address="AA:BB:CC:00:00:01", status="offline"))

        assert moved.id == device.id
        assert moved.ip_address == "192.168.1.50"
        assert moved.status == "offline"
        assert moved.subnet_id == home_subnet.id
        events = [h.event_type for h in service.get_device_history(device.id)]
        assert sorted(events) == ["first_seen", "ip_change", "status_change", "updated"]

    def test_mac_match_wins_over_ip_match(self, service):
        """Test that an observation matching two devices updates the MAC owner."""
        by_mac = service.reconcile_device(observe("10.0.0.10", mac_address="AA:BB:CC:00:00:01"))
        by_ip = service.reconcile_device(observe("10.0.0.20"))

        updated = service.reconcile_device(observe("10.0.0.20", mac_address="AA:BB:CC:00:00:01"))

        assert updated.id == by_mac.id
        assert updated.ip_address == "10.0.0.20"
        assert service.get_device(by_ip.id).mac_address is None

    def test_ip_match_learns_mac(self, service):
        device = service.reconcile_device(observe("10.0.0.5"))
        updated = service.reconcile_device(observe("10.0.0.5", mac_address="AA:BB:CC:00:00:09"))

        assert updated.id == device.id
        assert updated.mac_address == "AA:BB:CC:00:00:09"
        assert service.get_device_history(device.id)[1].event_type == "mac_change"

    def test_mac_and_ip_observations_share_one_lock(self, service, monkeypatch):
        """Test that sightings of one device by IP and by MAC are serialized together."""
        class RecordingLock:
            def __init__(self):
                self.held = False
                self.acquired = 0

            def __enter__(self):
                assert not self.held
                self.held = True
                self.acquired += 1

            def __exit__(self, *exc):
                self.held = False

        lock = RecordingLock()
        monkeypatch.setattr(ip_management_service, "_reconcile_lock", lock)

        device = service.reconcile_device(observe("10.0.0.5"))
        same = service.reconcile_device(observe("10.0.0.5", mac_address="AA:BB:CC:00:00:09"))
        again = service.reconcile_device(observe("10.0.0.6", mac_address="AA:BB:CC:00:00:09"))

        assert device.id == same.id == again.id
        assert lock.acquired == 3

    @pytest.mark.parametrize("fields", [
        {"ip_address": "10.0.0"},
        {"ip_address": "10.0.0.5", "mac_address": "not-a-mac"},
        {"ip_address": "10.0.0.5", "subnet_id": 999},
    ])
    def test_invalid_observations(self, service, db_session, fields):
        with pytest.raises(InventoryValidationError):
            service.reconcile_device(schemas.DeviceObservation(**fields))
        assert db_session.query(NetworkDevice).count() == 0

    def test_lookups(self, service):
        device = service.reconcile_device(observe("10.0.0.5", mac_address="AA:BB:CC:00:00:01"))
        assert service.get_device_by_ip("10.0.0.5").id == device.id
        assert service.get_device_by_mac("aa:bb:cc:00:00:01").id == device.id
        assert service.get_device_by_mac("garbage") is None

    def test_delete_device_keeps_reservation(self, service, db_session):
        device = service.reconcile_device(observe("10.0.0.5"))
        reservation = service.create_reservation(schemas.IpReservationCreate(
            ip_address="10.0.0.5", description="Pinned", device_id=device.id
        ))

        assert service.delete_device(device.id) is True
        db_session.expire_all()
        assert service.get_reservation(reservation.id).device_id is None
        assert db_session.query(DeviceHistory).count() == 0


class TestConflicts:
    """Test cases for duplicate address detection."""

    def test_devices_sharing_an_address(self, service, db_session, home_subnet):
        for mac in ("AA:BB:CC:00:00:01", "AA:BB:CC:00:00:02"):
            db_session.add(NetworkDevice(ip_address="192.168.1.5", mac_address=mac, subnet_id=home_subnet.id))
        db_session.add(NetworkDevice(ip_address="192.168.1.6", subnet_id=home_subnet.id))
        db_session.commit()

        conflicts = service.detect_conflicts(home_subnet.id)
        assert [d.mac_address for d in conflicts] == ["AA:BB:CC:00:00:01", "AA:BB:CC:00:00:02"]
        assert len(service.detect_conflicts()) == 2

    def test_no_conflicts(self, service):
        service.reconcile_device(observe("10.0.0.5"))
        assert service.detect_conflicts() == []


class TestReservations:
    """Test cases for reservation management."""

    def test_create_assigns_subnet(self, service, home_subnet):
        reservation = service.create_reservation(schemas.IpReservationCreate(
            ip_address="192.168.1.20", mac_address="aabbccddeeff", description="NAS"
        ))
        assert reservation.subnet_id == home_subnet.id
        assert reservation.mac_address == "AA:BB:CC:DD:EE:FF"

    def test_address_outside_given_subnet(self, service, home_subnet):
        with pytest.raises(InventoryValidationError, match="not inside"):
            service.create_reservation(schemas.IpReservationCreate(
                ip_address="10.0.0.20", description="NAS", subnet_id=home_subnet.id
            ))

    def test_one_active_reservation_per_address(self, service):
        first = service.create_reservation(schemas.IpReservationCreate(ip_address="10.0.0.20", description="NAS"))
        with pytest.raises(InventoryValidationError, match="active reservation"):
            service.create_reservation(schemas.IpReservationCreate(ip_address="10.0.0.20", description="Other"))

        service.update_reservation(first.id, schemas.IpReservationUpdate(is_active=False))
        second = service.create_reservation(schemas.IpReservationCreate(ip_address="10.0.0.20", description="Other"))
        assert second.id != first.id

    def test_reactivation_cannot_double_book(self, service, db_session):
        """Test that an update never leaves two active reservations on one address."""
        old = service.create_reservation(schemas.IpReservationCreate(
            ip_address="10.0.0.9", description="Old printer", is_active=False
        ))
        expired = service.create_reservation(schemas.IpReservationCreate(
            ip_address="10.0.0.9", description="Loaner", expires_at=utcnow() - timedelta(days=1)
        ))
        current = service.create_reservation(schemas.IpReservationCreate(ip_address="10.0.0.9", description="Printer"))

        with pytest.raises(InventoryValidationError, match="active reservation"):
            service.update_reservation(old.id, schemas.IpReservationUpdate(is_active=True))
        with pytest.raises(InventoryValidationError, match="active reservation"):
            service.update_reservation(expired.id, schemas.IpReservationUpdate(
                expires_at=utcnow() + timedelta(days=1)
            ))

        assert service.update_reservation(current.id, schemas.IpReservationUpdate(purpose="Office")).purpose == "Office"
        db_session.expire_all()
        active = [
            r for r in db_session.query(IpReservation).filter(IpReservation.ip_address == "10.0.0.9").all()
            if r.is_active and (r.expires_at is None or r.expires_at > utcnow())
        ]
        assert [r.id for r in active] == [current.id]

        service.update_reservation(current.id, schemas.IpReservationUpdate(is_active=False))
        assert service.update_reservation(old.id, schemas.IpReservationUpdate(is_active=True)).is_active is True

    def test_null_is_active_rejected(self, service):
        reservation = service.create_reservation(schemas.IpReservationCreate(ip_address="10.0.0.9", description="NAS"))
        with pytest.raises(InventoryValidationError, match="true or false"):
            service.update_reservation(reservation.id, schemas.IpReservationUpdate(is_active=None))

    def test_update_and_delete(self, service):
        reservation = service.create_reservation(schemas.IpReservationCreate(ip_address="10.0.0.20", description="NAS"))

        updated = service.update_reservation(reservation.id, schemas.IpReservationUpdate(
            mac_address="aa:bb:cc:dd:ee:01", assigned_to="ops"
        ))
        assert updated.mac_address == "AA:BB:CC:DD:EE:01"
        assert updated.assigned_to == "ops"
        assert updated.description == "NAS"

        with pytest.raises(InventoryValidationError):
            service.update_reservation(reservation.id, schemas.IpReservationUpdate(description=""))

        assert service.delete_reservation(reservation.id) is True
        assert service.get_reservation(reservation.id) is None
        assert service.delete_reservation(reservation.id) is False

    def test_list_by_subnet(self, service, home_subnet):
        service.create_reservation(schemas.IpReservationCreate(ip_address="192.168.1.30", description="B"))
        service.create_reservation(schemas.IpReservationCreate(ip_address="192.168.1.4", description="A"))
        service.create_reservation(schemas.IpReservationCreate(ip_address="10.0.0.4", description="C"))

        assert [r.ip_address for r in service.list_reservations(home_subnet.id)] == [
            "192.168.1.4", "192.168.1.30"
        ]
        assert len(service.list_reservations()) == 3


class TestInventorySync:
    """Test cases for feeding scan results into the inventory."""

    def _completed_session(self, db_session, status=ScanStatus.COMPLETED.value):
        session = ScanSession(target="10.0.0.0/29", status=status)
        db_session.add(session)
        db_session.flush()
        for host, name, port, latency in (
            ("10.0.0.1", "gw.lan", 80, 4.0),
            ("10.0.0.1", "gw.lan", 22, 2.5),
            ("10.0.0.3", "10.0.0.3", 9100, 7.0),
            ("printer", "printer", 631, 1.0),
        ):
            db_session.add(DiscoveredService(
                session_id=session.id,
                service_key=f"{host}:{port}",
                host_address=host,
                host_name=name,
                port=port,
                response_time_ms=latency,
            ))
        db_session.commit()
        return session

    def test_sync_creates_then_updates(self, db_session):
        session = self._completed_session(db_session)
        sync = InventorySyncService(db_session)

        assert sync.sync_session(session.id) == {
            "session_id": session.id, "hosts": 3, "devices_created": 2, "devices_updated": 0,
        }
        gateway = db_session.query(NetworkDevice).filter(NetworkDevice.ip_address == "10.0.0.1").one()
        assert gateway.hostname == "gw.lan"
        assert gateway.open_ports == [22, 80]
        assert gateway.last_response_time == 2.5
        assert gateway.source == "network_scan"
        assert db_session.query(NetworkDevice).filter(NetworkDevice.ip_address == "10.0.0.3").one().hostname is None

        assert sync.sync_session(session.id)["devices_updated"] == 2
        assert db_session.query(NetworkDevice).count() == 2

    def test_sync_requires_completed_session(self, db_session):
        session = self._completed_session(db_session, status=ScanStatus.RUNNING.value)
        with pytest.raises(InventoryValidationError):
            InventorySyncService(db_session).sync_session(session.id)

    def test_unknown_session(self, db_session):
        assert InventorySyncService(db_session).sync_session("missing") is None


class TestMacVendor:
    """Test cases for MAC normalisation and vendor lookup."""

    @pytest.mark.parametrize("raw", ["aa:bb:cc:dd:ee:ff", "AA-BB-CC-DD-EE-FF", "aabb.ccdd.eeff"])
    def test_normalize(self, raw):
        assert normalize_mac(raw) == "AA:BB:CC:DD:EE:FF"

    def test_normalize_blank_and_invalid(self):
        assert normalize_mac(None) is None
        assert normalize_mac("  ") is None
        with pytest.raises(ValueError):
            normalize_mac("AA:BB:CC")

    def test_disabled_lookup(self):
        assert MacVendorLookup(enabled=False).lookup("AA:BB:CC:DD:EE:FF") is None

    def test_lookup_failure_gives_none(self, monkeypatch):
        class BrokenMacLookup:
            def lookup(self, mac):
                raise KeyError(mac)

        monkeypatch.setattr(mac_vendor, "MacLookup", BrokenMacLookup)
        assert MacVendorLookup(enabled=True).lookup("AA:BB:CC:DD:EE:FF") is None

    def test_lookup(self, monkeypatch):
        class FakeMacLookup:
            def lookup(self, mac):
                return "Ubiquiti Inc"

        monkeypatch.setattr(mac_vendor, "MacLookup", FakeMacLookup)
        assert MacVendorLookup(enabled=True).lookup("24:5A:4C:00:00:01") == "Ubiquiti Inc"
