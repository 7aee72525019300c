"""
IP Management Service

Owns the address-space side of the inventory: subnets, reservations and the
deduplicated device records. Devices are only ever created or changed through
``reconcile_device``, which records every semantic change in device history
before applying it.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from netinventory.core.exceptions import InventoryValidationError, SubnetNotFoundError
from netinventory.db.models import (
    DeviceHistory,
    DeviceHistoryEventType,
    DeviceStatus,
    DeviceType,
    IpReservation,
    NetworkDevice,
    Subnet,
    utcnow,
)
from netinventory.schemas import schemas
from netinventory.services.ip_trie import IPTrie
from netinventory.services.mac_vendor import MacVendorLookup, mac_vendor_lookup, normalize_mac
from netinventory.services.subnet_calculator import SubnetCalculator

logger = logging.getLogger(__name__)


# Serializes every find-then-write reconciliation cycle in this process; one
# device can be matched by MAC in one observation and by IP in the next.
_reconcile_lock = threading.Lock()


class IpManagementService:
    """Subnets, reservations, device reconciliation and address availability"""

    def __init__(self, db: Session, vendor_lookup: Optional[MacVendorLookup] = None):
        self.db = db
        self.vendor_lookup = vendor_lookup or mac_vendor_lookup

    # ------------------------------------------------------------------
    # Subnets

    def create_subnet(self, data: schemas.SubnetCreate) -> Subnet:
        network = self._validate_network(data.network)
        if self.find_subnet_by_network(network):
            raise InventoryValidationError(f"Subnet {network} already exists")

        self._validate_subnet_addresses(network, data.gateway, data.dhcp_start, data.dhcp_end)

        now = utcnow()
        subnet = Subnet(
            network=network,
            gateway=data.gateway.strip(),
            dhcp_start=data.dhcp_start,
            dhcp_end=data.dhcp_end,
            dns_servers=data.dns_servers,
            vlan_id=data.vlan_id,
            description=data.description,
            location=data.location,
            is_monitored=data.is_monitored,
            created_at=now,
            updated_at=now,
        )
        self.db.add(subnet)
        self.db.commit()
        self.db.refresh(subnet)
        logger.info("Created subnet %s (id=%s)", subnet.network, subnet.id)
        return subnet

    def get_subnet(self, subnet_id: int) -> Optional[Subnet]:
        return self.db.get(Subnet, subnet_id)

    def list_subnets(self) -> List[Subnet]:
        subnets = self.db.query(Subnet).all()
        return sorted(subnets, key=lambda s: self._network_sort_key(s.network))

    def find_subnet_by_network(self, cidr: str) -> Optional[Subnet]:
        try:
            network = SubnetCalculator.normalize_cidr(cidr)
        except ValueError:
            return None
        return self.db.query(Subnet).filter(Subnet.network == network).first()

    def update_subnet(self, subnet_id: int, data: schemas.SubnetUpdate) -> Optional[Subnet]:
        subnet = self.get_subnet(subnet_id)
        if not subnet:
            return None

        changes = data.model_dump(exclude_unset=True)
        gateway = changes.get("gateway", subnet.gateway)
        dhcp_start = changes.get("dhcp_start", subnet.dhcp_start)
        dhcp_end = changes.get("dhcp_end", subnet.dhcp_end)
        self._validate_subnet_addresses(subnet.network, gateway, dhcp_start, dhcp_end)

        for field, value in changes.items():
            setattr(subnet, field, value)
        subnet.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(subnet)
        return subnet

    def delete_subnet(self, subnet_id: int) -> bool:
        """Delete a subnet and its reservations; its devices stay in the inventory unassigned."""
        subnet = self.get_subnet(subnet_id)
        if not subnet:
            return False

        self.db.query(NetworkDevice).filter(NetworkDevice.subnet_id == subnet_id).update(
            {NetworkDevice.subnet_id: None}, synchronize_session=False
        )
        network = subnet.network
        self.db.delete(subnet)
        self.db.commit()
        logger.info("Deleted subnet %s (id=%s)", network, subnet_id)
        return True

    def _validate_network(self, cidr: str) -> str:
        try:
            return SubnetCalculator.normalize_cidr(cidr)
        except ValueError as e:
            raise InventoryValidationError(f"Invalid network '{cidr}': {e}")

    def _validate_subnet_addresses(
        self,
        network: str,
        gateway: Optional[str],
        dhcp_start: Optional[str],
        dhcp_end: Optional[str],
    ) -> None:
        if not gateway or not SubnetCalculator.contains(network, gateway.strip()):
            raise InventoryValidationError(f"Gateway '{gateway}' is not an IPv4 address inside {network}")

        if bool(dhcp_start) != bool(dhcp_end):
            raise InventoryValidationError("DHCP start and end must be given together")
        if dhcp_start and dhcp_end:
            for label, value in (("start", dhcp_start), ("end", dhcp_end)):
                if not SubnetCalculator.contains(network, value):
                    raise InventoryValidationError(
                        f"DHCP {label} '{value}' is not an IPv4 address inside {network}"
                    )
            if SubnetCalculator.ip_to_int(dhcp_start) > SubnetCalculator.ip_to_int(dhcp_end):
                raise InventoryValidationError("DHCP start must not be after DHCP end")

    @staticmethod
    def _network_sort_key(network: str) -> Tuple[int, int]:
        try:
            return SubnetCalculator.parse_cidr(network)
        except ValueError:
            return (0, 0)

    # ------------------------------------------------------------------
    # Devices

    def reconcile_device(self, observation: schemas.DeviceObservation) -> NetworkDevice:
        """
        Create or update the device an observation describes.

        Identity is looked up by MAC first, then by IP. Every changed field
        (IP, MAC, hostname, status) gets its own history row holding the
        pre-change snapshot, followed by one generic ``updated`` row. A
        repeated identical observation only refreshes ``last_seen``.
        """
        ip = (observation.ip_address or "").strip()
        if not SubnetCalculator.is_ipv4(ip):
            raise InventoryValidationError(f"'{observation.ip_address}' is not a valid IPv4 address")
        try:
            mac = normalize_mac(observation.mac_address)
        except ValueError as e:
            raise InventoryValidationError(str(e))

        if observation.subnet_id is not None and not self.get_subnet(observation.subnet_id):
            raise InventoryValidationError(f"Subnet {observation.subnet_id} does not exist")

        with _reconcile_lock:
            try:
                device = self._find_device(ip, mac)
                if device is None:
                    device = self._create_device(observation, ip, mac)
                else:
                    self._update_device(device, observation, ip, mac)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(device)
        return device

    def get_device(self, device_id: int) -> Optional[NetworkDevice]:
        return self.db.get(NetworkDevice, device_id)

    def get_device_by_ip(self, ip_address: str) -> Optional[NetworkDevice]:
        return (
            self.db.query(NetworkDevice)
            .filter(NetworkDevice.ip_address == ip_address.strip())
            .order_by(NetworkDevice.last_seen.desc(), NetworkDevice.id.desc())
            .first()
        )

    def get_device_by_mac(self, mac_address: str) -> Optional[NetworkDevice]:
        try:
            mac = normalize_mac(mac_address)
        except ValueError:
            return None
        if not mac:
            return None
        return self.db.query(NetworkDevice).filter(NetworkDevice.mac_address == mac).first()

    def list_devices(self, subnet_id: Optional[int] = None) -> List[NetworkDevice]:
        query = self.db.query(NetworkDevice)
        if subnet_id is not None:
            query = query.filter(NetworkDevice.subnet_id == subnet_id)
        return sorted(
            query.all(), key=lambda d: (SubnetCalculator.ip_sort_key(d.ip_address), d.id)
        )

    def delete_device(self, device_id: int) -> bool:
        device = self.get_device(device_id)
        if not device:
            return False
        self.db.query(IpReservation).filter(IpReservation.device_id == device_id).update(
            {IpReservation.device_id: None}, synchronize_session=False
        )
        ip_address = device.ip_address
        self.db.delete(device)
        self.db.commit()
        logger.info("Deleted device %s (%s)", device_id, ip_address)
        return True

    def get_device_history(self, device_id: int, limit: int = 50) -> List[DeviceHistory]:
        return (
            self.db.query(DeviceHistory)
            .filter(DeviceHistory.device_id == device_id)
            .order_by(DeviceHistory.event_time.desc(), DeviceHistory.id.desc())
            .limit(limit)
            .all()
        )

    def _find_device(self, ip: str, mac: Optional[str]) -> Optional[NetworkDevice]:
        by_mac = None
        if mac:
            by_mac = self.db.query(NetworkDevice).filter(NetworkDevice.mac_address == mac).first()

        by_ip = (
            self.db.query(NetworkDevice)
            .filter(NetworkDevice.ip_address == ip)
            .order_by(NetworkDevice.last_seen.desc(), NetworkDevice.id.desc())
            .first()
        )

        if by_mac and by_ip and by_mac.id != by_ip.id:
            logger.warning(
                "Observation %s/%s matches device %s by MAC and device %s by IP; using the MAC match",
                ip,
                mac,
                by_mac.id,
                by_ip.id,
            )
        return by_mac or by_ip

    def _create_device(
        self, observation: schemas.DeviceObservation, ip: str, mac: Optional[str]
    ) -> NetworkDevice:
        now = utcnow()
        device = NetworkDevice(
            ip_address=ip,
            mac_address=mac,
            hostname=observation.hostname,
            vendor=observation.vendor or self.vendor_lookup.lookup(mac),
            device_type=observation.device_type.value,
            status=observation.status.value,
            first_seen=now,
            last_seen=now,
            is_dhcp_assigned=True if observation.is_dhcp_assigned is None else observation.is_dhcp_assigned,
            is_static_ip=bool(observation.is_static_ip),
            open_ports=sorted(set(observation.open_ports)) if observation.open_ports else None,
            operating_system=observation.operating_system,
            last_response_time=observation.response_time_ms,
            notes=observation.notes,
            tags=observation.tags,
            source=observation.source.value,
            subnet_id=observation.subnet_id or self._containing_subnet_id(ip),
            created_at=now,
            updated_at=now,
        )
        self.db.add(device)
        self.db.flush()

        self._record_history(
            device,
            DeviceHistoryEventType.FIRST_SEEN,
            new_value=ip,
            details=f"Device discovered via {observation.source.value}",
            event_time=now,
        )
        logger.info("New device %s (mac=%s) added to inventory", ip, mac)
        return device

    def _update_device(
        self,
        device: NetworkDevice,
        observation: schemas.DeviceObservation,
        ip: str,
        mac: Optional[str],
    ) -> None:
        now = utcnow()
        changes: List[Tuple[DeviceHistoryEventType, str, Optional[str], Optional[str]]] = []

        if device.ip_address != ip:
            changes.append((DeviceHistoryEventType.IP_CHANGE, "ip_address", device.ip_address, ip))
        if mac and device.mac_address != mac:
            changes.append((DeviceHistoryEventType.MAC_CHANGE, "mac_address", device.mac_address, mac))
        if observation.hostname and device.hostname != observation.hostname:
            changes.append(
                (DeviceHistoryEventType.HOSTNAME_CHANGE, "hostname", device.hostname, observation.hostname)
            )
        if device.status != observation.status.value:
            changes.append(
                (DeviceHistoryEventType.STATUS_CHANGE, "status", device.status, observation.status.value)
            )

        # History rows carry the state from before any change is applied
        for event_type, field, previous, new in changes:
            self._record_history(device, event_type, previous, new, event_time=now)
        if changes:
            self._record_history(
                device,
                DeviceHistoryEventType.UPDATED,
                details="Changed: " + ", ".join(field for _, field, _, _ in changes),
                event_time=now,
            )

        for _, field, _, new in changes:
            setattr(device, field, new)

        device.last_seen = now
        device.updated_at = now
        if observation.open_ports is not None:
            device.open_ports = sorted(set(observation.open_ports))
        if observation.response_time_ms is not None:
            device.last_response_time = observation.response_time_ms
        if observation.operating_system:
            device.operating_system = observation.operating_system
        if observation.device_type != DeviceType.UNKNOWN:
            device.device_type = observation.device_type.value
        if observation.vendor:
            device.vendor = observation.vendor
        elif not device.vendor and device.mac_address:
            device.vendor = self.vendor_lookup.lookup(device.mac_address)
        if observation.is_dhcp_assigned is not None:
            device.is_dhcp_assigned = observation.is_dhcp_assigned
        if observation.is_static_ip is not None:
            device.is_static_ip = observation.is_static_ip
        if observation.notes:
            device.notes = observation.notes
        if observation.tags:
            device.tags = observation.tags

        if observation.subnet_id is not None:
            device.subnet_id = observation.subnet_id
        elif device.subnet_id is None or any(field == "ip_address" for _, field, _, _ in changes):
            device.subnet_id = self._containing_subnet_id(device.ip_address)

        if changes:
            logger.info(
                "Device %s updated: %s",
                device.id,
                ", ".join(f"{field} {previous} -> {new}" for _, field, previous, new in changes),
            )

    def _record_history(
        self,
        device: NetworkDevice,
        event_type: DeviceHistoryEventType,
        previous_value: Optional[str] = None,
        new_value: Optional[str] = None,
        details: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ) -> DeviceHistory:
        entry = DeviceHistory(
            device_id=device.id,
            event_type=event_type.value,
            event_time=event_time or utcnow(),
            ip_address=device.ip_address,
            mac_address=device.mac_address,
            hostname=device.hostname,
            previous_value=previous_value,
            new_value=new_value,
            details=details,
        )
        self.db.add(entry)
        return entry

    def _containing_subnet_id(self, ip: str) -> Optional[int]:
        subnet = IPTrie(self.db.query(Subnet).all()).find_best_match(ip)
        return subnet.id if subnet else None

    # ------------------------------------------------------------------
    # Conflicts

    def detect_conflicts(self, subnet_id: Optional[int] = None) -> List[NetworkDevice]:
        """Every device that shares its IP with at least one other device."""
        duplicates = self.db.query(NetworkDevice.ip_address)
        if subnet_id is not None:
            duplicates = duplicates.filter(NetworkDevice.subnet_id == subnet_id)
        duplicate_ips = [
            row[0]
            for row in duplicates.group_by(NetworkDevice.ip_address)
            .having(func.count(NetworkDevice.id) > 1)
            .all()
        ]
        if not duplicate_ips:
            return []

        query = self.db.query(NetworkDevice).filter(NetworkDevice.ip_address.in_(duplicate_ips))
        if subnet_id is not None:
            query = query.filter(NetworkDevice.subnet_id == subnet_id)
        conflicts = sorted(
            query.all(), key=lambda d: (SubnetCalculator.ip_sort_key(d.ip_address), d.id)
        )
        logger.info("Found %d conflicting devices across %d addresses", len(conflicts), len(duplicate_ips))
        return conflicts

    # ------------------------------------------------------------------
    # Reservations

    def create_reservation(self, data: schemas.IpReservationCreate) -> IpReservation:
        ip = data.ip_address.strip()
        if not SubnetCalculator.is_ipv4(ip):
            raise InventoryValidationError(f"'{data.ip_address}' is not a valid IPv4 address")
        try:
            mac = normalize_mac(data.mac_address)
        except ValueError as e:
            raise InventoryValidationError(str(e))

        if data.subnet_id is not None:
            subnet = self.get_subnet(data.subnet_id)
            if not subnet:
                raise InventoryValidationError(f"Subnet {data.subnet_id} does not exist")
            if not SubnetCalculator.contains(subnet.network, ip):
                raise InventoryValidationError(f"{ip} is not inside subnet {subnet.network}")
            subnet_id = subnet.id
        else:
            subnet_id = self._containing_subnet_id(ip)

        now = utcnow()
        clash = [
            r for r in self.db.query(IpReservation).filter(IpReservation.ip_address == ip).all()
            if self._reservation_is_active(r, now)
        ]
        if clash:
            raise InventoryValidationError(f"{ip} already has an active reservation")

        reservation = IpReservation(
            ip_address=ip,
            mac_address=mac,
            description=data.description,
            purpose=data.purpose,
            assigned_to=data.assigned_to,
            is_active=data.is_active,
            expires_at=self._naive_utc(data.expires_at),
            subnet_id=subnet_id,
            device_id=data.device_id,
            created_by=data.created_by,
            created_at=now,
            updated_at=now,
        )
        self.db.add(reservation)
        self.db.commit()
        self.db.refresh(reservation)
        logger.info("Reserved %s: %s", ip, data.description)
        return reservation

    def get_reservation(self, reservation_id: int) -> Optional[IpReservation]:
        return self.db.get(IpReservation, reservation_id)

    def list_reservations(self, subnet_id: Optional[int] = None) -> List[IpReservation]:
        query = self.db.query(IpReservation)
        if subnet_id is not None:
            query = query.filter(IpReservation.subnet_id == subnet_id)
        return sorted(
            query.all(), key=lambda r: (SubnetCalculator.ip_sort_key(r.ip_address), r.id)
        )

    def update_reservation(
        self, reservation_id: int, data: schemas.IpReservationUpdate
    ) -> Optional[IpReservation]:
        reservation = self.get_reservation(reservation_id)
        if not reservation:
            return None

        changes = data.model_dump(exclude_unset=True)
        if "mac_address" in changes:
            try:
                changes["mac_address"] = normalize_mac(changes["mac_address"])
            except ValueError as e:
                raise InventoryValidationError(str(e))
        if "description" in changes and not changes["description"]:
            raise InventoryValidationError("Reservation description cannot be empty")
        if "is_active" in changes and changes["is_active"] is None:
            raise InventoryValidationError("Reservation is_active must be true or false")
        if "expires_at" in changes:
            changes["expires_at"] = self._naive_utc(changes["expires_at"])

        is_active = changes.get("is_active", reservation.is_active)
        expires_at = changes.get("expires_at", reservation.expires_at)
        now = utcnow()
        if is_active and (expires_at is None or expires_at > now):
            clash = [
                r for r in self.db.query(IpReservation).filter(
                    IpReservation.ip_address == reservation.ip_address,
                    IpReservation.id != reservation.id,
                ).all()
                if self._reservation_is_active(r, now)
            ]
            if clash:
                raise InventoryValidationError(f"{reservation.ip_address} already has an active reservation")

        for field, value in changes.items():
            setattr(reservation, field, value)
        reservation.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(reservation)
        return reservation

    def delete_reservation(self, reservation_id: int) -> bool:
        reservation = self.get_reservation(reservation_id)
        if not reservation:
            return False
        self.db.delete(reservation)
        self.db.commit()
        return True

    @staticmethod
    def _reservation_is_active(reservation: IpReservation, now: datetime) -> bool:
        if not reservation.is_active:
            return False
        return reservation.expires_at is None or reservation.expires_at > now

    @staticmethod
    def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
        """Expiry times are stored as naive UTC, like every other timestamp."""
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    # ------------------------------------------------------------------
    # Availability

    def get_available(self, subnet_id: int, avoid_dhcp: bool = True) -> List[str]:
        """
        Free host addresses of a subnet, ascending.

        Excludes the gateway, every device address, every actively reserved
        address and, when ``avoid_dhcp`` is set, the declared DHCP range.

        Raises:
            SubnetNotFoundError: no subnet with that id
        """
        return list(self._iter_available(self._require_subnet(subnet_id), avoid_dhcp))

    def find_next_available(self, subnet_id: int, avoid_dhcp: bool = True) -> Optional[str]:
        return next(self._iter_available(self._require_subnet(subnet_id), avoid_dhcp), None)

    def is_available(self, ip_address: str, subnet_id: Optional[int] = None) -> bool:
        """True when no device and no active reservation hold the address."""
        ip = ip_address.strip()
        devices = self.db.query(NetworkDevice).filter(NetworkDevice.ip_address == ip)
        reservations = self.db.query(IpReservation).filter(IpReservation.ip_address == ip)
        if subnet_id is not None:
            devices = devices.filter(NetworkDevice.subnet_id == subnet_id)
            reservations = reservations.filter(IpReservation.subnet_id == subnet_id)

        if devices.first() is not None:
            return False
        now = utcnow()
        return not any(self._reservation_is_active(r, now) for r in reservations.all())

    def get_subnet_summary(self, subnet_id: int) -> Dict[str, object]:
        """
        Address usage for one subnet.

        ``used`` counts the union of gateway, device and active reservation
        addresses, limited to the subnet's host addresses, so an address held
        by both a device and a reservation is counted once.
        """
        subnet = self._require_subnet(subnet_id)
        metrics = SubnetCalculator.calculate_subnet_metrics(subnet.network)
        network_int = SubnetCalculator.ip_to_int(metrics['network_address'])
        total = metrics['usable_addresses']

        devices = self.db.query(NetworkDevice).filter(NetworkDevice.subnet_id == subnet.id).all()
        reserved = self._active_reserved_ints(subnet)
        used = {
            value
            for value in ({self._safe_int(subnet.gateway)} | self._ints(d.ip_address for d in devices) | reserved)
            if value is not None and network_int < value <= network_int + total
        }

        dhcp_size = 0
        if subnet.dhcp_start and subnet.dhcp_end:
            dhcp_size = len(SubnetCalculator.ip_range(subnet.dhcp_start, subnet.dhcp_end))

        return {
            "subnet_id": subnet.id,
            "network": subnet.network,
            "network_address": metrics['network_address'],
            "broadcast_address": metrics['broadcast_address'],
            "subnet_mask": metrics['subnet_mask'],
            "prefix_length": metrics['prefix_length'],
            "total_addresses": total,
            "used_addresses": len(used),
            "available_addresses": total - len(used),
            "online_devices": sum(1 for d in devices if d.status == DeviceStatus.ONLINE.value),
            "offline_devices": sum(1 for d in devices if d.status == DeviceStatus.OFFLINE.value),
            "reserved_addresses": len(reserved),
            "dhcp_range_size": dhcp_size,
            "usage_percentage": SubnetCalculator.calculate_utilization_percentage(len(used), total),
        }

    def _require_subnet(self, subnet_id: int) -> Subnet:
        subnet = self.get_subnet(subnet_id)
        if not subnet:
            raise SubnetNotFoundError(subnet_id)
        return subnet

    def _iter_available(self, subnet: Subnet, avoid_dhcp: bool) -> Iterator[str]:
        network_int, prefix = SubnetCalculator.parse_cidr(subnet.network)
        excluded = self._excluded_ints(subnet, avoid_dhcp)
        for value in range(network_int + 1, network_int + SubnetCalculator.host_count(prefix) + 1):
            if value not in excluded:
                yield SubnetCalculator.int_to_ip(value)

    def _excluded_ints(self, subnet: Subnet, avoid_dhcp: bool) -> Set[int]:
        excluded = self._ints(
            d.ip_address
            for d in self.db.query(NetworkDevice).filter(NetworkDevice.subnet_id == subnet.id).all()
        )
        gateway = self._safe_int(subnet.gateway)
        if gateway is not None:
            excluded.add(gateway)
        excluded |= self._active_reserved_ints(subnet)

        if avoid_dhcp and subnet.dhcp_start and subnet.dhcp_end:
            start = SubnetCalculator.ip_to_int(subnet.dhcp_start)
            end = SubnetCalculator.ip_to_int(subnet.dhcp_end)
            excluded.update(range(start, end + 1))
        return excluded

    def _active_reserved_ints(self, subnet: Subnet) -> Set[int]:
        now = utcnow()
        return self._ints(
            r.ip_address
            for r in self.db.query(IpReservation).filter(IpReservation.subnet_id == subnet.id).all()
            if self._reservation_is_active(r, now)
        )

    @classmethod
    def _ints(cls, addresses) -> Set[int]:
        values = {cls._safe_int(address) for address in addresses}
        values.discard(None)
        return values

    @staticmethod
    def _safe_int(address: Optional[str]) -> Optional[int]:
        if not SubnetCalculator.is_ipv4(address):
            return None
        return SubnetCalculator.ip_to_int(address)
