"""
Database models for the network inventory

Two groups of tables:
- Discovery log: scan_sessions + discovered_services, one row set per scan run
- Inventory: subnets, network_devices, device_history, ip_reservations

Devices are deduplicated (MAC first, then IP) and only change through
IpManagementService, which also writes the append-only device history.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from netinventory.db.session import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_session_id() -> str:
    return str(uuid.uuid4())


class ScanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DeviceType(str, Enum):
    UNKNOWN = "unknown"
    COMPUTER = "computer"
    SERVER = "server"
    PHONE = "phone"
    TABLET = "tablet"
    IOT = "iot"
    NETWORK_DEVICE = "network_device"
    PRINTER = "printer"
    CAMERA = "camera"
    STORAGE = "storage"
    GAMING = "gaming"
    SMART_HOME = "smart_home"
    VIRTUAL_MACHINE = "virtual_machine"
    OTHER = "other"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class DiscoverySource(str, Enum):
    NETWORK_SCAN = "network_scan"
    CONTROLLER = "controller"
    MANUAL_ENTRY = "manual_entry"
    SNMP = "snmp"
    ARP_TABLE = "arp_table"
    DOCKER = "docker"


class DeviceHistoryEventType(str, Enum):
    FIRST_SEEN = "first_seen"
    STATUS_CHANGE = "status_change"
    IP_CHANGE = "ip_change"
    MAC_CHANGE = "mac_change"
    HOSTNAME_CHANGE = "hostname_change"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UPDATED = "updated"


class ScanSession(Base):
    __tablename__ = "scan_sessions"

    id = Column(String(36), primary_key=True, default=new_session_id)
    target = Column(String(255), nullable=False, index=True)
    scan_type = Column(String(50), nullable=False, default="network")
    status = Column(String(20), nullable=False, default=ScanStatus.PENDING.value, index=True)
    full_scan = Column(Boolean, default=False)
    ports = Column(JSON)  # Requested port list, null means default catalog

    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

    # Per-run counters
    total_hosts = Column(Integer, default=0)
    scanned_hosts = Column(Integer, default=0)
    total_ports = Column(Integer, default=0)
    scanned_ports = Column(Integer, default=0)
    services_found = Column(Integer, default=0)

    error_message = Column(Text)

    # Relationships
    discovered_services = relationship(
        "DiscoveredService", back_populates="session", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_scan_session_target_status", "target", "status"),
    )


class DiscoveredService(Base):
    __tablename__ = "discovered_services"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(36), ForeignKey("scan_sessions.id"), nullable=False, index=True)
    host_address = Column(String(255), nullable=False, index=True)
    host_name = Column(String(255))
    port = Column(Integer, nullable=False)
    is_reachable = Column(Boolean, default=True)
    response_time_ms = Column(Float)
    service_type = Column(String(100))
    banner = Column(Text)
    discovered_at = Column(DateTime, default=utcnow)
    is_active = Column(Boolean, default=True, index=True)
    service_key = Column(String(300), nullable=False)  # host:port

    # Enrichment, filled in by external recognizers
    recognized_name = Column(String(255))
    suggested_description = Column(Text)
    service_category = Column(String(100))
    suggested_icon = Column(String(100))
    ai_confidence = Column(Float)

    # Relationships
    session = relationship("ScanSession", back_populates="discovered_services")

    __table_args__ = (
        UniqueConstraint("session_id", "service_key", name="uq_session_service_key"),
        Index("idx_discovered_service_key", "service_key"),
    )


class Subnet(Base):
    __tablename__ = "subnets"

    id = Column(Integer, primary_key=True, index=True)
    network = Column(String(50), nullable=False, unique=True, index=True)  # e.g. 192.168.4.0/24
    gateway = Column(String(45), nullable=False)
    dhcp_start = Column(String(45))
    dhcp_end = Column(String(45))
    dns_servers = Column(String(500))  # Comma-separated
    vlan_id = Column(Integer)
    description = Column(String(200))
    location = Column(String(100))
    is_monitored = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    # Relationships
    devices = relationship("NetworkDevice", back_populates="subnet")
    reservations = relationship(
        "IpReservation", back_populates="subnet", cascade="all, delete-orphan"
    )


class NetworkDevice(Base):
    __tablename__ = "network_devices"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, index=True)  # Not unique: duplicates are conflicts
    mac_address = Column(String(17), index=True)
    hostname = Column(String(255))
    vendor = Column(String(100))
    device_type = Column(String(30), nullable=False, default=DeviceType.UNKNOWN.value)
    status = Column(String(20), nullable=False, default=DeviceStatus.ONLINE.value)
    first_seen = Column(DateTime, default=utcnow)
    last_seen = Column(DateTime, default=utcnow)
    is_dhcp_assigned = Column(Boolean, default=True)
    is_static_ip = Column(Boolean, default=False)
    open_ports = Column(JSON)  # List of port numbers
    operating_system = Column(String(200))
    last_response_time = Column(Float)  # ms
    notes = Column(String(500))
    tags = Column(String(500))  # Comma-separated
    source = Column(String(30), nullable=False, default=DiscoverySource.NETWORK_SCAN.value)
    subnet_id = Column(Integer, ForeignKey("subnets.id"), index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    # Relationships
    subnet = relationship("Subnet", back_populates="devices")
    history = relationship(
        "DeviceHistory",
        back_populates="device",
        cascade="all, delete-orphan",
        order_by="DeviceHistory.event_time.desc()",
    )

    __table_args__ = (
        Index("idx_device_subnet_ip", "subnet_id", "ip_address"),
    )


class DeviceHistory(Base):
    """Append-only record of one change to a tracked device"""
    __tablename__ = "device_history"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("network_devices.id"), nullable=False, index=True)
    event_type = Column(String(30), nullable=False)
    event_time = Column(DateTime, default=utcnow, index=True)

    # Device state at the time of the event, before the change is applied
    ip_address = Column(String(45))
    mac_address = Column(String(17))
    hostname = Column(String(255))

    previous_value = Column(String(255))
    new_value = Column(String(255))
    details = Column(String(500))

    # Relationships
    device = relationship("NetworkDevice", back_populates="history")


class IpReservation(Base):
    __tablename__ = "ip_reservations"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, index=True)
    mac_address = Column(String(17))  # Optional MAC pin
    description = Column(String(200), nullable=False)
    purpose = Column(String(200))
    assigned_to = Column(String(100))
    is_active = Column(Boolean, default=True)
    expires_at = Column(DateTime)
    subnet_id = Column(Integer, ForeignKey("subnets.id"), index=True)
    device_id = Column(Integer, ForeignKey("network_devices.id"))
    created_by = Column(String(100))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    # Relationships
    subnet = relationship("Subnet", back_populates="reservations")
    device = relationship("NetworkDevice")
