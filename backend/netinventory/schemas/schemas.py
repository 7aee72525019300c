from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from netinventory.db.models import (
    DeviceHistoryEventType,
    DeviceStatus,
    DeviceType,
    DiscoverySource,
    ScanStatus,
)


# ---------------------------------------------------------------------------
# Scans

class ScanStartRequest(BaseModel):
    target: str
    scan_type: str = "network"
    ports: Optional[List[int]] = None
    full_scan: bool = False

class ScanStartResponse(BaseModel):
    session_id: str
    status: ScanStatus = ScanStatus.PENDING
    message: str = "Scan queued"

class QuickScanRequest(BaseModel):
    target: str
    ports: Optional[List[int]] = None

class ScanSession(BaseModel):
    id: str
    target: str
    scan_type: str
    status: ScanStatus
    full_scan: bool = False
    ports: Optional[List[int]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_hosts: int = 0
    scanned_hosts: int = 0
    total_ports: int = 0
    scanned_ports: int = 0
    services_found: int = 0
    error_message: Optional[str] = None

    class Config:
        from_attributes = True

class ScanProgress(BaseModel):
    session_id: str
    status: ScanStatus
    total_hosts: int
    scanned_hosts: int
    total_ports: int
    scanned_ports: int
    services_found: int
    progress_percent: float

class DiscoveredService(BaseModel):
    id: Optional[int] = None
    session_id: Optional[str] = None
    host_address: str
    host_name: Optional[str] = None
    port: int
    is_reachable: bool = True
    response_time_ms: Optional[float] = None
    service_type: Optional[str] = None
    banner: Optional[str] = None
    discovered_at: Optional[datetime] = None
    is_active: bool = True
    service_key: Optional[str] = None
    recognized_name: Optional[str] = None
    suggested_description: Optional[str] = None
    service_category: Optional[str] = None
    suggested_icon: Optional[str] = None
    ai_confidence: Optional[float] = None

    class Config:
        from_attributes = True

class LatestScanResults(BaseModel):
    session: ScanSession
    services: List[DiscoveredService]

class QueueSnapshot(BaseModel):
    queue_depth: int
    workers: int
    workers_alive: int
    current_session_ids: List[str] = []

class InventorySyncResult(BaseModel):
    session_id: str
    hosts: int
    devices_created: int
    devices_updated: int


# ---------------------------------------------------------------------------
# Subnets

class SubnetBase(BaseModel):
    network: str
    gateway: str
    dhcp_start: Optional[str] = None
    dhcp_end: Optional[str] = None
    dns_servers: Optional[str] = None
    vlan_id: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    is_monitored: bool = True

class SubnetCreate(SubnetBase):
    pass

class SubnetUpdate(BaseModel):
    gateway: Optional[str] = None
    dhcp_start: Optional[str] = None
    dhcp_end: Optional[str] = None
    dns_servers: Optional[str] = None
    vlan_id: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    is_monitored: Optional[bool] = None

class Subnet(SubnetBase):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class SubnetSummary(BaseModel):
    subnet_id: int
    network: str
    network_address: str
    broadcast_address: str
    subnet_mask: str
    prefix_length: int
    total_addresses: int
    used_addresses: int
    available_addresses: int
    online_devices: int
    offline_devices: int
    reserved_addresses: int
    dhcp_range_size: int
    usage_percentage: float

class AvailableAddresses(BaseModel):
    subnet_id: int
    avoid_dhcp: bool
    count: int
    addresses: List[str]

class NextAvailableAddress(BaseModel):
    subnet_id: int
    ip_address: Optional[str] = None


# ---------------------------------------------------------------------------
# Devices

class DeviceObservation(BaseModel):
    """One sighting of a device, as reported by discovery or an integration"""
    ip_address: str
    mac_address: Optional[str] = None
    hostname: Optional[str] = None
    vendor: Optional[str] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    status: DeviceStatus = DeviceStatus.ONLINE
    is_dhcp_assigned: Optional[bool] = None
    is_static_ip: Optional[bool] = None
    open_ports: Optional[List[int]] = None
    operating_system: Optional[str] = None
    response_time_ms: Optional[float] = None
    notes: Optional[str] = None
    tags: Optional[str] = None
    source: DiscoverySource = DiscoverySource.NETWORK_SCAN
    subnet_id: Optional[int] = None

class NetworkDevice(BaseModel):
    id: int
    ip_address: str
    mac_address: Optional[str] = None
    hostname: Optional[str] = None
    vendor: Optional[str] = None
    device_type: DeviceType
    status: DeviceStatus
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    is_dhcp_assigned: bool = True
    is_static_ip: bool = False
    open_ports: Optional[List[int]] = None
    operating_system: Optional[str] = None
    last_response_time: Optional[float] = None
    notes: Optional[str] = None
    tags: Optional[str] = None
    source: DiscoverySource
    subnet_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class DeviceHistory(BaseModel):
    id: int
    device_id: int
    event_type: DeviceHistoryEventType
    event_time: datetime
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    hostname: Optional[str] = None
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    details: Optional[str] = None

    class Config:
        from_attributes = True

class AddressAvailability(BaseModel):
    ip_address: str
    subnet_id: Optional[int] = None
    available: bool


# ---------------------------------------------------------------------------
# Reservations

class IpReservationBase(BaseModel):
    ip_address: str
    mac_address: Optional[str] = None
    description: str = Field(..., min_length=1)
    purpose: Optional[str] = None
    assigned_to: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    subnet_id: Optional[int] = None
    device_id: Optional[int] = None
    created_by: Optional[str] = None

class IpReservationCreate(IpReservationBase):
    pass

class IpReservationUpdate(BaseModel):
    mac_address: Optional[str] = None
    description: Optional[str] = None
    purpose: Optional[str] = None
    assigned_to: Optional[str] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None
    device_id: Optional[int] = None

class IpReservation(IpReservationBase):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
