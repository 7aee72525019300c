"""
Devices API - the deduplicated device inventory

Devices are written only through the reconcile endpoint, which records a
history entry for every change it applies.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from netinventory.db.session import get_db
from netinventory.schemas.schemas import (
    AddressAvailability,
    DeviceHistory,
    DeviceObservation,
    NetworkDevice,
)
from netinventory.services.ip_management_service import IpManagementService

router = APIRouter()


@router.post("/", response_model=NetworkDevice)
def reconcile_device(observation: DeviceObservation, db: Session = Depends(get_db)):
    """Create the observed device or update the one it matches (by MAC, then IP)."""
    try:
        return IpManagementService(db).reconcile_device(observation)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=List[NetworkDevice])
def list_devices(subnet_id: Optional[int] = None, db: Session = Depends(get_db)):
    return IpManagementService(db).list_devices(subnet_id=subnet_id)


@router.get("/conflicts", response_model=List[NetworkDevice])
def get_conflicts(subnet_id: Optional[int] = None, db: Session = Depends(get_db)):
    return IpManagementService(db).detect_conflicts(subnet_id=subnet_id)


@router.get("/availability", response_model=AddressAvailability)
def check_availability(ip: str, subnet_id: Optional[int] = None, db: Session = Depends(get_db)):
    available = IpManagementService(db).is_available(ip, subnet_id=subnet_id)
    return AddressAvailability(ip_address=ip, subnet_id=subnet_id, available=available)


@router.get("/by-ip/{ip_address}", response_model=NetworkDevice)
def get_device_by_ip(ip_address: str, db: Session = Depends(get_db)):
    device = IpManagementService(db).get_device_by_ip(ip_address)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.get("/by-mac/{mac_address}", response_model=NetworkDevice)
def get_device_by_mac(mac_address: str, db: Session = Depends(get_db)):
    device = IpManagementService(db).get_device_by_mac(mac_address)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.get("/{device_id}", response_model=NetworkDevice)
def get_device(device_id: int, db: Session = Depends(get_db)):
    device = IpManagementService(db).get_device(device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.delete("/{device_id}")
def delete_device(device_id: int, db: Session = Depends(get_db)):
    if not IpManagementService(db).delete_device(device_id):
        raise HTTPException(status_code=404, detail="Device not found")
    return {"message": "Device deleted successfully"}


@router.get("/{device_id}/history", response_model=List[DeviceHistory])
def get_device_history(
    device_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    service = IpManagementService(db)
    if not service.get_device(device_id):
        raise HTTPException(status_code=404, detail="Device not found")
    return service.get_device_history(device_id, limit=limit)
