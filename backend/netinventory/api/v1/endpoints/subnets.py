from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from netinventory.core.exceptions import SubnetNotFoundError
from netinventory.db.session import get_db
from netinventory.schemas.schemas import (
    AvailableAddresses,
    NextAvailableAddress,
    Subnet,
    SubnetCreate,
    SubnetSummary,
    SubnetUpdate,
)
from netinventory.services.ip_management_service import IpManagementService

router = APIRouter()


@router.post("/", response_model=Subnet)
def create_subnet(subnet: SubnetCreate, db: Session = Depends(get_db)):
    try:
        return IpManagementService(db).create_subnet(subnet)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=List[Subnet])
def list_subnets(db: Session = Depends(get_db)):
    return IpManagementService(db).list_subnets()


@router.get("/by-network", response_model=Subnet)
def get_subnet_by_network(cidr: str, db: Session = Depends(get_db)):
    subnet = IpManagementService(db).find_subnet_by_network(cidr)
    if not subnet:
        raise HTTPException(status_code=404, detail="Subnet not found")
    return subnet


@router.get("/{subnet_id}", response_model=Subnet)
def get_subnet(subnet_id: int, db: Session = Depends(get_db)):
    subnet = IpManagementService(db).get_subnet(subnet_id)
    if not subnet:
        raise HTTPException(status_code=404, detail="Subnet not found")
    return subnet


@router.put("/{subnet_id}", response_model=Subnet)
def update_subnet(subnet_id: int, update: SubnetUpdate, db: Session = Depends(get_db)):
    try:
        subnet = IpManagementService(db).update_subnet(subnet_id, update)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not subnet:
        raise HTTPException(status_code=404, detail="Subnet not found")
    return subnet


@router.delete("/{subnet_id}")
def delete_subnet(subnet_id: int, db: Session = Depends(get_db)):
    if not IpManagementService(db).delete_subnet(subnet_id):
        raise HTTPException(status_code=404, detail="Subnet not found")
    return {"message": "Subnet deleted successfully"}


@router.get("/{subnet_id}/summary", response_model=SubnetSummary)
def get_subnet_summary(subnet_id: int, db: Session = Depends(get_db)):
    try:
        return IpManagementService(db).get_subnet_summary(subnet_id)
    except SubnetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{subnet_id}/available", response_model=AvailableAddresses)
def get_available_addresses(subnet_id: int, avoid_dhcp: bool = True, db: Session = Depends(get_db)):
    try:
        addresses = IpManagementService(db).get_available(subnet_id, avoid_dhcp=avoid_dhcp)
    except SubnetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return AvailableAddresses(
        subnet_id=subnet_id, avoid_dhcp=avoid_dhcp, count=len(addresses), addresses=addresses
    )


@router.get("/{subnet_id}/next-available", response_model=NextAvailableAddress)
def get_next_available_address(subnet_id: int, avoid_dhcp: bool = True, db: Session = Depends(get_db)):
    try:
        ip_address = IpManagementService(db).find_next_available(subnet_id, avoid_dhcp=avoid_dhcp)
    except SubnetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return NextAvailableAddress(subnet_id=subnet_id, ip_address=ip_address)
