from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from netinventory.db.session import get_db
from netinventory.schemas.schemas import IpReservation, IpReservationCreate, IpReservationUpdate
from netinventory.services.ip_management_service import IpManagementService

router = APIRouter()


@router.post("/", response_model=IpReservation)
def create_reservation(reservation: IpReservationCreate, db: Session = Depends(get_db)):
    try:
        return IpManagementService(db).create_reservation(reservation)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=List[IpReservation])
def list_reservations(subnet_id: Optional[int] = None, db: Session = Depends(get_db)):
    return IpManagementService(db).list_reservations(subnet_id=subnet_id)


@router.get("/{reservation_id}", response_model=IpReservation)
def get_reservation(reservation_id: int, db: Session = Depends(get_db)):
    reservation = IpManagementService(db).get_reservation(reservation_id)
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return reservation


@router.put("/{reservation_id}", response_model=IpReservation)
def update_reservation(reservation_id: int, update: IpReservationUpdate, db: Session = Depends(get_db)):
    try:
        reservation = IpManagementService(db).update_reservation(reservation_id, update)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return reservation


@router.delete("/{reservation_id}")
def delete_reservation(reservation_id: int, db: Session = Depends(get_db)):
    if not IpManagementService(db).delete_reservation(reservation_id):
        raise HTTPException(status_code=404, detail="Reservation not found")
    return {"message": "Reservation deleted successfully"}
