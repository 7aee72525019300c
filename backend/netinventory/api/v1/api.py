from fastapi import APIRouter
from netinventory.api.v1.endpoints import scans, subnets, devices, reservations

api_router = APIRouter()

# Discovery
api_router.include_router(scans.router, prefix="/scans", tags=["scans"])

# Address space and inventory
api_router.include_router(subnets.router, prefix="/subnets", tags=["subnets"])
api_router.include_router(devices.router, prefix="/devices", tags=["devices"])
api_router.include_router(reservations.router, prefix="/reservations", tags=["reservations"])
