"""
Scans API - network discovery runs

Scans are queued and executed in the background; clients poll the session,
its progress and its results. The quick scan endpoint is the one synchronous
path and is bounded by a deadline.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from netinventory.db.session import get_db
from netinventory.schemas.schemas import (
    DiscoveredService,
    InventorySyncResult,
    LatestScanResults,
    QueueSnapshot,
    QuickScanRequest,
    ScanProgress,
    ScanSession,
    ScanStartRequest,
    ScanStartResponse,
)
from netinventory.services.inventory_sync_service import InventorySyncService
from netinventory.services.port_catalog import COMMON_PORTS, EXTENDED_PORTS
from netinventory.services.scan_orchestrator import scan_orchestrator
from netinventory.services.scan_queue_service import scan_queue_service

router = APIRouter()


@router.post("/start", response_model=ScanStartResponse)
def start_scan(request: ScanStartRequest, db: Session = Depends(get_db)):
    try:
        session_id = scan_queue_service.start_scan(
            db,
            target=request.target,
            scan_type=request.scan_type,
            ports=request.ports,
            full_scan=request.full_scan,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ScanStartResponse(session_id=session_id)


@router.post("/quick", response_model=List[DiscoveredService])
async def quick_scan(request: QuickScanRequest):
    """Scan the common ports of a target and wait for the results."""
    try:
        return await scan_orchestrator.quick_scan(request.target, ports=request.ports)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/recent", response_model=List[ScanSession])
def get_recent_scans(limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    return scan_queue_service.get_recent_scans(db, limit=limit)


@router.get("/latest", response_model=LatestScanResults)
def get_latest_results(target: str, db: Session = Depends(get_db)):
    latest = scan_queue_service.get_latest_for_target(db, target)
    if not latest:
        raise HTTPException(status_code=404, detail="No completed scan found for target")
    session, services = latest
    return {"session": session, "services": services}


@router.get("/ports/common", response_model=List[int])
def get_common_ports():
    return COMMON_PORTS


@router.get("/ports/extended", response_model=List[int])
def get_extended_ports():
    return EXTENDED_PORTS


@router.get("/queue", response_model=QueueSnapshot)
def get_queue():
    return scan_queue_service.queue_snapshot()


@router.get("/{session_id}", response_model=ScanSession)
def get_scan(session_id: str, db: Session = Depends(get_db)):
    session = scan_queue_service.get_status(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Scan session not found")
    return session


@router.get("/{session_id}/progress", response_model=ScanProgress)
def get_scan_progress(session_id: str, db: Session = Depends(get_db)):
    progress = scan_queue_service.get_progress(db, session_id)
    if not progress:
        raise HTTPException(status_code=404, detail="Scan session not found")
    return progress


@router.get("/{session_id}/results", response_model=List[DiscoveredService])
def get_scan_results(
    session_id: str,
    sort_by: str = "ip",
    sort_order: str = "asc",
    active_only: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    if not scan_queue_service.get_status(db, session_id):
        raise HTTPException(status_code=404, detail="Scan session not found")
    try:
        services = scan_queue_service.get_results(db, session_id, sort_by=sort_by, sort_order=sort_order)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if active_only is not None:
        services = [s for s in services if s.is_active == active_only]
    return services


@router.post("/{session_id}/sync-inventory", response_model=InventorySyncResult)
def sync_inventory(session_id: str, db: Session = Depends(get_db)):
    try:
        result = InventorySyncService(db).sync_session(session_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if result is None:
        raise HTTPException(status_code=404, detail="Scan session not found")
    return result
