"""Scan job queue and session tracker.

Scan requests are accepted immediately as ``pending`` sessions and executed by
background worker threads, one scan at a time with the default single worker.
Each worker opens its own database session, runs the orchestrator inside
``asyncio.run`` and records the outcome on the session row.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from netinventory.core.config import settings
from netinventory.core.exceptions import InventoryValidationError
from netinventory.db.models import DiscoveredService, ScanSession, ScanStatus, utcnow
from netinventory.db.session import SessionLocal
from netinventory.services.probe_engine import DiscoveredServiceResult, sanitize_text
from netinventory.services.scan_orchestrator import (
    ScanOrchestrator,
    ScanProgress,
    expand_target,
    resolve_ports,
    scan_orchestrator,
)
from netinventory.services.subnet_calculator import SubnetCalculator

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    ScanStatus.PENDING.value: (ScanStatus.RUNNING.value, ScanStatus.FAILED.value),
    ScanStatus.RUNNING.value: (ScanStatus.COMPLETED.value, ScanStatus.FAILED.value),
    ScanStatus.COMPLETED.value: (),
    ScanStatus.FAILED.value: (),
}

RESULT_SORT_FIELDS = ("ip", "port", "response_time")


@dataclass(frozen=True)
class ScanRequest:
    session_id: str
    target: str
    ports: Optional[Tuple[int, ...]] = None
    full_scan: bool = False


class ScanQueueService:
    """Accept scan requests, run them in the background and track their sessions."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        orchestrator: Optional[ScanOrchestrator] = None,
        workers: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator or scan_orchestrator
        self._worker_count = max(1, workers or settings.SCAN_WORKERS)
        self._queue: "queue.Queue[ScanRequest]" = queue.Queue()
        self._cancel_event = threading.Event()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._running: Dict[str, ScanProgress] = {}

    # ------------------------------------------------------------------
    # Submission

    def start_scan(
        self,
        db: Session,
        target: str,
        scan_type: str = "network",
        ports: Optional[Iterable[int]] = None,
        full_scan: bool = False,
    ) -> str:
        """Validate and register a scan, returning its session id without waiting for it to run."""
        target = (target or "").strip()
        hosts = expand_target(target)
        port_list = resolve_ports(ports, full_scan)
        explicit_ports = sorted(set(ports)) if ports else None

        session = ScanSession(
            target=target,
            scan_type=scan_type or "network",
            status=ScanStatus.PENDING.value,
            full_scan=full_scan,
            ports=explicit_ports,
            total_hosts=len(hosts),
            total_ports=len(hosts) * len(port_list),
        )
        db.add(session)
        db.commit()
        db.refresh(session)

        self.enqueue(session)
        logger.info("Queued scan session %s for %s (%d hosts)", session.id, target, len(hosts))
        return session.id

    def enqueue(self, session: ScanSession) -> None:
        self._queue.put(
            ScanRequest(
                session_id=session.id,
                target=session.target,
                ports=tuple(session.ports) if session.ports else None,
                full_scan=bool(session.full_scan),
            )
        )

    # ------------------------------------------------------------------
    # Queries

    def get_status(self, db: Session, session_id: str) -> Optional[ScanSession]:
        return db.get(ScanSession, session_id)

    def get_recent_scans(self, db: Session, limit: int = 10) -> List[ScanSession]:
        return (
            db.query(ScanSession)
            .order_by(ScanSession.started_at.desc())
            .limit(limit)
            .all()
        )

    def get_results(
        self,
        db: Session,
        session_id: str,
        sort_by: str = "ip",
        sort_order: str = "asc",
    ) -> List[DiscoveredService]:
        """Services found by one session; IP ordering is numeric, not lexical."""
        if sort_by not in RESULT_SORT_FIELDS:
            raise InventoryValidationError(
                f"sort_by must be one of {', '.join(RESULT_SORT_FIELDS)}"
            )
        if sort_order not in ("asc", "desc"):
            raise InventoryValidationError("sort_order must be 'asc' or 'desc'")

        services = (
            db.query(DiscoveredService)
            .filter(DiscoveredService.session_id == session_id)
            .all()
        )

        if sort_by == "port":
            key = lambda s: (s.port, SubnetCalculator.ip_sort_key(s.host_address))
        elif sort_by == "response_time":
            key = lambda s: (s.response_time_ms if s.response_time_ms is not None else float("inf"), s.port)
        else:
            key = lambda s: (SubnetCalculator.ip_sort_key(s.host_address), s.port)

        return sorted(services, key=key, reverse=sort_order == "desc")

    def get_latest_for_target(
        self, db: Session, target: str
    ) -> Optional[Tuple[ScanSession, List[DiscoveredService]]]:
        """Results of the most recent completed session for a target."""
        session = (
            db.query(ScanSession)
            .filter(
                ScanSession.target == target.strip(),
                ScanSession.status == ScanStatus.COMPLETED.value,
            )
            .order_by(ScanSession.completed_at.desc())
            .first()
        )
        if not session:
            return None
        return session, self.get_results(db, session.id)

    def get_progress(self, db: Session, session_id: str) -> Optional[Dict[str, object]]:
        session = db.get(ScanSession, session_id)
        if not session:
            return None

        with self._lock:
            live = self._running.get(session_id)

        if live is not None:
            total_hosts, scanned_hosts = live.total_hosts, live.scanned_hosts
            total_ports, scanned_ports = live.total_ports, live.scanned_ports
        else:
            total_hosts, scanned_hosts = session.total_hosts or 0, session.scanned_hosts or 0
            total_ports, scanned_ports = session.total_ports or 0, session.scanned_ports or 0

        services_found = (
            db.query(DiscoveredService)
            .filter(DiscoveredService.session_id == session_id)
            .count()
        )

        if session.status == ScanStatus.COMPLETED.value:
            percent = 100.0
        elif total_hosts:
            percent = round(scanned_hosts / total_hosts * 100, 1)
        else:
            percent = 0.0

        return {
            "session_id": session.id,
            "status": session.status,
            "total_hosts": total_hosts,
            "scanned_hosts": scanned_hosts,
            "total_ports": total_ports,
            "scanned_ports": scanned_ports,
            "services_found": services_found,
            "progress_percent": percent,
        }

    def queue_snapshot(self) -> Dict[str, object]:
        with self._lock:
            current = list(self._running.keys())
        return {
            "queue_depth": self._queue.qsize(),
            "workers": self._worker_count,
            "workers_alive": sum(1 for thread in self._threads if thread.is_alive()),
            "current_session_ids": current,
        }

    # ------------------------------------------------------------------
    # Worker lifecycle

    def start_worker(self) -> None:
        if any(thread.is_alive() for thread in self._threads):
            return
        self._stop_event.clear()
        self._cancel_event.clear()
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"scan-worker-{index}", daemon=True)
            for index in range(self._worker_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d scan worker(s)", self._worker_count)

    def stop(self, timeout: float = 10.0) -> None:
        """
        Cancel the running scan and stop the workers.

        The cancelled session still completes with its partial results, but
        services from earlier sessions are not marked inactive.
        """
        self._cancel_event.set()
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        logger.info("Scan workers stopped")

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                request = self._queue.get(timeout=settings.SCAN_IDLE_BACKOFF_SECONDS)
            except queue.Empty:
                continue
            try:
                self.process_request(request)
            except Exception:
                logger.exception("Unhandled error while processing scan session %s", request.session_id)
            finally:
                self._queue.task_done()

    def process_request(self, request: ScanRequest) -> None:
        """Run one queued scan to a terminal state."""
        db = self._session_factory()
        try:
            if self._run_session(db, request) and settings.SCAN_SYNC_DEVICES:
                self._sync_inventory(db, request.session_id)
        finally:
            db.close()

    def _run_session(self, db: Session, request: ScanRequest) -> bool:
        progress = ScanProgress()
        try:
            session = db.get(ScanSession, request.session_id)
            if not session:
                logger.error("Scan session %s not found", request.session_id)
                return False
            if not self._transition(session, ScanStatus.RUNNING):
                return False
            db.commit()

            with self._lock:
                self._running[session.id] = progress

            results = asyncio.run(
                self._orchestrator.scan_range(
                    request.target,
                    list(request.ports) if request.ports else None,
                    request.full_scan,
                    self._cancel_event,
                    progress,
                )
            )

            self.persist_results(db, session, results)
            session.total_hosts = progress.total_hosts
            session.scanned_hosts = progress.scanned_hosts
            session.total_ports = progress.total_ports
            session.scanned_ports = progress.scanned_ports
            db.commit()

            if self._cancel_event.is_set():
                # Hosts after the cancellation point were never probed
                logger.info(
                    "Scan session %s was cancelled, keeping earlier services active",
                    session.id,
                )
            else:
                self.mark_services_inactive(
                    db,
                    session.target,
                    {result.service_key for result in results},
                    current_session_id=session.id,
                )
            self._transition(session, ScanStatus.COMPLETED)
            db.commit()
            logger.info(
                "Scan session %s completed: %d services, %d/%d hosts up",
                session.id,
                len(results),
                progress.hosts_up,
                progress.total_hosts,
            )
            return True
        except Exception as exc:
            db.rollback()
            session = db.get(ScanSession, request.session_id)
            if session and self._transition(session, ScanStatus.FAILED, str(exc)):
                db.commit()
            logger.exception("Scan session %s failed", request.session_id)
            return False
        finally:
            with self._lock:
                self._running.pop(request.session_id, None)

    def _sync_inventory(self, db: Session, session_id: str) -> None:
        from netinventory.services.inventory_sync_service import InventorySyncService

        try:
            InventorySyncService(db).sync_session(session_id)
        except Exception:
            db.rollback()
            logger.exception("Inventory sync failed for scan session %s", session_id)

    def _transition(self, session: ScanSession, status: ScanStatus, error: Optional[str] = None) -> bool:
        """Move a session to a new status if the state machine allows it."""
        allowed = ALLOWED_TRANSITIONS.get(session.status, ())
        if status.value not in allowed:
            logger.warning(
                "Refusing scan session %s transition %s -> %s",
                session.id,
                session.status,
                status.value,
            )
            return False

        session.status = status.value
        if status == ScanStatus.RUNNING:
            session.started_at = utcnow()
        elif status in (ScanStatus.COMPLETED, ScanStatus.FAILED):
            session.completed_at = utcnow()
        if error:
            session.error_message = error[:2000]
        return True

    # ------------------------------------------------------------------
    # Persistence

    def persist_results(
        self, db: Session, session: ScanSession, results: List[DiscoveredServiceResult]
    ) -> int:
        """Upsert one row per (session, host:port)."""
        existing = {
            row.service_key: row
            for row in db.query(DiscoveredService)
            .filter(DiscoveredService.session_id == session.id)
            .all()
        }

        for result in results:
            key = result.service_key
            row = existing.get(key)
            if row is None:
                row = DiscoveredService(session_id=session.id, service_key=key)
                db.add(row)
                existing[key] = row
            row.host_address = result.host_address
            row.host_name = sanitize_text(result.host_name)
            row.port = result.port
            row.is_reachable = result.is_reachable
            row.response_time_ms = result.response_time_ms
            row.service_type = sanitize_text(result.service_type)
            row.banner = sanitize_text(result.banner)
            row.discovered_at = result.discovered_at
            row.is_active = True

        session.services_found = len(existing)
        db.flush()
        return len(existing)

    def mark_services_inactive(
        self,
        db: Session,
        target: str,
        current_keys: Iterable[str],
        current_session_id: Optional[str] = None,
    ) -> int:
        """
        Flip previously active services of a target to inactive.

        A key missing from ``current_keys`` has disappeared. When
        ``current_session_id`` is given, older rows for keys that are still
        present are superseded by the current session's row. Returns the
        number of rows flipped.
        """
        keys = set(current_keys)
        active = (
            db.query(DiscoveredService)
            .join(ScanSession, DiscoveredService.session_id == ScanSession.id)
            .filter(
                ScanSession.target == target,
                DiscoveredService.is_active.is_(True),
            )
            .all()
        )

        flipped = 0
        for service in active:
            key = f"{service.host_address}:{service.port}"
            if key not in keys:
                service.is_active = False
                flipped += 1
            elif current_session_id and service.session_id != current_session_id:
                service.is_active = False
                flipped += 1

        if flipped:
            logger.info("Marked %d services inactive for target %s", flipped, target)
        db.flush()
        return flipped

    def recover_pending_sessions(self, db: Session) -> Dict[str, int]:
        """
        Startup sweep for sessions a previous process left pending or running.

        ``requeue`` mode puts pending sessions back on the queue and fails the
        interrupted running ones; ``fail`` mode fails both.
        """
        mode = settings.SCAN_RECOVERY_MODE
        stale = (
            db.query(ScanSession)
            .filter(ScanSession.status.in_([ScanStatus.PENDING.value, ScanStatus.RUNNING.value]))
            .order_by(ScanSession.started_at.asc())
            .all()
        )

        requeued = failed = 0
        for session in stale:
            if session.status == ScanStatus.PENDING.value and mode == "requeue":
                self.enqueue(session)
                requeued += 1
            else:
                self._transition(session, ScanStatus.FAILED, "Interrupted by service restart")
                failed += 1
        db.commit()

        if stale:
            logger.info("Recovered scan sessions: %d requeued, %d failed", requeued, failed)
        return {"requeued": requeued, "failed": failed}


scan_queue_service = ScanQueueService()

__all__ = ["scan_queue_service", "ScanQueueService", "ScanRequest"]
