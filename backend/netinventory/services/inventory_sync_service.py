"""Feed the hosts found by a completed scan session into the device inventory."""

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from netinventory.core.exceptions import InventoryValidationError
from netinventory.db.models import DiscoveredService, DiscoverySource, ScanSession, ScanStatus
from netinventory.schemas import schemas
from netinventory.services.ip_management_service import IpManagementService
from netinventory.services.subnet_calculator import SubnetCalculator

logger = logging.getLogger(__name__)


class InventorySyncService:
    def __init__(self, db: Session):
        self.db = db
        self.ip_management = IpManagementService(db)

    def sync_session(self, session_id: str) -> Optional[Dict[str, object]]:
        """
        Reconcile one observation per host of a completed session.

        Returns None for an unknown session. Hosts that are not IPv4 literals
        (hostname targets) are skipped since devices are keyed by address.
        """
        session = self.db.get(ScanSession, session_id)
        if not session:
            return None
        if session.status != ScanStatus.COMPLETED.value:
            raise InventoryValidationError(f"Scan session {session_id} is {session.status}, not completed")

        by_host: Dict[str, List[DiscoveredService]] = defaultdict(list)
        for service in (
            self.db.query(DiscoveredService)
            .filter(DiscoveredService.session_id == session_id)
            .all()
        ):
            by_host[service.host_address].append(service)

        created = updated = 0
        for host, services in sorted(by_host.items(), key=lambda item: SubnetCalculator.ip_sort_key(item[0])):
            if not SubnetCalculator.is_ipv4(host):
                logger.debug("Skipping inventory sync for non-IP host %s", host)
                continue

            existed = self.ip_management.get_device_by_ip(host) is not None
            self.ip_management.reconcile_device(self._observation_for(host, services))
            if existed:
                updated += 1
            else:
                created += 1

        logger.info(
            "Synced scan session %s into inventory: %d created, %d updated",
            session_id,
            created,
            updated,
        )
        return {
            "session_id": session_id,
            "hosts": len(by_host),
            "devices_created": created,
            "devices_updated": updated,
        }

    @staticmethod
    def _observation_for(host: str, services: List[DiscoveredService]) -> schemas.DeviceObservation:
        hostname = next(
            (s.host_name for s in services if s.host_name and s.host_name != host),
            None,
        )
        latencies = [s.response_time_ms for s in services if s.response_time_ms is not None]
        return schemas.DeviceObservation(
            ip_address=host,
            hostname=hostname,
            open_ports=sorted({s.port for s in services}),
            response_time_ms=min(latencies) if latencies else None,
            source=DiscoverySource.NETWORK_SCAN,
        )
