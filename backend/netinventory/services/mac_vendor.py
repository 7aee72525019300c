import logging
import re
from typing import Optional

from mac_vendor_lookup import MacLookup

from netinventory.core.config import settings

logger = logging.getLogger(__name__)

_MAC_PATTERN = re.compile(r"^[0-9A-F]{12}$")


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """Upper-case colon form (AA:BB:CC:DD:EE:FF); None for blank input."""
    if mac is None or not mac.strip():
        return None
    digits = re.sub(r"[^0-9A-Fa-f]", "", mac).upper()
    if not _MAC_PATTERN.match(digits):
        raise ValueError(f"'{mac}' is not a valid MAC address")
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


class MacVendorLookup:
    """OUI vendor lookup; disabled unless MAC_VENDOR_LOOKUP_ENABLED is set."""

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.MAC_VENDOR_LOOKUP_ENABLED if enabled is None else enabled
        self._lookup: Optional[MacLookup] = None

    def lookup(self, mac: Optional[str]) -> Optional[str]:
        if not self.enabled or not mac:
            return None
        try:
            if self._lookup is None:
                self._lookup = MacLookup()
            return self._lookup.lookup(mac)
        except Exception as e:
            logger.debug("Could not determine vendor for MAC %s: %s", mac, e)
            return None


mac_vendor_lookup = MacVendorLookup()
