"""Error types shared by the discovery and address-space services.

Caller input problems derive from ``ValueError`` so the API layer can turn
them into 400 responses the same way it handles parser validation errors.
"""


class InventoryValidationError(ValueError):
    """Raised when caller supplied data cannot be accepted."""


class InvalidTargetError(InventoryValidationError):
    """Raised when a scan target string cannot be expanded into hosts."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"Invalid scan target '{target}': {reason}")
        self.target = target
        self.reason = reason


class SubnetNotFoundError(LookupError):
    """Raised when an address-space query names a subnet that does not exist."""

    def __init__(self, subnet_id: int) -> None:
        super().__init__(f"Subnet {subnet_id} not found")
        self.subnet_id = subnet_id
