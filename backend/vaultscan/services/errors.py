class VaultScanError(Exception):
    """Base class for failures raised by the scan pipeline services."""
