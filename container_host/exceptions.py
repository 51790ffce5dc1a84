"""Custom exceptions for container-host."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigurationError(ManagerError):
    """Malformed configuration value (ports, sizes, config file)."""


class AcquisitionError(ManagerError):
    """Image download failed (network error, bad HTTP status, short read)."""


class DecompressionError(ManagerError):
    """Every decompression strategy failed."""


class CryptoError(ManagerError):
    """SSH key generation or validation failed."""


class FilesystemError(ManagerError):
    """Create/read/write/permission failure on a managed path."""


class SerializationError(ManagerError):
    """Ignition document failed its round-trip check."""


class SpawnError(ManagerError):
    """QEMU binary missing or the process failed to start."""


class HypervisorExitError(ManagerError):
    """The foreground QEMU process exited with a non-zero status."""

    def __init__(self, message: str, returncode: int) -> None:
        super().__init__(message)
        self.returncode = returncode


class OperationCancelled(ManagerError):
    """A blocking operation was interrupted by a cancellation request."""
