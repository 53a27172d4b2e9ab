"""Domain-specific errors for kmctl."""


class KmctlError(Exception):
    """Base error for kmctl."""


class MachineConfigError(KmctlError):
    """Raised when a machine entry does not conform to schema or semantics."""


class MachineSelectionError(KmctlError):
    """Raised when a machine name cannot be resolved to a single record."""


class TransportError(KmctlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when the automation endpoint cannot be reached."""


class ClipboardReadError(KmctlError):
    """Raised when an exported clipboard file exists but cannot be read."""


class SetupSessionError(KmctlError):
    """Raised when a setup session id is unknown or has expired."""
