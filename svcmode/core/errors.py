"""Domain-specific errors for svcmode."""


class SvcModeError(Exception):
    """Base error for svcmode."""


class ConfigError(SvcModeError):
    """Raised when the configuration file cannot be read or is invalid."""


class ManifestValidationError(SvcModeError):
    """Raised when a device manifest does not conform to schema or semantics."""


class InvalidTransitionError(SvcModeError):
    """Raised when the phase machine is asked for a transition it does not allow."""


class SessionBusyError(SvcModeError):
    """Raised when a second connection is attempted while one is active."""


class NotReadyError(SvcModeError):
    """Raised when a command is issued outside of service mode."""


class CommandInFlightError(SvcModeError):
    """Raised when a command is issued while another is still outstanding."""


class UnsupportedTestError(SvcModeError):
    """Raised when a test is not listed in the device manifest."""


class UnsupportedCommandError(SvcModeError):
    """Raised when a custom command is not declared by the device manifest."""


class CommandValidationError(SvcModeError):
    """Raised when command data is missing required fields or has bad values."""


class TransportError(SvcModeError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when the serial port cannot be opened."""


class TransportSendError(TransportError):
    """Raised when writing to or reading from the port fails."""


class TransportClosedError(TransportError):
    """Raised when the port closes underneath an active session."""
