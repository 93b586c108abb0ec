"""Device error codes and their operator-facing descriptions."""

from __future__ import annotations

PARSE_ERROR = "parse_error"
INVALID_COMMAND = "invalid_command"
UNKNOWN_COMMAND = "unknown_command"
UNSUPPORTED_COMMAND = "unsupported_command"
MISSING_DATA = "missing_data"
MISSING_FIELDS = "missing_fields"
STORAGE_ERROR = "storage_error"
WIFI_INIT_FAILED = "wifi_init_failed"
WIFI_CONNECT_FAILED = "wifi_connect_failed"
WIFI_TIMEOUT = "wifi_timeout"
NO_WIFI_CONFIG = "no_wifi_config"
NO_NETWORK = "no_network"
NOT_CONFIGURED = "not_configured"
NOT_PROVISIONED = "not_provisioned"
REQUEST_FAILED = "request_failed"
WINDOW_EXPIRED = "window_expired"
NOT_IN_SERVICE_MODE = "not_in_service_mode"
RFID_COMM_FAILED = "rfid_comm_failed"
AUDIO_FAILED = "audio_failed"
BUTTON_TIMEOUT = "button_timeout"

_DESCRIPTIONS = {
    PARSE_ERROR: "Invalid JSON received",
    INVALID_COMMAND: "Missing command field",
    UNKNOWN_COMMAND: "Unrecognized command",
    UNSUPPORTED_COMMAND: "Command not supported by this device",
    MISSING_DATA: "Command requires data field",
    MISSING_FIELDS: "Required fields missing",
    STORAGE_ERROR: "Failed to store data",
    WIFI_INIT_FAILED: "Wi-Fi initialization failed",
    WIFI_CONNECT_FAILED: "Failed to connect to Wi-Fi",
    WIFI_TIMEOUT: "Wi-Fi connection timed out",
    NO_WIFI_CONFIG: "No Wi-Fi credentials configured",
    NO_NETWORK: "No network connection",
    NOT_CONFIGURED: "Cloud credentials not configured",
    NOT_PROVISIONED: "Device not provisioned",
    REQUEST_FAILED: "Network request failed",
    WINDOW_EXPIRED: "Service mode entry window expired",
    NOT_IN_SERVICE_MODE: "Command only valid in service mode",
    RFID_COMM_FAILED: "RFID module communication failed",
    AUDIO_FAILED: "Audio test failed",
    BUTTON_TIMEOUT: "Button press not detected",
}

# The session cannot continue after these; everything else leaves it usable.
_FATAL = frozenset({WINDOW_EXPIRED, NOT_IN_SERVICE_MODE})


def known_codes() -> tuple[str, ...]:
    return tuple(_DESCRIPTIONS)


def describe(code: str | None) -> str:
    """Return the description for ``code``; unknown codes come back verbatim."""
    if code is None:
        return "Unknown error"
    return _DESCRIPTIONS.get(code, code)


def is_fatal(code: str | None) -> bool:
    return code in _FATAL


def is_recoverable(code: str | None) -> bool:
    return not is_fatal(code)
