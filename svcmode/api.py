"""Stable public API for building tooling on top of svcmode.

This module is the supported integration surface for third-party callers
(factory stations, GUIs, scripts). Avoid importing from internal modules
unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from svcmode.core.config import ServiceModeConfig, load_config
from svcmode.core.errors import (
    CommandInFlightError,
    CommandValidationError,
    ConfigError,
    InvalidTransitionError,
    ManifestValidationError,
    NotReadyError,
    SessionBusyError,
    SvcModeError,
    TransportClosedError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    UnsupportedCommandError,
    UnsupportedTestError,
)
from svcmode.core.manifest import CustomCommand, DeviceCapabilities, Manifest
from svcmode.core.model import (
    Command,
    CommandOutcome,
    CommandResult,
    DetectedPort,
    DeviceInfo,
    EventKind,
    Message,
    Phase,
    SessionEvent,
    SessionState,
    Status,
    TestResult,
    TestRunReport,
    TestStatus,
)
from svcmode.core.session import ServiceModeSession
from svcmode.core.timeouts import TimeoutPolicy
from svcmode.transports.base import Transport
from svcmode.transports.serial_port import SerialTransport, list_ports

__all__ = [
    "SvcModeError",
    "ConfigError",
    "ManifestValidationError",
    "InvalidTransitionError",
    "SessionBusyError",
    "NotReadyError",
    "CommandInFlightError",
    "UnsupportedTestError",
    "UnsupportedCommandError",
    "CommandValidationError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportClosedError",
    "Command",
    "CommandOutcome",
    "CommandResult",
    "CustomCommand",
    "DetectedPort",
    "DeviceCapabilities",
    "DeviceInfo",
    "EventKind",
    "Manifest",
    "Message",
    "Phase",
    "SessionEvent",
    "SessionState",
    "Status",
    "TestResult",
    "TestRunReport",
    "TestStatus",
    "ServiceModeConfig",
    "TimeoutPolicy",
    "Transport",
    "SerialTransport",
    "ServiceModeSession",
    "DeviceSnapshot",
    "create_session",
    "list_ports",
    "load_config",
    "snapshot",
]


@dataclass(frozen=True)
class DeviceSnapshot:
    """What the session currently knows about the connected device."""

    port: str | None
    phase: Phase
    device_info: DeviceInfo | None
    manifest: Manifest | None
    test_results: dict[str, TestResult]


def create_session(
    *,
    config_path: str | Path | None = None,
    transport: Transport | None = None,
) -> ServiceModeSession:
    """Build a session from the user's configuration file.

    Without ``transport`` the session talks to a real serial port.
    """
    config = load_config(config_path)
    return ServiceModeSession(transport, config=config)


def snapshot(session: ServiceModeSession) -> DeviceSnapshot:
    state = session.state
    return DeviceSnapshot(
        port=state.selected_port,
        phase=session.phase,
        device_info=state.device_info,
        manifest=state.manifest,
        test_results=dict(state.test_results),
    )
