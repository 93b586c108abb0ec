"""Core data models used across the codec, session, orchestrator, and CLI."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from svcmode.core.manifest import Manifest


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING_FOR_DEVICE = "waiting_for_device"
    ENTERING_SERVICE_MODE = "entering_service_mode"
    IN_SERVICE_MODE = "in_service_mode"
    MONITORING = "monitoring"
    EXECUTING_COMMAND = "executing_command"
    ERROR = "error"

    @property
    def display_name(self) -> str:
        return _PHASE_NAMES[self]

    @property
    def is_connected(self) -> bool:
        return self not in (Phase.DISCONNECTED, Phase.CONNECTING)

    @property
    def is_busy(self) -> bool:
        return self in (
            Phase.CONNECTING,
            Phase.WAITING_FOR_DEVICE,
            Phase.ENTERING_SERVICE_MODE,
            Phase.EXECUTING_COMMAND,
        )

    @property
    def can_send_commands(self) -> bool:
        return self in (Phase.IN_SERVICE_MODE, Phase.EXECUTING_COMMAND)


_PHASE_NAMES = {
    Phase.DISCONNECTED: "Disconnected",
    Phase.CONNECTING: "Connecting...",
    Phase.WAITING_FOR_DEVICE: "Waiting for Device",
    Phase.ENTERING_SERVICE_MODE: "Entering Service Mode",
    Phase.IN_SERVICE_MODE: "Service Mode Active",
    Phase.MONITORING: "Monitoring",
    Phase.EXECUTING_COMMAND: "Executing Command",
    Phase.ERROR: "Error",
}


class Status(str, Enum):
    OK = "ok"
    ERROR = "error"
    SERVICE_MODE = "service_mode"
    PROVISIONED = "provisioned"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: str | None) -> Status:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Message:
    """One decoded line of device output."""

    status: Status
    message: str | None = None
    data: Mapping[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_beacon(self) -> bool:
        return self.status is Status.SERVICE_MODE

    @property
    def is_success(self) -> bool:
        return self.status in (Status.OK, Status.PROVISIONED)

    @property
    def is_error(self) -> bool:
        return self.status in (Status.ERROR, Status.FAILED)

    @property
    def error_code(self) -> str | None:
        if not self.data:
            return None
        code = self.data.get("error_code")
        return code if isinstance(code, str) else None


@dataclass(frozen=True)
class Command:
    """Outbound request. ``data`` is frozen into a read-only mapping."""

    cmd: str
    data: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.data is not None:
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @classmethod
    def enter_service_mode(cls) -> Command:
        return cls("enter_service_mode")

    @classmethod
    def exit_service_mode(cls) -> Command:
        return cls("exit_service_mode")

    @classmethod
    def reboot(cls) -> Command:
        return cls("reboot")

    @classmethod
    def get_status(cls) -> Command:
        return cls("get_status")

    @classmethod
    def get_manifest(cls) -> Command:
        return cls("get_manifest")

    @classmethod
    def customer_reset(cls) -> Command:
        """Clear user data, keep provisioning."""
        return cls("customer_reset")

    @classmethod
    def factory_reset(cls) -> Command:
        """Full wipe including the unit id."""
        return cls("factory_reset")

    @classmethod
    def provision(
        cls,
        unit_id: str,
        *,
        cloud_url: str | None = None,
        cloud_anon_key: str | None = None,
        cloud_device_secret: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> Command:
        data: dict[str, Any] = {"unit_id": unit_id}
        if cloud_url is not None:
            data["cloud_url"] = cloud_url
        if cloud_anon_key is not None:
            data["cloud_anon_key"] = cloud_anon_key
        if cloud_device_secret is not None:
            data["cloud_device_secret"] = cloud_device_secret
        if extra:
            data.update(extra)
        return cls("provision", data)

    @classmethod
    def test(cls, name: str, data: Mapping[str, Any] | None = None) -> Command:
        return cls(f"test_{name}", data)

    @classmethod
    def test_wifi(cls, ssid: str | None = None, password: str | None = None) -> Command:
        data = {
            key: value
            for key, value in (("ssid", ssid), ("password", password))
            if value is not None
        }
        return cls.test("wifi", data or None)

    @classmethod
    def test_all(
        cls,
        wifi_ssid: str | None = None,
        wifi_password: str | None = None,
    ) -> Command:
        data = {
            key: value
            for key, value in (("wifi_ssid", wifi_ssid), ("wifi_password", wifi_password))
            if value is not None
        }
        return cls("test_all", data or None)

    @classmethod
    def custom(cls, name: str, data: Mapping[str, Any] | None = None) -> Command:
        return cls(name, data)


@dataclass(frozen=True)
class DeviceInfo:
    """Device details reported by a beacon or a ``get_status`` response."""

    device_type: str = "unknown"
    firmware_id: str | None = None
    firmware_version: str = "0.0.0"
    mac_address: str = ""
    unit_id: str | None = None
    cloud_configured: bool = False
    cloud_url: str | None = None
    wifi_configured: bool = False
    wifi_connected: bool = False
    wifi_ssid: str | None = None
    wifi_rssi: int | None = None
    ip_address: str | None = None
    bluetooth_enabled: bool | None = None
    thread_configured: bool | None = None
    thread_connected: bool | None = None
    free_heap: int | None = None
    uptime_ms: int | None = None
    battery_level: int | None = None
    battery_charging: bool | None = None
    last_tests: Mapping[str, bool] | None = None

    @property
    def is_provisioned(self) -> bool:
        return bool(self.unit_id)

    @classmethod
    def from_json(cls, doc: Mapping[str, Any]) -> DeviceInfo:
        last_tests = doc.get("last_tests")
        if isinstance(last_tests, Mapping):
            last_tests = {k: v for k, v in last_tests.items() if isinstance(v, bool)}
        else:
            last_tests = None

        return cls(
            device_type=_opt(doc, "device_type", str) or "unknown",
            firmware_id=_opt(doc, "firmware_id", str),
            firmware_version=_opt(doc, "firmware_version", str) or "0.0.0",
            mac_address=_opt(doc, "mac_address", str) or "",
            unit_id=_opt(doc, "unit_id", str),
            cloud_configured=bool(_opt(doc, "cloud_configured", bool)),
            cloud_url=_opt(doc, "cloud_url", str),
            wifi_configured=bool(_opt(doc, "wifi_configured", bool)),
            wifi_connected=bool(_opt(doc, "wifi_connected", bool)),
            wifi_ssid=_opt(doc, "wifi_ssid", str),
            wifi_rssi=_opt(doc, "wifi_rssi", int),
            ip_address=_opt(doc, "ip_address", str),
            bluetooth_enabled=_opt(doc, "bluetooth_enabled", bool),
            thread_configured=_opt(doc, "thread_configured", bool),
            thread_connected=_opt(doc, "thread_connected", bool),
            free_heap=_opt(doc, "free_heap", int),
            uptime_ms=_opt(doc, "uptime_ms", int),
            battery_level=_opt(doc, "battery_level", int),
            battery_charging=_opt(doc, "battery_charging", bool),
            last_tests=last_tests,
        )

    def merged_with(self, beacon: DeviceInfo) -> DeviceInfo:
        """Fold a beacon into previously known info.

        Beacons only report live connection state. Configuration flags from
        ``get_status`` are kept, and fields the beacon omits keep their value.
        """
        return DeviceInfo(
            device_type=beacon.device_type,
            firmware_id=beacon.firmware_id or self.firmware_id,
            firmware_version=beacon.firmware_version,
            mac_address=beacon.mac_address or self.mac_address,
            unit_id=beacon.unit_id if beacon.unit_id is not None else self.unit_id,
            cloud_configured=self.cloud_configured or beacon.cloud_configured,
            cloud_url=beacon.cloud_url or self.cloud_url,
            wifi_configured=self.wifi_configured or beacon.wifi_configured,
            wifi_connected=(
                beacon.wifi_connected if beacon.wifi_ssid is not None else self.wifi_connected
            ),
            wifi_ssid=_first(beacon.wifi_ssid, self.wifi_ssid),
            wifi_rssi=_first(beacon.wifi_rssi, self.wifi_rssi),
            ip_address=_first(beacon.ip_address, self.ip_address),
            bluetooth_enabled=_first(beacon.bluetooth_enabled, self.bluetooth_enabled),
            thread_configured=_first(self.thread_configured, beacon.thread_configured),
            thread_connected=_first(beacon.thread_connected, self.thread_connected),
            free_heap=_first(beacon.free_heap, self.free_heap),
            uptime_ms=_first(beacon.uptime_ms, self.uptime_ms),
            battery_level=_first(beacon.battery_level, self.battery_level),
            battery_charging=_first(beacon.battery_charging, self.battery_charging),
            last_tests=_first(beacon.last_tests, self.last_tests),
        )


def _opt(doc: Mapping[str, Any], key: str, kind: type) -> Any:
    value = doc.get(key)
    # bool is an int subclass; keep the two apart.
    if kind is int and isinstance(value, bool):
        return None
    return value if isinstance(value, kind) else None


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


class TestStatus(str, Enum):
    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_complete(self) -> bool:
        return self in (TestStatus.PASSED, TestStatus.FAILED, TestStatus.SKIPPED)


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    name: str
    status: TestStatus
    message: str | None = None
    data: Mapping[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)
    duration_s: float | None = None

    @property
    def passed(self) -> bool:
        return self.status is TestStatus.PASSED

    @property
    def failed(self) -> bool:
        return self.status is TestStatus.FAILED


class CommandOutcome(str, Enum):
    SUCCESS = "success"
    DEVICE_ERROR = "device_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CommandResult:
    command: Command
    outcome: CommandOutcome
    response: Message | None = None
    reason: str | None = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is CommandOutcome.SUCCESS

    @property
    def timed_out(self) -> bool:
        return self.outcome is CommandOutcome.TIMEOUT

    @property
    def data(self) -> Mapping[str, Any] | None:
        return self.response.data if self.response else None


@dataclass(frozen=True)
class TestRunReport:
    __test__ = False

    results: dict[str, TestResult]
    skipped: tuple[str, ...] = ()
    aborted: bool = False
    reason: str | None = None
    duration_s: float = 0.0

    @property
    def passed(self) -> bool:
        return (
            not self.aborted
            and not self.skipped
            and all(result.passed for result in self.results.values())
        )

    @property
    def passed_count(self) -> int:
        return sum(1 for result in self.results.values() if result.passed)

    @property
    def failed_count(self) -> int:
        return sum(1 for result in self.results.values() if result.failed)


@dataclass(frozen=True)
class DetectedPort:
    device: str
    description: str
    hwid: str


class EventKind(str, Enum):
    LOG = "log"
    BEACON = "beacon"
    MESSAGE = "message"
    PHASE = "phase"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class SessionState:
    """Aggregate state observed by callers. Only the session mutates it."""

    phase: Phase = Phase.DISCONNECTED
    selected_port: str | None = None
    manifest: Manifest | None = None
    device_info: DeviceInfo | None = None
    current_command: str | None = None
    test_results: dict[str, TestResult] = field(default_factory=dict)
    log_lines: list[str] = field(default_factory=list)
    error_message: str | None = None
    last_beacon_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return self.phase.is_connected

    @property
    def is_in_service_mode(self) -> bool:
        return self.phase is Phase.IN_SERVICE_MODE

    @property
    def is_fresh_device(self) -> bool:
        return self.device_info is not None and not self.device_info.is_provisioned

    @property
    def passed_test_count(self) -> int:
        return sum(1 for result in self.test_results.values() if result.passed)

    @property
    def failed_test_count(self) -> int:
        return sum(1 for result in self.test_results.values() if result.failed)

    def add_log(self, line: str) -> None:
        self.log_lines.append(line)

    def update_test_result(self, result: TestResult) -> None:
        self.test_results[result.name] = result

    def reset(self, *, preserve_logs: bool = True) -> None:
        self.phase = Phase.DISCONNECTED
        self.manifest = None
        self.device_info = None
        self.current_command = None
        self.test_results = {}
        self.error_message = None
        self.last_beacon_at = None
        if not preserve_logs:
            self.log_lines = []
