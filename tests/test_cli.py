from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import HUB_MANIFEST, HUB_STATUS
from svcmode import cli
from svcmode.core.errors import UnsupportedTestError
from svcmode.core.manifest import Manifest
from svcmode.core.model import (
    Command,
    CommandOutcome,
    CommandResult,
    DetectedPort,
    DeviceInfo,
    EventKind,
    Message,
    SessionEvent,
    SessionState,
    Status,
    TestResult,
    TestRunReport,
    TestStatus,
)


def _ok(command: Command, message: str = "done") -> CommandResult:
    return CommandResult(
        command,
        CommandOutcome.SUCCESS,
        response=Message(Status.OK, message),
        reason=message,
    )


class FakeSession:
    instances: list[FakeSession] = []
    enters_service_mode = True

    def __init__(self, transport=None, *, config=None) -> None:
        self.config = config
        self.state = SessionState()
        self.listeners = []
        self.calls: list[tuple] = []
        self.connected_port: str | None = None
        self.closed = False
        FakeSession.instances.append(self)

    async def __aenter__(self) -> FakeSession:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.closed = True

    def add_listener(self, listener) -> None:
        self.listeners.append(listener)

    async def connect(self, port, *, monitor_only=False, enter_service_mode=True) -> bool:
        self.connected_port = port
        if monitor_only:
            for listener in self.listeners:
                listener(SessionEvent(EventKind.LOG, "[RX] I (42) boot: hello"))
                listener(SessionEvent(EventKind.LOG, "[INFO] Monitoring"))
            return True
        if not self.enters_service_mode:
            self.state.error_message = "Service mode entry window expired"
        return self.enters_service_mode

    async def get_status(self) -> DeviceInfo:
        return DeviceInfo.from_json(HUB_STATUS)

    async def get_manifest(self) -> Manifest:
        return Manifest.from_device_json(HUB_MANIFEST)

    async def run_test(self, name, data=None) -> TestResult:
        self.calls.append(("run_test", name, data))
        if name == "button":
            raise UnsupportedTestError("Device does not support test 'button'. Supported: wifi, rfid")
        return TestResult(name=name, status=TestStatus.PASSED)

    async def test_all(self, test_data=None) -> TestRunReport:
        self.calls.append(("test_all", test_data))
        return TestRunReport(
            results={
                "wifi": TestResult("wifi", TestStatus.FAILED, "Timeout waiting for response after 45s"),
                "rfid": TestResult("rfid", TestStatus.PASSED),
            }
        )

    async def run_device_test_all(self, wifi_ssid=None, wifi_password=None) -> TestResult:
        self.calls.append(("run_device_test_all", wifi_ssid, wifi_password))
        self.state.update_test_result(TestResult("wifi", TestStatus.PASSED))
        result = TestResult("all", TestStatus.PASSED)
        self.state.update_test_result(result)
        return result

    async def provision(self, unit_id, **options) -> CommandResult:
        self.calls.append(("provision", unit_id, options))
        return _ok(Command.provision(unit_id), "Device provisioned")

    async def customer_reset(self) -> CommandResult:
        self.calls.append(("customer_reset",))
        return _ok(Command.customer_reset())

    async def factory_reset(self) -> CommandResult:
        self.calls.append(("factory_reset",))
        return _ok(Command.factory_reset())

    async def reboot(self) -> CommandResult:
        self.calls.append(("reboot",))
        return CommandResult(Command.reboot(), CommandOutcome.TIMEOUT, reason="No response to 'reboot' after 10s (timed out)")

    async def run_custom_command(self, name, arguments=None) -> CommandResult:
        self.calls.append(("command", name, arguments))
        return _ok(Command.custom(name, arguments))


runner = CliRunner()


@pytest.fixture(autouse=True)
def fake_session(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> type[FakeSession]:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    monkeypatch.setattr(cli, "ServiceModeSession", FakeSession)
    monkeypatch.setattr(cli, "_configure_logging", lambda level: None)
    monkeypatch.setattr(FakeSession, "instances", [])
    monkeypatch.setattr(FakeSession, "enters_service_mode", True)
    return FakeSession


def _session() -> FakeSession:
    assert len(FakeSession.instances) == 1
    return FakeSession.instances[0]


def test_ports_command(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        cli, "list_ports", lambda: [DetectedPort("/dev/ttyUSB0", "CP2102 USB to UART", "USB")]
    )
    result = runner.invoke(cli.app, ["ports"])
    assert result.exit_code == 0
    assert "/dev/ttyUSB0  CP2102 USB to UART" in result.stdout


def test_ports_command_with_nothing_attached(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "list_ports", lambda: [])
    result = runner.invoke(cli.app, ["ports"])
    assert result.exit_code == 0
    assert "No serial ports found" in result.stdout


def test_status_command() -> None:
    result = runner.invoke(cli.app, ["status", "/dev/ttyUSB0"])
    assert result.exit_code == 0
    assert "Unit: SV-HUB-000042" in result.stdout
    assert "Firmware: 1.4.2" in result.stdout
    assert _session().connected_port == "/dev/ttyUSB0"
    assert _session().closed


def test_entry_failure_is_clean_error(fake_session: type[FakeSession]) -> None:
    fake_session.enters_service_mode = False
    result = runner.invoke(cli.app, ["status", "/dev/ttyUSB0"])
    assert result.exit_code == 1
    assert "Error: Service mode entry window expired" in result.stderr
    assert "Traceback" not in result.stderr


def test_manifest_command_prints_json() -> None:
    result = runner.invoke(cli.app, ["manifest", "/dev/ttyUSB0"])
    assert result.exit_code == 0
    assert '"device_name": "Saturday Hub"' in result.stdout


def test_named_tests_pass_wifi_credentials() -> None:
    result = runner.invoke(
        cli.app, ["test", "/dev/ttyUSB0", "wifi", "rfid", "--wifi-ssid", "Shop", "--wifi-password", "pw"]
    )
    assert result.exit_code == 0
    assert "wifi: passed" in result.stdout
    assert _session().calls == [
        ("run_test", "wifi", {"ssid": "Shop", "password": "pw"}),
        ("run_test", "rfid", None),
    ]


def test_test_all_reports_failures_with_exit_code() -> None:
    result = runner.invoke(cli.app, ["test", "/dev/ttyUSB0", "--all"])
    assert result.exit_code == 1
    assert "wifi: failed (Timeout waiting for response after 45s)" in result.stdout
    assert "1 passed, 1 failed" in result.stdout


def test_device_side_test_all() -> None:
    result = runner.invoke(cli.app, ["test", "/dev/ttyUSB0", "--device-all", "--wifi-ssid", "Shop"])
    assert result.exit_code == 0
    assert "wifi: passed" in result.stdout
    assert "all: passed" in result.stdout
    assert _session().calls == [("run_device_test_all", "Shop", None)]


def test_unsupported_test_error_is_clean() -> None:
    result = runner.invoke(cli.app, ["test", "/dev/ttyUSB0", "button"])
    assert result.exit_code == 1
    assert "Error: Device does not support test 'button'" in result.stderr


def test_provision_command() -> None:
    result = runner.invoke(
        cli.app, ["provision", "/dev/ttyUSB0", "SV-HUB-000123", "--cloud-url", "https://cloud.example.com"]
    )
    assert result.exit_code == 0
    assert "OK: Device provisioned" in result.stdout
    name, unit_id, options = _session().calls[0]
    assert unit_id == "SV-HUB-000123"
    assert options["cloud_url"] == "https://cloud.example.com"


def test_reset_defaults_to_customer_reset() -> None:
    assert runner.invoke(cli.app, ["reset", "/dev/ttyUSB0"]).exit_code == 0
    assert _session().calls == [("customer_reset",)]


def test_factory_reset() -> None:
    assert runner.invoke(cli.app, ["reset", "/dev/ttyUSB0", "--factory"]).exit_code == 0
    assert _session().calls == [("factory_reset",)]


def test_reboot_timeout_is_reported() -> None:
    result = runner.invoke(cli.app, ["reboot", "/dev/ttyUSB0"])
    assert result.exit_code == 1
    assert "timed out" in result.stderr


def test_custom_command_arguments_pass_through_as_text() -> None:
    result = runner.invoke(
        cli.app,
        ["command", "/dev/ttyUSB0", "set_led", "--arg", "brightness=40", "--arg", "on=true", "--arg", "color=red"],
    )
    assert result.exit_code == 0
    assert _session().calls == [("command", "set_led", {"brightness": "40", "on": "true", "color": "red"})]


def test_numeric_looking_argument_stays_text() -> None:
    result = runner.invoke(cli.app, ["command", "/dev/ttyUSB0", "set_label", "--arg", "label=123"])
    assert result.exit_code == 0
    assert _session().calls == [("command", "set_label", {"label": "123"})]


def test_bracketed_argument_is_not_parsed() -> None:
    result = runner.invoke(cli.app, ["command", "/dev/ttyUSB0", "set_led", "--arg", "color=[oops"])
    assert result.exit_code == 0
    assert result.exception is None
    assert _session().calls == [("command", "set_led", {"color": "[oops"})]


def test_custom_command_rejects_malformed_argument() -> None:
    result = runner.invoke(cli.app, ["command", "/dev/ttyUSB0", "set_led", "--arg", "brightness"])
    assert result.exit_code == 2
    assert FakeSession.instances == []


def test_monitor_prints_raw_lines() -> None:
    result = runner.invoke(cli.app, ["monitor", "/dev/ttyUSB0", "--duration", "0"])
    assert result.exit_code == 0
    assert "I (42) boot: hello" in result.stdout
    assert "[INFO]" not in result.stdout


def test_bad_config_path_is_clean_error(tmp_path: Path) -> None:
    result = runner.invoke(cli.app, ["--config", str(tmp_path / "missing.yaml"), "status", "/dev/ttyUSB0"])
    assert result.exit_code == 1
    assert "Error: Config path does not exist" in result.stderr
