"""Sequencing of device self-tests."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from svcmode.core.errors import TransportError, UnsupportedTestError
from svcmode.core.manifest import Manifest
from svcmode.core.model import (
    Command,
    CommandOutcome,
    CommandResult,
    SessionState,
    TestResult,
    TestRunReport,
    TestStatus,
)
from svcmode.core.phase import PhaseMachine
from svcmode.core.timeouts import TimeoutPolicy

LOGGER = logging.getLogger(__name__)

Executor = Callable[[Command, float], Awaitable[CommandResult]]
LogSink = Callable[[str], None]


class TestOrchestrator:
    """Runs tests one at a time; the device is single-threaded over one line."""

    __test__ = False

    def __init__(
        self,
        execute: Executor,
        machine: PhaseMachine,
        state: SessionState,
        timeouts: TimeoutPolicy,
        log: LogSink | None = None,
    ) -> None:
        self._execute = execute
        self._machine = machine
        self._state = state
        self._timeouts = timeouts
        self._log = log or (lambda line: None)

    def available_tests(self) -> tuple[str, ...]:
        manifest = self._state.manifest
        return manifest.supported_tests if manifest else ()

    def _require_supported(self, name: str) -> Manifest:
        manifest = self._state.manifest
        if manifest is None:
            raise UnsupportedTestError(
                f"Cannot run test '{name}': no device manifest loaded. Fetch the manifest first."
            )
        if not manifest.supports_test(name):
            supported = ", ".join(manifest.supported_tests) or "<none>"
            raise UnsupportedTestError(
                f"Device does not support test '{name}'. Supported: {supported}"
            )
        return manifest

    async def run_test(self, name: str, data: Mapping[str, Any] | None = None) -> TestResult:
        self._require_supported(name)
        self._machine.require_command_ready(f"test_{name}")
        return await self._run(name, data, self._timeouts.test_timeout(name))

    async def test_wifi(self, ssid: str | None = None, password: str | None = None) -> TestResult:
        data = {k: v for k, v in (("ssid", ssid), ("password", password)) if v is not None}
        return await self.run_test("wifi", data or None)

    async def test_all(
        self,
        test_data: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> TestRunReport:
        """Run every supported test in manifest order.

        The sequence has its own budget; each test gets the smaller of its
        own timeout and what is left. A session that drops out of service mode
        ends the run early and the tests run so far are still reported.
        """
        manifest = self._state.manifest
        if manifest is None:
            raise UnsupportedTestError("Cannot run tests: no device manifest loaded")
        self._machine.require_command_ready("test_all")

        names = [name for name in manifest.supported_tests if name != "all"]
        test_data = test_data or {}
        started = time.monotonic()
        deadline = started + self._timeouts.test_all
        results: dict[str, TestResult] = {}
        aborted_reason: str | None = None

        for name in names:
            if not self._machine.can_send_commands:
                aborted_reason = (
                    f"Session left service mode ({self._machine.phase.display_name}) "
                    f"before '{name}'"
                )
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                aborted_reason = f"Test run exceeded {self._timeouts.test_all:g}s"
                break

            timeout = min(self._timeouts.test_timeout(name), remaining)
            try:
                results[name] = await self._run(name, test_data.get(name), timeout)
            except TransportError as exc:
                results[name] = self._state.test_results[name]
                aborted_reason = f"Transport failed during '{name}': {exc}"
                break

        skipped = tuple(name for name in names if name not in results)
        if aborted_reason:
            self._log(f"[WARN] Test run stopped: {aborted_reason}")
            LOGGER.warning("Test run stopped: %s", aborted_reason)
            for name in skipped:
                self._finish(name, TestStatus.SKIPPED, aborted_reason, None, 0.0)

        return TestRunReport(
            results=results,
            skipped=skipped,
            aborted=aborted_reason is not None,
            reason=aborted_reason,
            duration_s=time.monotonic() - started,
        )

    async def run_device_test_all(
        self,
        wifi_ssid: str | None = None,
        wifi_password: str | None = None,
    ) -> TestResult:
        """Ask the firmware to run its own full test suite in one command."""
        self._machine.require_command_ready("test_all")
        self._log("[TEST] Running test_all on device...")
        self._state.update_test_result(TestResult(name="all", status=TestStatus.RUNNING))

        command = Command.test_all(wifi_ssid=wifi_ssid, wifi_password=wifi_password)
        result = await self._execute(command, self._timeouts.test_all)
        data = result.data or {}

        for key, value in data.items():
            if key.endswith("_ok") and isinstance(value, bool):
                self._state.update_test_result(
                    TestResult(
                        name=key[: -len("_ok")],
                        status=TestStatus.PASSED if value else TestStatus.FAILED,
                    )
                )

        passed = result.ok and data.get("all_passed") is True
        return self._finish(
            "all",
            TestStatus.PASSED if passed else TestStatus.FAILED,
            result.reason,
            result.data,
            result.elapsed_s,
        )

    async def _run(
        self,
        name: str,
        data: Mapping[str, Any] | None,
        timeout: float,
    ) -> TestResult:
        self._log(f"[TEST] Running test_{name}...")
        self._state.update_test_result(TestResult(name=name, status=TestStatus.RUNNING))
        try:
            result = await self._execute(Command.test(name, data), timeout)
        except TransportError as exc:
            self._finish(name, TestStatus.FAILED, str(exc), None, 0.0)
            raise

        if result.ok:
            status = TestStatus.PASSED
        else:
            status = TestStatus.FAILED
        message = result.reason
        if result.outcome is CommandOutcome.TIMEOUT:
            message = f"Timeout waiting for response after {timeout:g}s"
        return self._finish(name, status, message, result.data, result.elapsed_s)

    def _finish(
        self,
        name: str,
        status: TestStatus,
        message: str | None,
        data: Mapping[str, Any] | None,
        duration_s: float,
    ) -> TestResult:
        result = TestResult(
            name=name,
            status=status,
            message=message,
            data=data,
            duration_s=duration_s,
        )
        self._state.update_test_result(result)
        self._log(f"[TEST] {name}: {status.value}" + (f" ({message})" if message else ""))
        return result
