"""Session façade: the only entry point callers use to talk to a device."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from typing import Any

from svcmode.core import error_codes
from svcmode.core.codec import decode, encode
from svcmode.core.config import ServiceModeConfig
from svcmode.core.correlator import CommandCorrelator
from svcmode.core.errors import (
    CommandValidationError,
    ManifestValidationError,
    NotReadyError,
    SessionBusyError,
    TransportClosedError,
    TransportError,
    UnsupportedCommandError,
)
from svcmode.core.manifest import Manifest
from svcmode.core.model import (
    Command,
    CommandOutcome,
    CommandResult,
    DeviceInfo,
    EventKind,
    Message,
    Phase,
    SessionEvent,
    SessionState,
    TestResult,
    TestRunReport,
)
from svcmode.core.orchestrator import TestOrchestrator
from svcmode.core.phase import PhaseMachine
from svcmode.core.timeouts import TimeoutPolicy
from svcmode.transports.base import Transport
from svcmode.transports.serial_port import SerialTransport

LOGGER = logging.getLogger(__name__)

SessionListener = Callable[[SessionEvent], None]


class ServiceModeSession:
    """One service-mode connection to one device.

    The session owns the transport exclusively. Inbound lines are handled in
    arrival order by a single reader task; outbound writes are serialized by a
    lock so the mode-entry retry loop and command sends never interleave.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        config: ServiceModeConfig | None = None,
        timeouts: TimeoutPolicy | None = None,
    ) -> None:
        self.config = config or ServiceModeConfig()
        self.timeouts = timeouts or self.config.timeouts
        self.transport = transport or SerialTransport(
            baudrate=self.config.baudrate,
            read_timeout_s=self.config.read_timeout_s,
        )
        self.state = SessionState()
        self.machine = PhaseMachine()
        self.machine.add_listener(self._on_phase_change)
        self.correlator = CommandCorrelator(self.machine, self.timeouts)
        self.tests = TestOrchestrator(
            self._execute_test_command,
            self.machine,
            self.state,
            self.timeouts,
            log=self._log,
        )

        self._listeners: list[SessionListener] = []
        self._write_lock = asyncio.Lock()
        self._opening = False
        self._reader_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._entry_ack: asyncio.Future[bool] | None = None
        self._beacon_waiters: list[asyncio.Future[DeviceInfo | None]] = []

    async def __aenter__(self) -> ServiceModeSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @property
    def phase(self) -> Phase:
        return self.machine.phase

    @property
    def manifest(self) -> Manifest | None:
        return self.state.manifest

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    # Connection lifecycle

    async def connect(
        self,
        port: str,
        *,
        monitor_only: bool = False,
        enter_service_mode: bool = True,
    ) -> bool:
        """Open ``port`` and, unless told otherwise, enter service mode at once.

        Mode entry starts right after the port opens because the device only
        accepts it during the first seconds after boot. Returns False when the
        entry window passes without an acknowledgment.
        """
        if self.machine.phase is Phase.ERROR:
            await self.disconnect()
        if self._opening or self.machine.phase is not Phase.DISCONNECTED:
            raise SessionBusyError(
                f"Session already active on {self.state.selected_port}. Disconnect first."
            )

        self._opening = True
        self.state.selected_port = port
        self.state.error_message = None
        try:
            await self.transport.open(port)
        except TransportError as exc:
            self._log(f"[ERROR] Failed to open {port}: {exc}")
            self.machine.transition(Phase.ERROR, reason=str(exc))
            raise
        finally:
            self._opening = False

        self.machine.transition(Phase.CONNECTING, reason=f"opened {port}")
        self._reader_task = asyncio.create_task(self._read_loop(), name="svcmode-reader")
        self.machine.transition(Phase.WAITING_FOR_DEVICE, reason="transport ready")
        self._log(f"[INFO] Connected to {port}")

        if monitor_only:
            self.start_monitoring()
            return True
        if not enter_service_mode:
            return True

        if not await self.enter_service_mode():
            return False
        await self.refresh()
        return True

    async def disconnect(self, *, preserve_logs: bool = True) -> None:
        """Stop retries, cancel any outstanding command, and close the port."""
        self.correlator.cancel("Disconnected")
        if self.machine.phase is not Phase.DISCONNECTED:
            self.machine.transition(Phase.DISCONNECTED, reason="disconnect requested")
        await self._stop_retry_loop()

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        try:
            await self.transport.close()
        except TransportError as exc:
            LOGGER.warning("Error while closing transport: %s", exc)

        if self.state.selected_port is not None:
            self._log("[INFO] Disconnected")
        self.state.reset(preserve_logs=preserve_logs)

    # Service mode entry

    async def enter_service_mode(self) -> bool:
        """Send ``enter_service_mode`` repeatedly until acknowledged or the window ends."""
        if self.machine.phase is not Phase.WAITING_FOR_DEVICE:
            raise NotReadyError(
                f"Cannot enter service mode from phase {self.machine.phase.display_name}"
            )

        window = self.timeouts.entry_window
        interval = self.timeouts.entry_retry_interval
        ack: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._entry_ack = ack
        self.machine.transition(Phase.ENTERING_SERVICE_MODE, reason="mode entry requested")
        self._log(
            f"[INFO] Sending enter_service_mode every {interval * 1000:g}ms for {window:g}s"
        )
        self._log("[INFO] Reboot the device now if it is not already booting")
        self._retry_task = asyncio.create_task(self._entry_retry_loop(), name="svcmode-entry")

        try:
            done, _ = await asyncio.wait({ack}, timeout=window)
        except asyncio.CancelledError:
            if self.machine.phase is Phase.ENTERING_SERVICE_MODE:
                self.machine.transition(Phase.WAITING_FOR_DEVICE, reason="entry cancelled")
            raise
        finally:
            self._entry_ack = None
            await self._stop_retry_loop()

        if not done:
            reason = error_codes.describe(error_codes.WINDOW_EXPIRED)
            self._log(f"[ERROR] {reason}; reboot the device and connect again")
            if self.machine.phase is Phase.ENTERING_SERVICE_MODE:
                self.machine.transition(Phase.ERROR, reason=reason)
            return False
        return ack.result()

    def cancel_service_mode_entry(self) -> None:
        if self.machine.phase is Phase.ENTERING_SERVICE_MODE:
            self._log("[INFO] Service mode entry cancelled")
            self.machine.transition(Phase.WAITING_FOR_DEVICE, reason="entry cancelled")

    async def _entry_retry_loop(self) -> None:
        payload = encode(Command.enter_service_mode())
        attempts = 0
        try:
            while True:
                async with self._write_lock:
                    # Checked under the lock so no send follows a phase change.
                    if self.machine.phase is not Phase.ENTERING_SERVICE_MODE:
                        return
                    attempts += 1
                    await self._write_unlocked(payload, log=False)
                await asyncio.sleep(self.timeouts.entry_retry_interval)
        except TransportError:
            return
        finally:
            LOGGER.debug("Mode-entry loop stopped after %d attempts", attempts)

    async def _stop_retry_loop(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # Monitoring

    def start_monitoring(self) -> None:
        """Watch device output without sending anything."""
        self.machine.transition(Phase.MONITORING, reason="monitor only")
        self._log("[INFO] Monitoring device output (not entering service mode)")

    def stop_monitoring(self) -> None:
        self.machine.transition(Phase.WAITING_FOR_DEVICE, reason="monitoring stopped")

    async def wait_for_beacon(self, timeout: float | None = None) -> DeviceInfo | None:
        if not self.machine.phase.is_connected or self.machine.phase is Phase.ERROR:
            raise NotReadyError("Cannot wait for a beacon without an active connection")

        waiter: asyncio.Future[DeviceInfo | None] = asyncio.get_running_loop().create_future()
        self._beacon_waiters.append(waiter)
        try:
            done, _ = await asyncio.wait(
                {waiter},
                timeout=self.timeouts.beacon_poll if timeout is None else timeout,
            )
        finally:
            with contextlib.suppress(ValueError):
                self._beacon_waiters.remove(waiter)
        return waiter.result() if done else None

    # Commands

    async def send_command(self, command: Command, *, timeout: float | None = None) -> CommandResult:
        """Send one command and wait for its response or timeout.

        Raises NotReadyError outside service mode and CommandInFlightError while
        another command is outstanding; neither writes anything.
        """
        async def send(payload: bytes) -> None:
            self.state.current_command = command.cmd
            await self._write(payload)

        try:
            result = await self.correlator.execute(command, send, timeout=timeout)
        finally:
            if self.correlator.pending_command is None:
                self.state.current_command = None

        if result.outcome is CommandOutcome.TIMEOUT:
            self._log(f"[TIMEOUT] No response for {command.cmd}")
        elif result.outcome is CommandOutcome.DEVICE_ERROR:
            self._log(f"[ERROR] {command.cmd} failed: {result.reason}")
        elif result.outcome is CommandOutcome.CANCELLED:
            self._log(f"[WARN] {command.cmd} cancelled: {result.reason}")
        return result

    async def _execute_test_command(self, command: Command, timeout: float) -> CommandResult:
        return await self.send_command(command, timeout=timeout)

    async def refresh(self) -> None:
        """Fetch status and manifest after entering service mode."""
        info = await self.get_status()
        if info is not None and info.is_provisioned:
            self._log(f"[INFO] Device is provisioned as {info.unit_id}")
        if not self.machine.can_send_commands:
            return
        try:
            manifest = await self.get_manifest()
        except ManifestValidationError as exc:
            self._log(f"[WARN] Device manifest rejected: {exc}")
            return
        if manifest is None:
            self._log("[WARN] Could not fetch device manifest")
        else:
            self._log(
                f"[INFO] Got device manifest: {manifest.device_name} v{manifest.firmware_version}"
            )

    async def get_status(self) -> DeviceInfo | None:
        result = await self.send_command(Command.get_status())
        if not result.ok or result.data is None:
            return None
        info = DeviceInfo.from_json(result.data)
        self.state.device_info = info
        return info

    async def get_manifest(self) -> Manifest | None:
        result = await self.send_command(Command.get_manifest())
        if not result.ok or result.data is None:
            return None
        manifest = Manifest.from_device_json(result.data)
        self.state.manifest = manifest
        return manifest

    async def provision(
        self,
        unit_id: str,
        *,
        cloud_url: str | None = None,
        cloud_anon_key: str | None = None,
        cloud_device_secret: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> CommandResult:
        """Write the unit identity and credentials to the device.

        Cloud settings the manifest asks for fall back to the configured
        values. Required fields are checked before anything is sent.
        """
        self.machine.require_command_ready("provision")
        manifest = self.state.manifest
        if manifest is not None:
            wanted = manifest.provisioning_fields.all_fields
            if cloud_url is None and "cloud_url" in wanted:
                cloud_url = self.config.cloud_url
            if cloud_anon_key is None and "cloud_anon_key" in wanted:
                cloud_anon_key = self.config.cloud_anon_key

        command = Command.provision(
            unit_id,
            cloud_url=cloud_url,
            cloud_anon_key=cloud_anon_key,
            cloud_device_secret=cloud_device_secret,
            extra=extra,
        )
        if manifest is not None:
            missing = [f for f in manifest.provisioning_fields.required if f not in command.data]
            if missing:
                raise CommandValidationError(
                    f"Provisioning requires {', '.join(missing)} for {manifest.device_name}"
                )

        result = await self.send_command(command)
        if result.ok:
            self._log(f"[INFO] Device provisioned as {unit_id}")
            await self.get_status()
        return result

    async def run_custom_command(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> CommandResult:
        manifest = self.state.manifest
        declared = manifest.custom_command(name) if manifest is not None else None
        if declared is None:
            available = ", ".join(sorted(manifest.custom_commands)) if manifest else ""
            raise UnsupportedCommandError(
                f"Device does not declare command '{name}'. Available: {available or '<none>'}"
            )
        command = declared.build(arguments)
        self._log(f"[INFO] Executing custom command: {name}")
        return await self.send_command(command, timeout=timeout)

    async def run_test(self, name: str, data: Mapping[str, Any] | None = None) -> TestResult:
        return await self.tests.run_test(name, data)

    async def test_wifi(self, ssid: str | None = None, password: str | None = None) -> TestResult:
        return await self.tests.test_wifi(ssid=ssid, password=password)

    async def test_all(
        self,
        test_data: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> TestRunReport:
        return await self.tests.test_all(test_data)

    async def run_device_test_all(
        self,
        wifi_ssid: str | None = None,
        wifi_password: str | None = None,
    ) -> TestResult:
        return await self.tests.run_device_test_all(wifi_ssid=wifi_ssid, wifi_password=wifi_password)

    async def exit_service_mode(self) -> CommandResult:
        return await self._send_then_disconnect(Command.exit_service_mode(), "Exited service mode")

    async def reboot(self) -> CommandResult:
        return await self._send_then_disconnect(Command.reboot(), "Device rebooting")

    async def customer_reset(self) -> CommandResult:
        return await self._send_then_disconnect(
            Command.customer_reset(), "Customer reset complete, device will reboot"
        )

    async def factory_reset(self) -> CommandResult:
        return await self._send_then_disconnect(
            Command.factory_reset(), "Factory reset complete, device will reboot"
        )

    async def _send_then_disconnect(self, command: Command, done_message: str) -> CommandResult:
        result = await self.send_command(command)
        if result.ok:
            self._log(f"[INFO] {done_message}")
            await self.disconnect()
        return result

    # Inbound path

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self.transport.read_line()
                if line is None:
                    raise TransportClosedError("Serial connection closed")
                self._handle_line(line)
        except TransportError as exc:
            self._fail(exc)
        except Exception as exc:
            LOGGER.exception("Reader task crashed")
            self._fail(TransportError(f"Reader failed: {exc}"))

    def _handle_line(self, line: str) -> None:
        self._log(f"[RX] {line}")
        message = decode(line)
        if message is None:
            return
        self._emit(EventKind.MESSAGE, message)

        if message.is_beacon:
            self._handle_beacon(message)
            return

        if self.machine.phase is Phase.ENTERING_SERVICE_MODE:
            if message.is_success:
                self._log("[INFO] Entered service mode")
                self.machine.transition(Phase.IN_SERVICE_MODE, reason="entry acknowledged")
            elif message.error_code == error_codes.WINDOW_EXPIRED:
                reason = error_codes.describe(message.error_code)
                self._log(f"[ERROR] {reason}")
                self.machine.transition(Phase.ERROR, reason=reason)
            return

        if not self.correlator.feed(message):
            LOGGER.debug("Unsolicited %s message: %s", message.status.value, message.message)

    def _handle_beacon(self, message: Message) -> None:
        # Updates cached info even mid-command; a beacon never resolves a command.
        self.state.last_beacon_at = message.timestamp
        if message.data is not None:
            beacon = DeviceInfo.from_json(message.data)
            previous = self.state.device_info
            self.state.device_info = previous.merged_with(beacon) if previous else beacon
        self._emit(EventKind.BEACON, self.state.device_info)

        for waiter in self._beacon_waiters:
            if not waiter.done():
                waiter.set_result(self.state.device_info)

        if self.machine.phase is Phase.ENTERING_SERVICE_MODE:
            self._log("[INFO] Device already in service mode")
            self.machine.transition(Phase.IN_SERVICE_MODE, reason="beacon received")

    # Outbound path

    async def _write(self, payload: bytes) -> None:
        async with self._write_lock:
            await self._write_unlocked(payload)

    async def _write_unlocked(self, payload: bytes, *, log: bool = True) -> None:
        if log:
            self._log(f"[TX] {payload.decode('utf-8').rstrip()}")
        try:
            await self.transport.write(payload)
        except TransportError as exc:
            self._fail(exc)
            raise

    # Bookkeeping

    def _fail(self, exc: TransportError) -> None:
        if self.machine.phase is Phase.DISCONNECTED:
            return
        reason = str(exc)
        LOGGER.error("Transport failure: %s", reason)
        self._log(f"[ERROR] {reason}")
        self.correlator.cancel(f"Transport failed: {reason}")
        self.machine.transition(Phase.ERROR, reason=reason)

    def _on_phase_change(self, previous: Phase, current: Phase, reason: str | None) -> None:
        self.state.phase = current
        if current is Phase.ERROR:
            self.state.error_message = reason

        if previous is Phase.ENTERING_SERVICE_MODE:
            if self._retry_task is not None:
                self._retry_task.cancel()
            if self._entry_ack is not None and not self._entry_ack.done():
                self._entry_ack.set_result(current is Phase.IN_SERVICE_MODE)

        if current in (Phase.ERROR, Phase.DISCONNECTED):
            for waiter in self._beacon_waiters:
                if not waiter.done():
                    waiter.set_result(None)

        self._emit(EventKind.PHASE, current)

    def _log(self, line: str) -> None:
        self.state.add_log(line)
        LOGGER.debug("%s", line)
        self._emit(EventKind.LOG, line)

    def _emit(self, kind: EventKind, payload: Any) -> None:
        event = SessionEvent(kind=kind, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Session listener failed on %s event", kind.value)
