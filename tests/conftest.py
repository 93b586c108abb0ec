from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from svcmode.core.errors import TransportConnectError, TransportSendError
from svcmode.core.timeouts import TimeoutPolicy

FAST = TimeoutPolicy(
    entry_window=0.5,
    entry_retry_interval=0.01,
    standard_command=0.2,
    beacon_poll=0.2,
    test_all=2.0,
    tests={"wifi": 0.2, "cloud": 0.2, "rfid": 0.2, "button": 0.2},
)

HUB_MANIFEST: dict[str, Any] = {
    "manifest_version": "1.0",
    "device_type": "hub",
    "device_name": "Saturday Hub",
    "firmware_id": "hub-main",
    "firmware_version": "1.4.2",
    "capabilities": {"wifi": True, "cloud": True, "rfid": True, "button": False},
    "provisioning_fields": {"required": ["unit_id", "cloud_url"], "optional": ["cloud_anon_key"]},
    "supported_tests": ["wifi", "rfid"],
    "status_fields": ["wifi_connected", "free_heap"],
    "custom_commands": [
        {
            "name": "set_led",
            "description": "Set LED brightness",
            "parameters": {
                "brightness": {"type": "int", "required": True, "min": 0, "max": 100},
                "color": {"type": "string"},
            },
        }
    ],
    "led_patterns": {"provisioned": {"color": "green", "pattern": "solid"}},
}

HUB_STATUS: dict[str, Any] = {
    "device_type": "hub",
    "firmware_version": "1.4.2",
    "mac_address": "AA:BB:CC:DD:EE:FF",
    "unit_id": "SV-HUB-000042",
    "cloud_configured": True,
    "wifi_configured": True,
    "wifi_connected": False,
    "free_heap": 123456,
}

Reply = dict[str, Any] | str
Script = list[Reply] | Callable[[dict[str, Any]], list[Reply]]


def ok(data: dict[str, Any] | None = None, message: str | None = None) -> dict[str, Any]:
    doc: dict[str, Any] = {"status": "ok"}
    if message is not None:
        doc["message"] = message
    if data is not None:
        doc["data"] = data
    return doc


def device_error(code: str, message: str | None = None) -> dict[str, Any]:
    return {"status": "error", "message": message or code, "data": {"error_code": code}}


class FakeDevice:
    """Transport double that answers commands the way firmware would.

    ``script`` maps a command name to the lines written back when that command
    arrives; commands without an entry get no answer at all.
    """

    def __init__(self) -> None:
        self.script: dict[str, Script] = {
            "enter_service_mode": [ok(message="Entered service mode")],
            "get_status": [ok(HUB_STATUS)],
            "get_manifest": [ok(HUB_MANIFEST)],
        }
        self.boot_lines: list[str] = []
        self.sent: list[dict[str, Any]] = []
        self.raw_sent: list[bytes] = []
        self.opened_port: str | None = None
        self.open_count = 0
        self.closed = False
        self.fail_open = False
        self.fail_write = False
        self._lines: asyncio.Queue[str | None] | None = None

    def commands(self, name: str | None = None) -> list[str]:
        return [doc["cmd"] for doc in self.sent if name is None or doc["cmd"] == name]

    def push(self, line: Reply) -> None:
        assert self._lines is not None, "device not opened"
        self._lines.put_nowait(line if isinstance(line, str) else json.dumps(line))

    def hang_up(self) -> None:
        assert self._lines is not None
        self._lines.put_nowait(None)

    async def open(self, port: str) -> None:
        if self.fail_open:
            raise TransportConnectError(f"Could not open {port}: no such device")
        self.opened_port = port
        self.open_count += 1
        self.closed = False
        self._lines = asyncio.Queue()
        for line in self.boot_lines:
            self.push(line)

    async def write(self, payload: bytes) -> None:
        if self.fail_write:
            raise TransportSendError("Serial write failed: device unplugged")
        self.raw_sent.append(payload)
        doc = json.loads(payload)
        self.sent.append(doc)
        script = self.script.get(doc["cmd"], [])
        replies = script(doc) if callable(script) else script
        for reply in replies:
            self.push(reply)

    async def read_line(self) -> str | None:
        assert self._lines is not None
        return await self._lines.get()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()
