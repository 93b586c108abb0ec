"""USB-serial transport implementation using pyserial."""

from __future__ import annotations

import asyncio
import logging

import serial
import serial.tools.list_ports

from svcmode.core.errors import TransportConnectError, TransportSendError
from svcmode.core.model import DetectedPort

LOGGER = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200


def list_ports() -> list[DetectedPort]:
    return sorted(
        (
            DetectedPort(device=p.device, description=p.description or "", hwid=p.hwid or "")
            for p in serial.tools.list_ports.comports()
        ),
        key=lambda p: p.device,
    )


class SerialTransport:
    """Line-oriented access to a serial port, 8N1 without flow control.

    pyserial is blocking, so reads and writes run in worker threads. Reads use
    a short timeout so a pending read never holds the thread for long after
    the session stops listening.
    """

    def __init__(self, *, baudrate: int = DEFAULT_BAUDRATE, read_timeout_s: float = 0.1) -> None:
        self.baudrate = baudrate
        self.read_timeout_s = read_timeout_s
        self._serial: serial.Serial | None = None
        self._buffer = bytearray()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self, port: str) -> None:
        if self.is_open:
            raise TransportConnectError(f"Transport already open on {self._serial.port}")
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.read_timeout_s,
                write_timeout=self.read_timeout_s * 10,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
        except (serial.SerialException, ValueError) as exc:
            raise TransportConnectError(f"Could not open {port}: {exc}") from exc
        self._buffer.clear()
        LOGGER.info("Opened %s at %d baud", port, self.baudrate)

    async def write(self, payload: bytes) -> None:
        port = self._require_open()
        try:
            await asyncio.to_thread(self._write_blocking, port, payload)
        except (serial.SerialException, OSError) as exc:
            raise TransportSendError(f"Serial write failed: {exc}") from exc

    async def read_line(self) -> str | None:
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                raw = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                line = raw.decode("utf-8", errors="replace").strip("\r")
                if line.strip():
                    return line
                continue

            port = self._serial
            if port is None or not port.is_open:
                return None
            try:
                chunk = await asyncio.to_thread(self._read_blocking, port)
            except (serial.SerialException, OSError) as exc:
                if self._serial is None:
                    return None
                raise TransportSendError(f"Serial read failed: {exc}") from exc
            self._buffer.extend(chunk)

    async def close(self) -> None:
        port, self._serial = self._serial, None
        self._buffer.clear()
        if port is not None and port.is_open:
            await asyncio.to_thread(port.close)
            LOGGER.info("Closed %s", port.port)

    def _require_open(self) -> serial.Serial:
        if self._serial is None or not self._serial.is_open:
            raise TransportSendError("Serial port is not open")
        return self._serial

    @staticmethod
    def _write_blocking(port: serial.Serial, payload: bytes) -> None:
        port.write(payload)
        port.flush()

    @staticmethod
    def _read_blocking(port: serial.Serial) -> bytes:
        return port.read(max(1, port.in_waiting))
