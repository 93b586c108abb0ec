"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol


class Transport(Protocol):
    async def open(self, port: str) -> None:
        """Open the named port; raise ``TransportConnectError`` on failure."""

    async def write(self, payload: bytes) -> None:
        """Write bytes to the device; raise ``TransportSendError`` on failure."""

    async def read_line(self) -> str | None:
        """Return the next complete line without its terminator, or None once closed."""

    async def close(self) -> None:
        """Release the port. Safe to call more than once."""
