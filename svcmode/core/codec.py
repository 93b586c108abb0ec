"""Newline-delimited JSON codec for the service-mode wire protocol."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping

from svcmode.core.model import Command, Message, Status

LOGGER = logging.getLogger(__name__)


def encode(command: Command) -> bytes:
    """Serialize ``command`` as one JSON line.

    An empty ``data`` mapping is omitted rather than sent as ``{}``: some
    firmware revisions treat the two differently.
    """
    doc: dict[str, object] = {"cmd": command.cmd}
    if command.data:
        doc["data"] = dict(command.data)
    return (json.dumps(doc, separators=(",", ":")) + "\n").encode("utf-8")


def decode(line: str | bytes) -> Message | None:
    """Parse one already-delimited line, or return ``None`` for anything else.

    Boot logs and firmware prints share the stream with protocol lines, so a
    ``None`` result means "ignore", never an error.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    text = line.strip()
    if not text.startswith("{"):
        return None

    try:
        doc = json.loads(text)
    except (ValueError, RecursionError):
        LOGGER.debug("Ignoring malformed JSON line: %.200s", text)
        return None

    if not isinstance(doc, dict):
        return None
    status = doc.get("status")
    if not isinstance(status, str):
        LOGGER.debug("Ignoring JSON line without status: %s", text)
        return None

    message = doc.get("message")
    data = doc.get("data")
    return Message(
        status=Status.from_wire(status),
        message=message if isinstance(message, str) else None,
        data=data if isinstance(data, Mapping) else None,
    )
