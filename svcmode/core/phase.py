"""Session phase state machine."""

from __future__ import annotations

import logging
from collections.abc import Callable

from svcmode.core.errors import InvalidTransitionError, NotReadyError
from svcmode.core.model import Phase

LOGGER = logging.getLogger(__name__)

PhaseListener = Callable[[Phase, Phase, "str | None"], None]

_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.DISCONNECTED: frozenset({Phase.CONNECTING}),
    Phase.CONNECTING: frozenset({Phase.WAITING_FOR_DEVICE}),
    Phase.WAITING_FOR_DEVICE: frozenset({Phase.ENTERING_SERVICE_MODE, Phase.MONITORING}),
    Phase.ENTERING_SERVICE_MODE: frozenset({Phase.IN_SERVICE_MODE, Phase.WAITING_FOR_DEVICE}),
    Phase.IN_SERVICE_MODE: frozenset({Phase.EXECUTING_COMMAND, Phase.MONITORING}),
    Phase.EXECUTING_COMMAND: frozenset({Phase.IN_SERVICE_MODE}),
    Phase.MONITORING: frozenset({Phase.WAITING_FOR_DEVICE}),
    Phase.ERROR: frozenset(),
}


class PhaseMachine:
    """Single source of truth for the session lifecycle.

    Besides the table above, every state may fall to ``ERROR`` on transport
    failure and every state other than ``DISCONNECTED`` may be disconnected.
    """

    def __init__(self) -> None:
        self._phase = Phase.DISCONNECTED
        self._reason: str | None = None
        self._listeners: list[PhaseListener] = []

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def can_send_commands(self) -> bool:
        return self._phase.can_send_commands

    def add_listener(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    def can_transition(self, target: Phase) -> bool:
        if target is self._phase or target is Phase.ERROR:
            return True
        if target is Phase.DISCONNECTED:
            return self._phase is not Phase.DISCONNECTED
        return target in _TRANSITIONS[self._phase]

    def transition(self, target: Phase, reason: str | None = None) -> None:
        if target is self._phase:
            return
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Cannot move from {self._phase.value} to {target.value}"
            )

        previous = self._phase
        self._phase = target
        self._reason = reason
        LOGGER.debug("Phase %s -> %s (%s)", previous.value, target.value, reason or "-")
        for listener in list(self._listeners):
            listener(previous, target, reason)

    def require_command_ready(self, cmd: str) -> None:
        if not self.can_send_commands:
            raise NotReadyError(
                f"Cannot send '{cmd}': device is not in service mode "
                f"(phase: {self._phase.display_name})"
            )
