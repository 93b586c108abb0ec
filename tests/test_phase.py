from __future__ import annotations

import pytest

from svcmode.core.errors import InvalidTransitionError, NotReadyError
from svcmode.core.model import Phase
from svcmode.core.phase import PhaseMachine


def _machine_at(*path: Phase) -> PhaseMachine:
    machine = PhaseMachine()
    for phase in path:
        machine.transition(phase)
    return machine


def test_happy_path_and_listener_notifications() -> None:
    seen: list[tuple[Phase, Phase, str | None]] = []
    machine = PhaseMachine()
    machine.add_listener(lambda prev, cur, reason: seen.append((prev, cur, reason)))

    machine.transition(Phase.CONNECTING, "opened")
    machine.transition(Phase.WAITING_FOR_DEVICE)
    machine.transition(Phase.ENTERING_SERVICE_MODE)
    machine.transition(Phase.IN_SERVICE_MODE, "beacon")
    machine.transition(Phase.EXECUTING_COMMAND)
    machine.transition(Phase.IN_SERVICE_MODE)

    assert machine.phase is Phase.IN_SERVICE_MODE
    assert machine.reason is None
    assert seen[0] == (Phase.DISCONNECTED, Phase.CONNECTING, "opened")
    assert [cur for _, cur, _ in seen][-3:] == [
        Phase.IN_SERVICE_MODE,
        Phase.EXECUTING_COMMAND,
        Phase.IN_SERVICE_MODE,
    ]


def test_self_transition_is_silent() -> None:
    seen = []
    machine = _machine_at(Phase.CONNECTING)
    machine.add_listener(lambda *args: seen.append(args))
    machine.transition(Phase.CONNECTING)
    assert seen == []


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ((), Phase.IN_SERVICE_MODE),
        ((Phase.CONNECTING,), Phase.ENTERING_SERVICE_MODE),
        ((Phase.CONNECTING, Phase.WAITING_FOR_DEVICE, Phase.MONITORING), Phase.IN_SERVICE_MODE),
        ((Phase.ERROR,), Phase.CONNECTING),
    ],
)
def test_illegal_transitions_rejected(path: tuple[Phase, ...], target: Phase) -> None:
    machine = _machine_at(*path)
    with pytest.raises(InvalidTransitionError):
        machine.transition(target)
    assert machine.phase is (path[-1] if path else Phase.DISCONNECTED)


def test_error_and_disconnect_reachable_from_anywhere() -> None:
    for phase in Phase:
        machine = PhaseMachine()
        machine._phase = phase
        assert machine.can_transition(Phase.ERROR)
        assert machine.can_transition(Phase.DISCONNECTED)


def test_command_readiness() -> None:
    machine = _machine_at(Phase.CONNECTING, Phase.WAITING_FOR_DEVICE, Phase.MONITORING)
    with pytest.raises(NotReadyError, match="Monitoring"):
        machine.require_command_ready("get_status")

    ready = _machine_at(Phase.CONNECTING, Phase.WAITING_FOR_DEVICE, Phase.ENTERING_SERVICE_MODE, Phase.IN_SERVICE_MODE)
    ready.require_command_ready("get_status")
    ready.transition(Phase.EXECUTING_COMMAND)
    assert ready.can_send_commands
