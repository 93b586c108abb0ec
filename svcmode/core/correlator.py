"""Pairs the single outstanding command with the next non-beacon message."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from svcmode.core import error_codes
from svcmode.core.codec import encode
from svcmode.core.errors import CommandInFlightError
from svcmode.core.model import Command, CommandOutcome, CommandResult, Message, Phase
from svcmode.core.phase import PhaseMachine
from svcmode.core.timeouts import TimeoutPolicy

LOGGER = logging.getLogger(__name__)

Sender = Callable[[bytes], Awaitable[None]]


@dataclass
class _Pending:
    command: Command
    future: asyncio.Future[Message | None]
    sent_at: float
    cancel_reason: str | None = None


class CommandCorrelator:
    """FIFO correlation: the wire protocol carries no request ids.

    The first non-beacon message after a send resolves that send, so at most
    one command may be outstanding. A second one fails fast instead of queueing.
    """

    def __init__(self, machine: PhaseMachine, timeouts: TimeoutPolicy) -> None:
        self._machine = machine
        self._timeouts = timeouts
        self._pending: _Pending | None = None

    @property
    def pending_command(self) -> Command | None:
        return self._pending.command if self._pending else None

    async def execute(
        self,
        command: Command,
        send: Sender,
        *,
        timeout: float | None = None,
    ) -> CommandResult:
        self._machine.require_command_ready(command.cmd)
        if self._pending is not None:
            raise CommandInFlightError(
                f"Cannot send '{command.cmd}' while '{self._pending.command.cmd}' is outstanding"
            )

        payload = encode(command)
        effective = timeout if timeout is not None else self._timeouts.command_timeout(command.cmd)
        loop = asyncio.get_running_loop()
        pending = _Pending(command=command, future=loop.create_future(), sent_at=loop.time())
        self._pending = pending
        self._machine.transition(Phase.EXECUTING_COMMAND, reason=command.cmd)

        try:
            await send(payload)
            done, _ = await asyncio.wait({pending.future}, timeout=effective)
            elapsed = loop.time() - pending.sent_at
            if not done:
                result = CommandResult(
                    command=command,
                    outcome=CommandOutcome.TIMEOUT,
                    reason=f"No response to '{command.cmd}' after {effective:g}s (timed out)",
                    elapsed_s=elapsed,
                )
            else:
                result = self._resolve(pending, pending.future.result(), elapsed)
        except BaseException:
            if self._machine.phase is Phase.EXECUTING_COMMAND:
                self._machine.transition(Phase.IN_SERVICE_MODE, reason="aborted")
            raise
        finally:
            self._pending = None
            if not pending.future.done():
                pending.future.cancel()

        self._settle(result)
        return result

    def feed(self, message: Message) -> bool:
        """Offer ``message`` to the outstanding command; return True if it resolved it."""
        if message.is_beacon or self._pending is None or self._pending.future.done():
            return False
        self._pending.future.set_result(message)
        return True

    def cancel(self, reason: str) -> None:
        if self._pending is None or self._pending.future.done():
            return
        self._pending.cancel_reason = reason
        self._pending.future.set_result(None)

    def _resolve(self, pending: _Pending, message: Message | None, elapsed: float) -> CommandResult:
        if message is None:
            return CommandResult(
                command=pending.command,
                outcome=CommandOutcome.CANCELLED,
                reason=pending.cancel_reason,
                elapsed_s=elapsed,
            )
        if message.is_success:
            return CommandResult(
                command=pending.command,
                outcome=CommandOutcome.SUCCESS,
                response=message,
                reason=message.message,
                elapsed_s=elapsed,
            )

        if message.error_code is not None:
            reason = error_codes.describe(message.error_code)
        else:
            reason = message.message or f"Unexpected status '{message.status.value}'"
        return CommandResult(
            command=pending.command,
            outcome=CommandOutcome.DEVICE_ERROR,
            response=message,
            reason=reason,
            elapsed_s=elapsed,
        )

    def _settle(self, result: CommandResult) -> None:
        # Disconnect or transport failure already moved the machine elsewhere.
        if self._machine.phase is not Phase.EXECUTING_COMMAND:
            return
        code = result.response.error_code if result.response else None
        if result.outcome is CommandOutcome.DEVICE_ERROR and error_codes.is_fatal(code):
            self._machine.transition(Phase.ERROR, reason=result.reason)
        else:
            self._machine.transition(Phase.IN_SERVICE_MODE, reason=result.outcome.value)
