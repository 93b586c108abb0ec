"""Per-operation timeouts and the mode-entry retry cadence (seconds)."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any

from svcmode.core.errors import ConfigError

_DEFAULT_TEST_TIMEOUTS = {
    # Wi-Fi may need a 15 s DHCP timeout plus a retry on the device side.
    "wifi": 45.0,
    "cloud": 15.0,
    "rfid": 10.0,
    "button": 30.0,
}


@dataclass(frozen=True)
class TimeoutPolicy:
    entry_window: float = 10.0
    entry_retry_interval: float = 0.2
    standard_command: float = 10.0
    beacon_poll: float = 5.0
    test_all: float = 90.0
    tests: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(dict(_DEFAULT_TEST_TIMEOUTS))
    )

    def test_timeout(self, name: str) -> float:
        return self.tests.get(name, self.standard_command)

    def command_timeout(self, cmd: str) -> float:
        if cmd == "test_all":
            return self.test_all
        if cmd.startswith("test_"):
            return self.test_timeout(cmd[len("test_"):])
        if cmd == "get_status":
            return self.beacon_poll
        return self.standard_command

    @classmethod
    def from_mapping(cls, doc: Mapping[str, Any]) -> TimeoutPolicy:
        """Build a policy from config overrides layered on the defaults."""
        policy = cls()
        known = {f.name for f in fields(cls)} - {"tests"}
        overrides: dict[str, Any] = {}
        for key, value in doc.items():
            if key == "tests":
                continue
            if key not in known:
                raise ConfigError(f"Unknown timeout '{key}'")
            overrides[key] = _positive(value, context=f"timeouts.{key}")

        tests = dict(policy.tests)
        for name, value in (doc.get("tests") or {}).items():
            tests[name] = _positive(value, context=f"timeouts.tests.{name}")
        overrides["tests"] = MappingProxyType(tests)
        return replace(policy, **overrides)


def _positive(value: Any, *, context: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{context} must be a positive number of seconds")
    return float(value)
