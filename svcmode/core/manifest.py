"""Device manifest parsing, validation, and capability gating."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from jsonschema import ValidationError

from svcmode.core.errors import CommandValidationError, ManifestValidationError
from svcmode.core.model import Command
from svcmode.core.schema_loader import load_schema_validator

LOGGER = logging.getLogger(__name__)

_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})

CAPABILITY_NAMES = (
    "wifi",
    "bluetooth",
    "thread",
    "thread_br",
    "cloud",
    "rfid",
    "audio",
    "display",
    "battery",
    "button",
)


@dataclass(frozen=True)
class DeviceCapabilities:
    wifi: bool = False
    bluetooth: bool = False
    thread: bool = False  # joins an existing Thread network
    thread_br: bool = False  # border router, creates the network
    cloud: bool = False
    rfid: bool = False
    audio: bool = False
    display: bool = False
    battery: bool = False
    button: bool = False

    @classmethod
    def from_json(cls, doc: Mapping[str, Any]) -> DeviceCapabilities:
        return cls(**{name: bool(doc.get(name, False)) for name in CAPABILITY_NAMES})

    @property
    def enabled(self) -> tuple[str, ...]:
        return tuple(name for name in CAPABILITY_NAMES if getattr(self, name))


@dataclass(frozen=True)
class ProvisioningFields:
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()

    @property
    def all_fields(self) -> tuple[str, ...]:
        return self.required + self.optional


class ParameterType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"

    @classmethod
    def parse(cls, value: str) -> ParameterType:
        return cls(_TYPE_ALIASES.get(value, value))


_TYPE_ALIASES = {"int": "integer", "float": "number", "bool": "boolean"}


@dataclass(frozen=True)
class CommandParameter:
    type: ParameterType = ParameterType.STRING
    required: bool = False
    min: float | None = None
    max: float | None = None
    description: str | None = None

    def check(self, name: str, value: Any) -> Any:
        """Validate ``value`` against this declaration and return it normalized.

        Strings are converted to the declared type, so values typed on a
        command line behave like values decoded from JSON.
        """
        if isinstance(value, str) and self.type is not ParameterType.STRING:
            value = self._from_text(name, value)

        if self.type is ParameterType.BOOLEAN:
            if not isinstance(value, bool):
                raise CommandValidationError(f"Parameter '{name}' must be a boolean")
            return value

        if self.type is ParameterType.STRING:
            if not isinstance(value, str):
                raise CommandValidationError(f"Parameter '{name}' must be a string")
            self._check_range(name, len(value), what="length")
            return value

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise CommandValidationError(f"Parameter '{name}' must be a {self.type.value}")
        if self.type is ParameterType.INTEGER:
            if isinstance(value, float):
                if not value.is_integer():
                    raise CommandValidationError(f"Parameter '{name}' must be an integer")
                value = int(value)
        self._check_range(name, value, what="value")
        return value

    def _from_text(self, name: str, text: str) -> Any:
        raw = text.strip()
        if self.type is ParameterType.BOOLEAN:
            lowered = raw.lower()
            if lowered in _TRUE_WORDS:
                return True
            if lowered in _FALSE_WORDS:
                return False
            raise CommandValidationError(f"Parameter '{name}' must be a boolean, got '{text}'")
        try:
            if self.type is ParameterType.INTEGER:
                return int(raw)
            return float(raw)
        except ValueError:
            raise CommandValidationError(
                f"Parameter '{name}' must be a {self.type.value}, got '{text}'"
            ) from None

    def _check_range(self, name: str, value: float, *, what: str) -> None:
        if self.min is not None and value < self.min:
            raise CommandValidationError(f"Parameter '{name}' {what} must be >= {self.min}")
        if self.max is not None and value > self.max:
            raise CommandValidationError(f"Parameter '{name}' {what} must be <= {self.max}")


@dataclass(frozen=True)
class CustomCommand:
    name: str
    description: str = ""
    parameters: Mapping[str, CommandParameter] = field(default_factory=dict)

    def build(self, arguments: Mapping[str, Any] | None = None) -> Command:
        """Validate ``arguments`` against the declared parameters and build the command."""
        arguments = dict(arguments or {})
        unknown = sorted(set(arguments) - set(self.parameters))
        if unknown:
            declared = ", ".join(sorted(self.parameters)) or "<none>"
            raise CommandValidationError(
                f"Command '{self.name}' does not accept {', '.join(unknown)}. Declared: {declared}"
            )

        data: dict[str, Any] = {}
        for param_name, param in self.parameters.items():
            if param_name not in arguments:
                if param.required:
                    raise CommandValidationError(
                        f"Command '{self.name}' requires parameter '{param_name}'"
                    )
                continue
            data[param_name] = param.check(param_name, arguments[param_name])
        return Command.custom(self.name, data or None)


@dataclass(frozen=True)
class LedPattern:
    color: str = "white"
    pattern: str = "solid"


@dataclass(frozen=True)
class Manifest:
    """Snapshot of a ``get_manifest`` response.

    A newer manifest replaces this one wholesale; the two are never merged.
    """

    manifest_version: str = "1.0"
    device_type: str = "unknown"
    device_name: str = "Unknown Device"
    firmware_id: str | None = None
    firmware_version: str = "0.0.0"
    capabilities: DeviceCapabilities = DeviceCapabilities()
    provisioning_fields: ProvisioningFields = ProvisioningFields()
    supported_tests: tuple[str, ...] = ()
    status_fields: tuple[str, ...] = ()
    custom_commands: Mapping[str, CustomCommand] = field(default_factory=dict)
    led_patterns: Mapping[str, LedPattern] = field(default_factory=dict)

    def has_capability(self, name: str) -> bool:
        if name not in CAPABILITY_NAMES:
            return False
        return getattr(self.capabilities, name)

    def supports_test(self, name: str) -> bool:
        return name in self.supported_tests

    def custom_command(self, name: str) -> CustomCommand | None:
        return self.custom_commands.get(name)

    def to_json(self) -> dict[str, Any]:
        return {
            "manifest_version": self.manifest_version,
            "device_type": self.device_type,
            "device_name": self.device_name,
            **({"firmware_id": self.firmware_id} if self.firmware_id else {}),
            "firmware_version": self.firmware_version,
            "capabilities": {name: getattr(self.capabilities, name) for name in CAPABILITY_NAMES},
            "provisioning_fields": {
                "required": list(self.provisioning_fields.required),
                "optional": list(self.provisioning_fields.optional),
            },
            "supported_tests": list(self.supported_tests),
            "status_fields": list(self.status_fields),
            "custom_commands": [
                {
                    "name": command.name,
                    "description": command.description,
                    "parameters": {
                        name: _parameter_to_json(param)
                        for name, param in command.parameters.items()
                    },
                }
                for command in self.custom_commands.values()
            ],
            "led_patterns": {
                name: {"color": led.color, "pattern": led.pattern}
                for name, led in self.led_patterns.items()
            },
        }

    @classmethod
    def from_device_json(cls, doc: Mapping[str, Any]) -> Manifest:
        try:
            load_schema_validator("manifest.schema.json").validate(dict(doc))
        except ValidationError as exc:
            path = ".".join(str(p) for p in exc.path)
            where = f" ({path})" if path else ""
            raise ManifestValidationError(f"Invalid device manifest{where}: {exc.message}") from exc

        unknown_caps = sorted(set(doc.get("capabilities", {})) - set(CAPABILITY_NAMES))
        if unknown_caps:
            LOGGER.warning("Ignoring unknown manifest capabilities: %s", ", ".join(unknown_caps))

        custom_commands: dict[str, CustomCommand] = {}
        for entry in doc.get("custom_commands", []):
            if entry["name"] in custom_commands:
                raise ManifestValidationError(f"Duplicate custom command '{entry['name']}'")
            custom_commands[entry["name"]] = CustomCommand(
                name=entry["name"],
                description=entry.get("description", ""),
                parameters={
                    name: _build_parameter(spec)
                    for name, spec in entry.get("parameters", {}).items()
                },
            )

        provisioning = doc.get("provisioning_fields", {})
        return cls(
            manifest_version=doc.get("manifest_version", "1.0"),
            device_type=doc.get("device_type", "unknown"),
            device_name=doc.get("device_name", "Unknown Device"),
            firmware_id=doc.get("firmware_id"),
            firmware_version=doc.get("firmware_version", "0.0.0"),
            capabilities=DeviceCapabilities.from_json(doc.get("capabilities", {})),
            provisioning_fields=ProvisioningFields(
                required=tuple(provisioning.get("required", [])),
                optional=tuple(provisioning.get("optional", [])),
            ),
            supported_tests=tuple(doc.get("supported_tests", [])),
            status_fields=tuple(doc.get("status_fields", [])),
            custom_commands=custom_commands,
            led_patterns={
                name: LedPattern(
                    color=spec.get("color", "white"),
                    pattern=spec.get("pattern", "solid"),
                )
                for name, spec in doc.get("led_patterns", {}).items()
            },
        )


def _build_parameter(spec: Mapping[str, Any]) -> CommandParameter:
    low, high = spec.get("min"), spec.get("max")
    if low is not None and high is not None and low > high:
        raise ManifestValidationError(f"Parameter range min={low} exceeds max={high}")
    return CommandParameter(
        type=ParameterType.parse(spec.get("type", "string")),
        required=bool(spec.get("required", False)),
        min=low,
        max=high,
        description=spec.get("description"),
    )


def _parameter_to_json(param: CommandParameter) -> dict[str, Any]:
    doc: dict[str, Any] = {"type": param.type.value, "required": param.required}
    if param.min is not None:
        doc["min"] = param.min
    if param.max is not None:
        doc["max"] = param.max
    if param.description is not None:
        doc["description"] = param.description
    return doc
