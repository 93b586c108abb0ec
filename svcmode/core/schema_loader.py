"""Packaged JSON schema loading."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from typing import Any

from jsonschema import validators


@lru_cache(maxsize=None)
def load_schema_validator(name: str) -> Any:
    """Return a validator for ``svcmode/schemas/<name>``, checked once and cached."""
    schema_text = resources.files("svcmode.schemas").joinpath(name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)
