"""
Query parameter validation.

Params arrive as a decoded JSON-like mapping (or, from older callers, a JSON
string). They are bound by each connector through the backend's native
mechanism, so all we accept here are identifier names mapped to scalars or
flat lists of scalars.
"""

from __future__ import annotations

import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from querydispatch.core.errors import ValidationError

_SCALAR_TYPES = (str, int, float, bool, Decimal, date, datetime, time)


def _check_value(name: str, value: Any) -> Any:
    if value is None or isinstance(value, _SCALAR_TYPES):
        return value
    if isinstance(value, (list, tuple)):
        for item in value:
            if item is not None and not isinstance(item, _SCALAR_TYPES):
                raise ValidationError(
                    f"Parameter {name!r}: list items must be scalars, "
                    f"got {type(item).__name__}"
                )
        return list(value)
    raise ValidationError(
        f"Parameter {name!r}: unsupported value type {type(value).__name__}"
    )


def validate_params(params: Any) -> dict[str, Any]:
    """
    Return params as an ordered ``dict[str, Any]`` or raise ValidationError.

    - None / "" -> {}
    - str -> decoded as a JSON object
    - names must be identifiers (they end up as placeholder names)
    - values must be scalars or lists of scalars
    """
    if params is None:
        return {}
    if isinstance(params, str):
        if not params.strip():
            return {}
        try:
            params = json.loads(params)
        except ValueError as e:
            raise ValidationError(f"params is not valid JSON: {e}") from e
    if not isinstance(params, dict):
        raise ValidationError(
            f"params must be an object, got {type(params).__name__}"
        )

    out: dict[str, Any] = {}
    for name, value in params.items():
        if not isinstance(name, str) or not name.isidentifier():
            raise ValidationError(f"Invalid parameter name: {name!r}")
        out[name] = _check_value(name, value)
    return out
