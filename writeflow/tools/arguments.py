"""Tolerant parsing of model-emitted tool arguments.

Models frequently emit argument JSON with raw newlines or tabs inside string
values, or with backslashes that are not valid JSON escapes (Windows paths,
regex snippets). Parsing escalates through three passes and gives up only
when all three fail.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from writeflow.infra.errors import ToolArgumentError

logger = structlog.get_logger()

_CONTROL_ESCAPES = {
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\b": "\\b",
    "\f": "\\f",
}

_STRAY_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ESCAPE = re.compile(r'\\(?:(["\\/bfnrt])|(u[0-9a-fA-F]{4}))|\\')


def escape_control_characters(raw: str) -> str:
    """Escape raw control characters that appear inside JSON string literals.

    Characters outside strings are left alone (JSON whitespace is legal there).
    """
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in raw:
        if not in_string:
            if ch == '"':
                in_string = True
            out.append(ch)
            continue
        if escaped:
            out.append(ch)
            escaped = False
        elif ch == "\\":
            out.append(ch)
            escaped = True
        elif ch == '"':
            out.append(ch)
            in_string = False
        elif ord(ch) < 0x20:
            out.append(_CONTROL_ESCAPES.get(ch, f"\\u{ord(ch):04x}"))
        else:
            out.append(ch)
    return "".join(out)


def repair_invalid_escapes(raw: str) -> str:
    r"""Double every backslash that does not start a valid JSON escape (``\d`` → ``\\d``)."""
    return _ESCAPE.sub(
        lambda m: m.group(0) if (m.group(1) or m.group(2)) else "\\\\", raw,
    )


def _loads_object(text: str) -> dict[str, Any]:
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected JSON object, got {type(parsed).__name__}")
    return parsed


def safe_parse_arguments(raw: dict[str, Any] | str | None) -> dict[str, Any]:
    """Parse tool arguments into a dict.

    Stages:
      1. strict ``json.loads``
      2. escape-sequence normalization (raw control chars inside strings)
      3. control-character stripping + invalid-escape repair

    A dict passes through; None / blank means no arguments.
    Raises ToolArgumentError naming each stage's failure.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None or not raw.strip():
        return {}

    errors: list[str] = []

    try:
        return _loads_object(raw)
    except ValueError as e:  # JSONDecodeError is a ValueError
        errors.append(f"strict parse: {e}")

    normalized = escape_control_characters(raw)
    try:
        result = _loads_object(normalized)
    except ValueError as e:
        errors.append(f"escape normalization: {e}")
    else:
        logger.info("tool_args_repaired", stage=2)
        return result

    stripped = repair_invalid_escapes(_STRAY_CONTROL.sub("", normalized))
    try:
        result = _loads_object(stripped)
    except ValueError as e:
        errors.append(f"control-char strip + escape repair: {e}")
    else:
        logger.info("tool_args_repaired", stage=3)
        return result

    logger.warning("tool_args_unrecoverable", errors=errors, raw_args=raw[:200])
    raise ToolArgumentError(errors)
