"""Minimal parser for flat TOML-style workflow and model config files.

Supports ``[section]`` headers, ``key = value`` pairs, booleans, integers,
floats, basic/literal quoted strings and triple-quoted strings (which may span
lines).  Arrays, inline tables, dotted keys and dates are not supported;
unrecognized lines are ignored.
"""

from __future__ import annotations

import re

from pi_daemon.engine.errors import WorkflowConfigError

Scalar = str | int | float | bool

_SECTION_RE = re.compile(r"^\[([^\[\]]+)\]$")
_KEY_VALUE_RE = re.compile(r"^([A-Za-z0-9_-]+)\s*=\s*(.+)$")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


def parse_simple_toml(text: str) -> dict[str, dict[str, Scalar]]:
    """Parse ``text`` into ``{section: {key: value}}``; top-level keys live under ``""``."""

    result: dict[str, dict[str, Scalar]] = {"": {}}
    section = ""
    lines = text.splitlines()
    index = 0
    while index < len(lines):
        stripped = lines[index].strip()
        index += 1
        if not stripped or stripped.startswith("#"):
            continue

        section_match = _SECTION_RE.match(stripped)
        if section_match:
            section = section_match.group(1).strip()
            result.setdefault(section, {})
            continue

        kv_match = _KEY_VALUE_RE.match(stripped)
        if not kv_match:
            continue
        key, raw = kv_match.group(1), kv_match.group(2).strip()

        if raw.startswith(('"""', "'''")):
            value, index = _read_multiline(raw, lines, index, key=key)
        else:
            value = _parse_scalar(raw, key=key)
        result[section][key] = value

    return result


def _read_multiline(raw: str, lines: list[str], index: int, *, key: str) -> tuple[str, int]:
    quote = raw[:3]
    body = raw[3:]
    if quote in body:
        return body[: body.index(quote)], index

    parts = [body]
    while index < len(lines):
        line = lines[index]
        index += 1
        if quote in line:
            parts.append(line[: line.index(quote)])
            # A newline right after the opening quotes is not part of the value
            if parts[0] == "":
                parts = parts[1:]
            return "\n".join(parts), index
        parts.append(line)
    raise WorkflowConfigError(f"Unterminated multi-line string for key {key!r}")


def _parse_scalar(raw: str, *, key: str) -> Scalar:
    if raw.startswith('"'):
        return _read_basic_string(raw, key=key)
    if raw.startswith("'"):
        end = raw.find("'", 1)
        if end < 0:
            raise WorkflowConfigError(f"Unterminated string for key {key!r}")
        return raw[1:end]

    value = raw.split("#", 1)[0].strip()
    if value == "true":
        return True
    if value == "false":
        return False
    try:
        return int(value.replace("_", ""))
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def _read_basic_string(raw: str, *, key: str) -> str:
    chars: list[str] = []
    position = 1
    while position < len(raw):
        char = raw[position]
        if char == "\\" and position + 1 < len(raw):
            chars.append(_ESCAPES.get(raw[position + 1], raw[position + 1]))
            position += 2
            continue
        if char == '"':
            return "".join(chars)
        chars.append(char)
        position += 1
    raise WorkflowConfigError(f"Unterminated string for key {key!r}")
