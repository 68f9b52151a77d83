"""
Template renderer: ``{{ .field }}`` placeholders over resolved secret values.

Pure and deterministic. The same template and values always render the same
text, which keeps content-hash change detection stable.

    render_template("postgres://{{ .username }}@{{ .host }}", {"username": b"admin", "host": b"db1"})
    # -> "postgres://admin@db1"

A placeholder may pipe the value through filters: ``{{ .cert | b64enc }}``.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Callable, Mapping

from secretsync.engine.errors import MissingFieldError, TemplateSyntaxError
from secretsync.engine.models import SecretTemplate

OPEN = "{{"
CLOSE = "}}"

_FIELD_RE = re.compile(r"^\.([A-Za-z_][A-Za-z0-9_\-]*)$")


def _b64dec(value: str) -> str:
    try:
        raw = base64.b64decode(value.encode("utf-8", "surrogateescape"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise TemplateSyntaxError(f"b64dec: input is not valid base64 ({e})") from e
    return raw.decode("utf-8", "surrogateescape")


FILTERS: dict[str, Callable[[str], str]] = {
    "b64enc": lambda v: base64.b64encode(v.encode("utf-8", "surrogateescape")).decode("ascii"),
    "b64dec": _b64dec,
    "upper": str.upper,
    "lower": str.lower,
    "trim": str.strip,
    "quote": lambda v: '"' + v.replace("\\", "\\\\").replace('"', '\\"') + '"',
}


def _as_text(value: bytes | bytearray | str) -> str:
    if isinstance(value, str):
        return value
    return bytes(value).decode("utf-8", "surrogateescape")


def _parse(text: str) -> list[tuple[str, str | tuple[str, list[str]]]]:
    """Split template text into ("lit", text) and ("var", (field, filters)) tokens."""
    tokens: list[tuple[str, str | tuple[str, list[str]]]] = []
    pos = 0
    while True:
        start = text.find(OPEN, pos)
        if start < 0:
            if pos < len(text):
                tokens.append(("lit", text[pos:]))
            return tokens
        if start > pos:
            tokens.append(("lit", text[pos:start]))
        end = text.find(CLOSE, start + len(OPEN))
        if end < 0:
            raise TemplateSyntaxError(f"Unclosed placeholder at offset {start}")
        expr = text[start + len(OPEN) : end].strip()
        if not expr:
            raise TemplateSyntaxError(f"Empty placeholder at offset {start}")
        if OPEN in expr:
            raise TemplateSyntaxError(f"Nested placeholder at offset {start}")

        parts = [p.strip() for p in expr.split("|")]
        match = _FIELD_RE.match(parts[0])
        if not match:
            raise TemplateSyntaxError(
                f"Malformed placeholder '{{{{ {expr} }}}}': expected '.fieldName'"
            )
        filters = parts[1:]
        for name in filters:
            if name not in FILTERS:
                raise TemplateSyntaxError(f"Unknown filter '{name}' in '{{{{ {expr} }}}}'")
        tokens.append(("var", (match.group(1), filters)))
        pos = end + len(CLOSE)


def referenced_fields(text: str) -> list[str]:
    """Field names used by a template, in order of first appearance."""
    seen: dict[str, None] = {}
    for kind, token in _parse(text):
        if kind == "var":
            seen.setdefault(token[0], None)  # type: ignore[index]
    return list(seen)


def validate_template(text: str) -> None:
    """Raise TemplateSyntaxError if the template cannot be parsed."""
    _parse(text)


def render_template(text: str, values: Mapping[str, bytes | bytearray | str]) -> str:
    """Substitute every placeholder in ``text`` from ``values``."""
    out: list[str] = []
    for kind, token in _parse(text):
        if kind == "lit":
            out.append(token)  # type: ignore[arg-type]
            continue
        field_name, filters = token  # type: ignore[misc]
        if field_name not in values:
            raise MissingFieldError(field_name)
        rendered = _as_text(values[field_name])
        for name in filters:
            rendered = FILTERS[name](rendered)
        out.append(rendered)
    return "".join(out)


def render_payload(
    template: SecretTemplate, values: Mapping[str, bytes | bytearray | str]
) -> dict[str, bytearray]:
    """Render every entry of a template into the destination key/value map."""
    return {
        key: bytearray(render_template(text, values).encode("utf-8", "surrogateescape"))
        for key, text in template.data
    }
