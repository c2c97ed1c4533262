"""
Template placeholder resolution.

Strings may carry ``{{path}}`` placeholders, where ``path`` is
``identifier ('.' segment)*``. The first identifier either names a context
root (entityId, entityType, userId, correlationId, timestamp, entity) or
starts navigation inside ``context.entity``. Navigation only walks dicts
and lists; host objects are never reflected into. A placeholder that does
not resolve is emitted verbatim, so resolution never raises.
"""

import json
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .models import RuleExecutionContext

OPEN = "{{"
CLOSE = "}}"

_MISSING = object()


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch == "_"


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


class _PlaceholderParser:
    """Recursive-descent parser for a single placeholder body.

    Grammar::

        placeholder := '{{' ws path ws '}}'
        path        := ident ('.' segment)*
        segment     := ident | digits
    """

    def __init__(self, text: str, pos: int):
        self.text = text
        self.pos = pos

    def _peek(self, n: int = 1) -> str:
        return self.text[self.pos:self.pos + n]

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos] in " \t":
            self.pos += 1

    def _ident(self) -> Optional[str]:
        start = self.pos
        if self.pos >= len(self.text) or not _is_ident_start(self.text[self.pos]):
            return None
        while self.pos < len(self.text) and _is_ident_char(self.text[self.pos]):
            self.pos += 1
        return self.text[start:self.pos]

    def _segment(self) -> Optional[str]:
        if self.pos < len(self.text) and self.text[self.pos].isdigit():
            start = self.pos
            while self.pos < len(self.text) and self.text[self.pos].isdigit():
                self.pos += 1
            return self.text[start:self.pos]
        return self._ident()

    def parse(self) -> Optional[Tuple[List[str], int]]:
        """Return (segments, end position) or None if no placeholder starts here."""
        if self._peek(2) != OPEN:
            return None
        self.pos += 2
        self._skip_ws()

        first = self._ident()
        if first is None:
            return None
        segments = [first]

        while self._peek() == ".":
            self.pos += 1
            segment = self._segment()
            if segment is None:
                return None
            segments.append(segment)

        self._skip_ws()
        if self._peek(2) != CLOSE:
            return None
        return segments, self.pos + 2


def get_path(obj: Any, segments: List[str], default: Any = None) -> Any:
    """Walk dicts and lists along ``segments``."""
    current = obj
    for segment in segments:
        if isinstance(current, Mapping):
            if segment not in current:
                return default
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def set_path(obj: Dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at a dot path, creating intermediate dicts."""
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def render_value(value: Any) -> str:
    """Text form of a resolved value inside a larger string."""
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class TemplateResolver:
    """Resolves placeholders against one execution context."""

    def __init__(self, context: RuleExecutionContext, extra: Optional[Mapping[str, Any]] = None):
        self._roots = context.template_roots()
        self._entity = context.entity
        self._extra = extra or {}

    def lookup(self, segments: List[str]) -> Any:
        head, rest = segments[0], segments[1:]
        if head in self._extra:
            return get_path(self._extra[head], rest, _MISSING)
        if head in self._roots:
            return get_path(self._roots[head], rest, _MISSING)
        return get_path(self._entity, segments, _MISSING)

    def resolve(self, value: Any) -> Any:
        """Resolve placeholders in strings, recursing through lists and dicts."""
        if isinstance(value, str):
            return self.resolve_string(value)
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(item) for item in value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        return value

    def resolve_string(self, text: str) -> Any:
        if OPEN not in text:
            return text

        pieces: List[Tuple[bool, Any]] = []
        literal_start = 0
        pos = 0
        while True:
            pos = text.find(OPEN, pos)
            if pos == -1:
                break
            parsed = _PlaceholderParser(text, pos).parse()
            if parsed is None:
                pos += len(OPEN)
                continue
            segments, end = parsed
            value = self.lookup(segments)
            if pos > literal_start:
                pieces.append((False, text[literal_start:pos]))
            if value is _MISSING:
                pieces.append((False, text[pos:end]))
            else:
                pieces.append((True, value))
            literal_start = pos = end

        if literal_start < len(text):
            pieces.append((False, text[literal_start:]))

        # A string that is exactly one resolved placeholder keeps its type
        if len(pieces) == 1 and pieces[0][0]:
            return pieces[0][1]
        return "".join(render_value(v) if resolved else v for resolved, v in pieces)


def resolve_templates(value: Any, context: RuleExecutionContext,
                      extra: Optional[Mapping[str, Any]] = None) -> Any:
    """Resolve ``value`` against ``context``; unresolved placeholders stay literal."""
    return TemplateResolver(context, extra).resolve(value)
