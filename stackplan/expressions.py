"""
Attribute expressions: literals, references to other resources' outputs and
string interpolations mixing the two.

Parsers turn declaration syntax into these values; the planner finds edges by
walking them (static analysis) and the executor resolves them against live
state right before an API call.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Tuple, Union

PathPart = Union[str, int]

# aws_s3_bucket.site.domain_validation_options[0].resource_record_name
_REF_RE = re.compile(
    r"^(?P<type>[A-Za-z][\w-]*)\.(?P<name>[\w-]+)(?P<path>(?:\.[\w-]+|\[\d+\])*)$"
)
_PATH_TOKEN_RE = re.compile(r"\.([\w-]+)|\[(\d+)\]")
_INTERP_RE = re.compile(r"\$\{([^}]*)\}")


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __str__(self) -> str:
        return "(known after apply)"


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    address: str
    path: Tuple[PathPart, ...] = ()

    def __str__(self) -> str:
        text = self.address
        for part in self.path:
            text += f"[{part}]" if isinstance(part, int) else f".{part}"
        return "${" + text + "}"


@dataclass(frozen=True)
class Interpolation:
    """A string template; parts are literal text or nested expressions."""

    parts: Tuple[Any, ...]

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)


def parse_path(text: str) -> Tuple[PathPart, ...]:
    path: List[PathPart] = []
    for name, index in _PATH_TOKEN_RE.findall(text):
        path.append(int(index) if index else name)
    return tuple(path)


def parse_reference(text: str) -> Union[Reference, None]:
    """Parse ``type.name[.attr...]`` into a Reference, or None if it isn't one."""
    m = _REF_RE.match(text.strip())
    if not m:
        return None
    address = f"{m.group('type')}.{m.group('name')}"
    return Reference(address, parse_path(m.group("path")))


def parse_template(text: str, substitute: Callable[[str], Any]) -> Any:
    """
    Split ``"...${expr}..."`` into an expression.

    ``substitute`` maps the inside of each ``${}`` to an expression value.
    A string that is exactly one ``${}`` yields that value unwrapped, so
    non-string outputs (lists, numbers) survive resolution.
    """
    matches = list(_INTERP_RE.finditer(text))
    if not matches:
        return text
    if len(matches) == 1 and matches[0].span() == (0, len(text)):
        return substitute(matches[0].group(1).strip())

    parts: List[Any] = []
    pos = 0
    for m in matches:
        if m.start() > pos:
            parts.append(text[pos:m.start()])
        parts.append(substitute(m.group(1).strip()))
        pos = m.end()
    if pos < len(text):
        parts.append(text[pos:])
    return Interpolation(tuple(parts))


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference in a (possibly nested) expression."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            yield from iter_references(part)
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def walk_path(value: Any, path: Tuple[PathPart, ...]) -> Any:
    """Follow ``path`` through nested dicts/lists. Raises KeyError if absent."""
    cur = value
    for part in path:
        if isinstance(part, int):
            if not isinstance(cur, list) or part >= len(cur):
                raise KeyError(part)
            cur = cur[part]
        else:
            if not isinstance(cur, dict) or part not in cur:
                raise KeyError(part)
            cur = cur[part]
    return cur


def resolve(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Substitute every Reference using ``lookup``.

    ``lookup`` may return UNKNOWN; an interpolation with any unknown part is
    itself UNKNOWN, containers keep UNKNOWN in place.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Interpolation):
        pieces = [resolve(p, lookup) for p in value.parts]
        if any(contains_unknown(p) for p in pieces):
            return UNKNOWN
        return "".join(_render(p) for p in pieces)
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(item, lookup) for item in value]
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def to_plain(value: Any) -> Any:
    """Render an expression or resolved value as JSON-friendly data."""
    if isinstance(value, (Reference, Interpolation, _Unknown)):
        return str(value)
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)

