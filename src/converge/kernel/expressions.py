"""Interpolation expressions in resource attributes.

Strings may contain ``${...}`` interpolations:

- ``${var.NAME}`` is replaced eagerly with the variable's value.
- ``${TYPE.NAME.ATTR[.KEY...]}`` is a reference to another resource and
  stays symbolic until its value is known.

A string consisting of exactly one interpolation keeps the JSON type of the
value it resolves to; an interpolation embedded in a larger string is
stringified. ``$${`` escapes a literal ``${``.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Set, Tuple

from .declaration import make_address
from .errors import ExpressionError, UnresolvedAttributeError
from .._internal.canonical_json import canonical_dumps


_INTERP_RE = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class _Unknown:
    """Sentinel for a value that is only known after apply."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A symbolic reference to an attribute of another resource."""
    address: str
    path: Tuple[str, ...]

    def __str__(self) -> str:
        return "${" + ".".join((self.address,) + self.path) + "}"


@dataclass(frozen=True)
class Template:
    """A string with one or more references embedded in literal text."""
    parts: Tuple[Any, ...]  # str | Reference

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)


@dataclass(frozen=True)
class _Interpolated:
    value: Any


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return canonical_dumps(value)
    if isinstance(value, (int, float)):
        return str(value)
    return canonical_dumps(value)


def _parse_expression(
    expr: str,
    address: str,
    variables: Mapping[str, Any],
    missing: Set[str],
) -> Any:
    """Parse the inside of one ``${...}``: a variable value or a Reference."""
    segments = [s.strip() for s in expr.strip().split(".")]
    if not segments or not all(_SEGMENT_RE.match(s) for s in segments):
        raise ExpressionError(address, "${" + expr + "}", "expected var.NAME or TYPE.NAME.ATTR")

    if segments[0] == "var":
        if len(segments) != 2:
            raise ExpressionError(address, "${" + expr + "}", "variable references take the form var.NAME")
        name = segments[1]
        if name not in variables:
            missing.add(name)
            return None
        return variables[name]

    if len(segments) < 3:
        raise ExpressionError(address, "${" + expr + "}", "resource references need TYPE.NAME.ATTR")
    return Reference(address=make_address(segments[0], segments[1]), path=tuple(segments[2:]))


def compile_string(
    text: str,
    address: str,
    variables: Mapping[str, Any],
    missing: Set[str],
) -> Any:
    """Compile one string: variables substituted, references kept symbolic."""
    parts: List[Any] = []
    pos = 0
    for match in _INTERP_RE.finditer(text):
        if match.start() > pos:
            parts.append(text[pos:match.start()])
        if match.group(0) == "$${":
            parts.append("${")
        else:
            parts.append(_Interpolated(_parse_expression(match.group(1), address, variables, missing)))
        pos = match.end()
    if pos < len(text):
        parts.append(text[pos:])

    # Exactly one interpolation and nothing else: keep the value's type
    if len(parts) == 1 and isinstance(parts[0], _Interpolated):
        return parts[0].value

    merged: List[Any] = []
    for part in parts:
        if isinstance(part, _Interpolated):
            part = part.value if isinstance(part.value, Reference) else _stringify(part.value)
        if isinstance(part, str) and merged and isinstance(merged[-1], str):
            merged[-1] = merged[-1] + part
        else:
            merged.append(part)

    if not merged:
        return ""
    if len(merged) == 1 and isinstance(merged[0], str):
        return merged[0]
    return Template(parts=tuple(merged))


def compile_value(
    value: Any,
    address: str,
    variables: Mapping[str, Any],
    missing: Set[str],
) -> Any:
    """Compile an attribute value recursively.

    Undeclared or unbound variable names are added to ``missing`` instead of
    raising, so a build can report all of them at once.
    """
    if isinstance(value, str):
        return compile_string(value, address, variables, missing)
    if isinstance(value, dict):
        return {k: compile_value(v, address, variables, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [compile_value(v, address, variables, missing) for v in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference in a compiled value, in document order."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        for part in value.parts:
            if isinstance(part, Reference):
                yield part
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, list):
        for v in value:
            yield from iter_references(v)


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still holds an UNKNOWN anywhere."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Substitute references using ``lookup``.

    ``lookup`` returns the referenced value or UNKNOWN. A template with any
    unknown part is UNKNOWN as a whole.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        out: List[str] = []
        for part in value.parts:
            if isinstance(part, Reference):
                resolved = lookup(part)
                if contains_unknown(resolved):
                    return UNKNOWN
                out.append(_stringify(resolved))
            else:
                out.append(part)
        return "".join(out)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]
    return value


def lookup_path(values: Dict[str, Any], reference: Reference) -> Any:
    """Walk a reference's attribute path through a resource's known values.

    Raises:
        UnresolvedAttributeError: If the path does not exist
    """
    current: Any = values
    for segment in reference.path:
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            available = current.keys() if isinstance(current, dict) else []
            raise UnresolvedAttributeError(str(reference), available)
    return current


def to_display(value: Any) -> Any:
    """Render a resolved value for reports: UNKNOWN becomes a marker string."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, (Reference, Template)):
        return str(value)
    if isinstance(value, dict):
        return {k: to_display(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_display(v) for v in value]
    return value
