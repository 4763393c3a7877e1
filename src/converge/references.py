"""Attribute references between resources.

References are written inside attribute values as `${<type>.<name>.<attr>}`
(nested attributes continue the dotted path) or `${external.<source>}`.
They are parsed once, when the graph is built, into first-class objects so
ordering and resolution never depend on scanning strings at apply time.

A string holding exactly one reference resolves to the referenced value with
its original type. A string mixing text and references is an Interpolation
and always resolves to a string. `$${` escapes a literal `${`.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .models import EXTERNAL_NAMESPACE

_TOKEN_PATTERN = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class ReferenceSyntaxError(ValueError):
    """Raised when a `${...}` expression is malformed."""

    pass


class UnresolvedReferenceError(Exception):
    """Raised when a reference points at an attribute that does not exist."""

    pass


@dataclass(frozen=True, order=True)
class ResourceAddress:
    """Resource identity: type plus a local name unique per type."""

    type: str
    name: str

    def __str__(self) -> str:
        return f"{self.type}.{self.name}"

    @classmethod
    def parse(cls, text: str) -> ResourceAddress:
        """Parse "<type>.<name>".

        Raises:
            ValueError: If the text is not a two-part address.
        """
        parts = text.split(".")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"invalid resource address: {text!r}")
        return cls(type=parts[0], name=parts[1])


@dataclass(frozen=True)
class AttributeReference:
    """Pointer from a value to another resource's output attribute."""

    address: ResourceAddress
    path: tuple[str, ...]

    def __str__(self) -> str:
        return "${" + ".".join((self.address.type, self.address.name, *self.path)) + "}"


@dataclass(frozen=True)
class ExternalReference:
    """Pointer to a value produced by the external data fetcher."""

    source: str

    def __str__(self) -> str:
        return "${" + f"{EXTERNAL_NAMESPACE}.{self.source}" + "}"


Reference = AttributeReference | ExternalReference


@dataclass(frozen=True)
class Interpolation:
    """A string template mixing literal text and references."""

    parts: tuple[str | AttributeReference | ExternalReference, ...]

    def __str__(self) -> str:
        return "".join(
            part.replace("${", "$${") if isinstance(part, str) else str(part)
            for part in self.parts
        )


class _Unknown:
    """Placeholder for values only known after an upstream resource is applied."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self


UNKNOWN = _Unknown()


def _parse_expression(expression: str) -> Reference:
    segments = expression.strip().split(".")
    for segment in segments:
        if not _SEGMENT_PATTERN.match(segment):
            raise ReferenceSyntaxError(f"invalid reference expression: ${{{expression}}}")

    if segments[0] == EXTERNAL_NAMESPACE:
        if len(segments) != 2:
            raise ReferenceSyntaxError(
                f"external references take the form ${{external.<source>}}: ${{{expression}}}"
            )
        return ExternalReference(source=segments[1])

    if len(segments) < 3:
        raise ReferenceSyntaxError(
            f"references take the form ${{<type>.<name>.<attribute>}}: ${{{expression}}}"
        )
    return AttributeReference(
        address=ResourceAddress(type=segments[0], name=segments[1]),
        path=tuple(segments[2:]),
    )


def parse_string(text: str) -> str | Reference | Interpolation:
    """Parse one string into a literal, a single reference or an interpolation."""
    if "${" not in text:
        return text

    parts: list[str | Reference] = []
    literal = ""
    position = 0
    for match in _TOKEN_PATTERN.finditer(text):
        literal += _literal_segment(text, position, match.start())
        position = match.end()
        if match.group(0) == "$${":
            literal += "${"
            continue
        if literal:
            parts.append(literal)
            literal = ""
        parts.append(_parse_expression(match.group(1)))
    literal += _literal_segment(text, position, len(text))
    if literal:
        parts.append(literal)

    if len(parts) == 1:
        return parts[0]
    return Interpolation(parts=tuple(parts))


def _literal_segment(text: str, start: int, end: int) -> str:
    segment = text[start:end]
    if "${" in segment:
        raise ReferenceSyntaxError(f"unterminated reference in {text!r}")
    return segment


def parse_value(value: Any) -> Any:
    """Parse references out of an attribute value, recursing into containers.

    Raises:
        ReferenceSyntaxError: If a reference expression is malformed.
    """
    if isinstance(value, str):
        return parse_string(value)
    if isinstance(value, dict):
        return {key: parse_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_value(item) for item in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference contained in a parsed value."""
    if isinstance(value, AttributeReference | ExternalReference):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            if not isinstance(part, str):
                yield part
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)


def lookup_path(attributes: dict[str, Any], path: tuple[str, ...]) -> Any:
    """Walk a dotted attribute path through nested mappings and lists.

    Raises:
        UnresolvedReferenceError: If any segment is missing.
    """
    current: Any = attributes
    for segment in path:
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise UnresolvedReferenceError(f"attribute '{'.'.join(path)}' not found")
    return current


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still holds unknown placeholders."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


def resolve_value(
    value: Any,
    resolve_attribute: Callable[[AttributeReference], Any],
    resolve_external: Callable[[ExternalReference], Any],
) -> Any:
    """Replace references in a parsed value with concrete values.

    Resolvers may return UNKNOWN; interpolations containing an unknown part
    resolve to UNKNOWN as a whole.
    """
    if isinstance(value, AttributeReference):
        return resolve_attribute(value)
    if isinstance(value, ExternalReference):
        return resolve_external(value)
    if isinstance(value, Interpolation):
        rendered: list[str] = []
        for part in value.parts:
            if isinstance(part, str):
                rendered.append(part)
                continue
            resolved = resolve_value(part, resolve_attribute, resolve_external)
            if resolved is UNKNOWN:
                return UNKNOWN
            rendered.append(_render(resolved))
        return "".join(rendered)
    if isinstance(value, dict):
        return {
            key: resolve_value(item, resolve_attribute, resolve_external)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [resolve_value(item, resolve_attribute, resolve_external) for item in value]
    return value


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)
