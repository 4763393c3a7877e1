"""Attribute-level diff between desired and last-known resource state.

The diff works on leaf paths: nested mappings and lists are flattened into
dotted paths ("node_config.labels.team", "secondary_ip_range.0.range_name")
and compared one by one. The baseline is the attribute set last applied for
the resource; observed attributes are used only for entries that carry no
applied attributes. Provider-computed outputs never appear in the declared
attributes, so they are never diffed.

Action decision:
- Create if no prior state exists
- Replace (destroy then create) if any non-ignored change touches an
  immutable path of the resource type
- Update if only mutable paths changed
- NoOp otherwise, and always when the content fingerprint is unchanged
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .references import UNKNOWN, contains_unknown

FINGERPRINT_PREFIX = "sha256:"


class Action(str, Enum):
    """Step action decided for a resource."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "noop"


class _Absent:
    def __repr__(self) -> str:
        return "(absent)"


ABSENT: Any = _Absent()


@dataclass(frozen=True)
class AttributeChange:
    """A single leaf-level attribute change.

    Attributes:
        path: Dotted attribute path.
        before: Last-known value, or ABSENT.
        after: Desired value, ABSENT when removed, UNKNOWN when only known
               after an upstream resource is applied.
        ignored_reason: Why the change is excluded from drift, if it is.
        forces_replacement: Whether the path is immutable for the type.
    """

    path: str
    before: Any
    after: Any
    ignored_reason: str | None = None
    forces_replacement: bool = False

    @property
    def kind(self) -> str:
        if self.before is ABSENT:
            return "add"
        if self.after is ABSENT:
            return "remove"
        return "modify"

    def to_dict(self) -> dict[str, Any]:
        """Render for plan output."""
        return {
            "path": self.path,
            "kind": self.kind,
            "before": _display(self.before),
            "after": _display(self.after),
            "forces_replacement": self.forces_replacement,
        }


@dataclass
class ResourceDiff:
    """Outcome of diffing one resource."""

    action: Action
    replace: bool = False
    changes: list[AttributeChange] = field(default_factory=list)
    ignored: list[AttributeChange] = field(default_factory=list)
    fingerprint: str | None = None

    @property
    def replacement_paths(self) -> list[str]:
        return [c.path for c in self.changes if c.forces_replacement]


def _display(value: Any) -> Any:
    if value is ABSENT:
        return None
    if value is UNKNOWN:
        return "(known after apply)"
    return value


def canonical_json(value: Any) -> str:
    """Serialize a value deterministically (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(attributes: dict[str, Any]) -> str | None:
    """Content fingerprint of resolved attributes.

    Returns:
        "sha256:<hex>", or None while any value is still unknown.
    """
    if contains_unknown(attributes):
        return None
    digest = hashlib.sha256(canonical_json(attributes).encode("utf-8")).hexdigest()
    return FINGERPRINT_PREFIX + digest


Segments = tuple[str, ...]


def _leaves(value: Any, prefix: Segments = ()) -> dict[Segments, Any]:
    """Leaf values keyed by path segments; keys may themselves contain dots."""
    if isinstance(value, dict) and value:
        flat: dict[Segments, Any] = {}
        for key, item in value.items():
            flat.update(_leaves(item, (*prefix, str(key))))
        return flat
    if isinstance(value, list) and value:
        flat = {}
        for index, item in enumerate(value):
            flat.update(_leaves(item, (*prefix, str(index))))
        return flat
    return {prefix: value} if prefix else {}


def flatten(value: Any) -> dict[str, Any]:
    """Flatten nested mappings and lists into dotted leaf paths.

    Empty containers are leaves, so clearing a block is still a change.
    """
    return {".".join(segments): leaf for segments, leaf in _leaves(value).items()}


def _get(value: Any, path: Segments) -> Any:
    current = value
    for segment in path:
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return ABSENT
    return current


def _equal(before: Any, after: Any) -> bool:
    if after is UNKNOWN or before is ABSENT or after is ABSENT:
        return False
    if isinstance(before, bool) != isinstance(after, bool):
        return False
    return bool(before == after)


def _has_changed_ancestor(path: Segments, changed: set[Segments]) -> bool:
    return any(path[:end] in changed for end in range(1, len(path)))


def diff_attributes(
    desired: dict[str, Any],
    baseline: dict[str, Any],
    ignore: Callable[[str], str | None] | None = None,
    is_immutable: Callable[[str], bool] | None = None,
) -> tuple[list[AttributeChange], list[AttributeChange]]:
    """Compare desired attributes with a baseline, leaf by leaf.

    Args:
        desired: Resolved desired attributes (may hold UNKNOWN).
        baseline: Last-known attributes.
        ignore: Maps a path to an ignore reason, or None to keep the change.
        is_immutable: Whether a changed path forces replacement.

    Returns:
        Tuple of (significant changes, ignored changes), sorted by path.
    """
    paths = set(_leaves(desired)) | set(_leaves(baseline))
    raw: list[tuple[Segments, Any, Any]] = []
    for path in sorted(paths):
        before = _get(baseline, path)
        after = _get(desired, path)
        if not _equal(before, after):
            raw.append((path, before, after))

    changed = {path for path, _, _ in raw}
    changes: list[AttributeChange] = []
    ignored: list[AttributeChange] = []
    for segments, before, after in raw:
        if _has_changed_ancestor(segments, changed):
            continue
        path = ".".join(segments)
        reason = ignore(path) if ignore is not None else None
        if reason is not None:
            ignored.append(AttributeChange(path, before, after, ignored_reason=reason))
            continue
        forces = bool(is_immutable(path)) if is_immutable is not None else False
        changes.append(AttributeChange(path, before, after, forces_replacement=forces))
    return changes, ignored


def diff_resource(
    desired: dict[str, Any],
    prior_attributes: dict[str, Any] | None,
    prior_fingerprint: str | None = None,
    ignore: Callable[[str], str | None] | None = None,
    is_immutable: Callable[[str], bool] | None = None,
) -> ResourceDiff:
    """Diff one resource and decide its action.

    Args:
        desired: Resolved desired attributes.
        prior_attributes: Last-known attributes, or None if the resource
            has never been applied.
        prior_fingerprint: Fingerprint stored with the last apply.
        ignore: Ignore matcher bound to the resource.
        is_immutable: Immutable-path predicate bound to the resource type.

    Returns:
        The diff, carrying the decided action.
    """
    current = fingerprint(desired)

    if prior_attributes is None:
        changes, _ = diff_attributes(desired, {})
        return ResourceDiff(action=Action.CREATE, changes=changes, fingerprint=current)

    if current is not None and current == prior_fingerprint:
        return ResourceDiff(action=Action.NOOP, fingerprint=current)

    changes, ignored = diff_attributes(desired, prior_attributes, ignore, is_immutable)
    if not changes:
        return ResourceDiff(action=Action.NOOP, ignored=ignored, fingerprint=current)

    if any(change.forces_replacement for change in changes):
        return ResourceDiff(
            action=Action.CREATE,
            replace=True,
            changes=changes,
            ignored=ignored,
            fingerprint=current,
        )

    return ResourceDiff(
        action=Action.UPDATE, changes=changes, ignored=ignored, fingerprint=current
    )
