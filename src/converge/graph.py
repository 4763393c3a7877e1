"""Resource graph construction from declarations.

The builder turns validated declarations into immutable resource nodes,
parsing every `${...}` expression into a reference edge up front. All
problems found in one pass are reported together in a single SchemaError;
nothing here has side effects.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from .models import DeclarationDocument, ExternalSourceDeclaration, ResourceDeclaration
from .references import (
    AttributeReference,
    ExternalReference,
    ReferenceSyntaxError,
    ResourceAddress,
    iter_references,
    parse_value,
)
from .schemas import SchemaRegistry

logger = logging.getLogger(__name__)

PHASES = ("create", "update", "delete")


class SchemaError(Exception):
    """Raised when declarations are malformed or inconsistent."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


@dataclass(frozen=True)
class LifecyclePolicy:
    """Per-resource lifecycle guards.

    Attributes:
        ignore_fields: Attribute paths never considered for drift.
        prevent_destroy: Refuse any step that would delete the resource.
    """

    ignore_fields: frozenset[str] = field(default_factory=frozenset)
    prevent_destroy: bool = False


@dataclass(frozen=True)
class TimeoutPolicy:
    """Per-phase provider timeouts in seconds; None falls back to config."""

    create: float | None = None
    update: float | None = None
    delete: float | None = None

    def for_phase(self, phase: str, default: float) -> float:
        """Return the timeout for a phase, or the default when unset."""
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        value = getattr(self, phase)
        return value if value is not None else default


@dataclass(frozen=True, eq=False)
class ResourceNode:
    """A declared resource, immutable for the duration of an apply cycle.

    Attribute values may contain AttributeReference, ExternalReference and
    Interpolation objects anywhere inside nested mappings and lists.
    """

    address: ResourceAddress
    attributes: dict[str, Any]
    provider: str
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    timeouts: TimeoutPolicy = field(default_factory=TimeoutPolicy)
    depends_on: frozenset[ResourceAddress] = field(default_factory=frozenset)
    references: frozenset[ResourceAddress] = field(default_factory=frozenset)
    external_sources: frozenset[str] = field(default_factory=frozenset)

    @property
    def dependencies(self) -> frozenset[ResourceAddress]:
        """All upstream addresses: referenced and explicitly declared."""
        return self.depends_on | self.references

    def __str__(self) -> str:
        return str(self.address)


@dataclass
class ResourceGraph:
    """Resource nodes keyed by address, plus the external sources they use."""

    nodes: dict[ResourceAddress, ResourceNode] = field(default_factory=dict)
    external: dict[str, ExternalSourceDeclaration] = field(default_factory=dict)

    def __contains__(self, address: object) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        for address in sorted(self.nodes):
            yield self.nodes[address]

    def get(self, address: ResourceAddress) -> ResourceNode | None:
        return self.nodes.get(address)

    def referenced_external_sources(self) -> set[str]:
        """External sources that at least one node reads."""
        used: set[str] = set()
        for node in self.nodes.values():
            used |= node.external_sources
        return used

    def referencing(self, address: ResourceAddress) -> list[ResourceAddress]:
        """Addresses of nodes that depend directly on an address."""
        return sorted(a for a, node in self.nodes.items() if address in node.dependencies)


def _build_node(
    declaration: ResourceDeclaration,
    registry: SchemaRegistry,
    errors: list[str],
) -> ResourceNode | None:
    address = ResourceAddress(type=declaration.type, name=declaration.name)

    try:
        attributes = parse_value(declaration.attributes)
    except ReferenceSyntaxError as e:
        errors.append(f"{address}: {e}")
        return None

    schema = registry.get(declaration.type)
    if schema is not None:
        for missing in schema.missing_required(declaration.attributes):
            errors.append(f"{address}: required attribute '{missing}' is missing")

    references: set[ResourceAddress] = set()
    external_sources: set[str] = set()
    for reference in iter_references(attributes):
        if isinstance(reference, AttributeReference):
            references.add(reference.address)
        elif isinstance(reference, ExternalReference):
            external_sources.add(reference.source)

    depends_on: set[ResourceAddress] = set()
    for raw in declaration.depends_on:
        try:
            depends_on.add(ResourceAddress.parse(raw))
        except ValueError as e:
            errors.append(f"{address}: {e}")

    prevent_destroy = declaration.lifecycle.prevent_destroy
    if prevent_destroy is None:
        prevent_destroy = registry.default_prevent_destroy(declaration.type)

    return ResourceNode(
        address=address,
        attributes=attributes,
        provider=declaration.provider_tag,
        lifecycle=LifecyclePolicy(
            ignore_fields=frozenset(declaration.lifecycle.ignore_changes),
            prevent_destroy=prevent_destroy,
        ),
        timeouts=TimeoutPolicy(
            create=declaration.timeouts.create,
            update=declaration.timeouts.update,
            delete=declaration.timeouts.delete,
        ),
        depends_on=frozenset(depends_on),
        references=frozenset(references),
        external_sources=frozenset(external_sources),
    )


def build(
    document: DeclarationDocument,
    registry: SchemaRegistry | None = None,
) -> ResourceGraph:
    """Build the resource graph for one apply cycle.

    Args:
        document: Validated declarations.
        registry: Schema registry for required-field checks and defaults.

    Returns:
        The resource graph.

    Raises:
        SchemaError: On duplicate identities, references to undeclared
            resources or external sources, malformed references, or
            missing required attributes.
    """
    registry = registry or SchemaRegistry()
    errors: list[str] = []

    counts = Counter(
        ResourceAddress(type=decl.type, name=decl.name) for decl in document.resources
    )
    for address, count in sorted(counts.items()):
        if count > 1:
            errors.append(f"duplicate resource '{address}' declared {count} times")

    graph = ResourceGraph(external=dict(document.external))
    for declaration in document.resources:
        node = _build_node(declaration, registry, errors)
        if node is not None and node.address not in graph.nodes:
            graph.nodes[node.address] = node

    for node in graph.nodes.values():
        for target in sorted(node.references):
            if target not in graph.nodes:
                errors.append(f"{node.address}: references undeclared resource '{target}'")
        for target in sorted(node.depends_on):
            if target not in graph.nodes:
                errors.append(f"{node.address}: dependsOn undeclared resource '{target}'")
        for source in sorted(node.external_sources):
            if source not in graph.external:
                errors.append(f"{node.address}: references undeclared external source '{source}'")

    if errors:
        message = "Declaration validation failed:\n  - " + "\n  - ".join(errors)
        raise SchemaError(message, errors)

    unused = set(graph.external) - graph.referenced_external_sources()
    if unused:
        logger.warning(
            "External sources declared but never referenced",
            extra={"sources": sorted(unused)},
        )

    logger.info(
        "Built resource graph",
        extra={"resources": len(graph.nodes), "external_sources": len(graph.external)},
    )
    return graph
