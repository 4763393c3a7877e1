"""Resource type schemas: required fields, immutable fields, protection defaults.

The reconciler never interprets provider semantics; it only needs to know
which attributes must be present, which attributes force a replacement when
they change, and whether a type is protected from destruction by default.

Schemas are looked up in this order, the first match winning:
1. Schemas registered explicitly, then KNOWN_SCHEMAS below (the types of the
   bundled cluster declarations)
2. The provider's own `get_schema()`, consulted only for types not registered
PROTECTED_RESOURCE_TYPES then forces the protection default on, whichever
schema was found.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSchema:
    """Structural facts about one resource type.

    Attributes:
        resource_type: Type tag (e.g., "google_container_cluster").
        required: Attribute names that must be declared.
        immutable: Attribute paths that cannot change in place. A change at
                   or below one of these paths forces destroy-then-create.
        prevent_destroy: Protection default when a declaration is silent.
    """

    resource_type: str
    required: frozenset[str] = field(default_factory=frozenset)
    immutable: frozenset[str] = field(default_factory=frozenset)
    prevent_destroy: bool = False

    def is_immutable(self, path: str) -> bool:
        """Check whether a changed attribute path forces replacement.

        A path matches when it equals an immutable path, lies below one, or
        replaces a whole block that contains one.
        """
        return any(
            path == field_path
            or path.startswith(field_path + ".")
            or field_path.startswith(path + ".")
            for field_path in self.immutable
        )

    def missing_required(self, attributes: dict[str, Any]) -> list[str]:
        """Return required attribute names absent from a declaration."""
        return sorted(name for name in self.required if attributes.get(name) is None)


def _schema(
    resource_type: str,
    required: Iterable[str],
    immutable: Iterable[str],
    prevent_destroy: bool = False,
) -> ResourceSchema:
    return ResourceSchema(
        resource_type=resource_type,
        required=frozenset(required),
        immutable=frozenset(immutable),
        prevent_destroy=prevent_destroy,
    )


# Types used by the private GKE cluster declarations. Protection defaults to
# false everywhere; tighten per type with PROTECTED_RESOURCE_TYPES.
KNOWN_SCHEMAS: dict[str, ResourceSchema] = {
    schema.resource_type: schema
    for schema in (
        _schema(
            "google_compute_network",
            required=["name"],
            immutable=["name", "project", "auto_create_subnetworks", "description"],
        ),
        _schema(
            "google_compute_subnetwork",
            required=["name", "network", "region", "ip_cidr_range"],
            immutable=["name", "project", "network", "region"],
        ),
        _schema(
            "google_compute_router",
            required=["name", "network", "region"],
            immutable=["name", "project", "network", "region"],
        ),
        _schema(
            "google_compute_router_nat",
            required=[
                "name",
                "router",
                "region",
                "nat_ip_allocate_option",
                "source_subnetwork_ip_ranges_to_nat",
            ],
            immutable=["name", "project", "router", "region"],
        ),
        _schema(
            "google_container_cluster",
            required=["name", "location"],
            immutable=[
                "name",
                "project",
                "location",
                "network",
                "subnetwork",
                "networking_mode",
                "ip_allocation_policy",
                "private_cluster_config.enable_private_nodes",
                "private_cluster_config.master_ipv4_cidr_block",
                "initial_node_count",
                "remove_default_node_pool",
            ],
        ),
        _schema(
            "google_container_node_pool",
            required=["name", "cluster", "location"],
            immutable=[
                "name",
                "project",
                "cluster",
                "location",
                "node_config.machine_type",
                "node_config.disk_size_gb",
                "node_config.disk_type",
                "node_config.image_type",
                "node_config.service_account",
                "node_config.oauth_scopes",
                "node_config.shielded_instance_config",
            ],
        ),
        _schema(
            "google_artifact_registry_repository",
            required=["repository_id", "format", "location"],
            immutable=["repository_id", "project", "format", "location"],
        ),
        _schema(
            "google_service_account",
            required=["account_id"],
            immutable=["account_id", "project"],
        ),
        _schema(
            "google_project_iam_member",
            required=["project", "role", "member"],
            immutable=["project", "role", "member", "condition"],
        ),
        _schema(
            "google_artifact_registry_repository_iam_member",
            required=["repository", "role", "member"],
            immutable=["project", "location", "repository", "role", "member"],
        ),
        _schema(
            "google_compute_firewall",
            required=["name", "network"],
            immutable=["name", "project", "network", "direction"],
        ),
    )
}


class SchemaSource(Protocol):
    """Anything that can describe resource types (usually the provider)."""

    def get_schema(self, resource_type: str) -> ResourceSchema | None: ...


class SchemaRegistry:
    """Lookup of resource schemas by type."""

    def __init__(
        self,
        schemas: Iterable[ResourceSchema] | None = None,
        protected_types: Iterable[str] | None = None,
        source: SchemaSource | None = None,
        include_known: bool = True,
    ) -> None:
        """Initialize the registry.

        Args:
            schemas: Extra schemas, overriding built-in ones of the same type.
            protected_types: Types whose prevent_destroy default is forced on.
            source: Optional fallback consulted for types not registered.
            include_known: Whether to start from KNOWN_SCHEMAS.
        """
        self._schemas: dict[str, ResourceSchema] = dict(KNOWN_SCHEMAS) if include_known else {}
        for schema in schemas or []:
            self._schemas[schema.resource_type] = schema
        self._protected = frozenset(protected_types or [])
        self._source = source

    def get(self, resource_type: str) -> ResourceSchema | None:
        """Return the schema for a type, or None when the type is unknown."""
        schema = self._schemas.get(resource_type)
        if schema is None and self._source is not None:
            schema = self._source.get_schema(resource_type)
            if schema is not None:
                self._schemas[resource_type] = schema
        if resource_type in self._protected:
            if schema is None:
                schema = ResourceSchema(resource_type=resource_type)
            schema = replace(schema, prevent_destroy=True)
        return schema

    def default_prevent_destroy(self, resource_type: str) -> bool:
        """Protection default for a type when the declaration does not say."""
        schema = self.get(resource_type)
        return schema.prevent_destroy if schema is not None else False

    def is_immutable(self, resource_type: str, path: str) -> bool:
        """Check whether changing a path on a type forces replacement."""
        schema = self.get(resource_type)
        return schema.is_immutable(path) if schema is not None else False
