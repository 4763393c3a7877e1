"""Pydantic models for declaration documents with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A normalized document the graph builder turns into resource nodes

Example document:

```yaml
apiVersion: converge/v1
kind: ResourceSet
metadata:
  name: network
spec:
  external:
    caller_ip:
      url: https://api.ipify.org
      format: ip
  resources:
    - type: google_compute_network
      name: vpc
      provider: google
      attributes:
        name: gke-vpc
        auto_create_subnetworks: false
      lifecycle:
        preventDestroy: false
        ignoreChanges: [labels]
      timeouts:
        create: 10m
```
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

# Resource identity patterns. Types follow provider naming (snake case),
# names are local identifiers unique per type.
VALID_RESOURCE_TYPE_PATTERN = r"^[a-z][a-z0-9_]*$"
VALID_RESOURCE_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"
VALID_SOURCE_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"

# Reserved reference namespace for external data sources
EXTERNAL_NAMESPACE = "external"

_DURATION_PATTERN = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def parse_duration(value: Any) -> float | None:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and strings such as "45s", "10m",
    "1h" or "1h30m".

    Args:
        value: Raw duration value.

    Returns:
        Duration in seconds, or None when value is None.

    Raises:
        ValueError: If the value is not a positive duration.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            match = _DURATION_PATTERN.match(text)
            if not text or match is None:
                raise ValueError(
                    f"invalid duration {value!r}: use seconds or a form like '30s', '10m', '1h30m'"
                ) from None
            hours, minutes, secs = (int(part) if part else 0 for part in match.groups())
            seconds = float(hours * 3600 + minutes * 60 + secs)
    else:
        raise ValueError(f"invalid duration: {value!r}")

    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


class LifecycleConfig(BaseModel):
    """Per-resource lifecycle policy as declared."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    # None means "use the resource type default"
    prevent_destroy: bool | None = Field(None, alias="preventDestroy")
    ignore_changes: list[str] = Field(default_factory=list, alias="ignoreChanges")

    @field_validator("ignore_changes")
    @classmethod
    def validate_ignore_paths(cls, v: list[str]) -> list[str]:
        for path in v:
            if not path or path.startswith(".") or path.endswith(".") or ".." in path:
                raise ValueError(f"invalid attribute path in ignoreChanges: {path!r}")
        return v


class TimeoutsConfig(BaseModel):
    """Per-phase provider timeouts as declared (seconds after parsing)."""

    model_config = {"extra": "forbid"}

    create: float | None = None
    update: float | None = None
    delete: float | None = None

    @field_validator("create", "update", "delete", mode="before")
    @classmethod
    def validate_duration(cls, v: Any) -> float | None:
        return parse_duration(v)


class ResourceDeclaration(BaseModel):
    """A single declared resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(min_length=1, max_length=128, pattern=VALID_RESOURCE_TYPE_PATTERN)]
    name: Annotated[str, Field(min_length=1, max_length=128, pattern=VALID_RESOURCE_NAME_PATTERN)]
    provider: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)

    # Explicit ordering edges, as "<type>.<name>" addresses
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("type")
    @classmethod
    def validate_type_not_reserved(cls, v: str) -> str:
        if v == EXTERNAL_NAMESPACE:
            raise ValueError(f"'{EXTERNAL_NAMESPACE}' is reserved for external data sources")
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for address in v:
            if address.count(".") != 1:
                raise ValueError(f"dependsOn entries must be '<type>.<name>': {address!r}")
        return v

    @property
    def provider_tag(self) -> str:
        """Provider tag, defaulting to the type prefix (google_compute_network -> google)."""
        return self.provider or self.type.split("_", 1)[0]


class ExternalSourceDeclaration(BaseModel):
    """A read-only external value looked up once per apply cycle."""

    model_config = {"extra": "forbid"}

    url: Annotated[str, Field(min_length=1)]
    format: Literal["text", "ip"] = "text"
    timeout: float | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("url must use http or https")
        return v

    @field_validator("timeout", mode="before")
    @classmethod
    def validate_timeout(cls, v: Any) -> float | None:
        return parse_duration(v)


class DeclarationDocument(BaseModel):
    """A set of resource and external source declarations."""

    model_config = {"extra": "forbid"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)
    external: dict[str, ExternalSourceDeclaration] = Field(default_factory=dict)

    @field_validator("external")
    @classmethod
    def validate_source_names(
        cls, v: dict[str, ExternalSourceDeclaration]
    ) -> dict[str, ExternalSourceDeclaration]:
        for name in v:
            if not re.match(VALID_SOURCE_NAME_PATTERN, name):
                raise ValueError(f"invalid external source name: {name!r}")
        return v
