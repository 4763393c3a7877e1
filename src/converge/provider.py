"""Provider capability: the only way the engine touches remote infrastructure.

A provider is any object with

    apply_resource(resource_type, name, desired_attributes, action, timeout)
        -> observed_attributes

implemented either as a plain method (run in the default executor) or as a
coroutine (awaited). Failures are reported by raising ProviderError; the
`retryable` flag tells the engine whether another attempt may succeed. The
engine never inspects provider semantics beyond the outcome and the
returned attribute map.

Providers are selected by name: "null" is the built-in echo provider, and
"package.module:attribute" imports a provider class, factory or instance.
"""

from __future__ import annotations

import copy
import importlib
import inspect
import logging
from typing import Any, Protocol, runtime_checkable

from .config import ConfigurationError
from .diff import Action
from .schemas import ResourceSchema

logger = logging.getLogger(__name__)

NULL_PROVIDER = "null"


class ProviderError(Exception):
    """Raised by providers when applying a resource fails.

    Attributes:
        retryable: Whether the engine may retry the call.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


@runtime_checkable
class Provider(Protocol):
    """Capability to apply a single resource."""

    def apply_resource(
        self,
        resource_type: str,
        name: str,
        desired_attributes: dict[str, Any],
        action: Action,
        timeout: float,
    ) -> Any: ...


class NullProvider:
    """Provider that performs no remote calls.

    Create and update echo the desired attributes and assign a stable `id`;
    destroy returns nothing. Useful for validating declarations and for
    exercising plans end to end.
    """

    def apply_resource(
        self,
        resource_type: str,
        name: str,
        desired_attributes: dict[str, Any],
        action: Action,
        timeout: float,
    ) -> dict[str, Any]:
        if action == Action.DESTROY:
            return {}
        observed = copy.deepcopy(desired_attributes)
        observed.setdefault("id", f"{resource_type}/{name}")
        return observed

    def get_schema(self, resource_type: str) -> ResourceSchema | None:
        return None


def load_provider(spec: str) -> Provider:
    """Load a provider by name.

    Args:
        spec: "null", or "module:attribute" where the attribute is a
              provider class (instantiated without arguments), a zero-argument
              factory, or a provider instance.

    Returns:
        The provider.

    Raises:
        ConfigurationError: If the provider cannot be imported or does not
            implement apply_resource.
    """
    if spec == NULL_PROVIDER:
        return NullProvider()

    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(
            f"Invalid provider '{spec}': expected 'null' or 'module:attribute'"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import provider module '{module_name}': {e}") from e

    try:
        target = getattr(module, attribute)
    except AttributeError as e:
        raise ConfigurationError(
            f"Provider module '{module_name}' has no attribute '{attribute}'"
        ) from e

    if inspect.isclass(target) or (callable(target) and not hasattr(target, "apply_resource")):
        provider = target()
    else:
        provider = target

    if not callable(getattr(provider, "apply_resource", None)):
        raise ConfigurationError(f"Provider '{spec}' does not implement apply_resource()")

    logger.info("Loaded provider", extra={"provider": spec})
    return provider
