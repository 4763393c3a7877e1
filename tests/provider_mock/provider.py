"""Recording provider with fault and delay injection."""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any

from converge.diff import Action
from converge.provider import ProviderError
from converge.schemas import ResourceSchema


@dataclass(frozen=True)
class ProviderCall:
    """One recorded apply_resource call."""

    resource_type: str
    name: str
    action: Action
    attributes: dict[str, Any]
    timeout: float

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"


@dataclass
class _Fault:
    retryable: bool
    message: str
    action: Action | None
    remaining: int | None


@dataclass
class _Remote:
    resources: dict[str, dict[str, Any]] = field(default_factory=dict)


class MockProvider:
    """Async provider keeping remote resources in memory.

    Create and update store the desired attributes plus provider-computed
    `id` and `self_link` and return them; destroy removes the resource.
    """

    def __init__(
        self,
        schemas: dict[str, ResourceSchema] | None = None,
        initial: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            schemas: Schemas served through get_schema.
            initial: Remote resources that already exist, by address.
        """
        self._schemas = dict(schemas or {})
        self._remote = _Remote(copy.deepcopy(initial or {}))
        self._faults: dict[str, list[_Fault]] = {}
        self._delays: dict[str, float] = {}
        self.calls: list[ProviderCall] = []
        self.completed: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def resources(self) -> dict[str, dict[str, Any]]:
        """Remote resources by address."""
        return self._remote.resources

    def fail(
        self,
        address: str,
        retryable: bool = False,
        times: int | None = None,
        action: Action | None = None,
        message: str = "injected failure",
    ) -> None:
        """Make calls for an address raise ProviderError.

        Args:
            address: "<type>.<name>".
            retryable: Flag carried by the raised error.
            times: Number of calls to fail; None fails every call.
            action: Only fail calls with this action.
            message: Error message.
        """
        self._faults.setdefault(address, []).append(
            _Fault(retryable=retryable, message=message, action=action, remaining=times)
        )

    def delay(self, address: str, seconds: float) -> None:
        """Delay every call for an address."""
        self._delays[address] = seconds

    def order(self, action: Action | None = None) -> list[str]:
        """Addresses in call order, optionally filtered by action."""
        return [c.address for c in self.calls if action is None or c.action == action]

    def calls_for(self, address: str) -> list[ProviderCall]:
        return [c for c in self.calls if c.address == address]

    def get_schema(self, resource_type: str) -> ResourceSchema | None:
        return self._schemas.get(resource_type)

    async def apply_resource(
        self,
        resource_type: str,
        name: str,
        desired_attributes: dict[str, Any],
        action: Action,
        timeout: float,
    ) -> dict[str, Any]:
        address = f"{resource_type}.{name}"
        self.calls.append(
            ProviderCall(resource_type, name, action, copy.deepcopy(desired_attributes), timeout)
        )

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self._delays.get(address)
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)

            self._maybe_fail(address, action)

            if action == Action.DESTROY:
                self._remote.resources.pop(address, None)
                self.completed.append(address)
                return {}

            observed = copy.deepcopy(desired_attributes)
            observed["id"] = f"projects/test/{resource_type}/{name}"
            observed["self_link"] = f"https://example.invalid/{resource_type}/{name}"
            self._remote.resources[address] = observed
            self.completed.append(address)
            return copy.deepcopy(observed)
        finally:
            self.in_flight -= 1

    def _maybe_fail(self, address: str, action: Action) -> None:
        for fault in self._faults.get(address, []):
            if fault.action is not None and fault.action != action:
                continue
            if fault.remaining is not None:
                if fault.remaining <= 0:
                    continue
                fault.remaining -= 1
            raise ProviderError(f"{address}: {fault.message}", retryable=fault.retryable)
