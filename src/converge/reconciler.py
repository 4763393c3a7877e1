"""Reconciliation engine: applies an execution plan against the provider.

For every step, in dependency order:
1. Wait for the direct upstream steps to finish
2. Re-resolve references from the outputs upstream steps produced in this
   cycle, falling back to the state snapshot taken at planning time
3. Re-diff against the current state entry and decide the action
4. Refuse destruction of protected resources before any provider call
5. Call the provider, bounded by the phase timeout, retrying retryable
   provider errors with exponential backoff and jitter
6. Write the observed attributes to the state store (remove on destroy)

SCHEDULING:
Every step runs in its own task and is gated on per-step completion events
of its upstream steps, never on a global lock. A bounded semaphore caps the
number of provider calls in flight. Independent branches run concurrently.
When a step fails, steps depending on it (transitively) are cancelled and
never leave Pending; unrelated branches run to completion. abort() stops
scheduling steps that have not started; in-flight provider calls run to
completion or to their own timeout.

Per-resource state machine:
    Pending -> Planning -> {Creating | Updating | Destroying | Skipped}
            -> {Applied | Failed}
A replacement goes Destroying -> Creating.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import Config
from .diff import Action
from .graph import ResourceNode
from .guardrails import GuardrailEnforcer, PolicyViolation
from .plan import ExecutionPlan, Planner, PlanStep, resolve_desired
from .provider import Provider, ProviderError
from .references import (
    AttributeReference,
    ResourceAddress,
    UnresolvedReferenceError,
    lookup_path,
)
from .state import StateEntry, StateError, StateStore

logger = logging.getLogger(__name__)


class ResourceStatus(str, Enum):
    """Lifecycle of one resource during an apply cycle."""

    PENDING = "pending"
    PLANNING = "planning"
    CREATING = "creating"
    UPDATING = "updating"
    DESTROYING = "destroying"
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[ResourceStatus, frozenset[ResourceStatus]] = {
    ResourceStatus.PENDING: frozenset({ResourceStatus.PLANNING}),
    ResourceStatus.PLANNING: frozenset(
        {
            ResourceStatus.CREATING,
            ResourceStatus.UPDATING,
            ResourceStatus.DESTROYING,
            ResourceStatus.SKIPPED,
            ResourceStatus.FAILED,
        }
    ),
    ResourceStatus.CREATING: frozenset({ResourceStatus.APPLIED, ResourceStatus.FAILED}),
    ResourceStatus.UPDATING: frozenset({ResourceStatus.APPLIED, ResourceStatus.FAILED}),
    ResourceStatus.DESTROYING: frozenset(
        {ResourceStatus.CREATING, ResourceStatus.APPLIED, ResourceStatus.FAILED}
    ),
}


class PhaseTimeoutError(TimeoutError):
    """Raised when a provider call exceeds its phase timeout."""

    def __init__(self, address: ResourceAddress, phase: str, timeout: float) -> None:
        self.address = address
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"{address}: {phase} exceeded timeout of {timeout:g}s")


@dataclass(frozen=True)
class ResourceFailure:
    """A failed resource: identity, phase and underlying cause."""

    address: ResourceAddress
    phase: str
    cause: BaseException

    @property
    def message(self) -> str:
        return f"{type(self.cause).__name__}: {self.cause}"

    def to_dict(self) -> dict[str, Any]:
        return {"address": str(self.address), "phase": self.phase, "cause": self.message}


@dataclass
class ApplyResult:
    """Outcome of one apply cycle."""

    statuses: dict[ResourceAddress, ResourceStatus] = field(default_factory=dict)
    actions: dict[ResourceAddress, Action] = field(default_factory=dict)
    replaced: set[ResourceAddress] = field(default_factory=set)
    failures: list[ResourceFailure] = field(default_factory=list)
    cancelled: dict[ResourceAddress, str] = field(default_factory=dict)
    aborted: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True only if no resource failed and none was cancelled."""
        return not self.failures and not self.cancelled

    @property
    def failed(self) -> list[ResourceAddress]:
        return sorted(failure.address for failure in self.failures)

    def counts(self) -> dict[str, int]:
        """Executed actions of applied resources, plus failed and cancelled totals."""
        counts = {"create": 0, "update": 0, "replace": 0, "destroy": 0, "noop": 0}
        for address, action in self.actions.items():
            if self.statuses.get(address) not in (ResourceStatus.APPLIED, ResourceStatus.SKIPPED):
                continue
            label = "replace" if address in self.replaced else action.value
            counts[label] += 1
        counts["failed"] = len(self.failures)
        counts["cancelled"] = len(self.cancelled)
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "aborted": self.aborted,
            "summary": self.counts(),
            "duration_seconds": self.duration_seconds,
            "failures": [failure.to_dict() for failure in self.failures],
            "cancelled": {str(a): reason for a, reason in sorted(self.cancelled.items())},
            "statuses": {str(a): status.value for a, status in sorted(self.statuses.items())},
        }


class Reconciler:
    """Applies execution plans.

    The reconciler is the only writer of the state store. One instance may
    apply many plans, one at a time.
    """

    def __init__(
        self,
        provider: Provider,
        config: Config | None = None,
        planner: Planner | None = None,
        guardrails: GuardrailEnforcer | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the reconciler.

        Args:
            provider: Provider capability.
            config: Engine configuration (workers, timeouts, retries).
            planner: Planner used to re-diff nodes at execution time.
            guardrails: Guardrail enforcer.
            sleep: Coroutine used for retry backoff.
        """
        self._provider = provider
        self._config = config or Config()
        self._guardrails = guardrails or GuardrailEnforcer()
        self._planner = planner or Planner(guardrails=self._guardrails)
        self._sleep = sleep
        self._abort = asyncio.Event()
        self._result = ApplyResult()
        self._events: dict[ResourceAddress, asyncio.Event] = {}
        self._outputs: dict[ResourceAddress, dict[str, Any]] = {}

    def abort(self) -> None:
        """Stop scheduling steps that have not started yet."""
        if not self._abort.is_set():
            logger.warning("Abort requested, no new resources will be started")
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def status(self, address: ResourceAddress) -> ResourceStatus | None:
        return self._result.statuses.get(address)

    async def apply(self, plan: ExecutionPlan, store: StateStore) -> ApplyResult:
        """Apply a plan.

        Args:
            plan: Execution plan built for this cycle.
            store: State store to read and update.

        Returns:
            The apply result; `success` is False if any resource failed or
            was cancelled.

        Raises:
            KillSwitchActive: If the kill switch is on.
            ChangeLimitExceeded: If the plan changes too many resources.
            PlanConsumedError: If the plan was already applied.
        """
        self._guardrails.check_kill_switch()
        self._guardrails.check_change_limit(plan.change_count)
        steps = plan.consume()

        self._result = ApplyResult(statuses={s.address: ResourceStatus.PENDING for s in steps})
        self._events = {step.address: asyncio.Event() for step in steps}
        self._outputs = {}
        semaphore = asyncio.Semaphore(self._config.max_workers)

        logger.info(
            "Starting apply",
            extra={
                "steps": len(steps),
                "changes": plan.change_count,
                "max_workers": self._config.max_workers,
            },
        )

        tasks = [
            asyncio.create_task(
                self._run_step(step, plan, store, semaphore), name=str(step.address)
            )
            for step in steps
        ]
        await asyncio.gather(*tasks)

        result = self._result
        result.aborted = self._abort.is_set()
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _run_step(
        self,
        step: PlanStep,
        plan: ExecutionPlan,
        store: StateStore,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            for upstream in sorted(step.wait_for):
                event = self._events.get(upstream)
                if event is not None:
                    await event.wait()

            blocked = [
                upstream
                for upstream in sorted(step.wait_for)
                if self._result.statuses.get(upstream) == ResourceStatus.FAILED
                or upstream in self._result.cancelled
            ]
            if blocked:
                self._cancel(step.address, f"upstream {blocked[0]} did not apply")
                return
            if self._abort.is_set():
                self._cancel(step.address, "apply aborted")
                return

            async with semaphore:
                if self._abort.is_set():
                    self._cancel(step.address, "apply aborted")
                    return
                await self._execute(step, plan, store)
        except Exception as e:
            logger.exception(
                "Unexpected error applying resource",
                extra={"address": str(step.address)},
            )
            self._fail(step.address, "apply", e)
        finally:
            self._events[step.address].set()

    async def _execute(self, step: PlanStep, plan: ExecutionPlan, store: StateStore) -> None:
        address = step.address
        self._transition(address, ResourceStatus.PLANNING)
        prior = store.get(address)
        node = step.node

        if node is None:
            if prior is None:
                self._result.actions[address] = Action.NOOP
                self._transition(address, ResourceStatus.SKIPPED)
                return
            action, replace, desired, fingerprint = Action.DESTROY, False, None, None
            prevent_destroy = prior.prevent_destroy
        else:
            try:
                desired = resolve_desired(
                    node, functools.partial(self._applied_value, plan), plan.external_values
                )
            except UnresolvedReferenceError as e:
                self._fail(address, "resolve", e)
                return
            diff = self._planner.diff(node, desired, prior)
            action, replace, fingerprint = diff.action, diff.replace, diff.fingerprint
            prevent_destroy = node.lifecycle.prevent_destroy

        self._result.actions[address] = action
        if replace:
            self._result.replaced.add(address)

        if action == Action.NOOP:
            if prior is not None:
                self._outputs[address] = prior.attributes
            self._transition(address, ResourceStatus.SKIPPED)
            return

        try:
            self._guardrails.check_destroy_allowed(address, action, replace, prevent_destroy)
        except PolicyViolation as e:
            self._fail(address, "policy", e)
            return

        if action == Action.DESTROY or replace:
            assert prior is not None
            self._transition(address, ResourceStatus.DESTROYING)
            try:
                await self._call_provider(address, Action.DESTROY, prior.attributes, "delete", node)
                await store.remove(address)
            except (ProviderError, PhaseTimeoutError, StateError) as e:
                self._fail(address, "delete", e)
                return
            if action == Action.DESTROY:
                self._transition(address, ResourceStatus.APPLIED)
                logger.info("Resource destroyed", extra={"address": str(address)})
                return

        assert node is not None and desired is not None
        phase = "create" if action == Action.CREATE else "update"
        self._transition(
            address,
            ResourceStatus.CREATING if action == Action.CREATE else ResourceStatus.UPDATING,
        )
        try:
            observed = await self._call_provider(address, action, desired, phase, node)
            await store.put(
                StateEntry(
                    address=address,
                    provider=node.provider,
                    attributes=observed,
                    desired=desired,
                    fingerprint=fingerprint,
                    dependencies=tuple(sorted(node.dependencies)),
                    prevent_destroy=node.lifecycle.prevent_destroy,
                )
            )
        except (ProviderError, PhaseTimeoutError, StateError) as e:
            self._fail(address, phase, e)
            return

        self._outputs[address] = observed
        self._transition(address, ResourceStatus.APPLIED)
        logger.info(
            "Resource applied",
            extra={"address": str(address), "action": "replace" if replace else action.value},
        )

    def _applied_value(self, plan: ExecutionPlan, reference: AttributeReference) -> Any:
        outputs = self._outputs.get(reference.address)
        if outputs is None:
            entry = plan.prior.get(reference.address)
            if entry is None:
                raise UnresolvedReferenceError(f"'{reference.address}' has no recorded state")
            outputs = entry.attributes
        try:
            return lookup_path(outputs, reference.path)
        except UnresolvedReferenceError as e:
            raise UnresolvedReferenceError(f"{reference}: {e}") from e

    async def _call_provider(
        self,
        address: ResourceAddress,
        action: Action,
        attributes: dict[str, Any],
        phase: str,
        node: ResourceNode | None,
    ) -> dict[str, Any]:
        """Invoke the provider with timeout and retry.

        Raises:
            ProviderError: If the call fails permanently or retries run out.
            PhaseTimeoutError: If an attempt exceeds the phase timeout.
        """
        default = self._config.default_timeout(phase)
        timeout = node.timeouts.for_phase(phase, default) if node is not None else default
        max_attempts = self._config.retry.provider_max_retries
        base = self._config.retry.provider_backoff_base_seconds

        attempt = 1
        while True:
            try:
                return await self._invoke(address, action, attributes, phase, timeout)
            except ProviderError as e:
                if not e.retryable or attempt >= max_attempts:
                    raise
                # Exponential backoff with jitter
                backoff = base * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "address": str(address),
                        "phase": phase,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await self._sleep(wait_time)
                attempt += 1

    async def _invoke(
        self,
        address: ResourceAddress,
        action: Action,
        attributes: dict[str, Any],
        phase: str,
        timeout: float,
    ) -> dict[str, Any]:
        apply_resource = self._provider.apply_resource
        args = (address.type, address.name, copy.deepcopy(attributes), action, timeout)

        try:
            if inspect.iscoroutinefunction(apply_resource):
                observed = await asyncio.wait_for(apply_resource(*args), timeout=timeout)
            else:
                loop = asyncio.get_running_loop()
                observed = await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(apply_resource, *args)),
                    timeout=timeout,
                )
        except TimeoutError as e:
            logger.error(
                "Provider call timed out",
                extra={"address": str(address), "phase": phase, "timeout_seconds": timeout},
            )
            raise PhaseTimeoutError(address, phase, timeout) from e

        if observed is None:
            return {}
        if not isinstance(observed, dict):
            raise ProviderError(
                f"provider returned {type(observed).__name__} instead of an attribute map"
            )
        return observed

    def _transition(self, address: ResourceAddress, status: ResourceStatus) -> None:
        current = self._result.statuses[address]
        if status not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise RuntimeError(f"{address}: illegal transition {current.value} -> {status.value}")
        self._result.statuses[address] = status
        logger.debug(
            "Resource status changed",
            extra={"address": str(address), "from": current.value, "to": status.value},
        )

    def _fail(self, address: ResourceAddress, phase: str, cause: BaseException) -> None:
        if self._result.statuses.get(address) != ResourceStatus.FAILED:
            self._result.statuses[address] = ResourceStatus.FAILED
        self._result.failures.append(ResourceFailure(address, phase, cause))
        logger.error(
            "Resource failed",
            extra={
                "address": str(address),
                "phase": phase,
                "error": str(cause),
                "error_type": type(cause).__name__,
            },
        )

    def _cancel(self, address: ResourceAddress, reason: str) -> None:
        self._result.cancelled[address] = reason
        logger.warning("Resource cancelled", extra={"address": str(address), "reason": reason})

    def _log_result(self, result: ApplyResult) -> None:
        extra: dict[str, Any] = {
            "summary": result.counts(),
            "duration_seconds": result.duration_seconds,
            "aborted": result.aborted,
        }
        if result.failures:
            extra["failures"] = [failure.to_dict() for failure in result.failures]
            logger.error("Apply finished with failures", extra=extra)
        elif result.cancelled:
            logger.warning("Apply finished with cancelled resources", extra=extra)
        else:
            logger.info("Apply finished", extra=extra)
