"""Execution plan construction.

The planner runs once per cycle, after the graph is built, the order is
resolved and external values are fetched. For every declared node, in
dependency order, it resolves the desired attributes as far as they are
known, diffs them against the state snapshot and records the action. State
entries whose address is no longer declared (orphans) are planned for
destruction, gated in reverse dependency order.

Actions in a plan are a preview: the reconciler re-resolves references and
re-diffs each node when it executes, using the outputs upstream steps
actually produced.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .dependency import DependencyGraph, resolve
from .diff import Action, AttributeChange, ResourceDiff, diff_attributes, diff_resource
from .graph import ResourceGraph, ResourceNode
from .guardrails import GuardrailEnforcer, PolicyViolation
from .ignore_rules import IgnoreRulesEvaluator
from .references import (
    UNKNOWN,
    AttributeReference,
    ExternalReference,
    ResourceAddress,
    UnresolvedReferenceError,
    lookup_path,
    resolve_value,
)
from .schemas import SchemaRegistry
from .state import StateEntry

logger = logging.getLogger(__name__)


class PlanConsumedError(Exception):
    """Raised when an execution plan is applied more than once."""

    pass


@dataclass
class PlanStep:
    """One step of an execution plan.

    Attributes:
        address: Resource identity.
        action: Planned action. A Create with `replace` set is
                destroy-then-create.
        node: Declared node, or None for an orphan.
        prior: State entry at planning time, if any.
        replace: Whether the step destroys before creating.
        desired: Desired attributes as known at planning time.
        changes: Significant attribute changes.
        ignored: Changes suppressed by ignore rules.
        wait_for: Steps that must finish first.
        violation: Policy violation message, if the step is forbidden.
    """

    address: ResourceAddress
    action: Action
    node: ResourceNode | None = None
    prior: StateEntry | None = None
    replace: bool = False
    desired: dict[str, Any] = field(default_factory=dict)
    changes: list[AttributeChange] = field(default_factory=list)
    ignored: list[AttributeChange] = field(default_factory=list)
    wait_for: frozenset[ResourceAddress] = field(default_factory=frozenset)
    violation: str | None = None

    @property
    def is_orphan(self) -> bool:
        return self.node is None

    @property
    def destroys(self) -> bool:
        return self.action == Action.DESTROY or self.replace

    @property
    def mutates(self) -> bool:
        return self.action != Action.NOOP

    @property
    def prevent_destroy(self) -> bool:
        if self.node is not None:
            return self.node.lifecycle.prevent_destroy
        return self.prior.prevent_destroy if self.prior is not None else False

    @property
    def label(self) -> str:
        """Human-readable action: create, update, replace, destroy or noop."""
        return "replace" if self.replace else self.action.value

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "address": str(self.address),
            "action": self.label,
            "changes": [change.to_dict() for change in self.changes],
            "wait_for": [str(a) for a in sorted(self.wait_for)],
        }
        if self.ignored:
            result["ignored"] = [change.path for change in self.ignored]
        if self.is_orphan:
            result["orphan"] = True
        if self.violation:
            result["violation"] = self.violation
        return result


class ExecutionPlan:
    """Ordered plan steps for one apply cycle; consumable exactly once."""

    def __init__(
        self,
        steps: list[PlanStep],
        graph: ResourceGraph,
        prior: dict[ResourceAddress, StateEntry],
        external_values: dict[str, str],
    ) -> None:
        self._steps = tuple(steps)
        self._by_address = {step.address: step for step in steps}
        self.graph = graph
        self.prior = prior
        self.external_values = external_values
        self._consumed = False

    @property
    def steps(self) -> tuple[PlanStep, ...]:
        return self._steps

    @property
    def consumed(self) -> bool:
        return self._consumed

    def step(self, address: ResourceAddress) -> PlanStep | None:
        return self._by_address.get(address)

    def consume(self) -> tuple[PlanStep, ...]:
        """Hand the steps to the reconciler.

        Raises:
            PlanConsumedError: If the plan was already applied.
        """
        if self._consumed:
            raise PlanConsumedError("Execution plan has already been applied")
        self._consumed = True
        return self._steps

    def counts(self) -> dict[str, int]:
        counts = {"create": 0, "update": 0, "replace": 0, "destroy": 0, "noop": 0}
        for step in self._steps:
            counts[step.label] += 1
        return counts

    @property
    def change_count(self) -> int:
        return sum(1 for step in self._steps if step.mutates)

    @property
    def has_changes(self) -> bool:
        return self.change_count > 0

    @property
    def violations(self) -> list[PlanStep]:
        return [step for step in self._steps if step.violation]

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.counts(),
            "steps": [step.to_dict() for step in self._steps],
        }


def resolve_desired(
    node: ResourceNode,
    resolve_attribute: Callable[[AttributeReference], Any],
    external_values: dict[str, str],
) -> dict[str, Any]:
    """Resolve every reference in a node's attributes.

    Raises:
        UnresolvedReferenceError: If a reference cannot be satisfied.
    """

    def resolve_external(reference: ExternalReference) -> Any:
        try:
            return external_values[reference.source]
        except KeyError as e:
            raise UnresolvedReferenceError(
                f"external source '{reference.source}' was not fetched"
            ) from e

    return resolve_value(node.attributes, resolve_attribute, resolve_external)


class Planner:
    """Builds execution plans and diffs individual nodes."""

    def __init__(
        self,
        registry: SchemaRegistry | None = None,
        ignore_evaluator: IgnoreRulesEvaluator | None = None,
        guardrails: GuardrailEnforcer | None = None,
    ) -> None:
        self._registry = registry or SchemaRegistry()
        self._ignore = ignore_evaluator or IgnoreRulesEvaluator()
        self._guardrails = guardrails or GuardrailEnforcer()

    @property
    def registry(self) -> SchemaRegistry:
        return self._registry

    def diff(
        self,
        node: ResourceNode,
        desired: dict[str, Any],
        prior: StateEntry | None,
    ) -> ResourceDiff:
        """Diff a node's resolved attributes against its prior state."""
        resource_type = node.address.type
        return diff_resource(
            desired,
            prior.baseline if prior is not None else None,
            prior.fingerprint if prior is not None else None,
            ignore=self._ignore.matcher(resource_type, node.lifecycle.ignore_fields),
            is_immutable=lambda path: self._registry.is_immutable(resource_type, path),
        )

    def plan(
        self,
        graph: ResourceGraph,
        snapshot: dict[ResourceAddress, StateEntry],
        external_values: dict[str, str] | None = None,
    ) -> ExecutionPlan:
        """Build the execution plan for one cycle.

        Args:
            graph: Validated resource graph.
            snapshot: State entries at the start of the cycle.
            external_values: Values fetched for this cycle.

        Returns:
            The execution plan.

        Raises:
            CycleError: If the graph is cyclic.
        """
        external_values = external_values or {}
        order = resolve(graph)
        steps: dict[ResourceAddress, PlanStep] = {}

        def planned_value(reference: AttributeReference) -> Any:
            upstream = steps.get(reference.address)
            entry = snapshot.get(reference.address)
            if upstream is not None and (upstream.mutates or entry is None):
                try:
                    return lookup_path(upstream.desired, reference.path)
                except UnresolvedReferenceError:
                    if upstream.action != Action.UPDATE or entry is None:
                        return UNKNOWN
            if entry is not None:
                try:
                    return lookup_path(entry.attributes, reference.path)
                except UnresolvedReferenceError:
                    return UNKNOWN
            return UNKNOWN

        for node in order:
            desired = resolve_desired(node, planned_value, external_values)
            prior = snapshot.get(node.address)
            diff = self.diff(node, desired, prior)
            step = PlanStep(
                address=node.address,
                action=diff.action,
                node=node,
                prior=prior,
                replace=diff.replace,
                desired=desired,
                changes=diff.changes,
                ignored=diff.ignored,
                wait_for=node.dependencies,
            )
            self._check_policy(step)
            steps[node.address] = step

        ordered = list(steps.values()) + self._plan_orphans(graph, snapshot)
        plan = ExecutionPlan(ordered, graph, dict(snapshot), dict(external_values))

        logger.info(
            "Built execution plan",
            extra={
                "summary": plan.counts(),
                "violations": [str(step.address) for step in plan.violations],
            },
        )
        return plan

    def _plan_orphans(
        self,
        graph: ResourceGraph,
        snapshot: dict[ResourceAddress, StateEntry],
    ) -> list[PlanStep]:
        orphans = {address for address in snapshot if address not in graph}
        if not orphans:
            return []

        dependency_graph = DependencyGraph()
        for address in sorted(orphans):
            entry = snapshot[address]
            dependency_graph.add_node(
                address, [dep for dep in entry.dependencies if dep in orphans]
            )

        steps = []
        for address in reversed(dependency_graph.topological_sort()):
            entry = snapshot[address]
            # Whatever depended on this resource at its last apply goes first.
            wait_for = {
                other
                for other, other_entry in snapshot.items()
                if address in other_entry.dependencies
                and (other in orphans or other in graph)
            }
            changes, _ = diff_attributes({}, entry.baseline)
            step = PlanStep(
                address=address,
                action=Action.DESTROY,
                prior=entry,
                changes=changes,
                wait_for=frozenset(wait_for),
            )
            self._check_policy(step)
            steps.append(step)

        logger.info("Planned orphan destruction", extra={"orphans": sorted(map(str, orphans))})
        return steps

    def _check_policy(self, step: PlanStep) -> None:
        try:
            self._guardrails.check_destroy_allowed(
                step.address, step.action, step.replace, step.prevent_destroy
            )
        except PolicyViolation as e:
            step.violation = str(e)
