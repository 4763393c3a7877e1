"""Safety guardrails enforced around every apply.

DESIGN PHILOSOPHY:
- Fail closed: a protected resource is never handed to the provider for
  deletion, whatever the diff says
- Kill switch: central control to halt all apply operations
- Change limit: refuse plans that touch more resources than allowed

Destroy protection is checked twice: when the plan is built (so `plan`
reports the violation) and again immediately before the provider call.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .diff import Action
from .references import ResourceAddress

logger = logging.getLogger(__name__)


class GuardrailViolation(Exception):
    """Raised when a guardrail check fails."""

    pass


class PolicyViolation(GuardrailViolation):
    """Raised when a step would destroy a resource protected by prevent_destroy."""

    def __init__(self, address: ResourceAddress, reason: str) -> None:
        self.address = address
        super().__init__(f"{address}: {reason}")


class KillSwitchActive(GuardrailViolation):
    """Raised when kill switch is enabled."""

    pass


class ChangeLimitExceeded(GuardrailViolation):
    """Raised when a plan changes more resources than allowed."""

    pass


def _env_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class GuardrailsConfig:
    """Configuration for apply guardrails.

    These settings cannot be bypassed by declaration files, only by changing
    the environment the engine runs in.

    Attributes:
        kill_switch_enabled: Block all apply operations.
        max_changes_per_apply: Upper bound on mutating steps; 0 disables it.
    """

    kill_switch_enabled: bool = False
    max_changes_per_apply: int = 0

    @classmethod
    def from_env(cls) -> GuardrailsConfig:
        """Load guardrails configuration from environment.

        Environment Variables:
            KILL_SWITCH: If "true", blocks all apply operations
            MAX_CHANGES_PER_APPLY: Max create/update/destroy steps per apply
                (default: 0, unlimited)
        """
        value = os.environ.get("MAX_CHANGES_PER_APPLY")
        try:
            max_changes = int(value) if value else 0
        except ValueError:
            logger.warning(
                "Ignoring invalid MAX_CHANGES_PER_APPLY",
                extra={"value": value},
            )
            max_changes = 0

        return cls(
            kill_switch_enabled=_env_bool("KILL_SWITCH", False),
            max_changes_per_apply=max(max_changes, 0),
        )


class GuardrailEnforcer:
    """Enforces guardrails before and during an apply.

    Usage:
        enforcer = GuardrailEnforcer(config)
        enforcer.check_kill_switch()          # Raises if kill switch active
        enforcer.check_change_limit(count)    # Raises if too many changes
        enforcer.check_destroy_allowed(...)   # Raises for protected resources
    """

    def __init__(self, config: GuardrailsConfig | None = None) -> None:
        self._config = config or GuardrailsConfig()

    @property
    def config(self) -> GuardrailsConfig:
        return self._config

    def check_kill_switch(self) -> None:
        """Check if kill switch is active.

        The environment is re-read on every call so an operator can halt a
        long-running process.

        Raises:
            KillSwitchActive: If kill switch is enabled.
        """
        env_kill_switch = _env_bool("KILL_SWITCH", False)
        if self._config.kill_switch_enabled or env_kill_switch:
            logger.warning(
                "KILL_SWITCH: Apply operations blocked",
                extra={
                    "config_enabled": self._config.kill_switch_enabled,
                    "env_enabled": env_kill_switch,
                },
            )
            raise KillSwitchActive(
                "Kill switch is active. All apply operations are blocked. "
                "Set KILL_SWITCH=false to resume."
            )

    def check_change_limit(self, change_count: int) -> None:
        """Check the number of mutating steps against the configured limit.

        Raises:
            ChangeLimitExceeded: If the plan changes too many resources.
        """
        limit = self._config.max_changes_per_apply
        if limit and change_count > limit:
            logger.error(
                "GUARDRAIL: Change limit exceeded",
                extra={"change_count": change_count, "limit": limit},
            )
            raise ChangeLimitExceeded(
                f"Plan changes {change_count} resources, exceeding the limit of {limit}. "
                f"Raise MAX_CHANGES_PER_APPLY or split the change."
            )

    def check_destroy_allowed(
        self,
        address: ResourceAddress,
        action: Action,
        replace: bool,
        prevent_destroy: bool,
    ) -> None:
        """Refuse any step that would delete a protected resource.

        Raises:
            PolicyViolation: If the step destroys a prevent_destroy resource.
        """
        if not prevent_destroy:
            return
        if action == Action.DESTROY:
            reason = "prevent_destroy is set; refusing to destroy"
        elif replace:
            reason = "prevent_destroy is set; refusing replacement (destroy then create)"
        else:
            return

        logger.error(
            "GUARDRAIL: Destroy of protected resource blocked",
            extra={"address": str(address), "action": action.value, "replace": replace},
        )
        raise PolicyViolation(address, reason)
