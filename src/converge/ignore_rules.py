"""Ignore rules for drift detection.

Attribute paths matched by an ignore rule are never considered when deciding
whether a resource drifted. Two kinds of rules are evaluated uniformly:
- Global rules, scoped by resource type and loaded from YAML
- Per-resource `ignore_fields` from the node's lifecycle policy

Paths are dotted attribute paths ("node_config.labels.team"); list elements
use their index as a segment. Patterns support wildcards:
- "*" matches any single segment
- "**" matches any number of segments
A pattern also covers everything below the path it matches, so ignoring
"labels" ignores "labels.team".

The diff compares declared attributes with the last applied declaration, so
provider-computed attributes never reach these rules. There are no built-in
rules: every global rule is an operator decision.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)

NODE_IGNORE_REASON = "lifecycle ignore_changes"


class IgnoreRulesError(Exception):
    """Raised when ignore rules configuration is invalid."""

    pass


def _match_parts(path_parts: list[str], pattern_parts: list[str]) -> bool:
    """Recursively match path parts against pattern parts."""
    if not pattern_parts:
        return not path_parts
    if not path_parts:
        return all(p == "**" for p in pattern_parts)

    if pattern_parts[0] == "**":
        if len(pattern_parts) == 1:
            return True
        for i in range(len(path_parts) + 1):
            if _match_parts(path_parts[i:], pattern_parts[1:]):
                return True
        return False
    elif pattern_parts[0] == "*" or fnmatch.fnmatchcase(path_parts[0], pattern_parts[0]):
        return _match_parts(path_parts[1:], pattern_parts[1:])
    else:
        return False


def path_matches(path: str, pattern: str) -> bool:
    """Check if a path, or one of its ancestors, matches a pattern.

    Args:
        path: The attribute path (e.g., "labels.team").
        pattern: The pattern to match against (e.g., "labels" or "*.team").

    Returns:
        True if the path is covered by the pattern.
    """
    path_parts = path.split(".")
    pattern_parts = pattern.split(".")
    return any(
        _match_parts(path_parts[:end], pattern_parts)
        for end in range(1, len(path_parts) + 1)
    )


@dataclass(frozen=True)
class IgnoreRule:
    """A single ignore rule for drift detection.

    Attributes:
        resource_type: Resource type to match (e.g., "google_container_cluster").
                       Supports shell-style wildcards: "*" matches all types.
        paths: Attribute path patterns to ignore.
        reason: Human-readable explanation for audit logging.
    """

    resource_type: str
    paths: tuple[str, ...]
    reason: str = ""

    def matches_resource(self, resource_type: str) -> bool:
        """Check if this rule applies to a resource type."""
        if self.resource_type == "*":
            return True
        return fnmatch.fnmatchcase(resource_type, self.resource_type)

    def should_ignore_path(self, path: str) -> bool:
        """Check if an attribute path should be ignored."""
        return any(path_matches(path, pattern) for pattern in self.paths)


@dataclass
class IgnoreRulesConfig:
    """Configuration for ignore rules.

    Attributes:
        rules: List of ignore rules to apply.
        log_ignored_changes: Whether to log when changes are ignored.
    """

    rules: list[IgnoreRule] = field(default_factory=list)
    log_ignored_changes: bool = True

    @classmethod
    def from_yaml(cls, yaml_content: str) -> IgnoreRulesConfig:
        """Parse ignore rules from YAML content.

        Expected format:
        ```yaml
        logIgnoredChanges: true
        rules:
          - resourceType: "google_container_node_pool"
            paths:
              - "node_config.labels"
              - "autoscaling.*"
            reason: "Labels managed by the platform team"
        ```

        Raises:
            IgnoreRulesError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise IgnoreRulesError(f"Invalid YAML in ignore rules: {e}") from e

        if data is None:
            return cls()

        if not isinstance(data, dict):
            raise IgnoreRulesError("Ignore rules must be a YAML object")

        rules: list[IgnoreRule] = []
        raw_rules = data.get("rules", [])
        if not isinstance(raw_rules, list):
            raise IgnoreRulesError("'rules' must be a list")

        for i, rule_data in enumerate(raw_rules):
            if not isinstance(rule_data, dict):
                raise IgnoreRulesError(f"Rule {i} must be an object")

            paths = rule_data.get("paths", [])
            if not isinstance(paths, list):
                raise IgnoreRulesError(f"Rule {i}: 'paths' must be a list")
            if not paths:
                raise IgnoreRulesError(f"Rule {i}: 'paths' cannot be empty")
            for path in paths:
                if not isinstance(path, str) or not path:
                    raise IgnoreRulesError(f"Rule {i}: paths must be non-empty strings")

            rules.append(
                IgnoreRule(
                    resource_type=str(rule_data.get("resourceType", "*")),
                    paths=tuple(paths),
                    reason=str(rule_data.get("reason", "")),
                )
            )

        return cls(
            rules=rules,
            log_ignored_changes=bool(data.get("logIgnoredChanges", True)),
        )

    @classmethod
    def from_file(cls, path: str) -> IgnoreRulesConfig:
        """Load ignore rules from a YAML file.

        Raises:
            IgnoreRulesError: If file cannot be read or parsed.
        """
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise IgnoreRulesError(f"Cannot read ignore rules file: {e}") from e

        return cls.from_yaml(content)

    @classmethod
    def from_env(cls) -> IgnoreRulesConfig:
        """Load ignore rules from environment.

        Environment Variables:
            IGNORE_RULES_FILE: Path to YAML file with rules (optional)
            LOG_IGNORED_CHANGES: If "false", don't log ignored changes

        Raises:
            IgnoreRulesError: If IGNORE_RULES_FILE is set but unusable.
        """
        log_ignored_changes = os.environ.get(
            "LOG_IGNORED_CHANGES", "true"
        ).lower() in ("true", "1", "yes")

        rules: list[IgnoreRule] = []
        rules_file = os.environ.get("IGNORE_RULES_FILE")
        if rules_file:
            rules = cls.from_file(rules_file).rules

        return cls(
            rules=rules,
            log_ignored_changes=log_ignored_changes,
        )


class IgnoreRulesEvaluator:
    """Evaluates global rules and per-resource ignore fields against paths."""

    def __init__(self, config: IgnoreRulesConfig | None = None) -> None:
        self._config = config or IgnoreRulesConfig()
        self._rules = list(self._config.rules)

    def should_ignore_change(
        self,
        resource_type: str,
        change_path: str,
        ignore_fields: Iterable[str] = (),
    ) -> tuple[bool, str | None]:
        """Check if a change at an attribute path should be ignored.

        Args:
            resource_type: The type of the resource being diffed.
            change_path: The attribute path that changed.
            ignore_fields: The resource's own ignore patterns.

        Returns:
            Tuple of (should_ignore, reason).
        """
        reason: str | None = None
        if any(path_matches(change_path, pattern) for pattern in ignore_fields):
            reason = NODE_IGNORE_REASON
        else:
            for rule in self._rules:
                if rule.matches_resource(resource_type) and rule.should_ignore_path(change_path):
                    reason = rule.reason
                    break

        if reason is None:
            return False, None

        if self._config.log_ignored_changes:
            logger.debug(
                "Ignoring change per rule",
                extra={
                    "resource_type": resource_type,
                    "change_path": change_path,
                    "reason": reason,
                },
            )
        return True, reason

    def matcher(
        self, resource_type: str, ignore_fields: Iterable[str] = ()
    ) -> Callable[[str], str | None]:
        """Bind the evaluator to one resource.

        Returns:
            A callable mapping an attribute path to the ignore reason, or None.
        """
        fields = tuple(ignore_fields)

        def match(path: str) -> str | None:
            _, reason = self.should_ignore_change(resource_type, path, fields)
            return reason

        return match
