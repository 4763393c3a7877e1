"""Apply provenance tracking for audit.

Every plan or apply cycle is stamped with one structured record answering:
- "What did this cycle change, and what failed?"
- "Which commit of the declarations was applied?"
- "Which version of the engine ran?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONVERGE_VERSION = os.environ.get("CONVERGE_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Per-action counts for one cycle."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    destroy_count: int = 0
    noop_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total mutating actions (create + update + replace + destroy)."""
        return self.create_count + self.update_count + self.replace_count + self.destroy_count

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> ChangeProvenanceSummary:
        return cls(
            create_count=counts.get("create", 0),
            update_count=counts.get("update", 0),
            replace_count=counts.get("replace", 0),
            destroy_count=counts.get("destroy", 0),
            noop_count=counts.get("noop", 0),
            failed_count=counts.get("failed", 0),
            cancelled_count=counts.get("cancelled", 0),
        )


@dataclass
class ApplyProvenance:
    """Provenance record for one cycle."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    command: str = "apply"
    converge_version: str = CONVERGE_VERSION
    provider: str = ""

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    declarations_path: str = ""
    state_path: str = ""
    state_serial: int = 0

    # Outcome
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    failed: list[str] = field(default_factory=list)
    aborted: bool = False
    duration_seconds: float = 0.0
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits provenance records through the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")

    def create_provenance(
        self,
        command: str,
        provider: str,
        declarations_path: str,
        state_path: str,
    ) -> ApplyProvenance:
        """Create a new provenance record for a cycle."""
        return ApplyProvenance(
            command=command,
            provider=provider,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            declarations_path=declarations_path,
            state_path=state_path,
        )

    def log_provenance(self, provenance: ApplyProvenance) -> None:
        """Log a completed provenance record.

        Errors are logged at ERROR, failed or cancelled resources at WARNING.
        """
        summary = provenance.change_summary
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif summary.failed_count or summary.cancelled_count or provenance.aborted:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Apply provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "command": provenance.command,
                "changes_applied": summary.total_significant,
                "failed_count": summary.failed_count,
                "cancelled_count": summary.cancelled_count,
                "git_commit": provenance.git_commit_sha,
                "converge_version": provenance.converge_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
