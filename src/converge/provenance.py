"""Cycle provenance tracking for audit.

Every reconciliation cycle is stamped with provenance data answering:
- "What did the engine change, and when?"
- "Which version of the desired state was it converging towards?"
- "Which build of the engine was running?"

Records are emitted through the structured logger (stdout, collected by the
container runtime); one record per cycle plus one per resource change.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .reconciler import CycleReport

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class CycleProvenance:
    """Provenance record for one reconciliation cycle."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""

    # Desired state
    document_fingerprint: str = ""

    # Outcome
    cycle_id: str = ""
    status: str = ""
    dry_run: bool = False
    operations: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records for each cycle."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(self, report: CycleReport) -> CycleProvenance:
        """Build the provenance record for a finished cycle."""
        return CycleProvenance(
            operator_version=OPERATOR_VERSION,
            operator_instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            document_fingerprint=report.document_fingerprint or "",
            cycle_id=report.cycle_id,
            status=report.status.value,
            dry_run=report.dry_run,
            operations=report.operations_planned,
            counts=report.counts(),
            duration_seconds=report.duration_seconds,
            error=report.error,
        )

    def log_cycle(self, report: CycleReport) -> CycleProvenance:
        """Log the cycle record and one record per resource change.

        INFO for Converged and Deferred, WARNING for Partial, ERROR for Failed.
        """
        # Imported here to avoid a circular import
        from .reconciler import CycleStatus

        provenance = self.create_provenance(report)

        log_level = logging.INFO
        if report.status == CycleStatus.FAILED:
            log_level = logging.ERROR
        elif report.status == CycleStatus.PARTIAL:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "cycle_id": provenance.cycle_id,
                "status": provenance.status,
                "operations": provenance.operations,
                "git_commit": provenance.git_commit_sha,
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

        for resource in report.resources.values():
            if resource.action == "NoOp":
                continue
            self.log_change_detail(provenance, resource.to_dict())

        return provenance

    def log_change_detail(self, provenance: CycleProvenance, change: dict[str, Any]) -> None:
        """Log one resource change for fine-grained audit."""
        logger.info(
            "Resource change",
            extra={
                "cycle_id": provenance.cycle_id,
                "git_commit": provenance.git_commit_sha,
                "resource": change.get("name"),
                "change_type": change.get("action"),
                "outcome": change.get("outcome"),
                "provider_id": change.get("provider_id"),
                "error": change.get("error"),
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
