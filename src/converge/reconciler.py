"""Reconciliation loop.

One cycle:
1. Acquire the state store lease (held elsewhere -> Deferred, not an error)
2. Load the desired-state document
3. Build and validate the resource graph
4. Optionally refresh applied state from the provider (drift policy)
5. Diff, plan, execute
6. Release the lease and report

Phases move Idle -> Planning -> Executing -> Idle and every cycle ends in
one of Converged, Partial, Failed or Deferred.

RETRY POLICY:
- Partial cycles are retried after PARTIAL_RETRY_INTERVAL, sooner than the
  normal interval
- Failed cycles (fatal provider error, invalid document or graph) halt
  automatic retries until the document changes or force_retry() is called
- Unexpected errors feed a circuit breaker: after MAX_CONSECUTIVE_FAILURES
  cycles pause for CIRCUIT_BREAKER_RESET_SECONDS
- Losing the lease mid-cycle stops it as Partial; the next cycle is Deferred
  while the new holder runs
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import socket
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .config import Config, DriftPolicy
from .differ import Delta, compute_deltas
from .executor import ExecutionReport, Executor, OperationOutcome
from .graph import GraphError, build_graph
from .kinds import KindRegistry
from .models import AppliedState, DesiredStateDocument, ResourceStatus
from .normalizer import FieldNormalizer
from .planner import Plan, PlanError, build_plan
from .provenance import get_provenance_logger
from .provider import Provider, ProviderError
from .spec_loader import SpecLoadError, load_document
from .state_store import LeaseNotHeld, StateStore, StoreLocked

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class ReconcilePhase(str, Enum):
    """What the reconciler is doing right now."""

    IDLE = "Idle"
    PLANNING = "Planning"
    EXECUTING = "Executing"


class CycleStatus(str, Enum):
    """Terminal status of one cycle."""

    CONVERGED = "Converged"
    PARTIAL = "Partial"
    FAILED = "Failed"
    DEFERRED = "Deferred"  # Lease held by another owner


@dataclass
class ResourceOutcome:
    """Per-resource line of a cycle report."""

    name: str
    action: str
    outcome: str
    error: str | None = None
    provider_id: str = ""
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "action": self.action,
            "outcome": self.outcome,
            "error": self.error,
            "provider_id": self.provider_id,
            "attempts": self.attempts,
        }


@dataclass
class CycleReport:
    """Result of a single reconciliation cycle."""

    cycle_id: str
    status: CycleStatus = CycleStatus.CONVERGED
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    document_fingerprint: str | None = None
    dry_run: bool = False
    resources: dict[str, ResourceOutcome] = field(default_factory=dict)
    stages: list[list[str]] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    unexpected: bool = False  # Counts towards the circuit breaker

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def operations_planned(self) -> int:
        return sum(len(stage) for stage in self.stages)

    def counts(self) -> dict[str, int]:
        """Number of resources per outcome."""
        counts: dict[str, int] = {}
        for resource in self.resources.values():
            counts[resource.outcome] = counts.get(resource.outcome, 0) + 1
        return dict(sorted(counts.items()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and CLI output."""
        return {
            "cycle_id": self.cycle_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "document_fingerprint": self.document_fingerprint,
            "dry_run": self.dry_run,
            "stages": self.stages,
            "counts": self.counts(),
            "resources": {name: r.to_dict() for name, r in sorted(self.resources.items())},
            "error": self.error,
            "error_type": self.error_type,
        }


def _default_owner() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(4)}"


class Reconciler:
    """Drives desired state towards applied state, one cycle at a time."""

    def __init__(
        self,
        config: Config,
        provider: Provider,
        store: StateStore,
        registry: KindRegistry | None = None,
        normalizer: FieldNormalizer | None = None,
        executor: Executor | None = None,
        document_loader: Callable[[Path], DesiredStateDocument] = load_document,
        owner: str | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._store = store
        self._registry = registry or KindRegistry()
        self._normalizer = normalizer or FieldNormalizer(
            enable_default_rules=config.enable_default_normalization_rules
        )
        self._executor = executor or Executor.from_config(config, provider, store)
        self._load_document = document_loader
        self._owner = owner or _default_owner()
        self._provenance = get_provenance_logger()

        self._phase = ReconcilePhase.IDLE
        self._cycle_lock = asyncio.Lock()
        self._shutdown_event = asyncio.Event()
        self._wake_event = asyncio.Event()

        # Failed-cycle halt
        self._halted = False
        self._halted_fingerprint: str | None = None
        self._force_next = False

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

        self._last_report: CycleReport | None = None

    @property
    def phase(self) -> ReconcilePhase:
        return self._phase

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    # =========================================================================
    # Operator controls
    # =========================================================================

    def trigger(self) -> bool:
        """Request an immediate cycle.

        Returns:
            False if a request was already pending (the two coalesce).
        """
        if self._wake_event.is_set():
            logger.debug("Trigger coalesced with pending request")
            return False
        logger.info("Reconciliation triggered")
        self._wake_event.set()
        return True

    def force_retry(self) -> None:
        """Lift a Failed halt and ignore per-resource fatal blocks for one cycle."""
        logger.info(
            "Forced retry requested",
            extra={"halted_fingerprint": self._halted_fingerprint},
        )
        self._halted = False
        self._halted_fingerprint = None
        self._force_next = True
        self.trigger()

    def cancel(self) -> None:
        """Cancel the in-flight cycle. Running operations finish first."""
        if self._phase == ReconcilePhase.IDLE:
            return
        logger.warning("Cancelling in-flight cycle", extra={"phase": self._phase.value})
        self._executor.cancel()

    def shutdown(self, cancel_running: bool = True) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        self._wake_event.set()
        if cancel_running:
            self.cancel()

    # =========================================================================
    # Loop
    # =========================================================================

    async def run(self) -> None:
        """Run reconciliation cycles until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES
        unexpected errors, the circuit opens and reconciliation pauses for
        CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "owner": self._owner,
                "desired_state_path": str(self._config.desired_state_path),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "drift_policy": self._config.drift_policy.value,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            # Circuit breaker check
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(),
                            timeout=min(remaining, self._config.reconcile_interval_seconds),
                        )
                    except TimeoutError:
                        pass
                    continue
                else:
                    logger.info("Circuit breaker reset, resuming reconciliation")
                    self._circuit_open_until = None
                    self._consecutive_failures = 0

            self._wake_event.clear()
            report = await self.reconcile_once()

            if report.unexpected:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            if self._shutdown_event.is_set():
                break

            interval = (
                self._config.partial_retry_interval_seconds
                if report.status == CycleStatus.PARTIAL
                else self._config.reconcile_interval_seconds
            )
            # Wait for next cycle, a trigger, or shutdown
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=interval)
            except TimeoutError:
                pass

        logger.info("Reconciler shutdown complete")

    async def reconcile_once(self, force: bool = False) -> CycleReport:
        """Run exactly one cycle and return its report."""
        async with self._cycle_lock:
            force = force or self._force_next
            self._force_next = False
            report = await self._reconcile(force)

        report.end_time = datetime.now(UTC)
        self._last_report = report
        if self._config.enable_audit_logging:
            self._provenance.log_cycle(report)
        return report

    # =========================================================================
    # Cycle
    # =========================================================================

    async def _reconcile(self, force: bool) -> CycleReport:
        report = CycleReport(cycle_id=secrets.token_hex(6), dry_run=self._config.dry_run)
        self._executor.reset()

        try:
            await self._store.acquire_lease(self._owner)
        except StoreLocked as e:
            logger.warning(
                "State store locked, cycle deferred",
                extra={"holder": e.holder, "expires_at": str(e.expires_at)},
            )
            report.status = CycleStatus.DEFERRED
            report.error = str(e)
            report.error_type = type(e).__name__
            return report

        document: DesiredStateDocument | None = None
        try:
            self._phase = ReconcilePhase.PLANNING
            document = self._load_document(self._config.desired_state_path)
            report.document_fingerprint = document.fingerprint()

            if (
                self._halted
                and not force
                and report.document_fingerprint == self._halted_fingerprint
            ):
                logger.warning(
                    "Automatic retries halted after failed cycle; waiting for a "
                    "desired-state change or a forced retry",
                    extra={"fingerprint": report.document_fingerprint},
                )
                report.status = CycleStatus.FAILED
                report.error = "Halted after failed cycle"
                report.error_type = "Halted"
                self._mark_all(report, document, OperationOutcome.SKIPPED, report.error)
                return report

            graph = build_graph(document, self._registry)
            states = {state.name: state for state in self._store.list()}
            drifted: set[str] = set()
            if self._config.drift_policy == DriftPolicy.REFRESH:
                states, drifted = await self._refresh(states)

            deltas = compute_deltas(
                graph,
                states,
                registry=self._registry,
                normalizer=self._normalizer,
                drifted=drifted,
                force=force,
            )
            plan = build_plan(graph, deltas, states)
            report.stages = [stage.names() for stage in plan.stages]

            self._phase = ReconcilePhase.EXECUTING
            execution = await self._executor.execute(plan, graph, deltas)
            self._absorb(report, deltas, plan, execution)

        except (SpecLoadError, GraphError, PlanError) as e:
            logger.error(
                "Cycle aborted before execution",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            report.status = CycleStatus.FAILED
            report.error = str(e)
            report.error_type = type(e).__name__
            if document is not None:
                self._mark_all(report, document, OperationOutcome.SKIPPED, str(e))
        except LeaseNotHeld as e:
            logger.error(
                "Lease lost during cycle, stopping",
                extra={"owner": self._owner, "error": str(e)},
            )
            report.status = CycleStatus.PARTIAL
            report.error = str(e)
            report.error_type = type(e).__name__
            if document is not None:
                self._mark_all(report, document, OperationOutcome.SKIPPED, str(e))
        except Exception as e:
            logger.exception("Unexpected error during reconciliation")
            report.status = CycleStatus.FAILED
            report.error = str(e)
            report.error_type = type(e).__name__
            report.unexpected = True
            if document is not None:
                self._mark_all(report, document, OperationOutcome.SKIPPED, str(e))
        finally:
            self._store.release_lease(self._owner)
            self._phase = ReconcilePhase.IDLE

        self._update_halt(report)
        return report

    async def _refresh(
        self, states: dict[str, AppliedState]
    ) -> tuple[dict[str, AppliedState], set[str]]:
        """Compare applied records with live provider state."""
        loop = asyncio.get_running_loop()
        refreshed = dict(states)
        drifted: set[str] = set()

        for name, state in sorted(states.items()):
            if not state.is_live or state.status != ResourceStatus.APPLIED:
                continue
            try:
                live = await loop.run_in_executor(
                    None, self._provider.read, state.provider_id, state.kind
                )
            except ProviderError as e:
                logger.warning(
                    "Failed to refresh live state, trusting record",
                    extra={"resource": name, "error": str(e)},
                )
                continue

            if live is None:
                logger.warning(
                    "Resource missing from provider",
                    extra={"resource": name, "provider_id": state.provider_id},
                )
                refreshed[name] = replace(state, provider_id="", observed={})
            elif self._normalizer.changed_fields(state.kind, live, state.observed):
                logger.info("Live state drifted", extra={"resource": name})
                drifted.add(name)

        return refreshed, drifted

    def _absorb(
        self,
        report: CycleReport,
        deltas: dict[str, Delta],
        plan: Plan,
        execution: ExecutionReport,
    ) -> None:
        for name, delta in sorted(deltas.items()):
            result = execution.results.get(name)
            if result is None:
                report.resources[name] = ResourceOutcome(
                    name, delta.action.value, OperationOutcome.NOOP.value
                )
                continue
            report.resources[name] = ResourceOutcome(
                name=name,
                action=result.action.value,
                outcome=result.outcome.value,
                error=result.error,
                provider_id=result.provider_id,
                attempts=result.attempts,
            )

        blocked_roots = sorted(name for name, root in plan.blocked.items() if name == root)
        if execution.has_fatal or blocked_roots:
            report.status = CycleStatus.FAILED
            fatal = execution.with_outcome(OperationOutcome.FATAL) + blocked_roots
            report.error = f"Fatal provider errors: {sorted(fatal)}"
            report.error_type = "FatalProviderError"
        elif execution.dry_run:
            report.status = CycleStatus.CONVERGED if plan.is_empty else CycleStatus.PARTIAL
        elif execution.cancelled or not execution.all_succeeded:
            report.status = CycleStatus.PARTIAL
        else:
            report.status = CycleStatus.CONVERGED

    @staticmethod
    def _mark_all(
        report: CycleReport,
        document: DesiredStateDocument,
        outcome: OperationOutcome,
        error: str,
    ) -> None:
        for name in sorted(document.resources):
            report.resources[name] = ResourceOutcome(name, "", outcome.value, error=error)

    def _update_halt(self, report: CycleReport) -> None:
        if report.status == CycleStatus.FAILED and not report.unexpected:
            if not self._halted:
                logger.error(
                    "Cycle failed, halting automatic retries",
                    extra={"fingerprint": report.document_fingerprint, "error": report.error},
                )
            self._halted = True
            self._halted_fingerprint = report.document_fingerprint
        elif report.status in (CycleStatus.CONVERGED, CycleStatus.PARTIAL):
            self._halted = False
            self._halted_fingerprint = None

