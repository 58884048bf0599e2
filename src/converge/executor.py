"""Plan execution.

Stages run strictly in order with a barrier between them. Inside a stage
every operation runs concurrently on a worker thread pool, bounded by
``max_parallelism``. Each operation:

1. Resolves ``${name.attr}`` references against the state store
2. Writes an intent record (status Pending, ``in_flight`` set)
3. Calls the provider, retrying transient errors with exponential backoff
4. Commits the resulting AppliedState before the stage completes

FAILURE CONTAINMENT:
A failed operation marks every later operation that waits on it as skipped.
Independent branches of the plan keep going.

CANCELLATION:
Operations already running finish and their results are committed. No new
stage starts and everything not yet started is reported as cancelled.

LEASE:
The store lease is renewed before every stage and on every commit. A lost
lease (LeaseNotHeld) ends execution once the running stage settles.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import DEFAULT_MAX_PARALLELISM, DEFAULT_OPERATION_TIMEOUT_SECONDS, Config, RetryConfig
from .differ import Delta
from .graph import ResourceGraph, resolve_references
from .models import AppliedState, DeltaAction, ResourceSpec, ResourceStatus
from .planner import Plan, PlannedOperation
from .provider import FatalProviderError, Provider, ProviderError, TransientProviderError
from .state_store import StateStore

logger = logging.getLogger(__name__)


class OperationOutcome(str, Enum):
    """Terminal result of one planned operation."""

    SUCCEEDED = "succeeded"
    RECOVERABLE = "recoverable"  # Retry budget exhausted or timed out
    FATAL = "fatal"  # Provider rejected the declaration
    SKIPPED = "skipped"  # A dependency failed or is blocked
    CANCELLED = "cancelled"
    PLANNED = "planned"  # Dry run
    NOOP = "noop"


FAILED_OUTCOMES = frozenset(
    {
        OperationOutcome.RECOVERABLE,
        OperationOutcome.FATAL,
        OperationOutcome.SKIPPED,
        OperationOutcome.CANCELLED,
    }
)


@dataclass
class OperationResult:
    """What happened to one logical name during execution."""

    name: str
    action: DeltaAction
    outcome: OperationOutcome
    attempts: int = 0
    error: str | None = None
    provider_id: str = ""
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "name": self.name,
            "action": self.action.value,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "error": self.error,
            "provider_id": self.provider_id,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ExecutionReport:
    """Results of executing one plan."""

    results: dict[str, OperationResult] = field(default_factory=dict)
    cancelled: bool = False
    dry_run: bool = False

    def with_outcome(self, outcome: OperationOutcome) -> list[str]:
        return sorted(name for name, r in self.results.items() if r.outcome == outcome)

    @property
    def operations_attempted(self) -> int:
        return sum(1 for r in self.results.values() if r.attempts > 0)

    @property
    def all_succeeded(self) -> bool:
        return all(r.outcome not in FAILED_OUTCOMES for r in self.results.values())

    @property
    def has_fatal(self) -> bool:
        return any(r.outcome == OperationOutcome.FATAL for r in self.results.values())


class _OperationFailed(Exception):
    """Internal: terminal failure of a single operation."""

    def __init__(self, outcome: OperationOutcome, error: str, in_flight: bool = False) -> None:
        self.outcome = outcome
        self.error = error
        # The provider call may still be running (timeout)
        self.in_flight = in_flight
        super().__init__(error)


def _lookup_path(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            raise KeyError(path)
        current = current[segment]
    return current


class Executor:
    """Runs a plan against a provider and records results in the state store."""

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        max_parallelism: int = DEFAULT_MAX_PARALLELISM,
        retry: RetryConfig | None = None,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        dry_run: bool = False,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._store = store
        self._max_parallelism = max_parallelism
        self._retry = retry or RetryConfig()
        self._timeout = operation_timeout_seconds
        self._dry_run = dry_run
        self._sleep = sleep
        self._cancel_event = asyncio.Event()
        self._pool: ThreadPoolExecutor | None = None

    @classmethod
    def from_config(cls, config: Config, provider: Provider, store: StateStore) -> Executor:
        return cls(
            provider,
            store,
            max_parallelism=config.max_parallelism,
            retry=config.retry,
            operation_timeout_seconds=config.operation_timeout_seconds,
            dry_run=config.dry_run,
        )

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def cancel(self) -> None:
        """Request cancellation of the running plan."""
        if not self._cancel_event.is_set():
            logger.info("Execution cancellation requested")
        self._cancel_event.set()

    def reset(self) -> None:
        """Clear a previous cancellation request before a new cycle."""
        self._cancel_event.clear()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    # =========================================================================
    # Plan level
    # =========================================================================

    async def execute(
        self, plan: Plan, graph: ResourceGraph, deltas: Mapping[str, Delta]
    ) -> ExecutionReport:
        """Execute the plan stage by stage.

        Args:
            plan: Staged plan from the planner.
            graph: Resource graph the plan was built from.
            deltas: Deltas the plan was built from.

        Returns:
            Report with one result per planned or blocked name.
        """
        report = ExecutionReport(dry_run=self._dry_run)

        for name, root in sorted(plan.blocked.items()):
            reason = (
                "declaration unchanged since fatal failure"
                if name == root
                else f"dependency '{root}' is blocked by a fatal failure"
            )
            report.results[name] = OperationResult(
                name, deltas[name].action, OperationOutcome.SKIPPED, error=reason
            )

        if self._dry_run:
            for op in plan.operations():
                report.results[op.name] = OperationResult(op.name, op.action, OperationOutcome.PLANNED)
            logger.info("Dry run, no provider calls made", extra={"operations": plan.operation_count})
            return report

        unsuccessful: set[str] = set(plan.blocked)
        semaphore = asyncio.Semaphore(self._max_parallelism)
        self._pool = ThreadPoolExecutor(
            max_workers=self._max_parallelism, thread_name_prefix="converge-op"
        )

        try:
            for stage in plan.stages:
                if self._cancel_event.is_set():
                    for op in stage.operations:
                        report.results[op.name] = OperationResult(
                            op.name, op.action, OperationOutcome.CANCELLED
                        )
                    report.cancelled = True
                    continue

                runnable: list[PlannedOperation] = []
                for op in stage.operations:
                    upstream = sorted(plan.dependencies.get(op.name, set()) & unsuccessful)
                    if upstream:
                        report.results[op.name] = OperationResult(
                            op.name,
                            op.action,
                            OperationOutcome.SKIPPED,
                            error=f"dependency '{upstream[0]}' did not succeed",
                        )
                        unsuccessful.add(op.name)
                        continue
                    runnable.append(op)

                # Raises LeaseNotHeld if another cycle took the store over
                self._store.renew_lease()
                logger.info(
                    "Executing stage",
                    extra={
                        "stage": stage.index,
                        "phase": stage.phase.value,
                        "operations": [op.name for op in runnable],
                    },
                )

                outcomes = await asyncio.gather(
                    *(self._run_operation(op, graph, semaphore) for op in runnable),
                    return_exceptions=True,
                )
                # Let the whole stage settle before surfacing a lost lease
                errors = [o for o in outcomes if isinstance(o, BaseException)]
                if errors:
                    raise errors[0]
                results = [o for o in outcomes if isinstance(o, OperationResult)]
                for result in results:
                    report.results[result.name] = result
                    if result.outcome in FAILED_OUTCOMES:
                        unsuccessful.add(result.name)
                    if result.outcome == OperationOutcome.CANCELLED:
                        report.cancelled = True
        finally:
            # Timed-out provider calls may still be running; do not block on them
            self._pool.shutdown(wait=False)
            self._pool = None

        logger.info(
            "Plan executed",
            extra={
                "succeeded": len(report.with_outcome(OperationOutcome.SUCCEEDED)),
                "recoverable": len(report.with_outcome(OperationOutcome.RECOVERABLE)),
                "fatal": len(report.with_outcome(OperationOutcome.FATAL)),
                "skipped": len(report.with_outcome(OperationOutcome.SKIPPED)),
                "cancelled": len(report.with_outcome(OperationOutcome.CANCELLED)),
            },
        )
        return report

    # =========================================================================
    # Operation level
    # =========================================================================

    async def _run_operation(
        self,
        op: PlannedOperation,
        graph: ResourceGraph,
        semaphore: asyncio.Semaphore,
    ) -> OperationResult:
        async with semaphore:
            result = OperationResult(op.name, op.action, OperationOutcome.SUCCEEDED)
            if self._cancel_event.is_set():
                result.outcome = OperationOutcome.CANCELLED
                return result

            start = time.monotonic()
            previous = self._store.get(op.name)
            spec = graph.nodes.get(op.name)

            try:
                if op.action == DeltaAction.DELETE:
                    state = await self._delete(op.name, previous, result)
                else:
                    if spec is None:
                        raise _OperationFailed(
                            OperationOutcome.FATAL, f"'{op.name}' has no desired declaration"
                        )
                    state = await self._apply(op.action, spec, previous, result)
                self._store.put(state)
                result.provider_id = state.provider_id
                logger.info(
                    "Operation succeeded",
                    extra={
                        "resource": op.name,
                        "action": op.action.value,
                        "attempts": result.attempts,
                        "provider_id": state.provider_id,
                    },
                )
            except _OperationFailed as e:
                result.outcome = e.outcome
                result.error = e.error
                self._record_failure(op, spec, e)
            finally:
                result.duration_seconds = time.monotonic() - start

            return result

    def _resolve(self, spec: ResourceSpec) -> dict[str, Any]:
        def lookup(name: str, attribute: str) -> Any:
            state = self._store.get(name)
            if state is None or not state.is_live:
                raise TransientProviderError(
                    f"'{spec.name}' references '{name}' which has not been applied",
                    code="DependencyNotReady",
                )
            if attribute == "id":
                return state.provider_id
            for source in (state.observed, state.fields):
                try:
                    return _lookup_path(source, attribute)
                except KeyError:
                    continue
            raise FatalProviderError(
                f"'{spec.name}' references unknown attribute '{attribute}' of '{name}'",
                code="UnknownAttribute",
            )

        try:
            return resolve_references(spec.fields, lookup)
        except TransientProviderError as e:
            raise _OperationFailed(OperationOutcome.RECOVERABLE, str(e)) from e
        except FatalProviderError as e:
            raise _OperationFailed(OperationOutcome.FATAL, str(e)) from e

    def _write_intent(self, state: AppliedState, action: DeltaAction) -> None:
        self._store.put(
            replace(
                state,
                status=ResourceStatus.PENDING,
                in_flight=action,
                last_transition=datetime.now(UTC),
            )
        )

    async def _apply(
        self,
        action: DeltaAction,
        spec: ResourceSpec,
        previous: AppliedState | None,
        result: OperationResult,
    ) -> AppliedState:
        fields = self._resolve(spec)
        base = previous or AppliedState(
            name=spec.name,
            kind=spec.kind,
            fields=spec.fields,
            depends_on=sorted(spec.depends_on),
        )

        if action == DeltaAction.UPDATE and base.provider_id:
            self._write_intent(base, action)
            observed = await self._call(
                result, self._provider.update, base.provider_id, spec.kind, fields
            )
            provider_id = base.provider_id
        else:
            if action == DeltaAction.REPLACE and base.provider_id:
                self._write_intent(base, action)
                await self._call(result, self._provider.delete, base.provider_id, base.kind)
                # Old resource is gone; a crash from here on is a plain create
                base = replace(base, provider_id="", observed={})
            self._write_intent(base, DeltaAction.CREATE)
            provider_id, observed = await self._call(result, self._provider.create, spec.kind, fields)

        return AppliedState(
            name=spec.name,
            kind=spec.kind,
            provider_id=provider_id,
            fields=spec.fields,
            observed=observed,
            depends_on=sorted(spec.depends_on),
            status=ResourceStatus.APPLIED,
        )

    async def _delete(
        self,
        name: str,
        previous: AppliedState | None,
        result: OperationResult,
    ) -> AppliedState:
        if previous is None:
            raise _OperationFailed(OperationOutcome.FATAL, f"No applied state for '{name}'")

        if previous.provider_id:
            self._write_intent(previous, DeltaAction.DELETE)
            await self._call(result, self._provider.delete, previous.provider_id, previous.kind)

        return replace(
            previous,
            provider_id="",
            observed={},
            status=ResourceStatus.DELETED,
            last_transition=datetime.now(UTC),
            in_flight=None,
            error=None,
            failed_fingerprint=None,
        )

    async def _call(self, result: OperationResult, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking provider call on the pool with timeout and retry.

        Raises:
            _OperationFailed: When the call fails terminally.
        """
        loop = asyncio.get_running_loop()
        last_error: TransientProviderError | None = None

        for attempt in range(1, self._retry.max_attempts + 1):
            result.attempts += 1
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(self._pool, functools.partial(func, *args)),
                    timeout=self._timeout,
                )
            except TimeoutError as e:
                raise _OperationFailed(
                    OperationOutcome.RECOVERABLE,
                    f"{func.__name__} timed out after {self._timeout}s",
                    in_flight=True,
                ) from e
            except FatalProviderError as e:
                raise _OperationFailed(OperationOutcome.FATAL, str(e)) from e
            except TransientProviderError as e:
                last_error = e
                if attempt < self._retry.max_attempts and not self._cancel_event.is_set():
                    # Exponential backoff with jitter
                    backoff = self._retry.delay_for(attempt)
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Provider call failed, retrying",
                        extra={
                            "resource": result.name,
                            "call": func.__name__,
                            "attempt": attempt,
                            "max_attempts": self._retry.max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await self._sleep(wait_time)
                else:
                    break
            except ProviderError as e:
                raise _OperationFailed(OperationOutcome.FATAL, str(e)) from e

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise _OperationFailed(
            OperationOutcome.RECOVERABLE,
            f"{last_error} (gave up after {result.attempts} attempts)",
        )

    def _record_failure(
        self, op: PlannedOperation, spec: ResourceSpec | None, failure: _OperationFailed
    ) -> None:
        previous = self._store.get(op.name)
        if previous is None:
            if spec is None:
                return
            previous = AppliedState(
                name=spec.name, kind=spec.kind, fields=spec.fields, depends_on=sorted(spec.depends_on)
            )

        fatal = failure.outcome == OperationOutcome.FATAL
        self._store.put(
            replace(
                previous,
                status=ResourceStatus.FAILED,
                last_transition=datetime.now(UTC),
                in_flight=previous.in_flight if failure.in_flight else None,
                error=failure.error,
                failed_fingerprint=spec.fields_fingerprint() if fatal and spec else None,
            )
        )

        log = logger.error if fatal else logger.warning
        log(
            "Operation failed",
            extra={
                "resource": op.name,
                "action": op.action.value,
                "outcome": failure.outcome.value,
                "error": failure.error,
            },
        )
