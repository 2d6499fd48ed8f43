"""
Executor

Applies an OperationPlan against a control plane.

- Operations whose dependencies have all succeeded are released to a bounded
  worker pool; an operation never starts before its dependencies finish.
- Each remote call runs under the target resource's lock and is retried with
  exponential backoff on TransientRemoteError.
- After a failure the failure policy decides what else runs: ``halt`` starts
  nothing new, ``continue`` skips only the failed operation's dependents.
- A cancel event is checked between operations; in-flight calls are allowed
  to finish and nothing is rolled back.
"""
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from infra_reconciler.control_plane.base import ControlPlane
from infra_reconciler.exceptions import OperationFailed, RemoteRejection, TransientRemoteError
from infra_reconciler.models import Action, Operation, OperationPlan, ResourceKey
from infra_reconciler.settings import Settings, get_settings
from infra_reconciler.state import ObservedState
from infra_reconciler.utils.decorators import RetriesExhausted, call_with_retry, log_execution_time

logger = logging.getLogger(__name__)


class FailurePolicy(Enum):
    HALT = "halt"
    CONTINUE = "continue"


class OperationStatus(Enum):
    SUCCEEDED = "succeeded"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class OperationResult:
    operation: Operation
    status: OperationStatus
    attempts: int = 0
    error: Optional[OperationFailed] = None
    reason: Optional[str] = None

    @property
    def key(self) -> ResourceKey:
        return self.operation.key


@dataclass
class ExecutionReport:
    """Outcome of every operation in a plan, in plan order."""
    results: List[OperationResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return all(r.status in (OperationStatus.SUCCEEDED, OperationStatus.UNCHANGED)
                   for r in self.results)

    @property
    def failures(self) -> List[OperationFailed]:
        return [r.error for r in self.results if r.error is not None]

    @property
    def mutating_calls(self) -> int:
        """Remote create/update attempts issued."""
        return sum(r.attempts for r in self.results)

    def by_status(self, status: OperationStatus) -> List[OperationResult]:
        return [r for r in self.results if r.status is status]

    def get(self, key: ResourceKey) -> Optional[OperationResult]:
        for result in self.results:
            if result.key == key:
                return result
        return None

    def raise_for_failure(self) -> None:
        if self.failures:
            raise self.failures[0]


class Executor:
    """Runs plans with retries, locking, a worker pool and a failure policy."""

    def __init__(self, control_plane: ControlPlane, observed: Optional[ObservedState] = None,
                 settings: Optional[Settings] = None, max_workers: Optional[int] = None,
                 max_retries: Optional[int] = None, base_delay: Optional[float] = None,
                 backoff: Optional[float] = None, failure_policy=None,
                 sleep: Callable[[float], None] = time.sleep):
        settings = settings or get_settings()
        self.control_plane = control_plane
        self.observed = observed if observed is not None else ObservedState()
        self.max_workers = max_workers or settings.max_workers
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay
        self.backoff = backoff or settings.retry_backoff
        self.failure_policy = FailurePolicy(failure_policy or settings.failure_policy)
        self.sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def apply_operation(self, operation: Operation) -> OperationResult:
        """Apply a single operation.

        Raises:
            OperationFailed: when retries are exhausted or the remote rejects the call.
        """
        if operation.action is Action.NOOP:
            return OperationResult(operation, OperationStatus.UNCHANGED)

        spec = operation.spec
        attempts = 0

        def call():
            nonlocal attempts
            attempts += 1
            if operation.action is Action.CREATE:
                return self.control_plane.create(spec)
            return self.control_plane.update(spec, operation.changes)

        with self.observed.locked(spec.key):
            try:
                attributes = call_with_retry(
                    call,
                    max_attempts=self.max_attempts,
                    delay=self.base_delay,
                    backoff=self.backoff,
                    exceptions=(TransientRemoteError,),
                    sleep=self.sleep,
                    description=f"{operation.action.value} {spec.key}",
                    retry_logger=logger,
                )
            except RetriesExhausted as e:
                raise OperationFailed(spec.kind, spec.name, e.last_error, attempts) from e.last_error
            except RemoteRejection as e:
                logger.error(f"{operation.action.value} {spec.key} rejected: {e.message}")
                raise OperationFailed(spec.kind, spec.name, e, attempts) from e
            except Exception as e:
                logger.error(f"{operation.action.value} {spec.key} failed unexpectedly: {e!r}", exc_info=True)
                raise OperationFailed(spec.kind, spec.name, e, attempts) from e
            self.observed.record(spec.key, attributes)

        logger.info(f"{operation.action.value} {spec.key} succeeded after {attempts} attempt(s)")
        return OperationResult(operation, OperationStatus.SUCCEEDED, attempts=attempts)

    def _run(self, operation: Operation) -> OperationResult:
        try:
            return self.apply_operation(operation)
        except OperationFailed as e:
            return OperationResult(operation, OperationStatus.FAILED, attempts=e.attempts, error=e)

    @log_execution_time
    def execute(self, plan: OperationPlan,
                cancel_event: Optional[threading.Event] = None) -> ExecutionReport:
        """Apply every operation of the plan, respecting dependency order."""
        operations = {op.key: op for op in plan}
        results: Dict[ResourceKey, OperationResult] = {}
        succeeded: Set[ResourceKey] = set()
        in_flight: Dict[Future, ResourceKey] = {}
        halted = False
        cancelled = False

        def skip_dependents(failed_key: ResourceKey) -> None:
            frontier = [failed_key]
            while frontier:
                current = frontier.pop()
                for op in plan:
                    if op.key in results or current not in op.dependencies:
                        continue
                    results[op.key] = OperationResult(
                        op, OperationStatus.SKIPPED, reason=f"dependency {current} did not succeed")
                    frontier.append(op.key)

        def ready() -> List[Operation]:
            busy = set(in_flight.values())
            return [
                op for op in plan
                if op.key not in results and op.key not in busy
                and all(dep in succeeded for dep in op.dependencies if dep in operations)
            ]

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="reconciler") as pool:
            while True:
                if cancel_event is not None and cancel_event.is_set() and not cancelled:
                    cancelled = True
                    logger.warning("Execution cancelled; waiting for in-flight operations")

                if not (halted or cancelled):
                    for op in ready():
                        if op.action is Action.NOOP:
                            results[op.key] = OperationResult(op, OperationStatus.UNCHANGED)
                            succeeded.add(op.key)
                            continue
                        if len(in_flight) >= self.max_workers:
                            continue
                        in_flight[pool.submit(self._run, op)] = op.key

                    # NoOps may have released further operations
                    if any(op.action is Action.NOOP for op in ready()):
                        continue

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    key = in_flight.pop(future)
                    result = future.result()
                    results[key] = result
                    if result.status is OperationStatus.SUCCEEDED:
                        succeeded.add(key)
                        continue
                    logger.error(f"{result.error}")
                    if self.failure_policy is FailurePolicy.HALT:
                        halted = True
                    else:
                        skip_dependents(key)

        for op in plan:
            if op.key in results:
                continue
            if cancelled:
                results[op.key] = OperationResult(op, OperationStatus.CANCELLED, reason="cancelled")
            else:
                results[op.key] = OperationResult(
                    op, OperationStatus.SKIPPED, reason="halted after an earlier failure")

        report = ExecutionReport(results=[results[op.key] for op in plan], cancelled=cancelled)
        counts = {status.value: len(report.by_status(status)) for status in OperationStatus}
        logger.info(f"Execution finished: {counts}")
        return report
