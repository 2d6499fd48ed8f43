"""
State reconciler.

Refreshes observed state from the control plane, re-plans against the desired
state and applies only what drifted. Passes can be triggered on demand or run
periodically; concurrent triggers are serialized.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from infra_reconciler.control_plane.base import ControlPlane
from infra_reconciler.exceptions import ReconcilerError
from infra_reconciler.executor import ExecutionReport, Executor
from infra_reconciler.loader import DesiredState
from infra_reconciler.models import Operation, OperationPlan
from infra_reconciler.planner import PlanBuilder, topological_order
from infra_reconciler.settings import Settings, get_settings
from infra_reconciler.state import ObservedState
from infra_reconciler.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)

DesiredSource = Union[DesiredState, Callable[[], DesiredState]]


@dataclass
class ReconcileResult:
    """Outcome of one pass. A pass that could not plan carries ``error`` and no plan."""
    plan: Optional[OperationPlan]
    report: Optional[ExecutionReport] = None
    error: Optional[ReconcilerError] = None

    @property
    def drifted(self) -> List[Operation]:
        return self.plan.pending if self.plan is not None else []

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return self.report is None or self.report.ok


class StateReconciler:
    """Brings remote state in line with a desired-state document."""

    def __init__(self, control_plane: ControlPlane, observed: Optional[ObservedState] = None,
                 settings: Optional[Settings] = None, executor: Optional[Executor] = None,
                 builder: Optional[PlanBuilder] = None):
        self.settings = settings or get_settings()
        self.control_plane = control_plane
        self.observed = observed if observed is not None else ObservedState()
        self.executor = executor or Executor(control_plane, self.observed, settings=self.settings)
        self.builder = builder or PlanBuilder()
        self._lock = threading.Lock()

    def refresh(self, desired: DesiredState) -> None:
        self.observed.refresh(self.control_plane, desired.specs)

    def plan(self, desired: DesiredState, refresh: bool = True) -> OperationPlan:
        """Build a plan, optionally re-querying the control plane first."""
        if refresh:
            # a cyclic document is rejected before any describe call
            topological_order(desired)
            self.refresh(desired)
        return self.builder.build(desired, self.observed)

    def detect_drift(self, desired: DesiredState) -> List[Operation]:
        """Operations needed to converge, without applying them."""
        return self.plan(desired).pending

    @log_execution_time
    def reconcile(self, desired: DesiredState,
                  cancel_event: Optional[threading.Event] = None) -> ReconcileResult:
        """One pass: refresh, plan, and execute if anything drifted."""
        with self._lock:
            plan = self.plan(desired)
            if plan.is_noop:
                logger.info("No drift detected")
                return ReconcileResult(plan)

            for op in plan.pending:
                logger.info(f"Drift: {op.describe()}")
            report = self.executor.execute(plan, cancel_event=cancel_event)
            self.observed.save()
            return ReconcileResult(plan, report)

    def run(self, desired: DesiredSource, interval: Optional[float] = None,
            stop_event: Optional[threading.Event] = None,
            max_iterations: Optional[int] = None) -> List[ReconcileResult]:
        """Reconcile every ``interval`` seconds until stopped.

        ``desired`` may be a callable so the document is re-read each pass.
        The stop event also cancels a pass between operations.
        """
        interval = interval or self.settings.reconcile_interval
        stop_event = stop_event or threading.Event()
        results = []
        iteration = 0

        while not stop_event.is_set():
            iteration += 1
            try:
                current = desired() if callable(desired) else desired
                result = self.reconcile(current, cancel_event=stop_event)
            except ReconcilerError as e:
                logger.error(f"Reconciliation pass {iteration} failed: {e}")
                result = ReconcileResult(plan=None, error=e)
            results.append(result)
            if result.report is not None and not result.report.ok:
                logger.error(f"Reconciliation pass {iteration} finished with failures")

            if max_iterations is not None and iteration >= max_iterations:
                break
            stop_event.wait(interval)

        logger.info(f"Reconciler stopped after {iteration} pass(es)")
        return results
