"""Plan builder: desired state + observed state -> ordered operation plan."""
import heapq
import logging
from typing import Any, Dict, List, Optional, Tuple

from infra_reconciler.exceptions import CycleError
from infra_reconciler.loader import DesiredState
from infra_reconciler.models import Action, Operation, OperationPlan, ResourceKey, ResourceSpec
from infra_reconciler.state import ObservedState

logger = logging.getLogger(__name__)


def topological_order(desired: DesiredState) -> List[ResourceSpec]:
    """Order specs so dependencies come first; ties keep declaration order.

    Raises:
        CycleError: if the dependency graph is not acyclic.
    """
    specs = {spec.key: spec for spec in desired.specs}
    remaining = {key: set(desired.dependencies_of(key)) for key in specs}
    dependents: Dict[ResourceKey, List[ResourceKey]] = {key: [] for key in specs}
    for key, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(key)

    ready = [(spec.index, key) for key, spec in specs.items() if not remaining[key]]
    heapq.heapify(ready)

    ordered = []
    while ready:
        _, key = heapq.heappop(ready)
        ordered.append(specs[key])
        for dependent in dependents[key]:
            remaining[dependent].discard(key)
            if not remaining[dependent]:
                heapq.heappush(ready, (specs[dependent].index, dependent))

    if len(ordered) != len(specs):
        blocked = {key for key, deps in remaining.items() if deps}
        raise CycleError(_find_cycle(desired, blocked))
    return ordered


def _find_cycle(desired: DesiredState, blocked) -> List[ResourceKey]:
    """Return one cycle among the blocked keys, closed (first == last)."""
    start = min(blocked, key=lambda key: desired.get(key).index)
    path: List[ResourceKey] = []
    position: Dict[ResourceKey, int] = {}
    current = start
    while current not in position:
        position[current] = len(path)
        path.append(current)
        current = next(dep for dep in desired.dependencies_of(current) if dep in blocked)
    return path[position[current]:] + [current]


def diff_attributes(desired: Dict[str, Any],
                    observed: Dict[str, Any]) -> Dict[str, Tuple[Any, Any]]:
    """Declared attributes whose observed value differs."""
    return {
        attr: (observed.get(attr), value)
        for attr, value in desired.items()
        if observed.get(attr) != value
    }


class PlanBuilder:
    """Builds an OperationPlan from desired and observed state."""

    def build(self, desired: DesiredState,
              observed: Optional[ObservedState] = None) -> OperationPlan:
        ordered = topological_order(desired)
        operations = []
        for spec in ordered:
            current = observed.get(spec.key) if observed is not None else None
            if current is None:
                action, changes = Action.CREATE, {}
            else:
                changes = diff_attributes(spec.attributes, current)
                action = Action.UPDATE if changes else Action.NOOP
            operations.append(Operation(
                spec=spec,
                action=action,
                changes=changes,
                dependencies=desired.dependencies_of(spec.key),
            ))

        plan = OperationPlan(operations)
        logger.info(f"Built plan: {plan.summary()}")
        return plan


def build_plan(desired: DesiredState, observed: Optional[ObservedState] = None) -> OperationPlan:
    return PlanBuilder().build(desired, observed)
