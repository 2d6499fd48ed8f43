"""Declarative deployment orchestration: plan, apply and reconcile container infrastructure."""
from infra_reconciler.exceptions import (
    CycleError,
    OperationFailed,
    ReconcilerError,
    RemoteRejection,
    TransientRemoteError,
    ValidationError,
)
from infra_reconciler.loader import DesiredState, load_document, parse_document
from infra_reconciler.models import Action, Operation, OperationPlan, ResourceKey, ResourceKind, ResourceSpec
from infra_reconciler.planner import PlanBuilder, build_plan

__version__ = "0.1.0"
