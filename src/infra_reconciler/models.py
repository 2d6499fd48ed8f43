"""Resource descriptor model: resource kinds, specs, operations and plans."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from infra_reconciler.exceptions import ValidationError


class ResourceKind(Enum):
    """Infrastructure entities the reconciler knows how to manage."""
    REGISTRY = "Registry"
    CLUSTER = "Cluster"
    TASK_DEFINITION = "TaskDefinition"
    SERVICE = "Service"
    TARGET_GROUP = "TargetGroup"
    SCALING_POLICY = "ScalingPolicy"

    @classmethod
    def parse(cls, value: str, name: Optional[str] = None) -> "ResourceKind":
        """Parse a kind, ignoring case, underscores and hyphens."""
        if isinstance(value, ResourceKind):
            return value
        normalized = str(value).replace("_", "").replace("-", "").lower()
        for kind in cls:
            if kind.value.lower() == normalized:
                return kind
        raise ValidationError(f"unknown resource kind '{value}'", kind=value, name=name)

    @property
    def snake_name(self) -> str:
        return self.name.lower()


class ResourceKey(NamedTuple):
    """Identity of a resource: unique name within its kind."""
    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class KindSchema:
    """Attribute rules for one resource kind."""
    required: Tuple[str, ...] = ()
    optional: Tuple[str, ...] = ()
    # attribute name -> kind of the resource it names
    references: Dict[str, ResourceKind] = field(default_factory=dict)

    @property
    def allowed(self) -> Tuple[str, ...]:
        return self.required + self.optional


KIND_SCHEMAS: Dict[ResourceKind, KindSchema] = {
    ResourceKind.REGISTRY: KindSchema(
        optional=("image_tag_mutability", "scan_on_push"),
    ),
    ResourceKind.CLUSTER: KindSchema(
        optional=("container_insights",),
    ),
    ResourceKind.TASK_DEFINITION: KindSchema(
        required=("image",),
        optional=("cpu", "memory", "port", "launch_type", "network_mode",
                  "environment", "execution_role_arn", "registry"),
        references={"registry": ResourceKind.REGISTRY},
    ),
    ResourceKind.SERVICE: KindSchema(
        required=("cluster", "task_definition"),
        optional=("desired_count", "launch_type", "subnets", "security_groups",
                  "assign_public_ip", "target_group", "container_port"),
        references={
            "cluster": ResourceKind.CLUSTER,
            "task_definition": ResourceKind.TASK_DEFINITION,
            "target_group": ResourceKind.TARGET_GROUP,
        },
    ),
    ResourceKind.TARGET_GROUP: KindSchema(
        required=("port",),
        optional=("protocol", "vpc_id", "target_type", "health_check_path"),
    ),
    ResourceKind.SCALING_POLICY: KindSchema(
        required=("service", "cluster"),
        optional=("min_capacity", "max_capacity", "target_value", "metric"),
        references={
            "service": ResourceKind.SERVICE,
            "cluster": ResourceKind.CLUSTER,
        },
    ),
}


@dataclass
class ResourceSpec:
    """Desired state of a single resource, as declared in the document."""
    kind: ResourceKind
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    index: int = 0

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.name)

    @property
    def schema(self) -> KindSchema:
        return KIND_SCHEMAS[self.kind]

    def references(self) -> List[ResourceKey]:
        """Resources named by reference attributes (implied dependencies)."""
        refs = []
        for attribute, kind in self.schema.references.items():
            value = self.attributes.get(attribute)
            if value:
                refs.append(ResourceKey(kind, str(value)))
        return refs


class Action(Enum):
    CREATE = "Create"
    UPDATE = "Update"
    NOOP = "NoOp"


@dataclass
class Operation:
    """One step of a plan: an action on a resource plus what changes."""
    spec: ResourceSpec
    action: Action
    changes: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    dependencies: Tuple[ResourceKey, ...] = ()

    @property
    def key(self) -> ResourceKey:
        return self.spec.key

    @property
    def is_mutating(self) -> bool:
        return self.action is not Action.NOOP

    def describe(self) -> str:
        symbol = {Action.CREATE: "+", Action.UPDATE: "~", Action.NOOP: "="}[self.action]
        line = f"{symbol} {self.action.value} {self.key}"
        if self.action is Action.UPDATE and self.changes:
            details = ", ".join(
                f"{attr}: {old!r} -> {new!r}" for attr, (old, new) in sorted(self.changes.items())
            )
            line = f"{line} ({details})"
        return line

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": str(self.key),
            "kind": self.spec.kind.value,
            "name": self.spec.name,
            "action": self.action.value,
            "changes": {
                attr: {"observed": old, "desired": new}
                for attr, (old, new) in self.changes.items()
            },
            "depends_on": [str(dep) for dep in self.dependencies],
        }


@dataclass
class OperationPlan:
    """Ordered operations; every dependency precedes its dependents."""
    operations: List[Operation] = field(default_factory=list)

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def order(self) -> List[ResourceKey]:
        return [op.key for op in self.operations]

    @property
    def pending(self) -> List[Operation]:
        """Operations that change something remotely."""
        return [op for op in self.operations if op.is_mutating]

    @property
    def is_noop(self) -> bool:
        return not self.pending

    def get(self, key: ResourceKey) -> Optional[Operation]:
        for op in self.operations:
            if op.key == key:
                return op
        return None

    def summary(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "operations": [op.to_dict() for op in self.operations],
        }
