"""Load and validate the declarative desired-state document.

Accepted shapes (YAML or JSON)::

    resources:
      - kind: Cluster
        name: c1
      - kind: TaskDefinition
        name: t1
        attributes: {image: nginx:latest, cpu: 256, memory: 512}
        depends_on: [c1]

A bare list of resources is accepted as well.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from infra_reconciler.exceptions import CycleError, ValidationError
from infra_reconciler.models import KIND_SCHEMAS, ResourceKey, ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)


class ResourceEntry(BaseModel):
    """One resource entry as written in the document."""
    kind: str = Field(min_length=1)
    name: str = Field(min_length=1)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @field_validator("attributes", mode="before")
    @classmethod
    def none_means_empty_attributes(cls, v):
        return {} if v is None else v

    @field_validator("depends_on", mode="before")
    @classmethod
    def accept_single_dependency(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class AttributeModel(BaseModel):
    """Base for per-kind attribute models; values are coerced to the types the control plane reports."""
    model_config = ConfigDict(extra="forbid")


class RegistryAttributes(AttributeModel):
    image_tag_mutability: Optional[str] = None
    scan_on_push: Optional[bool] = None


class ClusterAttributes(AttributeModel):
    container_insights: Optional[bool] = None


class TaskDefinitionAttributes(AttributeModel):
    image: Optional[str] = None
    cpu: Optional[int] = None
    memory: Optional[int] = None
    port: Optional[int] = None
    launch_type: Optional[str] = None
    network_mode: Optional[str] = None
    environment: Optional[Dict[str, str]] = None
    execution_role_arn: Optional[str] = None
    registry: Optional[str] = None

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v):
        # ECS stores every environment value as a string
        if isinstance(v, dict):
            return {str(key): str(value) for key, value in v.items()}
        return v


class ServiceAttributes(AttributeModel):
    cluster: Optional[str] = None
    task_definition: Optional[str] = None
    desired_count: Optional[int] = Field(default=None, ge=0)
    launch_type: Optional[str] = None
    subnets: Optional[List[str]] = None
    security_groups: Optional[List[str]] = None
    assign_public_ip: Optional[bool] = None
    target_group: Optional[str] = None
    container_port: Optional[int] = None


class TargetGroupAttributes(AttributeModel):
    port: Optional[int] = None
    protocol: Optional[str] = None
    vpc_id: Optional[str] = None
    target_type: Optional[str] = None
    health_check_path: Optional[str] = None


class ScalingPolicyAttributes(AttributeModel):
    service: Optional[str] = None
    cluster: Optional[str] = None
    min_capacity: Optional[int] = Field(default=None, ge=0)
    max_capacity: Optional[int] = Field(default=None, ge=0)
    target_value: Optional[float] = None
    metric: Optional[str] = None


ATTRIBUTE_MODELS = {
    ResourceKind.REGISTRY: RegistryAttributes,
    ResourceKind.CLUSTER: ClusterAttributes,
    ResourceKind.TASK_DEFINITION: TaskDefinitionAttributes,
    ResourceKind.SERVICE: ServiceAttributes,
    ResourceKind.TARGET_GROUP: TargetGroupAttributes,
    ResourceKind.SCALING_POLICY: ScalingPolicyAttributes,
}


class DesiredStateDocument(BaseModel):
    resources: List[ResourceEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


@dataclass
class DesiredState:
    """Validated resource specs plus the resolved dependency graph."""
    specs: List[ResourceSpec] = field(default_factory=list)
    edges: Dict[ResourceKey, Tuple[ResourceKey, ...]] = field(default_factory=dict)

    def __iter__(self):
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def get(self, key: ResourceKey) -> Optional[ResourceSpec]:
        for spec in self.specs:
            if spec.key == key:
                return spec
        return None

    def dependencies_of(self, key: ResourceKey) -> Tuple[ResourceKey, ...]:
        return self.edges.get(key, ())

    @classmethod
    def from_specs(cls, specs: List[ResourceSpec]) -> "DesiredState":
        """Validate specs and resolve their dependency edges."""
        ordered = []
        seen: Dict[ResourceKey, ResourceSpec] = {}
        for index, spec in enumerate(specs):
            spec.index = index
            if spec.key in seen:
                raise ValidationError(
                    f"duplicate name '{spec.name}' for kind {spec.kind.value}",
                    kind=spec.kind, name=spec.name,
                )
            _validate_attributes(spec)
            seen[spec.key] = spec
            ordered.append(spec)

        by_name: Dict[str, List[ResourceKey]] = {}
        for key in seen:
            by_name.setdefault(key.name, []).append(key)

        edges = {}
        for spec in ordered:
            deps: List[ResourceKey] = []
            for ref in spec.depends_on:
                deps.append(_resolve_reference(spec, ref, seen, by_name))
            for ref_key in spec.references():
                if ref_key not in seen:
                    raise ValidationError(
                        f"references unknown {ref_key.kind.value} '{ref_key.name}'",
                        kind=spec.kind, name=spec.name,
                    )
                deps.append(ref_key)
            unique = tuple(dict.fromkeys(deps))
            if spec.key in unique:
                raise CycleError([spec.key, spec.key])
            edges[spec.key] = unique

        return cls(specs=ordered, edges=edges)


def _validate_attributes(spec: ResourceSpec) -> None:
    schema = KIND_SCHEMAS[spec.kind]
    unknown = sorted(set(spec.attributes) - set(schema.allowed))
    if unknown:
        raise ValidationError(
            f"unknown attribute(s) {', '.join(unknown)}; allowed: {', '.join(schema.allowed)}",
            kind=spec.kind, name=spec.name,
        )
    missing = [attr for attr in schema.required if spec.attributes.get(attr) in (None, "")]
    if missing:
        raise ValidationError(
            f"missing required attribute(s) {', '.join(missing)}",
            kind=spec.kind, name=spec.name,
        )
    spec.attributes = _coerce_attributes(spec)

    if spec.kind is ResourceKind.SCALING_POLICY:
        low = spec.attributes.get("min_capacity")
        high = spec.attributes.get("max_capacity")
        if low is not None and high is not None and low > high:
            raise ValidationError(
                f"min_capacity ({low}) is greater than max_capacity ({high})",
                kind=spec.kind, name=spec.name,
            )


def _coerce_attributes(spec: ResourceSpec) -> Dict[str, Any]:
    """Convert declared values to the types describe() reports, so plans compare like with like."""
    model = ATTRIBUTE_MODELS[spec.kind]
    try:
        typed = model.model_validate(spec.attributes)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"invalid attribute(s): {problems}",
                              kind=spec.kind, name=spec.name) from e
    return typed.model_dump(exclude_unset=True)


def _resolve_reference(spec: ResourceSpec, ref: str,
                       seen: Dict[ResourceKey, ResourceSpec],
                       by_name: Dict[str, List[ResourceKey]]) -> ResourceKey:
    """Resolve ``Kind/name`` or a bare name into a resource key."""
    if "/" in ref:
        kind_part, _, name_part = ref.partition("/")
        key = ResourceKey(ResourceKind.parse(kind_part, name=spec.name), name_part)
        if key not in seen:
            raise ValidationError(f"depends on unknown resource '{ref}'",
                                  kind=spec.kind, name=spec.name)
        return key

    candidates = by_name.get(ref, [])
    if not candidates:
        raise ValidationError(f"depends on unknown resource '{ref}'",
                              kind=spec.kind, name=spec.name)
    if len(candidates) > 1:
        options = ", ".join(str(key) for key in candidates)
        raise ValidationError(
            f"dependency '{ref}' is ambiguous ({options}); use Kind/name",
            kind=spec.kind, name=spec.name,
        )
    return candidates[0]


def parse_document(data: Any) -> DesiredState:
    """Validate a parsed document (dict or list) into a DesiredState."""
    if data is None:
        data = {"resources": []}
    if isinstance(data, list):
        data = {"resources": data}
    if not isinstance(data, dict):
        raise ValidationError("document must be a mapping with 'resources' or a list of resources")

    try:
        document = DesiredStateDocument.model_validate(data)
    except pydantic.ValidationError as e:
        kind, name = _locate_entry(data, e)
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"malformed document: {problems}", kind=kind, name=name) from e

    specs = [
        ResourceSpec(
            kind=ResourceKind.parse(entry.kind, name=entry.name),
            name=entry.name,
            attributes=dict(entry.attributes),
            depends_on=tuple(entry.depends_on),
        )
        for entry in document.resources
    ]
    state = DesiredState.from_specs(specs)
    logger.debug(f"Loaded {len(state)} resource(s)")
    return state


def _locate_entry(data: Dict[str, Any], error: pydantic.ValidationError):
    """Best-effort kind/name of the entry a pydantic error points at."""
    for err in error.errors():
        loc = err.get("loc", ())
        if len(loc) >= 2 and loc[0] == "resources" and isinstance(loc[1], int):
            try:
                entry = data["resources"][loc[1]]
            except (KeyError, IndexError, TypeError):
                break
            if isinstance(entry, dict):
                return entry.get("kind"), entry.get("name")
    return None, None


def load_document(path: Union[str, Path]) -> DesiredState:
    """Read a YAML or JSON desired-state file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"cannot read {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"cannot parse {path}: {e}") from e

    logger.info(f"Loaded desired state from {path}")
    return parse_document(data)
