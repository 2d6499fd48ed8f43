"""
Local control plane.

Keeps resources in memory, optionally backed by a JSON file so that `plan`
and `apply` can be exercised end-to-end without an AWS account. Every call is
recorded in ``history``.
"""
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from infra_reconciler.control_plane.base import Changes, ControlPlane
from infra_reconciler.models import ResourceKey, ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)

MUTATING_VERBS = ("create", "update")


class LocalControlPlane(ControlPlane):
    """In-memory control plane supporting every resource kind."""

    name = "local"

    def __init__(self, store_file: Optional[Union[str, Path]] = None):
        self.store_file = Path(store_file) if store_file else None
        self.resources: Dict[ResourceKey, Dict[str, Any]] = {}
        self.history: List[Tuple[str, ResourceKey]] = []
        self._lock = threading.Lock()
        self._load()

    @property
    def mutating_calls(self) -> List[Tuple[str, ResourceKey]]:
        return [call for call in self.history if call[0] in MUTATING_VERBS]

    def set_attributes(self, kind: ResourceKind, name: str, **attributes) -> None:
        """Change a resource outside the reconciler (external drift)."""
        with self._lock:
            self.resources.setdefault(ResourceKey(kind, name), {}).update(attributes)
            self._save()

    def describe(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        with self._lock:
            self.history.append(("describe", spec.key))
            current = self.resources.get(spec.key)
            return dict(current) if current is not None else None

    def create(self, spec: ResourceSpec) -> Dict[str, Any]:
        with self._lock:
            self.history.append(("create", spec.key))
            self.resources[spec.key] = dict(spec.attributes)
            self._save()
            logger.info(f"Created {spec.key}")
            return dict(self.resources[spec.key])

    def update(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        with self._lock:
            self.history.append(("update", spec.key))
            current = self.resources.setdefault(spec.key, {})
            for attr, (_, desired) in changes.items():
                current[attr] = desired
            self._save()
            logger.info(f"Updated {spec.key}: {sorted(changes)}")
            return dict(current)

    def _load(self) -> None:
        if not self.store_file or not self.store_file.exists():
            return
        try:
            with open(self.store_file, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable local store {self.store_file}: {e}")
            return
        for entry in data.get("resources", []):
            key = ResourceKey(ResourceKind.parse(entry["kind"]), entry["name"])
            self.resources[key] = dict(entry.get("attributes") or {})

    def _save(self) -> None:
        if not self.store_file:
            return
        data = {
            "resources": [
                {"kind": key.kind.value, "name": key.name, "attributes": attrs}
                for key, attrs in self.resources.items()
            ]
        }
        with open(self.store_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
