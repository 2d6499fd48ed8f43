"""Abstract control-plane capability with per-kind dispatch."""
import logging
from abc import ABC
from typing import Any, Dict, Optional, Tuple

from infra_reconciler.exceptions import RemoteRejection, TransientRemoteError
from infra_reconciler.models import ResourceSpec
from infra_reconciler.utils.decorators import retry

logger = logging.getLogger(__name__)

Changes = Dict[str, Tuple[Any, Any]]


class ControlPlane(ABC):
    """Create, update and describe resources on a remote control plane.

    Subclasses implement ``describe_<kind>``, ``create_<kind>`` and
    ``update_<kind>`` for each supported kind (e.g. ``create_cluster``).
    ``create``/``update`` return the attributes observed after the call.
    """

    name = "control-plane"

    def _handler(self, verb: str, spec: ResourceSpec):
        handler = getattr(self, f"{verb}_{spec.kind.snake_name}", None)
        if handler is None:
            raise RemoteRejection(
                f"{self.name} does not support {verb} for {spec.kind.value}",
                kind=spec.kind, name=spec.name,
            )
        return handler

    @retry(max_attempts=3, delay=0.5, exceptions=(TransientRemoteError,))
    def describe(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        """Current attributes of the resource, or None if it does not exist."""
        return self._handler("describe", spec)(spec)

    def create(self, spec: ResourceSpec) -> Dict[str, Any]:
        logger.info(f"Creating {spec.key} via {self.name}")
        return self._handler("create", spec)(spec)

    def update(self, spec: ResourceSpec, changes: Changes) -> Dict[str, Any]:
        logger.info(f"Updating {spec.key} via {self.name}: {sorted(changes)}")
        return self._handler("update", spec)(spec, changes)
