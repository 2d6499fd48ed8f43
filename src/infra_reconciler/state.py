"""
Observed state cache.

Holds the last-known remote attributes per (kind, name). The executor is the
only writer after a confirmed remote success; writes for one resource are
serialized through that resource's lock. The cache can be persisted to a JSON
state file between runs.
"""
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional, Union

from infra_reconciler.models import ResourceKey, ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)


class ObservedState:
    """Thread-safe mapping from resource key to last-known attributes."""

    def __init__(self, state_file: Optional[Union[str, Path]] = None):
        self.state_file = Path(state_file) if state_file else None
        self._resources: Dict[ResourceKey, Dict[str, Any]] = {}
        self._refreshed_at: Dict[ResourceKey, str] = {}
        self._guard = threading.RLock()
        self._locks: Dict[ResourceKey, threading.RLock] = {}
        self.last_updated: Optional[str] = None

    def __contains__(self, key: ResourceKey) -> bool:
        with self._guard:
            return key in self._resources

    def __len__(self) -> int:
        with self._guard:
            return len(self._resources)

    def lock_for(self, key: ResourceKey) -> threading.RLock:
        """Per-resource lock, created on first use."""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def locked(self, key: ResourceKey) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield

    def get(self, key: ResourceKey) -> Optional[Dict[str, Any]]:
        with self._guard:
            attributes = self._resources.get(key)
            return dict(attributes) if attributes is not None else None

    def record(self, key: ResourceKey, attributes: Dict[str, Any]) -> None:
        """Store the confirmed remote attributes of a resource."""
        with self.locked(key):
            with self._guard:
                self._resources[key] = dict(attributes)
                self._refreshed_at[key] = datetime.now(timezone.utc).isoformat()
                self.last_updated = self._refreshed_at[key]
        logger.debug(f"Observed state updated: {key}")

    def forget(self, key: ResourceKey) -> None:
        with self.locked(key):
            with self._guard:
                self._resources.pop(key, None)
                self._refreshed_at.pop(key, None)

    def refresh(self, control_plane, specs: Iterable[ResourceSpec]) -> None:
        """Re-query the control plane for every spec's current attributes."""
        count = 0
        for spec in specs:
            observed = control_plane.describe(spec)
            if observed is None:
                self.forget(spec.key)
            else:
                self.record(spec.key, observed)
            count += 1
        logger.info(f"Refreshed observed state for {count} resource(s)")

    def to_dict(self) -> Dict[str, Any]:
        with self._guard:
            return {
                "last_updated": self.last_updated,
                "resources": {
                    str(key): {
                        "kind": key.kind.value,
                        "name": key.name,
                        "attributes": attrs,
                        "refreshed_at": self._refreshed_at.get(key),
                    }
                    for key, attrs in self._resources.items()
                },
            }

    def save(self) -> None:
        """Write the cache to the state file, if one is configured."""
        if not self.state_file:
            return
        data = self.to_dict()
        try:
            with open(self.state_file, "w") as f:
                json.dump(data, f, indent=2, default=str)
        except OSError as e:
            logger.warning(f"Could not save state file {self.state_file}: {e}")
            return
        logger.debug(f"Saved observed state to {self.state_file}")

    def load(self) -> bool:
        """Load a previously saved cache. Returns False if there was none."""
        if not self.state_file or not self.state_file.exists():
            return False
        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
            return False

        with self._guard:
            self._resources.clear()
            self._refreshed_at.clear()
            for entry in data.get("resources", {}).values():
                key = ResourceKey(ResourceKind.parse(entry["kind"]), entry["name"])
                self._resources[key] = dict(entry.get("attributes") or {})
                if entry.get("refreshed_at"):
                    self._refreshed_at[key] = entry["refreshed_at"]
            self.last_updated = data.get("last_updated")
        logger.info(f"Loaded observed state for {len(self)} resource(s) from {self.state_file}")
        return True
