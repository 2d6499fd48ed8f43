"""Error taxonomy for planning and applying desired state.

Every error carries the kind and name of the offending resource so that
messages point at the entry in the desired-state document that needs fixing.
"""
from typing import Any, List, Optional


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""

    def __init__(self, message: str, kind: Optional[Any] = None, name: Optional[str] = None):
        self.kind = kind
        self.name = name
        self.message = message
        super().__init__(self._format())

    @property
    def resource(self) -> Optional[str]:
        if self.kind is None and self.name is None:
            return None
        kind = getattr(self.kind, "value", self.kind)
        return f"{kind or '?'}/{self.name or '?'}"

    def _format(self) -> str:
        if self.resource:
            return f"{self.resource}: {self.message}"
        return self.message


class ValidationError(ReconcilerError):
    """Malformed document, unknown kind, duplicate name or bad reference."""


class CycleError(ReconcilerError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: List[Any]):
        self.cycle = list(cycle)
        path = " -> ".join(str(key) for key in self.cycle)
        first = self.cycle[0] if self.cycle else None
        super().__init__(
            f"dependency cycle detected: {path}",
            kind=getattr(first, "kind", None),
            name=getattr(first, "name", None),
        )


class TransientRemoteError(ReconcilerError):
    """Throttling, timeout or connection failure; safe to retry."""


class RemoteRejection(ReconcilerError):
    """The control plane refused the request; retrying will not help."""


class OperationFailed(ReconcilerError):
    """An operation could not be applied (retries exhausted or rejected)."""

    def __init__(self, kind: Any, name: str, cause: Exception, attempts: int = 1):
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            f"operation failed after {attempts} attempt(s): {cause}",
            kind=kind,
            name=name,
        )
