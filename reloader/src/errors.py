from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class ReloaderError(Exception):
    """Base class for every failure raised by the reload engine."""


class NotFound(ReloaderError):
    """The requested ConfigMap, Secret or workload no longer exists."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class Conflict(ReloaderError):
    """The object changed since it was read (``resourceVersion`` mismatch)."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} was modified concurrently")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class StoreError(ReloaderError):
    """Any other Kubernetes API failure, carrying the HTTP status when known."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UnsupportedType(ReloaderError):
    """An object of an unexpected type reached a typed operation."""

    def __init__(self, obj: Any, expected: str) -> None:
        super().__init__(f"unsupported object type {type(obj).__name__}; expected {expected}")
        self.obj = obj


class InvalidDeclaration(ReloaderError):
    """A ConfigSource carries an unusable scoped-field annotation."""


class Cancelled(ReloaderError):
    """The caller's cancellation event fired before the operation finished."""


class ReconcileError(ReloaderError):
    """Terminal failure of one reconciliation, aggregating every cause.

    ``state`` is the reconciler state the failure happened in.  The work
    queue retries the request unless every cause is :class:`UnsupportedType`,
    which no amount of redelivery can fix.
    """

    def __init__(self, request: Any, state: Any, causes: Sequence[BaseException]) -> None:
        details = "; ".join(str(cause) for cause in causes) or "unknown error"
        super().__init__(f"reconcile {request} failed while {state}: {details}")
        self.request = request
        self.state = state
        self.causes = tuple(causes)

    @property
    def retryable(self) -> bool:
        return not all(isinstance(cause, UnsupportedType) for cause in self.causes)
