from __future__ import annotations

from foo_controller.src.resource import ObjectRef


class ReconcileError(Exception):
    """Base class for failures of a single reconcile attempt.

    These never escape the controller driver: each is logged and turned into
    a requeue directive by the error policy.  ``kind`` is used as the metric
    label.
    """

    kind = "unknown"

    def __init__(self, ref: ObjectRef, detail: str) -> None:
        super().__init__(f"{self.kind} failure for {ref}: {detail}")
        self.ref = ref
        self.detail = detail


class SerializationFailure(ReconcileError):
    """The computed status could not be encoded into a patch body."""

    kind = "serialization"


class StatusPatchFailure(ReconcileError):
    """The API server rejected or failed to apply the status patch."""

    kind = "status_patch"


class ObjectNotFound(ReconcileError):
    """The object vanished between dequeue and fetch."""

    kind = "not_found"


class FetchFailure(ReconcileError):
    """Reading the object failed for a reason other than not-found."""

    kind = "fetch"


class StartupPrerequisiteMissing(RuntimeError):
    """Raised when the ``Foo`` CustomResourceDefinition is not installed."""
