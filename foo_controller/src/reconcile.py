from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import urllib3
from kubernetes.client import ApiException

from foo_controller.src.errors import (
    FetchFailure,
    ObjectNotFound,
    ReconcileError,
    SerializationFailure,
    StatusPatchFailure,
)
from foo_controller.src.metrics import METRICS, ControllerMetrics
from foo_controller.src.resource import FooSpec, FooStatus, ObjectRef
from foo_controller.src.state import SharedRuntimeState, utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_RESYNC_SECONDS = 1800
DEFAULT_ERROR_REQUEUE_SECONDS = 360


class StatusStore(Protocol):
    def get(self, namespace: str, name: str) -> FooSpec: ...

    def patch_status(self, namespace: str, name: str, status_body: bytes) -> None: ...


@dataclass(frozen=True)
class Directive:
    """When to reconcile an object again; ``None`` means only on the next watch event."""

    requeue_after: float | None


@dataclass(frozen=True)
class ReconcileContext:
    """Dependencies handed to every reconcile call.

    Built once per controller instance; the shared state lives as long as the
    controller that owns it.
    """

    store: StatusStore
    state: SharedRuntimeState
    metrics: ControllerMetrics = field(default_factory=lambda: METRICS)
    resync_seconds: float = DEFAULT_RESYNC_SECONDS
    error_requeue_seconds: float = DEFAULT_ERROR_REQUEUE_SECONDS
    now_fn: Callable[[], datetime] = utc_now


def derive_status(spec: FooSpec) -> FooStatus:
    """Compute the status a ``Foo`` should have.  Pure and deterministic."""
    return FooStatus(is_bad="bad" in spec.info)


def serialize_status(ref: ObjectRef, status: FooStatus) -> bytes:
    """Encode *status* as the JSON merge-patch body for the status subresource."""
    try:
        return json.dumps({"status": status.to_dict()}).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise SerializationFailure(ref, str(exc)) from exc


def reconcile(ref: ObjectRef, ctx: ReconcileContext) -> Directive:
    """Bring the status of one ``Foo`` in line with its spec.

    1. Record the attempt time in the shared state.
    2. Fetch the current spec.  ``404`` raises :class:`ObjectNotFound`; other
       API or connection failures raise :class:`FetchFailure`.
    3. Derive and serialize the status.
    4. Patch the status subresource; API or connection failures raise
       :class:`StatusPatchFailure`.
    5. Count the success and ask to be called again after the resync
       interval.  Sooner triggers come from watch events.

    The shared-state lock is only held for the two short updates, never
    across an API call.
    """
    ctx.state.record_event(ctx.now_fn())

    try:
        spec = ctx.store.get(ref.namespace, ref.name)
    except ApiException as exc:
        if exc.status == 404:
            raise ObjectNotFound(ref, "object no longer exists") from exc
        raise FetchFailure(ref, f"status={exc.status} reason={exc.reason}") from exc
    except urllib3.exceptions.HTTPError as exc:
        raise FetchFailure(ref, f"transport error: {exc}") from exc

    LOGGER.debug("Reconcile Foo %s: %s", ref, spec)
    body = serialize_status(ref, derive_status(spec))

    try:
        ctx.store.patch_status(ref.namespace, ref.name, body)
    except ApiException as exc:
        raise StatusPatchFailure(ref, f"status={exc.status} reason={exc.reason}") from exc
    except urllib3.exceptions.HTTPError as exc:
        raise StatusPatchFailure(ref, f"transport error: {exc}") from exc

    ctx.state.record_success()
    ctx.metrics.handled_events.inc()
    return Directive(requeue_after=ctx.resync_seconds)


def error_policy(error: Exception, ctx: ReconcileContext) -> Directive:
    """Map any reconcile failure to a fixed retry delay.

    Every error kind gets the same delay; transient and permanent failures
    are not told apart.
    """
    kind = error.kind if isinstance(error, ReconcileError) else "unexpected"
    LOGGER.warning("reconcile failed: %s", error)
    ctx.metrics.reconcile_errors_total.labels(kind=kind).inc()
    return Directive(requeue_after=ctx.error_requeue_seconds)
