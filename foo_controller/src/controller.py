from __future__ import annotations

import logging
import os
import threading
import time

from kubernetes.client import ApiextensionsV1Api, CustomObjectsApi

from foo_controller.src.errors import ReconcileError
from foo_controller.src.kube import FooStore, ensure_crd_installed
from foo_controller.src.metrics import METRICS
from foo_controller.src.reconcile import (
    DEFAULT_ERROR_REQUEUE_SECONDS,
    DEFAULT_RESYNC_SECONDS,
    Directive,
    ReconcileContext,
    error_policy,
    reconcile,
)
from foo_controller.src.resource import ObjectRef
from foo_controller.src.state import RuntimeState, SharedRuntimeState
from foo_controller.src.watcher import FooWatcher
from foo_controller.src.workqueue import WorkQueue


class FooController:
    """Drives every ``Foo`` toward its desired status.

    The watcher fills a deduplicating work queue; a pool of worker threads
    drains it.  Each worker reconciles one key, maps failures to a retry
    delay through the error policy, and hands the key back to the queue with
    the resulting delay.  The queue never gives the same key to two workers
    at once, so distinct objects reconcile in parallel while each object is
    reconciled serially.

    Shutdown stops the watcher and the queue first; workers finish whatever
    reconcile they are in and then exit.  Nothing is cancelled mid-flight.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        extensions_api: ApiextensionsV1Api,
        namespace: str | None = None,
        workers: int = 4,
        resync_seconds: float = DEFAULT_RESYNC_SECONDS,
        error_requeue_seconds: float = DEFAULT_ERROR_REQUEUE_SECONDS,
        state: SharedRuntimeState | None = None,
        queue: WorkQueue[ObjectRef] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self.extensions_api = extensions_api
        self.namespace = namespace or None
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self.state = state or SharedRuntimeState()
        self.queue: WorkQueue[ObjectRef] = queue or WorkQueue()
        self.context = ReconcileContext(
            store=FooStore(custom_api),
            state=self.state,
            resync_seconds=resync_seconds,
            error_requeue_seconds=error_requeue_seconds,
        )
        self.ready = threading.Event()
        self.watcher = FooWatcher(
            custom_api=custom_api,
            queue=self.queue,
            namespace=self.namespace,
            ready=self.ready,
        )
        self._worker_threads: list[threading.Thread] = []

    def current_state(self) -> RuntimeState:
        return self.state.snapshot()

    def verify_prerequisites(self) -> None:
        """Raise :class:`StartupPrerequisiteMissing` when the Foo CRD is absent."""
        ensure_crd_installed(self.extensions_api)

    def request_stop(self) -> None:
        self.watcher.request_stop()
        self.queue.shut_down()

    def process(self, ref: ObjectRef) -> Directive:
        """Run one reconcile for *ref* and schedule its next one.

        Reconcile errors are expected and go straight to the error policy;
        anything else is logged with a traceback first.  Either way the key
        is requeued and the worker keeps going.
        """
        started = time.monotonic()
        try:
            directive = reconcile(ref, self.context)
        except ReconcileError as exc:
            directive = error_policy(exc, self.context)
        except Exception as exc:
            self.logger.exception("Unexpected error while reconciling %s", ref)
            directive = error_policy(exc, self.context)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        self.queue.add_after(ref, directive.requeue_after)
        self.logger.info("Reconciled %s; requeue after %ss", ref, directive.requeue_after)
        return directive

    def _worker_loop(self) -> None:
        while True:
            ref = self.queue.get()
            if ref is None:
                return
            try:
                self.process(ref)
            finally:
                self.queue.done(ref)

    def _start_workers(self) -> None:
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"foo-reconcile-{index}",
                daemon=True,
            )
            thread.start()
            self._worker_threads.append(thread)

    def _stop_workers(self) -> None:
        self.queue.shut_down()
        for thread in self._worker_threads:
            thread.join()
        self._worker_threads = []

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Verify the CRD, then reconcile until shutdown.

        The CRD check happens before any thread or watch is started; a
        missing CRD raises :class:`StartupPrerequisiteMissing` to the caller.
        The watcher runs in the calling thread and returns on shutdown or on
        an RBAC denial; either way in-flight reconciles are allowed to finish
        before this method returns.
        """
        stop = shutdown_event or threading.Event()
        self.verify_prerequisites()

        self._start_workers()
        self.logger.info(
            "Started %d reconcile worker(s) for namespace %s",
            self.workers,
            self.namespace or "<all>",
        )
        try:
            self.watcher.run_forever(shutdown_event=stop)
            if not stop.is_set() and not self.queue.is_shutting_down():
                self.logger.error("Foo watch ended without a stop signal; stopping controller")
        finally:
            self._stop_workers()
            self.ready.clear()


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(
    custom_api: CustomObjectsApi, extensions_api: ApiextensionsV1Api
) -> FooController:
    """Construct a :class:`FooController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``:       Namespace to watch; empty watches all namespaces (``""``).
        ``RECONCILE_WORKERS``:     Number of concurrent reconcile threads (``4``).
        ``RESYNC_SECONDS``:        Delay before re-reconciling an unchanged object (``1800``).
        ``ERROR_REQUEUE_SECONDS``: Delay before retrying a failed reconcile (``360``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip()

    return FooController(
        custom_api=custom_api,
        extensions_api=extensions_api,
        namespace=namespace or None,
        workers=env_int("RECONCILE_WORKERS", 4, minimum=1),
        resync_seconds=env_int("RESYNC_SECONDS", DEFAULT_RESYNC_SECONDS, minimum=1),
        error_requeue_seconds=env_int(
            "ERROR_REQUEUE_SECONDS", DEFAULT_ERROR_REQUEUE_SECONDS, minimum=1
        ),
    )
