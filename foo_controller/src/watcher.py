from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from foo_controller.src.metrics import METRICS
from foo_controller.src.resource import GROUP, PLURAL, VERSION, ObjectRef, object_generation
from foo_controller.src.workqueue import WorkQueue


class FooWatcher:
    """Turns ``Foo`` watch events into work-queue keys.

    Lists every ``Foo`` once at startup and enqueues each one (the bootstrap
    resync), then streams watch events from the list's ``resourceVersion``.
    The work queue deduplicates keys, so bursts of events for one object
    collapse into a single pending reconcile.

    Key internal state:
        ``_observed_generation``
            Maps each known object to the last ``metadata.generation`` seen.
            ``MODIFIED`` events with an unchanged generation are status or
            metadata writes (including our own status patches) and are not
            enqueued.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        queue: WorkQueue[ObjectRef],
        namespace: str | None = None,
        ready: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.queue = queue
        self.namespace = namespace or None
        self.ready = ready or threading.Event()
        self.logger = logger or logging.getLogger(__name__)

        self._observed_generation: dict[ObjectRef, int | None] = {}
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_function(self) -> tuple[Callable[..., Any], dict[str, str]]:
        if self.namespace is None:
            return self.custom_api.list_cluster_custom_object, {
                "group": GROUP,
                "version": VERSION,
                "plural": PLURAL,
            }
        return self.custom_api.list_namespaced_custom_object, {
            "group": GROUP,
            "version": VERSION,
            "namespace": self.namespace,
            "plural": PLURAL,
        }

    def _list(self) -> dict[str, Any]:
        list_fn, kwargs = self._list_function()
        return list_fn(**kwargs)

    @staticmethod
    def _list_resource_version(listing: Any) -> str | None:
        metadata = listing.get("metadata") if isinstance(listing, dict) else None
        if not isinstance(metadata, dict):
            return None
        return metadata.get("resourceVersion")

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def sync_from_list(self, listing: Any) -> int:
        """Enqueue every listed object and forget objects missing from the listing.

        Used for the bootstrap resync and after a ``410 Gone`` re-list, where
        DELETED events may have been missed while disconnected.  Returns the
        number of objects enqueued.
        """
        items = listing.get("items") if isinstance(listing, dict) else None
        seen: set[ObjectRef] = set()
        for obj in items or []:
            ref = ObjectRef.from_object(obj)
            if ref is None:
                continue
            seen.add(ref)
            self._observed_generation[ref] = object_generation(obj)
            self.queue.add(ref)

        for ref in set(self._observed_generation) - seen:
            self.logger.info("Foo %s disappeared while the watch was disconnected", ref)
            del self._observed_generation[ref]
            self.queue.forget(ref)
        return len(seen)

    def handle_event(self, event_type: str, obj: Any) -> bool:
        """Process a single watch event.  Returns True when the object was enqueued."""
        ref = ObjectRef.from_object(obj) if isinstance(obj, dict) else None
        if ref is None:
            return False

        if event_type == "DELETED":
            self._observed_generation.pop(ref, None)
            self.queue.forget(ref)
            self.logger.info("Foo %s deleted; dropping scheduled reconciles", ref)
            return False

        if event_type not in {"ADDED", "MODIFIED"}:
            return False

        generation = object_generation(obj)
        if event_type == "MODIFIED" and ref in self._observed_generation:
            if generation is not None and self._observed_generation[ref] == generation:
                self.logger.debug("Ignoring status-only update for %s", ref)
                return False

        self._observed_generation[ref] = generation
        self.queue.add(ref)
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch ``Foo`` objects until shutdown.

        1. Retries the initial list with exponential backoff so transient API
           startup failures do not crash-loop the controller.
        2. Enqueues every listed object and sets ``ready``.
        3. Opens a streaming watch from the list's ``resourceVersion``.
        4. On ``410 Gone`` (etcd compaction), re-lists, enqueues everything
           again and resumes.
        5. On transient errors, applies exponential backoff with jitter
           (capped at 30 s) to avoid thundering-herd reconnects.

        ``401`` / ``403`` responses are treated as configuration errors
        (RBAC/auth) and end the loop immediately with a clear log message.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list()
                resource_version = self._list_resource_version(initial)
                count = self.sync_from_list(initial)
                self.ready.set()
                self.logger.info(
                    "Enqueued %d Foo object(s); starting watch from resourceVersion %s",
                    count,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial Foo list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Foo list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                list_fn, kwargs = self._list_function()
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue

                    metadata = obj.get("metadata") or {}
                    if metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]

                    self.handle_event(event_type=str(event.get("type", "")), obj=obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        fresh = self._list()
                        resource_version = self._list_resource_version(fresh)
                        self.sync_from_list(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
