from __future__ import annotations

import threading
import time
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from foo_controller.src.controller import (
    FooController,
    build_controller_from_env,
    env_int,
)
from foo_controller.src.errors import StartupPrerequisiteMissing
from foo_controller.src.reconcile import Directive
from foo_controller.src.resource import ObjectRef


class FakeCustomApi:
    def __init__(
        self,
        objects: list[dict[str, Any]] | None = None,
        patch_error_status: int | None = None,
        get_hook: Callable[[str, str], None] | None = None,
    ) -> None:
        self.objects = {
            (obj["metadata"]["namespace"], obj["metadata"]["name"]): obj for obj in objects or []
        }
        self.patch_error_status = patch_error_status
        self.get_hook = get_hook
        self.patches: list[tuple[str, str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def get_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> dict[str, Any]:
        if self.get_hook is not None:
            self.get_hook(namespace, name)
        obj = self.objects.get((namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return obj

    def patch_namespaced_custom_object_status(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        if self.patch_error_status is not None:
            raise ApiException(status=self.patch_error_status, reason="boom")
        with self._lock:
            self.patches.append((namespace, name, body))
        return {}

    def list_cluster_custom_object(self, group: str, version: str, plural: str) -> dict[str, Any]:
        return {"metadata": {"resourceVersion": "100"}, "items": list(self.objects.values())}


def make_foo(name: str, info: str = "fine", namespace: str = "default") -> dict[str, Any]:
    return {
        "metadata": {"namespace": namespace, "name": name, "generation": 1},
        "spec": {"name": name, "info": info},
    }


def _installed_crd_api() -> MagicMock:
    extensions_api = MagicMock()
    extensions_api.read_custom_resource_definition.return_value = SimpleNamespace()
    return extensions_api


def _make_controller(
    custom_api: Any = None,
    extensions_api: Any = None,
    workers: int = 2,
) -> FooController:
    return FooController(
        custom_api=custom_api or FakeCustomApi(),
        extensions_api=extensions_api or _installed_crd_api(),
        workers=workers,
    )


def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


DEMO = ObjectRef(namespace="default", name="demo")


# ---------------------------------------------------------------------------
# Single reconcile dispatch tests
# ---------------------------------------------------------------------------


def test_process_success_patches_status_and_requeues_after_resync() -> None:
    custom_api = FakeCustomApi([make_foo("demo", info="this is bad news")])
    controller = _make_controller(custom_api=custom_api)

    directive = controller.process(DEMO)

    assert directive == Directive(requeue_after=1800)
    assert custom_api.patches == [("default", "demo", {"status": {"is_bad": True}})]
    assert controller.current_state().handled_count == 1
    assert controller.queue.pending_delayed() == 1


def test_process_patch_failure_requeues_after_error_delay() -> None:
    custom_api = FakeCustomApi([make_foo("demo")], patch_error_status=500)
    controller = _make_controller(custom_api=custom_api)
    before = controller.current_state()

    directive = controller.process(DEMO)

    after = controller.current_state()
    assert directive == Directive(requeue_after=360)
    assert after.handled_count == before.handled_count
    assert after.last_event >= before.last_event
    assert controller.queue.pending_delayed() == 1


def test_process_tolerates_vanished_object() -> None:
    controller = _make_controller(custom_api=FakeCustomApi())

    directive = controller.process(DEMO)

    assert directive.requeue_after == 360
    assert controller.current_state().handled_count == 0


def test_process_routes_unexpected_exceptions_to_error_policy(
    caplog: pytest.LogCaptureFixture,
) -> None:
    def exploding_get(namespace: str, name: str) -> None:
        raise RuntimeError("socket closed")

    controller = _make_controller(custom_api=FakeCustomApi(get_hook=exploding_get))

    with caplog.at_level("WARNING"):
        directive = controller.process(DEMO)

    assert directive.requeue_after == 360
    assert "Unexpected error while reconciling default/demo" in caplog.text


def test_custom_delays_are_honoured() -> None:
    controller = FooController(
        custom_api=FakeCustomApi([make_foo("demo")]),
        extensions_api=_installed_crd_api(),
        resync_seconds=60,
        error_requeue_seconds=5,
    )
    assert controller.process(DEMO).requeue_after == 60
    assert controller.process(ObjectRef(namespace="default", name="missing")).requeue_after == 5


def test_rejects_zero_workers() -> None:
    with pytest.raises(ValueError, match="workers must be >= 1"):
        _make_controller(workers=0)


# ---------------------------------------------------------------------------
# Startup prerequisite tests
# ---------------------------------------------------------------------------


def test_run_forever_aborts_before_control_loop_when_crd_missing() -> None:
    extensions_api = MagicMock()
    extensions_api.read_custom_resource_definition.side_effect = ApiException(
        status=404, reason="Not Found"
    )
    controller = _make_controller(extensions_api=extensions_api)
    watch_factory = MagicMock()

    with (
        patch("foo_controller.src.watcher.watch.Watch", watch_factory),
        pytest.raises(StartupPrerequisiteMissing, match="foos.clux.dev"),
    ):
        controller.run_forever(shutdown_event=threading.Event())

    extensions_api.read_custom_resource_definition.assert_called_once_with(name="foos.clux.dev")
    watch_factory.assert_not_called()
    assert controller._worker_threads == []
    assert not controller.ready.is_set()


# ---------------------------------------------------------------------------
# Control loop tests
# ---------------------------------------------------------------------------


def test_run_forever_reconciles_every_existing_object() -> None:
    custom_api = FakeCustomApi(
        [make_foo("fine", info="everything is fine"), make_foo("bad", info="this is bad news")]
    )
    controller = _make_controller(custom_api=custom_api)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        _wait_for(lambda: len(custom_api.patches) == 2)
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("foo_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=shutdown_event)

    assert sorted(custom_api.patches) == [
        ("default", "bad", {"status": {"is_bad": True}}),
        ("default", "fine", {"status": {"is_bad": False}}),
    ]
    assert controller.current_state().handled_count == 2
    assert controller._worker_threads == []
    assert not controller.ready.is_set()


def test_distinct_objects_reconcile_concurrently() -> None:
    # Both fetches must be in flight at once for the barrier to release.
    barrier = threading.Barrier(2, timeout=3)

    def rendezvous(namespace: str, name: str) -> None:
        barrier.wait()

    custom_api = FakeCustomApi([make_foo("a"), make_foo("b")], get_hook=rendezvous)
    controller = _make_controller(custom_api=custom_api, workers=2)
    controller._start_workers()
    try:
        controller.queue.add(ObjectRef(namespace="default", name="a"))
        controller.queue.add(ObjectRef(namespace="default", name="b"))
        assert _wait_for(lambda: len(custom_api.patches) == 2)
    finally:
        controller._stop_workers()

    assert controller.current_state().handled_count == 2


def test_same_object_never_reconciles_concurrently() -> None:
    active = 0
    max_active = 0
    calls = 0
    counter_lock = threading.Lock()

    def track(namespace: str, name: str) -> None:
        nonlocal active, max_active, calls
        with counter_lock:
            active += 1
            calls += 1
            max_active = max(max_active, active)
        time.sleep(0.01)
        with counter_lock:
            active -= 1

    custom_api = FakeCustomApi([make_foo("demo")], get_hook=track)
    controller = _make_controller(custom_api=custom_api, workers=4)
    controller._start_workers()
    try:
        for _ in range(30):
            controller.queue.add(DEMO)
            time.sleep(0.002)
        assert _wait_for(lambda: calls >= 2)
    finally:
        controller._stop_workers()

    assert max_active == 1


def test_shutdown_lets_in_flight_reconcile_finish() -> None:
    entered = threading.Event()
    release = threading.Event()

    def block(namespace: str, name: str) -> None:
        if name == "demo":
            entered.set()
            release.wait(timeout=3)

    custom_api = FakeCustomApi([make_foo("demo"), make_foo("late")], get_hook=block)
    controller = _make_controller(custom_api=custom_api, workers=1)
    controller._start_workers()
    controller.queue.add(DEMO)
    assert entered.wait(timeout=3)

    controller.request_stop()
    controller.queue.add(ObjectRef(namespace="default", name="late"))
    release.set()
    controller._stop_workers()

    assert custom_api.patches == [("default", "demo", {"status": {"is_bad": False}})]


def test_watch_rbac_denial_stops_workers() -> None:
    controller = _make_controller()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=403, reason="forbidden")

    with patch("foo_controller.src.watcher.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=threading.Event())

    assert controller._worker_threads == []
    assert controller.queue.is_shutting_down()


# ---------------------------------------------------------------------------
# env_int() tests
# ---------------------------------------------------------------------------


def test_env_int_returns_default_when_not_set(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_INT_VAR", raising=False)
    assert env_int("TEST_INT_VAR", 42) == 42


def test_env_int_parses_valid_integer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VAR", "7")
    assert env_int("TEST_INT_VAR", 42) == 7


def test_env_int_raises_on_non_numeric(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VAR", "abc")
    with pytest.raises(ValueError, match="TEST_INT_VAR must be an integer"):
        env_int("TEST_INT_VAR", 42)


def test_env_int_enforces_minimum(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VAR", "0")
    with pytest.raises(ValueError, match="TEST_INT_VAR must be >= 1, got: 0"):
        env_int("TEST_INT_VAR", 42, minimum=1)


def test_env_int_enforces_maximum(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VAR", "70000")
    with pytest.raises(ValueError, match="TEST_INT_VAR must be <= 65535, got: 70000"):
        env_int("TEST_INT_VAR", 42, maximum=65535)


# ---------------------------------------------------------------------------
# build_controller_from_env() tests
# ---------------------------------------------------------------------------


def test_build_controller_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("WATCH_NAMESPACE", "RECONCILE_WORKERS", "RESYNC_SECONDS", "ERROR_REQUEUE_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    controller = build_controller_from_env(
        custom_api=FakeCustomApi(), extensions_api=_installed_crd_api()
    )

    assert controller.namespace is None
    assert controller.workers == 4
    assert controller.context.resync_seconds == 1800
    assert controller.context.error_requeue_seconds == 360


def test_build_controller_from_env_custom_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCH_NAMESPACE", " team-a ")
    monkeypatch.setenv("RECONCILE_WORKERS", "8")
    monkeypatch.setenv("RESYNC_SECONDS", "600")
    monkeypatch.setenv("ERROR_REQUEUE_SECONDS", "30")

    controller = build_controller_from_env(
        custom_api=FakeCustomApi(), extensions_api=_installed_crd_api()
    )

    assert controller.namespace == "team-a"
    assert controller.watcher.namespace == "team-a"
    assert controller.workers == 8
    assert controller.context.resync_seconds == 600
    assert controller.context.error_requeue_seconds == 30


def test_build_controller_from_env_rejects_zero_workers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECONCILE_WORKERS", "0")
    with pytest.raises(ValueError, match="RECONCILE_WORKERS must be >= 1"):
        build_controller_from_env(custom_api=FakeCustomApi(), extensions_api=_installed_crd_api())


def test_build_controller_from_env_rejects_invalid_resync(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RESYNC_SECONDS", "soon")
    with pytest.raises(ValueError, match="RESYNC_SECONDS must be an integer"):
        build_controller_from_env(custom_api=FakeCustomApi(), extensions_api=_installed_crd_api())
