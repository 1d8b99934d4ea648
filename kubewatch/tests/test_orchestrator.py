from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from types import SimpleNamespace
from typing import Any

import pytest

from kubewatch.src.config import WatchConfig
from kubewatch.src.handlers import Handler
from kubewatch.src.kinds import KindSpec, ResourceKind
from kubewatch.src.kube import Unauthorized, WatchExpired
from kubewatch.src.orchestrator import WatchOrchestrator
from kubewatch.src.store import object_key


def make_obj(name: str, resource_version: str, namespace: str = "default") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, resource_version=resource_version)
    )


class RecordingHandler(Handler):
    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self._lock = threading.Lock()

    def _record(self, action: str, obj: Any) -> None:
        with self._lock:
            self.calls.append((action, object_key(obj)))

    def object_created(self, obj: Any) -> None:
        self._record("created", obj)

    def object_updated(self, old_obj: Any, new_obj: Any) -> None:
        self._record("updated", new_obj)

    def object_deleted(self, obj: Any) -> None:
        self._record("deleted", obj)

    def snapshot(self) -> list[tuple[str, str | None]]:
        with self._lock:
            return list(self.calls)


class ScriptedSource:
    """Lists a fixed set, replays *records* once, then blocks until stopped."""

    def __init__(
        self,
        items: list[Any] | None = None,
        records: list[tuple[str, Any]] | None = None,
        expire: bool = False,
        list_error: Exception | None = None,
    ) -> None:
        self.items = items or []
        self.records = list(records or [])
        self.expire = expire
        self.list_error = list_error
        self.watch_count = 0
        self._stopped = threading.Event()

    def list_all(self) -> tuple[list[Any], str | None]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.items), "1"

    def open_watch(self, resource_version: str | None, timeout_seconds: int) -> Iterator[Any]:
        self.watch_count += 1
        if self.expire:
            raise WatchExpired("410 Gone", status=410)
        records, self.records = self.records, []

        def _stream() -> Iterator[tuple[str, Any]]:
            yield from records
            self._stopped.wait(timeout=5)

        return _stream()

    def stop(self) -> None:
        self._stopped.set()


def _factory(sources: dict[ResourceKind, ScriptedSource]) -> Callable[[KindSpec, Any], Any]:
    def build(spec: KindSpec, clients: Any) -> ScriptedSource:
        return sources[spec.kind]

    return build


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _config(*kinds: ResourceKind, **overrides: Any) -> WatchConfig:
    return WatchConfig(enabled_kinds=kinds, **overrides)


def test_start_runs_one_loop_per_enabled_kind_and_returns_immediately() -> None:
    handler = RecordingHandler()
    sources = {
        ResourceKind.POD: ScriptedSource(items=[make_obj("web-0", "1")]),
        ResourceKind.SERVICE: ScriptedSource(items=[make_obj("web", "1")]),
    }
    orchestrator = WatchOrchestrator(
        clients=SimpleNamespace(),
        handler=handler,
        config=_config(ResourceKind.POD, ResourceKind.SERVICE),
        source_factory=_factory(sources),
    )
    shutdown_event = threading.Event()

    orchestrator.start(shutdown_event)
    try:
        assert set(orchestrator.loops) == {ResourceKind.POD, ResourceKind.SERVICE}
        assert _wait_for(orchestrator.ready)
        assert orchestrator.mirror(ResourceKind.POD).keys() == {"default/web-0"}
        assert sorted(handler.snapshot()) == [
            ("created", "default/web"),
            ("created", "default/web-0"),
        ]
    finally:
        assert orchestrator.stop(timeout=5)

    assert not orchestrator.failed
    assert not shutdown_event.is_set()


def test_ready_is_false_before_start() -> None:
    orchestrator = WatchOrchestrator(
        clients=SimpleNamespace(),
        handler=RecordingHandler(),
        config=_config(ResourceKind.POD),
        source_factory=_factory({ResourceKind.POD: ScriptedSource()}),
    )

    assert orchestrator.ready() is False


def test_start_twice_is_rejected() -> None:
    orchestrator = WatchOrchestrator(
        clients=SimpleNamespace(),
        handler=RecordingHandler(),
        config=_config(ResourceKind.POD),
        source_factory=_factory({ResourceKind.POD: ScriptedSource()}),
    )
    orchestrator.start(threading.Event())
    try:
        with pytest.raises(RuntimeError):
            orchestrator.start(threading.Event())
    finally:
        orchestrator.stop(timeout=5)


def test_expiring_kind_does_not_block_other_kinds() -> None:
    handler = RecordingHandler()
    expiring = ScriptedSource(items=[make_obj("web-0", "1")], expire=True)
    healthy = ScriptedSource(
        items=[],
        records=[
            ("ADDED", make_obj("api", "2")),
            ("MODIFIED", make_obj("api", "3")),
            ("DELETED", make_obj("api", "4")),
        ],
    )
    orchestrator = WatchOrchestrator(
        clients=SimpleNamespace(),
        handler=handler,
        config=_config(ResourceKind.POD, ResourceKind.SERVICE),
        source_factory=_factory({ResourceKind.POD: expiring, ResourceKind.SERVICE: healthy}),
    )

    orchestrator.start(threading.Event())
    try:
        assert _wait_for(lambda: ("deleted", "default/api") in handler.snapshot())
    finally:
        orchestrator.stop(timeout=5)

    service_calls = [call for call in handler.snapshot() if call[1] == "default/api"]
    assert service_calls == [
        ("created", "default/api"),
        ("updated", "default/api"),
        ("deleted", "default/api"),
    ]
    assert expiring.watch_count > 1


def test_fatal_loop_exit_sets_shutdown_event() -> None:
    sources = {
        ResourceKind.POD: ScriptedSource(list_error=Unauthorized("403 Forbidden", status=403)),
        ResourceKind.SERVICE: ScriptedSource(),
    }
    orchestrator = WatchOrchestrator(
        clients=SimpleNamespace(),
        handler=RecordingHandler(),
        config=_config(ResourceKind.POD, ResourceKind.SERVICE),
        source_factory=_factory(sources),
    )
    shutdown_event = threading.Event()

    orchestrator.start(shutdown_event)
    try:
        assert shutdown_event.wait(timeout=5)
        assert orchestrator.failed
    finally:
        assert orchestrator.stop(timeout=5)


def test_crashed_loop_sets_shutdown_event() -> None:
    sources = {ResourceKind.JOB: ScriptedSource(list_error=RuntimeError("bug"))}
    orchestrator = WatchOrchestrator(
        clients=SimpleNamespace(),
        handler=RecordingHandler(),
        config=_config(ResourceKind.JOB),
        source_factory=_factory(sources),
    )
    shutdown_event = threading.Event()

    orchestrator.start(shutdown_event)

    assert shutdown_event.wait(timeout=5)
    assert orchestrator.failed
    assert orchestrator.stop(timeout=5)


def test_loops_are_built_from_config() -> None:
    orchestrator = WatchOrchestrator(
        clients=SimpleNamespace(),
        handler=RecordingHandler(),
        config=_config(
            ResourceKind.POD,
            ResourceKind.SERVICE,
            resync_period_seconds=120,
            handler_max_attempts=5,
            auth_failure_fatal=False,
            ignore_updates_for=frozenset({ResourceKind.POD}),
        ),
        source_factory=_factory(
            {ResourceKind.POD: ScriptedSource(), ResourceKind.SERVICE: ScriptedSource()}
        ),
    )

    orchestrator.start(threading.Event())
    try:
        pod_loop = orchestrator.loops[ResourceKind.POD]
        service_loop = orchestrator.loops[ResourceKind.SERVICE]
        assert pod_loop.track_updates is False
        assert service_loop.track_updates is True
        assert pod_loop.resync_period_seconds == 120
        assert pod_loop.handler_max_attempts == 5
        assert pod_loop.auth_failure_fatal is False
    finally:
        orchestrator.stop(timeout=5)
