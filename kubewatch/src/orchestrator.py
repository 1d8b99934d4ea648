from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from kubewatch.src.config import WatchConfig
from kubewatch.src.controller import ReconciliationLoop, WatchSource
from kubewatch.src.handlers import Handler
from kubewatch.src.kinds import KIND_SPECS, KindSpec, ResourceKind
from kubewatch.src.kube import KubeWatchSource
from kubewatch.src.store import ResourceMirror

LOGGER = logging.getLogger(__name__)


class WatchOrchestrator:
    """Runs one reconciliation loop per enabled kind, each on its own thread.

    Loops share nothing but the handler.  A loop that returns without a stop
    request (fatal authorization failure) or raises is not restarted: it sets
    the process shutdown event so the entrypoint can stop the others and exit
    non-zero.
    """

    def __init__(
        self,
        clients: Any,
        handler: Handler,
        config: WatchConfig,
        source_factory: Callable[[KindSpec, Any], WatchSource] = KubeWatchSource,
    ) -> None:
        self.clients = clients
        self.handler = handler
        self.config = config
        self.source_factory = source_factory
        self.loops: dict[ResourceKind, ReconciliationLoop] = {}
        self._threads: dict[ResourceKind, threading.Thread] = {}
        self._stop = threading.Event()
        self._failed = threading.Event()

    @property
    def failed(self) -> bool:
        return self._failed.is_set()

    def ready(self) -> bool:
        """Return True once every loop has completed its initial list."""
        return bool(self.loops) and all(loop.ready.is_set() for loop in self.loops.values())

    def mirror(self, kind: ResourceKind) -> ResourceMirror:
        return self.loops[kind].mirror

    def _build_loop(self, spec: KindSpec) -> ReconciliationLoop:
        return ReconciliationLoop(
            kind=spec.kind,
            source=self.source_factory(spec, self.clients),
            handler=self.handler,
            resync_period_seconds=self.config.resync_period_seconds,
            backoff_ceiling_seconds=self.config.backoff_ceiling_seconds,
            handler_max_attempts=self.config.handler_max_attempts,
            track_updates=spec.track_updates and spec.kind not in self.config.ignore_updates_for,
            auth_failure_fatal=self.config.auth_failure_fatal,
            logger=logging.getLogger(f"kubewatch.src.controller.{spec.kind.value}"),
        )

    def start(self, shutdown_event: threading.Event) -> None:
        """Start every enabled loop and return without waiting for them."""
        if self._threads:
            raise RuntimeError("Orchestrator already started")

        for kind in self.config.enabled_kinds:
            loop = self._build_loop(KIND_SPECS[kind])
            self.loops[kind] = loop

            def _run_loop(loop: ReconciliationLoop = loop) -> None:
                unexpected_exit = False
                try:
                    loop.run_forever(shutdown_event=self._stop)
                    unexpected_exit = not self._stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error(
                            "Reconciliation loop for %s exited without a stop signal; "
                            "terminating process",
                            loop.kind.value,
                        )
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Reconciliation loop for %s crashed", loop.kind.value)
                finally:
                    if unexpected_exit:
                        self._failed.set()
                        shutdown_event.set()

            thread = threading.Thread(
                target=_run_loop,
                name=f"kubewatch-{kind.value}",
                daemon=True,
            )
            self._threads[kind] = thread
            thread.start()
            LOGGER.info("Started watching %s objects", kind.value)

    def stop(self, timeout: float | None = None) -> bool:
        """Stop every loop and wait for the threads.

        Returns ``False`` if any thread was still alive after *timeout*.
        """
        self._stop.set()
        for loop in self.loops.values():
            loop.request_stop()

        all_stopped = True
        for kind, thread in self._threads.items():
            thread.join(timeout=timeout)
            if thread.is_alive():
                all_stopped = False
                LOGGER.error("Reconciliation loop for %s did not stop within %ss", kind.value, timeout)
        return all_stopped
