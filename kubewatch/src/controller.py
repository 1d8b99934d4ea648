from __future__ import annotations

import logging
import math
import random
import threading
import time
from typing import Any, Protocol

from kubewatch.src.events import Added, ChangeEvent, Deleted, Updated
from kubewatch.src.handlers import Handler
from kubewatch.src.kinds import ResourceKind
from kubewatch.src.kube import Unauthorized, WatchExpired, WatchSourceError
from kubewatch.src.metrics import METRICS
from kubewatch.src.store import (
    ResourceMirror,
    is_newer_resource_version,
    object_key,
    resource_version_of,
)

WATCH_TIMEOUT_CAP_SECONDS = 30


class WatchSource(Protocol):
    def list_all(self) -> tuple[list[Any], str | None]: ...

    def open_watch(self, resource_version: str | None, timeout_seconds: int) -> Any: ...

    def stop(self) -> None: ...


class ReconciliationLoop:
    """Keeps a local mirror of one resource kind in sync and reports every transition.

    The loop alternates between two states:

    * **Listing**: a full list is diffed against the mirror.  Objects new to
      the mirror produce ``Added``, objects with a different resourceVersion
      produce ``Updated`` and mirror entries missing from the list produce
      ``Deleted``.  On startup the mirror is empty, so every listed object is
      reported as ``Added`` before any stream record is handled.
    * **Streaming**: a watch is opened from the list's resourceVersion and
      each record is applied to the mirror.  Records carrying the mirror's
      current resourceVersion are duplicates and records with an older one
      are stale; both are suppressed without touching the mirror.  Deletes
      for unknown objects are suppressed too.

    Each watch is opened for at most ``WATCH_TIMEOUT_CAP_SECONDS`` and is
    reopened from the watermark when that window runs out.  Any other end of
    the stream (early close, dropped connection, ``410 Gone``) goes back to
    Listing instead of resuming, since the watermark may no longer be valid.
    The last window is clamped to the next periodic resync, so a healthy but
    quiet stream is still re-listed every ``resync_period_seconds``.  Listing
    and streaming share one thread, so the resync never races with stream
    records on the mirror.

    List and watch failures are retried with jittered exponential backoff
    (1 s doubling up to ``backoff_ceiling_seconds``).  ``401``/``403`` stop
    the loop when ``auth_failure_fatal`` is set, since RBAC problems do not
    fix themselves; otherwise they are retried like any other failure.

    Handler exceptions are retried ``handler_max_attempts`` times with the
    same backoff and then the event is dropped, so a broken notification
    backend cannot stall the loop.
    """

    def __init__(
        self,
        kind: ResourceKind,
        source: WatchSource,
        handler: Handler,
        *,
        resync_period_seconds: int = 1800,
        backoff_ceiling_seconds: int = 30,
        handler_max_attempts: int = 3,
        track_updates: bool = True,
        auth_failure_fatal: bool = True,
        mirror: ResourceMirror | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if resync_period_seconds < 1:
            raise ValueError("resync_period_seconds must be >= 1")
        if handler_max_attempts < 1:
            raise ValueError("handler_max_attempts must be >= 1")

        self.kind = kind
        self.source = source
        self.handler = handler
        self.resync_period_seconds = resync_period_seconds
        self.backoff_ceiling_seconds = backoff_ceiling_seconds
        self.handler_max_attempts = handler_max_attempts
        self.track_updates = track_updates
        self.auth_failure_fatal = auth_failure_fatal
        self.mirror = mirror if mirror is not None else ResourceMirror()
        self.logger = logger or logging.getLogger(__name__)

        self.resource_version: str | None = None
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._stop_event = threading.Event()
        self._watch_stream_count = 0
        self._stream_backoff_seconds = 1

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        self.source.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _update_mirror_gauge(self) -> None:
        METRICS.mirror_objects.labels(kind=self.kind.value).set(len(self.mirror))

    def _suppress(self, reason: str, key: str, resource_version: str | None) -> None:
        self.logger.debug(
            "Suppressed %s record for %s %s (resourceVersion %s)",
            reason,
            self.kind.value,
            key,
            resource_version,
        )
        METRICS.suppressed_total.labels(kind=self.kind.value, reason=reason).inc()

    def _deliver(self, event: ChangeEvent) -> bool:
        """Hand *event* to the handler, retrying failures a bounded number of times.

        Returns ``True`` once the handler accepted the event and ``False`` when
        it was dropped.
        """
        for attempt in range(1, self.handler_max_attempts + 1):
            try:
                event.dispatch(self.handler)
            except Exception:
                METRICS.handler_failures_total.labels(kind=self.kind.value).inc()
                if attempt >= self.handler_max_attempts or self._should_stop(self._stop_event):
                    self.logger.exception(
                        "Handler failed on %s event for %s %s after %d attempt(s); dropping event",
                        event.event_type,
                        self.kind.value,
                        event.key,
                        attempt,
                    )
                    METRICS.dropped_events_total.labels(kind=self.kind.value).inc()
                    return False
                delay_seconds = min(float(self.backoff_ceiling_seconds), float(2 ** (attempt - 1)))
                self.logger.warning(
                    "Handler failed on %s event for %s %s; retry attempt %d in %.1fs",
                    event.event_type,
                    self.kind.value,
                    event.key,
                    attempt + 1,
                    delay_seconds,
                )
                self._stop_event.wait(timeout=delay_seconds)
                continue

            METRICS.events_total.labels(kind=self.kind.value, event=event.event_type).inc()
            return True
        return False

    def _apply_upsert(self, key: str, obj: Any, *, listed: bool) -> ChangeEvent | None:
        """Store *obj* in the mirror and return the event to report, if any.

        Stream records must carry a strictly newer resourceVersion than the
        mirror to replace it.  A listing is authoritative, so any differing
        version replaces the mirrored one.  Two missing versions compare equal.
        """
        resource_version = resource_version_of(obj)
        entry = self.mirror.get_entry(key)

        event: ChangeEvent
        if entry is None:
            event = Added(kind=self.kind, key=key, obj=obj)
        elif resource_version == entry.resource_version:
            if not listed:
                self._suppress("duplicate", key, resource_version)
            return None
        elif not listed and not is_newer_resource_version(resource_version, entry.resource_version):
            self._suppress("stale", key, resource_version)
            return None
        else:
            event = Updated(kind=self.kind, key=key, old=entry.obj, new=obj)

        self.mirror.put(key, obj, resource_version)
        self._update_mirror_gauge()
        if isinstance(event, Updated) and not self.track_updates:
            return None
        return event

    def handle_watch_event(self, event_type: str, obj: Any) -> ChangeEvent | None:
        """Apply a single watch record to the mirror and notify the handler.

        Returns the event that was dispatched, or ``None`` when the record was
        suppressed (duplicate, stale, unknown delete) or not reportable.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        key = object_key(obj)
        if key is None:
            self.logger.warning(
                "Skipping %s %s record without metadata.name", self.kind.value, event_type
            )
            return None

        resource_version = resource_version_of(obj)
        if is_newer_resource_version(resource_version, self.resource_version):
            self.resource_version = resource_version

        event: ChangeEvent | None
        if event_type == "DELETED":
            if self.mirror.delete(key) is None:
                self._suppress("unknown_delete", key, resource_version)
                return None
            self._update_mirror_gauge()
            event = Deleted(kind=self.kind, key=key, obj=obj)
        else:
            event = self._apply_upsert(key, obj, listed=False)
            if event is None:
                return None

        self._deliver(event)
        return event

    def reconcile_listing(self, items: list[Any]) -> list[ChangeEvent]:
        """Diff a full listing against the mirror, converging it and reporting the drift.

        Returns the dispatched events: upserts in listing order followed by
        deletions of mirrored objects that no longer exist.
        """
        events: list[ChangeEvent] = []
        listed_keys: set[str] = set()
        for obj in items:
            key = object_key(obj)
            if key is None:
                self.logger.warning("Skipping listed %s without metadata.name", self.kind.value)
                continue
            listed_keys.add(key)
            event = self._apply_upsert(key, obj, listed=True)
            if event is None:
                continue
            self._deliver(event)
            events.append(event)

        for key in sorted(self.mirror.keys() - listed_keys):
            last_seen = self.mirror.delete(key)
            if last_seen is None:
                continue
            self._update_mirror_gauge()
            deleted = Deleted(kind=self.kind, key=key, obj=last_seen)
            self._deliver(deleted)
            events.append(deleted)

        return events

    def _list_and_reconcile(self, stop: threading.Event, trigger: str) -> bool:
        """Run the Listing state until a list succeeds.

        Returns ``False`` when the loop must end instead: a stop was requested
        or the API rejected our credentials and ``auth_failure_fatal`` is set.
        """
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, resource_version = self.source.list_all()
            except Unauthorized as exc:
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                if self.auth_failure_fatal:
                    self.logger.error(
                        "Kubernetes API access denied while listing %s objects (status=%s). "
                        "Check RBAC and service account permissions.",
                        self.kind.value,
                        exc.status,
                    )
                    return False
                self.logger.error(
                    "Kubernetes API access denied while listing %s objects (status=%s); retrying",
                    self.kind.value,
                    exc.status,
                )
            except WatchSourceError:
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                self.logger.exception("Listing %s objects failed", self.kind.value)
            else:
                METRICS.resyncs_total.labels(kind=self.kind.value, trigger=trigger).inc()
                self.resource_version = resource_version
                events = self.reconcile_listing(items)
                self.ready.set()
                METRICS.loop_ready.labels(kind=self.kind.value).set(1)
                self.logger.info(
                    "Listed %d %s object(s) at resourceVersion %s (%s resync, %d change(s))",
                    len(items),
                    self.kind.value,
                    resource_version,
                    trigger,
                    len(events),
                )
                return True

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, self.backoff_ceiling_seconds)
        return False

    def _backoff_after_stream_error(self, stop: threading.Event) -> None:
        jittered = self._stream_backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        self._stream_backoff_seconds = min(
            self._stream_backoff_seconds * 2, self.backoff_ceiling_seconds
        )

    def _next_watch_timeout_seconds(self, resync_deadline: float, now_monotonic: float) -> int:
        """Return the timeout for the next watch window.

        Windows never exceed ``WATCH_TIMEOUT_CAP_SECONDS`` so a stop request
        on a quiet stream is noticed promptly, and the last window before a
        periodic resync is shortened to end on the deadline.
        """
        remaining = resync_deadline - now_monotonic
        return min(WATCH_TIMEOUT_CAP_SECONDS, max(1, math.ceil(remaining)))

    def _stream_until_resync(self, stop: threading.Event, resync_deadline: float) -> str | None:
        """Run the Streaming state and return the trigger for the next list.

        Watch windows that run to their own timeout are reopened from the
        watermark until the resync deadline.  Returns ``None`` when the loop
        must end (stop requested or fatal authorization failure).
        """
        while True:
            trigger = self._watch_window(stop, resync_deadline)
            if trigger != "window":
                return trigger

    def _watch_window(self, stop: threading.Event, resync_deadline: float) -> str | None:
        if self._should_stop(stop):
            return None
        window_started = time.monotonic()
        timeout_seconds = self._next_watch_timeout_seconds(resync_deadline, window_started)
        if self._watch_stream_count > 0:
            METRICS.watch_reconnects_total.labels(kind=self.kind.value).inc()
        self._watch_stream_count += 1

        stream: Any = None
        try:
            stream = self.source.open_watch(self.resource_version, timeout_seconds)
            for event_type, obj in stream:
                if self._should_stop(stop):
                    return None
                self.handle_watch_event(event_type, obj)
                if time.monotonic() >= resync_deadline:
                    return "periodic"
            self._stream_backoff_seconds = 1
        except WatchExpired:
            self.logger.info(
                "Watch for %s expired at resourceVersion %s; re-listing",
                self.kind.value,
                self.resource_version,
            )
            return "expired"
        except Unauthorized as exc:
            METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
            if self.auth_failure_fatal:
                self.logger.error(
                    "Kubernetes API watch denied for %s (status=%s). "
                    "Check RBAC and service account permissions.",
                    self.kind.value,
                    exc.status,
                )
                return None
            self.logger.error(
                "Kubernetes API watch denied for %s (status=%s); retrying",
                self.kind.value,
                exc.status,
            )
            self._backoff_after_stream_error(stop)
            return "error"
        except WatchSourceError:
            # Interrupting a blocked read surfaces as a transport error.
            if self._should_stop(stop):
                return None
            METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
            self.logger.exception("Watch stream for %s failed", self.kind.value)
            self._backoff_after_stream_error(stop)
            return "error"
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        now = time.monotonic()
        if self._should_stop(stop):
            return None
        if now >= resync_deadline:
            return "periodic"
        if now - window_started >= timeout_seconds:
            return "window"
        return "disconnect"

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list, stream, and re-list until shutdown.

        Returns when *shutdown_event* is set, :meth:`request_stop` is called,
        or an authorization failure is fatal.  Callers can tell the last case
        apart because neither stop signal is set.
        """
        stop = shutdown_event or threading.Event()
        self._stop_event = stop

        trigger: str | None = "startup"
        while trigger is not None and not self._should_stop(stop):
            if not self._list_and_reconcile(stop, trigger):
                break
            resync_deadline = time.monotonic() + self.resync_period_seconds
            trigger = self._stream_until_resync(stop, resync_deadline)

        self.ready.clear()
        METRICS.loop_ready.labels(kind=self.kind.value).set(0)
        self.logger.info("Reconciliation loop for %s stopped", self.kind.value)
