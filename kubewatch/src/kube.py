from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Iterator
from typing import Any, NamedTuple

import urllib3
from kubernetes import client, config, watch
from kubernetes.client import ApiException, AppsV1Api, BatchV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from kubewatch.src.kinds import KindSpec

LOGGER = logging.getLogger(__name__)

WATCH_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


class WatchSourceError(Exception):
    """Base class for failures talking to the cluster API."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class APIUnavailable(WatchSourceError):
    """The API server could not be reached or answered with a server error."""


class Unauthorized(WatchSourceError):
    """The API server rejected the credentials (401) or the RBAC check (403)."""


class WatchExpired(WatchSourceError):
    """The requested resourceVersion was compacted away (410 Gone)."""


def translate_api_exception(exc: ApiException) -> WatchSourceError:
    """Map a client ``ApiException`` onto the watch source error taxonomy."""
    status = getattr(exc, "status", None)
    message = f"{status} {getattr(exc, 'reason', '') or ''}".strip()
    if status in {401, 403}:
        return Unauthorized(message, status=status)
    if status == 410:
        return WatchExpired(message, status=status)
    return APIUnavailable(message, status=status)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


class ApiClients(NamedTuple):
    core: CoreV1Api
    apps: AppsV1Api
    batch: BatchV1Api


def build_clients() -> ApiClients:
    """Return the API group clients needed by every supported kind."""
    return ApiClients(core=client.CoreV1Api(), apps=client.AppsV1Api(), batch=client.BatchV1Api())


class KubeWatchSource:
    """List-and-watch adapter for one resource kind across all namespaces.

    ``list_all`` returns the current objects plus the list's
    ``resourceVersion``; ``open_watch`` streams ``(type, object)`` pairs
    from a given version.  The stream simply ends when the server closes the
    connection or the timeout elapses.  Errors are raised as
    :class:`WatchSourceError` subclasses so callers never see raw client
    exceptions.
    """

    def __init__(self, spec: KindSpec, clients: Any) -> None:
        self.spec = spec
        api = getattr(clients, spec.api_group)
        self._list_fn = getattr(api, spec.list_function)
        self._active_watcher: watch.Watch | None = None
        self._active_response: Any = None
        self._interrupted = False
        self._watcher_lock = threading.Lock()

    def list_all(self) -> tuple[list[Any], str | None]:
        try:
            result = self._list_fn()
        except ApiException as exc:
            raise translate_api_exception(exc) from exc
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            raise APIUnavailable(str(exc)) from exc

        items = list(getattr(result, "items", None) or [])
        resource_version = getattr(getattr(result, "metadata", None), "resource_version", None)
        return items, resource_version

    def _tracked_list_fn(self) -> Any:
        """Wrap the list function so the streaming response can be interrupted.

        ``watch.Watch.stop`` is only honoured after the next line arrives, so a
        quiet stream would block until the server timeout.  Keeping the raw
        response lets :meth:`stop` shut its socket down instead.
        """
        list_fn = self._list_fn

        @functools.wraps(list_fn)
        def tracked(*args: Any, **kwargs: Any) -> Any:
            response = list_fn(*args, **kwargs)
            with self._watcher_lock:
                self._active_response = response
                interrupted = self._interrupted
            if interrupted:
                _interrupt_response(response)
            return response

        return tracked

    def open_watch(
        self, resource_version: str | None, timeout_seconds: int
    ) -> Iterator[tuple[str, Any]]:
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
            self._active_response = None
            self._interrupted = False
        try:
            stream = watcher.stream(
                self._tracked_list_fn(),
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            )
            for event in stream:
                event_type = str(event.get("type", ""))
                obj = event.get("object")
                if event_type not in WATCH_EVENT_TYPES or obj is None:
                    continue
                yield event_type, obj
        except ApiException as exc:
            raise translate_api_exception(exc) from exc
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            raise APIUnavailable(str(exc)) from exc
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None
                    self._active_response = None

    def stop(self) -> None:
        """Interrupt the open watch stream, if any, from another thread."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
            active_response = self._active_response
            if active_watcher is not None:
                self._interrupted = True
        if active_watcher is not None:
            active_watcher.stop()
        if active_response is not None:
            _interrupt_response(active_response)


def _interrupt_response(response: Any) -> None:
    # urllib3 >= 2.3 can unblock a read in another thread; close() cannot always.
    shutdown = getattr(response, "shutdown", None)
    if callable(shutdown):
        shutdown()
    else:
        response.close()
