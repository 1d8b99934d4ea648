from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from kubewatch.src.store import object_key, resource_version_of


class Handler(ABC):
    """Receives lifecycle notifications from the reconciliation loops.

    Each method is called synchronously from the loop thread of the kind that
    detected the transition, so implementations must return promptly (or hand
    work off) and must be safe to call from several loop threads at once.
    Raising an exception marks the delivery as failed; the loop retries it a
    bounded number of times before dropping the event.
    """

    @abstractmethod
    def object_created(self, obj: Any) -> None: ...

    @abstractmethod
    def object_updated(self, old_obj: Any, new_obj: Any) -> None: ...

    @abstractmethod
    def object_deleted(self, obj: Any) -> None: ...


def describe_object(obj: Any) -> str:
    """Return ``<Type> <namespace/name>`` for log lines, e.g. ``V1Pod default/web-0``."""
    return f"{type(obj).__name__} {object_key(obj) or '<unnamed>'}"


class LoggingHandler(Handler):
    """Default backend that writes one log line per transition."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def object_created(self, obj: Any) -> None:
        self.logger.info("Created %s", describe_object(obj))

    def object_updated(self, old_obj: Any, new_obj: Any) -> None:
        self.logger.info(
            "Updated %s (resourceVersion %s -> %s)",
            describe_object(new_obj),
            resource_version_of(old_obj),
            resource_version_of(new_obj),
        )

    def object_deleted(self, obj: Any) -> None:
        self.logger.info("Deleted %s", describe_object(obj))
