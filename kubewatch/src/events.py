from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from kubewatch.src.kinds import ResourceKind

if TYPE_CHECKING:
    from kubewatch.src.handlers import Handler


@dataclass(frozen=True)
class ChangeEvent(ABC):
    """A normalized lifecycle transition detected by a reconciliation loop.

    Subclasses carry the object(s) involved and know which handler entry
    point to call.  Events are built, dispatched once, and discarded.
    """

    kind: ResourceKind
    key: str

    event_type: ClassVar[str]

    @abstractmethod
    def dispatch(self, handler: Handler) -> None:
        """Call the handler entry point matching this transition."""


@dataclass(frozen=True)
class Added(ChangeEvent):
    obj: Any = None

    event_type = "added"

    def dispatch(self, handler: Handler) -> None:
        handler.object_created(self.obj)


@dataclass(frozen=True)
class Updated(ChangeEvent):
    old: Any = None
    new: Any = None

    event_type = "updated"

    def dispatch(self, handler: Handler) -> None:
        handler.object_updated(self.old, self.new)


@dataclass(frozen=True)
class Deleted(ChangeEvent):
    obj: Any = None

    event_type = "deleted"

    def dispatch(self, handler: Handler) -> None:
        handler.object_deleted(self.obj)
