"""Retroactive change notification interfaces."""
import logging
from collections import defaultdict
from typing import Callable, Optional, Protocol, runtime_checkable

from .exceptions import NotificationDeliveryFailure
from .schemas import RetroactiveChangeEvent

logger = logging.getLogger("revisable-core.notifier")

ALL_ENTITY_TYPES = "*"

Listener = Callable[[RetroactiveChangeEvent], None]


def event_name_for(entity_type: str) -> str:
    """Event name listeners subscribe to for one revisable type."""
    return f"{entity_type}_revision_retroactive_change"


@runtime_checkable
class ChangeNotifier(Protocol):
    """Protocol for announcing committed retroactive changes.

    Implementations raise NotificationDeliveryFailure when delivery fails.
    """

    def notify(self, entity_type: str, revision_set_id: int, affected_revision_ids: list[int]) -> None:
        """Announce that revisions of a set were reshaped by a retroactive change."""
        ...


class InProcessChangeNotifier:
    """Dispatch retroactive change events to in-process listeners.

    Listeners subscribe per entity type (or to every type with "*") and
    receive a RetroactiveChangeEvent, typically to invalidate caches or
    schedule reindexing.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, entity_type: str, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners[entity_type].append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(entity_type, listener)

        return unsubscribe

    def unsubscribe(self, entity_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(entity_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def clear(self) -> None:
        self._listeners.clear()

    def listeners_for(self, entity_type: str) -> list[Listener]:
        return [*self._listeners.get(entity_type, []), *self._listeners.get(ALL_ENTITY_TYPES, [])]

    def notify(self, entity_type: str, revision_set_id: int, affected_revision_ids: list[int]) -> None:
        event = RetroactiveChangeEvent(
            event=event_name_for(entity_type),
            entity_type=entity_type,
            revision_set_id=revision_set_id,
            affected_revision_ids=list(affected_revision_ids),
        )

        failures: list[Exception] = []
        for listener in self.listeners_for(entity_type):
            try:
                listener(event)
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    f"Listener {getattr(listener, '__name__', listener)!r} failed for {event.event}",
                    exc_info=True,
                )
                failures.append(e)

        if failures:
            raise NotificationDeliveryFailure(
                f"{len(failures)} listener(s) failed to handle {event.event} "
                f"for revision set {revision_set_id}",
                event_name=event.event,
                revision_set_id=revision_set_id,
                failures=failures,
            )

        logger.debug(f"Dispatched {event.event} for revision set {revision_set_id}: {event.affected_revision_ids}")


_default_notifier: Optional[InProcessChangeNotifier] = None


def get_default_notifier() -> InProcessChangeNotifier:
    """Process-wide notifier used when no notifier is passed explicitly."""
    global _default_notifier
    if _default_notifier is None:
        _default_notifier = InProcessChangeNotifier()
    return _default_notifier
