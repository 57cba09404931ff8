"""Registry binding host entity types to the revision machinery.

Host entities are plain SQLAlchemy models with an integer primary key.
Registering one makes its rows revisable: revision metadata references a
row through the (entity_type, id) tag, and lifecycle operations duplicate
rows through the registered duplicator.

Two capability sets exist per type: the base versionable lifecycle
(always on) and retroactive deprecation (``deprecatable=True``).
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import inspect

from .exceptions import MissingPrerequisite

logger = logging.getLogger("revisable-core.registry")


def duplicate_payload(payload: Any) -> Any:
    """Detached copy of a host row with every non-primary-key column copied."""
    mapper = inspect(type(payload))
    values = {
        attr.key: getattr(payload, attr.key)
        for attr in mapper.column_attrs
        if not any(column.primary_key for column in attr.columns)
    }
    return type(payload)(**values)


@dataclass(frozen=True)
class RevisableType:
    """Registration of one host entity type."""

    entity_type: str
    entity_cls: type
    deprecatable: bool = False
    duplicate: Callable[[Any], Any] = duplicate_payload


_registry: dict[str, RevisableType] = {}


def register_revisable(
    entity_cls: type,
    entity_type: Optional[str] = None,
    deprecatable: bool = False,
    duplicate: Optional[Callable[[Any], Any]] = None,
) -> RevisableType:
    """
    Register a host entity class as revisable.

    Args:
        entity_cls: SQLAlchemy mapped class of the payload
        entity_type: Tag stored on revision metadata (defaults to the class name)
        deprecatable: Enable retroactive deprecation for this type
        duplicate: Payload cloning function (defaults to duplicate_payload)

    Returns:
        The registration

    Raises:
        ValueError: If the tag is already bound to a different class
    """
    name = entity_type or entity_cls.__name__
    existing = _registry.get(name)
    if existing is not None and existing.entity_cls is not entity_cls:
        raise ValueError(
            f"Entity type '{name}' is already registered for {existing.entity_cls.__name__}"
        )

    revisable_type = RevisableType(
        entity_type=name,
        entity_cls=entity_cls,
        deprecatable=deprecatable,
        duplicate=duplicate or duplicate_payload,
    )
    _registry[name] = revisable_type
    logger.debug(f"Registered revisable type {name} (deprecatable={deprecatable})")
    return revisable_type


def revisable(
    entity_type: Optional[str] = None,
    deprecatable: bool = False,
    duplicate: Optional[Callable[[Any], Any]] = None,
) -> Callable[[type], type]:
    """Class decorator form of register_revisable."""

    def decorator(entity_cls: type) -> type:
        register_revisable(entity_cls, entity_type=entity_type, deprecatable=deprecatable, duplicate=duplicate)
        return entity_cls

    return decorator


def unregister_revisable(entity_type: str) -> None:
    _registry.pop(entity_type, None)


def clear_registry() -> None:
    _registry.clear()


def registered_types() -> list[str]:
    return sorted(_registry)


def get_revisable_type(entity_type: str) -> RevisableType:
    """
    Look up a registration by tag.

    Raises:
        MissingPrerequisite: If the type was never registered
    """
    revisable_type = _registry.get(entity_type)
    if revisable_type is None:
        logger.warning(f"Unknown revisable type '{entity_type}'")
        raise MissingPrerequisite(
            f"Entity type '{entity_type}' is not registered as revisable. "
            f"Call register_revisable() for it first."
        )
    return revisable_type


def revisable_type_for(payload: Any) -> RevisableType:
    """Registration for a payload instance, matched on its exact class."""
    for revisable_type in _registry.values():
        if type(payload) is revisable_type.entity_cls:
            return revisable_type
    raise MissingPrerequisite(
        f"{type(payload).__name__} is not registered as revisable. "
        f"Call register_revisable() for it first."
    )


def require_deprecatable(entity_type: str) -> RevisableType:
    """
    Look up a registration that has retroactive deprecation enabled.

    Raises:
        MissingPrerequisite: If unregistered or registered without deprecatable=True
    """
    revisable_type = get_revisable_type(entity_type)
    if not revisable_type.deprecatable:
        logger.warning(f"Retroactive change requested for non-deprecatable type '{entity_type}'")
        raise MissingPrerequisite(
            f"Entity type '{entity_type}' is not registered as deprecatable. "
            f"Register it with deprecatable=True to apply retroactive changes."
        )
    return revisable_type
