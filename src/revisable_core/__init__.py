"""Temporal versioning of business records with retroactive corrections."""
from .exceptions import (
    InvariantViolation,
    MissingPrerequisite,
    NotificationDeliveryFailure,
    RevisionError,
)
from .models import Base, RevisionChange, RevisionInfo, RevisionSet, RevisionStatus
from .registry import register_revisable, revisable
from .state_machine import IllegalStateTransition

__version__ = "0.1.0"

__all__ = [
    "Base",
    "IllegalStateTransition",
    "InvariantViolation",
    "MissingPrerequisite",
    "NotificationDeliveryFailure",
    "RevisionChange",
    "RevisionError",
    "RevisionInfo",
    "RevisionSet",
    "RevisionStatus",
    "register_revisable",
    "revisable",
]
