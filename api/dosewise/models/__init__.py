from dosewise.models.base import Base, TimestampMixin
from dosewise.models.state_document import StateDocument

__all__ = [
    "Base",
    "TimestampMixin",
    "StateDocument",
]
