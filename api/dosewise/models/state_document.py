from sqlalchemy import JSON, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from dosewise.models.base import Base, TimestampMixin


class StateDocument(TimestampMixin, Base):
    """One user's serialized learning state, keyed by storage key."""

    __tablename__ = "state_documents"

    storage_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
