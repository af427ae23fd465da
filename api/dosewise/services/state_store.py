"""Load and save per-user state documents.

The inference core never sees storage errors: a missing document is a
fresh user, and a document that no longer parses is logged and replaced by
an empty state on the next save.
"""

import logging

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from dosewise.core.config import settings
from dosewise.models.state_document import StateDocument
from dosewise.stats.state import AppState

logger = logging.getLogger(__name__)


def storage_key(user_key: str) -> str:
    return f"{settings.STATE_STORAGE_KEY}:{user_key}"


async def load_state(db: AsyncSession, user_key: str) -> AppState:
    """Return the user's state, or a default state if absent or unreadable."""
    key = storage_key(user_key)
    document = await db.get(StateDocument, key)
    if document is None:
        return AppState()

    try:
        return AppState.from_raw(document.payload)
    except (ValidationError, ValueError, TypeError) as exc:
        logger.warning("Discarding unreadable state document %s: %s", key, exc)
        return AppState()


async def save_state(db: AsyncSession, user_key: str, state: AppState) -> None:
    key = storage_key(user_key)
    payload = state.to_raw()
    document = await db.get(StateDocument, key)
    if document is None:
        db.add(StateDocument(storage_key=key, payload=payload))
    else:
        document.payload = payload
    await db.flush()


async def clear_state(db: AsyncSession, user_key: str) -> bool:
    """Delete the user's state document.  Returns False if there was none."""
    document = await db.get(StateDocument, storage_key(user_key))
    if document is None:
        return False
    await db.delete(document)
    await db.flush()
    logger.info("Cleared state for %s", storage_key(user_key))
    return True
