from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dosewise.core.dependencies import get_catalog
from dosewise.services.catalog import Catalog
from dosewise.stats.state import Goal

router = APIRouter(tags=["protocols"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class ProtocolOut(BaseModel):
    id: str
    name: str
    supports: list[str]
    base_seconds: float
    cues: list[str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/protocols", response_model=list[ProtocolOut])
async def list_protocols(
    goal: Goal | None = None,
    catalog: Catalog = Depends(get_catalog),
) -> list[ProtocolOut]:
    """List the catalog, optionally only protocols that serve ``goal``."""
    protocols = catalog.all() if goal is None else catalog.by_goal(goal)
    return [ProtocolOut.model_validate(p.model_dump()) for p in protocols]
