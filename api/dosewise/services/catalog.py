"""Static protocol catalog.

The engine only reads from it: enumerate, filter by goal, look up by id.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from dosewise.stats.state import Goal


class Protocol(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    supports: tuple[Goal, ...]
    base_seconds: float
    cues: tuple[str, ...] = ()


PROTOCOLS: tuple[Protocol, ...] = (
    Protocol(
        id="physiological-sigh",
        name="Physiological Sigh",
        supports=("calm", "pre-sleep"),
        base_seconds=90,
        cues=(
            "Inhale through your nose...",
            "Top-up inhale (short)...",
            "Slow exhale through your mouth...",
            "Repeat...",
        ),
    ),
    Protocol(
        id="box-breathing",
        name="Box Breathing 4-4-4-4",
        supports=("calm", "focus", "pre-sleep"),
        base_seconds=120,
        cues=("Inhale... 4", "Hold... 4", "Exhale... 4", "Hold... 4", "Repeat..."),
    ),
    Protocol(
        id="eye-break",
        name="20-20-20 Eye Break",
        supports=("focus", "calm"),
        base_seconds=60,
        cues=(
            "Gaze far (~6 meters)...",
            "Blink softly and relax...",
            "Continue gazing...",
        ),
    ),
    Protocol(
        id="4-7-8-breathing",
        name="4-7-8 Breathing",
        supports=("pre-sleep", "calm"),
        base_seconds=120,
        cues=(
            "Inhale through nose... 4",
            "Hold... 7",
            "Exhale through mouth... 8",
            "Repeat...",
        ),
    ),
    Protocol(
        id="alternate-nostril",
        name="Alternate Nostril",
        supports=("calm", "focus"),
        base_seconds=90,
        cues=(
            "Close right nostril, inhale left...",
            "Close left nostril, exhale right...",
            "Inhale right...",
            "Exhale left...",
            "Repeat...",
        ),
    ),
)


class Catalog:
    """Read-only view over a list of protocols.

    Parameters
    ----------
    protocols : tuple[Protocol, ...]
        Catalog entries; ids must be unique.
    """

    def __init__(self, protocols: tuple[Protocol, ...] = PROTOCOLS) -> None:
        self._protocols = tuple(protocols)
        self._by_id = {p.id: p for p in self._protocols}
        if len(self._by_id) != len(self._protocols):
            raise ValueError("Protocol ids must be unique")

    def all(self) -> tuple[Protocol, ...]:
        return self._protocols

    def by_goal(self, goal: str) -> list[Protocol]:
        return [p for p in self._protocols if goal in p.supports]

    def get(self, item_id: str) -> Protocol:
        try:
            return self._by_id[item_id]
        except KeyError:
            raise LookupError(f"Unknown protocol: {item_id}") from None

    def names(self) -> dict[str, str]:
        return {p.id: p.name for p in self._protocols}

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._by_id

    def __len__(self) -> int:
        return len(self._protocols)


default_catalog = Catalog()
