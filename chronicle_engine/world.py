"""Read-only access to location summaries from the world service."""

from __future__ import annotations

from typing import Protocol

from chronicle_engine.models import LocationSummary


class LocationSource(Protocol):
    async def get_location(self, character_id: str) -> LocationSummary | None: ...


class StaticLocationSource:
    """Location source backed by a fixed character → location mapping."""

    def __init__(self, locations: dict[str, LocationSummary] | None = None) -> None:
        self._locations = dict(locations or {})

    async def get_location(self, character_id: str) -> LocationSummary | None:
        return self._locations.get(character_id)
