"""Fragment store and spatial index contracts, plus an in-memory implementation.

The pipeline only depends on the two protocols below. Production deployments
plug in a database-backed store; the in-memory store serves local runs and
the test suite.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Protocol

from geo_utils import haversine_m, offset_m
from models import Fragment, FragmentCriteria, FragmentKind, GeoPoint, UserProfile

logger = logging.getLogger(__name__)


class FragmentStore(Protocol):
    async def list(self, criteria: FragmentCriteria) -> list[Fragment]:
        """Returns the fragments matching ``criteria``, in store order."""
        ...


class SpatialIndex(Protocol):
    async def find_within_radius(
        self, lat: float, lng: float, distance_m: float
    ) -> list[GeoPoint]:
        """Returns the stored geo-points within ``distance_m`` of (lat, lng)."""
        ...


def matches(fragment: Fragment, criteria: FragmentCriteria) -> bool:
    """Returns True if ``fragment`` satisfies ``criteria``.

    Distance bounds are exclusive.
    """
    if criteria.ids and fragment.id not in criteria.ids:
        return False
    if criteria.min_distance is not None and fragment.distance <= criteria.min_distance:
        return False
    if criteria.max_distance is not None and fragment.distance >= criteria.max_distance:
        return False
    if criteria.kinds and fragment.kind not in criteria.kinds:
        return False
    if criteria.owner_id is not None and fragment.owner_id != criteria.owner_id:
        return False
    if criteria.require_geometry and not fragment.points:
        return False
    return True


class InMemoryFragmentStore:
    """Keeps fragments and their geo-points in dictionaries.

    Implements both :class:`FragmentStore` and :class:`SpatialIndex`. Geo-points
    shared by several fragments (same id) are merged so that each point knows
    every fragment passing through it.
    """

    def __init__(self, fragments: Iterable[Fragment] = ()):
        self._fragments: dict[str, Fragment] = {}
        self._geos: dict[str, GeoPoint] = {}
        for fragment in fragments:
            self.add(fragment)

    @classmethod
    def from_json(cls, path: str | Path) -> "InMemoryFragmentStore":
        """Loads a JSON array of fragment objects."""
        raw = json.loads(Path(path).read_text())
        store = cls(Fragment.model_validate(item) for item in raw)
        logger.info("Loaded %d fragments from %s", len(store), path)
        return store

    def __len__(self) -> int:
        return len(self._fragments)

    def add(self, fragment: Fragment) -> None:
        self._fragments[fragment.id] = fragment
        for point in fragment.points:
            known = self._geos.get(point.id)
            owners = list(known.fragment_ids) if known else []
            for fragment_id in [*point.fragment_ids, fragment.id]:
                if fragment_id not in owners:
                    owners.append(fragment_id)
            self._geos[point.id] = GeoPoint(
                id=point.id, lat=point.lat, lng=point.lng, fragment_ids=owners
            )

    async def find_within_radius(
        self, lat: float, lng: float, distance_m: float
    ) -> list[GeoPoint]:
        # Cheap bounding-box check before the haversine.
        north = offset_m((lat, lng), distance_m, distance_m)
        dlat = north[0] - lat
        dlng = north[1] - lng
        return [
            geo
            for geo in self._geos.values()
            if abs(geo.lat - lat) <= dlat
            and abs(geo.lng - lng) <= dlng
            and haversine_m(lat, lng, geo.lat, geo.lng) <= distance_m
        ]

    # Defined last: the name shadows the builtin for later annotations.
    async def list(self, criteria: FragmentCriteria) -> list[Fragment]:
        return [f for f in self._fragments.values() if matches(f, criteria)]


async def visited_geo_ids(
    store: FragmentStore, user: UserProfile | None
) -> frozenset[str]:
    """Returns the ids of every geo-point on the user's activities."""
    if user is None:
        return frozenset()
    activities = await store.list(
        FragmentCriteria(kinds=[FragmentKind.ACTIVITY], owner_id=user.id)
    )
    if user.activity_ids:
        activities += await store.list(
            FragmentCriteria(kinds=[FragmentKind.ACTIVITY], ids=user.activity_ids)
        )
    visited = frozenset(p.id for activity in activities for p in activity.points)
    logger.info(
        "User %s has %d visited geo-points across %d activities",
        user.id,
        len(visited),
        len(activities),
    )
    return visited
