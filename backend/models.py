"""Pydantic request, response and domain models for the route synthesis backend."""

from enum import Enum

import googlemaps.convert
from pydantic import BaseModel, Field


class LatLng(BaseModel):
    """A WGS84 coordinate."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def as_tuple(self) -> tuple[float, float]:
        return self.lat, self.lng


# ---------------------------------------------------------------------------
# Fragments: stored routes, segments and activities
# ---------------------------------------------------------------------------


class FragmentKind(str, Enum):
    ROUTE = "route"
    SEGMENT = "segment"
    ACTIVITY = "activity"


class GeoPoint(BaseModel):
    """A stored geo-point, shared by every fragment passing through it."""

    id: str
    lat: float
    lng: float
    fragment_ids: list[str] = Field(default_factory=list)


class Fragment(BaseModel):
    """A route, segment or activity usable as a building block.

    Routes and crawled segments carry their geometry in ``points``. Provider
    activities and segments additionally carry an explicit start/end pair;
    when present it takes precedence over the first/last point.
    """

    id: str
    title: str = ""
    kind: FragmentKind
    distance: float
    """Fragment length in metres."""

    points: list[GeoPoint] = Field(default_factory=list)
    start_latlng: tuple[float, float] | None = None
    end_latlng: tuple[float, float] | None = None
    owner_id: str | None = None
    """User owning an activity; None for public routes and segments."""

    model_config = {"frozen": True}

    @property
    def start(self) -> tuple[float, float]:
        if self.start_latlng is not None:
            return self.start_latlng
        return self.points[0].lat, self.points[0].lng

    @property
    def end(self) -> tuple[float, float]:
        if self.end_latlng is not None:
            return self.end_latlng
        return self.points[-1].lat, self.points[-1].lng

    @property
    def waypoints(self) -> list[tuple[float, float]]:
        return [(p.lat, p.lng) for p in self.points]

    @property
    def is_activity(self) -> bool:
        return self.kind is FragmentKind.ACTIVITY

    @classmethod
    def from_provider_payload(
        cls,
        payload: dict,
        kind: FragmentKind,
        *,
        owner_id: str | None = None,
    ) -> "Fragment":
        """Builds a Fragment from a fitness-provider activity/segment payload.

        The provider ships the geometry as an encoded summary polyline plus a
        separate ``start_latlng``/``end_latlng`` pair.
        """
        fragment_id = str(payload["id"])
        encoded = (payload.get("map") or {}).get("summary_polyline") or ""
        decoded = googlemaps.convert.decode_polyline(encoded) if encoded else []
        points = [
            GeoPoint(
                id=f"{fragment_id}:{i}",
                lat=p["lat"],
                lng=p["lng"],
                fragment_ids=[fragment_id],
            )
            for i, p in enumerate(decoded)
        ]
        start = payload.get("start_latlng")
        end = payload.get("end_latlng")
        return cls(
            id=fragment_id,
            title=payload.get("name", ""),
            kind=kind,
            distance=float(payload["distance"]),
            points=points,
            start_latlng=tuple(start) if start else None,
            end_latlng=tuple(end) if end else None,
            owner_id=owner_id,
        )


class FragmentCriteria(BaseModel):
    """Query criteria understood by a fragment store."""

    ids: list[str] = Field(default_factory=list)
    min_distance: float | None = None
    max_distance: float | None = None
    kinds: list[FragmentKind] = Field(default_factory=list)
    owner_id: str | None = None
    require_geometry: bool = True


class UserProfile(BaseModel):
    """The requesting user, as far as the pipeline needs to know it."""

    id: str
    activity_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Route generation models
# ---------------------------------------------------------------------------


class RouteQuery(BaseModel):
    """A request for a generated route."""

    start: LatLng
    end: LatLng
    distance: float = Field(gt=0)
    """Target route distance in metres."""

    preference: str = "discover"
    """discover | familiar | distance; anything else keeps the default order."""

    difficulty: str = "advanced"
    user: UserProfile | None = None
    seed: int | None = None
    """Seed for the search jitter; None draws fresh entropy."""


class RoutedPath(BaseModel):
    """A path returned by the external routing service."""

    distance: float
    waypoints: list[tuple[float, float]]


class CandidatePart(BaseModel):
    """One fragment traversal inside a candidate."""

    fragment_id: str
    kind: FragmentKind
    forward: bool = True


class Candidate(BaseModel):
    """A combo after being routed by the external service."""

    distance: float
    waypoints: list[tuple[float, float]]
    parts: list[CandidatePart]
    familiarity_score: float = 0.0
    familiar: bool = False


class GeneratedRoute(BaseModel):
    """A materialised route handed back to the caller."""

    id: str
    title: str
    distance: float
    waypoints: list[tuple[float, float]]
    parts: list[CandidatePart]
    familiarity_score: float
    familiar: bool = False


class RouteRating(BaseModel):
    """Placeholder for the user's later rating of a generated route."""

    route_id: str
    rating: int | None = None
    comment: str = ""


class GenerationResult(BaseModel):
    """The complete result of a route generation request."""

    query: RouteQuery
    routes: list[GeneratedRoute] = Field(default_factory=list)
    ratings: list[RouteRating] = Field(default_factory=list)
    narrative: str = ""
    """LLM-generated description of the first route; empty when unavailable."""
