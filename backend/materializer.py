"""Turns scored candidates into persisted routes.

Materialisation is idempotent: the route identifier is derived from the
title, distance and endpoints, so materialising the same candidate twice
reuses the stored route and only refreshes its familiarity score.
"""

import asyncio
import hashlib
import logging
from typing import Protocol

from models import Candidate, GeneratedRoute, GeoPoint

logger = logging.getLogger(__name__)


class RouteRepository(Protocol):
    async def find_route(self, route_id: str) -> GeneratedRoute | None:
        ...

    async def save_geos(self, geos: list[GeoPoint]) -> None:
        ...

    async def save_route(self, route: GeneratedRoute, geo_ids: list[str]) -> None:
        ...

    async def update_familiarity(self, route_id: str, score: float) -> GeneratedRoute:
        ...


class InMemoryRouteRepository:
    """Dictionary-backed repository used by tests and local runs."""

    def __init__(self):
        self.routes: dict[str, GeneratedRoute] = {}
        self.route_geos: dict[str, list[str]] = {}
        self.geos: dict[str, GeoPoint] = {}

    async def find_route(self, route_id: str) -> GeneratedRoute | None:
        return self.routes.get(route_id)

    async def save_geos(self, geos: list[GeoPoint]) -> None:
        for geo in geos:
            self.geos[geo.id] = geo

    async def save_route(self, route: GeneratedRoute, geo_ids: list[str]) -> None:
        self.routes[route.id] = route
        self.route_geos[route.id] = list(geo_ids)

    async def update_familiarity(self, route_id: str, score: float) -> GeneratedRoute:
        route = self.routes[route_id].model_copy(update={"familiarity_score": score})
        self.routes[route_id] = route
        return route


def route_title(candidate: Candidate) -> str:
    mode = "Familiar" if candidate.familiar else "Explorative"
    return f"{mode} generated route {candidate.distance / 1000:.1f} km"


def route_identifier(
    title: str,
    distance: float,
    start: tuple[float, float],
    end: tuple[float, float],
) -> str:
    """Deterministic identifier for a generated route."""
    key = "|".join(
        [
            title,
            str(round(distance)),
            f"{start[0]:.6f},{start[1]:.6f}",
            f"{end[0]:.6f},{end[1]:.6f}",
        ]
    )
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


def build_route(candidate: Candidate) -> GeneratedRoute:
    """Builds the route entity for ``candidate`` without persisting it."""
    title = route_title(candidate)
    start = candidate.waypoints[0] if candidate.waypoints else (0.0, 0.0)
    end = candidate.waypoints[-1] if candidate.waypoints else (0.0, 0.0)
    return GeneratedRoute(
        id=route_identifier(title, candidate.distance, start, end),
        title=title,
        distance=candidate.distance,
        waypoints=candidate.waypoints,
        parts=candidate.parts,
        familiarity_score=candidate.familiarity_score,
        familiar=candidate.familiar,
    )


async def _persist(
    repository: RouteRepository, route: GeneratedRoute, geos: list[GeoPoint]
) -> None:
    await repository.save_geos(geos)
    await repository.save_route(route, [geo.id for geo in geos])


async def materialize(
    candidate: Candidate, repository: RouteRepository
) -> GeneratedRoute:
    """Persists ``candidate`` as a route, reusing an existing identical route.

    Writes are shielded: a cancelled request still lets a started write finish.
    """
    route = build_route(candidate)
    existing = await repository.find_route(route.id)
    if existing is not None:
        logger.info("Route %s already exists; updating familiarity", route.id)
        return await asyncio.shield(
            repository.update_familiarity(route.id, candidate.familiarity_score)
        )

    geos = [
        GeoPoint(id=f"{route.id}:{i}", lat=lat, lng=lng, fragment_ids=[route.id])
        for i, (lat, lng) in enumerate(route.waypoints)
    ]
    await asyncio.shield(_persist(repository, route, geos))
    logger.info("Created route %s (%s) with %d geos", route.id, route.title, len(geos))
    return route
