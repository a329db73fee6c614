"""Routing service adapters.

Each adapter turns an ordered waypoint list into a rideable path via an
external directions API and returns a normalised ``RoutedPath``, or None when
the service cannot route it. Network errors, non-success responses, missing
route legs, unparsable payloads and timeouts are all reported the same way:
logged, then None. Transient failures are retried with exponential backoff.

Two providers are supported:
  google  Google Directions API through the ``googlemaps`` client
          (bicycling mode).
  mapbox  Mapbox Directions (OSRM-compatible) cycling profile over httpx.
"""

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Protocol

import googlemaps
import googlemaps.convert
import googlemaps.exceptions
import httpx

from models import RoutedPath

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Call budget
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_S: float = 10.0
DEFAULT_MAX_ATTEMPTS: int = 3
DEFAULT_BACKOFF_S: float = 0.5

MAPBOX_DIRECTIONS_URL = "https://api.mapbox.com/directions/v5/mapbox/cycling/"

LatLngTuple = tuple[float, float]


class RoutingConfigError(RuntimeError):
    """The routing provider is unknown or missing its credentials."""


class RoutingService(Protocol):
    async def find_route(self, waypoints: list[LatLngTuple]) -> RoutedPath | None:
        ...


async def _call_with_retries(
    call: Callable[[], Awaitable[Any]],
    *,
    is_transient: Callable[[Exception], bool],
    timeout_s: float,
    max_attempts: int,
    backoff_s: float,
    label: str,
) -> Any | None:
    """Awaits ``call`` with a timeout, retrying transient failures.

    Returns the call's result, or None once the attempts are used up or a
    non-transient error occurred.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(call(), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs (attempt %d)", label, timeout_s, attempt)
        except Exception as exc:  # noqa: BLE001
            if not is_transient(exc):
                logger.error("%s failed: %s", label, exc)
                return None
            logger.warning("%s failed (attempt %d): %s", label, attempt, exc)
        if attempt < max_attempts:
            await asyncio.sleep(backoff_s * 2 ** (attempt - 1))
    logger.error("%s gave up after %d attempts", label, max_attempts)
    return None


# ---------------------------------------------------------------------------
# Google Directions
# ---------------------------------------------------------------------------


def _is_transient_google(exc: Exception) -> bool:
    return isinstance(
        exc, (googlemaps.exceptions.Timeout, googlemaps.exceptions.TransportError)
    )


class DirectionsRouter:
    """Routes waypoints with the Google Directions API in bicycling mode.

    The first and last waypoint become origin and destination; everything in
    between is passed as intermediate waypoints in order.
    """

    def __init__(
        self,
        maps_client: googlemaps.Client | None = None,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_s: float = DEFAULT_BACKOFF_S,
    ):
        self._maps = maps_client or googlemaps.Client(
            key=os.environ.get("GOOGLE_MAPS_API_KEY", "")
        )
        self._timeout_s = timeout_s
        self._max_attempts = max_attempts
        self._backoff_s = backoff_s

    async def find_route(self, waypoints: list[LatLngTuple]) -> RoutedPath | None:
        if len(waypoints) < 2:
            raise ValueError("At least two waypoints are required to find a route.")

        origin, *intermediate, destination = waypoints

        async def call():
            # googlemaps is synchronous; keep it off the event loop.
            return await asyncio.to_thread(
                self._maps.directions,
                origin=origin,
                destination=destination,
                waypoints=intermediate,
                mode="bicycling",
                optimize_waypoints=False,
            )

        result = await _call_with_retries(
            call,
            is_transient=_is_transient_google,
            timeout_s=self._timeout_s,
            max_attempts=self._max_attempts,
            backoff_s=self._backoff_s,
            label="Directions API request",
        )
        if not result:
            logger.warning("Directions API returned no routes")
            return None
        try:
            return _parse_directions(result[0])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.error("Directions API response could not be parsed: %s", exc)
            return None


def _parse_directions(route: dict[str, Any]) -> RoutedPath | None:
    legs = route.get("legs") or []
    if not legs:
        logger.error("Directions API did not return any route legs")
        return None
    distance = sum(leg["distance"]["value"] for leg in legs)
    return RoutedPath(distance=distance, waypoints=_route_geometry(route))


def _route_geometry(route: dict[str, Any]) -> list[LatLngTuple]:
    """Concatenates the step polylines, falling back to the overview polyline.

    Step boundaries share endpoints, so the first point of a step is dropped
    when it repeats the previous step's last point.
    """
    points: list[LatLngTuple] = []
    for leg in route.get("legs", []):
        for step in leg.get("steps", []):
            encoded = step.get("polyline", {}).get("points", "")
            if not encoded:
                continue
            step_points = [
                (p["lat"], p["lng"])
                for p in googlemaps.convert.decode_polyline(encoded)
            ]
            if points and step_points and step_points[0] == points[-1]:
                step_points = step_points[1:]
            points.extend(step_points)
    if points:
        return points

    overview = route.get("overview_polyline", {}).get("points", "")
    if not overview:
        return []
    return [
        (p["lat"], p["lng"]) for p in googlemaps.convert.decode_polyline(overview)
    ]


# ---------------------------------------------------------------------------
# Mapbox Directions
# ---------------------------------------------------------------------------


def _is_transient_http(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


class MapboxRouter:
    """Routes waypoints with the Mapbox Directions API, cycling profile."""

    def __init__(
        self,
        access_token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_s: float = DEFAULT_BACKOFF_S,
    ):
        self._token = access_token or os.environ.get("MAPBOX_ACCESS_TOKEN", "")
        self._client = client
        self._timeout_s = timeout_s
        self._max_attempts = max_attempts
        self._backoff_s = backoff_s

    async def find_route(self, waypoints: list[LatLngTuple]) -> RoutedPath | None:
        if len(waypoints) < 2:
            raise ValueError("At least two waypoints are required to find a route.")

        url = MAPBOX_DIRECTIONS_URL + to_lng_lat(waypoints)
        params = {
            "continue_straight": "true",
            "geometries": "geojson",
            "overview": "full",
            "steps": "true",
            "access_token": self._token,
        }
        logger.debug("Mapbox request path: %s", url)

        async def call():
            if self._client is not None:
                response = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()

        # An unparsable body raises ValueError inside call() and ends as None.
        body = await _call_with_retries(
            call,
            is_transient=_is_transient_http,
            timeout_s=self._timeout_s,
            max_attempts=self._max_attempts,
            backoff_s=self._backoff_s,
            label="Mapbox request",
        )
        if not _result_ok(body):
            return None

        route = body["routes"][0]
        try:
            waypoints_out = [
                (lat, lng) for lng, lat in route["geometry"]["coordinates"]
            ]
            distance = float(route["distance"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Mapbox route could not be parsed: %s", exc)
            return None

        _log_uturns(route["legs"])
        return RoutedPath(distance=distance, waypoints=waypoints_out)


def to_lng_lat(waypoints: list[LatLngTuple]) -> str:
    """Formats (lat, lng) pairs as 'lng,lat;lng,lat;...'."""
    return ";".join(f"{lng},{lat}" for lat, lng in waypoints)


def _result_ok(body: Any) -> bool:
    if not isinstance(body, dict):
        logger.error("Mapbox request did not return a body object")
        return False
    if body.get("code") != "Ok":
        logger.error("Mapbox response code was not Ok: %s", body.get("code"))
        return False
    routes = body.get("routes")
    if not routes:
        logger.error("Mapbox request did not return any routes")
        return False
    if not routes[0].get("legs"):
        logger.error("Mapbox request did not return any route legs")
        return False
    return True


def _log_uturns(legs: list[dict[str, Any]]) -> None:
    for leg in legs:
        for step in leg.get("steps", []):
            maneuver = step.get("maneuver") or {}
            if maneuver.get("modifier") == "uturn":
                logger.debug("U-turn detected: %s", maneuver)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def router_from_env() -> RoutingService:
    """Builds the routing adapter selected by ``ROUTING_PROVIDER``.

    Raises:
        RoutingConfigError: If the provider is unknown or cannot be
            constructed from the environment.
    """
    provider = os.environ.get("ROUTING_PROVIDER", "google").lower()
    budget = {
        "timeout_s": float(os.environ.get("ROUTING_TIMEOUT_S", DEFAULT_TIMEOUT_S)),
        "max_attempts": int(os.environ.get("ROUTING_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)),
        "backoff_s": float(os.environ.get("ROUTING_BACKOFF_S", DEFAULT_BACKOFF_S)),
    }
    if provider == "mapbox":
        return MapboxRouter(**budget)
    if provider != "google":
        raise RoutingConfigError(f"Unknown ROUTING_PROVIDER: {provider!r}")
    try:
        return DirectionsRouter(**budget)
    except ValueError as exc:
        # googlemaps.Client rejects a missing or malformed key.
        raise RoutingConfigError(f"Google Directions unavailable: {exc}") from exc
