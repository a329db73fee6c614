"""Route synthesis backend service.

Exposes a health check and the route generation endpoint. The fragment
store is loaded from ``FRAGMENTS_PATH`` (a JSON array of fragments);
generated routes are kept in an in-memory repository for the lifetime of
the process.
"""

import logging
import os
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException

import route_generation
from fragment_store import InMemoryFragmentStore
from materializer import InMemoryRouteRepository
from models import GenerationResult, RouteQuery
from routing_service import RoutingService

logging.basicConfig(level=logging.INFO)

app = FastAPI(
    title="Route Synthesis Backend",
    description="Cycling routes assembled from known routes, segments and rides.",
    version="0.3.0",
)


@lru_cache(maxsize=1)
def get_store() -> InMemoryFragmentStore:
    path = os.environ.get("FRAGMENTS_PATH", "")
    if not path:
        logging.warning("FRAGMENTS_PATH not set; starting with an empty store")
        return InMemoryFragmentStore()
    return InMemoryFragmentStore.from_json(path)


@lru_cache(maxsize=1)
def get_repository() -> InMemoryRouteRepository:
    return InMemoryRouteRepository()


def get_router() -> RoutingService | None:
    """None lets the pipeline build the configured router once it has combos."""
    return None


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint used to verify the service is live."""
    return {"status": "ok"}


@app.post("/generate-route", response_model=GenerationResult)
async def generate_route(
    request: RouteQuery,
    store: InMemoryFragmentStore = Depends(get_store),
    repository: InMemoryRouteRepository = Depends(get_repository),
    router: RoutingService | None = Depends(get_router),
) -> GenerationResult:
    """Generates cycling routes of the requested distance.

    Runs the fragment pipeline: feasibility filter, graph search, combo
    reduction, routing-service candidates, familiarity scoring and
    materialisation.

    Args:
        request: ``RouteQuery`` with start, end, distance in metres,
            preference, difficulty and the optional requesting user.

    Returns:
        ``GenerationResult`` with the generated routes (possibly none),
        rating placeholders and an optional narrative.

    Raises:
        HTTPException 400: If the query cannot be processed.
        HTTPException 502: If the store fails or the routing provider is
            misconfigured.
    """
    try:
        return await route_generation.generate(
            request,
            store=store,
            router=router,
            repository=repository,
        )
    except HTTPException:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logging.exception("route_generation.generate failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to generate a route. Please try again.",
        ) from exc
