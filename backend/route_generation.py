"""Cycling route generation pipeline.

Builds a route of a requested length out of stored routes, segments and
activities ("fragments"), then lets an external routing service stitch the
chosen fragments together. Staged pipeline:

  1.  Load fragments from the store.
  2.  Feasibility filter: drop fragments that are too short, too long, or
      too far away to fit in a route of the requested distance.
      An optional radius filter also drops fragments leaving the circle of
      radius distance / 2 around the start.
  3.  Build two fragment graphs: explorative {routes, segments} and familiar
      {activities, routes}.
  4.  Randomized bounded-depth search for fragment combinations ("combos").
  5.  Reduce each combo list to the few closest to the requested distance.
  6.  Populate the retained combos with their full geometry.
  7.  Route every combo through the routing service ("candidates").
  8.  Score candidates by overlap with the user's visited geography and keep
      the most novel explorative and the most familiar candidate.
  9.  Materialise the survivors as routes; optionally ask Claude for a
      short narrative.

Every stage takes and returns a ``SynthesisState``; nothing is shared
between requests. Infeasibility at any stage flows through as empty
collections and ends in an empty result, never an exception.
"""

import asyncio
import logging
import math
import os
import random
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Sequence, TypeVar

from anthropic import AsyncAnthropic

import fragment_graph
from fragment_graph import Combo, FeasibleFragment, FragmentGraph
from fragment_store import FragmentStore, SpatialIndex, visited_geo_ids
from geo_utils import distance_between
from materializer import RouteRepository, build_route, materialize
from models import (
    Candidate,
    CandidatePart,
    Fragment,
    FragmentCriteria,
    FragmentKind,
    GeneratedRoute,
    GenerationResult,
    RouteQuery,
    RouteRating,
    UserProfile,
)
from routing_service import RoutingService, router_from_env

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Synthesis rules: every tuneable constant lives here.
# ---------------------------------------------------------------------------

# Claude model used for the optional route narrative.
NARRATIVE_MODEL: str = "claude-sonnet-4-6"

# -- Feasibility filter ----------------------------------------------------
# Fragments must be longer than this share of the target distance.
MIN_FRAGMENT_FRACTION: float = 0.1
# Lower bound may exceed the target by this share before a fragment is dropped.
LOWER_BOUND_SLACK: float = 0.1
# Optionally keep only fragments that stay within distance / 2 of the start.
RADIUS_FILTER_ENABLED: bool = False
# Share of a fragment's points between two radius checks.
RADIUS_FILTER_STRIDE: float = 0.1

# -- Combo reduction ------------------------------------------------------
KEEP_BEST_COMBOS: int = 3
# Explorative combos prefer more parts, then longer lower bounds.
PART_COUNT_WEIGHT: int = 1_000_000

# -- Candidate generation --------------------------------------------------
# Directions APIs accept at most 25 coordinates including start and end.
WAYPOINT_CAP: int = 25
KEEP_BEST_EXPLORATIVE: int = 2
KEEP_BEST_FAMILIAR: int = 1
# Route only until the first combo succeeds (the old behaviour).
STOP_AFTER_FIRST_CANDIDATE: bool = False

# -- Familiarity ----------------------------------------------------------
FAMILIARITY_SAMPLES: int = 25
FAMILIARITY_RADIUS_M: int = 280
FINAL_ROUTES_PER_MODE: int = 1

T = TypeVar("T")


@dataclass(frozen=True)
class SynthesisState:
    """Per-request accumulator passed from stage to stage."""

    query: RouteQuery
    fragments: tuple[Fragment, ...] = ()
    explorative: tuple[FeasibleFragment, ...] = ()
    familiar: tuple[FeasibleFragment, ...] = ()
    explorative_combos: tuple[Combo, ...] = ()
    familiar_combos: tuple[Combo, ...] = ()
    explorative_candidates: tuple[Candidate, ...] = ()
    familiar_candidates: tuple[Candidate, ...] = ()
    visited: frozenset[str] = field(default_factory=frozenset)

    @property
    def start(self) -> tuple[float, float]:
        return self.query.start.as_tuple()

    @property
    def end(self) -> tuple[float, float]:
        return self.query.end.as_tuple()


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


async def generate(
    query: RouteQuery,
    *,
    store: FragmentStore,
    spatial_index: SpatialIndex | None = None,
    router: RoutingService | None = None,
    repository: RouteRepository | None = None,
    claude_client: AsyncAnthropic | None = None,
    rng: random.Random | None = None,
) -> GenerationResult:
    """Generates cycling routes matching ``query`` out of stored fragments.

    Args:
        query: Start, end, target distance (metres) and preferences.
        store: Fragment store to read routes, segments and activities from.
        spatial_index: Geo-point radius lookup for familiarity scoring.
            Defaults to ``store`` when the store implements it.
        router: Routing service adapter. Built from ``ROUTING_PROVIDER`` if
            omitted, and only once there are combos to route.
        repository: Where generated routes are persisted. Routes are built
            but not persisted when omitted.
        claude_client: Optional Anthropic client for the route narrative.
            Created from ``ANTHROPIC_API_KEY`` if set; skipped otherwise.
        rng: Random source for the search jitter. Seeded from
            ``query.seed`` if omitted.

    Returns:
        A ``GenerationResult``; its route list is empty when no route could
        be assembled.
    """
    _index = spatial_index if spatial_index is not None else store
    _rng = rng or random.Random(query.seed)

    logger.info(
        "Route generation started: start=%s end=%s %.0fm preference=%s",
        query.start.as_tuple(),
        query.end.as_tuple(),
        query.distance,
        query.preference,
    )

    state = SynthesisState(query=query)
    state = await load_fragments(state, store)
    state = filter_fragments(state)
    if RADIUS_FILTER_ENABLED:
        state = await radius_filter(state, _index)
    state = search_combos(state, _rng)
    state = reduce_combos(state)
    state = await populate_combos(state, store)
    if state.explorative_combos or state.familiar_combos:
        state = await generate_candidates(state, router or router_from_env())
    state = replace(state, visited=await visited_geo_ids(store, query.user))
    state = await score_familiarity(state, _index)

    candidates = order_candidates(
        [*state.explorative_candidates, *state.familiar_candidates], query
    )
    if repository is not None:
        routes = [await materialize(c, repository) for c in candidates]
    else:
        routes = [build_route(c) for c in candidates]

    narrative = await _generate_narrative(claude_client, routes, query)

    logger.info("Route generation complete: %d route(s)", len(routes))
    return GenerationResult(
        query=query,
        routes=routes,
        ratings=[RouteRating(route_id=r.id) for r in routes],
        narrative=narrative,
    )


# ---------------------------------------------------------------------------
# Step 1-2: Load and feasibility filter
# ---------------------------------------------------------------------------


async def load_fragments(state: SynthesisState, store: FragmentStore) -> SynthesisState:
    """Reads every fragment the distance filter could keep."""
    target = state.query.distance
    fragments = await store.list(
        FragmentCriteria(
            min_distance=target * MIN_FRAGMENT_FRACTION,
            max_distance=target,
            kinds=list(FragmentKind),
        )
    )
    logger.info("Loaded %d fragments", len(fragments))
    return replace(state, fragments=tuple(fragments))


def distance_filter(fragments: Sequence[Fragment], target: float) -> list[Fragment]:
    """Keeps fragments with ``target/10 < distance < target``."""
    low = target * MIN_FRAGMENT_FRACTION
    kept = [f for f in fragments if low < f.distance < target]
    logger.debug(
        "%d of %d fragments after distance filter", len(kept), len(fragments)
    )
    return kept


def lower_bound_filter(
    fragments: Sequence[Fragment],
    start: tuple[float, float],
    target: float,
) -> list[FeasibleFragment]:
    """Keeps fragments whose lower-bound route distance fits the target.

    The lower bound is the fragment's own distance plus the great-circle
    distances from the query start to the fragment's start and end. Up to
    ``LOWER_BOUND_SLACK`` above the target is tolerated.
    """
    kept: list[FeasibleFragment] = []
    for fragment in fragments:
        if not fragment.points and (
            fragment.start_latlng is None or fragment.end_latlng is None
        ):
            logger.debug("Fragment %s has no endpoints", fragment.id)
            continue
        lower_bound = (
            fragment.distance
            + distance_between(start, fragment.start)
            + distance_between(start, fragment.end)
        )
        if lower_bound - LOWER_BOUND_SLACK * target > target:
            logger.debug(
                "Fragment %s too far: lower bound %.0fm", fragment.id, lower_bound
            )
            continue
        kept.append(FeasibleFragment(fragment, lower_bound))
    return kept


def _belongs_to(fragment: Fragment, user: UserProfile | None) -> bool:
    if user is None:
        return False
    return fragment.owner_id == user.id or fragment.id in user.activity_ids


def filter_fragments(state: SynthesisState) -> SynthesisState:
    """Applies both filters and splits survivors into the two search sets."""
    query = state.query
    feasible = lower_bound_filter(
        distance_filter(state.fragments, query.distance), state.start, query.distance
    )
    explorative = tuple(
        f for f in feasible
        if f.fragment.kind in (FragmentKind.ROUTE, FragmentKind.SEGMENT)
    )
    familiar = tuple(
        f for f in feasible
        if f.fragment.kind is FragmentKind.ROUTE
        or (f.fragment.is_activity and _belongs_to(f.fragment, query.user))
    )
    logger.info(
        "%d feasible fragments (%d explorative, %d familiar)",
        len(feasible),
        len(explorative),
        len(familiar),
    )
    return replace(state, explorative=explorative, familiar=familiar)


async def radius_filter(
    state: SynthesisState, spatial_index: SpatialIndex
) -> SynthesisState:
    """Drops fragments that leave the circle of radius ``distance / 2``.

    A single spatial query around the start returns every geo-point inside
    the circle; a fragment survives if every sampled point (each
    ``RADIUS_FILTER_STRIDE`` share of its points) is among them. Fragments
    without stored points are kept.
    """
    radius = state.query.distance / 2
    lat, lng = state.start
    inside = {
        geo.id for geo in await spatial_index.find_within_radius(lat, lng, radius)
    }

    def within(item: FeasibleFragment) -> bool:
        points = item.fragment.points
        stride = max(1, math.ceil(len(points) * RADIUS_FILTER_STRIDE))
        return all(p.id in inside for p in points[stride - 1 :: stride])

    explorative = tuple(f for f in state.explorative if within(f))
    familiar = tuple(f for f in state.familiar if within(f))
    logger.info(
        "%d explorative and %d familiar fragments inside %.0fm radius",
        len(explorative),
        len(familiar),
        radius,
    )
    return replace(state, explorative=explorative, familiar=familiar)


# ---------------------------------------------------------------------------
# Step 3-4: Graph build and search
# ---------------------------------------------------------------------------


def search_combos(state: SynthesisState, rng: random.Random) -> SynthesisState:
    """Builds the explorative and familiar graphs and searches both.

    Both searches draw from the same ``rng``, explorative first, so a seeded
    request always yields the same combos.
    """
    target = state.query.distance
    explorative_graph = FragmentGraph(state.explorative, state.start, state.end)
    familiar_graph = FragmentGraph(
        state.familiar, state.start, state.end, require_activity=True
    )
    return replace(
        state,
        explorative_combos=tuple(
            fragment_graph.search_paths(explorative_graph, target, rng=rng)
        ),
        familiar_combos=tuple(
            fragment_graph.search_paths(familiar_graph, target, rng=rng)
        ),
    )


# ---------------------------------------------------------------------------
# Step 5: Reduction
# ---------------------------------------------------------------------------


def trim_to_target(
    items: Sequence[T],
    target: float,
    keep_best: int,
    distance_of: Callable[[T], float],
) -> list[T]:
    """Trims a sorted list to ``keep_best`` items from both ends.

    Repeatedly compares how far the first and the last item are from
    ``target`` and drops the farther one (the last one on a tie).
    """
    kept = list(items)
    while len(kept) > keep_best:
        first_gap = abs(distance_of(kept[0]) - target)
        last_gap = abs(distance_of(kept[-1]) - target)
        if first_gap > last_gap:
            kept.pop(0)
        else:
            kept.pop()
    return kept


def reduce_combos(state: SynthesisState) -> SynthesisState:
    """Keeps the ``KEEP_BEST_COMBOS`` combos of each mode nearest the target.

    Explorative combos are ranked by part count first, then lower bound;
    familiar combos by lower bound alone.
    """
    target = state.query.distance
    explorative = sorted(
        state.explorative_combos,
        key=lambda c: len(c.parts) * PART_COUNT_WEIGHT + c.lower_bound_distance,
        reverse=True,
    )
    familiar = sorted(
        state.familiar_combos, key=lambda c: c.lower_bound_distance, reverse=True
    )

    def distance_of(combo: Combo) -> float:
        return combo.lower_bound_distance

    return replace(
        state,
        explorative_combos=tuple(
            trim_to_target(explorative, target, KEEP_BEST_COMBOS, distance_of)
        ),
        familiar_combos=tuple(
            trim_to_target(familiar, target, KEEP_BEST_COMBOS, distance_of)
        ),
    )


# ---------------------------------------------------------------------------
# Step 6: Populate
# ---------------------------------------------------------------------------


async def populate_combos(state: SynthesisState, store: FragmentStore) -> SynthesisState:
    """Attaches stored geometry to the parts of every retained combo.

    Search Nodes carry endpoints only; this is the first stage that reads
    fragment points. Combos referencing a fragment no longer in the store
    are dropped.
    """
    combos = [*state.explorative_combos, *state.familiar_combos]
    ids = sorted({n.fragment_id for c in combos for n in c.parts})
    if not ids:
        return state
    fragments = {f.id: f for f in await store.list(FragmentCriteria(ids=ids))}

    def populate(combo: Combo) -> Combo | None:
        parts = []
        for node in combo.parts:
            fragment = fragments.get(node.fragment_id)
            if fragment is None:
                logger.warning("Fragment %s vanished; dropping combo", node.fragment_id)
                return None
            parts.append(node.with_geometry(fragment.waypoints))
        return replace(combo, parts=tuple(parts))

    def populate_all(items: Sequence[Combo]) -> tuple[Combo, ...]:
        return tuple(c for c in map(populate, items) if c is not None)

    return replace(
        state,
        explorative_combos=populate_all(state.explorative_combos),
        familiar_combos=populate_all(state.familiar_combos),
    )


# ---------------------------------------------------------------------------
# Step 7: Candidate generation
# ---------------------------------------------------------------------------


def _downsample(points: Sequence[Any], stride: int) -> list[Any]:
    """Every ``stride``-th point, always keeping the first and last."""
    sampled = list(points[::stride])
    if (len(points) - 1) % stride:
        sampled.append(points[-1])
    return sampled


def build_waypoints(
    combo: Combo,
    start: tuple[float, float],
    end: tuple[float, float],
    cap: int = WAYPOINT_CAP,
) -> list[tuple[float, float]]:
    """Query start, each part's downsampled geometry, then the query end.

    The stride grows until the whole list fits into ``cap`` points; each
    part keeps at least its first and last point.
    """
    parts = [list(n.waypoints) or [n.start, n.end] for n in combo.parts]
    budget = cap - 2
    total = sum(len(p) for p in parts)
    longest = max((len(p) for p in parts), default=1)
    stride = max(1, math.ceil(total / max(1, budget - 2 * len(parts))))
    while True:
        sampled = [_downsample(p, stride) for p in parts]
        if sum(len(s) for s in sampled) <= budget or stride >= longest:
            break
        stride += 1
    return [start, *(point for part in sampled for point in part), end]


def _candidate_parts(combo: Combo) -> list[CandidatePart]:
    return [
        CandidatePart(fragment_id=n.fragment_id, kind=n.kind, forward=n.forward)
        for n in combo.parts
    ]


async def route_combo(
    router: RoutingService, combo: Combo, state: SynthesisState
) -> Candidate | None:
    """Routes one combo; None when the service cannot route it."""
    waypoints = build_waypoints(combo, state.start, state.end)
    try:
        routed = await router.find_route(waypoints)
    except Exception as exc:  # noqa: BLE001
        logger.error("Routing failed for combo of %d parts: %s", len(combo.parts), exc)
        return None
    if routed is None or routed.distance <= 0:
        logger.info("No route for combo of %d parts", len(combo.parts))
        return None
    return Candidate(
        distance=routed.distance,
        waypoints=routed.waypoints,
        parts=_candidate_parts(combo),
        familiar=combo.familiar,
    )


async def _route_all(
    router: RoutingService, combos: Sequence[Combo], state: SynthesisState
) -> list[Candidate]:
    if STOP_AFTER_FIRST_CANDIDATE:
        for combo in combos:
            candidate = await route_combo(router, combo, state)
            if candidate is not None:
                return [candidate]
        return []
    routed = await asyncio.gather(*(route_combo(router, c, state) for c in combos))
    return [c for c in routed if c is not None]


def dedupe_candidates(candidates: Sequence[Candidate]) -> list[Candidate]:
    """Keeps the first candidate of every distinct routed distance."""
    seen: set[float] = set()
    unique = []
    for candidate in candidates:
        if candidate.distance in seen:
            continue
        seen.add(candidate.distance)
        unique.append(candidate)
    return unique


def reduce_candidates(
    candidates: Sequence[Candidate], target: float, keep_best: int
) -> list[Candidate]:
    """Dedupes candidates by routed distance and trims to ``keep_best``.

    Args:
        candidates: Routed candidates of one mode.
        target: Requested distance in metres.
        keep_best: Number of candidates to retain.

    Returns:
        At most ``keep_best`` candidates, closest to ``target`` first.
    """
    ordered = sorted(
        dedupe_candidates(candidates), key=lambda c: abs(c.distance - target)
    )
    return trim_to_target(ordered, target, keep_best, lambda c: c.distance)


async def generate_candidates(
    state: SynthesisState, router: RoutingService
) -> SynthesisState:
    """Routes the populated combos of both modes and reduces the results."""
    target = state.query.distance
    explorative, familiar = await asyncio.gather(
        _route_all(router, state.explorative_combos, state),
        _route_all(router, state.familiar_combos, state),
    )
    explorative = reduce_candidates(explorative, target, KEEP_BEST_EXPLORATIVE)
    familiar = reduce_candidates(familiar, target, KEEP_BEST_FAMILIAR)
    logger.info(
        "%d explorative and %d familiar candidates", len(explorative), len(familiar)
    )
    return replace(
        state,
        explorative_candidates=tuple(explorative),
        familiar_candidates=tuple(familiar),
    )


# ---------------------------------------------------------------------------
# Step 8: Familiarity
# ---------------------------------------------------------------------------


async def familiarity_score(
    candidate: Candidate,
    spatial_index: SpatialIndex,
    visited: frozenset[str],
) -> float:
    """Share of sampled waypoints lying near a geo-point the user visited.

    Samples at most ``FAMILIARITY_SAMPLES`` evenly strided waypoints. A
    failed spatial query skips its sample.
    """
    if not candidate.waypoints or not visited:
        return 0.0
    stride = math.ceil(len(candidate.waypoints) / FAMILIARITY_SAMPLES)
    samples = candidate.waypoints[::stride]
    results = await asyncio.gather(
        *(
            spatial_index.find_within_radius(lat, lng, FAMILIARITY_RADIUS_M)
            for lat, lng in samples
        ),
        return_exceptions=True,
    )
    answered = 0
    hits = 0
    for result in results:
        if isinstance(result, Exception):
            logger.warning("Spatial query failed: %s", result)
            continue
        answered += 1
        if any(geo.id in visited for geo in result):
            hits += 1
    return hits / answered if answered else 0.0


async def score_familiarity(
    state: SynthesisState, spatial_index: SpatialIndex
) -> SynthesisState:
    """Scores every candidate; keeps the most novel explorative and the
    most familiar familiar candidate."""

    async def scored(candidates: Sequence[Candidate]) -> list[Candidate]:
        scores = await asyncio.gather(
            *(familiarity_score(c, spatial_index, state.visited) for c in candidates)
        )
        return [
            c.model_copy(update={"familiarity_score": s})
            for c, s in zip(candidates, scores)
        ]

    explorative = sorted(
        await scored(state.explorative_candidates),
        key=lambda c: c.familiarity_score,
    )
    familiar = sorted(
        await scored(state.familiar_candidates),
        key=lambda c: c.familiarity_score,
        reverse=True,
    )
    return replace(
        state,
        explorative_candidates=tuple(explorative[:FINAL_ROUTES_PER_MODE]),
        familiar_candidates=tuple(familiar[:FINAL_ROUTES_PER_MODE]),
    )


def order_candidates(
    candidates: Sequence[Candidate], query: RouteQuery
) -> list[Candidate]:
    """Orders the final candidates by the query's preference.

    discover  explorative first
    familiar  familiar first
    distance  closest to the target distance first
    """
    if query.preference == "familiar":
        return sorted(candidates, key=lambda c: not c.familiar)
    if query.preference == "distance":
        return sorted(candidates, key=lambda c: abs(c.distance - query.distance))
    return sorted(candidates, key=lambda c: c.familiar)


# ---------------------------------------------------------------------------
# Step 9: Narrative
# ---------------------------------------------------------------------------

_NARRATIVE_PROMPT = """\
You are writing a route description for a cycling app.

Route details:
- Distance: {distance_km:.1f} km (requested {target_km:.1f} km)
- Built from {n_parts} known routes, segments and rides
- Familiarity: {familiarity:.0%} of the route runs over roads the rider has \
ridden before
- Difficulty requested: {difficulty}

Write 2–3 sentences describing this route for the rider. Mention whether it
explores new ground or revisits familiar roads. Tone: direct, friendly, no
generic filler.
"""


async def _generate_narrative(
    claude_client: AsyncAnthropic | None,
    routes: Sequence[GeneratedRoute],
    query: RouteQuery,
) -> str:
    """Describes the first route with Claude; empty string when unavailable."""
    if not routes:
        return ""
    client = claude_client
    if client is None:
        api_key = os.environ.get("ANTHROPIC_API_KEY", "")
        if not api_key:
            return ""
        client = AsyncAnthropic(api_key=api_key)

    route = routes[0]
    prompt = _NARRATIVE_PROMPT.format(
        distance_km=route.distance / 1000,
        target_km=query.distance / 1000,
        n_parts=len(route.parts),
        familiarity=route.familiarity_score,
        difficulty=query.difficulty,
    )
    logger.info("Requesting route narrative from Claude")
    try:
        response = await client.messages.create(
            model=NARRATIVE_MODEL,
            max_tokens=300,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text.strip()
    except Exception:  # noqa: BLE001
        logger.exception("Narrative generation failed")
        return ""
