"""Fragment graph construction and randomized bounded-depth path search.

Every feasible fragment becomes two directed Nodes (forward and inverse).
The graph connects a synthetic Start node to every Node, every Node to a
synthetic End node, and every Node to every other Node except its own
inverse. The graph is a networkx DiGraph; edge weights are great-circle gaps
between one Node's end and the next Node's start.

The search runs ``SEARCH_TRIALS`` independent depth-first trials from Start
to End. Each trial uses slightly different depth bounds, and between trials
the successor lists are re-sorted with a random jitter so that the trials
surface different combinations instead of the single best-first path.
"""

import logging
import math
import random
from dataclasses import dataclass, replace
from typing import Iterable

import networkx as nx

from geo_utils import LatLngTuple, distance_between
from models import Fragment, FragmentKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Search rules
# ---------------------------------------------------------------------------

SEARCH_TRIALS: int = 10
# Completed paths accepted per trial before the trial stops.
STOP_AFTER: int = 1
# Upper bound for a trial's max depth before the per-trial offset is added.
MAX_DEPTH_CAP: int = 6
# Trials cycle through this many depth offsets.
DEPTH_CYCLE: int = 3
# One extra leg per 20 km of target distance, clamped to [1, 3].
DEPTH_STEP_M: int = 20_000
JITTER_RANGE: tuple[float, float] = (0.9, 1.1)
# Every n-th trial re-sorts all successor lists, the others only Start's.
GRAPH_WIDE_RESORT_EVERY: int = 3
# Edge expansions allowed in a single trial; None disables the limit.
MAX_EXPANSIONS_PER_TRIAL: int | None = 20_000_000

START_ID = "start"
END_ID = "end"


@dataclass(frozen=True)
class FeasibleFragment:
    """A fragment that passed the feasibility filter, with its lower bound."""

    fragment: Fragment
    lower_bound_distance: float


@dataclass(frozen=True)
class Node:
    """A directed traversal of one fragment, or a Start/End pseudo-node."""

    id: str
    start: LatLngTuple
    end: LatLngTuple
    distance: float = 0.0
    lower_bound_distance: float = 0.0
    kind: FragmentKind | None = None
    fragment_id: str | None = None
    forward: bool = True
    inverse_id: str | None = None
    # Empty until with_geometry() populates a surviving combo.
    waypoints: tuple[LatLngTuple, ...] = ()

    @property
    def is_activity(self) -> bool:
        return self.kind is FragmentKind.ACTIVITY

    def with_geometry(self, points: Iterable[LatLngTuple]) -> "Node":
        """Returns a copy carrying ``points`` in this node's direction."""
        points = tuple(points)
        return replace(
            self, waypoints=points if self.forward else tuple(reversed(points))
        )


@dataclass(frozen=True)
class Combo:
    """A Start-to-End path through fragment Nodes."""

    parts: tuple[Node, ...]
    lower_bound_distance: float
    familiar: bool = False
    min_depth: int = 0
    max_depth: int = 0


def build_nodes(feasible: FeasibleFragment) -> tuple[Node, Node]:
    """Returns the forward and inverse Node of a fragment.

    Nodes carry endpoints only; geometry is attached later by
    :meth:`Node.with_geometry` for the combos that survive reduction.
    """
    fragment = feasible.fragment
    forward_id = f"{fragment.id}:fwd"
    inverse_id = f"{fragment.id}:inv"
    forward = Node(
        id=forward_id,
        start=fragment.start,
        end=fragment.end,
        distance=fragment.distance,
        lower_bound_distance=feasible.lower_bound_distance,
        kind=fragment.kind,
        fragment_id=fragment.id,
        forward=True,
        inverse_id=inverse_id,
    )
    inverse = Node(
        id=inverse_id,
        start=fragment.end,
        end=fragment.start,
        distance=fragment.distance,
        lower_bound_distance=feasible.lower_bound_distance,
        kind=fragment.kind,
        fragment_id=fragment.id,
        forward=False,
        inverse_id=forward_id,
    )
    return forward, inverse


class FragmentGraph:
    """Dense weighted digraph over the Nodes of one fragment set.

    Each graph node stores its :class:`Node` under the ``"node"`` attribute;
    each edge stores the gap in metres from one Node's end to the next
    Node's start under ``"weight"``.

    Args:
        feasible: Fragments surviving the feasibility filter.
        start: Requested start coordinate.
        end: Requested end coordinate.
        require_activity: Only accept paths containing an activity Node
            (the "familiar" graph).
        max_edge_m: Optional spatial pre-filter; Node-to-Node edges longer
            than this are not created. Start and End edges are always kept.
    """

    def __init__(
        self,
        feasible: Iterable[FeasibleFragment],
        start: LatLngTuple,
        end: LatLngTuple,
        *,
        require_activity: bool = False,
        max_edge_m: float | None = None,
    ):
        self.require_activity = require_activity
        self.graph = nx.DiGraph()
        self.graph.add_node(START_ID, node=Node(id=START_ID, start=start, end=start))
        self.graph.add_node(END_ID, node=Node(id=END_ID, start=end, end=end))

        nodes = [node for item in feasible for node in build_nodes(item)]
        for node in nodes:
            self.graph.add_node(node.id, node=node)

        for node in nodes:
            self.graph.add_edge(
                START_ID, node.id, weight=distance_between(start, node.start)
            )
        for node in nodes:
            for other in nodes:
                if other.id == node.id or other.id == node.inverse_id:
                    continue
                gap = distance_between(node.end, other.start)
                if max_edge_m is not None and gap > max_edge_m:
                    continue
                self.graph.add_edge(node.id, other.id, weight=gap)
            self.graph.add_edge(node.id, END_ID, weight=distance_between(node.end, end))

        logger.debug(
            "Built graph: %d nodes, %d edges (require_activity=%s)",
            self.graph.number_of_nodes(),
            self.graph.number_of_edges(),
            require_activity,
        )

    @property
    def fragment_nodes(self) -> list[Node]:
        """Fragment Nodes in insertion order, without Start and End."""
        return [
            data["node"]
            for node_id, data in self.graph.nodes(data=True)
            if node_id not in (START_ID, END_ID)
        ]

    def node(self, node_id: str) -> Node:
        return self.graph.nodes[node_id]["node"]

    def has_edge(self, from_id: str, to_id: str) -> bool:
        return self.graph.has_edge(from_id, to_id)

    def weight(self, from_id: str, to_id: str) -> float:
        return self.graph[from_id][to_id]["weight"]

    def initial_order(self) -> dict[str, list[str]]:
        """Successor ids of every node, sorted by lower bound descending."""
        return {
            node_id: sorted(
                self.graph.successors(node_id),
                key=lambda succ: self.node(succ).lower_bound_distance,
                reverse=True,
            )
            for node_id in self.graph.nodes
        }


# ---------------------------------------------------------------------------
# Trial parameters
# ---------------------------------------------------------------------------


def base_min_depth(target_distance: float) -> int:
    """Minimum number of legs for the first trial; longer routes need more."""
    extra = min(max(math.floor(target_distance / DEPTH_STEP_M), 1), 3)
    return 2 + extra


def trial_depths(base: int, trial: int) -> tuple[int, int]:
    """Returns (min_depth, max_depth) for the given trial index."""
    offset = trial % DEPTH_CYCLE
    min_depth = base + offset
    max_depth = min(math.ceil(1.5 * min_depth), MAX_DEPTH_CAP) + offset
    return min_depth, max_depth


def jitter_resort(
    graph: FragmentGraph,
    order: dict[str, list[str]],
    rng: random.Random,
    *,
    graph_wide: bool,
) -> None:
    """Re-sorts successor lists in ``order`` by jittered lower bound, descending."""
    low, high = JITTER_RANGE
    node_ids = list(order) if graph_wide else [START_ID]
    for node_id in node_ids:
        jittered = {
            succ: graph.node(succ).lower_bound_distance * rng.uniform(low, high)
            for succ in order[node_id]
        }
        order[node_id].sort(key=jittered.__getitem__, reverse=True)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def search_trial(
    graph: FragmentGraph,
    order: dict[str, list[str]],
    target_distance: float,
    min_depth: int,
    max_depth: int,
    *,
    stop_after: int = STOP_AFTER,
    max_expansions: int | None = MAX_EXPANSIONS_PER_TRIAL,
) -> list[Combo]:
    """Runs one bounded depth-first search from Start to End.

    A branch is pruned when its cumulative distance plus the next edge and
    the next Node's own distance reaches ``target_distance``, when it would
    exceed ``max_depth`` Nodes, or once ``stop_after`` paths were found.
    A trial also ends after ``max_expansions`` edge expansions (unbounded
    when None).
    Visited Nodes are tracked per path and released on backtrack.
    """
    found: list[Combo] = []
    expansions = 0
    budget = math.inf if max_expansions is None else max_expansions

    def visit(
        node_id: str, path: list[Node], visited: set[str], cumulative: float
    ) -> None:
        nonlocal expansions
        for succ_id in order[node_id]:
            if len(found) >= stop_after or expansions >= budget:
                return
            expansions += 1
            succ = graph.node(succ_id)
            total = cumulative + graph.weight(node_id, succ_id) + succ.distance
            if total >= target_distance:
                continue
            if succ_id == END_ID:
                if len(path) >= min_depth and (
                    not graph.require_activity
                    or any(n.is_activity for n in path)
                ):
                    found.append(
                        Combo(
                            parts=tuple(path),
                            lower_bound_distance=total,
                            familiar=graph.require_activity,
                            min_depth=min_depth,
                            max_depth=max_depth,
                        )
                    )
                continue
            if succ_id in visited or len(path) >= max_depth:
                continue
            visited.add(succ_id)
            path.append(succ)
            visit(succ_id, path, visited, total)
            path.pop()
            visited.discard(succ_id)

    visit(START_ID, [], set(), 0.0)
    if expansions >= budget and not found:
        logger.warning(
            "Trial exhausted its expansion budget (%d) without a path", budget
        )
    return found


def dedupe_by_distance(combos: Iterable[Combo]) -> list[Combo]:
    """Keeps the first combo of every distinct cumulative distance."""
    seen: set[float] = set()
    unique: list[Combo] = []
    for combo in combos:
        if combo.lower_bound_distance in seen:
            continue
        seen.add(combo.lower_bound_distance)
        unique.append(combo)
    return unique


def search_paths(
    graph: FragmentGraph,
    target_distance: float,
    *,
    rng: random.Random | None = None,
    trials: int = SEARCH_TRIALS,
) -> list[Combo]:
    """Runs all randomized trials on ``graph`` and returns deduplicated combos.

    The graph itself is never mutated; successor ordering lives in a
    per-call copy so one graph can be searched concurrently.
    """
    rng = rng or random.Random()
    if not graph.fragment_nodes:
        return []

    order = graph.initial_order()
    base = base_min_depth(target_distance)
    combos: list[Combo] = []
    for trial in range(trials):
        if trial > 0:
            jitter_resort(
                graph,
                order,
                rng,
                graph_wide=trial % GRAPH_WIDE_RESORT_EVERY == 0,
            )
        min_depth, max_depth = trial_depths(base, trial)
        found = search_trial(graph, order, target_distance, min_depth, max_depth)
        logger.debug(
            "Trial %d (depth %d-%d): %d path(s)",
            trial,
            min_depth,
            max_depth,
            len(found),
        )
        combos.extend(found)

    unique = dedupe_by_distance(combos)
    logger.info(
        "Search found %d combos (%d before dedup, familiar=%s)",
        len(unique),
        len(combos),
        graph.require_activity,
    )
    return unique
