"""Tests for fragment_graph.py: node construction, graph edges and search."""

import math
import random

import networkx as nx
import pytest

import fragment_graph
from fragment_graph import (
    END_ID,
    START_ID,
    Combo,
    FeasibleFragment,
    FragmentGraph,
    Node,
)
from geo_utils import distance_between, offset_m
from models import Fragment, FragmentKind, GeoPoint

# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

_START = (49.23, 7.00)
_SIDE_M = 2500


def _line(fragment_id, a, b, kind=FragmentKind.ROUTE, owner_id=None, n=6):
    """A straight fragment from a to b with n evenly spaced points."""
    points = [
        GeoPoint(
            id=f"{fragment_id}:{i}",
            lat=a[0] + (b[0] - a[0]) * i / (n - 1),
            lng=a[1] + (b[1] - a[1]) * i / (n - 1),
            fragment_ids=[fragment_id],
        )
        for i in range(n)
    ]
    return Fragment(
        id=fragment_id,
        title=fragment_id,
        kind=kind,
        distance=distance_between(a, b),
        points=points,
        owner_id=owner_id,
    )


def _square():
    """Four 2.5km fragments forming a square with one corner at _START."""
    a = _START
    b = offset_m(a, 0, _SIDE_M)
    c = offset_m(a, _SIDE_M, _SIDE_M)
    d = offset_m(a, _SIDE_M, 0)
    return [
        _line("ab", a, b),
        _line("bc", b, c),
        _line("cd", c, d),
        _line("da", d, a, kind=FragmentKind.ACTIVITY, owner_id="u1"),
    ]


def _feasible(fragments):
    return [
        FeasibleFragment(
            f,
            f.distance
            + distance_between(_START, f.start)
            + distance_between(_START, f.end),
        )
        for f in fragments
    ]


# ---------------------------------------------------------------------------
# Unit tests: build_nodes
# ---------------------------------------------------------------------------


def test_build_nodes_inverse_swaps_endpoints():
    fragment = _square()[0]
    forward, inverse = fragment_graph.build_nodes(FeasibleFragment(fragment, 5000))
    assert forward.start == inverse.end
    assert forward.end == inverse.start
    assert forward.inverse_id == inverse.id
    assert inverse.inverse_id == forward.id
    assert forward.forward and not inverse.forward


def test_build_nodes_share_distance_and_lower_bound():
    fragment = _square()[1]
    forward, inverse = fragment_graph.build_nodes(FeasibleFragment(fragment, 8000))
    assert forward.distance == inverse.distance == fragment.distance
    assert forward.lower_bound_distance == inverse.lower_bound_distance == 8000


def test_build_nodes_carry_no_geometry_until_populated():
    fragment = _square()[2]
    forward, inverse = fragment_graph.build_nodes(FeasibleFragment(fragment, 1))
    assert forward.waypoints == inverse.waypoints == ()
    populated = inverse.with_geometry(fragment.waypoints)
    assert populated.waypoints == tuple(reversed(fragment.waypoints))
    assert forward.with_geometry(fragment.waypoints).waypoints == tuple(
        fragment.waypoints
    )


def test_with_geometry_respects_direction():
    node = Node(id="x:inv", start=(0, 0), end=(1, 1), forward=False)
    populated = node.with_geometry([(0, 0), (1, 1), (2, 2)])
    assert populated.waypoints == ((2, 2), (1, 1), (0, 0))


# ---------------------------------------------------------------------------
# Unit tests: FragmentGraph
# ---------------------------------------------------------------------------


def test_graph_has_two_nodes_per_fragment():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    assert len(graph.fragment_nodes) == 8
    assert graph.graph.number_of_nodes() == 10


def test_graph_stores_nodes_and_weights_as_attributes():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    assert isinstance(graph.graph, nx.DiGraph)
    assert graph.graph.nodes["bc:inv"]["node"].fragment_id == "bc"
    assert graph.graph["ab:fwd"]["bc:fwd"]["weight"] == graph.weight("ab:fwd", "bc:fwd")
    assert not graph.graph.has_edge(END_ID, START_ID)


def test_graph_never_links_node_to_its_inverse():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    for node in graph.fragment_nodes:
        assert not graph.has_edge(node.id, node.inverse_id)
        assert not graph.has_edge(node.id, node.id)


def test_graph_connects_start_and_end_to_every_node():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    for node in graph.fragment_nodes:
        assert graph.has_edge(START_ID, node.id)
        assert graph.has_edge(node.id, END_ID)


def test_graph_edge_weight_is_gap_between_end_and_start():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    ab = graph.node("ab:fwd")
    bc = graph.node("bc:fwd")
    assert graph.weight("ab:fwd", "bc:fwd") == pytest.approx(
        distance_between(ab.end, bc.start)
    )
    assert graph.weight("ab:fwd", "bc:fwd") < 1


def test_graph_max_edge_prefilter_drops_long_edges_only():
    graph = FragmentGraph(_feasible(_square()), _START, _START, max_edge_m=100)
    # ab ends at b; cd starts at c, 2.5km away.
    assert not graph.has_edge("ab:fwd", "cd:fwd")
    assert graph.has_edge("ab:fwd", "bc:fwd")
    assert graph.has_edge(START_ID, "cd:fwd")
    assert graph.has_edge("cd:fwd", END_ID)


def test_initial_order_sorts_by_lower_bound_descending():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    order = graph.initial_order()[START_ID]
    bounds = [graph.node(n).lower_bound_distance for n in order]
    assert bounds == sorted(bounds, reverse=True)


# ---------------------------------------------------------------------------
# Unit tests: trial parameters
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "distance, expected",
    [(5_000, 3), (10_000, 3), (40_000, 4), (60_000, 5), (200_000, 5)],
)
def test_base_min_depth_scales_with_distance(distance, expected):
    assert fragment_graph.base_min_depth(distance) == expected


def test_trial_depths_cycle_through_offsets():
    assert fragment_graph.trial_depths(3, 0) == (3, 5)
    assert fragment_graph.trial_depths(3, 1) == (4, 7)
    assert fragment_graph.trial_depths(3, 2) == (5, 8)
    assert fragment_graph.trial_depths(3, 3) == (3, 5)


def test_jitter_resort_only_touches_start_when_not_graph_wide():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    order = graph.initial_order()
    before = {k: list(v) for k, v in order.items()}
    fragment_graph.jitter_resort(graph, order, random.Random(1), graph_wide=False)
    for node in graph.fragment_nodes:
        assert order[node.id] == before[node.id]
    assert sorted(order[START_ID]) == sorted(before[START_ID])


class _RecordingRandom(random.Random):
    """random.Random that remembers every jitter factor it hands out."""

    def __init__(self, seed):
        super().__init__(seed)
        self.calls = []

    def uniform(self, a, b):
        value = super().uniform(a, b)
        self.calls.append((a, b, value))
        return value


def test_jitter_resort_graph_wide_reorders_other_successor_lists():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    before = graph.initial_order()
    changed = []
    for seed in range(10):
        order = graph.initial_order()
        fragment_graph.jitter_resort(graph, order, random.Random(seed), graph_wide=True)
        changed.append(
            any(order[n.id] != before[n.id] for n in graph.fragment_nodes)
        )
        for node_id, successors in order.items():
            assert sorted(successors) == sorted(before[node_id])
    assert any(changed)


def test_jitter_factors_stay_within_range():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    order = graph.initial_order()

    rng = _RecordingRandom(4)
    fragment_graph.jitter_resort(graph, order, rng, graph_wide=False)
    assert len(rng.calls) == len(order[START_ID])

    rng = _RecordingRandom(4)
    fragment_graph.jitter_resort(graph, order, rng, graph_wide=True)
    assert len(rng.calls) == sum(len(s) for s in order.values())
    for low, high, value in rng.calls:
        assert (low, high) == (0.9, 1.1)
        assert 0.9 <= value <= 1.1


def test_search_paths_resorts_graph_wide_every_third_trial(monkeypatch):
    calls = []
    real_resort = fragment_graph.jitter_resort

    def spy(graph, order, rng, *, graph_wide):
        calls.append(graph_wide)
        real_resort(graph, order, rng, graph_wide=graph_wide)

    monkeypatch.setattr(fragment_graph, "jitter_resort", spy)
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    fragment_graph.search_paths(graph, 20_000, rng=random.Random(2))

    # Trial 0 keeps the initial order; trials 3, 6 and 9 re-sort everything.
    assert len(calls) == fragment_graph.SEARCH_TRIALS - 1
    graph_wide_trials = [trial for trial, wide in enumerate(calls, start=1) if wide]
    assert graph_wide_trials == [3, 6, 9]


# ---------------------------------------------------------------------------
# Unit tests: search
# ---------------------------------------------------------------------------


def test_search_combos_respect_depth_and_distance_bounds():
    target = 20_000
    graph = FragmentGraph(_feasible(_square()[:3]), _START, _START)
    combos = fragment_graph.search_paths(graph, target, rng=random.Random(7))
    assert combos
    for combo in combos:
        assert combo.min_depth <= len(combo.parts) <= combo.max_depth
        assert combo.lower_bound_distance < target
        ids = [n.id for n in combo.parts]
        assert len(ids) == len(set(ids))


def test_search_combos_never_traverse_node_then_inverse():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    combos = fragment_graph.search_paths(graph, 20_000, rng=random.Random(3))
    for combo in combos:
        for prev, curr in zip(combo.parts, combo.parts[1:]):
            assert curr.id != prev.inverse_id


def test_familiar_search_requires_an_activity():
    graph = FragmentGraph(
        _feasible(_square()), _START, _START, require_activity=True
    )
    combos = fragment_graph.search_paths(graph, 20_000, rng=random.Random(11))
    assert combos
    for combo in combos:
        assert combo.familiar
        assert any(n.is_activity for n in combo.parts)


def test_familiar_search_without_activities_finds_nothing():
    graph = FragmentGraph(
        _feasible(_square()[:3]), _START, _START, require_activity=True
    )
    assert fragment_graph.search_paths(graph, 20_000, rng=random.Random(1)) == []


def test_search_is_reproducible_with_same_seed():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    first = fragment_graph.search_paths(graph, 20_000, rng=random.Random(42))
    second = fragment_graph.search_paths(graph, 20_000, rng=random.Random(42))
    assert [[n.id for n in c.parts] for c in first] == [
        [n.id for n in c.parts] for c in second
    ]


def test_search_on_single_fragment_returns_no_combos():
    """Two Nodes cannot form a three-leg path."""
    a = offset_m(_START, 300, 0)
    b = offset_m(_START, 300, 2000)
    graph = FragmentGraph(_feasible([_line("solo", a, b)]), _START, _START)
    assert len(graph.fragment_nodes) == 2
    assert fragment_graph.search_paths(graph, 10_000, rng=random.Random(0)) == []


def test_search_on_empty_graph_returns_no_combos():
    graph = FragmentGraph([], _START, _START)
    assert fragment_graph.search_paths(graph, 10_000) == []


def test_search_trial_stops_after_quota():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    found = fragment_graph.search_trial(
        graph, graph.initial_order(), 20_000, 3, 5, stop_after=1
    )
    assert len(found) == 1


def test_search_trial_prunes_paths_reaching_target():
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    # Three 2.5km legs cannot stay under 7km.
    found = fragment_graph.search_trial(graph, graph.initial_order(), 7_000, 3, 5)
    assert found == []


def test_dedupe_by_distance_keeps_first_occurrence():
    a = Node(id="a", start=(0, 0), end=(0, 0))
    b = Node(id="b", start=(0, 0), end=(0, 0))
    first = Combo(parts=(a,), lower_bound_distance=1000.0)
    duplicate = Combo(parts=(b,), lower_bound_distance=1000.0)
    other = Combo(parts=(b,), lower_bound_distance=1200.0)
    assert fragment_graph.dedupe_by_distance([first, duplicate, other]) == [
        first,
        other,
    ]


def _spokes(length_m=4500, count=8):
    """Fragments radiating from _START like wheel spokes."""
    fragments = []
    for i in range(count):
        angle = 2 * math.pi * i / count
        tip = offset_m(_START, length_m * math.cos(angle), length_m * math.sin(angle))
        fragments.append(_line(f"spoke{i}", _START, tip))
    return fragments


def test_expansion_budget_ends_trial_early(caplog):
    graph = FragmentGraph(_feasible(_square()), _START, _START)
    found = fragment_graph.search_trial(
        graph, graph.initial_order(), 20_000, 3, 5, max_expansions=2
    )
    assert found == []
    assert "expansion budget" in caplog.text


def test_default_budget_matches_unbounded_search_on_sixteen_nodes():
    graph = FragmentGraph(_feasible(_spokes()), _START, _START)
    assert len(graph.fragment_nodes) == 16
    # Depth 6-8 is what a 40km request uses in its sixth trial.
    budgeted = fragment_graph.search_trial(
        graph, graph.initial_order(), 40_000, 6, 8
    )
    unbounded = fragment_graph.search_trial(
        graph, graph.initial_order(), 40_000, 6, 8, max_expansions=None
    )
    assert unbounded
    assert [[n.id for n in c.parts] for c in budgeted] == [
        [n.id for n in c.parts] for c in unbounded
    ]
