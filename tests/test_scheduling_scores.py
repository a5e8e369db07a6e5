"""Tests for depth, downstream and scheduling score calculation."""

from __future__ import annotations

import pytest

from backlog.dependency_resolver import (
    build_dependency_graph,
    compute_depths,
    compute_downstream_counts,
    compute_scheduling_scores,
)


def feature(fid, priority=5, deps=None):
    return {"id": fid, "priority": priority, "dependencies": deps, "passes": False}


DIAMOND = [
    feature(1),
    feature(2, deps=[1]),
    feature(3, deps=[1]),
    feature(4, deps=[2, 3]),
]


class TestDepths:
    """Dependency-chain depth per feature."""

    def test_diamond(self) -> None:
        depths = compute_depths(build_dependency_graph(DIAMOND))
        assert depths == {1: 0, 2: 1, 3: 1, 4: 2}

    def test_missing_dependencies_ignored(self) -> None:
        depths = compute_depths(build_dependency_graph([feature(1, deps=[99])]))
        assert depths == {1: 0}

    def test_uses_longest_chain(self) -> None:
        features = [
            feature(1),
            feature(2, deps=[1]),
            feature(3, deps=[2]),
            feature(4, deps=[1, 3]),
        ]
        assert compute_depths(build_dependency_graph(features))[4] == 3

    def test_long_chain_does_not_recurse(self) -> None:
        features = [feature(i, deps=[i - 1] if i > 1 else None) for i in range(1, 5001)]
        depths = compute_depths(build_dependency_graph(features))
        assert depths[5000] == 4999

    def test_cycle_terminates(self) -> None:
        depths = compute_depths(build_dependency_graph([
            feature(1, deps=[2]),
            feature(2, deps=[1]),
        ]))
        assert set(depths) == {1, 2}


class TestDownstreamCounts:
    """Transitive unblock counts."""

    def test_diamond(self) -> None:
        graph = build_dependency_graph(DIAMOND)
        downstream = compute_downstream_counts(graph, compute_depths(graph))
        assert downstream == {1: 4, 2: 1, 3: 1, 4: 0}

    def test_chain(self) -> None:
        graph = build_dependency_graph([
            feature(1),
            feature(2, deps=[1]),
            feature(3, deps=[2]),
        ])
        downstream = compute_downstream_counts(graph, compute_depths(graph))
        assert downstream == {1: 2, 2: 1, 3: 0}


class TestSchedulingScores:
    """1000 * unblock + 100 * depth_score + 10 * priority_factor."""

    def test_empty(self) -> None:
        assert compute_scheduling_scores([]) == {}

    def test_single_feature(self) -> None:
        scores = compute_scheduling_scores([feature(1, priority=1)])
        assert scores == {1: pytest.approx(109.0)}

    def test_exact_scores(self) -> None:
        scores = compute_scheduling_scores([
            feature(1),
            feature(2),
            feature(3, deps=[1]),
            feature(4, deps=[1]),
            feature(5, deps=[2]),
        ])
        assert scores[1] == pytest.approx(1105.0)
        assert scores[2] == pytest.approx(605.0)
        assert scores[3] == pytest.approx(5.0)
        assert scores[4] == pytest.approx(5.0)
        assert scores[5] == pytest.approx(5.0)

    def test_more_downstream_scores_higher(self) -> None:
        scores = compute_scheduling_scores([
            feature(1),
            feature(2),
            feature(3, deps=[1]),
            feature(4, deps=[1]),
            feature(5, deps=[2]),
        ])
        assert scores[1] > scores[2]

    def test_depth_outweighs_priority(self) -> None:
        scores = compute_scheduling_scores([
            feature(1, priority=9),
            feature(2, priority=9),
            feature(3, priority=1, deps=[2]),
        ])
        # 3 is one level deep; 1 is a root
        assert scores[1] == pytest.approx(101.0)
        assert scores[3] == pytest.approx(9.0)

    def test_priority_factor_clamped(self) -> None:
        scores = compute_scheduling_scores([
            feature(1, priority=0),
            feature(2, priority=10),
            feature(3, priority=500),
        ])
        assert scores[1] == pytest.approx(110.0)
        assert scores[2] == pytest.approx(100.0)
        assert scores[3] == pytest.approx(100.0)

    def test_scores_within_bounds(self) -> None:
        features = DIAMOND + [feature(5, priority=1, deps=[4]), feature(6, deps=[2, 5])]
        for score in compute_scheduling_scores(features).values():
            assert 0 <= score <= 1110

    def test_cycle_still_scored(self) -> None:
        scores = compute_scheduling_scores([
            feature(1, deps=[2]),
            feature(2, deps=[1]),
            feature(3),
        ])
        assert set(scores) == {1, 2, 3}
