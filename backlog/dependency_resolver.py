"""
Dependency Resolver
===================

Dependency graph analysis for the feature backlog.

Provides topological ordering (Kahn's algorithm with priority tie-breaking),
cycle detection, readiness classification, dependency validation and
scheduling scores.

Every function takes a snapshot - the list of feature dicts produced by
``Feature.to_dict()`` - and rebuilds its own working structures from it.
Nothing is cached between calls, so concurrent writers to the store can never
leave a stale graph behind.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Optional, TypedDict

logger = logging.getLogger(__name__)

# Security: Prevent DoS via excessive dependencies
MAX_DEPENDENCIES = 20
MAX_DEPENDENCIES_PER_FEATURE = MAX_DEPENDENCIES
MAX_DEPENDENCY_DEPTH = 50  # Traversals deeper than this assume a cycle
MAX_FEATURES = 10000

# Matches the column default in the feature store
DEFAULT_PRIORITY = 999

# Score weights: unblocking potential > depth > declared priority
UNBLOCK_WEIGHT = 1000
DEPTH_WEIGHT = 100
PRIORITY_WEIGHT = 10
PRIORITY_CLAMP = 10

_GRAY = 1
_BLACK = 2


class FeatureNode(TypedDict, total=False):
    """The fields of a feature dict the resolver reads. Other keys are ignored."""

    id: int
    priority: int
    dependencies: Optional[list[int]]
    passes: bool
    in_progress: bool


class DependencyResult(TypedDict):
    """Result from dependency resolution."""

    ordered_features: list[int]
    circular_dependencies: list[list[int]]
    blocked_features: dict[int, list[int]]  # feature_id -> [blocking_ids]
    missing_dependencies: dict[int, list[int]]  # feature_id -> [missing_ids]


@dataclass(frozen=True)
class DependencyGraph:
    """Adjacency maps derived from one snapshot.

    Every map has an entry for every feature id in the snapshot. Dependency ids
    that are not in the snapshot only show up in ``missing``.
    """

    nodes: dict[int, dict]
    adjacency: dict[int, list[int]]  # dependency -> dependents
    parents: dict[int, list[int]]  # feature -> present dependencies
    in_degree: dict[int, int]
    missing: dict[int, list[int]]

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)


@dataclass(frozen=True)
class ReadinessReport:
    """Partition of a snapshot into ready, blocked and satisfied features."""

    ready: list[int]
    blocked: dict[int, list[int]]  # feature_id -> [blocking_ids]
    satisfied: list[int]


def _dependencies_of(feature: dict) -> list[int]:
    # NULL/empty dependencies are stored as None
    return feature.get("dependencies") or []


def _priority_of(feature: dict) -> int:
    priority = feature.get("priority")
    return DEFAULT_PRIORITY if priority is None else priority


def _passing_ids(features: list[dict]) -> set[int]:
    return {f["id"] for f in features if f.get("passes")}


def build_dependency_graph(features: list[dict]) -> DependencyGraph:
    """Build adjacency, reverse adjacency and in-degree maps for a snapshot.

    A dependency listed twice on the same feature contributes a single edge.

    Raises:
        ValueError: If two features in the snapshot share an id.
    """
    nodes: dict[int, dict] = {}
    for feature in features:
        if feature["id"] in nodes:
            raise ValueError(f"Duplicate feature id in snapshot: {feature['id']}")
        nodes[feature["id"]] = feature

    adjacency: dict[int, list[int]] = {fid: [] for fid in nodes}
    parents: dict[int, list[int]] = {fid: [] for fid in nodes}
    in_degree = {fid: 0 for fid in nodes}
    missing: dict[int, list[int]] = {}

    for feature in features:
        fid = feature["id"]
        seen: set[int] = set()
        for dep_id in _dependencies_of(feature):
            if dep_id in seen:
                continue
            seen.add(dep_id)
            if dep_id not in nodes:
                missing.setdefault(fid, []).append(dep_id)
                continue
            adjacency[dep_id].append(fid)
            parents[fid].append(dep_id)
            in_degree[fid] += 1

    return DependencyGraph(
        nodes=nodes,
        adjacency=adjacency,
        parents=parents,
        in_degree=in_degree,
        missing=missing,
    )


def resolve_dependencies(features: list[dict]) -> DependencyResult:
    """Topological sort using Kahn's algorithm with priority-aware ordering.

    Ready nodes are taken from a min-heap keyed on ``(priority, id)`` so the
    order is deterministic. Features that cannot be sorted (members of a cycle
    or downstream of one) are appended after the sorted prefix in input order,
    so every feature id appears exactly once. Their position at the tail is
    not a scheduling position.

    Args:
        features: List of feature dicts with id, priority, passes and dependencies

    Returns:
        DependencyResult with ordered feature ids, circular_dependencies,
        blocked_features and missing_dependencies
    """
    graph = build_dependency_graph(features)
    passing_ids = _passing_ids(features)

    blocked: dict[int, list[int]] = {}
    for fid, dep_ids in graph.parents.items():
        blocking = [d for d in dep_ids if d not in passing_ids]
        if blocking:
            blocked[fid] = blocking

    in_degree = dict(graph.in_degree)
    heap = [
        (_priority_of(graph.nodes[fid]), fid)
        for fid, degree in in_degree.items()
        if degree == 0
    ]
    heapq.heapify(heap)
    ordered: list[int] = []

    while heap:
        _, fid = heapq.heappop(heap)
        ordered.append(fid)
        for dependent_id in graph.adjacency[fid]:
            in_degree[dependent_id] -= 1
            if in_degree[dependent_id] == 0:
                heapq.heappush(
                    heap, (_priority_of(graph.nodes[dependent_id]), dependent_id)
                )

    cycles: list[list[int]] = []
    if len(ordered) < len(graph):
        placed = set(ordered)
        remaining = [f["id"] for f in features if f["id"] not in placed]
        cycles = _detect_cycles(remaining, graph)
        logger.debug(
            "%d of %d features could not be sorted, %d cycle(s) found",
            len(remaining), len(graph), len(cycles),
        )
        ordered.extend(remaining)

    return {
        "ordered_features": ordered,
        "circular_dependencies": cycles,
        "blocked_features": blocked,
        "missing_dependencies": {fid: list(ids) for fid, ids in graph.missing.items()},
    }


def _detect_cycles(node_ids: list[int], graph: DependencyGraph) -> list[list[int]]:
    """Detect cycles among ``node_ids`` using DFS with gray/black colouring.

    Only dependency edges between nodes of the subset are followed. Each cycle
    is reported closed, e.g. ``[1, 3, 5, 1]``. After a back-edge is found the
    node that closed it is not explored further.

    A path longer than MAX_DEPENDENCY_DEPTH is reported as if it were a cycle
    (the chain up to the cut-off, not closed) rather than raising.
    """
    subset = set(node_ids)
    color: dict[int, int] = {}
    cycles: list[list[int]] = []

    def deps_in_subset(fid: int) -> list[int]:
        return [d for d in graph.parents.get(fid, []) if d in subset]

    for root in node_ids:
        if root in color:
            continue
        color[root] = _GRAY
        path = [root]
        stack = [iter(deps_in_subset(root))]

        while stack:
            dep_id = next(stack[-1], None)
            if dep_id is None:
                color[path.pop()] = _BLACK
                stack.pop()
                continue

            state = color.get(dep_id)
            if state == _BLACK:
                continue
            if state == _GRAY:
                cycle_start = path.index(dep_id)
                cycles.append(path[cycle_start:] + [dep_id])
                color[path.pop()] = _BLACK
                stack.pop()
                continue
            if len(path) >= MAX_DEPENDENCY_DEPTH:
                # Fail-safe: too deep to prove acyclic
                logger.debug("Cycle search exceeded depth %d at feature %d", MAX_DEPENDENCY_DEPTH, dep_id)
                cycles.append(path + [dep_id])
                color[path.pop()] = _BLACK
                stack.pop()
                continue

            color[dep_id] = _GRAY
            path.append(dep_id)
            stack.append(iter(deps_in_subset(dep_id)))

    return cycles


def are_dependencies_satisfied(
    feature: dict,
    all_features: list[dict],
    passing_ids: Optional[set[int]] = None,
    present_ids: Optional[set[int]] = None,
) -> bool:
    """Check if every dependency present in the snapshot has passes=True.

    Dependencies on ids that are not in the snapshot do not block; they are
    reported separately as missing by resolve_dependencies().

    Args:
        feature: Feature dict to check
        all_features: List of all feature dicts
        passing_ids: Optional pre-computed set of passing feature IDs.
            Pass this when calling in a loop to avoid O(n^2) complexity.
        present_ids: Optional pre-computed set of all feature IDs.

    Returns:
        True if all dependencies are satisfied (or no dependencies)
    """
    return not get_blocking_dependencies(feature, all_features, passing_ids, present_ids)


def get_blocking_dependencies(
    feature: dict,
    all_features: list[dict],
    passing_ids: Optional[set[int]] = None,
    present_ids: Optional[set[int]] = None,
) -> list[int]:
    """Get the present dependency IDs that are not passing yet.

    Args:
        feature: Feature dict to check
        all_features: List of all feature dicts
        passing_ids: Optional pre-computed set of passing feature IDs
        present_ids: Optional pre-computed set of all feature IDs

    Returns:
        List of feature IDs that are blocking this feature
    """
    deps = _dependencies_of(feature)
    if not deps:
        return []
    if passing_ids is None:
        passing_ids = _passing_ids(all_features)
    if present_ids is None:
        present_ids = {f["id"] for f in all_features}
    return [d for d in deps if d in present_ids and d not in passing_ids]


def classify_readiness(features: list[dict]) -> ReadinessReport:
    """Partition features into ready, blocked and satisfied (passing).

    A feature is ready when it is neither passing nor in progress and all of
    its present dependencies pass. A non-passing feature with at least one
    present, non-passing dependency is blocked, whether or not it is in
    progress.
    """
    passing_ids = _passing_ids(features)
    present_ids = {f["id"] for f in features}

    ready: list[int] = []
    blocked: dict[int, list[int]] = {}
    for f in features:
        if f.get("passes"):
            continue
        blocking = get_blocking_dependencies(f, features, passing_ids, present_ids)
        if blocking:
            blocked[f["id"]] = blocking
        elif not f.get("in_progress"):
            ready.append(f["id"])

    satisfied = [f["id"] for f in features if f.get("passes")]
    return ReadinessReport(ready=ready, blocked=blocked, satisfied=satisfied)


def would_create_circular_dependency(
    features: list[dict], source_id: int, target_id: int
) -> bool:
    """Check if making source_id depend on target_id would create a cycle.

    Walks the existing dependency edges from target_id looking for source_id.
    Paths deeper than MAX_DEPENDENCY_DEPTH are treated as cycles.

    Args:
        features: List of all feature dicts
        source_id: The feature that would gain the dependency
        target_id: The feature that would become a dependency

    Returns:
        True if adding the dependency would create a cycle
    """
    if source_id == target_id:
        return True  # Self-reference is a cycle

    feature_map = {f["id"]: f for f in features}
    if source_id not in feature_map or target_id not in feature_map:
        return False

    visited: set[int] = set()

    def can_reach(current_id: int, depth: int = 0) -> bool:
        # Security: Prevent stack overflow with depth limit
        if depth > MAX_DEPENDENCY_DEPTH:
            logger.debug("Cycle check exceeded depth %d, assuming cycle", MAX_DEPENDENCY_DEPTH)
            return True
        if current_id == source_id:
            return True
        if current_id in visited:
            return False
        visited.add(current_id)

        current = feature_map.get(current_id)
        if current is None:
            return False
        return any(can_reach(dep_id, depth + 1) for dep_id in _dependencies_of(current))

    return can_reach(target_id)


def validate_dependencies(
    feature_id: int, dependency_ids: list[int], all_feature_ids: set[int]
) -> tuple[bool, str]:
    """Validate a proposed dependency list for one feature.

    Args:
        feature_id: ID of the feature being validated
        dependency_ids: List of proposed dependency IDs
        all_feature_ids: Set of all valid feature IDs

    Returns:
        Tuple of (is_valid, error_message)
    """
    # Security: Check limits
    if len(dependency_ids) > MAX_DEPENDENCIES:
        return False, f"Maximum {MAX_DEPENDENCIES} dependencies allowed"

    if feature_id in dependency_ids:
        return False, "A feature cannot depend on itself"

    if len(dependency_ids) != len(set(dependency_ids)):
        return False, "Duplicate dependencies not allowed"

    missing = [d for d in dependency_ids if d not in all_feature_ids]
    if missing:
        return False, f"Dependencies not found: {missing}"

    return True, ""


def compute_depths(graph: DependencyGraph) -> dict[int, int]:
    """Compute the dependency-chain depth of every feature.

    depth = 0 without present dependencies, else 1 + the deepest dependency.
    Each depth is computed once, so shared sub-dependencies (diamonds) cost
    nothing extra. Edges that close a cycle are ignored.
    """
    depths: dict[int, int] = {}

    for root in graph.nodes:
        if root in depths:
            continue
        on_path = {root}
        stack = [(root, iter(graph.parents[root]))]
        while stack:
            fid, deps = stack[-1]
            dep_id = next(deps, None)
            if dep_id is None:
                stack.pop()
                on_path.discard(fid)
                depths[fid] = 1 + max(
                    (depths[d] for d in graph.parents[fid] if d in depths), default=-1
                )
                continue
            if dep_id in depths or dep_id in on_path:
                continue
            on_path.add(dep_id)
            stack.append((dep_id, iter(graph.parents[dep_id])))

    return depths


def compute_downstream_counts(
    graph: DependencyGraph, depths: dict[int, int]
) -> dict[int, int]:
    """Count the features transitively unblocked by completing each feature.

    Deepest features are processed first so a child's count is final before
    its parents add ``1 + downstream[child]``.
    """
    downstream = {fid: 0 for fid in graph.nodes}
    for fid in sorted(graph.nodes, key=lambda x: -depths[x]):
        for parent_id in graph.parents[fid]:
            downstream[parent_id] += 1 + downstream[fid]
    return downstream


def compute_scheduling_scores(features: list[dict]) -> dict[int, float]:
    """Compute scheduling scores for all features.

    Higher scores mean higher priority for scheduling. The algorithm considers:
    1. Unblocking potential - Features that unblock more downstream work score higher
    2. Depth in graph - Features with no dependencies (roots) are "shovel-ready"
    3. User priority - Existing priority field as tiebreaker

    Score formula: (1000 * unblock) + (100 * depth_score) + (10 * priority_factor)

    Args:
        features: List of feature dicts with id, priority, dependencies fields

    Returns:
        Dict mapping feature_id -> score (higher = schedule first)
    """
    if not features:
        return {}

    graph = build_dependency_graph(features)
    depths = compute_depths(graph)
    downstream = compute_downstream_counts(graph, depths)

    max_depth = max(depths.values())
    max_downstream = max(downstream.values())

    scores: dict[int, float] = {}
    for fid, feature in graph.nodes.items():
        # Unblocking score: 0-1, higher = unblocks more
        unblock = downstream[fid] / max_downstream if max_downstream > 0 else 0

        # Depth score: 0-1, higher = closer to root (no deps)
        depth_score = 1 - (depths[fid] / max_depth) if max_depth > 0 else 1

        # Priority factor: 0-1, lower priority number = higher factor
        priority_factor = (PRIORITY_CLAMP - min(_priority_of(feature), PRIORITY_CLAMP)) / PRIORITY_CLAMP

        scores[fid] = (
            UNBLOCK_WEIGHT * unblock
            + DEPTH_WEIGHT * depth_score
            + PRIORITY_WEIGHT * priority_factor
        )

    return scores


def rank_features(features: list[dict], candidates: list[dict]) -> list[dict]:
    """Sort candidates by scheduling score (higher first), then priority, then id."""
    scores = compute_scheduling_scores(features)
    return sorted(
        candidates,
        key=lambda f: (-scores.get(f["id"], 0), _priority_of(f), f["id"]),
    )


def get_ready_features(features: list[dict], limit: int = 10) -> list[dict]:
    """Get features that are ready to be worked on, best candidates first.

    Args:
        features: List of all feature dicts
        limit: Maximum number of features to return

    Returns:
        List of ready feature dicts sorted by scheduling score
    """
    report = classify_readiness(features)
    ready_ids = set(report.ready)
    ready = [f for f in features if f["id"] in ready_ids]
    return rank_features(features, ready)[:limit]


def get_blocked_features(features: list[dict]) -> list[dict]:
    """Get features that are blocked by unmet dependencies.

    Returns:
        List of blocked feature dicts with a 'blocked_by' field added
    """
    report = classify_readiness(features)
    return [
        {**f, "blocked_by": report.blocked[f["id"]]}
        for f in features
        if f["id"] in report.blocked
    ]


def build_graph_data(features: list[dict]) -> dict:
    """Build graph data structure for visualization.

    Node status is one of 'done', 'blocked', 'in_progress' or 'pending'.
    Edges run from a dependency to its dependent and are only emitted for
    dependencies present in the snapshot.

    Returns:
        Dict with 'nodes' and 'edges'
    """
    report = classify_readiness(features)
    present_ids = {f["id"] for f in features}

    nodes = []
    edges = []
    for f in features:
        deps = _dependencies_of(f)
        if f.get("passes"):
            status = "done"
        elif f["id"] in report.blocked:
            status = "blocked"
        elif f.get("in_progress"):
            status = "in_progress"
        else:
            status = "pending"

        nodes.append({
            "id": f["id"],
            "name": f.get("name"),
            "category": f.get("category"),
            "status": status,
            "priority": _priority_of(f),
            "dependencies": deps,
        })
        for dep_id in deps:
            if dep_id in present_ids:
                edges.append({"source": dep_id, "target": f["id"]})

    return {"nodes": nodes, "edges": edges}
