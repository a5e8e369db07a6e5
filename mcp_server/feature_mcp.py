#!/usr/bin/env python3
"""
MCP Server for Feature Management
==================================

Exposes the feature backlog and its dependency analysis as MCP tools.

Tools:
- feature_get_stats: Get progress statistics
- feature_get_next: Get the best ready feature to implement
- feature_get_by_id: Get a specific feature by ID
- feature_get_summary: Get minimal feature info (id, name, status, deps)
- feature_mark_passing: Mark a feature as passing
- feature_mark_failing: Mark a feature as failing (regression detected)
- feature_skip: Skip a feature (move to end of queue)
- feature_mark_in_progress: Mark a feature as in-progress
- feature_claim_and_get: Atomically claim and get feature details
- feature_claim_next: Atomically pick and claim the best ready feature
- feature_clear_in_progress: Clear in-progress status
- feature_create_bulk: Create multiple features at once
- feature_create: Create a single feature
- feature_add_dependency: Add a dependency between features
- feature_remove_dependency: Remove a dependency
- feature_set_dependencies: Replace all dependencies of a feature
- feature_get_ready: Get features ready to implement
- feature_get_blocked: Get features blocked by dependencies
- feature_get_graph: Get the dependency graph
- feature_get_order: Get the dependency-respecting work order

Priority assignment (create, bulk create, skip) reads the current maximum
priority and writes max + 1. Several agents run their own copy of this server
against the same database, so that sequence is guarded by the cross-process
priority lock.
"""

import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import Field

# Add parent directory to path so we can import from the backlog package
sys.path.insert(0, str(Path(__file__).parent.parent))

from backlog.database import Feature, begin_write, create_database, get_next_priority, load_snapshot
from backlog.dependency_resolver import (
    MAX_DEPENDENCIES_PER_FEATURE,
    MAX_FEATURES,
    build_dependency_graph,
    build_graph_data,
    classify_readiness,
    get_blocked_features,
    get_ready_features,
    rank_features,
    resolve_dependencies,
    validate_dependencies,
    would_create_circular_dependency,
)
from backlog.priority_lock import PriorityLockTimeout, get_priority_lock

# Configuration from environment
PROJECT_DIR = Path(os.environ.get("PROJECT_DIR", ".")).resolve()
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)

# Global database session maker (initialized on startup)
_session_maker = None
_engine = None

# Cross-process lock for priority assignment
_priority_lock = get_priority_lock()

LOCK_TIMEOUT_HINT = "Another agent is assigning priorities - try again shortly"


@asynccontextmanager
async def server_lifespan(server: FastMCP):
    """Initialize database on startup, cleanup on shutdown."""
    global _session_maker, _engine

    # Create project directory if it doesn't exist
    PROJECT_DIR.mkdir(parents=True, exist_ok=True)

    _engine, _session_maker = create_database(PROJECT_DIR)
    logger.info("Feature database ready in %s", PROJECT_DIR)

    yield

    # Cleanup
    if _engine:
        _engine.dispose()


# Initialize the MCP server
mcp = FastMCP("features", lifespan=server_lifespan)


def get_session():
    """Get a new database session."""
    if _session_maker is None:
        raise RuntimeError("Database not initialized")
    return _session_maker()


def _lock_timeout_response(e: PriorityLockTimeout) -> str:
    logger.warning("Priority lock unavailable: %s", e)
    return json.dumps({"error": str(e), "hint": LOCK_TIMEOUT_HINT})


@mcp.tool()
def feature_get_stats() -> str:
    """Get statistics about feature completion progress.

    Returns the number of passing features, in-progress features, blocked
    features, total features, and completion percentage.

    Returns:
        JSON with: passing (int), in_progress (int), blocked (int), total (int), percentage (float)
    """
    session = get_session()
    try:
        snapshot = load_snapshot(session)
        report = classify_readiness(snapshot)
        total = len(snapshot)
        passing = len(report.satisfied)
        in_progress = sum(1 for f in snapshot if f["in_progress"] and not f["passes"])
        percentage = round((passing / total) * 100, 1) if total > 0 else 0.0

        return json.dumps({
            "passing": passing,
            "in_progress": in_progress,
            "blocked": len(report.blocked),
            "total": total,
            "percentage": percentage
        }, indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_get_next() -> str:
    """Get the best pending feature that has all dependencies satisfied.

    Candidates are features with passes=false and in_progress=false whose
    dependencies are all passing (dependencies on deleted features are ignored).
    They are ranked by scheduling score: features that unblock the most
    downstream work come first, then shallow features, then by priority.

    Returns:
        JSON with feature details, or an error explaining why nothing is ready.
    """
    session = get_session()
    try:
        snapshot = load_snapshot(session)
        ready = get_ready_features(snapshot, limit=1)
        if ready:
            return json.dumps(ready[0], indent=2)

        pending = [f for f in snapshot if not f["passes"]]
        if not pending:
            return json.dumps({"error": "All features are passing! No more work to do."})
        if all(f["in_progress"] for f in pending):
            return json.dumps({"error": "All pending features are in progress by other agents"})

        # Everything left is blocked; show the most valuable blocked features
        graph = build_dependency_graph(snapshot)
        blocked = rank_features(snapshot, get_blocked_features(snapshot))
        blocking_info = []
        for feature in blocked[:3]:
            info = f"#{feature['id']} '{feature['name']}' blocked by: {feature['blocked_by']}"
            orphaned = graph.missing.get(feature["id"])
            if orphaned:
                info += f" (orphaned deps ignored: {orphaned})"
            blocking_info.append(info)

        return json.dumps({
            "error": "All pending features are blocked by unmet dependencies",
            "blocked_features": len(blocked),
            "examples": blocking_info,
            "hint": "Complete the blocking dependencies first, or remove invalid dependencies"
        }, indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_get_by_id(
    feature_id: Annotated[int, Field(description="The ID of the feature to retrieve", ge=1)]
) -> str:
    """Get a specific feature by its ID.

    Returns the full details of a feature including its name, description,
    verification steps, and current status.

    Args:
        feature_id: The ID of the feature to retrieve

    Returns:
        JSON with feature details, or error if not found.
    """
    session = get_session()
    try:
        feature = session.query(Feature).filter(Feature.id == feature_id).first()

        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})

        return json.dumps(feature.to_dict(), indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_get_summary(
    feature_id: Annotated[int, Field(description="The ID of the feature", ge=1)]
) -> str:
    """Get minimal feature info: id, name, status, and dependencies only.

    Use this instead of feature_get_by_id when you only need status info,
    not the full description and steps.

    Args:
        feature_id: The ID of the feature to retrieve

    Returns:
        JSON with: id, name, passes, in_progress, dependencies
    """
    session = get_session()
    try:
        feature = session.query(Feature).filter(Feature.id == feature_id).first()
        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})
        return json.dumps({
            "id": feature.id,
            "name": feature.name,
            "passes": bool(feature.passes),
            "in_progress": bool(feature.in_progress),
            "dependencies": feature.get_dependencies_safe()
        })
    finally:
        session.close()


@mcp.tool()
def feature_mark_passing(
    feature_id: Annotated[int, Field(description="The ID of the feature to mark as passing", ge=1)]
) -> str:
    """Mark a feature as passing after successful implementation.

    Updates the feature's passes field to true and clears the in_progress flag.

    Args:
        feature_id: The ID of the feature to mark as passing

    Returns:
        JSON with the updated feature details, or error if not found.
    """
    session = get_session()
    try:
        feature = session.query(Feature).filter(Feature.id == feature_id).first()

        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})

        feature.passes = True
        feature.in_progress = False
        session.commit()
        session.refresh(feature)

        return json.dumps(feature.to_dict(), indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_mark_failing(
    feature_id: Annotated[int, Field(description="The ID of the feature to mark as failing", ge=1)]
) -> str:
    """Mark a feature as failing after finding a regression.

    Updates the feature's passes field to false and clears the in_progress flag.
    Features that depend on it become blocked again.

    Args:
        feature_id: The ID of the feature to mark as failing

    Returns:
        JSON with: message, feature (updated details), or error if not found.
    """
    session = get_session()
    try:
        feature = session.query(Feature).filter(Feature.id == feature_id).first()

        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})

        feature.passes = False
        feature.in_progress = False
        session.commit()
        session.refresh(feature)
        logger.info("Feature #%d marked failing", feature_id)

        return json.dumps({
            "message": f"Feature #{feature_id} marked as failing - regression detected",
            "feature": feature.to_dict()
        }, indent=2)
    except Exception as e:
        session.rollback()
        logger.exception("Mark failing of feature #%d failed", feature_id)
        return json.dumps({"error": f"Failed to mark feature failing: {e}"})
    finally:
        session.close()


@mcp.tool()
def feature_skip(
    feature_id: Annotated[int, Field(description="The ID of the feature to skip", ge=1)]
) -> str:
    """Skip a feature by moving it to the end of the priority queue.

    The feature's priority is set to max_priority + 1, so it will be worked on
    after all other pending features. Also clears the in_progress flag so the
    feature returns to "pending" status.

    Args:
        feature_id: The ID of the feature to skip

    Returns:
        JSON with skip details: id, name, old_priority, new_priority, message
    """
    session = get_session()
    try:
        feature = session.query(Feature).filter(Feature.id == feature_id).first()

        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})

        if feature.passes:
            return json.dumps({"error": "Cannot skip a feature that is already passing"})

        old_priority = feature.priority

        with _priority_lock:
            new_priority = get_next_priority(session)
            feature.priority = new_priority
            feature.in_progress = False
            session.commit()

        session.refresh(feature)
        logger.info("Feature #%d skipped: priority %d -> %d", feature_id, old_priority, new_priority)

        return json.dumps({
            "id": feature.id,
            "name": feature.name,
            "old_priority": old_priority,
            "new_priority": new_priority,
            "message": f"Feature '{feature.name}' moved to end of queue"
        }, indent=2)
    except PriorityLockTimeout as e:
        session.rollback()
        return _lock_timeout_response(e)
    finally:
        session.close()


@mcp.tool()
def feature_mark_in_progress(
    feature_id: Annotated[int, Field(description="The ID of the feature to mark as in-progress", ge=1)]
) -> str:
    """Mark a feature as in-progress. Call immediately after feature_get_next().

    This prevents other agent sessions from working on the same feature.

    Args:
        feature_id: The ID of the feature to mark as in-progress

    Returns:
        JSON with the updated feature details, or error if not found or already in-progress.
    """
    session = get_session()
    try:
        begin_write(session)
        feature = session.query(Feature).filter(Feature.id == feature_id).first()

        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})

        if feature.passes:
            return json.dumps({"error": f"Feature with ID {feature_id} is already passing"})

        if feature.in_progress:
            return json.dumps({"error": f"Feature with ID {feature_id} is already in-progress"})

        feature.in_progress = True
        session.commit()
        session.refresh(feature)

        return json.dumps(feature.to_dict(), indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_claim_and_get(
    feature_id: Annotated[int, Field(description="The ID of the feature to claim", ge=1)]
) -> str:
    """Atomically claim a feature (mark in-progress) and return its full details.

    Combines feature_mark_in_progress + feature_get_by_id into a single operation.
    If already in-progress, still returns the feature details with
    already_claimed=true.

    Args:
        feature_id: The ID of the feature to claim and retrieve

    Returns:
        JSON with feature details plus already_claimed (bool), or error if not found.
    """
    session = get_session()
    try:
        begin_write(session)
        feature = session.query(Feature).filter(Feature.id == feature_id).first()

        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})

        if feature.passes:
            return json.dumps({"error": f"Feature with ID {feature_id} is already passing"})

        already_claimed = bool(feature.in_progress)
        if not already_claimed:
            feature.in_progress = True
        session.commit()
        session.refresh(feature)

        result = feature.to_dict()
        result["already_claimed"] = already_claimed
        return json.dumps(result, indent=2)
    except Exception as e:
        session.rollback()
        logger.exception("Claim of feature #%d failed", feature_id)
        return json.dumps({"error": f"Failed to claim feature: {e}"})
    finally:
        session.close()


@mcp.tool()
def feature_claim_next() -> str:
    """Atomically pick the best ready feature and mark it in-progress.

    Same choice as feature_get_next(), made and claimed while holding the
    database write lock, so two agents never receive the same feature.

    Returns:
        JSON with the claimed feature details, or the same errors as feature_get_next().
    """
    session = get_session()
    try:
        begin_write(session)
        ready = get_ready_features(load_snapshot(session), limit=1)
        if not ready:
            session.rollback()
            return feature_get_next()

        feature = session.query(Feature).filter(Feature.id == ready[0]["id"]).first()
        feature.in_progress = True
        session.commit()
        session.refresh(feature)
        logger.info("Feature #%d claimed", feature.id)

        return json.dumps(feature.to_dict(), indent=2)
    except Exception as e:
        session.rollback()
        logger.exception("Claim failed")
        return json.dumps({"error": f"Failed to claim feature: {e}"})
    finally:
        session.close()


@mcp.tool()
def feature_clear_in_progress(
    feature_id: Annotated[int, Field(description="The ID of the feature to clear in-progress status", ge=1)]
) -> str:
    """Clear in-progress status from a feature.

    Use this when abandoning a feature or manually unsticking a stuck feature.
    The feature will return to the pending queue.

    Args:
        feature_id: The ID of the feature to clear in-progress status

    Returns:
        JSON with the updated feature details, or error if not found.
    """
    session = get_session()
    try:
        feature = session.query(Feature).filter(Feature.id == feature_id).first()

        if feature is None:
            return json.dumps({"error": f"Feature with ID {feature_id} not found"})

        feature.in_progress = False
        session.commit()
        session.refresh(feature)

        return json.dumps(feature.to_dict(), indent=2)
    finally:
        session.close()


def _validate_bulk_item(i: int, feature_data: dict) -> Optional[str]:
    """Return an error message for an invalid bulk item, or None."""
    if not all(key in feature_data for key in ["category", "name", "description", "steps"]):
        return f"Feature at index {i} missing required fields (category, name, description, steps)"

    indices = feature_data.get("depends_on_indices") or []
    if len(indices) > MAX_DEPENDENCIES_PER_FEATURE:
        return f"Feature at index {i} has {len(indices)} dependencies, max is {MAX_DEPENDENCIES_PER_FEATURE}"
    if len(indices) != len(set(indices)):
        return f"Feature at index {i} has duplicate dependencies"
    for idx in indices:
        if not isinstance(idx, int) or isinstance(idx, bool) or idx < 0:
            return f"Feature at index {i} has invalid dependency index: {idx}"
        # Only earlier features in the batch, which also rules out cycles
        if idx >= i:
            return f"Feature at index {i} cannot depend on feature at index {idx} (forward reference not allowed)"
    return None


@mcp.tool()
def feature_create_bulk(
    features: Annotated[list[dict], Field(description="List of features to create, each with category, name, description, and steps")]
) -> str:
    """Create multiple features in a single operation.

    Features are assigned sequential priorities based on their order.
    All features start with passes=false.

    Args:
        features: List of features to create, each with:
            - category (str): Feature category
            - name (str): Feature name
            - description (str): Detailed description
            - steps (list[str]): Implementation/test steps
            - depends_on_indices (list[int], optional): Array indices (0-based) of
              features in THIS batch that this feature depends on. Use this instead
              of 'dependencies' since IDs aren't known until after creation.
              Example: [0, 2] means this feature depends on features at index 0 and 2.

    Returns:
        JSON with: created (int) - number of features created, with_dependencies (int)
    """
    if len(features) > MAX_FEATURES:
        return json.dumps({"error": f"Cannot create more than {MAX_FEATURES} features at once"})

    for i, feature_data in enumerate(features):
        error = _validate_bulk_item(i, feature_data)
        if error:
            return json.dumps({"error": error})

    session = get_session()
    try:
        with _priority_lock:
            start_priority = get_next_priority(session)

            created_features: list[Feature] = []
            for i, feature_data in enumerate(features):
                db_feature = Feature(
                    priority=start_priority + i,
                    category=feature_data["category"],
                    name=feature_data["name"],
                    description=feature_data["description"],
                    steps=feature_data["steps"],
                    passes=False,
                    in_progress=False,
                )
                session.add(db_feature)
                created_features.append(db_feature)

            # Flush to get IDs assigned
            session.flush()

            # Resolve index-based dependencies to actual IDs
            deps_count = 0
            for i, feature_data in enumerate(features):
                indices = feature_data.get("depends_on_indices") or []
                if indices:
                    created_features[i].dependencies = sorted(created_features[idx].id for idx in indices)
                    deps_count += 1

            session.commit()

        logger.info("Created %d features starting at priority %d", len(created_features), start_priority)
        return json.dumps({
            "created": len(created_features),
            "with_dependencies": deps_count
        }, indent=2)
    except PriorityLockTimeout as e:
        session.rollback()
        return _lock_timeout_response(e)
    except Exception as e:
        session.rollback()
        logger.exception("Bulk create failed")
        return json.dumps({"error": str(e)})
    finally:
        session.close()


@mcp.tool()
def feature_create(
    category: Annotated[str, Field(min_length=1, max_length=100, description="Feature category (e.g., 'Authentication', 'API', 'UI')")],
    name: Annotated[str, Field(min_length=1, max_length=255, description="Feature name")],
    description: Annotated[str, Field(min_length=1, description="Detailed description of the feature")],
    steps: Annotated[list[str], Field(min_length=1, description="List of implementation/verification steps")]
) -> str:
    """Create a single feature in the project backlog.

    The feature will be added with the next available priority number.

    Args:
        category: Feature category for grouping (e.g., 'Authentication', 'API', 'UI')
        name: Descriptive name for the feature
        description: Detailed description of what this feature should do
        steps: List of steps to implement or verify the feature

    Returns:
        JSON with the created feature details including its ID
    """
    session = get_session()
    try:
        with _priority_lock:
            db_feature = Feature(
                priority=get_next_priority(session),
                category=category,
                name=name,
                description=description,
                steps=steps,
                passes=False,
                in_progress=False,
            )
            session.add(db_feature)
            session.commit()

        session.refresh(db_feature)

        return json.dumps({
            "success": True,
            "message": f"Created feature: {name}",
            "feature": db_feature.to_dict()
        }, indent=2)
    except PriorityLockTimeout as e:
        session.rollback()
        return _lock_timeout_response(e)
    except Exception as e:
        session.rollback()
        logger.exception("Create failed")
        return json.dumps({"error": str(e)})
    finally:
        session.close()


@mcp.tool()
def feature_add_dependency(
    feature_id: Annotated[int, Field(ge=1, description="Feature to add dependency to")],
    dependency_id: Annotated[int, Field(ge=1, description="ID of the dependency feature")]
) -> str:
    """Add a dependency relationship between features.

    The dependency_id feature must be completed before feature_id can be started.
    Validates: self-reference, existence, circular dependencies, max limit.

    Args:
        feature_id: The ID of the feature that will depend on another feature
        dependency_id: The ID of the feature that must be completed first

    Returns:
        JSON with success status and updated dependencies list, or error message
    """
    session = get_session()
    try:
        # Hold the write lock so a concurrent edit can't close a cycle after our check
        begin_write(session)
        feature = session.query(Feature).filter(Feature.id == feature_id).first()
        if not feature:
            return json.dumps({"error": f"Feature {feature_id} not found"})

        current_deps = feature.get_dependencies_safe()
        if dependency_id in current_deps:
            return json.dumps({"error": "Dependency already exists"})
        if len(current_deps) >= MAX_DEPENDENCIES_PER_FEATURE:
            return json.dumps({"error": f"Maximum {MAX_DEPENDENCIES_PER_FEATURE} dependencies allowed"})

        # Existing dependencies on deleted features are left alone
        snapshot = load_snapshot(session)
        is_valid, error = validate_dependencies(feature_id, [dependency_id], {f["id"] for f in snapshot})
        if not is_valid:
            return json.dumps({"error": error})

        # source_id = feature gaining the dependency, target_id = feature being depended upon
        if would_create_circular_dependency(snapshot, feature_id, dependency_id):
            return json.dumps({"error": "Cannot add: would create circular dependency"})

        feature.dependencies = sorted(current_deps + [dependency_id])
        session.commit()

        return json.dumps({
            "success": True,
            "feature_id": feature_id,
            "dependencies": feature.dependencies
        })
    finally:
        session.close()


@mcp.tool()
def feature_remove_dependency(
    feature_id: Annotated[int, Field(ge=1, description="Feature to remove dependency from")],
    dependency_id: Annotated[int, Field(ge=1, description="ID of dependency to remove")]
) -> str:
    """Remove a dependency from a feature.

    Args:
        feature_id: The ID of the feature to remove a dependency from
        dependency_id: The ID of the dependency to remove

    Returns:
        JSON with success status and updated dependencies list, or error message
    """
    session = get_session()
    try:
        feature = session.query(Feature).filter(Feature.id == feature_id).first()
        if not feature:
            return json.dumps({"error": f"Feature {feature_id} not found"})

        current_deps = feature.get_dependencies_safe()
        if dependency_id not in current_deps:
            return json.dumps({"error": "Dependency does not exist"})

        remaining = [d for d in current_deps if d != dependency_id]
        feature.dependencies = remaining or None
        session.commit()

        return json.dumps({
            "success": True,
            "feature_id": feature_id,
            "dependencies": remaining
        })
    finally:
        session.close()


@mcp.tool()
def feature_set_dependencies(
    feature_id: Annotated[int, Field(ge=1, description="Feature to set dependencies for")],
    dependency_ids: Annotated[list[int], Field(description="List of dependency feature IDs")]
) -> str:
    """Set all dependencies for a feature at once, replacing any existing dependencies.

    Validates: self-reference, existence of all dependencies, circular dependencies, max limit.

    Args:
        feature_id: The ID of the feature to set dependencies for
        dependency_ids: List of feature IDs that must be completed first

    Returns:
        JSON with success status and updated dependencies list, or error message
    """
    session = get_session()
    try:
        begin_write(session)
        feature = session.query(Feature).filter(Feature.id == feature_id).first()
        if not feature:
            return json.dumps({"error": f"Feature {feature_id} not found"})

        snapshot = load_snapshot(session)
        is_valid, error = validate_dependencies(feature_id, dependency_ids, {f["id"] for f in snapshot})
        if not is_valid:
            return json.dumps({"error": error})

        # Check cycles against the graph with the old dependencies swapped out
        test_features = [
            {**f, "dependencies": []} if f["id"] == feature_id else f
            for f in snapshot
        ]
        for dep_id in dependency_ids:
            if would_create_circular_dependency(test_features, feature_id, dep_id):
                return json.dumps({"error": f"Cannot add dependency {dep_id}: would create circular dependency"})

        feature.dependencies = sorted(dependency_ids) if dependency_ids else None
        session.commit()

        return json.dumps({
            "success": True,
            "feature_id": feature_id,
            "dependencies": feature.dependencies or []
        })
    finally:
        session.close()


@mcp.tool()
def feature_get_ready(
    limit: Annotated[int, Field(default=10, ge=1, le=50, description="Max features to return")] = 10
) -> str:
    """Get all features ready to start (dependencies satisfied, not in progress).

    Useful for parallel execution - returns multiple features that can run simultaneously.
    Sorted by scheduling score, best candidates first.

    Args:
        limit: Maximum number of features to return (1-50, default 10)

    Returns:
        JSON with: features (list), count (int), total_ready (int)
    """
    session = get_session()
    try:
        snapshot = load_snapshot(session)
        total_ready = len(classify_readiness(snapshot).ready)
        ready = get_ready_features(snapshot, limit=limit)

        return json.dumps({
            "features": ready,
            "count": len(ready),
            "total_ready": total_ready
        }, indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_get_blocked(
    limit: Annotated[int, Field(default=20, ge=1, le=100, description="Max features to return")] = 20
) -> str:
    """Get features that are blocked by unmet dependencies.

    Each feature includes a 'blocked_by' field listing the blocking feature IDs.

    Args:
        limit: Maximum number of features to return (1-100, default 20)

    Returns:
        JSON with: features (list with blocked_by field), count (int), total_blocked (int)
    """
    session = get_session()
    try:
        blocked = get_blocked_features(load_snapshot(session))

        return json.dumps({
            "features": blocked[:limit],
            "count": len(blocked[:limit]),
            "total_blocked": len(blocked)
        }, indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_get_graph() -> str:
    """Get dependency graph data for visualization.

    Returns nodes (features) and edges (dependencies) for rendering a graph.
    Each node includes status: 'pending', 'in_progress', 'done', or 'blocked'.

    Returns:
        JSON with: nodes (list), edges (list of {source, target})
    """
    session = get_session()
    try:
        return json.dumps(build_graph_data(load_snapshot(session)), indent=2)
    finally:
        session.close()


@mcp.tool()
def feature_get_order() -> str:
    """Get the order features should be worked in, respecting dependencies.

    Features caught in a dependency cycle are listed after all others and
    reported under circular_dependencies. Dependencies on deleted features
    are reported under missing_dependencies.

    Returns:
        JSON with: order (list of ids), circular_dependencies, blocked_features,
        missing_dependencies
    """
    session = get_session()
    try:
        result = resolve_dependencies(load_snapshot(session))

        return json.dumps({
            "order": result["ordered_features"],
            "circular_dependencies": result["circular_dependencies"],
            # JSON object keys must be strings
            "blocked_features": {str(k): v for k, v in result["blocked_features"].items()},
            "missing_dependencies": {str(k): v for k, v in result["missing_dependencies"].items()},
        }, indent=2)
    finally:
        session.close()


if __name__ == "__main__":
    # stdout carries the MCP protocol
    logging.basicConfig(stream=sys.stderr, level=LOG_LEVEL)
    mcp.run()
