"""
Dependency Resolver
===================

Ordering and blocking detection over a project's feature graph.

All functions here are pure: they take features (ORM ``Feature`` objects or
plain dicts with the same keys) and return new values without touching the
database or the filesystem.

Ordering uses Kahn's algorithm. When several features become unblocked in the
same pass, ties break by ascending priority (missing priority counts as 2) and
then by input order, so identical inputs always produce identical output.
Features on a dependency cycle are left out of the ordering and reported as
CycleDetected conditions; features that depend on a cycle are left out as
well, since they can never be unblocked.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Hashable, Iterable, Sequence

from automode.database import (
    DEFAULT_PRIORITY,
    RUNNABLE_STATUSES,
    TERMINAL_SUCCESS_STATUSES,
)
from automode.exceptions import CycleDetected

_logger = logging.getLogger(__name__)

# Upper bound for any single graph walk
MAX_DEPENDENCY_DEPTH = 50
MAX_CYCLE_SEARCH_ITERATIONS = 10_000


def _field(feature: Any, name: str, default: Any = None) -> Any:
    if isinstance(feature, dict):
        return feature.get(name, default)
    return getattr(feature, name, default)


def _feature_id(feature: Any) -> Hashable:
    return _field(feature, "id")


def _dependencies(feature: Any) -> list:
    deps = _field(feature, "dependencies")
    if not isinstance(deps, (list, tuple)):
        return []
    # Keep declared order, drop duplicates
    return list(dict.fromkeys(deps))


def _priority(feature: Any) -> int:
    priority = _field(feature, "priority")
    if isinstance(priority, bool) or not isinstance(priority, int):
        return DEFAULT_PRIORITY
    return priority


@dataclass
class DependencyResolution:
    """Result of resolving a feature set."""

    # Features in execution order (dependencies first)
    ordered_features: list = field(default_factory=list)

    # One id path per detected cycle, e.g. ["a", "b"] for a -> b -> a
    circular_dependencies: list[list] = field(default_factory=list)

    # Ids of every feature that sits on a cycle
    cyclic_feature_ids: set = field(default_factory=set)

    # Ids excluded from the ordering (cyclic plus everything downstream of a cycle)
    excluded_feature_ids: set = field(default_factory=set)

    # feature id -> dependency ids that do not exist in the feature set
    missing_dependencies: dict = field(default_factory=dict)

    # feature id -> dependency ids not yet completed/verified
    blocked_features: dict = field(default_factory=dict)

    def cycle_errors(self) -> list[CycleDetected]:
        """Return one CycleDetected condition per detected cycle."""
        return [CycleDetected(cycle) for cycle in self.circular_dependencies]

    def raise_for_cycles(self) -> None:
        """Raise the first CycleDetected, for callers that treat cycles as fatal."""
        errors = self.cycle_errors()
        if errors:
            raise errors[0]

    @property
    def ordered_ids(self) -> list:
        return [_feature_id(f) for f in self.ordered_features]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ordered_ids": self.ordered_ids,
            "circular_dependencies": [list(c) for c in self.circular_dependencies],
            "cyclic_feature_ids": sorted(self.cyclic_feature_ids, key=str),
            "excluded_feature_ids": sorted(self.excluded_feature_ids, key=str),
            "missing_dependencies": {k: list(v) for k, v in self.missing_dependencies.items()},
            "blocked_features": {k: list(v) for k, v in self.blocked_features.items()},
        }


def resolve_dependencies(features: Sequence[Any]) -> DependencyResolution:
    """
    Order features so every dependency precedes its dependents.

    Args:
        features: Features in insertion order

    Returns:
        DependencyResolution with the ordering and all reported conditions
    """
    feature_map: dict = {}
    index_of: dict = {}
    for index, feature in enumerate(features):
        fid = _feature_id(feature)
        if fid in feature_map:
            _logger.warning("Duplicate feature id %s ignored during resolution", fid)
            continue
        feature_map[fid] = feature
        index_of[fid] = index

    result = DependencyResolution()

    # Edges point from a feature to the dependencies it waits on
    edges: dict = {}
    dependents: dict = {fid: [] for fid in feature_map}
    in_degree: dict = {}
    for fid, feature in feature_map.items():
        present = []
        missing = []
        for dep in _dependencies(feature):
            if dep in feature_map:
                present.append(dep)
                dependents[dep].append(fid)
            else:
                missing.append(dep)
        edges[fid] = present
        in_degree[fid] = len(present)
        if missing:
            result.missing_dependencies[fid] = missing

    def sort_key(fid):
        return (_priority(feature_map[fid]), index_of[fid])

    # Kahn's algorithm one pass at a time: dependents freed during a pass
    # wait for the next pass instead of competing with current candidates
    ready = sorted((fid for fid, degree in in_degree.items() if degree == 0), key=sort_key)

    ordered_ids = []
    while ready:
        ordered_ids.extend(ready)
        freed = []
        for fid in ready:
            for dependent in dependents[fid]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    freed.append(dependent)
        ready = sorted(freed, key=sort_key)

    result.ordered_features = [feature_map[fid] for fid in ordered_ids]

    if len(ordered_ids) < len(feature_map):
        placed = set(ordered_ids)
        remaining = [fid for fid in feature_map if fid not in placed]
        result.excluded_feature_ids = set(remaining)
        result.circular_dependencies = _detect_cycles(remaining, edges, index_of)
        for cycle in result.circular_dependencies:
            result.cyclic_feature_ids.update(cycle)
        _logger.warning(
            "Dependency cycles detected: %d cycle(s), %d feature(s) excluded from ordering",
            len(result.circular_dependencies),
            len(remaining),
        )

    status_by_id = {fid: _field(f, "status") for fid, f in feature_map.items()}
    for fid, feature in feature_map.items():
        if status_by_id[fid] in TERMINAL_SUCCESS_STATUSES:
            continue
        blocking = _blocking(feature, status_by_id)
        if blocking:
            result.blocked_features[fid] = blocking

    return result


def _strongly_connected_components(nodes: list, edges: dict) -> list[list]:
    """Iterative Tarjan SCC over the subgraph induced by ``nodes``."""
    node_set = set(nodes)
    indices: dict = {}
    lowlink: dict = {}
    on_stack: set = set()
    stack: list = []
    components: list[list] = []
    counter = 0

    for root in nodes:
        if root in indices:
            continue
        indices[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter([e for e in edges[root] if e in node_set]))]

        while work:
            node, neighbours = work[-1]
            descended = False
            for nxt in neighbours:
                if nxt not in indices:
                    indices[nxt] = lowlink[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, iter([e for e in edges[nxt] if e in node_set])))
                    descended = True
                    break
                if nxt in on_stack:
                    lowlink[node] = min(lowlink[node], indices[nxt])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == indices[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)

    return components


def _find_cycle_through(start: Hashable, members: set, edges: dict) -> list:
    """Return a dependency path from ``start`` that leads back to ``start``."""
    path = [start]
    visited = {start}
    work = [iter([e for e in edges[start] if e in members])]
    iterations = 0

    while work:
        iterations += 1
        if iterations > MAX_CYCLE_SEARCH_ITERATIONS:
            _logger.warning("Cycle search from %s hit the iteration limit", start)
            break
        nxt = next(work[-1], None)
        if nxt is None:
            work.pop()
            path.pop()
            continue
        if nxt == start:
            return list(path)
        if nxt in visited:
            continue
        visited.add(nxt)
        path.append(nxt)
        work.append(iter([e for e in edges[nxt] if e in members]))

    return [start]


def _detect_cycles(remaining: list, edges: dict, index_of: dict) -> list[list]:
    """Extract concrete cycles covering every feature that sits on one."""
    cycles = []
    for component in _strongly_connected_components(remaining, edges):
        members = set(component)
        if len(component) == 1 and component[0] not in edges[component[0]]:
            continue  # Downstream of a cycle, not on one
        covered: set = set()
        for member in sorted(component, key=lambda fid: index_of[fid]):
            if member in covered:
                continue
            cycle = _find_cycle_through(member, members, edges)
            covered.update(cycle)
            cycles.append(cycle)

    cycles.sort(key=lambda c: index_of[c[0]])
    return cycles


def get_blocking_dependencies(feature: Any, all_features: Iterable[Any]) -> list:
    """
    Return the dependencies of ``feature`` that are not yet completed/verified.

    Dependencies missing from ``all_features`` are ignored here; they are
    reported separately by resolve_dependencies.
    """
    status_by_id = {_feature_id(f): _field(f, "status") for f in all_features}
    return _blocking(feature, status_by_id)


def _blocking(feature: Any, status_by_id: dict) -> list:
    blocking = []
    for dep in _dependencies(feature):
        if dep not in status_by_id:
            continue
        if status_by_id[dep] not in TERMINAL_SUCCESS_STATUSES:
            blocking.append(dep)
    return blocking


def are_dependencies_satisfied(feature: Any, all_features: Iterable[Any]) -> bool:
    """Check whether every known dependency is completed or verified."""
    return not get_blocking_dependencies(feature, all_features)


def would_create_circular_dependency(
    features: Iterable[Any],
    source_id: Hashable,
    target_id: Hashable,
) -> bool:
    """
    Check whether making ``source_id`` depend on ``target_id`` creates a cycle.

    Walks the dependency chain of the target looking for the source. Walks
    deeper than MAX_DEPENDENCY_DEPTH are treated as cycles.
    """
    if source_id == target_id:
        return True

    deps_by_id = {_feature_id(f): _dependencies(f) for f in features}
    visited = {target_id}
    queue = deque([(target_id, 0)])

    while queue:
        current, depth = queue.popleft()
        if depth > MAX_DEPENDENCY_DEPTH:
            _logger.warning(
                "Dependency chain from %s exceeds depth %d; refusing %s -> %s",
                target_id, MAX_DEPENDENCY_DEPTH, source_id, target_id,
            )
            return True
        for dep in deps_by_id.get(current, []):
            if dep == source_id:
                return True
            if dep not in visited:
                visited.add(dep)
                queue.append((dep, depth + 1))

    return False


def get_ready_features(
    features: Sequence[Any],
    resolution: DependencyResolution | None = None,
) -> list:
    """
    Return runnable features in execution order.

    A feature is ready when it is pending/ready, not archived, not excluded
    by a cycle, and none of its dependencies block it.
    """
    if resolution is None:
        resolution = resolve_dependencies(features)

    ready = []
    for feature in resolution.ordered_features:
        if _field(feature, "status") not in RUNNABLE_STATUSES:
            continue
        if _field(feature, "archived", False):
            continue
        if _feature_id(feature) in resolution.blocked_features:
            continue
        ready.append(feature)
    return ready
