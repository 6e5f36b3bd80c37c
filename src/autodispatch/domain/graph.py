"""Pure dependency-graph helpers over work-item snapshots.

Edges point from blocker to blocked item ("A blocks B" is ``A -> B``). None of these
helpers perform IO; callers pass snapshots obtained from the dependency store.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from autodispatch.domain.models import WorkItem, WorkItemStatus

ChildrenMap = dict[str, set[str]]
ParentsMap = dict[str, set[str]]


def index_items(items: Iterable[WorkItem]) -> dict[str, WorkItem]:
    indexed: dict[str, WorkItem] = {}
    for item in items:
        indexed[item.id] = item
    return indexed


def build_dependency_maps(
    items_by_id: Mapping[str, WorkItem],
) -> tuple[ChildrenMap, ParentsMap]:
    """Return ``(children_by_id, parents_by_id)`` for blockers known to the snapshot."""

    children_by_id: ChildrenMap = {item_id: set() for item_id in items_by_id}
    parents_by_id: ParentsMap = {item_id: set() for item_id in items_by_id}
    for item_id, item in items_by_id.items():
        for blocker_id in item.blocked_by:
            if blocker_id not in items_by_id:
                continue
            children_by_id[blocker_id].add(item_id)
            parents_by_id[item_id].add(blocker_id)
    return children_by_id, parents_by_id


def is_ready(item: WorkItem, items_by_id: Mapping[str, WorkItem]) -> bool:
    """An item is ready iff it is open and every item that blocks it is closed.

    A blocker that is missing from the snapshot counts as unresolved.
    """

    if item.status is not WorkItemStatus.OPEN:
        return False
    for blocker_id in item.blocked_by:
        blocker = items_by_id.get(blocker_id)
        if blocker is None or blocker.status is not WorkItemStatus.CLOSED:
            return False
    return True


def ready_item_ids(items: Iterable[WorkItem]) -> tuple[str, ...]:
    items_by_id = index_items(items)
    return tuple(
        item_id for item_id in sorted(items_by_id) if is_ready(items_by_id[item_id], items_by_id)
    )


def hierarchy_violations(items_by_id: Mapping[str, WorkItem]) -> tuple[tuple[str, str], ...]:
    """``(blocker, blocked)`` edges where a higher-level kind blocks a lower-level one.

    Work flows up the hierarchy (atoms feed composites, composites feed assemblies,
    assemblies feed integration), so an assembly blocking an atom is inverted.
    """

    inverted: list[tuple[str, str]] = []
    for item_id in sorted(items_by_id):
        item = items_by_id[item_id]
        for blocker_id in sorted(set(item.blocked_by)):
            blocker = items_by_id.get(blocker_id)
            if blocker is not None and blocker.kind.level > item.kind.level:
                inverted.append((blocker_id, item_id))
    return tuple(inverted)


def find_cycles(items_by_id: Mapping[str, WorkItem]) -> tuple[tuple[str, ...], ...]:
    """Return every strongly connected component that forms a cycle, sorted."""

    children_by_id, _ = build_dependency_maps(items_by_id)
    index_counter = 0
    indices: dict[str, int] = {}
    lowlinks: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[tuple[str, ...]] = []

    for root in sorted(items_by_id):
        if root in indices:
            continue
        # Iterative Tarjan: (node, iterator over children).
        work: list[tuple[str, list[str]]] = [(root, sorted(children_by_id[root]))]
        indices[root] = lowlinks[root] = index_counter
        index_counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            node, pending = work[-1]
            if pending:
                child = pending.pop(0)
                if child not in indices:
                    indices[child] = lowlinks[child] = index_counter
                    index_counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, sorted(children_by_id[child])))
                elif child in on_stack:
                    lowlinks[node] = min(lowlinks[node], indices[child])
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlinks[parent] = min(lowlinks[parent], lowlinks[node])
            if lowlinks[node] != indices[node]:
                continue

            component: list[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 1:
                components.append(tuple(sorted(component)))

    return tuple(sorted(components))


def would_create_cycle(
    items_by_id: Mapping[str, WorkItem],
    *,
    blocker_id: str,
    blocked_id: str,
) -> bool:
    """Return True when adding ``blocker_id -> blocked_id`` would close a cycle.

    The new edge closes a cycle exactly when ``blocker_id`` is already reachable
    downstream of ``blocked_id`` (or the two ids are equal).
    """

    if blocker_id == blocked_id:
        return True
    children_by_id, _ = build_dependency_maps(items_by_id)
    if blocked_id not in children_by_id:
        return False
    seen: set[str] = set()
    frontier = [blocked_id]
    while frontier:
        current = frontier.pop()
        if current == blocker_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        frontier.extend(children_by_id.get(current, ()))
    return False


def downstream_counts(
    items_by_id: Mapping[str, WorkItem],
    item_ids: Iterable[str] | None = None,
) -> dict[str, int]:
    """Number of distinct items transitively blocked by each requested item."""

    children_by_id, _ = build_dependency_maps(items_by_id)
    targets = sorted(items_by_id) if item_ids is None else sorted(set(item_ids))
    counts: dict[str, int] = {}
    for item_id in targets:
        if item_id not in children_by_id:
            counts[item_id] = 0
            continue
        seen: set[str] = set()
        frontier = list(children_by_id[item_id])
        while frontier:
            current = frontier.pop()
            if current in seen or current == item_id:
                continue
            seen.add(current)
            frontier.extend(children_by_id[current])
        counts[item_id] = len(seen)
    return counts


def parallel_tracks(
    items_by_id: Mapping[str, WorkItem],
    item_ids: Iterable[str],
) -> tuple[tuple[str, ...], ...]:
    """Partition ``item_ids`` into tracks that share no unfinished dependency component."""

    children_by_id, parents_by_id = build_dependency_maps(items_by_id)
    unfinished = {
        item_id
        for item_id, item in items_by_id.items()
        if item.status is not WorkItemStatus.CLOSED
    }
    component_of: dict[str, int] = {}
    component_count = 0
    for root in sorted(unfinished):
        if root in component_of:
            continue
        frontier = [root]
        while frontier:
            current = frontier.pop()
            if current in component_of or current not in unfinished:
                continue
            component_of[current] = component_count
            frontier.extend(children_by_id[current])
            frontier.extend(parents_by_id[current])
        component_count += 1

    grouped: dict[int, list[str]] = {}
    orphan_tracks: list[tuple[str, ...]] = []
    for item_id in sorted(set(item_ids)):
        component = component_of.get(item_id)
        if component is None:
            orphan_tracks.append((item_id,))
            continue
        grouped.setdefault(component, []).append(item_id)

    tracks = [tuple(members) for members in grouped.values()] + orphan_tracks
    return tuple(sorted(tracks))


__all__ = [
    "build_dependency_maps",
    "downstream_counts",
    "find_cycles",
    "hierarchy_violations",
    "index_items",
    "is_ready",
    "parallel_tracks",
    "ready_item_ids",
    "would_create_cycle",
]
