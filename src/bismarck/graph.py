"""Dependency graph builder.

Turns a plan's immutable task list plus its latest assignments into a
DependencyGraph. Building is pure and deterministic: the same inputs always
produce an equal graph, and nothing is mutated in place. The scheduler
rebuilds the graph after every assignment change instead of patching it.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from bismarck.errors import MalformedGraph
from bismarck.state.models import AssignmentStatus, NodeStatus, Task, TaskAssignment

logger = logging.getLogger(__name__)

_ASSIGNMENT_TO_NODE_STATUS = {
    AssignmentStatus.SENT: NodeStatus.SENT,
    AssignmentStatus.IN_PROGRESS: NodeStatus.IN_PROGRESS,
    AssignmentStatus.COMPLETED: NodeStatus.COMPLETED,
    AssignmentStatus.FAILED: NodeStatus.FAILED,
}


@dataclass(frozen=True)
class TaskNode:
    """Derived view of one task. Never persisted on its own."""

    task_id: str
    status: NodeStatus
    dependencies: frozenset[str]
    dependents: frozenset[str]
    assignment: Optional[TaskAssignment] = None


@dataclass(frozen=True)
class DependencyGraph:
    """Immutable snapshot of a plan's task graph.

    Attributes:
        nodes: Task id to node.
        edges: (dependency, dependent) pairs, sorted.
        roots: Tasks with no dependencies.
        leaves: Tasks nothing depends on.
        critical_path: Longest dependency chain by task count, first task first.
        max_depth: Number of tasks on the longest chain.
        topological_order: Deterministic order where dependencies come first.
    """

    nodes: dict[str, TaskNode]
    edges: tuple[tuple[str, str], ...]
    roots: frozenset[str]
    leaves: frozenset[str]
    critical_path: tuple[str, ...]
    max_depth: int
    topological_order: tuple[str, ...] = field(default=())

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    def get(self, task_id: str) -> TaskNode:
        return self.nodes[task_id]

    def status_of(self, task_id: str) -> NodeStatus:
        return self.nodes[task_id].status

    def nodes_with_status(self, *statuses: NodeStatus) -> list[str]:
        """Task ids whose status is one of the given ones, in topological order."""
        wanted = set(statuses)
        return [tid for tid in self.topological_order if self.nodes[tid].status in wanted]

    def ready_nodes(self) -> list[str]:
        """Ready task ids in dispatch priority order."""
        return self.prioritize(self.nodes_with_status(NodeStatus.READY))

    @property
    def is_complete(self) -> bool:
        return all(node.status == NodeStatus.COMPLETED for node in self.nodes.values())

    @property
    def has_failures(self) -> bool:
        return any(node.status == NodeStatus.FAILED for node in self.nodes.values())

    @property
    def active_count(self) -> int:
        """Number of tasks with a sent or in-progress assignment."""
        return len(self.nodes_with_status(NodeStatus.SENT, NodeStatus.IN_PROGRESS))

    def prioritize(self, task_ids: Iterable[str]) -> list[str]:
        """Order task ids: critical path first, then lowest task id."""
        on_path = set(self.critical_path)
        return sorted(task_ids, key=lambda tid: (tid not in on_path, tid))

    def descendants(self, task_id: str) -> set[str]:
        """All tasks that transitively depend on task_id."""
        seen: set[str] = set()
        stack = list(self.nodes[task_id].dependents)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].dependents)
        return seen


def _latest_assignments(assignments: Iterable[TaskAssignment]) -> dict[str, TaskAssignment]:
    latest: dict[str, TaskAssignment] = {}
    for assignment in assignments:
        current = latest.get(assignment.task_id)
        if current is None or assignment.assigned_at >= current.assigned_at:
            latest[assignment.task_id] = assignment
    return latest


def _topological_order(
    task_ids: list[str], dependents: dict[str, set[str]], indegree: dict[str, int]
) -> list[str]:
    """Kahn's algorithm, always taking the lowest ready id next."""
    remaining = dict(indegree)
    heap = [tid for tid in task_ids if remaining[tid] == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        current = heapq.heappop(heap)
        order.append(current)
        for dependent in dependents[current]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(heap, dependent)

    if len(order) != len(task_ids):
        cycle_nodes = [tid for tid in task_ids if remaining[tid] > 0]
        raise MalformedGraph(
            f"Dependency cycle among tasks: {', '.join(sorted(cycle_nodes))}",
            task_ids=cycle_nodes,
        )
    return order


def _critical_path(order: list[str], dependencies: dict[str, frozenset[str]]) -> list[str]:
    """Longest chain by node count via DP over the topological order.

    Ties pick the lowest task id, both for a chain's end and for each
    predecessor along it.
    """
    if not order:
        return []

    length: dict[str, int] = {}
    predecessor: dict[str, Optional[str]] = {}
    for tid in order:
        best: Optional[str] = None
        for dep in sorted(dependencies[tid]):
            if best is None or length[dep] > length[best]:
                best = dep
        predecessor[tid] = best
        length[tid] = 1 + (length[best] if best is not None else 0)

    longest = max(length.values())
    end = min(tid for tid, n in length.items() if n == longest)

    path: list[str] = []
    current: Optional[str] = end
    while current is not None:
        path.append(current)
        current = predecessor[current]
    path.reverse()
    return path


def build_graph(
    tasks: Iterable[Task], assignments: Iterable[TaskAssignment] = ()
) -> DependencyGraph:
    """Build the dependency graph for a set of tasks.

    A task with an assignment takes its status from the assignment. Any other
    task is blocked while at least one dependency is not completed, and ready
    otherwise. A failed task leaves its dependents blocked.

    Args:
        tasks: The plan's tasks.
        assignments: Assignments for those tasks; the latest per task wins.

    Returns:
        A new DependencyGraph.

    Raises:
        MalformedGraph: If ids repeat, a dependency is unknown, or there is a cycle.
    """
    task_list = list(tasks)
    task_ids = [task.id for task in task_list]
    if len(set(task_ids)) != len(task_ids):
        duplicates = sorted({tid for tid in task_ids if task_ids.count(tid) > 1})
        raise MalformedGraph(f"Duplicate task ids: {', '.join(duplicates)}", task_ids=duplicates)

    known = set(task_ids)
    dependencies: dict[str, frozenset[str]] = {}
    dependents: dict[str, set[str]] = {tid: set() for tid in task_ids}
    edges: list[tuple[str, str]] = []

    for task in task_list:
        dangling = sorted(task.blocked_by - known)
        if dangling:
            raise MalformedGraph(
                f"Task {task.id} depends on unknown tasks: {', '.join(dangling)}",
                task_ids=[task.id, *dangling],
            )
        dependencies[task.id] = frozenset(task.blocked_by)
        for dep in task.blocked_by:
            dependents[dep].add(task.id)
            edges.append((dep, task.id))

    indegree = {tid: len(dependencies[tid]) for tid in task_ids}
    order = _topological_order(task_ids, dependents, indegree)
    critical = _critical_path(order, dependencies)

    latest = _latest_assignments(assignments)
    statuses: dict[str, NodeStatus] = {}
    for tid in order:
        assignment = latest.get(tid)
        if assignment is not None:
            statuses[tid] = _ASSIGNMENT_TO_NODE_STATUS[assignment.status]
        elif all(statuses[dep] == NodeStatus.COMPLETED for dep in dependencies[tid]):
            statuses[tid] = NodeStatus.READY
        else:
            statuses[tid] = NodeStatus.BLOCKED

    nodes = {
        tid: TaskNode(
            task_id=tid,
            status=statuses[tid],
            dependencies=dependencies[tid],
            dependents=frozenset(dependents[tid]),
            assignment=latest.get(tid),
        )
        for tid in order
    }

    return DependencyGraph(
        nodes=nodes,
        edges=tuple(sorted(edges)),
        roots=frozenset(tid for tid in task_ids if not dependencies[tid]),
        leaves=frozenset(tid for tid in task_ids if not dependents[tid]),
        critical_path=tuple(critical),
        max_depth=len(critical),
        topological_order=tuple(order),
    )
