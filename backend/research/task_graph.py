"""Dependency graph of research sub-tasks.

The graph owns every sub-task of a run. Nodes live in an append-only arena
keyed by id and reference their dependencies by id, so the structure never
holds object cycles. All mutation happens under one re-entrant lock, which lets
executor workers report completions concurrently without extra coordination.

Callers only ever receive frozen ``SubTask`` views or a ``GraphSnapshot``;
mutating either has no effect on the graph.
"""

import threading
from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from models.schemas import (
    AddTasksResult,
    GraphSnapshot,
    Priority,
    Rejection,
    RejectionReason,
    SubTask,
    SubTaskProposal,
    SubTaskResult,
    SubTaskStatus,
)
from research.errors import InvalidTransitionError, StructuralGraphError, TaskNotFoundError

logger = structlog.get_logger(__name__)

_DEAD = frozenset({SubTaskStatus.FAILED, SubTaskStatus.BLOCKED})


@dataclass
class _TaskNode:
    """Mutable arena entry. Never handed out directly."""

    id: str
    title: str
    description: str
    priority: Priority
    dependencies: tuple[str, ...]
    sequence: int
    iteration: int
    proposed_by: str | None = None
    status: SubTaskStatus = SubTaskStatus.PENDING
    result: SubTaskResult | None = None
    error: str | None = None

    def view(self) -> SubTask:
        return SubTask(
            id=self.id,
            title=self.title,
            description=self.description,
            priority=self.priority,
            dependencies=self.dependencies,
            status=self.status,
            result=self.result.model_copy(deep=True) if self.result else None,
            error=self.error,
            proposed_by=self.proposed_by,
            sequence=self.sequence,
            iteration=self.iteration,
        )


class TaskGraph:
    """Arena of sub-tasks with dependency edges, readiness and transitions.

    Invariants held at all times:
        - every dependency id names a node in the graph
        - the dependency relation is acyclic
        - a node becomes running only when all of its dependencies completed
        - completed and failed are terminal
    """

    def __init__(self) -> None:
        self._nodes: dict[str, _TaskNode] = {}
        self._dependents: dict[str, list[str]] = {}
        self._sequence = 0
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._nodes

    # -------------------------------------------------------------------------
    # Insertion
    # -------------------------------------------------------------------------

    def add_tasks(
        self,
        proposals: Iterable[SubTaskProposal],
        proposed_by: str | None = None,
        iteration: int = 0,
    ) -> AddTasksResult:
        """Validate a batch of proposals and commit the acceptable ones.

        Dependencies may point at nodes already in the graph or at other
        members of the batch. The cycle check runs against the prospective
        graph before anything is committed. Proposals that would close a cycle
        are recorded as failed nodes without edges so the refusal stays
        visible in snapshots. A member whose dependency was rejected is
        rejected too.

        Args:
            proposals: Candidate sub-tasks in proposal order.
            proposed_by: Id of the sub-task whose result proposed the batch.
            iteration: Pass number the batch belongs to.

        Returns:
            Accepted views (in batch order) and the rejections with reasons.
        """
        with self._lock:
            batch = list(proposals)
            rejected: list[Rejection] = []
            candidates: dict[str, SubTaskProposal] = {}

            explicit_ids = {
                proposal.id.strip()
                for proposal in batch
                if proposal.id and proposal.id.strip()
            }
            taken = set(self._nodes) | explicit_ids
            for proposal in batch:
                task_id = proposal.id.strip() if proposal.id and proposal.id.strip() else None
                if task_id is None:
                    task_id = self._next_task_id(taken)
                    taken.add(task_id)
                normalized = proposal.model_copy(
                    update={"id": task_id, "dependencies": _dedupe(proposal.dependencies)}
                )
                if task_id in self._nodes or task_id in candidates:
                    rejected.append(
                        _reject(
                            normalized,
                            RejectionReason.DUPLICATE_ID,
                            f"id '{task_id}' already exists",
                        )
                    )
                    continue
                candidates[task_id] = normalized

            self._reject_unknown(candidates, rejected)

            cycle_members = [candidates.pop(task_id) for task_id in self._cycle_members(candidates)]
            # Members that depended on a cycle member go the same way.
            self._reject_unknown(candidates, rejected)

            for proposal in cycle_members:
                task_id = str(proposal.id)
                rejected.append(
                    _reject(
                        proposal,
                        RejectionReason.WOULD_CYCLE,
                        f"dependencies of '{task_id}' would close a cycle",
                    )
                )
                self._insert_node(proposal, (), proposed_by, iteration)
                node = self._nodes[task_id]
                node.status = SubTaskStatus.FAILED
                node.error = str(
                    StructuralGraphError(RejectionReason.WOULD_CYCLE, "rejected: dependency cycle")
                )

            accepted_ids: list[str] = []
            for task_id, proposal in candidates.items():
                self._insert_node(proposal, tuple(proposal.dependencies), proposed_by, iteration)
                accepted_ids.append(task_id)

            self._propagate_blocking()
            self._promote_ready()

            if rejected:
                logger.warning(
                    "task_proposals_rejected",
                    count=len(rejected),
                    reasons=[rejection.reason.value for rejection in rejected],
                    proposed_by=proposed_by,
                )
            logger.debug(
                "task_proposals_accepted",
                accepted=accepted_ids,
                proposed_by=proposed_by,
                iteration=iteration,
            )

            return AddTasksResult(
                accepted=[self._nodes[task_id].view() for task_id in accepted_ids],
                rejected=rejected,
            )

    def _next_task_id(self, taken: set[str]) -> str:
        index = len(self._nodes) + 1
        while f"subtask_{index}" in taken:
            index += 1
        return f"subtask_{index}"

    def _reject_unknown(
        self,
        candidates: dict[str, SubTaskProposal],
        rejected: list[Rejection],
    ) -> None:
        """Drop candidates with dependencies outside the graph and the batch.

        Repeats until stable so rejections cascade through the batch.
        """
        changed = True
        while changed:
            changed = False
            for task_id, proposal in list(candidates.items()):
                missing = [
                    dep
                    for dep in proposal.dependencies
                    if dep not in self._nodes and dep not in candidates
                ]
                if missing:
                    del candidates[task_id]
                    rejected.append(
                        _reject(
                            proposal,
                            RejectionReason.UNKNOWN_DEPENDENCY,
                            f"unknown dependencies: {', '.join(missing)}",
                        )
                    )
                    changed = True

    @staticmethod
    def _cycle_members(candidates: dict[str, SubTaskProposal]) -> list[str]:
        """Return batch members that sit on a dependency cycle, in batch order.

        Existing nodes never depend on new ones, so any cycle in the
        prospective graph runs entirely through the batch.
        """
        edges = {
            task_id: [dep for dep in proposal.dependencies if dep in candidates]
            for task_id, proposal in candidates.items()
        }

        # Kahn's algorithm: whatever cannot be ordered is on a cycle or
        # depends on one.
        remaining = {task_id: len(deps) for task_id, deps in edges.items()}
        dependents: dict[str, list[str]] = {task_id: [] for task_id in edges}
        for task_id, deps in edges.items():
            for dep in deps:
                dependents[dep].append(task_id)
        queue = [task_id for task_id, count in remaining.items() if count == 0]
        while queue:
            current = queue.pop()
            del remaining[current]
            for dependent in dependents[current]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    queue.append(dependent)

        unordered = set(remaining)
        members: list[str] = []
        for task_id in candidates:
            if task_id in unordered and _reaches(task_id, task_id, edges, unordered):
                members.append(task_id)
        return members

    def _insert_node(
        self,
        proposal: SubTaskProposal,
        dependencies: tuple[str, ...],
        proposed_by: str | None,
        iteration: int,
    ) -> None:
        task_id = str(proposal.id)
        self._sequence += 1
        self._nodes[task_id] = _TaskNode(
            id=task_id,
            title=proposal.title,
            description=proposal.description,
            priority=proposal.priority,
            dependencies=dependencies,
            sequence=self._sequence,
            iteration=iteration,
            proposed_by=proposed_by,
        )
        self._dependents.setdefault(task_id, [])
        for dep in dependencies:
            self._dependents.setdefault(dep, []).append(task_id)

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def _propagate_blocking(self) -> None:
        """Block every pending or ready node with a failed or blocked dependency."""
        changed = True
        while changed:
            changed = False
            for node in self._nodes.values():
                if node.status not in (SubTaskStatus.PENDING, SubTaskStatus.READY):
                    continue
                dead = [dep for dep in node.dependencies if self._nodes[dep].status in _DEAD]
                if dead:
                    node.status = SubTaskStatus.BLOCKED
                    node.error = f"dependency '{dead[0]}' did not complete"
                    changed = True

    def _promote_ready(self) -> None:
        for node in self._nodes.values():
            if node.status == SubTaskStatus.PENDING and all(
                self._nodes[dep].status == SubTaskStatus.COMPLETED
                for dep in node.dependencies
            ):
                node.status = SubTaskStatus.READY

    def ready_tasks(self) -> list[SubTask]:
        """Return every ready task, highest priority first, then insertion order."""
        with self._lock:
            self._promote_ready()
            ready = [
                node for node in self._nodes.values() if node.status == SubTaskStatus.READY
            ]
            ready.sort(key=lambda node: (node.priority.rank, node.sequence))
            return [node.view() for node in ready]

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _require(self, task_id: str, expected: SubTaskStatus, target: SubTaskStatus) -> _TaskNode:
        node = self._nodes.get(task_id)
        if node is None:
            raise TaskNotFoundError(task_id)
        if node.status != expected:
            raise InvalidTransitionError(task_id, node.status.value, target.value)
        return node

    def mark_running(self, task_id: str) -> SubTask:
        """Move a ready task to running."""
        with self._lock:
            node = self._require(task_id, SubTaskStatus.READY, SubTaskStatus.RUNNING)
            if any(
                self._nodes[dep].status != SubTaskStatus.COMPLETED for dep in node.dependencies
            ):
                raise InvalidTransitionError(
                    task_id, node.status.value, SubTaskStatus.RUNNING.value
                )
            node.status = SubTaskStatus.RUNNING
            return node.view()

    def mark_completed(self, task_id: str, result: SubTaskResult) -> SubTask:
        """Attach ``result`` to a running task and promote its eligible dependents."""
        with self._lock:
            node = self._require(task_id, SubTaskStatus.RUNNING, SubTaskStatus.COMPLETED)
            node.status = SubTaskStatus.COMPLETED
            node.result = result.model_copy(deep=True)
            for dependent_id in self._dependents.get(task_id, []):
                dependent = self._nodes[dependent_id]
                if dependent.status == SubTaskStatus.PENDING and all(
                    self._nodes[dep].status == SubTaskStatus.COMPLETED
                    for dep in dependent.dependencies
                ):
                    dependent.status = SubTaskStatus.READY
            return node.view()

    def mark_failed(self, task_id: str, reason: str) -> SubTask:
        """Fail a running task and block everything that transitively depends on it."""
        with self._lock:
            node = self._require(task_id, SubTaskStatus.RUNNING, SubTaskStatus.FAILED)
            node.status = SubTaskStatus.FAILED
            node.error = reason

            blocked: list[str] = []
            stack = list(self._dependents.get(task_id, []))
            while stack:
                dependent = self._nodes[stack.pop()]
                if dependent.status not in (SubTaskStatus.PENDING, SubTaskStatus.READY):
                    continue
                dependent.status = SubTaskStatus.BLOCKED
                dependent.error = f"dependency '{task_id}' did not complete"
                blocked.append(dependent.id)
                stack.extend(self._dependents.get(dependent.id, []))

            if blocked:
                logger.info("dependents_blocked", task_id=task_id, blocked=blocked)
            return node.view()

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    def get(self, task_id: str) -> SubTask:
        """Return a view of one task. Raises TaskNotFoundError when unknown."""
        with self._lock:
            node = self._nodes.get(task_id)
            if node is None:
                raise TaskNotFoundError(task_id)
            return node.view()

    def counts(self) -> dict[SubTaskStatus, int]:
        """Number of tasks per status, with every status present."""
        with self._lock:
            totals = {status: 0 for status in SubTaskStatus}
            for node in self._nodes.values():
                totals[node.status] += 1
            return totals

    def snapshot(self) -> GraphSnapshot:
        """Deep copy of the graph in insertion order."""
        with self._lock:
            return GraphSnapshot(tasks=tuple(node.view() for node in self._nodes.values()))


def _dedupe(dependencies: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for dep in dependencies:
        dep = dep.strip()
        if dep and dep not in seen:
            seen.add(dep)
            result.append(dep)
    return result


def _reject(proposal: SubTaskProposal, reason: RejectionReason, detail: str) -> Rejection:
    return Rejection(proposal=proposal, reason=reason, detail=detail)


def _reaches(start: str, target: str, edges: dict[str, list[str]], allowed: set[str]) -> bool:
    """True when ``target`` is reachable from ``start`` by following dependencies."""
    stack = [dep for dep in edges[start] if dep in allowed]
    visited: set[str] = set()
    while stack:
        current = stack.pop()
        if current == target:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(dep for dep in edges[current] if dep in allowed)
    return False
