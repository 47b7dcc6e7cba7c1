"""Tests for research/task_graph.py -- dependency graph of sub-tasks.

Covers insertion and rejection rules, readiness, transitions with blocking
propagation, priority ordering, and snapshot isolation.
"""

import pytest

from models.schemas import RejectionReason, SubTaskStatus
from research.errors import InvalidTransitionError, TaskNotFoundError
from research.task_graph import TaskGraph
from tests.conftest import make_result, proposal


def _run(graph: TaskGraph, task_id: str, confidence: float = 0.8) -> None:
    graph.mark_running(task_id)
    graph.mark_completed(task_id, make_result(conclusion=task_id, confidence=confidence))


def _fail(graph: TaskGraph, task_id: str, reason: str = "boom") -> None:
    graph.mark_running(task_id)
    graph.mark_failed(task_id, reason)


# =========================================================================
# Insertion
# =========================================================================


class TestAddTasks:
    """Validation of proposal batches."""

    def test_independent_tasks_are_ready(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks([proposal("a"), proposal("b")])

        assert [task.id for task in added.accepted] == ["a", "b"]
        assert added.rejected == []
        assert all(task.status == SubTaskStatus.READY for task in added.accepted)

    def test_dependent_task_starts_pending(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a"), proposal("b", dependencies=["a"])])

        assert graph.get("a").status == SubTaskStatus.READY
        assert graph.get("b").status == SubTaskStatus.PENDING

    def test_missing_ids_are_assigned(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks([proposal(None, title="first"), proposal(None, title="second")])

        ids = [task.id for task in added.accepted]
        assert ids == ["subtask_1", "subtask_2"]

    def test_assigned_id_skips_explicit_ids_in_batch(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks([proposal(None, title="auto"), proposal("subtask_1")])

        ids = {task.id for task in added.accepted}
        assert ids == {"subtask_1", "subtask_2"}

    def test_duplicate_id_against_graph_rejected(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        added = graph.add_tasks([proposal("a", title="again")])

        assert added.accepted == []
        assert added.rejected[0].reason == RejectionReason.DUPLICATE_ID
        assert graph.get("a").title == "a"

    def test_duplicate_id_within_batch_rejected(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks([proposal("a"), proposal("a", title="twin")])

        assert [task.id for task in added.accepted] == ["a"]
        assert [r.reason for r in added.rejected] == [RejectionReason.DUPLICATE_ID]

    def test_unknown_dependency_rejected(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks([proposal("a", dependencies=["ghost"])])

        assert added.accepted == []
        assert added.rejected[0].reason == RejectionReason.UNKNOWN_DEPENDENCY
        assert "ghost" in added.rejected[0].detail
        assert "a" not in graph

    def test_unknown_dependency_cascades_through_batch(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks(
            [
                proposal("a", dependencies=["ghost"]),
                proposal("b", dependencies=["a"]),
                proposal("c"),
            ]
        )

        assert [task.id for task in added.accepted] == ["c"]
        assert {r.proposal.id for r in added.rejected} == {"a", "b"}
        assert all(r.reason == RejectionReason.UNKNOWN_DEPENDENCY for r in added.rejected)

    def test_dependencies_may_reference_existing_tasks(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        added = graph.add_tasks([proposal("b", dependencies=["a"])], proposed_by="a", iteration=1)

        task = added.accepted[0]
        assert task.dependencies == ("a",)
        assert task.proposed_by == "a"
        assert task.iteration == 1

    def test_duplicate_dependencies_are_collapsed(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        added = graph.add_tasks([proposal("b", dependencies=["a", "a", " a "])])

        assert added.accepted[0].dependencies == ("a",)


# =========================================================================
# Acyclicity
# =========================================================================


class TestAcyclicity:
    """A proposal closing a cycle is refused and the graph stays acyclic."""

    def test_two_node_cycle_rejected(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks(
            [proposal("a", dependencies=["b"]), proposal("b", dependencies=["a"])]
        )

        assert added.accepted == []
        assert {r.reason for r in added.rejected} == {RejectionReason.WOULD_CYCLE}

    def test_self_dependency_rejected(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks([proposal("a", dependencies=["a"])])

        assert added.rejected[0].reason == RejectionReason.WOULD_CYCLE

    def test_cycle_members_recorded_as_failed_without_edges(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a", dependencies=["b"]), proposal("b", dependencies=["a"])])

        for task_id in ("a", "b"):
            task = graph.get(task_id)
            assert task.status == SubTaskStatus.FAILED
            assert task.dependencies == ()
            assert "would_cycle" in (task.error or "")

    def test_dependent_of_cycle_member_rejected(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks(
            [
                proposal("a", dependencies=["b"]),
                proposal("b", dependencies=["a"]),
                proposal("c", dependencies=["a"]),
                proposal("d"),
            ]
        )

        assert [task.id for task in added.accepted] == ["d"]
        reasons = {r.proposal.id: r.reason for r in added.rejected}
        assert reasons["c"] == RejectionReason.UNKNOWN_DEPENDENCY
        assert "c" not in graph

    def test_cycle_rejection_leaves_rest_of_batch(self) -> None:
        graph = TaskGraph()
        added = graph.add_tasks(
            [
                proposal("x"),
                proposal("y", dependencies=["x"]),
                proposal("p", dependencies=["q"]),
                proposal("q", dependencies=["r"]),
                proposal("r", dependencies=["p"]),
            ]
        )

        assert [task.id for task in added.accepted] == ["x", "y"]
        assert {r.proposal.id for r in added.rejected} == {"p", "q", "r"}

    def test_graph_stays_acyclic_over_many_batches(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a"), proposal("b", dependencies=["a"])])
        graph.add_tasks([proposal("c", dependencies=["b"]), proposal("d", dependencies=["c", "a"])])
        graph.add_tasks([proposal("e", dependencies=["e"])])

        snapshot = graph.snapshot()
        edges = {task.id: set(task.dependencies) for task in snapshot.tasks}
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(node: str) -> None:
            assert node not in visiting, f"cycle through {node}"
            if node in done:
                return
            visiting.add(node)
            for dep in edges[node]:
                assert dep in edges
                visit(dep)
            visiting.discard(node)
            done.add(node)

        for node in edges:
            visit(node)


# =========================================================================
# Readiness
# =========================================================================


class TestReadiness:
    """Ready exactly when every dependency completed."""

    def test_completion_promotes_dependents(self) -> None:
        graph = TaskGraph()
        graph.add_tasks(
            [
                proposal("a"),
                proposal("b"),
                proposal("c", dependencies=["a", "b"]),
            ]
        )

        _run(graph, "a")
        assert graph.get("c").status == SubTaskStatus.PENDING
        _run(graph, "b")
        assert graph.get("c").status == SubTaskStatus.READY

    def test_ready_tasks_never_have_incomplete_dependencies(self) -> None:
        graph = TaskGraph()
        graph.add_tasks(
            [
                proposal("a"),
                proposal("b", dependencies=["a"]),
                proposal("c", dependencies=["b"]),
                proposal("d"),
            ]
        )
        _run(graph, "a")

        for task in graph.ready_tasks():
            for dep in task.dependencies:
                assert graph.get(dep).status == SubTaskStatus.COMPLETED

    def test_new_task_on_completed_dependency_is_ready(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        _run(graph, "a")
        added = graph.add_tasks([proposal("b", dependencies=["a"])])

        assert added.accepted[0].status == SubTaskStatus.READY

    def test_new_task_on_failed_dependency_is_blocked(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        _fail(graph, "a")
        added = graph.add_tasks([proposal("b", dependencies=["a"])])

        assert added.accepted[0].status == SubTaskStatus.BLOCKED

    def test_ready_order_is_priority_then_insertion(self) -> None:
        graph = TaskGraph()
        graph.add_tasks(
            [
                proposal("low", priority="low"),
                proposal("med1", priority="medium"),
                proposal("high", priority="high"),
                proposal("med2", priority="medium"),
            ]
        )

        assert [task.id for task in graph.ready_tasks()] == ["high", "med1", "med2", "low"]


# =========================================================================
# Transitions
# =========================================================================


class TestTransitions:
    """Allowed moves, terminal states and blocking propagation."""

    def test_mark_running_requires_ready(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a"), proposal("b", dependencies=["a"])])

        with pytest.raises(InvalidTransitionError):
            graph.mark_running("b")

    def test_unknown_task_raises(self) -> None:
        graph = TaskGraph()

        with pytest.raises(TaskNotFoundError):
            graph.mark_running("missing")
        with pytest.raises(TaskNotFoundError):
            graph.get("missing")

    def test_completed_is_terminal(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        _run(graph, "a")

        with pytest.raises(InvalidTransitionError):
            graph.mark_running("a")
        with pytest.raises(InvalidTransitionError):
            graph.mark_failed("a", "late failure")
        with pytest.raises(InvalidTransitionError):
            graph.mark_completed("a", make_result())
        assert graph.get("a").status == SubTaskStatus.COMPLETED

    def test_failed_is_terminal(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        _fail(graph, "a")

        with pytest.raises(InvalidTransitionError):
            graph.mark_completed("a", make_result())
        with pytest.raises(InvalidTransitionError):
            graph.mark_running("a")
        assert graph.get("a").status == SubTaskStatus.FAILED
        assert graph.get("a").error == "boom"

    def test_mark_completed_requires_running(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])

        with pytest.raises(InvalidTransitionError):
            graph.mark_completed("a", make_result())

    def test_attached_result_unaffected_by_caller_mutation(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        result = make_result(conclusion="a")
        graph.mark_running("a")

        returned = graph.mark_completed("a", result)
        result.evidence.append("tampered")
        returned.result.evidence.append("tampered")

        assert graph.get("a").result.evidence == ["evidence for a"]

    def test_failure_blocks_transitive_dependents(self) -> None:
        graph = TaskGraph()
        graph.add_tasks(
            [
                proposal("a"),
                proposal("b", dependencies=["a"]),
                proposal("c", dependencies=["b"]),
                proposal("d"),
            ]
        )
        _fail(graph, "a")

        assert graph.get("b").status == SubTaskStatus.BLOCKED
        assert graph.get("c").status == SubTaskStatus.BLOCKED
        assert graph.get("d").status == SubTaskStatus.READY
        assert "'a'" in (graph.get("b").error or "")

    def test_blocked_task_cannot_run(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a"), proposal("b", dependencies=["a"])])
        _fail(graph, "a")

        with pytest.raises(InvalidTransitionError):
            graph.mark_running("b")

    def test_counts_include_every_status(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a"), proposal("b", dependencies=["a"]), proposal("c")])
        _fail(graph, "a")
        _run(graph, "c")

        counts = graph.counts()
        assert set(counts) == set(SubTaskStatus)
        assert counts[SubTaskStatus.FAILED] == 1
        assert counts[SubTaskStatus.BLOCKED] == 1
        assert counts[SubTaskStatus.COMPLETED] == 1
        assert counts[SubTaskStatus.READY] == 0


# =========================================================================
# Snapshots
# =========================================================================


class TestSnapshot:
    """Snapshots are deep, ordered and idempotent."""

    def test_snapshot_without_mutation_is_equal(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a"), proposal("b", dependencies=["a"])])
        _run(graph, "a")

        assert graph.snapshot() == graph.snapshot()

    def test_snapshot_is_insertion_ordered(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("z"), proposal("a")])
        graph.add_tasks([proposal("m")])

        assert [task.id for task in graph.snapshot().tasks] == ["z", "a", "m"]

    def test_snapshot_result_is_a_copy(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        _run(graph, "a")

        snapshot = graph.snapshot()
        snapshot.tasks[0].result.evidence.append("tampered")

        assert "tampered" not in graph.get("a").result.evidence
        assert graph.snapshot() != snapshot

    def test_snapshot_not_affected_by_later_changes(self) -> None:
        graph = TaskGraph()
        graph.add_tasks([proposal("a")])
        before = graph.snapshot()
        _run(graph, "a")

        assert before.get("a").status == SubTaskStatus.READY
        assert graph.snapshot().get("a").status == SubTaskStatus.COMPLETED
