"""Tests for the workflow engine facade."""

import threading

import pytest

from decision_engine.core.config import EngineConfig
from decision_engine.core.errors import (
    GraphValidationError,
    HistoryCorruptedError,
    InvalidTransitionError,
    RunNotFoundError,
    StaleEligibilityError,
    TreeNotFoundError,
    UnresolvedBranchError,
)
from decision_engine.core.models import ExecutionStatus
from decision_engine.storage.file_store import FileStore
from decision_engine.storage.memory import InMemoryStore
from decision_engine.workflow.engine import WorkflowEngine

from tree_fixtures import PROJECT_ID, cond, fallback_cond, op


def _ids(eligible):
    return [e.operation_id for e in eligible]


@pytest.fixture
def run(prep_engine):
    return prep_engine.start_run(PROJECT_ID, "alice", {"skill": "beginner"}, run_id="run-1")


class TestPublishing:
    def test_publish_assigns_versions_and_activates(self, engine):
        first = engine.publish_tree(PROJECT_ID, "v1", [op("A")])
        second = engine.publish_tree(PROJECT_ID, "v2", [op("A"), op("B", ["A"])])

        assert (first.version, second.version) == (1, 2)
        assert second.is_active
        assert [t.version for t in engine.list_trees(PROJECT_ID)] == [2, 1]
        assert [t.is_active for t in engine.list_trees(PROJECT_ID)] == [True, False]

    def test_operations_rebound_to_new_tree(self, engine, store):
        tree = engine.publish_tree(PROJECT_ID, "v1", [op("A", tree_id="draft")])
        assert store.load_tree(tree.id).operations[0].decision_tree_id == tree.id

    def test_invalid_tree_rejected_before_saving(self, engine):
        cyclic = [op("A", ["C"]), op("B", ["A"]), op("C", ["B"])]

        with pytest.raises(GraphValidationError, match="dependency cycle"):
            engine.publish_tree(PROJECT_ID, "broken", cyclic)
        assert engine.list_trees(PROJECT_ID) == []

    def test_publish_without_activation(self, engine):
        engine.publish_tree(PROJECT_ID, "v1", [op("A")], tree_id="t1")
        draft = engine.publish_tree(PROJECT_ID, "v2", [op("A")], tree_id="t2", activate=False)

        assert not draft.is_active
        assert engine.store.load_active_tree_for_project(PROJECT_ID) == "t1"

        engine.activate_tree(PROJECT_ID, "t2")
        assert engine.store.load_active_tree_for_project(PROJECT_ID) == "t2"

    def test_published_tree_id_cannot_be_reused(self, engine):
        engine.publish_tree(PROJECT_ID, "v1", [op("A")], tree_id="t1")
        with pytest.raises(GraphValidationError, match="already published"):
            engine.publish_tree(PROJECT_ID, "v2", [op("A")], tree_id="t1")

    def test_strict_condition_types_from_config(self, store):
        engine = WorkflowEngine(store, EngineConfig(resolver={"strict_condition_types": True}))
        with pytest.raises(GraphValidationError, match="unknown type"):
            engine.publish_tree(
                PROJECT_ID, "v1",
                [op("A"), op("B", ["A"])],
                [cond("A", "moon_phase", next_op="B", priority=1)],
            )

    def test_graph_cached(self, prep_engine):
        assert prep_engine.load_graph("tree-1") is prep_engine.load_graph("tree-1")


class TestStartRun:
    def test_run_pinned_to_active_tree(self, prep_engine):
        run = prep_engine.start_run(PROJECT_ID, "alice", {"skill": "beginner"})
        assert run.decision_tree_id == "tree-1"
        assert run.context == {"skill": "beginner"}

    def test_no_active_tree(self, engine):
        with pytest.raises(TreeNotFoundError):
            engine.start_run(PROJECT_ID, "alice")

    def test_invalid_stored_tree_blocks_run(self, store):
        from tree_fixtures import make_tree, rows_of

        store.save_tree(rows_of([op("A", ["B"]), op("B", ["A"])], tree=make_tree(is_active=True)))
        engine = WorkflowEngine(store)

        with pytest.raises(GraphValidationError):
            engine.start_run(PROJECT_ID, "alice")

    def test_later_versions_do_not_change_running_runs(self, prep_engine, run):
        prep_engine.publish_tree(PROJECT_ID, "v2", [op("Q")], tree_id="tree-2")

        assert _ids(prep_engine.get_eligible_operations(run.id)) == ["P1"]
        new_run = prep_engine.start_run(PROJECT_ID, "bob")
        assert _ids(prep_engine.get_eligible_operations(new_run.id)) == ["Q"]


class TestEligibleOperations:
    def test_initial(self, prep_engine, run):
        eligible = prep_engine.get_eligible_operations(run.id)

        assert len(eligible) == 1
        first = eligible[0]
        assert first.operation_id == "P1"
        assert first.phase_name == "Prep"
        assert first.is_optional is False
        assert first.parallel_group is None
        assert first.status is None

    def test_started_operation_shows_status(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "in_progress")
        eligible = prep_engine.get_eligible_operations(run.id)
        assert eligible[0].status == ExecutionStatus.IN_PROGRESS

    def test_unknown_run(self, prep_engine):
        with pytest.raises(RunNotFoundError):
            prep_engine.get_eligible_operations("ghost")


class TestRecordDecision:
    def test_branch_recorded_and_followed(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "P1", "complete", {"skill": "beginner"})

        assert result.ok
        assert result.record.chosen_path == "field_equals"
        assert result.record.next_operation_id == "P2a"
        assert result.record.chosen_condition_id == "P1:1"

        eligible = _ids(prep_engine.get_eligible_operations(run.id))
        assert "P2a" in eligible
        assert "P2b" not in eligible

    def test_branch_uses_start_context(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "P1", "complete")
        assert result.record.chosen_path == "field_equals"

    def test_decision_data_overrides_start_context(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "P1", "complete", {"skill": "expert"})
        assert result.record.chosen_path == "fallback"
        assert result.record.next_operation_id == "P2b"

    def test_plain_operation_gets_default_path(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "complete")
        result = prep_engine.record_decision(run.id, "P3", "complete")
        assert result.record.chosen_path == "default"

    def test_parallel_group_after_root(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "complete")
        eligible = prep_engine.get_eligible_operations(run.id)

        grouped = [e.operation_id for e in eligible if e.parallel_group == "g1"]
        assert grouped == ["P3", "P4"]

    def test_idempotent(self, prep_engine, run):
        first = prep_engine.record_decision(run.id, "P1", "complete")
        second = prep_engine.record_decision(run.id, "P1", "complete")

        assert second.ok
        assert second.deduplicated
        assert second.record.id == first.record.id
        assert len(prep_engine.get_history(run.id)) == 1

    def test_conflicting_terminal_status(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "complete")
        result = prep_engine.record_decision(run.id, "P1", "failed")

        assert not result.ok
        assert isinstance(result.error, InvalidTransitionError)
        assert len(prep_engine.get_history(run.id)) == 1

    def test_stale_operation(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "P6", "complete")

        assert isinstance(result.error, StaleEligibilityError)
        assert result.error.eligible == ["P1"]
        assert prep_engine.get_history(run.id) == []

    def test_unknown_operation_is_stale(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "ghost", "complete")
        assert isinstance(result.error, StaleEligibilityError)

    def test_unknown_status(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "P1", "done")
        assert isinstance(result.error, InvalidTransitionError)
        assert "unknown status" in str(result.error)

    def test_skip_optional(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "complete")
        result = prep_engine.record_decision(run.id, "P5", "skipped")

        assert result.ok
        assert "P6" in _ids(prep_engine.get_eligible_operations(run.id))

    def test_skip_required_without_fallback_rejected(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "P1", "skipped")

        assert isinstance(result.error, InvalidTransitionError)
        assert "may be skipped" in str(result.error)

    def test_skip_required_with_fallback_allowed(self, engine):
        engine.publish_tree(PROJECT_ID, "t", [
            op("A", order=1, fallback_operation_id="B"),
            op("B", order=2),
            op("C", ["A"], order=3),
        ])
        run = engine.start_run(PROJECT_ID, "alice")

        assert engine.record_decision(run.id, "A", "skipped").ok
        assert _ids(engine.get_eligible_operations(run.id)) == ["B"]
        engine.record_decision(run.id, "B", "complete")
        assert _ids(engine.get_eligible_operations(run.id)) == ["C"]

    def test_unresolved_branch_reported(self, engine):
        engine.publish_tree(
            PROJECT_ID, "t",
            [op("A", order=1), op("B", ["A"], order=2)],
            [cond("A", "field_equals", {"go": True}, next_op="B", priority=1)],
        )
        run = engine.start_run(PROJECT_ID, "alice")

        result = engine.record_decision(run.id, "A", "complete", {"go": False})

        assert result.ok
        assert result.record.chosen_path == "unresolved"
        assert isinstance(result.unresolved, UnresolvedBranchError)
        assert result.unresolved.run_id == run.id
        assert engine.get_eligible_operations(run.id) == []

        progress = engine.get_progress(run.id)
        assert progress.unresolved == ("A",)
        assert not progress.is_finished

    def test_dead_end_with_fallback_operation_not_unresolved(self, engine):
        engine.publish_tree(
            PROJECT_ID, "t",
            [op("A", order=1, fallback_operation_id="F"), op("B", ["A"], order=2), op("F", order=3)],
            [cond("A", "field_equals", {"go": True}, next_op="B", priority=1)],
        )
        run = engine.start_run(PROJECT_ID, "alice")

        result = engine.record_decision(run.id, "A", "complete", {"go": False})

        assert result.unresolved is None
        assert _ids(engine.get_eligible_operations(run.id)) == ["F"]

    def test_status_lifecycle(self, prep_engine, run):
        for status in ("pending", "in_progress", "complete"):
            assert prep_engine.record_decision(run.id, "P1", status).ok

        backwards = prep_engine.record_decision(run.id, "P1", "in_progress")
        assert backwards.deduplicated

        history = prep_engine.get_history(run.id)
        assert [r.execution_status.value for r in history] == ["pending", "in_progress", "complete"]

    def test_backwards_transition_rejected(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "in_progress")
        result = prep_engine.record_decision(run.id, "P1", "pending")
        assert isinstance(result.error, InvalidTransitionError)

    def test_acting_user_recorded(self, prep_engine, run):
        result = prep_engine.record_decision(run.id, "P1", "complete", user_id="bob")
        assert result.record.user_id == "bob"
        assert prep_engine.record_decision(run.id, "P3", "complete").record.user_id == "alice"

    def test_unknown_run_raises(self, prep_engine):
        with pytest.raises(RunNotFoundError):
            prep_engine.record_decision("ghost", "P1", "complete")

    def test_concurrent_parallel_completions(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "complete")
        barrier = threading.Barrier(4)
        results = []

        def complete(op_id):
            barrier.wait()
            results.append(prep_engine.record_decision(run.id, op_id, "complete"))

        threads = [threading.Thread(target=complete, args=(o,)) for o in ("P3", "P4", "P3", "P4")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.ok for r in results)
        history = prep_engine.get_history(run.id)
        assert sorted(r.operation_id for r in history) == ["P1", "P3", "P4"]


class TestHistoryAndProgress:
    def test_history_in_append_order(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "complete")
        prep_engine.record_decision(run.id, "P4", "in_progress")
        prep_engine.record_decision(run.id, "P3", "complete")

        assert [r.operation_id for r in prep_engine.get_history(run.id)] == ["P1", "P4", "P3"]

    def test_history_unknown_run(self, prep_engine):
        with pytest.raises(RunNotFoundError):
            prep_engine.get_history("ghost")

    def test_progress_per_phase(self, prep_engine, run):
        prep_engine.record_decision(run.id, "P1", "complete")
        prep_engine.record_decision(run.id, "P3", "in_progress")
        prep_engine.record_decision(run.id, "P5", "skipped")

        progress = prep_engine.get_progress(run.id)
        prep, build = progress.phases

        assert prep.phase_name == "Prep"
        assert (prep.total, prep.complete, prep.skipped, prep.in_progress, prep.unreachable) == (6, 1, 1, 1, 1)
        assert prep.remaining == 3
        assert build.phase_name == "Build"
        assert build.remaining == 1
        assert not progress.is_finished
        assert progress.eligible == ("P2a", "P3", "P4", "P6")

    def test_finished_run(self, prep_engine, run):
        for op_id in ("P1", "P2a", "P3", "P4"):
            prep_engine.record_decision(run.id, op_id, "complete")
        prep_engine.record_decision(run.id, "P5", "skipped")
        prep_engine.record_decision(run.id, "P6", "complete")

        progress = prep_engine.get_progress(run.id)
        assert progress.is_finished
        assert progress.percent_complete == 100.0


class TestFileBackedEngine:
    def test_full_run_on_disk(self, tmp_path):
        engine = WorkflowEngine(FileStore(tmp_path))
        engine.publish_tree(
            PROJECT_ID, "t",
            [op("A", order=1), op("B", ["A"], order=2), op("C", ["A"], order=3)],
            [
                cond("A", "field_in_set", {"wood": ["cedar", "redwood"]}, next_op="B", priority=1),
                fallback_cond("A", next_op="C"),
            ],
        )
        run = engine.start_run(PROJECT_ID, "alice", {"wood": "pine"})
        engine.record_decision(run.id, "A", "complete")

        reopened = WorkflowEngine(FileStore(tmp_path))
        assert _ids(reopened.get_eligible_operations(run.id)) == ["C"]
        assert reopened.get_history(run.id)[0].chosen_path == "fallback"

    def test_truncated_history_stops_the_run(self, tmp_path):
        engine = WorkflowEngine(FileStore(tmp_path))
        engine.publish_tree(PROJECT_ID, "t", [op("A", order=1), op("B", ["A"], order=2)])
        run = engine.start_run(PROJECT_ID, "alice")
        engine.record_decision(run.id, "A", "complete")

        # A crash mid-write leaves half a line behind
        history_file = tmp_path / "history" / f"{run.id}.jsonl"
        content = history_file.read_text()
        history_file.write_text(content[: len(content) // 2])

        with pytest.raises(HistoryCorruptedError):
            engine.get_eligible_operations(run.id)
        with pytest.raises(HistoryCorruptedError):
            engine.record_decision(run.id, "A", "in_progress")
        assert history_file.read_text() == content[: len(content) // 2]


def test_custom_logger_receives_run_events(caplog):
    from decision_engine.utils.rich_logging import setup_rich_logging

    engine_logger = setup_rich_logging("engine-test", log_level="DEBUG")
    engine = WorkflowEngine(InMemoryStore(), engine_logger=engine_logger)
    engine.publish_tree(PROJECT_ID, "t", [op("A")])

    with caplog.at_level("INFO"):
        run = engine.start_run(PROJECT_ID, "alice")
        engine.record_decision(run.id, "A", "complete")

    assert "Starting run against tree" in caplog.text
    assert "Recorded complete for A" in caplog.text


def test_shared_logger_tags_each_run(caplog):
    from decision_engine.utils.rich_logging import setup_rich_logging

    engine_logger = setup_rich_logging("engine-shared-test", log_level="DEBUG")
    engine = WorkflowEngine(InMemoryStore(), engine_logger=engine_logger)
    engine.publish_tree(PROJECT_ID, "t", [op("A"), op("B", ["A"])])
    first = engine.start_run(PROJECT_ID, "alice", run_id="run-a")
    second = engine.start_run(PROJECT_ID, "bob", run_id="run-b")

    with caplog.at_level("INFO"):
        engine.record_decision(first.id, "A", "complete")
        engine.record_decision(second.id, "A", "in_progress")
        engine.record_decision(first.id, "B", "complete")

    recorded = [(r.run_id, r.operation_id) for r in caplog.records if r.getMessage().startswith("Recorded")]
    assert recorded == [("run-a", "A"), ("run-b", "A"), ("run-a", "B")]
    assert engine_logger.current_run_id is None
