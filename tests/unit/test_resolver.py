"""Tests for path resolution: eligibility, branching, fallbacks and parallel groups."""

import random

import pytest

from decision_engine.core.models import ExecutionStatus
from decision_engine.workflow.resolver import (
    CHOSEN_DEFAULT,
    CHOSEN_FALLBACK,
    CHOSEN_UNRESOLVED,
    PathResolver,
    RunState,
    resolve_next,
    select_branch,
)

from tree_fixtures import cond, fallback_cond, graph_of, history_record, op, prep_tree


def _random_dag(seed, size=12):
    rng = random.Random(seed)
    operations = []
    for i in range(size):
        earlier = [f"op{j}" for j in range(i)]
        deps = rng.sample(earlier, k=rng.randint(0, min(3, len(earlier)))) if earlier else []
        group = rng.choice([None, None, "g1", "g2"])
        operations.append(op(f"op{i}", deps, order=rng.randint(0, 5), parallel_group=group))
    return graph_of(operations)


@pytest.fixture
def prep_graph():
    operations, conditions = prep_tree()
    return graph_of(operations, conditions)


class TestSelectBranch:
    def test_first_true_condition_wins(self):
        operations = [op("A"), op("B", ["A"]), op("C", ["A"])]
        conditions = [
            cond("A", "field_present", {"skill": True}, next_op="C", priority=2),
            cond("A", "field_equals", {"skill": "beginner"}, next_op="B", priority=1),
        ]
        graph = graph_of(operations, conditions)

        selection = select_branch(graph.node("A"), {"skill": "beginner"})
        assert selection.chosen_path == "field_equals"
        assert selection.next_operation_id == "B"
        assert selection.condition_id == "A:1"

    def test_catch_all_when_nothing_matches(self, prep_graph):
        selection = select_branch(prep_graph.node("P1"), {"skill": "expert"})
        assert selection.chosen_path == CHOSEN_FALLBACK
        assert selection.next_operation_id == "P2b"
        assert not selection.dead_end

    def test_catch_all_not_taken_when_something_matches(self, prep_graph):
        selection = select_branch(prep_graph.node("P1"), {"skill": "beginner"})
        assert selection.next_operation_id == "P2a"

    def test_no_conditions_is_default(self, prep_graph):
        selection = select_branch(prep_graph.node("P3"), {})
        assert selection.chosen_path == CHOSEN_DEFAULT
        assert selection.next_operation_id is None

    def test_dead_end(self):
        graph = graph_of(
            [op("A"), op("B", ["A"])],
            [cond("A", "field_equals", {"go": True}, next_op="B", priority=1)],
        )
        selection = select_branch(graph.node("A"), {"go": False})
        assert selection.chosen_path == CHOSEN_UNRESOLVED
        assert selection.dead_end

    def test_unknown_type_counts_as_false_and_is_reported(self):
        graph = graph_of(
            [op("A"), op("B", ["A"]), op("C", ["A"])],
            [
                cond("A", "moon_phase", {"phase": "full"}, next_op="B", priority=1),
                fallback_cond("A", next_op="C"),
            ],
        )
        selection = select_branch(graph.node("A"), {"phase": "full"})
        assert selection.next_operation_id == "C"
        assert [e.condition_type for e in selection.configuration_errors] == ["moon_phase"]


class TestEmptyHistory:
    def test_prep_tree_starts_at_root(self, prep_graph):
        assert resolve_next(prep_graph, [], {}) == ["P1"]

    @pytest.mark.parametrize("seed", range(10))
    def test_empty_completed_set_returns_exactly_the_roots(self, seed):
        graph = _random_dag(seed)
        expected = sorted(graph.roots())
        assert sorted(resolve_next(graph, [], {})) == expected


class TestMonotonicity:
    @pytest.mark.parametrize("seed", range(10))
    def test_completing_an_operation_keeps_unrelated_operations_eligible(self, seed):
        graph = _random_dag(seed)
        rng = random.Random(seed + 100)
        completed = set()
        for _ in range(len(graph)):
            before = set(resolve_next(graph, completed, {}))
            candidates = sorted(set(graph.nodes) - completed)
            if not candidates:
                break
            newly = rng.choice(candidates)
            after = set(resolve_next(graph, completed | {newly}, {}))
            for op_id in before - {newly}:
                if newly not in graph.node(op_id).dependencies:
                    assert op_id in after
            completed.add(newly)

    def test_branching_does_not_affect_unrelated_branch(self, prep_graph):
        before = set(resolve_next(prep_graph, ["P1"], {"skill": "beginner"}))
        after = set(resolve_next(prep_graph, ["P1", "P3"], {"skill": "beginner"}))
        assert before - {"P3"} <= after


class TestPrepScenario:
    def test_branch_follows_condition(self, prep_graph):
        eligible = resolve_next(prep_graph, ["P1"], {"skill": "beginner"})
        assert "P2a" in eligible
        assert "P2b" not in eligible

    def test_branch_follows_catch_all(self, prep_graph):
        eligible = resolve_next(prep_graph, ["P1"], {"skill": "expert"})
        assert "P2b" in eligible
        assert "P2a" not in eligible

    def test_parallel_group_returned_together(self, prep_graph):
        resolution = PathResolver(prep_graph).resolve(RunState.from_completed(["P1"], {"skill": "beginner"}))

        assert resolution.eligible == ("P2a", "P3", "P4", "P5")
        assert resolution.parallel_groups == {"g1": ("P3", "P4")}

    def test_untaken_branch_is_unreachable(self, prep_graph):
        resolution = PathResolver(prep_graph).resolve(RunState.from_completed(["P1"], {"skill": "beginner"}))
        assert "P2b" in resolution.unreachable
        assert "P6" in resolution.waiting

    def test_skipped_optional_satisfies_dependents_like_complete(self, prep_graph):
        skipped = RunState.from_records([
            history_record("P1", "complete", chosen_path="field_equals", next_op="P2a"),
            history_record("P5", "skipped"),
        ])
        completed = RunState.from_records([
            history_record("P1", "complete", chosen_path="field_equals", next_op="P2a"),
            history_record("P5", "complete", chosen_path="default"),
        ])
        resolver = PathResolver(prep_graph)

        assert "P6" in resolver.resolve(skipped).eligible
        assert resolver.resolve(skipped).eligible == resolver.resolve(completed).eligible

    def test_recorded_selection_is_used_on_replay(self, prep_graph):
        # The stored branch wins even if the start context would pick another
        state = RunState.from_records(
            [history_record("P1", "complete", chosen_path="fallback", next_op="P2b")],
            start_context={"skill": "beginner"},
        )
        eligible = PathResolver(prep_graph).resolve(state).eligible
        assert "P2b" in eligible
        assert "P2a" not in eligible


class TestNullTarget:
    def test_do_not_advance_prunes_branch_targets_only(self):
        graph = graph_of(
            [op("A"), op("B", ["A"]), op("C", ["A"])],
            [
                cond("A", "field_equals", {"stop": True}, next_op=None, priority=1),
                fallback_cond("A", next_op="B"),
            ],
        )
        assert resolve_next(graph, ["A"], {"stop": True}) == ["C"]
        assert resolve_next(graph, ["A"], {"stop": False}) == ["B", "C"]


class TestDeadEnd:
    @pytest.fixture
    def graph(self):
        return graph_of(
            [op("A"), op("B", ["A"]), op("C", ["A"])],
            [cond("A", "field_equals", {"go": True}, next_op="B", priority=1)],
        )

    def test_dependents_blocked_and_reported(self, graph):
        resolution = PathResolver(graph).resolve(RunState.from_completed(["A"], {"go": False}))

        assert resolution.eligible == ()
        assert resolution.unreachable == ("B", "C")
        assert [e.operation_id for e in resolution.unresolved] == ["A"]

    def test_matching_branch_not_reported(self, graph):
        resolution = PathResolver(graph).resolve(RunState.from_completed(["A"], {"go": True}))
        assert resolution.eligible == ("B", "C")
        assert resolution.unresolved == ()

    def test_dead_end_with_fallback_operation_hands_over(self):
        graph = graph_of(
            [op("A", fallback_operation_id="F"), op("B", ["A"]), op("F")],
            [cond("A", "field_equals", {"go": True}, next_op="B", priority=1)],
        )
        resolver = PathResolver(graph)

        resolution = resolver.resolve(RunState.from_completed(["A"], {"go": False}))
        assert resolution.eligible == ("F",)
        assert resolution.substitutions == {"A": "F"}
        assert resolution.unresolved == ()

        resolution = resolver.resolve(RunState.from_completed(["A", "F"], {"go": False}))
        assert resolution.eligible == ("B",)


class TestFallbackOperation:
    @pytest.fixture
    def graph(self):
        # A dead-ends, so B never runs and X (optional) can never start
        operations = [
            op("A", order=1),
            op("B", ["A"], order=2),
            op("X", ["B"], order=3, is_optional=True, fallback_operation_id="Y"),
            op("Y", order=4),
            op("Z", ["X"], order=5),
        ]
        conditions = [cond("A", "field_equals", {"path": "b"}, next_op="B", priority=1)]
        return graph_of(operations, conditions)

    def test_fallback_eligible_when_optional_operation_is_stuck(self, graph):
        assert resolve_next(graph, ["A"], {"path": "c"}) == ["Y"]

    def test_fallback_stands_in_for_dependents(self, graph):
        resolution = PathResolver(graph).resolve(RunState.from_completed(["A"], {"path": "c"}))
        assert resolution.substitutions == {"X": "Y"}
        assert "Z" in resolution.waiting

        assert resolve_next(graph, ["A", "Y"], {"path": "c"}) == ["Z"]

    def test_fallback_reserved_while_referrer_can_run(self, graph):
        assert resolve_next(graph, ["A"], {"path": "b"}) == ["B"]
        assert resolve_next(graph, ["A", "B"], {"path": "b"}) == ["X"]

    def test_unused_fallback_becomes_unreachable(self, graph):
        resolution = PathResolver(graph).resolve(
            RunState.from_completed(["A", "B", "X", "Z"], {"path": "b"})
        )
        assert resolution.unreachable == ("Y",)
        assert resolution.is_finished

    def test_fallback_waits_for_its_own_dependencies(self):
        operations = [
            op("A", order=1),
            op("B", ["A"], order=2),
            op("X", ["B"], order=3, is_optional=True, fallback_operation_id="Y"),
            op("W", order=4),
            op("Y", ["W"], order=5),
        ]
        conditions = [cond("A", "field_equals", {"path": "b"}, next_op="B", priority=1)]
        graph = graph_of(operations, conditions)

        assert resolve_next(graph, ["A"], {"path": "c"}) == ["W"]
        assert resolve_next(graph, ["A", "W"], {"path": "c"}) == ["Y"]

    def test_skipping_non_optional_with_fallback_substitutes(self):
        graph = graph_of([
            op("A", order=1),
            op("X", ["A"], order=2, fallback_operation_id="Y"),
            op("Y", order=3),
            op("Z", ["X"], order=4),
        ])
        state = RunState.from_records([
            history_record("A", "complete", chosen_path="default"),
            history_record("X", "skipped"),
        ])
        resolution = PathResolver(graph).resolve(state)
        assert resolution.eligible == ("Y",)
        assert "Z" in resolution.waiting

    def test_failed_operation_activates_fallback(self):
        graph = graph_of([
            op("A", order=1),
            op("X", ["A"], order=2, fallback_operation_id="Y"),
            op("Y", order=3),
            op("Z", ["X"], order=4),
        ])
        state = RunState.from_records([
            history_record("A", "complete", chosen_path="default"),
            history_record("X", "failed"),
            history_record("Y", "complete", chosen_path="default"),
        ])
        assert PathResolver(graph).resolve(state).eligible == ("Z",)

    def test_failed_operation_without_fallback_blocks(self):
        graph = graph_of([op("A", order=1), op("B", ["A"], order=2)])
        state = RunState.from_records([history_record("A", "failed")])
        resolution = PathResolver(graph).resolve(state)
        assert resolution.eligible == ()
        assert resolution.unreachable == ("B",)
        assert resolution.is_finished

    def test_fallback_chain(self):
        graph = graph_of([
            op("A", order=1),
            op("X", ["A"], order=2, fallback_operation_id="Y"),
            op("Y", order=3, fallback_operation_id="V"),
            op("V", order=4),
            op("Z", ["X"], order=5),
        ])
        state = RunState.from_records([
            history_record("A", "complete", chosen_path="default"),
            history_record("X", "failed"),
            history_record("Y", "failed"),
        ])
        resolution = PathResolver(graph).resolve(state)
        assert resolution.eligible == ("V",)
        assert resolution.substitutions == {"X": "Y", "Y": "V"}


class TestConditionRules:
    @pytest.fixture
    def graph(self):
        return graph_of([
            op("A", order=1),
            op("R", ["A"], order=2, condition_rules={"deck": "raised"}),
            op("D", ["R"], order=3),
        ])

    def test_operation_taken_when_rules_hold(self, graph):
        resolution = PathResolver(graph).resolve(RunState.from_completed(["A"], {"deck": "raised"}))
        assert resolution.eligible == ("R",)

    def test_operation_bypassed_when_rules_fail(self, graph):
        resolution = PathResolver(graph).resolve(RunState.from_completed(["A"], {"deck": "ground"}))
        assert resolution.bypassed == ("R",)
        assert resolution.eligible == ("D",)

    def test_rules_see_ancestor_decision_data(self, graph):
        state = RunState.from_records(
            [history_record("A", "complete", chosen_path="default", data={"deck": "raised"})],
            start_context={"deck": "ground"},
        )
        assert PathResolver(graph).resolve(state).eligible == ("R",)

    def test_malformed_rules_are_reported(self):
        graph = graph_of([op("A", condition_rules={"type": "moon_phase", "data": {"x": 1}})])
        resolution = PathResolver(graph).resolve(RunState())
        assert resolution.eligible == ()
        assert resolution.bypassed == ("A",)
        assert [e.condition_type for e in resolution.configuration_errors] == ["moon_phase"]


class TestRunState:
    def test_completed_includes_skipped(self):
        state = RunState.from_records([
            history_record("A", "complete", chosen_path="default"),
            history_record("B", "skipped"),
            history_record("C", "failed"),
            history_record("D", "in_progress"),
        ])
        assert state.completed_operation_ids == frozenset({"A", "B"})
        assert state.terminal_operation_ids == frozenset({"A", "B", "C"})
        assert state.in_flight_operation_ids == frozenset({"D"})

    def test_rows_never_move_status_backwards(self):
        state = RunState.from_records([
            history_record("A", "in_progress"),
            history_record("A", "complete", chosen_path="default"),
            history_record("A", "pending"),
            history_record("A", "failed"),
        ])
        assert state.status_of("A") == ExecutionStatus.COMPLETE

    def test_last_context(self):
        state = RunState.from_records([
            history_record("A", "complete", chosen_path="default", data={"a": 1}),
            history_record("B", "complete", chosen_path="default", data={"b": 2}),
        ])
        assert state.last_context == {"b": 2}
        assert state.merged_context() == {"a": 1, "b": 2}
        assert state.context_for(["A"]) == {"a": 1}

    def test_last_context_ignores_superseded_rows(self):
        state = RunState.from_records([
            history_record("A", "complete", chosen_path="default", data={"x": 1}),
            history_record("A", "in_progress", data={"x": 2}),
            history_record("B", "failed", data={"y": 3}),
            history_record("B", "pending", data={"y": 4}),
        ])
        assert state.last_context == {"y": 3}

        only_ignored_tail = RunState.from_records([
            history_record("A", "complete", chosen_path="default", data={"x": 1}),
            history_record("A", "in_progress", data={"x": 2}),
        ])
        assert only_ignored_tail.last_context == {"x": 1}

    def test_start_context_is_the_base(self):
        state = RunState.from_records(
            [history_record("A", "complete", chosen_path="default", data={"skill": "pro"})],
            start_context={"skill": "beginner", "site": "yard"},
        )
        assert state.context_for(["A"]) == {"skill": "pro", "site": "yard"}


class TestResolution:
    def test_in_flight_operations_stay_eligible(self, prep_graph):
        state = RunState.from_records([history_record("P1", "in_progress")])
        resolution = PathResolver(prep_graph).resolve(state)
        assert resolution.eligible == ("P1",)
        assert resolution.in_flight == ("P1",)

    def test_eligible_order_uses_display_order_then_id(self):
        graph = graph_of([op("b", order=1), op("a", order=1), op("c", order=0)])
        assert resolve_next(graph, [], {}) == ["c", "a", "b"]

    def test_parallel_group_members_may_have_different_dependencies(self):
        graph = graph_of([
            op("A", order=1),
            op("B", order=2),
            op("G1", ["A"], order=3, parallel_group="g"),
            op("G2", ["B"], order=4, parallel_group="g"),
        ])
        resolution = PathResolver(graph).resolve(RunState.from_completed(["A"]))
        assert resolution.eligible == ("B", "G1")
        assert resolution.parallel_groups == {"g": ("G1",)}

    def test_finished_when_everything_terminal(self, prep_graph):
        state = RunState.from_completed(["P1", "P2a", "P3", "P4", "P5", "P6"], {"skill": "beginner"})
        resolution = PathResolver(prep_graph).resolve(state)
        assert resolution.eligible == ()
        assert resolution.is_finished

    def test_resolver_method_matches_function(self, prep_graph):
        resolver = PathResolver(prep_graph)
        assert resolver.resolve_next(["P1"], {"skill": "expert"}) == resolve_next(
            prep_graph, ["P1"], {"skill": "expert"}
        )
