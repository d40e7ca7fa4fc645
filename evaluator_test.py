"""
Evaluator tests: memoization, failure propagation, cycle detection, parallel
mode, statistics and the command-line runner.
"""

import json

import pytest

from tabular_dag import (
    Add, CmpArith, Count, Dag, DagBuilder, DagEvaluator, DataFrameProvider,
    EvaluationConfig, Full, Histogram, Id, If, LinearRegression, Loc, Log, Mean,
    Node, NodeState, Not, OpType, Project, Sub, Sum, TTest, Var, Where, Zip, evaluate,
)
from tabular_dag.__main__ import main
from tabular_dag.errors import (
    DagError, GraphFormatError, NodeExecutionError, UnknownColumnError,
)
from tabular_dag.evaluator import HANDLERS


class CountingProvider:
    """Delegating provider that records every column request."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def get_column(self, name):
        self.calls.append(name)
        return self.inner.get_column(name)


class ExplodingProvider:

    def get_column(self, name):
        raise RuntimeError("storage went away")


def payloads(outputs):
    return json.dumps([o.to_payload() for o in outputs], sort_keys=True)


class TestMemoization:

    def test_shared_node_evaluated_once(self, provider):
        counting = CountingProvider(provider)
        shared = Id([Loc('x')])
        dag, _ = DagBuilder().add(Mean([shared])).add(Sum([shared])).build()

        evaluator = DagEvaluator(counting)
        mean, total = evaluator.evaluate(dag)

        assert mean.ok and total.ok
        assert counting.calls == ['x']
        stats = evaluator.get_performance_stats()
        assert stats['nodes_evaluated'] == 4
        assert stats['memo_hits'] == 1

    def test_memo_table_is_per_evaluation(self, provider):
        counting = CountingProvider(provider)
        dag, _ = DagBuilder().add(Id([Loc('x')])).build()
        evaluator = DagEvaluator(counting)
        evaluator.evaluate(dag)
        evaluator.evaluate(dag)
        assert counting.calls == ['x', 'x']

    def test_explicit_result_selection(self, provider):
        x = Loc('x')
        dag, (mean_index, count_index) = DagBuilder().add(Mean([x])).add(Count([x])).build()
        (out,) = DagEvaluator(provider).evaluate(dag, [count_index])
        assert out.index == count_index
        assert out.op is OpType.COUNT


class TestFailurePropagation:

    def test_siblings_survive_a_failure(self, run):
        bad = Mean([Loc('label')])
        failed, parent, good = run(bad, Add([bad], 1.0), Mean([Loc('x')]))

        assert failed.error.kind.value == 'NonNumericColumn'
        assert parent.error is failed.error
        assert good.ok
        assert good.value[0].values() == [3.0]

    def test_error_names_the_failing_node(self, run):
        bad = Var([Loc('label')])
        (out,) = run(Id([bad]))
        assert out.error.node_index == 1
        assert out.error.op == 'Var'
        assert out.to_payload() == {'error': out.error.to_dict()}

    def test_unwrap_raises(self, run):
        (out,) = run(Id([Loc('missing')]))
        with pytest.raises(UnknownColumnError):
            out.unwrap()

    def test_evaluate_strict(self, provider):
        dag, _ = DagBuilder().add(Mean([Loc('x')])).add(Mean([Loc('label')])).build()
        with pytest.raises(DagError):
            DagEvaluator(provider).evaluate_strict(dag)

    def test_unexpected_exceptions_propagate_with_context(self):
        dag, _ = DagBuilder().add(Id([Loc('x')])).build()
        with pytest.raises(NodeExecutionError) as info:
            DagEvaluator(ExplodingProvider()).evaluate(dag)
        assert info.value.node_index == 0
        assert info.value.op == 'Loc'
        assert isinstance(info.value.__cause__, RuntimeError)

    def test_provider_must_implement_protocol(self):
        with pytest.raises(TypeError):
            DagEvaluator(object())


class TestCycleDetection:

    def cyclic_dag(self):
        return Dag.from_dict({
            'nodes': [
                {'op': 'Id', 'children': [1]},
                {'op': 'Id', 'children': [0]},
                {'op': 'Loc', 'params': {'name': 'x'}},
                {'op': 'Id', 'children': [2]},
            ],
            'results': [0, 3],
        })

    @pytest.mark.parametrize("parallel", [False, True])
    def test_cycle_reported_and_sibling_survives(self, provider, parallel):
        config = EvaluationConfig(parallel=parallel)
        cyclic, fine = DagEvaluator(provider, config).evaluate(self.cyclic_dag())

        assert cyclic.error.kind.value == 'CycleDetected'
        assert fine.ok
        assert fine.value[0].values() == [1.0, 2.0, None, 4.0, 5.0]

    def test_self_loop(self, provider):
        dag = Dag.from_dict({'nodes': [{'op': 'Not', 'children': [0]}], 'results': [0]})
        (out,) = DagEvaluator(provider).evaluate(dag)
        assert out.error.kind.value == 'CycleDetected'
        assert out.error.node_index == 0

    def test_dangling_child_rejected(self, provider):
        dag = Dag(nodes=(Node(OpType.ID, (5,)),), results=(0,))
        with pytest.raises(GraphFormatError):
            DagEvaluator(provider).evaluate(dag)


class TestParallelEvaluation:

    def graph(self):
        x, y, flag = Loc('x'), Loc('y'), Loc('flag')
        total = Add([x, y])
        return DagBuilder() \
            .add(Id([x, y], ['a', 'b'])) \
            .add(Mean([total])) \
            .add(If([flag, total, Full(0.0, [y])])) \
            .add(Where([Log([y])], 3.0, 'GT', '0')) \
            .add(Not([CmpArith([x], 2.0, 'LE')])) \
            .add(Project(Zip([x, y]), ['x'])) \
            .add(Var([Loc('label')])) \
            .add(TTest([x, y])) \
            .add(Histogram([y], bins=4)) \
            .build()[0]

    def test_parallel_matches_sequential(self, provider):
        dag = self.graph()
        sequential = DagEvaluator(provider).evaluate(dag)
        parallel = DagEvaluator(provider, EvaluationConfig(parallel=True, max_workers=3)).evaluate(dag)

        assert payloads(parallel) == payloads(sequential)
        assert [o.ok for o in parallel] == [o.ok for o in sequential]

    def test_parallel_regression(self, regression_frame):
        provider = DataFrameProvider(regression_frame)
        dag, _ = DagBuilder().add(LinearRegression([Loc('y'), Loc('x1'), Loc('x2')])).build()
        sequential = evaluate(provider, dag)
        parallel = evaluate(provider, dag, config=EvaluationConfig(parallel=True))
        assert payloads(parallel) == payloads(sequential)


class TestPerformanceStats:

    def test_per_operator_statistics(self, provider):
        dag, _ = DagBuilder().add(Mean([Loc('x')])).add(Mean([Loc('y')])).build()
        evaluator = DagEvaluator(provider, EvaluationConfig(profiling_enabled=True))
        evaluator.evaluate(dag)

        stats = evaluator.get_performance_stats()
        assert stats['evaluations'] == 1
        assert stats['op_calls']['Mean'] == 2
        assert stats['op_calls']['Loc'] == 2
        assert stats['op_time_seconds']['Mean'] >= 0.0
        assert stats['peak_rss_delta_mb'] >= 0.0
        assert stats['config']['profiling_enabled'] is True

    def test_failures_counted(self, provider):
        dag, _ = DagBuilder().add(Mean([Loc('label')])).build()
        evaluator = DagEvaluator(provider)
        evaluator.evaluate(dag)
        assert evaluator.get_performance_stats()['failures'] == 1


class TestEvaluatorCoverage:

    def test_every_operator_has_a_handler(self):
        assert set(HANDLERS) == set(OpType)

    def test_deep_chain(self, provider):
        expr = Id([Loc('y')])
        for _ in range(3000):
            expr = Add([expr], 1.0)
        (out,) = DagEvaluator(provider).evaluate(DagBuilder().add(expr).build()[0])
        assert out.value[0].values()[0] == 3010.0

    def test_deserialized_graph_evaluates_identically(self, provider):
        x = Loc('x')
        dag, _ = DagBuilder().add(Mean([x])).add(Where([x], 2.0, 'GE', '0')).build()
        restored = Dag.from_json(dag.to_json())
        assert payloads(evaluate(provider, restored)) == payloads(evaluate(provider, dag))

    def test_node_states(self):
        assert [s.value for s in NodeState] == ['unvisited', 'evaluating', 'memoized', 'failed']


class TestCommandLine:

    def write_inputs(self, tmp_path, dag):
        graph = tmp_path / "graph.json"
        graph.write_text(dag.to_json())
        data = tmp_path / "data.csv"
        data.write_text("x,y,s\n1,2,a\n2,4,b\n3,7,a\n")
        return graph, data

    def test_successful_run(self, tmp_path, capsys):
        dag, _ = DagBuilder().add(Id([Loc('x')], ['renamed'])).add(Mean([Loc('y')])).build()
        graph, data = self.write_inputs(tmp_path, dag)

        assert main([str(graph), '--csv', str(data)]) == 0

        printed = json.loads(capsys.readouterr().out)
        assert printed[0] == [{'name': 'renamed', 'values': [1.0, 2.0, 3.0]}]
        assert printed[1][0]['values'] == [pytest.approx(13.0 / 3.0)]

    def test_failed_output_sets_exit_code(self, tmp_path, capsys):
        dag, _ = DagBuilder().add(Mean([Loc('s')])).add(Count([Loc('x')])).build()
        graph, data = self.write_inputs(tmp_path, dag)

        assert main([str(graph), '--csv', str(data), '--parallel']) == 1

        printed = json.loads(capsys.readouterr().out)
        assert printed[0]['error']['kind'] == 'NonNumericColumn'
        assert printed[1] == [{'name': 'x', 'values': [3.0]}]

    def test_unreadable_inputs(self, tmp_path):
        graph = tmp_path / "graph.json"
        graph.write_text("{broken")
        assert main([str(graph), '--csv', str(tmp_path / "missing.csv")]) == 2

    def test_invalid_operator_parameters_in_graph(self, tmp_path):
        dag, _ = DagBuilder().add(CmpArith([Loc('x')], 1.0, 'GT')).build()
        record = dag.to_dict()
        record['nodes'][-1]['params']['mode'] = 'XX'
        graph, data = self.write_inputs(tmp_path, dag)
        graph.write_text(json.dumps(record))

        assert main([str(graph), '--csv', str(data)]) == 2

    def test_out_of_range_result_index(self, tmp_path, capsys):
        dag, _ = DagBuilder().add(Mean([Loc('y')])).build()
        graph, data = self.write_inputs(tmp_path, dag)

        assert main([str(graph), '--csv', str(data), '--results', '7']) == 2
        assert capsys.readouterr().out == ''

    def test_non_finite_values_are_strict_json(self, tmp_path, capsys):
        dag, _ = DagBuilder().add(Log([Sub([Loc('x')], value=2.0)])).build()
        graph, data = self.write_inputs(tmp_path, dag)

        assert main([str(graph), '--csv', str(data)]) == 0

        out = capsys.readouterr().out
        printed = json.loads(out, parse_constant=lambda token: pytest.fail(f"non-standard token {token}"))
        assert printed[0][0]['values'] == ['NaN', 'NaN', 0.0]

    def test_stats_written_to_stderr(self, tmp_path, capsys):
        dag, _ = DagBuilder().add(Mean([Loc('y')])).build()
        graph, data = self.write_inputs(tmp_path, dag)

        assert main([str(graph), '--csv', str(data), '--stats']) == 0

        stats = json.loads(capsys.readouterr().err)
        assert stats['evaluations'] == 1
        assert stats['op_calls']['Mean'] == 1
