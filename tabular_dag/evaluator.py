"""
DAG Evaluator
=============

Bottom-up execution of a built graph with per-node memoization.

Every node moves through ``UNVISITED -> EVALUATING -> MEMOIZED | FAILED``.
Evaluation is depth-first from each requested output; a memoized node is
served from the memo table, a node met again while still ``EVALUATING`` is a
cycle, and a failed node hands the very same error object to all of its
ancestors. Outputs that do not depend on a failed node still succeed.

Parallel mode (``EvaluationConfig.parallel``) groups the reachable nodes into
waves by dependency depth and runs each wave on a thread pool. Each memo slot
is written once, by the worker that computed it, after all of that node's
children are settled.
"""

from __future__ import annotations
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

import psutil

from . import kernels, models
from .builder import Dag
from .columns import Column, TabularProvider, json_value
from .config import DEFAULT_CONFIG, EvaluationConfig
from .errors import (
    ArityMismatchError, CycleDetectedError, DagError, GraphFormatError,
    InvalidOutputError, NodeExecutionError, RowCountMismatchError, TypeMismatchError,
)
from .nodes import CmpMode, Node, OpType

logger = logging.getLogger(__name__)

Value = Union[List[Column], models.StatisticalResult]


class NodeState(Enum):
    UNVISITED = "unvisited"
    EVALUATING = "evaluating"
    MEMOIZED = "memoized"
    FAILED = "failed"


@dataclass
class OutputResult:
    """Outcome of one requested output: a value or the error that prevented it."""
    index: int
    op: OpType
    value: Optional[Value] = None
    error: Optional[DagError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Value:
        if self.error is not None:
            raise self.error
        return self.value

    def to_payload(self) -> Any:
        """JSON-compatible form; non-finite floats become "NaN", "Infinity" or "-Infinity"."""
        if self.error is not None:
            return {'error': self.error.to_dict()}
        if isinstance(self.value, models.StatisticalResult):
            return json_value(self.value.to_dict())
        return [column.to_payload() for column in self.value]


# ==============================================================================
# INPUT ADAPTERS
# ==============================================================================

def _columns(inputs: Sequence[Value], op: OpType) -> List[Column]:
    """Concatenate the column outputs of several children."""
    columns: List[Column] = []
    for value in inputs:
        if isinstance(value, models.StatisticalResult):
            raise TypeMismatchError(
                f"{op.value} needs column inputs, got a {value.model} result"
            )
        columns.extend(value)
    return columns


def _single_column(value: Value, op: OpType, role: str) -> Column:
    columns = _columns([value], op)
    if len(columns) != 1:
        raise ArityMismatchError(
            f"{op.value}: {role} must be a single column, got {len(columns)}"
        )
    return columns[0]


def _explanatory(inputs: Sequence[Value], op: OpType) -> List[Column]:
    xs = kernels.expand_records(_columns(inputs, op))
    if not xs:
        raise ArityMismatchError(f"{op.value} needs at least one explanatory column")
    return xs


def _regression_inputs(inputs: Sequence[Value], op: OpType) -> Tuple[Column, List[Column]]:
    """``[Y, X...]`` with record columns expanded into their fields."""
    y = _single_column(inputs[0], op, 'the response')
    xs = _explanatory(inputs[1:], op)
    kernels.require_same_length([y] + xs, op.value)
    return y, xs


def _fit_of(value: Value, expected: type, op: OpType) -> Any:
    if not isinstance(value, expected):
        got = value.model if isinstance(value, models.StatisticalResult) else 'columns'
        raise TypeMismatchError(
            f"{op.value} needs a {expected.model} fit as its last input, got {got}"
        )
    return value


def _float_values(xs: List[Column], op: OpType) -> List[List[Optional[float]]]:
    return [kernels.to_float_values(x, op.value) for x in xs]


def _design(y: Optional[List[Optional[float]]], xs: List[Column], op: OpType):
    return models.complete_cases(y, _float_values(xs, op))


# ==============================================================================
# OPERATOR HANDLERS
# ==============================================================================
# Each handler takes (evaluator, node, child values) and returns a Value.

Handler = Callable[['DagEvaluator', Node, List[Value]], Value]


def _loc(ev, node, inputs):
    return [ev.provider.get_column(node.params['name'])]


def _id(ev, node, inputs):
    return kernels.identity(_columns(inputs, node.op), node.params.get('renames'))


def _head(ev, node, inputs):
    return kernels.head(_columns(inputs, node.op), node.params['n'])


def _columnwise(fn: Callable[[List[Column]], List[Column]]) -> Handler:
    def handler(ev, node, inputs):
        return fn(_columns(inputs, node.op))
    return handler


def _mode(ev, node, inputs):
    return kernels.mode(_columns(inputs, node.op), dropna=node.params['dropna'])


def _var(ev, node, inputs):
    return kernels.variance(_columns(inputs, node.op), ddof=node.params['ddof'])


def _arith(ev, node, inputs):
    if 'value' in node.params:
        return kernels.arith_scalar(node.op.value, _columns(inputs, node.op), node.params['value'])
    left, right = inputs
    return kernels.arith_binary(node.op.value, _columns([left], node.op), _columns([right], node.op))


def _gt(ev, node, inputs):
    left, right = inputs
    return kernels.greater_than(_columns([left], node.op), _columns([right], node.op))


def _cmp_arith(ev, node, inputs):
    return kernels.compare_scalar(
        _columns(inputs, node.op), node.params['value'], CmpMode(node.params['mode'])
    )


def _cmp_str(ev, node, inputs):
    return kernels.compare_string(_columns(inputs, node.op), node.params['value'])


def _where(ev, node, inputs):
    return kernels.where(
        _columns(inputs, node.op),
        node.params['value'],
        CmpMode(node.params['mode']),
        node.params['replacement'],
    )


def _if(ev, node, inputs):
    cond, then, otherwise = (_columns([v], node.op) for v in inputs)
    return kernels.if_then_else(cond, then, otherwise)


def _full(ev, node, inputs):
    return kernels.full(node.params['value'], _columns(inputs, node.op))


def _project(ev, node, inputs):
    return kernels.project(_columns(inputs, node.op), node.params['names'])


def _linear_regression(ev, node, inputs):
    y, xs = _regression_inputs(inputs, node.op)
    y_arr, X, _ = _design(kernels.to_float_values(y, node.op.value), xs, node.op)
    return models.fit_linear_regression(y_arr, X, [x.name for x in xs])


def _ttest_linear_regression(ev, node, inputs):
    fit = _fit_of(inputs[-1], models.LinearRegressionResult, node.op)
    y, xs = _regression_inputs(inputs[:-1], node.op)
    y_arr, X, _ = _design(kernels.to_float_values(y, node.op.value), xs, node.op)
    return models.ttest_linear_regression(fit, y_arr, X)


def _logistic_regression(ev, node, inputs):
    y, xs = _regression_inputs(inputs, node.op)
    encoded, classes = models.encode_binary_response(y.values(), y.dtype.value)
    x_values = _float_values(xs, node.op)
    rows = models.complete_rows(encoded, x_values)
    y_arr, X = models.design_matrix(encoded, x_values, rows)
    return models.fit_logistic_regression(
        y_arr, X, [x.name for x in xs], classes,
        tolerance=ev.config.irls_tolerance,
        max_iterations=ev.config.irls_max_iterations,
        rows=rows,
    )


def _wald_test(ev, node, inputs):
    """Information matrix over the rows the logistic fit was computed on."""
    fit = _fit_of(inputs[-1], models.LogisticRegressionResult, node.op)
    xs = _explanatory(inputs[:-1], node.op)
    n = kernels.require_same_length(xs, node.op.value)
    rows = fit.rows
    if rows and rows[-1] >= n:
        raise RowCountMismatchError(
            f"{node.op.value} got {n} rows but the fit used source row {rows[-1]}"
        )
    x_values = _float_values(xs, node.op)
    _, X = models.design_matrix(None, x_values, models.complete_rows(None, x_values, rows))
    return models.wald_test_logistic_regression(fit, X)


def _ttest(ev, node, inputs):
    a = _single_column(inputs[0], node.op, 'the first sample')
    b = _single_column(inputs[1], node.op, 'the second sample')
    kernels.require_numeric(a, node.op.value)
    kernels.require_numeric(b, node.op.value)
    return models.welch_ttest(a.values(), b.values(), node.params['alternative'])


def _histogram(ev, node, inputs):
    column = _single_column(inputs[0], node.op, 'the histogram input')
    kernels.require_numeric(column, node.op.value)
    return models.histogram(column.values(), node.params['bins'])


def _boxplot(ev, node, inputs):
    column = _single_column(inputs[0], node.op, 'the boxplot input')
    kernels.require_numeric(column, node.op.value)
    return models.boxplot(column.values())


HANDLERS: Dict[OpType, Handler] = {
    OpType.LOC: _loc,
    OpType.ID: _id,
    OpType.HEAD: _head,
    OpType.COUNT: _columnwise(kernels.count),
    OpType.MEAN: _columnwise(kernels.mean),
    OpType.MEDIAN: _columnwise(kernels.median),
    OpType.MODE: _mode,
    OpType.VAR: _var,
    OpType.SUM: _columnwise(kernels.total),
    OpType.ADD: _arith,
    OpType.SUB: _arith,
    OpType.MUL: _arith,
    OpType.DIV: _arith,
    OpType.LOG: _columnwise(kernels.log),
    OpType.GT: _gt,
    OpType.CMP_ARITH: _cmp_arith,
    OpType.CMP_STR: _cmp_str,
    OpType.WHERE: _where,
    OpType.IF: _if,
    OpType.FULL: _full,
    OpType.NULL: _columnwise(kernels.null_check),
    OpType.NAN: _columnwise(kernels.nan_check),
    OpType.BOOL_TO_STR: _columnwise(kernels.bool_to_str),
    OpType.COLUMN: _project,
    OpType.ZIP: _columnwise(kernels.zip_columns),
    OpType.NOT: _columnwise(kernels.negate),
    OpType.LINEAR_REGRESSION: _linear_regression,
    OpType.TTEST_LINEAR_REGRESSION: _ttest_linear_regression,
    OpType.LOGISTIC_REGRESSION: _logistic_regression,
    OpType.WALD_TEST_LOGISTIC_REGRESSION: _wald_test,
    OpType.TTEST: _ttest,
    OpType.HISTOGRAM: _histogram,
    OpType.BOXPLOT: _boxplot,
}


# ==============================================================================
# EVALUATOR
# ==============================================================================

class _Pass:
    """Per-evaluation state: node states, memo table and recorded failures."""

    def __init__(self, dag: Dag):
        self.dag = dag
        self.state = [NodeState.UNVISITED] * len(dag)
        self.memo: Dict[int, Value] = {}
        self.errors: Dict[int, DagError] = {}


class DagEvaluator:
    """
    Evaluates graphs against one tabular provider.

    Each ``evaluate`` call owns a fresh memo table, so an evaluator can be
    reused for several graphs over the same data snapshot.
    """

    def __init__(self, provider: TabularProvider, config: EvaluationConfig = DEFAULT_CONFIG):
        if not isinstance(provider, TabularProvider):
            raise TypeError(f"Provider must implement get_column(name), got {type(provider).__name__}")
        self.provider = provider
        self.config = config
        self._lock = threading.Lock()
        self._stats: Dict[str, Any] = {
            'evaluations': 0,
            'nodes_evaluated': 0,
            'memo_hits': 0,
            'failures': 0,
            'elapsed_seconds': 0.0,
            'peak_rss_delta_mb': 0.0,
        }
        self._op_time: Dict[str, float] = defaultdict(float)
        self._op_calls: Dict[str, int] = defaultdict(int)

    # --------------------------------------------------------------------------
    # Public API
    # --------------------------------------------------------------------------

    def evaluate(self, dag: Dag, results: Optional[Sequence[int]] = None) -> List[OutputResult]:
        """
        Evaluate the requested outputs (``dag.results`` by default).

        Returns one ``OutputResult`` per requested index, in request order.
        Node-level failures are reported inside the results; unexpected
        exceptions raised by an operator surface as ``NodeExecutionError``.
        """
        targets = list(dag.results if results is None else results)
        self._validate(dag, targets)

        started = time.perf_counter()
        rss_before = self._current_rss() if self.config.profiling_enabled else 0

        run = _Pass(dag)
        roots = [i for i in targets if dag.node(i).op is not OpType.LOC]
        if self.config.parallel:
            self._evaluate_parallel(run, roots)
        else:
            for index in roots:
                self._evaluate_sequential(run, index)

        outputs = [self._output(run, index) for index in targets]

        elapsed = time.perf_counter() - started
        with self._lock:
            self._stats['evaluations'] += 1
            self._stats['elapsed_seconds'] += elapsed
            if self.config.profiling_enabled:
                delta = (self._current_rss() - rss_before) / 1024 ** 2
                self._stats['peak_rss_delta_mb'] = max(self._stats['peak_rss_delta_mb'], delta)

        failed = sum(1 for o in outputs if not o.ok)
        logger.debug("Evaluated %d outputs (%d failed) in %.4fs", len(outputs), failed, elapsed)
        return outputs

    def evaluate_strict(self, dag: Dag, results: Optional[Sequence[int]] = None) -> List[Value]:
        """Like ``evaluate`` but raises the first output error."""
        return [output.unwrap() for output in self.evaluate(dag, results)]

    def get_performance_stats(self) -> Dict[str, Any]:
        """Counters accumulated over every evaluation run by this evaluator."""
        with self._lock:
            stats = dict(self._stats)
            stats['op_time_seconds'] = dict(self._op_time)
            stats['op_calls'] = dict(self._op_calls)
        stats['config'] = self.config.to_dict()
        return stats

    # --------------------------------------------------------------------------
    # Traversal
    # --------------------------------------------------------------------------

    def _evaluate_sequential(self, run: _Pass, target: int) -> None:
        """Iterative depth-first evaluation of ``target`` and its subgraph."""
        dag = run.dag
        # (node, finishing, parent)
        stack: List[Tuple[int, bool, Optional[int]]] = [(target, False, None)]
        cycles: Dict[int, DagError] = {}

        while stack:
            index, finishing, parent = stack.pop()
            node = dag.node(index)

            if finishing:
                error = cycles.get(index) or self._failed_child(run, node)
                if error is not None:
                    self._fail(run, index, error)
                else:
                    self._run(run, index, [run.memo[c] for c in node.children])
                continue

            state = run.state[index]
            if state is NodeState.MEMOIZED or state is NodeState.FAILED:
                with self._lock:
                    self._stats['memo_hits'] += 1
                continue
            if state is NodeState.EVALUATING:
                # Only an ancestor on the current path can still be evaluating.
                parent_op = dag.node(parent).op.value
                cycles.setdefault(parent, CycleDetectedError(
                    f"node {parent} depends on node {index}, which is still being evaluated"
                ).at_node(parent, parent_op))
                continue

            run.state[index] = NodeState.EVALUATING
            stack.append((index, True, parent))
            for child in reversed(node.children):
                stack.append((child, False, index))

    def _evaluate_parallel(self, run: _Pass, roots: List[int]) -> None:
        """Dependency waves on a thread pool."""
        dag = run.dag
        pending = self._reachable(dag, roots)
        settled: Set[int] = set()

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            wave_number = 0
            while pending:
                wave = sorted(i for i in pending
                              if all(c in settled for c in dag.node(i).children))
                if not wave:
                    self._fail_cycle(run, pending)
                    return

                futures = []
                for index in wave:
                    node = dag.node(index)
                    run.state[index] = NodeState.EVALUATING
                    error = self._failed_child(run, node)
                    if error is not None:
                        self._fail(run, index, error)
                        continue
                    inputs = [run.memo[c] for c in node.children]
                    futures.append(executor.submit(self._run, run, index, inputs))

                for future in futures:
                    future.result()

                logger.debug("Wave %d: %d nodes", wave_number, len(wave))
                wave_number += 1
                settled.update(wave)
                pending.difference_update(wave)

    @staticmethod
    def _reachable(dag: Dag, roots: List[int]) -> Set[int]:
        seen: Set[int] = set()
        stack = list(roots)
        while stack:
            index = stack.pop()
            if index in seen:
                continue
            seen.add(index)
            stack.extend(dag.node(index).children)
        return seen

    def _fail_cycle(self, run: _Pass, pending: Set[int]) -> None:
        first = min(pending)
        error = CycleDetectedError(
            f"nodes {sorted(pending)} cannot be ordered; the graph contains a cycle"
        ).at_node(first, run.dag.node(first).op.value)
        for index in pending:
            self._fail(run, index, error)

    # --------------------------------------------------------------------------
    # Node execution
    # --------------------------------------------------------------------------

    @staticmethod
    def _failed_child(run: _Pass, node: Node) -> Optional[DagError]:
        for child in node.children:
            if run.state[child] is NodeState.FAILED:
                return run.errors[child]
        return None

    def _fail(self, run: _Pass, index: int, error: DagError) -> None:
        run.errors[index] = error
        run.state[index] = NodeState.FAILED

    def _run(self, run: _Pass, index: int, inputs: List[Value]) -> None:
        node = run.dag.node(index)
        started = time.perf_counter()
        try:
            value = HANDLERS[node.op](self, node, inputs)
            if node.output_names is not None:
                value = self._apply_output_names(node, value)
        except DagError as e:
            e.at_node(index, node.op.value)
            logger.debug("Node %d (%s) failed: %s", index, node.op.value, e)
            with self._lock:
                self._stats['failures'] += 1
            self._fail(run, index, e)
            return
        except Exception as e:
            raise NodeExecutionError(str(e), index, node.op.value) from e
        finally:
            with self._lock:
                self._op_time[node.op.value] += time.perf_counter() - started
                self._op_calls[node.op.value] += 1

        run.memo[index] = value
        run.state[index] = NodeState.MEMOIZED
        with self._lock:
            self._stats['nodes_evaluated'] += 1

    @staticmethod
    def _apply_output_names(node: Node, value: Value) -> Value:
        if isinstance(value, models.StatisticalResult):
            raise TypeMismatchError(f"{node.op.value} produces a statistical result and cannot be renamed")
        return kernels.rename_outputs(value, node.output_names)

    # --------------------------------------------------------------------------
    # Helpers
    # --------------------------------------------------------------------------

    @staticmethod
    def _validate(dag: Dag, targets: List[int]) -> None:
        n = len(dag)
        for index, node in enumerate(dag.nodes):
            for child in node.children:
                if not 0 <= child < n:
                    raise GraphFormatError(
                        f"Node {index} ({node.op.value}) references missing node {child}"
                    )
        for index in targets:
            if not 0 <= index < n:
                raise GraphFormatError(f"Result index {index} does not name a node")

    @staticmethod
    def _output(run: _Pass, index: int) -> OutputResult:
        node = run.dag.node(index)
        if node.op is OpType.LOC:
            error = InvalidOutputError(
                f"Loc({node.params['name']!r}) cannot be an output; wrap it, e.g. in Id"
            ).at_node(index, node.op.value)
            return OutputResult(index=index, op=node.op, error=error)
        if run.state[index] is NodeState.FAILED:
            return OutputResult(index=index, op=node.op, error=run.errors[index])
        return OutputResult(index=index, op=node.op, value=run.memo[index])

    @staticmethod
    def _current_rss() -> int:
        return psutil.Process().memory_info().rss


def evaluate(provider: TabularProvider, dag: Dag, results: Optional[Sequence[int]] = None,
             config: EvaluationConfig = DEFAULT_CONFIG) -> List[OutputResult]:
    """One-shot evaluation with a throwaway evaluator."""
    return DagEvaluator(provider, config).evaluate(dag, results)


__all__ = ['NodeState', 'OutputResult', 'DagEvaluator', 'HANDLERS', 'evaluate']
