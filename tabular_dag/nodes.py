"""
Node Model
==========

The closed operator catalogue. Two representations live here:

* ``Node`` - the arena record: operator tag, child indices into the arena,
  normalized scalar parameters and an optional output-name override. This is
  what the evaluator runs and what crosses the process boundary as JSON.
* ``Expr`` subclasses - the caller-facing constructors (``Loc("x")``,
  ``Add([a, b])``, ...). They hold direct references to child expressions, so
  passing the same expression object to two parents shares one subgraph.
  ``DagBuilder`` interns them by identity into ``Node`` records.

Parameter validation is shared: ``check_node`` runs when an ``Expr`` is built
and again when a serialized ``Node`` is decoded, so malformed graphs are
rejected before any data is read.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from numbers import Real
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from .errors import ArityMismatchError, GraphFormatError, InvalidModeError, TypeMismatchError


# ==============================================================================
# CORE ENUMERATIONS
# ==============================================================================

class OpType(Enum):
    """Operator tags; the values are the serialized ``op`` strings."""
    LOC = "Loc"
    ID = "Id"
    HEAD = "Head"
    COUNT = "Count"
    MEAN = "Mean"
    MEDIAN = "Median"
    MODE = "Mode"
    VAR = "Var"
    SUM = "Sum"
    ADD = "Add"
    SUB = "Sub"
    MUL = "Mul"
    DIV = "Div"
    LOG = "Log"
    GT = "Gt"
    CMP_ARITH = "CmpArith"
    CMP_STR = "CmpStr"
    WHERE = "Where"
    IF = "If"
    FULL = "Full"
    NULL = "Null"
    NAN = "Nan"
    BOOL_TO_STR = "BoolToStr"
    COLUMN = "Column"
    ZIP = "Zip"
    NOT = "Not"
    LINEAR_REGRESSION = "LinearRegression"
    TTEST_LINEAR_REGRESSION = "TTestLinearRegression"
    LOGISTIC_REGRESSION = "LogisticRegression"
    WALD_TEST_LOGISTIC_REGRESSION = "WaldTestLogisticRegression"
    TTEST = "TTest"
    HISTOGRAM = "Histogram"
    BOXPLOT = "Boxplot"

    @classmethod
    def parse(cls, tag: str) -> OpType:
        try:
            return cls(tag)
        except ValueError:
            raise GraphFormatError(f"Unknown operator tag: {tag!r}") from None


class CmpMode(Enum):
    """Comparison against a scalar."""
    LT = "LT"
    LE = "LE"
    EQ = "EQ"
    GE = "GE"
    GT = "GT"

    @classmethod
    def parse(cls, mode: Union[str, CmpMode]) -> CmpMode:
        if isinstance(mode, CmpMode):
            return mode
        if isinstance(mode, str):
            try:
                return cls(mode.strip().upper())
            except ValueError:
                pass
        raise InvalidModeError(
            f"Unrecognized comparison mode {mode!r}; expected one of "
            f"{[m.value for m in cls]}"
        )


ALTERNATIVES = ('two-sided', 'less', 'greater')

# Operators whose evaluation yields a statistical payload instead of columns.
STATISTICAL_OPS = frozenset({
    OpType.LINEAR_REGRESSION,
    OpType.TTEST_LINEAR_REGRESSION,
    OpType.LOGISTIC_REGRESSION,
    OpType.WALD_TEST_LOGISTIC_REGRESSION,
    OpType.TTEST,
    OpType.HISTOGRAM,
    OpType.BOXPLOT,
})


# ==============================================================================
# PARAMETER VALIDATION
# ==============================================================================

def _arity(op: OpType, n_children: int, minimum: int = 1,
           exact: Optional[int] = None) -> None:
    if exact is not None and n_children != exact:
        raise ArityMismatchError(f"{op.value} takes exactly {exact} children, got {n_children}")
    if n_children < minimum:
        raise ArityMismatchError(f"{op.value} takes at least {minimum} children, got {n_children}")


def _number(op: OpType, params: Dict[str, Any], key: str) -> float:
    value = params.get(key)
    if isinstance(value, bool) or not isinstance(value, Real):
        raise TypeMismatchError(f"{op.value}: parameter {key!r} must be a number, got {value!r}")
    return float(value)


def _string(op: OpType, params: Dict[str, Any], key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str):
        raise TypeMismatchError(f"{op.value}: parameter {key!r} must be a string, got {value!r}")
    return value


def _count(op: OpType, params: Dict[str, Any], key: str, minimum: int) -> int:
    value = params.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise TypeMismatchError(
            f"{op.value}: parameter {key!r} must be an integer >= {minimum}, got {value!r}"
        )
    return value


def _string_list(op: OpType, params: Dict[str, Any], key: str) -> List[str]:
    value = params.get(key)
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise TypeMismatchError(f"{op.value}: parameter {key!r} must be a list of strings")
    return list(value)


def _check_unary(op, n, params):
    _arity(op, n)
    return {}


def _check_loc(op, n, params):
    _arity(op, n, minimum=0, exact=0)
    return {'name': _string(op, params, 'name')}


def _check_id(op, n, params):
    _arity(op, n)
    if params.get('renames') is None:
        return {}
    renames = _string_list(op, params, 'renames')
    if len(renames) != n:
        raise ArityMismatchError(f"Id got {len(renames)} renames for {n} nodes")
    return {'renames': renames}


def _check_head(op, n, params):
    _arity(op, n)
    return {'n': _count(op, params, 'n', 0)}


def _check_mode(op, n, params):
    _arity(op, n)
    dropna = params.get('dropna', True)
    if not isinstance(dropna, bool):
        raise TypeMismatchError(f"Mode: parameter 'dropna' must be a boolean, got {dropna!r}")
    return {'dropna': dropna}


def _check_var(op, n, params):
    _arity(op, n)
    return {'ddof': _count(op, {'ddof': params.get('ddof', 1)}, 'ddof', 0)}


def _check_arith(op, n, params):
    if params.get('value') is None:
        _arity(op, n, exact=2)
        return {}
    _arity(op, n)
    return {'value': _number(op, params, 'value')}


def _check_binary(op, n, params):
    _arity(op, n, exact=2)
    return {}


def _check_cmp_arith(op, n, params):
    _arity(op, n)
    return {
        'value': _number(op, params, 'value'),
        'mode': CmpMode.parse(params.get('mode')).value,
    }


def _check_cmp_str(op, n, params):
    _arity(op, n)
    return {'value': _string(op, params, 'value')}


def _check_where(op, n, params):
    checked = _check_cmp_arith(op, n, params)
    replacement = params.get('replacement')
    if isinstance(replacement, bool) or not isinstance(replacement, (str, Real)):
        raise TypeMismatchError(f"Where: replacement must be a string literal, got {replacement!r}")
    checked['replacement'] = str(replacement)
    return checked


def _check_if(op, n, params):
    _arity(op, n, exact=3)
    return {}


def _check_full(op, n, params):
    _arity(op, n)
    value = params.get('value')
    if not isinstance(value, (str, bool, Real)):
        raise TypeMismatchError(f"Full: value must be a number, string or boolean, got {value!r}")
    if isinstance(value, Real) and not isinstance(value, bool):
        value = float(value)
    return {'value': value}


def _check_column(op, n, params):
    _arity(op, n, exact=1)
    names = _string_list(op, params, 'names')
    if not names:
        raise ArityMismatchError("Column projection needs at least one name")
    return {'names': names}


def _check_regression(op, n, params):
    if n < 2:
        raise ArityMismatchError(
            f"{op.value} needs a response and at least one explanatory column, got {n} children"
        )
    return {}


def _check_ttest_regression(op, n, params):
    if n < 3:
        raise ArityMismatchError(
            f"{op.value} needs [Y, X...] plus the fit node, got {n} children"
        )
    return {}


def _check_wald(op, n, params):
    if n < 2:
        raise ArityMismatchError(f"{op.value} needs X... plus the fit node, got {n} children")
    return {}


def _check_ttest(op, n, params):
    _arity(op, n, exact=2)
    alternative = params.get('alternative', 'two-sided')
    if alternative not in ALTERNATIVES:
        raise InvalidModeError(
            f"Unrecognized alternative {alternative!r}; expected one of {list(ALTERNATIVES)}"
        )
    return {'alternative': alternative}


def _check_histogram(op, n, params):
    _arity(op, n, exact=1)
    return {'bins': _count(op, {'bins': params.get('bins', 10)}, 'bins', 1)}


def _check_boxplot(op, n, params):
    _arity(op, n, exact=1)
    return {}


_PARAM_CHECKS: Dict[OpType, Callable[[OpType, int, Dict[str, Any]], Dict[str, Any]]] = {
    OpType.LOC: _check_loc,
    OpType.ID: _check_id,
    OpType.HEAD: _check_head,
    OpType.COUNT: _check_unary,
    OpType.MEAN: _check_unary,
    OpType.MEDIAN: _check_unary,
    OpType.MODE: _check_mode,
    OpType.VAR: _check_var,
    OpType.SUM: _check_unary,
    OpType.ADD: _check_arith,
    OpType.SUB: _check_arith,
    OpType.MUL: _check_arith,
    OpType.DIV: _check_arith,
    OpType.LOG: _check_unary,
    OpType.GT: _check_binary,
    OpType.CMP_ARITH: _check_cmp_arith,
    OpType.CMP_STR: _check_cmp_str,
    OpType.WHERE: _check_where,
    OpType.IF: _check_if,
    OpType.FULL: _check_full,
    OpType.NULL: _check_unary,
    OpType.NAN: _check_unary,
    OpType.BOOL_TO_STR: _check_unary,
    OpType.COLUMN: _check_column,
    OpType.ZIP: _check_unary,
    OpType.NOT: _check_unary,
    OpType.LINEAR_REGRESSION: _check_regression,
    OpType.TTEST_LINEAR_REGRESSION: _check_ttest_regression,
    OpType.LOGISTIC_REGRESSION: _check_regression,
    OpType.WALD_TEST_LOGISTIC_REGRESSION: _check_wald,
    OpType.TTEST: _check_ttest,
    OpType.HISTOGRAM: _check_histogram,
    OpType.BOXPLOT: _check_boxplot,
}


def check_node(op: OpType, n_children: int, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate arity and parameters; returns the normalized parameters."""
    return _PARAM_CHECKS[op](op, n_children, dict(params or {}))


def _check_names(names: Optional[Sequence[str]]) -> Optional[Tuple[str, ...]]:
    if names is None:
        return None
    if isinstance(names, str) or not all(isinstance(n, str) for n in names):
        raise TypeMismatchError(f"Output names must be a list of strings, got {names!r}")
    return tuple(names)


# ==============================================================================
# ARENA RECORD
# ==============================================================================

@dataclass(frozen=True)
class Node:
    """Immutable arena record; children are indices into the same arena."""
    op: OpType
    children: Tuple[int, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)
    output_names: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            'op': self.op.value,
            'children': list(self.children),
            'params': dict(self.params),
        }
        if self.output_names is not None:
            record['outputNames'] = list(self.output_names)
        return record

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> Node:
        """Decode one serialized record and re-run construction checks."""
        if not isinstance(record, dict) or 'op' not in record:
            raise GraphFormatError(f"Node record must be an object with an 'op': {record!r}")

        op = OpType.parse(record['op'])
        children = record.get('children', [])
        if not isinstance(children, list) or not all(
                isinstance(c, int) and not isinstance(c, bool) for c in children):
            raise GraphFormatError(f"{op.value}: 'children' must be a list of node ids")

        params = record.get('params') or {}
        if not isinstance(params, dict):
            raise GraphFormatError(f"{op.value}: 'params' must be an object")

        output_names = _check_names(record.get('outputNames'))
        if output_names is not None and op in STATISTICAL_OPS:
            raise GraphFormatError(f"{op.value} produces a statistical result and takes no outputNames")

        return cls(
            op=op,
            children=tuple(children),
            params=check_node(op, len(children), params),
            output_names=output_names,
        )


# ==============================================================================
# EXPRESSIONS
# ==============================================================================

NodeArg = Union['Expr', Sequence['Expr']]


def _as_list(nodes: Any) -> List[Expr]:
    if isinstance(nodes, Expr):
        return [nodes]
    if isinstance(nodes, (list, tuple)):
        return list(nodes)
    raise TypeMismatchError(f"Expected an expression or a list of expressions, got {nodes!r}")


def _flatten(nodes: Any) -> List[Expr]:
    """``[Y, [X1, X2]]`` -> ``[Y, X1, X2]``."""
    flat: List[Expr] = []
    for item in _as_list(nodes):
        if isinstance(item, (list, tuple)):
            flat.extend(_flatten(item))
        else:
            flat.append(item)
    return flat


class Expr:
    """Base class of the caller-facing operator constructors."""

    op_type: ClassVar[OpType]

    def __init__(self, children: Sequence[Expr], params: Optional[Dict[str, Any]] = None,
                 names: Optional[Sequence[str]] = None):
        for child in children:
            if not isinstance(child, Expr):
                raise TypeMismatchError(
                    f"{self.op_type.value}: child {child!r} is not an expression"
                )
        self.children: Tuple[Expr, ...] = tuple(children)
        self.params = check_node(self.op_type, len(self.children), params)
        self.output_names = _check_names(names)

    def __repr__(self) -> str:
        parts = [repr(c) for c in self.children]
        parts.extend(f"{k}={v!r}" for k, v in self.params.items())
        return f"{self.op_type.value}({', '.join(parts)})"


class Loc(Expr):
    """Fetch a column from the tabular provider."""
    op_type = OpType.LOC

    def __init__(self, name: str, *, names: Optional[Sequence[str]] = None):
        super().__init__([], {'name': name}, names)


class Id(Expr):
    """Pass columns through, optionally renaming them positionally."""
    op_type = OpType.ID

    def __init__(self, nodes: NodeArg, renames: Optional[Sequence[str]] = None, *,
                 names: Optional[Sequence[str]] = None):
        params = {'renames': list(renames)} if renames is not None else {}
        super().__init__(_as_list(nodes), params, names)


class Head(Expr):
    op_type = OpType.HEAD

    def __init__(self, nodes: NodeArg, n: int, *, names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {'n': n}, names)


class _Unary(Expr):
    def __init__(self, nodes: NodeArg, *, names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {}, names)


class Count(_Unary):
    op_type = OpType.COUNT


class Mean(_Unary):
    op_type = OpType.MEAN


class Median(_Unary):
    op_type = OpType.MEDIAN


class Sum(_Unary):
    op_type = OpType.SUM


class Log(_Unary):
    op_type = OpType.LOG


class BoolToStr(_Unary):
    op_type = OpType.BOOL_TO_STR


class Zip(_Unary):
    op_type = OpType.ZIP


class Not(_Unary):
    op_type = OpType.NOT


class Mode(Expr):
    """Most frequent value; ties go to the value seen first."""
    op_type = OpType.MODE

    def __init__(self, nodes: NodeArg, dropna: bool = True, *,
                 names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {'dropna': dropna}, names)


class Var(Expr):
    op_type = OpType.VAR

    def __init__(self, nodes: NodeArg, ddof: int = 1, *, names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {'ddof': ddof}, names)


class _Arith(Expr):
    """Binary-node form when ``value`` is None, scalar form otherwise."""

    def __init__(self, nodes: NodeArg, value: Optional[float] = None, *,
                 names: Optional[Sequence[str]] = None):
        params = {'value': value} if value is not None else {}
        super().__init__(_as_list(nodes), params, names)


class Add(_Arith):
    op_type = OpType.ADD


class Sub(_Arith):
    op_type = OpType.SUB


class Mul(_Arith):
    op_type = OpType.MUL


class Div(_Arith):
    op_type = OpType.DIV


class Gt(Expr):
    op_type = OpType.GT

    def __init__(self, a: Expr, b: Expr, *, names: Optional[Sequence[str]] = None):
        super().__init__([a, b], {}, names)


class CmpArith(Expr):
    op_type = OpType.CMP_ARITH

    def __init__(self, nodes: NodeArg, value: float, mode: Union[str, CmpMode], *,
                 names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {'value': value, 'mode': mode}, names)


class CmpStr(Expr):
    op_type = OpType.CMP_STR

    def __init__(self, nodes: NodeArg, value: str, *, names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {'value': value}, names)


class Where(Expr):
    """Keep rows passing the comparison, replace the rest."""
    op_type = OpType.WHERE

    def __init__(self, nodes: NodeArg, value: float, mode: Union[str, CmpMode],
                 replacement: str, *, names: Optional[Sequence[str]] = None):
        params = {'value': value, 'mode': mode, 'replacement': replacement}
        super().__init__(_as_list(nodes), params, names)


class If(Expr):
    """``[cond, then, else]``"""
    op_type = OpType.IF

    def __init__(self, nodes: Sequence[Expr], *, names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {}, names)


class Full(Expr):
    op_type = OpType.FULL

    def __init__(self, value: Union[float, str, bool], nodes: NodeArg, *,
                 names: Optional[Sequence[str]] = None):
        super().__init__(_as_list(nodes), {'value': value}, names)


class _ListOnly(Expr):
    """Operators whose nodes argument must be a list, even for one node."""

    def __init__(self, nodes: Sequence[Expr], *, names: Optional[Sequence[str]] = None):
        if not isinstance(nodes, (list, tuple)):
            raise ArityMismatchError(
                f"{self.op_type.value} expects a list of nodes, got a single {nodes!r}"
            )
        super().__init__(list(nodes), {}, names)


class Null(_ListOnly):
    op_type = OpType.NULL


class Nan(_ListOnly):
    op_type = OpType.NAN


class Project(Expr):
    """Pick named columns out of a multi-column node (wire tag ``Column``)."""
    op_type = OpType.COLUMN

    def __init__(self, node: Expr, names_to_select: Sequence[str], *,
                 names: Optional[Sequence[str]] = None):
        if isinstance(names_to_select, str):
            names_to_select = [names_to_select]
        super().__init__([node], {'names': list(names_to_select)}, names)


class LinearRegression(Expr):
    """OLS of the first column on the rest; accepts ``[Y, [X1, X2]]``."""
    op_type = OpType.LINEAR_REGRESSION

    def __init__(self, nodes: Sequence[Any]):
        super().__init__(_flatten(nodes), {})


class LogisticRegression(Expr):
    op_type = OpType.LOGISTIC_REGRESSION

    def __init__(self, nodes: Sequence[Any]):
        super().__init__(_flatten(nodes), {})


class TTestLinearRegression(Expr):
    op_type = OpType.TTEST_LINEAR_REGRESSION

    def __init__(self, nodes: Sequence[Any], fit: LinearRegression):
        if not isinstance(fit, LinearRegression):
            raise TypeMismatchError(f"TTestLinearRegression needs a LinearRegression fit, got {fit!r}")
        super().__init__(_flatten(nodes) + [fit], {})


class WaldTestLogisticRegression(Expr):
    op_type = OpType.WALD_TEST_LOGISTIC_REGRESSION

    def __init__(self, x: Any, fit: LogisticRegression):
        if not isinstance(fit, LogisticRegression):
            raise TypeMismatchError(
                f"WaldTestLogisticRegression needs a LogisticRegression fit, got {fit!r}"
            )
        super().__init__(_flatten(x) + [fit], {})


class TTest(Expr):
    """Welch two-sample t-test."""
    op_type = OpType.TTEST

    def __init__(self, nodes: Sequence[Expr], alternative: str = 'two-sided'):
        super().__init__(_as_list(nodes), {'alternative': alternative})


class Histogram(Expr):
    op_type = OpType.HISTOGRAM

    def __init__(self, nodes: NodeArg, bins: int = 10):
        super().__init__(_as_list(nodes), {'bins': bins})


class Boxplot(Expr):
    """Quartiles, whiskers and outliers of one numeric column."""
    op_type = OpType.BOXPLOT

    def __init__(self, nodes: NodeArg):
        super().__init__(_as_list(nodes), {})


__all__ = [
    'OpType', 'CmpMode', 'ALTERNATIVES', 'STATISTICAL_OPS',
    'Node', 'Expr', 'check_node',
    'Loc', 'Id', 'Head', 'Count', 'Mean', 'Median', 'Mode', 'Var', 'Sum',
    'Add', 'Sub', 'Mul', 'Div', 'Log', 'Gt', 'CmpArith', 'CmpStr', 'Where',
    'If', 'Full', 'Null', 'Nan', 'BoolToStr', 'Project', 'Zip', 'Not',
    'LinearRegression', 'TTestLinearRegression', 'LogisticRegression',
    'WaldTestLogisticRegression', 'TTest', 'Histogram', 'Boxplot',
]
