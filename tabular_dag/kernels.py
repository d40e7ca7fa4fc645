"""
Column kernels
==============

Elementwise, comparison and aggregate operations over ``Column`` values,
expressed with polars expressions. Every kernel allocates fresh Series and
propagates nulls: a null operand yields a null result, never a value.
"""

from __future__ import annotations
import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import polars as pl

from .columns import Column, ColumnType
from .errors import (
    ArityMismatchError, InsufficientRowsError, NonNumericColumnError,
    RowCountMismatchError, TypeMismatchError, UnknownColumnError,
)
from .nodes import CmpMode

_NAN = float('nan')

ARITH_OPS: Dict[str, Callable[[Any, Any], Any]] = {
    'Add': lambda a, b: a + b,
    'Sub': lambda a, b: a - b,
    'Mul': lambda a, b: a * b,
    'Div': lambda a, b: a / b,
}

CMP_OPS: Dict[CmpMode, Callable[[Any, Any], Any]] = {
    CmpMode.LT: lambda a, b: a < b,
    CmpMode.LE: lambda a, b: a <= b,
    CmpMode.EQ: lambda a, b: a == b,
    CmpMode.GE: lambda a, b: a >= b,
    CmpMode.GT: lambda a, b: a > b,
}


# ==============================================================================
# VALIDATION HELPERS
# ==============================================================================

def require_numeric(column: Column, op: str) -> None:
    if not column.is_numeric:
        raise NonNumericColumnError(
            f"{op} needs a float64 column, {column.name!r} is {column.dtype.value}"
        )


def require_boolean(column: Column, op: str) -> None:
    if column.dtype is not ColumnType.BOOLEAN:
        raise TypeMismatchError(
            f"{op} needs a boolean column, {column.name!r} is {column.dtype.value}"
        )


def require_same_length(columns: Sequence[Column], op: str) -> int:
    lengths = {len(c) for c in columns}
    if len(lengths) > 1:
        detail = ', '.join(f"{c.name}={len(c)}" for c in columns)
        raise RowCountMismatchError(f"{op} got columns of different lengths: {detail}")
    return lengths.pop() if lengths else 0


def _select(frame: pl.DataFrame, expr: pl.Expr, name: str) -> pl.Series:
    return frame.select(expr.alias(name)).to_series()


def _scalar_column(column: Column, value: Any, dtype: pl.DataType) -> Column:
    return column.with_series(pl.Series(column.name, [value], dtype=dtype))


# ==============================================================================
# SELECTION
# ==============================================================================

def identity(columns: List[Column], renames: Optional[Sequence[str]] = None) -> List[Column]:
    if renames is None:
        return list(columns)
    if len(renames) != len(columns):
        raise ArityMismatchError(f"Id got {len(renames)} renames for {len(columns)} columns")
    return [c.renamed(name) for c, name in zip(columns, renames)]


def head(columns: List[Column], n: int) -> List[Column]:
    return [c.with_series(c.series.head(n)) for c in columns]


def project(columns: List[Column], names: Sequence[str]) -> List[Column]:
    """Named columns, falling back to the fields of a single record column."""
    by_name = {c.name: c for c in columns}
    records = [c for c in columns if c.dtype is ColumnType.RECORD]

    selected = []
    for name in names:
        if name in by_name:
            selected.append(by_name[name])
            continue
        for record in records:
            fields = [f.name for f in record.series.dtype.fields]
            if name in fields:
                selected.append(Column(name, record.series.struct.field(name)))
                break
        else:
            available = sorted(by_name) + sorted(
                f.name for r in records for f in r.series.dtype.fields
            )
            raise UnknownColumnError(f"column {name!r} not found among {available}")
    return selected


def zip_columns(columns: List[Column], name: str = 'zip') -> List[Column]:
    require_same_length(columns, 'Zip')
    names = [c.name for c in columns]
    if len(set(names)) != len(names):
        raise ArityMismatchError(f"Zip needs distinct column names, got {names}")
    frame = pl.DataFrame([c.series for c in columns])
    return [Column(name, frame.to_struct(name))]


def expand_records(columns: List[Column]) -> List[Column]:
    """Replace each record column by its fields, in order."""
    expanded: List[Column] = []
    for column in columns:
        if column.dtype is ColumnType.RECORD:
            for f in column.series.dtype.fields:
                expanded.append(Column(f.name, column.series.struct.field(f.name)))
        else:
            expanded.append(column)
    return expanded


def rename_outputs(columns: List[Column], names: Sequence[str]) -> List[Column]:
    if len(names) != len(columns):
        raise ArityMismatchError(
            f"{len(names)} output names given for {len(columns)} produced columns"
        )
    return [c.renamed(n) for c, n in zip(columns, names)]


# ==============================================================================
# AGGREGATES
# ==============================================================================

def count(columns: List[Column]) -> List[Column]:
    return [_scalar_column(c, float(len(c)), pl.Float64) for c in columns]


def mean(columns: List[Column]) -> List[Column]:
    out = []
    for c in columns:
        require_numeric(c, 'Mean')
        out.append(_scalar_column(c, c.series.mean(), pl.Float64))
    return out


def median(columns: List[Column]) -> List[Column]:
    out = []
    for c in columns:
        require_numeric(c, 'Median')
        out.append(_scalar_column(c, c.series.median(), pl.Float64))
    return out


def total(columns: List[Column]) -> List[Column]:
    out = []
    for c in columns:
        require_numeric(c, 'Sum')
        out.append(_scalar_column(c, float(c.series.sum()), pl.Float64))
    return out


def variance(columns: List[Column], ddof: int = 1) -> List[Column]:
    out = []
    for c in columns:
        require_numeric(c, 'Var')
        observed = len(c) - c.null_count
        if observed <= ddof:
            raise InsufficientRowsError(
                f"Var with ddof={ddof} needs more than {ddof} non-null rows, "
                f"{c.name!r} has {observed}"
            )
        out.append(_scalar_column(c, c.series.var(ddof=ddof), pl.Float64))
    return out


def mode(columns: List[Column], dropna: bool = True) -> List[Column]:
    out = []
    for c in columns:
        series = c.series.drop_nulls() if dropna else c.series
        if len(series) == 0:
            out.append(_scalar_column(c, None, c.series.dtype))
            continue
        ranked = (
            pl.DataFrame({'v': series})
            .with_row_index('i')
            .group_by('v')
            .agg(pl.len().alias('n'), pl.col('i').min().alias('first'))
            .sort(['n', 'first'], descending=[True, False])
        )
        out.append(_scalar_column(c, ranked.get_column('v')[0], c.series.dtype))
    return out


# ==============================================================================
# ELEMENTWISE ARITHMETIC
# ==============================================================================

def arith_binary(op: str, left: List[Column], right: List[Column]) -> List[Column]:
    """Pairwise combination of two equally shaped column lists."""
    if len(left) != len(right):
        raise ArityMismatchError(
            f"{op} combines {len(left)} columns with {len(right)} columns"
        )
    fn = ARITH_OPS[op]
    out = []
    for a, b in zip(left, right):
        require_numeric(a, op)
        require_numeric(b, op)
        require_same_length([a, b], op)
        out.append(a.with_series(fn(a.series, b.series)))
    return out


def arith_scalar(op: str, columns: List[Column], value: float) -> List[Column]:
    fn = ARITH_OPS[op]
    out = []
    for c in columns:
        require_numeric(c, op)
        out.append(c.with_series(fn(c.series, value)))
    return out


def log(columns: List[Column]) -> List[Column]:
    out = []
    for c in columns:
        require_numeric(c, 'Log')
        col = pl.col(c.name)
        expr = pl.when(col <= 0).then(pl.lit(_NAN)).otherwise(col.log())
        out.append(c.with_series(_select(c.series.to_frame(), expr, c.name)))
    return out


# ==============================================================================
# PREDICATES
# ==============================================================================

def compare_expr(mode: CmpMode, left: pl.Expr, right: Union[pl.Expr, float]) -> pl.Expr:
    """
    Float comparison with IEEE semantics.

    polars orders NaN above every number and equal to itself; here a NaN on
    either side makes every mode False. A null on either side stays null.
    """
    missing = left.is_null()
    unordered = left.is_nan()
    if isinstance(right, pl.Expr):
        missing = missing | right.is_null()
        unordered = unordered | right.is_nan()
    elif math.isnan(right):
        unordered = pl.lit(True)
    return (
        pl.when(missing).then(pl.lit(None, dtype=pl.Boolean))
        .when(unordered).then(pl.lit(False))
        .otherwise(CMP_OPS[mode](left, right))
    )


def greater_than(left: List[Column], right: List[Column]) -> List[Column]:
    if len(left) != len(right):
        raise ArityMismatchError(f"Gt compares {len(left)} columns with {len(right)} columns")
    out = []
    for a, b in zip(left, right):
        if a.dtype is not b.dtype or a.dtype is ColumnType.RECORD:
            raise TypeMismatchError(
                f"Gt cannot compare {a.dtype.value} {a.name!r} with {b.dtype.value} {b.name!r}"
            )
        require_same_length([a, b], 'Gt')
        if a.is_numeric:
            frame = pl.DataFrame([a.series.rename('a'), b.series.rename('b')])
            expr = compare_expr(CmpMode.GT, pl.col('a'), pl.col('b'))
            out.append(a.with_series(_select(frame, expr, a.name)))
        else:
            out.append(a.with_series(a.series > b.series))
    return out


def compare_scalar(columns: List[Column], value: float, mode: CmpMode) -> List[Column]:
    out = []
    for c in columns:
        require_numeric(c, 'CmpArith')
        expr = compare_expr(mode, pl.col(c.name), float(value))
        out.append(c.with_series(_select(c.series.to_frame(), expr, c.name)))
    return out


def compare_string(columns: List[Column], value: str) -> List[Column]:
    out = []
    for c in columns:
        if c.dtype is not ColumnType.STRING:
            raise TypeMismatchError(f"CmpStr needs a string column, {c.name!r} is {c.dtype.value}")
        out.append(c.with_series(c.series == value))
    return out


def coerce_literal(text: str) -> float:
    """Parse a ``Where`` replacement literal as a float64 value."""
    try:
        return float(text)
    except ValueError:
        raise TypeMismatchError(f"Cannot use {text!r} as a float64 value") from None


def where(columns: List[Column], value: float, mode: CmpMode, replacement: str) -> List[Column]:
    """
    Rows passing ``column <mode> value`` keep their value; the rest get
    ``replacement``. NaN rows never pass, so they are replaced too.
    """
    out = []
    for c in columns:
        require_numeric(c, 'Where')
        literal = coerce_literal(replacement)
        col = pl.col(c.name)
        expr = (
            pl.when(col.is_null()).then(pl.lit(None, dtype=pl.Float64))
            .when(compare_expr(mode, col, float(value))).then(col)
            .otherwise(pl.lit(literal, dtype=pl.Float64))
        )
        out.append(c.with_series(_select(c.series.to_frame(), expr, c.name)))
    return out


def if_then_else(cond: List[Column], then: List[Column], otherwise: List[Column]) -> List[Column]:
    if len(cond) != 1:
        raise ArityMismatchError(f"If needs a single condition column, got {len(cond)}")
    if len(then) != len(otherwise):
        raise ArityMismatchError(
            f"If branches produce {len(then)} and {len(otherwise)} columns"
        )
    c = cond[0]
    require_boolean(c, 'If')

    out = []
    for a, b in zip(then, otherwise):
        require_same_length([c, a, b], 'If')
        if a.dtype is not b.dtype:
            raise TypeMismatchError(
                f"If branches disagree: {a.name!r} is {a.dtype.value}, {b.name!r} is {b.dtype.value}"
            )
        frame = pl.DataFrame([c.series.rename('c'), a.series.rename('a'), b.series.rename('b')])
        expr = (
            pl.when(pl.col('c').is_null()).then(pl.lit(None, dtype=a.series.dtype))
            .when(pl.col('c')).then(pl.col('a'))
            .otherwise(pl.col('b'))
        )
        out.append(a.with_series(_select(frame, expr, a.name)))
    return out


def full(value: Any, columns: List[Column]) -> List[Column]:
    n = require_same_length(columns, 'Full')
    if isinstance(value, bool):
        dtype = pl.Boolean
    elif isinstance(value, str):
        dtype = pl.String
    else:
        dtype = pl.Float64
    name = columns[0].name
    return [Column(name, pl.Series(name, [value] * n, dtype=dtype))]


def null_check(columns: List[Column]) -> List[Column]:
    return [c.with_series(c.series.is_null()) for c in columns]


def nan_check(columns: List[Column]) -> List[Column]:
    out = []
    for c in columns:
        require_numeric(c, 'Nan')
        out.append(c.with_series(c.series.is_nan().fill_null(False)))
    return out


def bool_to_str(columns: List[Column]) -> List[Column]:
    out = []
    for c in columns:
        require_boolean(c, 'BoolToStr')
        out.append(c.with_series(c.series.cast(pl.UInt8).cast(pl.String)))
    return out


def negate(columns: List[Column]) -> List[Column]:
    out = []
    for c in columns:
        require_boolean(c, 'Not')
        out.append(c.with_series(~c.series))
    return out


def to_float_values(column: Column, op: str) -> List[Optional[float]]:
    """Float view of a numeric or boolean column; nulls stay ``None``."""
    if column.dtype is ColumnType.BOOLEAN:
        return column.series.cast(pl.Float64).to_list()
    require_numeric(column, op)
    return column.series.to_list()


def is_missing(value: Optional[float]) -> bool:
    return value is None or math.isnan(value)


__all__ = [
    'ARITH_OPS', 'CMP_OPS',
    'require_numeric', 'require_boolean', 'require_same_length',
    'identity', 'head', 'project', 'zip_columns', 'expand_records', 'rename_outputs',
    'count', 'mean', 'median', 'total', 'variance', 'mode',
    'arith_binary', 'arith_scalar', 'log',
    'compare_expr', 'greater_than', 'compare_scalar', 'compare_string', 'coerce_literal', 'where',
    'if_then_else', 'full', 'null_check', 'nan_check', 'bool_to_str', 'negate',
    'to_float_values', 'is_missing',
]
