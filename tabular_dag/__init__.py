# tabular_dag/__init__.py
from __future__ import annotations
from .columns import Column, ColumnType, DataFrameProvider, TabularProvider
from .nodes import (
    OpType, CmpMode, Node, Expr,
    Loc, Id, Head, Count, Mean, Median, Mode, Var, Sum,
    Add, Sub, Mul, Div, Log, Gt, CmpArith, CmpStr, Where, If, Full,
    Null, Nan, BoolToStr, Project, Zip, Not,
    LinearRegression, TTestLinearRegression, LogisticRegression,
    WaldTestLogisticRegression, TTest, Histogram, Boxplot,
)
from .builder import Dag, DagBuilder, count_ops
from .evaluator import DagEvaluator, NodeState, OutputResult, evaluate
from .config import EvaluationConfig, DEFAULT_CONFIG, configure_logging
from .models import (
    StatisticalResult, LinearRegressionResult, TTestLinearRegressionResult,
    LogisticRegressionResult, WaldTestResult, TTestResult, HistogramResult,
    BoxplotResult,
)
from .errors import (
    ErrorKind, DagError, UnknownColumnError, ArityMismatchError,
    RowCountMismatchError, NonNumericColumnError, TypeMismatchError,
    InvalidModeError, SingularDesignError, NonConvergenceError,
    InsufficientRowsError, CycleDetectedError, InvalidOutputError,
    GraphFormatError, NodeExecutionError,
)

__version__ = '0.1.0'

__all__ = [
    'Column', 'ColumnType', 'DataFrameProvider', 'TabularProvider',
    'OpType', 'CmpMode', 'Node', 'Expr',
    'Loc', 'Id', 'Head', 'Count', 'Mean', 'Median', 'Mode', 'Var', 'Sum',
    'Add', 'Sub', 'Mul', 'Div', 'Log', 'Gt', 'CmpArith', 'CmpStr', 'Where', 'If', 'Full',
    'Null', 'Nan', 'BoolToStr', 'Project', 'Zip', 'Not',
    'LinearRegression', 'TTestLinearRegression', 'LogisticRegression',
    'WaldTestLogisticRegression', 'TTest', 'Histogram', 'Boxplot',
    'Dag', 'DagBuilder', 'count_ops',
    'DagEvaluator', 'NodeState', 'OutputResult', 'evaluate',
    'EvaluationConfig', 'DEFAULT_CONFIG', 'configure_logging',
    'StatisticalResult', 'LinearRegressionResult', 'TTestLinearRegressionResult',
    'LogisticRegressionResult', 'WaldTestResult', 'TTestResult', 'HistogramResult',
    'BoxplotResult',
    'ErrorKind', 'DagError', 'UnknownColumnError', 'ArityMismatchError',
    'RowCountMismatchError', 'NonNumericColumnError', 'TypeMismatchError',
    'InvalidModeError', 'SingularDesignError', 'NonConvergenceError',
    'InsufficientRowsError', 'CycleDetectedError', 'InvalidOutputError',
    'GraphFormatError', 'NodeExecutionError',
]
