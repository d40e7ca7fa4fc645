"""
Error kinds raised while building and evaluating a DAG.

Every evaluation failure is tied to a node: the evaluator stamps the node
index and operator onto the exception before propagating it to the
ancestors, so the caller sees which node failed and why.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Structured error kinds."""
    UNKNOWN_COLUMN = "UnknownColumn"
    ARITY_MISMATCH = "ArityMismatch"
    ROW_COUNT_MISMATCH = "RowCountMismatch"
    NON_NUMERIC_COLUMN = "NonNumericColumn"
    TYPE_MISMATCH = "TypeMismatch"
    INVALID_MODE = "InvalidMode"
    SINGULAR_DESIGN = "SingularDesign"
    NON_CONVERGENCE = "NonConvergence"
    INSUFFICIENT_ROWS = "InsufficientRows"
    CYCLE_DETECTED = "CycleDetected"
    INVALID_OUTPUT = "InvalidOutput"


class DagError(Exception):
    """Base class for construction and evaluation failures."""

    kind: ErrorKind

    def __init__(self, message: str, node_index: Optional[int] = None,
                 op: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.node_index = node_index
        self.op = op

    def at_node(self, node_index: int, op: str) -> DagError:
        """Attach node context if the error does not already carry one."""
        if self.node_index is None:
            self.node_index = node_index
            self.op = op
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'message': self.message,
            'nodeIndex': self.node_index,
            'op': self.op,
        }

    def __str__(self) -> str:
        if self.node_index is None:
            return f"{self.kind.value}: {self.message}"
        return f"{self.kind.value} at node {self.node_index} ({self.op}): {self.message}"


class UnknownColumnError(DagError):
    kind = ErrorKind.UNKNOWN_COLUMN


class ArityMismatchError(DagError):
    kind = ErrorKind.ARITY_MISMATCH


class RowCountMismatchError(DagError):
    kind = ErrorKind.ROW_COUNT_MISMATCH


class NonNumericColumnError(DagError):
    kind = ErrorKind.NON_NUMERIC_COLUMN


class TypeMismatchError(DagError):
    kind = ErrorKind.TYPE_MISMATCH


class InvalidModeError(DagError):
    kind = ErrorKind.INVALID_MODE


class SingularDesignError(DagError):
    kind = ErrorKind.SINGULAR_DESIGN


class NonConvergenceError(DagError):
    kind = ErrorKind.NON_CONVERGENCE


class InsufficientRowsError(DagError):
    kind = ErrorKind.INSUFFICIENT_ROWS


class CycleDetectedError(DagError):
    kind = ErrorKind.CYCLE_DETECTED


class InvalidOutputError(DagError):
    kind = ErrorKind.INVALID_OUTPUT


class GraphFormatError(ValueError):
    """A serialized graph that cannot be decoded into nodes."""


class NodeExecutionError(RuntimeError):
    """Unexpected failure inside an operator, with node context."""

    def __init__(self, message: str, node_index: int, op: str):
        super().__init__(f"Failed to execute node {node_index} ({op}): {message}")
        self.node_index = node_index
        self.op = op


__all__ = [
    'ErrorKind',
    'DagError',
    'UnknownColumnError',
    'ArityMismatchError',
    'RowCountMismatchError',
    'NonNumericColumnError',
    'TypeMismatchError',
    'InvalidModeError',
    'SingularDesignError',
    'NonConvergenceError',
    'InsufficientRowsError',
    'CycleDetectedError',
    'InvalidOutputError',
    'GraphFormatError',
    'NodeExecutionError',
]
