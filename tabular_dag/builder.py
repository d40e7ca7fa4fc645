"""
Graph Builder
=============

Append-only arena construction. ``DagBuilder.add`` walks an expression,
allocating one ``Node`` per distinct ``Expr`` object (children first), and
records the expression's arena index as a requested output. Because every
node is appended after its children, a built graph is acyclic by
construction; only deserialized graphs can carry forward references, and the
evaluator checks those.

Example::

    x = Loc("x")
    dag, (mean_idx, ids_idx) = DagBuilder().add(Mean([x])).add(Id([x])).build()
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import GraphFormatError
from .nodes import Expr, Node, OpType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dag:
    """Frozen arena plus the ordered list of requested outputs."""
    nodes: Tuple[Node, ...]
    results: Tuple[int, ...]

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, index: int) -> Node:
        return self.nodes[index]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [node.to_dict() for node in self.nodes],
            'results': list(self.results),
        }

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), **kwargs)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Dag:
        """
        Decode the wire form.

        Child ids must name nodes of the same graph. Forward references are
        accepted here and left for the evaluator's cycle check.
        """
        if not isinstance(payload, dict):
            raise GraphFormatError("Serialized graph must be an object")

        records = payload.get('nodes')
        results = payload.get('results', [])
        if not isinstance(records, list):
            raise GraphFormatError("Serialized graph needs a 'nodes' list")
        if not isinstance(results, list):
            raise GraphFormatError("'results' must be a list of node ids")

        nodes = tuple(Node.from_dict(record) for record in records)

        for index, node in enumerate(nodes):
            for child in node.children:
                if not 0 <= child < len(nodes):
                    raise GraphFormatError(
                        f"Node {index} ({node.op.value}) references missing node {child}"
                    )
        for result in results:
            if isinstance(result, bool) or not isinstance(result, int) or not 0 <= result < len(nodes):
                raise GraphFormatError(f"Result index {result!r} does not name a node")

        return cls(nodes=nodes, results=tuple(results))

    @classmethod
    def from_json(cls, text: str) -> Dag:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise GraphFormatError(f"Invalid graph JSON: {e}") from e
        return cls.from_dict(payload)


class DagBuilder:
    """Fluent builder: ``DagBuilder().add(a).add(b).build()``."""

    def __init__(self):
        self._nodes: List[Node] = []
        self._interned: Dict[int, int] = {}
        # Keeps interned expressions alive so their ids stay unique.
        self._exprs: List[Expr] = []
        self._results: List[int] = []
        self._frozen = False

    def add(self, expr: Expr) -> DagBuilder:
        """Intern ``expr`` (and its subgraph) and request it as an output."""
        if self._frozen:
            raise RuntimeError("DagBuilder.add called after build()")
        self._results.append(self.intern(expr))
        return self

    def intern(self, expr: Expr) -> int:
        """Arena index of ``expr``, allocating nodes for anything new."""
        if not isinstance(expr, Expr):
            raise TypeError(f"Expected an expression, got {type(expr).__name__}")

        # Iterative post-order so long chains do not hit the recursion limit.
        stack: List[Tuple[Expr, bool]] = [(expr, False)]
        while stack:
            current, expanded = stack.pop()
            if id(current) in self._interned:
                continue
            if not expanded:
                stack.append((current, True))
                for child in reversed(current.children):
                    if id(child) not in self._interned:
                        stack.append((child, False))
                continue

            node = Node(
                op=current.op_type,
                children=tuple(self._interned[id(c)] for c in current.children),
                params=dict(current.params),
                output_names=current.output_names,
            )
            self._interned[id(current)] = len(self._nodes)
            self._nodes.append(node)
            self._exprs.append(current)

        return self._interned[id(expr)]

    def build(self) -> Tuple[Dag, List[int]]:
        """Freeze the arena; returns the graph and the result indices in add order."""
        self._frozen = True
        dag = Dag(nodes=tuple(self._nodes), results=tuple(self._results))
        logger.debug("Built DAG with %d nodes and %d outputs", len(dag.nodes), len(dag.results))
        return dag, list(self._results)


def count_ops(dag: Dag) -> Dict[OpType, int]:
    """Operator histogram of a graph."""
    counts: Dict[OpType, int] = {}
    for node in dag.nodes:
        counts[node.op] = counts.get(node.op, 0) + 1
    return counts


__all__ = ['Dag', 'DagBuilder', 'count_ops']
