"""
Command-line runner: evaluate a serialized graph against a CSV file.

    python -m tabular_dag graph.json --csv data.csv [--parallel] [--indent 2]

Prints one JSON payload per requested output as a JSON list; non-finite
floats are written as the strings "NaN", "Infinity" and "-Infinity". Exits
with status 1 when any output failed and 2 when the graph, the CSV file or
the requested result indices are invalid.
"""

from __future__ import annotations
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import polars as pl

from .builder import Dag, count_ops
from .columns import DataFrameProvider
from .config import EvaluationConfig, configure_logging
from .errors import DagError, GraphFormatError
from .evaluator import DagEvaluator

logger = logging.getLogger('tabular_dag.cli')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='python -m tabular_dag',
        description="Evaluate a serialized computation graph over a CSV file.",
    )
    parser.add_argument("graph", type=Path, help="Path to the graph JSON ({nodes, results}).")
    parser.add_argument("--csv", type=Path, required=True, help="CSV file providing the columns.")
    parser.add_argument("--results", type=int, nargs='+', default=None,
                        help="Node indices to evaluate instead of the graph's results.")
    parser.add_argument("--parallel", action='store_true', help="Evaluate independent nodes on a thread pool.")
    parser.add_argument("--indent", type=int, default=None, help="Indent the JSON output.")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level, e.g. DEBUG.")
    parser.add_argument("--stats", action='store_true', help="Write evaluation statistics as JSON to stderr.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = EvaluationConfig.from_env()
        dag = Dag.from_json(args.graph.read_text())
        provider = DataFrameProvider.from_csv(args.csv)
    except (OSError, ValueError, DagError, pl.exceptions.PolarsError) as e:
        logger.error("Cannot load inputs: %s", e)
        return 2

    logger.debug("Graph operators: %s", {op.value: n for op, n in count_ops(dag).items()})

    if args.parallel:
        config = config.with_overrides(parallel=True)

    evaluator = DagEvaluator(provider, config)
    try:
        outputs = evaluator.evaluate(dag, args.results)
    except GraphFormatError as e:
        logger.error("Cannot evaluate graph: %s", e)
        return 2

    json.dump([output.to_payload() for output in outputs], sys.stdout,
              indent=args.indent, allow_nan=False)
    sys.stdout.write("\n")

    if args.stats:
        json.dump(evaluator.get_performance_stats(), sys.stderr, indent=2)
        sys.stderr.write("\n")

    failed = [o for o in outputs if not o.ok]
    for output in failed:
        logger.warning("Output %d failed: %s", output.index, output.error)
    return 1 if failed else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
