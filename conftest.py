"""
Shared fixtures for the tabular_dag test modules.
"""

import numpy as np
import polars as pl
import pytest

from tabular_dag import DagBuilder, DagEvaluator, DataFrameProvider, EvaluationConfig


@pytest.fixture
def frame() -> pl.DataFrame:
    """Small mixed-type table with nulls in the numeric and string columns."""
    return pl.DataFrame({
        'x': [1.0, 2.0, None, 4.0, 5.0],
        'y': [10.0, 20.0, 30.0, 40.0, 50.0],
        'z': [0.5, -1.0, 0.0, 2.0, float('nan')],
        'label': ['a', 'b', 'a', None, 'c'],
        'flag': [True, False, True, None, False],
    })


@pytest.fixture
def provider(frame) -> DataFrameProvider:
    return DataFrameProvider(frame)


@pytest.fixture
def run(provider):
    """Build the given expressions into one graph and evaluate every output."""

    def _run(*exprs, config: EvaluationConfig = EvaluationConfig()):
        builder = DagBuilder()
        for expr in exprs:
            builder.add(expr)
        dag, _ = builder.build()
        return DagEvaluator(provider, config).evaluate(dag)

    return _run


@pytest.fixture(scope="session")
def regression_frame() -> pl.DataFrame:
    """y = 2 + 3*x1 - x2 with small Gaussian noise."""
    rng = np.random.default_rng(42)
    n = 200
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    y = 2.0 + 3.0 * x1 - 1.0 * x2 + rng.normal(scale=0.01, size=n)
    return pl.DataFrame({'x1': x1, 'x2': x2, 'y': y})


@pytest.fixture(scope="session")
def logistic_frame() -> pl.DataFrame:
    """Overlapping classes drawn from a logit model with known coefficients."""
    rng = np.random.default_rng(7)
    n = 2000
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    p = 1.0 / (1.0 + np.exp(-(-0.5 + 1.5 * x1 - 0.8 * x2)))
    outcome = rng.random(n) < p
    return pl.DataFrame({'x1': x1, 'x2': x2, 'outcome': outcome})
