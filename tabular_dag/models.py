"""
Statistical Model Library
=========================

Regression fits and the inferential tests computed on top of them.

Numerical approach:
- OLS solves R beta = Q^T y from a reduced QR decomposition of the design
  matrix, so (X^T X) is never formed or inverted explicitly. Rank deficiency
  is read off the diagonal of R.
- Logistic regression runs IRLS with a Cholesky solve of X^T W X per step.
- Standard errors come from (X^T X)^-1 = R^-1 R^-T for OLS and from the
  inverse information matrix at the fitted coefficients for the logit model.

All results serialize through ``to_dict()`` into JSON-compatible payloads.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg as la
import scipy.stats as stats
from scipy.special import expit

from .errors import (
    ArityMismatchError, InsufficientRowsError, InvalidModeError,
    NonConvergenceError, RowCountMismatchError, SingularDesignError, TypeMismatchError,
)

logger = logging.getLogger(__name__)

INTERCEPT = 'intercept'

_EPS = np.finfo(np.float64).eps


# ============================================================================
# RESULT CONTAINERS
# ============================================================================

class StatisticalResult:
    """Base for every non-column evaluation result."""

    model: str = ''

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


def _named(names: Sequence[str], values: np.ndarray) -> Dict[str, float]:
    return {name: float(v) for name, v in zip(names, values)}


@dataclass
class LinearRegressionResult(StatisticalResult):
    """OLS fit: ``y = intercept + sum(coefficients * x)``."""
    variables: List[str]
    intercept: float
    coefficients: np.ndarray
    n_observations: int
    ssr: float

    model = 'LinearRegression'

    @property
    def params(self) -> np.ndarray:
        return np.concatenate([[self.intercept], self.coefficients])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'intercept': float(self.intercept),
            'coefficients': _named(self.variables, self.coefficients),
            'nObservations': self.n_observations,
            'ssr': float(self.ssr),
        }


@dataclass
class TTestLinearRegressionResult(StatisticalResult):
    variables: List[str]
    params: np.ndarray
    standard_errors: np.ndarray
    t_statistics: np.ndarray
    p_values: np.ndarray
    degrees_of_freedom: int
    ssr: float
    scale: float

    model = 'TTestLinearRegression'

    @property
    def terms(self) -> List[str]:
        return [INTERCEPT] + list(self.variables)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'intercept': float(self.params[0]),
            'coefficients': _named(self.variables, self.params[1:]),
            'standardErrors': _named(self.terms, self.standard_errors),
            'tStatistics': _named(self.terms, self.t_statistics),
            'pValues': _named(self.terms, self.p_values),
            'degreesOfFreedom': self.degrees_of_freedom,
            'ssr': float(self.ssr),
            'scale': float(self.scale),
        }


@dataclass
class LogisticRegressionResult(StatisticalResult):
    """Binomial logit fit; ``classes[1]`` is the positive class."""
    variables: List[str]
    intercept: float
    coefficients: np.ndarray
    classes: List[str]
    n_observations: int
    iterations: int
    converged: bool = True
    # Source-row indices the fit was computed on, when known.
    rows: Optional[List[int]] = field(default=None, repr=False, compare=False)

    model = 'LogisticRegression'

    @property
    def params(self) -> np.ndarray:
        return np.concatenate([[self.intercept], self.coefficients])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'intercept': float(self.intercept),
            'coefficients': _named(self.variables, self.coefficients),
            'classes': list(self.classes),
            'nObservations': self.n_observations,
            'iterations': self.iterations,
            'converged': self.converged,
        }


@dataclass
class WaldTestResult(StatisticalResult):
    variables: List[str]
    params: np.ndarray
    standard_errors: np.ndarray
    z_statistics: np.ndarray
    p_values: np.ndarray
    wald_statistic: float
    wald_p_value: float
    degrees_of_freedom: int

    model = 'WaldTestLogisticRegression'

    @property
    def terms(self) -> List[str]:
        return [INTERCEPT] + list(self.variables)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'intercept': float(self.params[0]),
            'coefficients': _named(self.variables, self.params[1:]),
            'standardErrors': _named(self.terms, self.standard_errors),
            'zStatistics': _named(self.terms, self.z_statistics),
            'pValues': _named(self.terms, self.p_values),
            'waldStatistic': float(self.wald_statistic),
            'waldPValue': float(self.wald_p_value),
            'degreesOfFreedom': self.degrees_of_freedom,
        }


@dataclass
class TTestResult(StatisticalResult):
    statistic: float
    p_value: float
    degrees_of_freedom: float
    alternative: str

    model = 'TTest'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'statistic': float(self.statistic),
            'pValue': float(self.p_value),
            'degreesOfFreedom': float(self.degrees_of_freedom),
            'alternative': self.alternative,
        }


@dataclass
class HistogramResult(StatisticalResult):
    bins: List[float]
    values: List[int]
    metadata: Dict[str, Any] = field(default_factory=dict)

    model = 'Histogram'

    def to_dict(self) -> Dict[str, Any]:
        return {'model': self.model, 'bins': list(self.bins), 'values': list(self.values)}


@dataclass
class BoxplotResult(StatisticalResult):
    """Tukey box plot; whiskers end at the last values within 1.5 IQR of the quartiles."""
    min: float
    lower_quartile: float
    median: float
    upper_quartile: float
    max: float
    lower_outliers: List[float]
    upper_outliers: List[float]

    model = 'Boxplot'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'min': float(self.min),
            'lowerQuartile': float(self.lower_quartile),
            'median': float(self.median),
            'upperQuartile': float(self.upper_quartile),
            'max': float(self.max),
            'lowerOutliers': [float(v) for v in self.lower_outliers],
            'upperOutliers': [float(v) for v in self.upper_outliers],
        }


# ============================================================================
# DESIGN MATRIX PREPARATION
# ============================================================================

def _missing(value: Optional[float]) -> bool:
    return value is None or value != value


def complete_rows(y: Optional[Sequence[Optional[float]]],
                  xs: Sequence[Sequence[Optional[float]]],
                  candidates: Optional[Sequence[int]] = None) -> List[int]:
    """Indices of the candidate rows with no null or NaN in ``y`` or any ``x``."""
    if candidates is None:
        candidates = range(len(y) if y is not None else len(xs[0]))
    rows = []
    for i in candidates:
        if y is not None and _missing(y[i]):
            continue
        if any(_missing(x[i]) for x in xs):
            continue
        rows.append(i)

    dropped = len(candidates) - len(rows)
    if dropped:
        logger.info("Dropped %d of %d rows with null or NaN regression inputs", dropped, len(candidates))
    return rows


def design_matrix(y: Optional[Sequence[Optional[float]]],
                  xs: Sequence[Sequence[Optional[float]]],
                  rows: Sequence[int]) -> Tuple[Optional[np.ndarray], np.ndarray]:
    """Response vector and design matrix (leading column of ones) over ``rows``."""
    y_arr = None if y is None else np.asarray([y[i] for i in rows], dtype=np.float64)
    X = np.ones((len(rows), len(xs) + 1), dtype=np.float64)
    for j, x in enumerate(xs, start=1):
        X[:, j] = [x[i] for i in rows]
    return y_arr, X


def complete_cases(y: Optional[Sequence[Optional[float]]],
                   xs: Sequence[Sequence[Optional[float]]]
                   ) -> Tuple[Optional[np.ndarray], np.ndarray, int]:
    """
    Listwise deletion, then the design matrix with a leading column of ones.

    Returns ``(y, X, dropped_rows)``; ``y`` is None when no response is given.
    """
    n = len(y) if y is not None else len(xs[0])
    rows = complete_rows(y, xs)
    y_arr, X = design_matrix(y, xs, rows)
    return y_arr, X, n - len(rows)


def encode_binary_response(values: Sequence[Any], kind: str) -> Tuple[List[Optional[float]], List[str]]:
    """
    Map a response column onto 0/1.

    ``kind`` is the column's element type: booleans map directly, float64
    columns must already be 0/1 coded, and string columns must hold exactly
    two distinct labels (the lexically larger one is the positive class).
    """
    if kind == 'boolean':
        return [None if v is None else float(v) for v in values], ['false', 'true']

    if kind == 'float64':
        observed = {v for v in values if not _missing(v)}
        if not observed <= {0.0, 1.0}:
            raise TypeMismatchError(
                f"Logistic response must be 0/1 coded, found {sorted(observed)[:5]}"
            )
        return list(values), ['0', '1']

    if kind == 'string':
        labels = sorted({v for v in values if v is not None})
        if len(labels) != 2:
            raise TypeMismatchError(
                f"Logistic response needs exactly two classes, found {len(labels)}"
            )
        return [None if v is None else float(v == labels[1]) for v in values], labels

    raise TypeMismatchError(f"Logistic response cannot be a {kind} column")


def _qr(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Reduced QR with a rank check on the diagonal of R."""
    n, p = X.shape
    if n < p:
        raise SingularDesignError(
            f"{n} rows cannot identify {p} coefficients (intercept plus {p - 1} variables)"
        )
    Q, R = np.linalg.qr(X, mode='reduced')
    diag = np.abs(np.diag(R))
    if diag.size == 0 or diag.min() <= diag.max() * max(n, p) * _EPS:
        raise SingularDesignError("Design matrix is rank deficient (collinear columns)")
    return Q, R


def _check_width(X: np.ndarray, variables: Sequence[str], op: str) -> None:
    if X.shape[1] - 1 != len(variables):
        raise ArityMismatchError(
            f"{op}: fit has {len(variables)} variables but {X.shape[1] - 1} explanatory columns were given"
        )


# ============================================================================
# ORDINARY LEAST SQUARES
# ============================================================================

def fit_linear_regression(y: np.ndarray, X: np.ndarray,
                          variables: Sequence[str]) -> LinearRegressionResult:
    Q, R = _qr(X)
    beta = la.solve_triangular(R, Q.T @ y)
    residuals = y - X @ beta

    return LinearRegressionResult(
        variables=list(variables),
        intercept=float(beta[0]),
        coefficients=beta[1:],
        n_observations=len(y),
        ssr=float(residuals @ residuals),
    )


def ttest_linear_regression(fit: LinearRegressionResult, y: np.ndarray,
                            X: np.ndarray) -> TTestLinearRegressionResult:
    """
    Per-coefficient t-tests for an OLS fit.

    SE(b_j) = sigma * sqrt(diag((X^T X)^-1)_j) with sigma^2 = SSR / (n - k - 1);
    p-values are two-sided from Student's t with n - k - 1 degrees of freedom.
    """
    _check_width(X, fit.variables, 'TTestLinearRegression')
    n, p = X.shape
    dof = n - p
    if dof <= 0:
        raise InsufficientRowsError(
            f"t-test needs more rows than coefficients: n={n}, coefficients={p}"
        )

    _, R = _qr(X)
    beta = fit.params
    residuals = y - X @ beta
    ssr = float(residuals @ residuals)
    scale = ssr / dof

    R_inv = la.solve_triangular(R, np.eye(p))
    unscaled = np.sum(R_inv * R_inv, axis=1)
    se = np.sqrt(scale * unscaled)

    with np.errstate(divide='ignore', invalid='ignore'):
        t = beta / se
    p_values = 2.0 * stats.t.sf(np.abs(t), dof)

    return TTestLinearRegressionResult(
        variables=list(fit.variables),
        params=beta,
        standard_errors=se,
        t_statistics=t,
        p_values=p_values,
        degrees_of_freedom=dof,
        ssr=ssr,
        scale=scale,
    )


# ============================================================================
# LOGISTIC REGRESSION (IRLS)
# ============================================================================

def _information(X: np.ndarray, beta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    p = expit(X @ beta)
    w = p * (1.0 - p)
    return X.T @ (X * w[:, None]), p


def fit_logistic_regression(y: np.ndarray, X: np.ndarray, variables: Sequence[str],
                            classes: Sequence[str], tolerance: float = 1e-8,
                            max_iterations: int = 50,
                            rows: Optional[Sequence[int]] = None) -> LogisticRegressionResult:
    """
    IRLS: beta <- beta + (X^T W X)^-1 X^T (y - p) until max |step| < tolerance.

    A rank-deficient design is ``SingularDesign``. If the information matrix
    degenerates after the first step, the fitted probabilities have collapsed
    onto 0/1 (separable data); that, like hitting the iteration cap, is
    ``NonConvergence``.
    """
    _qr(X)
    beta = np.zeros(X.shape[1])
    max_step = np.inf

    for iteration in range(1, max_iterations + 1):
        info, p = _information(X, beta)
        gradient = X.T @ (y - p)

        try:
            with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
                condition = np.linalg.cond(info)
            if not np.isfinite(condition) or condition > 1.0 / _EPS:
                raise la.LinAlgError("information matrix is numerically singular")
            step = la.cho_solve(la.cho_factor(info), gradient)
        except la.LinAlgError as e:
            if iteration == 1:
                raise SingularDesignError(f"X^T W X is not invertible: {e}") from e
            raise NonConvergenceError(
                f"IRLS weights collapsed at iteration {iteration}; "
                f"the classes may be perfectly separable"
            ) from e

        if not np.all(np.isfinite(step)):
            raise NonConvergenceError(f"IRLS produced a non-finite step at iteration {iteration}")

        beta = beta + step
        max_step = float(np.max(np.abs(step)))
        logger.debug("IRLS iteration %d: max |step| = %.3e", iteration, max_step)

        if max_step < tolerance:
            return LogisticRegressionResult(
                variables=list(variables),
                intercept=float(beta[0]),
                coefficients=beta[1:],
                classes=list(classes),
                n_observations=len(y),
                iterations=iteration,
                rows=None if rows is None else list(rows),
            )

    raise NonConvergenceError(
        f"IRLS did not converge within {max_iterations} iterations "
        f"(last max |step| = {max_step:.3e}, tolerance {tolerance:.1e})"
    )


def wald_test_logistic_regression(fit: LogisticRegressionResult,
                                  X: np.ndarray) -> WaldTestResult:
    """
    Wald statistics at the fitted coefficients.

    Per term: z_j = b_j / SE(b_j) with SE from the diagonal of (X^T W X)^-1.
    Jointly: b^T S^-1 b over the slope terms, chi-squared with k degrees of
    freedom.
    """
    _check_width(X, fit.variables, 'WaldTestLogisticRegression')
    if X.shape[0] != fit.n_observations:
        raise RowCountMismatchError(
            f"Wald test got {X.shape[0]} complete rows but the fit used {fit.n_observations}"
        )
    beta = fit.params
    info, _ = _information(X, beta)

    try:
        covariance = la.cho_solve(la.cho_factor(info), np.eye(len(beta)))
    except la.LinAlgError as e:
        raise SingularDesignError(f"Information matrix is not invertible: {e}") from e

    se = np.sqrt(np.diag(covariance))
    with np.errstate(divide='ignore', invalid='ignore'):
        z = beta / se
    p_values = 2.0 * stats.norm.sf(np.abs(z))

    slopes = beta[1:]
    k = len(slopes)
    statistic = float(slopes @ la.solve(covariance[1:, 1:], slopes, assume_a='pos'))

    return WaldTestResult(
        variables=list(fit.variables),
        params=beta,
        standard_errors=se,
        z_statistics=z,
        p_values=p_values,
        wald_statistic=statistic,
        wald_p_value=float(stats.chi2.sf(statistic, k)),
        degrees_of_freedom=k,
    )


# ============================================================================
# TWO-SAMPLE TESTS AND SUMMARIES
# ============================================================================

def welch_ttest(a: Sequence[Optional[float]], b: Sequence[Optional[float]],
                alternative: str = 'two-sided') -> TTestResult:
    """Welch's unequal-variance t-test; nulls and NaNs are ignored."""
    if alternative not in ('two-sided', 'less', 'greater'):
        raise InvalidModeError(f"Unrecognized alternative {alternative!r}")

    x = np.asarray([v for v in a if not _missing(v)], dtype=np.float64)
    z = np.asarray([v for v in b if not _missing(v)], dtype=np.float64)
    if len(x) < 2 or len(z) < 2:
        raise InsufficientRowsError(
            f"t-test needs at least 2 observations per sample, got {len(x)} and {len(z)}"
        )

    result = stats.ttest_ind(x, z, equal_var=False, alternative=alternative)
    return TTestResult(
        statistic=float(result.statistic),
        p_value=float(result.pvalue),
        degrees_of_freedom=float(result.df),
        alternative=alternative,
    )


def histogram(values: Sequence[Optional[float]], bins: int = 10) -> HistogramResult:
    """Equal-width histogram over the finite values."""
    data = np.asarray([v for v in values if not _missing(v)], dtype=np.float64)
    data = data[np.isfinite(data)]
    counts, edges = np.histogram(data, bins=bins)
    return HistogramResult(
        bins=[float(e) for e in edges],
        values=[int(c) for c in counts],
        metadata={'n': int(data.size)},
    )


def boxplot(values: Sequence[Optional[float]], whisker: float = 1.5) -> BoxplotResult:
    """
    Five-number summary plus outliers over the finite values.

    Quartiles use linear interpolation between order statistics.
    """
    data = np.sort(np.asarray([v for v in values if not _missing(v)], dtype=np.float64))
    data = data[np.isfinite(data)]
    if data.size == 0:
        raise InsufficientRowsError("Boxplot needs at least one finite value")

    q1, median, q3 = np.percentile(data, [25, 50, 75])
    reach = whisker * (q3 - q1)
    low, high = q1 - reach, q3 + reach
    inside = data[(data >= low) & (data <= high)]

    return BoxplotResult(
        min=float(inside[0]),
        lower_quartile=float(q1),
        median=float(median),
        upper_quartile=float(q3),
        max=float(inside[-1]),
        lower_outliers=[float(v) for v in data[data < low]],
        upper_outliers=[float(v) for v in data[data > high]],
    )


__all__ = [
    'INTERCEPT',
    'StatisticalResult',
    'LinearRegressionResult',
    'TTestLinearRegressionResult',
    'LogisticRegressionResult',
    'WaldTestResult',
    'TTestResult',
    'HistogramResult',
    'BoxplotResult',
    'complete_rows',
    'design_matrix',
    'complete_cases',
    'encode_binary_response',
    'fit_linear_regression',
    'ttest_linear_regression',
    'fit_logistic_regression',
    'wald_test_logistic_regression',
    'welch_ttest',
    'histogram',
    'boxplot',
]
