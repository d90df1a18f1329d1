"""
Statistical tests for gene set enrichment.

All tests share a nuisance design ``Z``: an intercept plus a cubic B-spline
basis of log10 mappable locus length. The membership indicator is the term of
interest; its p-value and coefficient are what every test reports.
"""

from dataclasses import dataclass
import logging

import numpy as np
from scipy import stats
import statsmodels.api as sm
from statsmodels.gam.api import BSplines
from statsmodels.stats.multitest import multipletests

from .exceptions import ModelFitError

logger = logging.getLogger(__name__)

# Lower bound for the negative binomial dispersion; zero would be Poisson
MIN_NB_ALPHA = 1e-8


@dataclass
class FitResult:
    """Significance and direction of the membership term."""

    p_value: float
    effect: float


def nuisance_matrix(log10_length, df: int = 5) -> np.ndarray:
    """
    Intercept plus a cubic B-spline basis of log10 length.

    Falls back to a linear term when there are too few distinct lengths to
    place the spline knots, and to the intercept alone for a single length.

    Args:
        log10_length: Per-gene log10 of mappable locus length
        df: Degrees of freedom of the spline basis

    Returns:
        2-D array with one row per gene, intercept first
    """
    x = np.asarray(log10_length, dtype=float)
    const = np.ones((x.shape[0], 1))
    n_unique = np.unique(x).shape[0]

    if n_unique <= 1:
        return const
    if n_unique <= df + 1:
        logger.debug(f"Only {n_unique} distinct lengths; using a linear length term instead of a spline")
        return np.column_stack([const, x - x.mean()])

    splines = BSplines(x[:, None], df=[df], degree=[3])
    return np.column_stack([const, splines.basis])


def _wald(y, member, Z, family) -> FitResult:
    X = np.column_stack([member, Z])
    res = sm.GLM(y, X, family=family).fit()
    if not getattr(res, 'converged', True):
        raise ModelFitError("GLM fit did not converge")

    p_value = float(res.pvalues[0])
    effect = float(res.params[0])
    if not np.isfinite(p_value) or not np.isfinite(effect):
        raise ModelFitError(f"GLM fit gave a non-finite estimate (p={p_value}, coef={effect})")
    return FitResult(p_value=min(max(p_value, 0.0), 1.0), effect=effect)


def binomial_wald(y, member, Z) -> FitResult:
    """Logistic regression of peak presence on membership plus nuisance, Wald test."""
    return _wald(y, member, Z, sm.families.Binomial())


def estimate_nb_alpha(y, Z) -> float:
    """
    Negative binomial dispersion by moments from a Poisson pre-fit.

    Uses Var(y) = mu + alpha * mu^2, so
    alpha = sum((y - mu)^2 - y) / sum(mu^2), floored at ``MIN_NB_ALPHA``.
    """
    res = sm.GLM(y, Z, family=sm.families.Poisson()).fit()
    if not getattr(res, 'converged', True):
        raise ModelFitError("Poisson pre-fit for the dispersion did not converge")
    mu = res.fittedvalues
    alpha = float(np.sum((y - mu) ** 2 - y) / np.sum(mu ** 2))
    if not np.isfinite(alpha):
        raise ModelFitError("Could not estimate the negative binomial dispersion")
    return max(alpha, MIN_NB_ALPHA)


def nb_wald(y, member, Z, alpha: float) -> FitResult:
    """Negative binomial regression of peak counts on membership plus nuisance, Wald test."""
    return _wald(y, member, Z, sm.families.NegativeBinomial(alpha=alpha))


@dataclass
class NullModel:
    """A nuisance-only fit reused for the score test of every gene set.

    ``residuals`` and ``weights`` are the per-gene score contributions and
    Fisher weights; ``weighted_z`` is ``weights * Z`` and ``inv_info`` the
    inverse of ``Z' W Z``.
    """

    residuals: np.ndarray
    weights: np.ndarray
    weighted_z: np.ndarray
    inv_info: np.ndarray

    @classmethod
    def _build(cls, residuals, weights, Z) -> 'NullModel':
        weighted_z = weights[:, None] * Z
        inv_info = np.linalg.pinv(Z.T @ weighted_z)
        return cls(residuals=residuals, weights=weights, weighted_z=weighted_z, inv_info=inv_info)


def fit_null_binomial(y, Z) -> NullModel:
    """Fit ``peak ~ nuisance`` once for the binomial score test."""
    res = sm.GLM(y, Z, family=sm.families.Binomial()).fit()
    if not getattr(res, 'converged', True):
        raise ModelFitError("Binomial null model did not converge")
    p = np.asarray(res.fittedvalues)
    return NullModel._build(y - p, p * (1 - p), Z)


def fit_null_nb(y, Z, alpha: float) -> NullModel:
    """Fit ``count ~ nuisance`` once for the negative binomial score test (log link)."""
    res = sm.GLM(y, Z, family=sm.families.NegativeBinomial(alpha=alpha)).fit()
    if not getattr(res, 'converged', True):
        raise ModelFitError("Negative binomial null model did not converge")
    mu = np.asarray(res.fittedvalues)
    scale = 1 + alpha * mu
    return NullModel._build((y - mu) / scale, mu / scale, Z)


def score_test(null: NullModel, member_idx) -> FitResult:
    """
    Efficient score test of a membership indicator against a null model.

    The score for the indicator is the sum of null residuals over members; its
    variance is the members' Fisher weight less the part explained by the
    nuisance terms. The effect is the one-step estimate U / V.

    Args:
        null: Fitted null model
        member_idx: Integer row indices of gene set members

    Returns:
        FitResult with a two-sided normal p-value
    """
    member_idx = np.asarray(member_idx, dtype=np.int64)
    u = float(null.residuals[member_idx].sum())
    b = null.weighted_z[member_idx].sum(axis=0)
    total_weight = float(null.weights[member_idx].sum())
    v = total_weight - float(b @ null.inv_info @ b)

    # Membership collinear with the nuisance terms leaves no information
    if not np.isfinite(v) or v <= 1e-8 * max(total_weight, 1.0):
        raise ModelFitError(f"Score variance is not positive ({v:.3g})")

    z = u / np.sqrt(v)
    p_value = float(2 * stats.norm.sf(abs(z)))
    return FitResult(p_value=min(p_value, 1.0), effect=u / v)


def fisher_test(peak, member) -> FitResult:
    """
    Fisher's exact test on the membership x peak 2x2 table.

    The effect is the log odds ratio with 0.5 added to each cell so it stays finite.
    """
    peak = np.asarray(peak).astype(bool)
    member = np.asarray(member).astype(bool)
    a = int(np.sum(member & peak))
    b = int(np.sum(member & ~peak))
    c = int(np.sum(~member & peak))
    d = int(np.sum(~member & ~peak))

    _, p_value = stats.fisher_exact([[a, b], [c, d]], alternative='two-sided')
    effect = float(np.log(((a + 0.5) * (d + 0.5)) / ((b + 0.5) * (c + 0.5))))
    return FitResult(p_value=min(float(p_value), 1.0), effect=effect)


def fdr_bh(p_values) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN entries are left as NaN and do not count towards the number of tests.
    """
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full(p_values.shape, np.nan)
    ok = np.isfinite(p_values)
    if ok.any():
        _, corrected, _, _ = multipletests(p_values[ok], method='fdr_bh')
        adjusted[ok] = corrected
    return adjusted
