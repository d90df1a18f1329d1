"""Tests for statistical functions."""

import numpy as np
import pytest

from peakenrich.exceptions import ModelFitError
from peakenrich.stats import (
    MIN_NB_ALPHA,
    binomial_wald,
    estimate_nb_alpha,
    fdr_bh,
    fisher_test,
    fit_null_binomial,
    fit_null_nb,
    nb_wald,
    nuisance_matrix,
    score_test,
)


@pytest.fixture
def sample_data():
    """Binary and count responses where members have a higher rate, plus a length covariate."""
    rng = np.random.default_rng(0)
    n = 600
    log10_length = rng.uniform(3, 5, n)
    member = np.zeros(n)
    member[:100] = 1
    # longer genes and members both get more peaks
    rate = np.exp(-4 + 0.8 * log10_length + 1.0 * member)
    counts = rng.poisson(rate).astype(float)
    return {
        'Z': nuisance_matrix(log10_length, df=5),
        'member': member,
        'member_idx': np.arange(100),
        'peak': (counts > 0).astype(float),
        'counts': counts,
    }


def test_nuisance_matrix_shapes():
    x = np.linspace(3, 5, 50)
    Z = nuisance_matrix(x, df=5)
    assert Z.shape[0] == 50
    assert Z.shape[1] > 2
    assert np.allclose(Z[:, 0], 1.0)

    # too few distinct values for a spline
    linear = nuisance_matrix(np.repeat([3.0, 4.0, 5.0], 10), df=5)
    assert linear.shape == (30, 2)
    assert np.isclose(linear[:, 1].mean(), 0.0)

    assert nuisance_matrix(np.full(10, 4.0)).shape == (10, 1)


def test_binomial_wald_detects_enrichment(sample_data):
    result = binomial_wald(sample_data['peak'], sample_data['member'], sample_data['Z'])
    assert result.p_value < 0.01
    assert result.effect > 0


def test_binomial_score_test_agrees_with_wald(sample_data):
    null = fit_null_binomial(sample_data['peak'], sample_data['Z'])
    score = score_test(null, sample_data['member_idx'])
    wald = binomial_wald(sample_data['peak'], sample_data['member'], sample_data['Z'])

    assert score.p_value < 0.01
    assert score.effect > 0
    assert np.log10(score.p_value) == pytest.approx(np.log10(wald.p_value), abs=1.5)


def test_score_test_null_geneset(sample_data):
    """A random non-member set should not look significant."""
    null = fit_null_binomial(sample_data['peak'], sample_data['Z'])
    result = score_test(null, np.arange(300, 400))
    assert 0.0 <= result.p_value <= 1.0
    assert result.p_value > 0.001


def test_score_test_rejects_degenerate_variance(sample_data):
    null = fit_null_binomial(sample_data['peak'], sample_data['Z'])
    with pytest.raises(ModelFitError, match="variance"):
        score_test(null, np.arange(len(sample_data['peak'])))


def test_negative_binomial_tests(sample_data):
    alpha = estimate_nb_alpha(sample_data['counts'], sample_data['Z'])
    assert alpha >= MIN_NB_ALPHA

    wald = nb_wald(sample_data['counts'], sample_data['member'], sample_data['Z'], alpha)
    assert wald.p_value < 0.01
    assert wald.effect == pytest.approx(1.0, abs=0.5)

    null = fit_null_nb(sample_data['counts'], sample_data['Z'], alpha)
    score = score_test(null, sample_data['member_idx'])
    assert score.p_value < 0.01
    assert score.effect > 0


def test_estimate_nb_alpha_overdispersed():
    rng = np.random.default_rng(1)
    Z = np.ones((2000, 1))
    poisson = rng.poisson(3.0, 2000).astype(float)
    # NB with mean 3 and alpha 0.5: n = 1 / alpha, p = n / (n + mu)
    overdispersed = rng.negative_binomial(2, 2 / 5, 2000).astype(float)

    assert estimate_nb_alpha(poisson, Z) < 0.1
    assert estimate_nb_alpha(overdispersed, Z) == pytest.approx(0.5, abs=0.2)


def test_fisher_test():
    member = np.array([1] * 20 + [0] * 80)
    peak = np.array([1] * 15 + [0] * 5 + [1] * 10 + [0] * 70)
    result = fisher_test(peak, member)
    assert result.p_value < 1e-5
    assert result.effect > 0

    depleted = fisher_test(1 - peak, member)
    assert depleted.effect < 0


def test_fdr_bh():
    """Test Benjamini-Hochberg adjustment."""
    adjusted = fdr_bh([0.40, 0.02])
    assert adjusted.tolist() == pytest.approx([0.40, 0.04])

    p_values = np.array([0.001, 0.01, 0.03, 0.04, 0.2, 0.5])
    adjusted = fdr_bh(p_values)
    order = np.argsort(p_values)
    assert np.all(np.diff(adjusted[order]) >= 0)
    assert np.all(adjusted >= p_values)
    assert np.all((adjusted >= 0) & (adjusted <= 1))


def test_fdr_bh_ignores_missing_values():
    adjusted = fdr_bh([0.02, np.nan, 0.40])
    assert np.isnan(adjusted[1])
    assert adjusted[[0, 2]].tolist() == pytest.approx([0.04, 0.40])
    assert fdr_bh([]).shape == (0,)
