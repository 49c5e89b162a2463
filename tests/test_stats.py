"""Tests for statistical analysis functions."""

import pytest
import numpy as np
import polars as pl
from scipy import stats

from rankpath.stats import (
    P_VALUE_FLOOR,
    BrownParameters,
    CorrectionMethod,
    MergeMethod,
    adjust_p_values,
    browns_method,
    estimate_brown_parameters,
    fishers_method,
    hypergeometric_upper_tail,
    merge_p_values,
    ordered_hypergeometric,
    _ecdf_log_transform,
    _prefix_overlap_counts,
)


@pytest.fixture
def correlated_scores():
    """Two tests that rank 50 genes identically."""
    values = np.linspace(0.001, 0.99, 50)
    return pl.DataFrame({
        'gene_id': [f'g{i}' for i in range(50)],
        'A': values,
        'B': values,
    })


def test_merge_single_column_is_identity():
    """Merging one column returns the column itself."""
    scores = pl.DataFrame({
        'gene_id': ['g1', 'g2', 'g3', 'g4'],
        'A': [0.01, 0.2, 0.5, 1.0],
    })

    for method in ('Fisher', 'Brown'):
        merged = merge_p_values(scores, method)
        assert merged.columns == ['gene_id', 'p_value']
        assert merged['gene_id'].to_list() == ['g1', 'g2', 'g3', 'g4']
        assert merged['p_value'].to_list() == pytest.approx([0.01, 0.2, 0.5, 1.0])


def test_fishers_method():
    """Fisher's statistic follows chi-squared with 2k degrees of freedom."""
    p_values = np.array([[0.01, 0.05], [0.5, 0.5]])
    expected = stats.chi2.sf(-2 * np.log(p_values).sum(axis=1), 4)

    assert fishers_method(p_values) == pytest.approx(expected)


def test_merge_handles_zero_p_values():
    """A p-value of exactly zero is floored instead of giving an infinite statistic."""
    scores = pl.DataFrame({
        'gene_id': ['g1', 'g2', 'g3'],
        'A': [0.0, 0.3, 0.8],
        'B': [0.02, 0.0, 0.6],
    })

    for method in (MergeMethod.FISHER, MergeMethod.BROWN):
        merged = merge_p_values(scores, method)['p_value'].to_numpy()
        assert np.all(np.isfinite(merged))
        assert np.all((merged >= 0) & (merged <= 1))
        assert merged[0] < merged[2]

    assert P_VALUE_FLOOR > 0


def test_merge_is_monotonic_in_each_column():
    """Lowering one p-value never raises the merged p-value."""
    base = np.array([[0.2, 0.4, 0.6]])
    lowered = np.array([[0.05, 0.4, 0.6]])

    assert fishers_method(lowered)[0] <= fishers_method(base)[0]

    params = BrownParameters(df=4.5, scale=1.3)
    assert browns_method(lowered, params)[0] <= browns_method(base, params)[0]


def test_merge_method_names():
    """Method names are matched case-insensitively."""
    assert MergeMethod.from_name('fisher') is MergeMethod.FISHER
    assert MergeMethod.from_name('BROWN') is MergeMethod.BROWN
    assert MergeMethod.from_name(MergeMethod.BROWN) is MergeMethod.BROWN

    with pytest.raises(ValueError, match="Unknown merge method"):
        MergeMethod.from_name('stouffer')


def test_merge_requires_test_columns():
    """A matrix without test columns cannot be merged."""
    with pytest.raises(ValueError, match="at least one test column"):
        merge_p_values(pl.DataFrame({'gene_id': ['g1']}), 'Fisher')


def test_brown_parameters_correlated_columns(correlated_scores):
    """Correlated tests widen the reference distribution."""
    matrix = correlated_scores.select(['A', 'B']).to_numpy()
    params = estimate_brown_parameters(matrix)

    assert params.df < 4
    assert params.scale > 1

    # Brown is less significant than Fisher for the most significant gene
    merged_brown = merge_p_values(correlated_scores, 'Brown')['p_value'][0]
    merged_fisher = merge_p_values(correlated_scores, 'Fisher')['p_value'][0]
    assert merged_brown > merged_fisher


def test_brown_parameters_fall_back_to_fisher():
    """Anti-correlated, constant or tiny inputs use Fisher's parameters."""
    values = np.linspace(0.01, 0.99, 40)
    anti_correlated = np.column_stack([values, values[::-1]])
    assert estimate_brown_parameters(anti_correlated) == BrownParameters.fisher(2)

    constant = np.column_stack([values, np.full(40, 0.5)])
    params = estimate_brown_parameters(constant)
    assert params.df == pytest.approx(4.0)
    assert params.scale == pytest.approx(1.0)

    assert estimate_brown_parameters(np.array([[0.1, 0.2]])) == BrownParameters.fisher(2)
    assert estimate_brown_parameters(values.reshape(-1, 1)) == BrownParameters.fisher(1)


def test_ecdf_log_transform():
    """Values are mapped to -2 log of their empirical CDF, ties share a value."""
    values = np.array([0.3, 0.1, 0.3, 0.9])
    result = _ecdf_log_transform(values)

    expected = -2 * np.log(np.array([3 / 4, 1 / 4, 3 / 4, 1.0]))
    assert result == pytest.approx(expected)


def test_prefix_overlap_counts():
    """Running overlap along the ranked list."""
    hits = np.array([True, False, True, True, False])
    assert _prefix_overlap_counts(hits).tolist() == [1, 1, 2, 3, 3]


def test_hypergeometric_upper_tail():
    """Tail probabilities match the closed form and stay defined at the edges."""
    # P(X >= 2) drawing 2 of 10 with 3 successes = C(3,2) / C(10,2)
    assert hypergeometric_upper_tail([2], 10, 3, [2])[0] == pytest.approx(3 / 45)
    assert hypergeometric_upper_tail([0], 10, 3, [4])[0] == pytest.approx(1.0)

    # Term larger than the background
    p = hypergeometric_upper_tail([2, 3], 5, 8, [2, 3])
    assert not np.any(np.isnan(p))
    assert np.all((p >= 0) & (p <= 1))

    # Large universe
    p = hypergeometric_upper_tail([50], 30000, 200, [100])
    assert np.isfinite(p[0])
    assert 0 <= p[0] < 1e-50


def test_ordered_hypergeometric_top_genes():
    """A term made of the top-k genes is cut at k."""
    ranked = [f'g{i}' for i in range(1, 11)]
    background = [f'g{i}' for i in range(1, 101)]
    term = ['g1', 'g2', 'g3']

    p_value, cutoff = ordered_hypergeometric(ranked, background, term)

    assert cutoff == 3
    # P(X >= 3) = 1 / C(100, 3), multiplied by the 10 prefixes scanned
    assert p_value == pytest.approx(10 / 161700)


def test_ordered_hypergeometric_rank_scan_correction():
    """The returned p-value is the best prefix p-value times n, capped at 1."""
    ranked = ['a', 'x', 'b', 'y', 'z']
    background = list('abcdefghijxyz')
    term = ['a', 'b', 'c']

    p_value, cutoff = ordered_hypergeometric(ranked, background, term)

    overlaps = np.array([1, 1, 2, 2, 2])
    raw = hypergeometric_upper_tail(overlaps, len(background), 3, np.arange(1, 6))
    p_min = raw.min()
    assert cutoff == int(np.argmin(raw)) + 1
    assert p_value == pytest.approx(min(p_min * 5, 1.0))
    assert p_min <= p_value <= 1.0


def test_ordered_hypergeometric_edge_cases():
    """No overlap, empty lists and duplicated term genes."""
    background = ['g1', 'g2', 'g3', 'g4']

    assert ordered_hypergeometric(['g1', 'g2'], background, ['g3', 'g4']) == (1.0, 1)
    assert ordered_hypergeometric([], background, ['g1']) == (1.0, 0)

    with_duplicates = ordered_hypergeometric(['g1', 'g2', 'g3'], background, ['g1', 'g1', 'g2'])
    without = ordered_hypergeometric(['g1', 'g2', 'g3'], background, ['g1', 'g2'])
    assert with_duplicates == without

    # Three-gene universe: the best achievable p-value is 1/3 before correction
    p_value, cutoff = ordered_hypergeometric(['g1', 'g2'], ['g1', 'g2', 'g3'], ['g1', 'g2'])
    assert cutoff == 2
    assert p_value == pytest.approx(2 / 3)


def test_adjust_p_values_none_is_identity():
    """No correction returns the input."""
    p_values = np.array([0.01, 0.2, 0.03, 0.9])
    assert adjust_p_values(p_values, 'none').tolist() == p_values.tolist()


@pytest.mark.parametrize("method", ['holm', 'fdr', 'BH', 'hochberg', 'hommel', 'bonferroni', 'BY'])
def test_adjust_p_values_preserves_order(method):
    """Corrected p-values keep the order of the raw p-values and stay in range."""
    raw = np.array([0.001, 0.008, 0.039, 0.041, 0.042, 0.06, 0.074, 0.205])
    corrected = adjust_p_values(raw, method)

    assert len(corrected) == len(raw)
    assert np.all(np.diff(corrected) >= -1e-12)
    assert np.all(corrected >= raw - 1e-12)
    assert np.all(corrected <= 1)


def test_adjust_p_values_known_values():
    """Holm and Benjamini-Hochberg on a small example."""
    raw = np.array([0.01, 0.04, 0.03])

    assert adjust_p_values(raw, 'holm') == pytest.approx([0.03, 0.06, 0.06])
    assert adjust_p_values(raw, 'fdr') == pytest.approx([0.03, 0.04, 0.04])
    assert adjust_p_values(raw, CorrectionMethod.BONFERRONI) == pytest.approx([0.03, 0.12, 0.09])


def test_adjust_p_values_edge_cases():
    """Empty input and unknown methods."""
    assert adjust_p_values([], 'holm').size == 0

    with pytest.raises(ValueError, match="Unknown correction method"):
        adjust_p_values([0.1], 'sidak')
