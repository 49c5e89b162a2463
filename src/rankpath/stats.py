"""
Statistical functions for the rankpath enrichment pipeline.

Covers the three numerical pieces of the analysis:

* merging a gene's p-values across tests (Fisher's and Brown's methods),
* the ordered (rank-scanning) hypergeometric test applied to one term,
* multiple-testing correction across terms.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Sequence, Tuple, Union

import numba as nb
import numpy as np
import polars as pl
from scipy import stats
from statsmodels.stats.multitest import multipletests

from rankpath.data import GENE_ID, score_columns

# p-values of exactly 0 are replaced by this before taking logarithms
P_VALUE_FLOOR = 1e-300


class MergeMethod(str, Enum):
    """Methods available for merging p-values row-wise."""

    FISHER = "Fisher"
    BROWN = "Brown"

    @classmethod
    def from_name(cls, name: Union[str, "MergeMethod"]) -> "MergeMethod":
        if isinstance(name, cls):
            return name
        for method in cls:
            if str(name).lower() == method.value.lower():
                return method
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown merge method '{name}'. Choose one of: {valid}")


class CorrectionMethod(str, Enum):
    """Multiple-testing corrections applied across terms."""

    HOLM = "holm"
    FDR = "fdr"
    HOCHBERG = "hochberg"
    HOMMEL = "hommel"
    BONFERRONI = "bonferroni"
    BH = "BH"
    BY = "BY"
    NONE = "none"

    @classmethod
    def from_name(cls, name: Union[str, "CorrectionMethod"]) -> "CorrectionMethod":
        if isinstance(name, cls):
            return name
        for method in cls:
            if str(name).lower() == method.value.lower():
                return method
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown correction method '{name}'. Choose one of: {valid}")


# Names understood by statsmodels' multipletests
_STATSMODELS_METHODS: Dict[CorrectionMethod, str] = {
    CorrectionMethod.HOLM: "holm",
    CorrectionMethod.FDR: "fdr_bh",
    CorrectionMethod.BH: "fdr_bh",
    CorrectionMethod.HOCHBERG: "simes-hochberg",
    CorrectionMethod.HOMMEL: "hommel",
    CorrectionMethod.BONFERRONI: "bonferroni",
    CorrectionMethod.BY: "fdr_by",
}


@dataclass(frozen=True)
class BrownParameters:
    """Reference chi-squared distribution used by Brown's method."""

    df: float
    scale: float

    @classmethod
    def fisher(cls, n_columns: int) -> "BrownParameters":
        return cls(df=2.0 * n_columns, scale=1.0)


#  Numba kernels

@nb.njit
def _prefix_overlap_counts(hits):
    """
    Running count of term members along a ranked list.

    Args:
        hits: Boolean array, True where the ranked gene belongs to the term

    Returns:
        Int64 array where element k-1 is the overlap of the top-k prefix
    """
    counts = np.zeros(len(hits), dtype=np.int64)
    running = 0
    for i in range(len(hits)):
        if hits[i]:
            running += 1
        counts[i] = running
    return counts


@nb.njit
def _ecdf_log_transform(values):
    """
    Transform a column to -2 * log(ECDF(value)).

    The empirical CDF is unchanged by standardising the column, so the raw
    values are used directly.
    """
    n = len(values)
    ordered = np.sort(values)
    out = np.empty(n, dtype=np.float64)
    for i in range(n):
        # number of values <= values[i], by binary search on the sorted copy
        lo = 0
        hi = n
        target = values[i]
        while lo < hi:
            mid = (lo + hi) // 2
            if ordered[mid] <= target:
                lo = mid + 1
            else:
                hi = mid
        out[i] = -2.0 * np.log(lo / n)
    return out


def _floored_matrix(scores: pl.DataFrame) -> np.ndarray:
    """Score columns as a 2D float array with zeros replaced by the floor."""
    matrix = scores.select(score_columns(scores)).to_numpy().astype(np.float64)
    if matrix.ndim == 1:
        matrix = matrix.reshape(-1, 1)
    return np.where(matrix <= 0.0, P_VALUE_FLOOR, matrix)


def estimate_brown_parameters(matrix: np.ndarray) -> BrownParameters:
    """
    Estimate the scaled chi-squared distribution for Brown's method.

    The covariance of -2 log(p) between tests is estimated empirically from the
    whole matrix, not per gene. Falls back to Fisher's parameters when the
    covariance does not yield a valid (or a tighter than Fisher) distribution.

    Args:
        matrix: Genes x tests array of p-values (already floored)

    Returns:
        BrownParameters with degrees of freedom and scale factor
    """
    n_genes, n_columns = matrix.shape
    fallback = BrownParameters.fisher(n_columns)
    if n_columns < 2 or n_genes < 2:
        return fallback

    transformed = np.column_stack(
        [_ecdf_log_transform(np.ascontiguousarray(matrix[:, j])) for j in range(n_columns)]
    )
    cov = np.atleast_2d(np.cov(transformed, rowvar=False))

    expected = 2.0 * n_columns
    cov_sum = 2.0 * np.sum(cov[np.tril_indices(n_columns, k=-1)])
    var = 4.0 * n_columns + cov_sum
    if not np.isfinite(var) or var <= 0:
        return fallback

    scale = var / (2.0 * expected)
    df = 2.0 * expected ** 2 / var
    if df > 2.0 * n_columns:
        return fallback
    return BrownParameters(df=float(df), scale=float(scale))


def fishers_method(p_values: np.ndarray) -> np.ndarray:
    """
    Fisher's combined probability test, row-wise.

    Args:
        p_values: Genes x tests array of p-values, no zeros

    Returns:
        Array of merged p-values, one per row
    """
    p_values = np.atleast_2d(p_values)
    statistic = -2.0 * np.sum(np.log(p_values), axis=1)
    return stats.chi2.sf(statistic, 2 * p_values.shape[1])


def browns_method(p_values: np.ndarray, params: BrownParameters) -> np.ndarray:
    """
    Brown's method, row-wise, using pre-computed distribution parameters.

    Args:
        p_values: Genes x tests array of p-values, no zeros
        params: Parameters from estimate_brown_parameters on the full matrix

    Returns:
        Array of merged p-values, one per row
    """
    p_values = np.atleast_2d(p_values)
    statistic = -2.0 * np.sum(np.log(p_values), axis=1)
    return stats.chi2.sf(statistic / params.scale, params.df)


def merge_p_values(
    scores: pl.DataFrame,
    method: Union[str, MergeMethod] = MergeMethod.BROWN
) -> pl.DataFrame:
    """
    Merge each gene's p-values into a single p-value.

    Args:
        scores: DataFrame with a gene_id column and one column per test
        method: 'Fisher' or 'Brown'

    Returns:
        DataFrame with gene_id and p_value, in the input row order
    """
    method = MergeMethod.from_name(method)
    columns = score_columns(scores)
    if not columns:
        raise ValueError("Scores must contain at least one test column")

    matrix = _floored_matrix(scores)
    if method is MergeMethod.FISHER:
        merged = fishers_method(matrix)
    else:
        merged = browns_method(matrix, estimate_brown_parameters(matrix))

    return pl.DataFrame({
        GENE_ID: scores[GENE_ID],
        "p_value": np.clip(merged, 0.0, 1.0),
    })


def hypergeometric_upper_tail(
    overlaps,
    population: int,
    successes: int,
    draws
) -> np.ndarray:
    """
    P(X >= overlap) for X ~ Hypergeometric(population, successes, draws).

    scipy evaluates the tail in log space, which stays stable for populations
    in the tens of thousands. The population is raised to cover the successes
    and draws so a term larger than the background still gives a defined value.
    """
    overlaps = np.asarray(overlaps, dtype=np.int64)
    draws = np.asarray(draws, dtype=np.int64)
    max_draws = int(draws.max()) if draws.size else 0
    population = max(int(population), int(successes), max_draws)
    p = stats.hypergeom.sf(overlaps - 1, population, successes, draws)
    return np.clip(np.nan_to_num(p, nan=1.0), 0.0, 1.0)


def ordered_hypergeometric(
    ranked_genes: Sequence[str],
    background: Iterable[str],
    term_genes: Iterable[str]
) -> Tuple[float, int]:
    """
    Ordered hypergeometric test of one term against a ranked gene list.

    Every prefix of the ranked list is tested; the most significant prefix is
    kept and its p-value multiplied by the number of prefixes scanned.

    Args:
        ranked_genes: Genes ordered from most to least significant
        background: Statistical universe of genes
        term_genes: Genes annotated to the term

    Returns:
        Tuple of (corrected p-value, 1-based index of the best prefix)
    """
    n = len(ranked_genes)
    if n == 0:
        return 1.0, 0

    term_set = set(term_genes)
    hits = np.fromiter((gene in term_set for gene in ranked_genes), dtype=np.bool_, count=n)
    overlaps = _prefix_overlap_counts(hits)
    if overlaps[-1] == 0:
        return 1.0, 1

    if not isinstance(background, (set, frozenset)):
        background = set(background)
    p_values = hypergeometric_upper_tail(
        overlaps, len(background), len(term_set), np.arange(1, n + 1)
    )
    best = int(np.argmin(p_values))
    return min(float(p_values[best]) * n, 1.0), best + 1


def adjust_p_values(
    p_values,
    method: Union[str, CorrectionMethod] = CorrectionMethod.HOLM
) -> np.ndarray:
    """
    Correct a vector of p-values for multiple testing.

    Args:
        p_values: Array-like of p-values
        method: One of holm, fdr, BH, hochberg, hommel, bonferroni, BY, none

    Returns:
        Array of corrected p-values in the input order
    """
    method = CorrectionMethod.from_name(method)
    p_values = np.asarray(p_values, dtype=np.float64)
    if method is CorrectionMethod.NONE or p_values.size == 0:
        return p_values.copy()

    _, corrected, _, _ = multipletests(p_values, method=_STATSMODELS_METHODS[method])
    return np.clip(corrected, 0.0, 1.0)
