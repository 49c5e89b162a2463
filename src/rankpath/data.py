"""
Input and output handling for the rankpath enrichment pipeline.

Score matrices are polars DataFrames with a ``gene_id`` column and one column
of p-values per test. Gene-set libraries are read from GMT files into an
ordered mapping of term id to :class:`Term`.
"""

import logging
import math
from dataclasses import dataclass
from numbers import Real
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl

logger = logging.getLogger(__name__)

GENE_ID = "gene_id"

# Written in place of an absent gene list when exporting
MISSING_MARKER = "NA"


class ValidationError(ValueError):
    """Raised when analysis inputs are malformed."""


@dataclass(frozen=True)
class Term:
    """A gene set from a GMT library."""

    id: str
    name: str
    genes: Tuple[str, ...]

    @property
    def size(self) -> int:
        """Number of annotated genes, as listed in the library."""
        return len(self.genes)


GeneSetLibrary = Dict[str, Term]


def score_columns(scores: pl.DataFrame) -> List[str]:
    """Names of the test columns in a score matrix."""
    return [col for col in scores.columns if col != GENE_ID]


def load_scores(
    file_path: Union[str, Path],
    gene_column: Optional[str] = None,
    fill_missing: bool = True
) -> pl.DataFrame:
    """
    Load a tab-delimited matrix of p-values.

    Args:
        file_path: Path to the scores file, genes in rows and tests in columns
        gene_column: Column holding gene identifiers. Defaults to ``gene_id`` if
                     present, otherwise the first column.
        fill_missing: Replace missing values (NA, NaN, empty) with 1.0

    Returns:
        DataFrame with gene_id and one Float64 column per test
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        null_values=["NA", "NaN", "nan", ""],
        infer_schema_length=10000,
    )

    if gene_column is None:
        gene_column = GENE_ID if GENE_ID in df.columns else df.columns[0]
    if gene_column not in df.columns:
        raise ValueError(f"Gene column '{gene_column}' not found in {file_path}")
    if gene_column != GENE_ID:
        df = df.rename({gene_column: GENE_ID})

    columns = score_columns(df)
    df = df.with_columns(
        [pl.col(GENE_ID).cast(pl.Utf8)] + [pl.col(col).cast(pl.Float64) for col in columns]
    )

    if fill_missing:
        df = df.with_columns([
            pl.col(col).fill_nan(1.0).fill_null(1.0) for col in columns
        ])

    logger.info(f"Loaded {df.height} genes with scores for {len(columns)} tests")
    return df


def validate_scores(scores: pl.DataFrame) -> None:
    """
    Check that a score matrix can be used for the analysis.

    Raises:
        ValidationError: If the matrix is not usable
    """
    if not isinstance(scores, pl.DataFrame):
        raise ValidationError("scores must be a polars DataFrame")
    if GENE_ID not in scores.columns:
        raise ValidationError(f"scores must contain a '{GENE_ID}' column")
    if scores.schema[GENE_ID] != pl.Utf8:
        raise ValidationError(f"'{GENE_ID}' must contain gene names as strings")

    columns = score_columns(scores)
    if not columns:
        raise ValidationError("scores must contain at least one test column")
    non_numeric = [col for col in columns if not scores.schema[col].is_numeric()]
    if non_numeric:
        raise ValidationError(f"scores must be numeric. Non-numeric columns: {', '.join(non_numeric)}")

    if scores[GENE_ID].null_count() > 0:
        raise ValidationError("Gene identifiers may not be missing")
    matrix = scores.select(columns).to_numpy().astype(np.float64)
    if np.isnan(matrix).any():
        raise ValidationError("scores may not contain missing values")
    if (matrix < 0).any() or (matrix > 1).any():
        raise ValidationError("All values in scores must be in [0,1]")
    if scores[GENE_ID].is_duplicated().any():
        raise ValidationError("Scores matrix contains duplicated genes - gene identifiers must be unique")


def read_gmt(file_path: Union[str, Path]) -> GeneSetLibrary:
    """
    Read a GMT file.

    Each line holds a term id, a term name and the annotated genes, separated
    by tabs. Terms without genes are dropped.

    Args:
        file_path: Path to the GMT file

    Returns:
        Ordered mapping of term id to Term
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        raise FileNotFoundError(f"GMT file not found: {file_path}")

    gmt: GeneSetLibrary = {}
    with open(file_path) as f:
        for line_number, line in enumerate(f, start=1):
            fields = line.rstrip("\r\n").split("\t")
            if len(fields) < 3:
                if line.strip():
                    logger.debug(f"Skipping line {line_number} of {file_path}: too few fields")
                continue
            term_id, name = fields[0], fields[1]
            genes = tuple(gene for gene in fields[2:] if gene)
            if not genes:
                logger.debug(f"Skipping term {term_id}: no genes")
                continue
            if term_id in gmt:
                logger.warning(f"Term {term_id} appears more than once in {file_path}; keeping the last entry")
            gmt[term_id] = Term(term_id, name, genes)

    logger.info(f"Loaded {len(gmt)} terms from {file_path}")
    return gmt


def write_gmt(gmt: GeneSetLibrary, file_path: Union[str, Path]) -> Path:
    """Write a gene-set library in GMT format."""
    file_path = Path(file_path)
    with open(file_path, "w") as f:
        for term in gmt.values():
            f.write("\t".join((term.id, term.name) + term.genes) + "\n")
    return file_path


def is_gmt(obj) -> bool:
    """True if obj is a parsed gene-set library."""
    return isinstance(obj, dict) and all(isinstance(term, Term) for term in obj.values())


def make_background(gmt: GeneSetLibrary) -> List[str]:
    """All genes annotated to at least one term, sorted."""
    genes = set()
    for term in gmt.values():
        genes.update(term.genes)
    return sorted(genes)


def load_background(file_path: Union[str, Path]) -> List[str]:
    """
    Load a background gene list, one gene per line.

    Args:
        file_path: Path to the background file

    Returns:
        List of unique gene identifiers in file order
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        raise FileNotFoundError(f"Background file not found: {file_path}")

    with open(file_path) as f:
        genes = [line.strip() for line in f if line.strip()]
    background = list(dict.fromkeys(genes))
    logger.info(f"Loaded {len(background)} background genes from {file_path}")
    return background


def _is_unset(bound) -> bool:
    return bound is None or (isinstance(bound, Real) and math.isnan(bound))


def validate_geneset_filter(geneset_filter) -> Optional[Tuple[Optional[float], Optional[float]]]:
    """
    Normalise a gene-set size filter to (lower, upper) with None for unbounded.

    Raises:
        ValidationError: If the filter is not None or a length-2 numeric sequence
    """
    if geneset_filter is None:
        return None
    if isinstance(geneset_filter, (str, bytes)) or not isinstance(geneset_filter, Sequence):
        raise ValidationError("geneset_filter must be a numeric sequence")
    if len(geneset_filter) != 2:
        raise ValidationError("geneset_filter must be length 2")

    bounds = []
    for bound in geneset_filter:
        if _is_unset(bound):
            bounds.append(None)
            continue
        if isinstance(bound, bool) or not isinstance(bound, Real):
            raise ValidationError("geneset_filter must be numeric")
        if bound < 0:
            raise ValidationError("geneset_filter limits must be positive")
        bounds.append(float(bound))
    return bounds[0], bounds[1]


def filter_gene_sets(
    gmt: GeneSetLibrary,
    lower: Optional[float] = None,
    upper: Optional[float] = None
) -> GeneSetLibrary:
    """Keep terms whose size lies within [lower, upper]; None means unbounded."""
    return {
        term_id: term for term_id, term in gmt.items()
        if (lower is None or term.size >= lower) and (upper is None or term.size <= upper)
    }


def export_as_csv(res: pl.DataFrame, file_path: Union[str, Path]) -> Path:
    """
    Export a result table as a flat comma-separated file.

    List columns (overlap, evidence and the per-test gene lists) are joined
    with semicolons; absent lists are written as NA.

    Args:
        res: Result table returned by the analysis
        file_path: Destination CSV file

    Returns:
        Path of the written file
    """
    file_path = Path(file_path)
    flat = res.with_columns([
        pl.col(col).list.join(";").fill_null(MISSING_MARKER)
        for col, dtype in res.schema.items() if isinstance(dtype, pl.List)
    ])
    flat.write_csv(file_path)
    logger.info(f"Saved {res.height} terms to {file_path}")
    return file_path
