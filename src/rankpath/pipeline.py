"""Main pipeline implementation for ranked pathway enrichment analysis."""

import json
import logging
import platform
import time
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from functools import partial
from numbers import Real
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import polars as pl
from tqdm.auto import tqdm

from rankpath.config import PipelineConfig
from rankpath.data import (
    GENE_ID,
    GeneSetLibrary,
    Term,
    ValidationError,
    export_as_csv,
    filter_gene_sets,
    is_gmt,
    load_background,
    load_scores,
    make_background,
    read_gmt,
    score_columns,
    validate_geneset_filter,
    validate_scores,
)
from rankpath.stats import (
    CorrectionMethod,
    MergeMethod,
    adjust_p_values,
    merge_p_values,
    ordered_hypergeometric,
)
from rankpath.utils import ensure_dir
from rankpath.visualise import EVIDENCE_PREFIX, prepare_cytoscape

logger = logging.getLogger(__name__)

# Configure tqdm to work properly on macOS
is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': True,
    'dynamic_ncols': True,
    'ascii': is_mac,
}

RESULT_SCHEMA = {
    "term_id": pl.Utf8,
    "term_name": pl.Utf8,
    "adjusted_p_val": pl.Float64,
    "term_size": pl.Int64,
    "overlap": pl.List(pl.Utf8),
}


class NoSignificantTermsWarning(UserWarning):
    """No term passed the significance threshold."""


def parallel_map(
    func: Callable,
    items: Sequence[Any],
    num_threads: int = 1,
    desc: str = "Processing"
) -> List[Any]:
    """
    Apply func to every item, in worker processes when num_threads > 1.

    Results are returned in the order of items, whatever the completion order.
    func must be picklable (a module-level function or a partial of one).
    """
    items = list(items)
    num_threads = max(1, min(len(items), int(num_threads or 1)))
    if num_threads == 1:
        return [func(item) for item in items]

    results: List[Any] = [None] * len(items)
    with ProcessPoolExecutor(max_workers=num_threads) as executor:
        futures = {executor.submit(func, item): index for index, item in enumerate(items)}
        with tqdm(total=len(futures), desc=desc, **tqdm_kwargs) as pbar:
            for future in as_completed(futures):
                index = futures[future]
                try:
                    results[index] = future.result()
                except Exception as e:
                    logger.error(f"{desc}: item {index} failed: {str(e)}")
                    raise
                pbar.update(1)
    return results


def rank_genes(merged: pl.DataFrame, cutoff: float) -> List[str]:
    """
    Genes with p_value <= cutoff, most significant first.

    Ties keep their input order.
    """
    return (
        merged.filter(pl.col("p_value") <= cutoff)
        .sort("p_value", maintain_order=True)[GENE_ID]
        .to_list()
    )


def _term_result(term: Term, ranked_genes: List[str], background: frozenset) -> Dict[str, Any]:
    """Ordered hypergeometric test of one term, as a result row."""
    p_value, cutoff_index = ordered_hypergeometric(ranked_genes, background, term.genes)
    members = set(term.genes)
    overlap = [gene for gene in ranked_genes[:cutoff_index] if gene in members]
    return {
        "term_id": term.id,
        "term_name": term.name,
        "adjusted_p_val": p_value,
        "term_size": term.size,
        "overlap": overlap or None,
    }


def enrichment_analysis(
    ranked_genes: List[str],
    gmt: GeneSetLibrary,
    background: Iterable[str],
    num_threads: int = 1
) -> pl.DataFrame:
    """
    Test every term of a library against a ranked gene list.

    P-values are corrected for the rank scan within each term but not across
    terms.

    Args:
        ranked_genes: Genes ordered from most to least significant
        gmt: Gene-set library
        background: Statistical universe of genes
        num_threads: Worker processes for the per-term tests

    Returns:
        DataFrame with term_id, term_name, adjusted_p_val, term_size and
        overlap (null when no gene overlaps), in library order
    """
    worker = partial(_term_result, ranked_genes=list(ranked_genes), background=frozenset(background))
    rows = parallel_map(worker, list(gmt.values()), num_threads, desc="Testing terms")
    return pl.DataFrame(rows, schema=RESULT_SCHEMA)


def _column_overlaps(
    column: str,
    scores: pl.DataFrame,
    gmt: GeneSetLibrary,
    background: frozenset,
    cutoff: float,
    significant: float,
    correction_method: CorrectionMethod
) -> List[Optional[List[str]]]:
    """Overlaps of one test's own analysis, None where the term is not significant."""
    col_scores = scores.select([GENE_ID, pl.col(column).alias("p_value")])
    ranked = rank_genes(col_scores, cutoff)
    res = enrichment_analysis(ranked, gmt, background)
    adjusted = adjust_p_values(res["adjusted_p_val"].to_numpy(), correction_method)
    return [
        overlap if p_value <= significant else None
        for overlap, p_value in zip(res["overlap"].to_list(), adjusted)
    ]


def column_significance(
    scores: pl.DataFrame,
    gmt: GeneSetLibrary,
    background: Iterable[str],
    cutoff: float,
    significant: float,
    correction_method: Union[str, CorrectionMethod],
    pvals: Sequence[float],
    num_threads: int = 1
) -> pl.DataFrame:
    """
    Find the tests that support each term on their own.

    Each test column is ranked and analysed separately. A column's overlap is
    kept only for terms it finds significant after correction across terms.

    Args:
        scores: Score matrix restricted to the background
        gmt: Gene-set library
        background: Statistical universe of genes
        cutoff: Maximum p-value for a gene to enter a ranked list
        significant: Maximum corrected p-value for a significant term
        correction_method: Correction applied across terms
        pvals: Corrected p-values of the merged analysis, in library order
        num_threads: Worker processes, one column per task

    Returns:
        DataFrame with term_id, evidence and one Genes_<test> column per test
    """
    correction_method = CorrectionMethod.from_name(correction_method)
    columns = score_columns(scores)
    worker = partial(
        _column_overlaps,
        scores=scores,
        gmt=gmt,
        background=frozenset(background),
        cutoff=cutoff,
        significant=significant,
        correction_method=correction_method,
    )
    per_column = parallel_map(worker, columns, num_threads, desc="Testing columns")

    evidence = []
    for index, p_value in enumerate(pvals):
        supported = [col for col, overlaps in zip(columns, per_column) if overlaps[index] is not None]
        if not supported:
            supported = ["combined"] if p_value <= significant else ["none"]
        evidence.append(supported)

    return pl.DataFrame({
        "term_id": list(gmt.keys()),
        "evidence": pl.Series(evidence, dtype=pl.List(pl.Utf8)),
        **{
            f"{EVIDENCE_PREFIX}{col}": pl.Series(overlaps, dtype=pl.List(pl.Utf8))
            for col, overlaps in zip(columns, per_column)
        },
    })


def _validate_threshold(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValidationError(f"{name} must be a single number")
    if not 0 <= value <= 1:
        raise ValidationError(f"{name} must be a value in [0,1]")
    return float(value)


def _validate_background(background: Any) -> List[str]:
    if isinstance(background, (str, bytes)) or not isinstance(background, Iterable):
        raise ValidationError("background must be a collection of gene names")
    background = list(background)
    if not all(isinstance(gene, str) for gene in background):
        raise ValidationError("background must be a collection of gene names")
    return background


def active_pathways(
    scores: pl.DataFrame,
    gmt: Union[GeneSetLibrary, str, Path],
    background: Optional[Iterable[str]] = None,
    geneset_filter: Optional[Sequence[Optional[float]]] = (5, 1000),
    cutoff: float = 0.1,
    significant: float = 0.05,
    merge_method: Union[str, MergeMethod] = MergeMethod.BROWN,
    correction_method: Union[str, CorrectionMethod] = CorrectionMethod.HOLM,
    cytoscape_file_tag: Optional[Union[str, Path]] = None,
    num_threads: int = 1
) -> Optional[pl.DataFrame]:
    """
    Pathway enrichment analysis of a matrix of p-values.

    Each gene's p-values are merged, genes under the cutoff are ranked, every
    term is tested with the ordered hypergeometric test, and the term p-values
    are corrected for multiple testing.

    Args:
        scores: DataFrame with gene_id and one column of p-values per test.
                Missing values must already be replaced (usually by 1).
        gmt: Gene-set library, or a path to a GMT file
        background: Genes forming the statistical universe. Defaults to all
                    genes annotated in gmt.
        geneset_filter: (lower, upper) limits on term size; either may be None.
                        None skips the filter.
        cutoff: Maximum merged p-value for a gene to be ranked
        significant: Maximum corrected p-value for a term to be reported
        merge_method: 'Brown' or 'Fisher'
        correction_method: holm, fdr, BH, hochberg, hommel, bonferroni, BY or none
        cytoscape_file_tag: Directory and/or prefix for EnrichmentMap files.
                            None skips writing them.
        num_threads: Worker processes for the per-term and per-column loops

    Returns:
        DataFrame of significant terms with term_id, term_name, adjusted_p_val,
        term_size, overlap and, with more than one test, evidence and the
        Genes_<test> columns. None if no term is significant.

    Raises:
        ValidationError: If any input is malformed, or a filtering step
                         leaves nothing to test
    """
    # Validation
    validate_scores(scores)
    cutoff = _validate_threshold(cutoff, "cutoff")
    significant = _validate_threshold(significant, "significant")
    try:
        merge_method = MergeMethod.from_name(merge_method)
        correction_method = CorrectionMethod.from_name(correction_method)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    if not is_gmt(gmt):
        if not isinstance(gmt, (str, Path)):
            raise ValidationError("gmt must be a gene-set library or a path to a GMT file")
        gmt = read_gmt(gmt)
    if len(gmt) == 0:
        raise ValidationError("No pathways in gmt made the geneset_filter")

    background = make_background(gmt) if background is None else _validate_background(background)
    bounds = validate_geneset_filter(geneset_filter)

    columns = score_columns(scores)
    contribution = len(columns) > 1
    if not contribution:
        logger.info("Scores matrix contains only one column. Column contributions will not be calculated.")

    # Filtering and sorting
    if bounds is not None:
        orig_length = len(gmt)
        gmt = filter_gene_sets(gmt, *bounds)
        if len(gmt) == 0:
            raise ValidationError("No pathways in gmt made the geneset_filter")
        if len(gmt) < orig_length:
            logger.info(f"{orig_length - len(gmt)} terms were removed from gmt "
                        f"because they did not make the geneset_filter")

    orig_rows = scores.height
    scores = scores.filter(pl.col(GENE_ID).is_in(background))
    if scores.height == 0:
        raise ValidationError("scores does not contain any genes in the background")
    if scores.height < orig_rows:
        logger.info(f"{orig_rows - scores.height} rows were removed from scores "
                    f"because they are not found in the background")

    merged = merge_p_values(scores, merge_method)
    ranked_genes = rank_genes(merged, cutoff)
    if not ranked_genes:
        raise ValidationError("No genes made the cutoff")
    logger.info(f"{len(ranked_genes)} genes made the cutoff of {cutoff}")

    # Enrichment analysis and column contribution
    res = enrichment_analysis(ranked_genes, gmt, background, num_threads=num_threads)
    adjusted = adjust_p_values(res["adjusted_p_val"].to_numpy(), correction_method)
    res = res.with_columns(pl.Series("adjusted_p_val", adjusted, dtype=pl.Float64))

    significant_mask = res["adjusted_p_val"] <= significant
    n_significant = int(significant_mask.sum())
    if n_significant == 0:
        logger.warning("No significant terms were found.")
        warnings.warn("No significant terms were found.", NoSignificantTermsWarning, stacklevel=2)
        return None
    logger.info(f"{n_significant} of {res.height} terms are significant")

    evidence = None
    if contribution:
        evidence = column_significance(
            scores, gmt, background, cutoff, significant, correction_method,
            adjusted, num_threads=num_threads
        )
        res = pl.concat([res, evidence.drop("term_id")], how="horizontal")

    significant_res = res.filter(significant_mask)

    if cytoscape_file_tag is not None:
        significant_ids = significant_res["term_id"].to_list()
        prepare_cytoscape(
            significant_res.select(["term_id", "term_name", "adjusted_p_val"]),
            {term_id: gmt[term_id] for term_id in significant_ids},
            cytoscape_file_tag,
            evidence.filter(significant_mask) if evidence is not None else None,
        )

    return significant_res


class ActivePathwaysPipeline:
    """Run the enrichment analysis from a TOML configuration file."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.results: Optional[pl.DataFrame] = None
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        self.scores = load_scores(self.config.input_files['scores_file'])
        self.gmt = read_gmt(self.config.input_files['gmt_file'])

        if 'background_file' in self.config.input_files:
            self.background = load_background(self.config.input_files['background_file'])
        else:
            self.background = None

        self.logger.debug("Finished loading input data files")

    def run(self) -> Optional[pl.DataFrame]:
        """Run the analysis and save its results."""
        self.logger.info("Starting pathway enrichment analysis")
        start_time = time.time()

        self.results = active_pathways(
            self.scores,
            self.gmt,
            background=self.background,
            geneset_filter=self.config.geneset_filter,
            cutoff=self.config.cutoff,
            significant=self.config.significant,
            merge_method=self.config.merge_method,
            correction_method=self.config.correction_method,
            cytoscape_file_tag=self.config.get_cytoscape_file_tag(),
            num_threads=self.config.num_threads,
        )

        self.elapsed_time = time.time() - start_time
        self.save_results()
        self.logger.info(f"Pipeline completed in {self.elapsed_time:.2f} seconds")
        return self.results

    def save_results(self, output_dir: Optional[Union[str, Path]] = None):
        """Save the result table, the configuration used and a run summary.

        Args:
            output_dir: Optional output directory path. If not provided,
                        uses the directory from the configuration.
        """
        output_path = ensure_dir(Path(output_dir) if output_dir else self.config.get_output_path())

        n_terms = 0
        if self.results is None:
            self.logger.warning("No significant terms to save")
        else:
            results_file = output_path / self.config.output_config.get("results_file", "enrichment_results.csv")
            export_as_csv(self.results, results_file)
            n_terms = self.results.height

        config_file = output_path / "config.toml"
        self.config.save_config(config_file)
        self.logger.info(f"Saved configuration to {config_file}")

        summary = {
            "genes": self.scores.height,
            "tests": score_columns(self.scores),
            "terms_in_library": len(self.gmt),
            "significant_terms": n_terms,
            "merge_method": str(self.config.merge_method),
            "correction_method": str(self.config.correction_method),
            "cutoff": self.config.cutoff,
            "significant": self.config.significant,
            "elapsed_seconds": round(getattr(self, "elapsed_time", 0.0), 3),
        }
        summary_file = output_path / "summary.json"
        with open(summary_file, "w") as f:
            json.dump(summary, f, indent=2)
        self.logger.info(f"Saved summary to {summary_file}")
