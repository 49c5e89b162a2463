"""
Files for building an enrichment map of the significant terms in Cytoscape.

The EnrichmentMap app reads the term table and the reduced GMT file; the
subgroups table is imported as a node table and its ``instruct`` column drives
enhancedGraphics pie charts showing which tests support each term.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import matplotlib.pyplot as plt
import polars as pl
import seaborn as sns
from matplotlib.patches import Patch

from rankpath.data import GeneSetLibrary, write_gmt
from rankpath.utils import ensure_dir

logger = logging.getLogger(__name__)

EVIDENCE_PREFIX = "Genes_"
COMBINED = "combined"
COMBINED_COLOUR = "#FFFFF0"


def evidence_columns(evidence: pl.DataFrame) -> List[str]:
    """Test names present in an evidence table."""
    return [
        col[len(EVIDENCE_PREFIX):] for col in evidence.columns
        if col.startswith(EVIDENCE_PREFIX)
    ]


def evidence_colours(columns: List[str]) -> Dict[str, str]:
    """Colour per test, plus the colour used for combined-only evidence."""
    palette = sns.color_palette("husl", n_colors=max(len(columns), 1)).as_hex()
    colours = dict(zip(columns, palette))
    colours[COMBINED] = COMBINED_COLOUR
    return colours


def build_subgroups(evidence: pl.DataFrame) -> pl.DataFrame:
    """
    Indicator table of the tests supporting each term.

    Args:
        evidence: Table with term_id, evidence and Genes_<test> columns

    Returns:
        DataFrame with term_id, one 0/1 column per test, combined, and instruct
    """
    columns = evidence_columns(evidence)
    labels = columns + [COMBINED]
    colours = evidence_colours(columns)

    indicators = {label: [] for label in labels}
    for row_evidence in evidence["evidence"].to_list():
        supported = set(row_evidence or [])
        for label in labels:
            indicators[label].append(1 if label in supported else 0)

    instruct = (
        f'piechart: attributelist="{",".join(labels)}" '
        f'colorlist="{",".join(colours[label] for label in labels)}" showlabels=FALSE'
    )
    return pl.DataFrame({"term_id": evidence["term_id"], **indicators}).with_columns(
        pl.lit(instruct).alias("instruct")
    )


def plot_legend(columns: List[str], output_file: Union[str, Path]) -> Path:
    """
    Draw the colour legend matching the subgroups pie charts.

    Args:
        columns: Test names
        output_file: Destination file, format taken from the suffix

    Returns:
        Path of the written file
    """
    colours = evidence_colours(columns)
    labels = columns + [COMBINED]
    handles = [Patch(facecolor=colours[label], edgecolor="black", label=label) for label in labels]

    fig, ax = plt.subplots(figsize=(4, 0.4 * len(labels) + 1))
    ax.axis("off")
    ax.legend(handles=handles, loc="center", frameon=False, title="Contribution")
    fig.savefig(output_file, bbox_inches="tight")
    plt.close(fig)
    return Path(output_file)


def prepare_cytoscape(
    terms: pl.DataFrame,
    gmt: GeneSetLibrary,
    cytoscape_file_tag: Union[str, Path],
    evidence: Optional[pl.DataFrame] = None
) -> List[Path]:
    """
    Write the EnrichmentMap input files for the significant terms.

    Args:
        terms: Significant terms with term_id, term_name and adjusted_p_val
        gmt: Library restricted to the significant terms
        cytoscape_file_tag: Directory and/or file prefix for the output files
        evidence: Evidence table for the same terms, or None for one test

    Returns:
        List of the written files
    """
    prefix = str(cytoscape_file_tag)
    parent = Path(prefix).parent
    if prefix.endswith(("/", "\\")):
        parent = Path(prefix)
    ensure_dir(parent)

    written = []
    pathways_file = Path(prefix + "pathways.txt")
    terms.select(["term_id", "term_name", "adjusted_p_val"]).write_csv(pathways_file, separator="\t")
    written.append(pathways_file)

    written.append(write_gmt(gmt, prefix + "pathways.gmt"))

    if evidence is not None:
        subgroups_file = Path(prefix + "subgroups.txt")
        build_subgroups(evidence).write_csv(subgroups_file, separator="\t")
        written.append(subgroups_file)
        written.append(plot_legend(evidence_columns(evidence), prefix + "legend.pdf"))

    logger.info(f"Wrote {len(written)} Cytoscape files with prefix {prefix}")
    return written
