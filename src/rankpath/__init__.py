"""
rankpath
========

Pathway enrichment analysis of ranked genes from multiple p-value sources.
"""

from .pipeline import (
    ActivePathwaysPipeline,
    NoSignificantTermsWarning,
    active_pathways,
    column_significance,
    enrichment_analysis,
)
from .config import PipelineConfig
from .data import (
    Term as Term,
    ValidationError as ValidationError,
    export_as_csv as export_as_csv,
    load_background as load_background,
    load_scores as load_scores,
    make_background as make_background,
    read_gmt as read_gmt,
    write_gmt as write_gmt,
)
from .stats import (
    CorrectionMethod as CorrectionMethod,
    MergeMethod as MergeMethod,
    adjust_p_values as adjust_p_values,
    merge_p_values as merge_p_values,
    ordered_hypergeometric as ordered_hypergeometric,
)
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "ActivePathwaysPipeline",
    "NoSignificantTermsWarning",
    "active_pathways",
    "column_significance",
    "enrichment_analysis",
    "PipelineConfig",
    "Term",
    "ValidationError",
    "export_as_csv",
    "load_background",
    "load_scores",
    "make_background",
    "read_gmt",
    "write_gmt",
    "CorrectionMethod",
    "MergeMethod",
    "adjust_p_values",
    "merge_p_values",
    "ordered_hypergeometric",
    "setup_logging",
    "ensure_dir",
]
